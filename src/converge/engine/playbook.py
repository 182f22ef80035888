"""
Converge Playbook Parser

Parses YAML playbooks into executable Play and Task objects.

A task names its module either explicitly::

    - name: Install
      module: package
      params: {name: nginx}

or in the shorthand form where the one non-keyword key is the module::

    - name: Install
      package: name=nginx
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Union

import yaml

from converge.engine.errors import ParseError, UnsupportedFeatureError
from converge.engine.templating import has_template
from converge.engine.vault import VaultLib, load_vars_file, load_yaml_all

logger = logging.getLogger(__name__)

# Pattern for inline args: key=value
ARG_PATTERN = re.compile(r'(\w+)=(?:"([^"]*)"|\'([^\']*)\'|(\S+))')

# Modules that take a free-form command line
FREE_FORM_MODULES = {'command', 'shell', 'raw'}

# Task keys that are NOT module names
TASK_KEYWORDS = {
    'name', 'module', 'params', 'args', 'when', 'register', 'loop',
    'with_items', 'with_list', 'loop_control', 'ignore_errors',
    'changed_when', 'failed_when', 'tags', 'become', 'become_user',
    'become_method', 'notify', 'listen', 'check_mode',
}

PLAY_KEYWORDS = {
    'name', 'hosts', 'vars', 'vars_files', 'roles', 'pre_tasks', 'tasks',
    'post_tasks', 'handlers', 'tags', 'become', 'become_user',
    'become_method', 'force_handlers', 'gather_facts',
}

# Features outside the engine's task language
UNSUPPORTED_KEYS = {
    'block': "Flatten the block into individual tasks",
    'rescue': "Use ignore_errors and failed_when instead",
    'always': "Move the tasks after the block",
    'until': "Retries are not supported",
    'retries': "Retries are not supported",
    'delay': "Retries are not supported",
    'include_tasks': "Use import_tasks for static inclusion",
    'include_role': "Use import_role or the play's roles list",
    'include': "Use import_tasks for static inclusion",
    'async': "Run the task synchronously",
    'poll': "Run the task synchronously",
    'delegate_to': "Target the host directly in a separate play",
    'local_action': "Target localhost in a separate play",
    'action': "Use the module name as the task key",
    'vars': "Move task vars to the play or role",
    'serial': "Use --forks to bound parallelism",
    'strategy': "Only the per-host strategy is available",
}


@dataclass
class Task:
    """Represents a single task (or handler) in a playbook."""

    name: str
    module: str
    args: Dict[str, Any] = field(default_factory=dict)
    register: Optional[str] = None
    # Conditions that must all hold; empty means always run
    when: List[Any] = field(default_factory=list)
    loop: Any = None
    loop_var: str = "item"
    index_var: Optional[str] = None
    loop_fail_fast: Optional[bool] = None  # None = use run setting
    ignore_errors: bool = False
    changed_when: Any = None
    failed_when: Any = None
    tags: List[str] = field(default_factory=list)
    become: Optional[bool] = None  # None = inherit from play
    become_user: Optional[str] = None
    become_method: Optional[str] = None
    check_mode: Optional[bool] = None  # None = use run setting
    notify: List[str] = field(default_factory=list)  # Handlers to notify
    listen: List[str] = field(default_factory=list)  # Handler topics
    role: Optional[str] = None

    @property
    def display_name(self) -> str:
        if self.role:
            return f"{self.role} : {self.name}"
        return self.name

    def __repr__(self) -> str:
        return f"Task(name={self.name!r}, module={self.module!r})"


@dataclass
class Role:
    """A role resolved from <playbook_dir>/roles/<name>."""

    name: str
    path: Path
    defaults: Dict[str, Any] = field(default_factory=dict)
    vars: Dict[str, Any] = field(default_factory=dict)
    params: Dict[str, Any] = field(default_factory=dict)
    tasks: List[Task] = field(default_factory=list)
    handlers: List[Task] = field(default_factory=list)


@dataclass
class Play:
    """Represents a single play in a playbook."""

    name: str
    hosts: str
    tasks: List[Task] = field(default_factory=list)
    handlers: List[Task] = field(default_factory=list)  # Handler tasks
    roles: List[Role] = field(default_factory=list)
    vars: Dict[str, Any] = field(default_factory=dict)
    vars_files: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    become: bool = False  # Privilege escalation
    become_user: str = "root"
    become_method: str = "sudo"
    force_handlers: bool = False

    def __repr__(self) -> str:
        return f"Play(name={self.name!r}, hosts={self.hosts!r}, tasks={len(self.tasks)})"


class PlaybookParser:
    """
    Parse YAML playbooks into Play and Task objects.

    Everything static is resolved here: roles, import_tasks, vars_files and
    handler references. Anything the engine does not implement raises
    UnsupportedFeatureError rather than being silently ignored.
    """

    def __init__(self, playbook_path: Union[str, Path], vault: Optional[VaultLib] = None):
        self.playbook_path = Path(playbook_path)
        self.vault = vault
        self.plays: List[Play] = []
        self._base_dir = self.playbook_path.parent

    def parse(self) -> List[Play]:
        """
        Parse the playbook file.

        Returns:
            List of Play objects

        Raises:
            ParseError: If the playbook has syntax errors
            UnsupportedFeatureError: If playbook uses unsupported features
        """
        if not self.playbook_path.exists():
            raise ParseError(
                f"Playbook not found: {self.playbook_path}",
                file_path=str(self.playbook_path)
            )

        content = self.playbook_path.read_text(encoding='utf-8')

        try:
            documents = load_yaml_all(content)
        except yaml.YAMLError as e:
            raise ParseError(
                f"YAML syntax error: {e}",
                file_path=str(self.playbook_path)
            )

        # Flatten all documents (usually just one)
        all_plays: List[Any] = []
        for doc in documents:
            if doc is None:
                continue
            if isinstance(doc, list):
                all_plays.extend(doc)
            elif isinstance(doc, dict):
                all_plays.append(doc)

        for play_data in all_plays:
            if not isinstance(play_data, dict):
                raise ParseError(
                    f"Play must be a mapping, got {type(play_data).__name__}",
                    file_path=str(self.playbook_path)
                )
            self.plays.append(self._parse_play(play_data))

        logger.debug("Parsed %d play(s) from %s", len(self.plays), self.playbook_path)
        return self.plays

    def _error(self, message: str) -> ParseError:
        return ParseError(message, file_path=str(self.playbook_path))

    def _check_unsupported(self, data: Dict[str, Any], where: str) -> None:
        for key, suggestion in UNSUPPORTED_KEYS.items():
            if key in data:
                raise UnsupportedFeatureError(f"'{key}' in {where}", suggestion=suggestion)
        for key in data:
            if key.startswith('with_') and key not in TASK_KEYWORDS:
                raise UnsupportedFeatureError(f"'{key}' in {where}", suggestion="Use 'loop' instead")

    def _parse_play(self, data: Dict[str, Any]) -> Play:
        """Parse a single play from YAML data."""
        for key in data:
            if key not in PLAY_KEYWORDS:
                if key in UNSUPPORTED_KEYS:
                    raise UnsupportedFeatureError(f"'{key}' in plays", suggestion=UNSUPPORTED_KEYS[key])
                raise self._error(f"Unknown play keyword '{key}'")

        # Facts are never gathered, so only an explicit opt-out is accepted
        gather_facts = data.get('gather_facts', False)
        if gather_facts is not False and str(gather_facts).lower() not in ('false', 'no', '0'):
            raise UnsupportedFeatureError(
                "'gather_facts' in plays",
                suggestion="Set gather_facts: false and collect values with command and set_fact tasks",
            )

        # Required: hosts
        if 'hosts' not in data:
            raise self._error("Play missing required 'hosts' field")

        hosts = data['hosts']
        if isinstance(hosts, list):
            hosts = ','.join(str(h) for h in hosts)

        play = Play(
            name=data.get('name') or str(hosts),
            hosts=str(hosts),
            tags=self._tag_list(data.get('tags')),
            become=bool(data.get('become', False)),
            become_user=data.get('become_user', 'root'),
            become_method=data.get('become_method', 'sudo'),
            force_handlers=bool(data.get('force_handlers', False)),
        )

        # Parse vars
        play_vars = data.get('vars') or {}
        if not isinstance(play_vars, dict):
            raise self._error(f"'vars' must be a dictionary, got {type(play_vars).__name__}")
        play.vars = dict(play_vars)

        # vars_files are loaded now; later files override earlier ones and
        # inline vars override all of them
        play.vars_files = [str(f) for f in self._ensure_list(data.get('vars_files'))]
        file_vars: Dict[str, Any] = {}
        for vars_file in play.vars_files:
            vars_path = self._base_dir / vars_file
            if not vars_path.exists():
                raise self._error(f"vars_file not found: {vars_file}")
            vars_data = load_vars_file(vars_path, self.vault) or {}
            if not isinstance(vars_data, dict):
                raise self._error(f"vars_file must contain a mapping: {vars_file}")
            file_vars.update(vars_data)
        play.vars = {**file_vars, **play.vars}

        pre_tasks = self._parse_task_list(data.get('pre_tasks'), play)

        # Roles expand to tasks after pre_tasks
        role_tasks: List[Task] = []
        for role_entry in self._ensure_list(data.get('roles')):
            role = self._load_role(role_entry)
            play.roles.append(role)
            role_tasks.extend(role.tasks)
            play.handlers.extend(role.handlers)

        tasks = self._parse_task_list(data.get('tasks'), play)
        post_tasks = self._parse_task_list(data.get('post_tasks'), play)

        # Combine in correct order: pre_tasks -> roles -> tasks -> post_tasks
        play.tasks = pre_tasks + role_tasks + tasks + post_tasks

        for handler_data in self._ensure_list(data.get('handlers')):
            if not isinstance(handler_data, dict):
                raise self._error("Handler must be a mapping")
            play.handlers.append(self._parse_task(handler_data))

        seen_handlers: Set[str] = set()
        for handler in play.handlers:
            if handler.name in seen_handlers:
                raise self._error(f"Duplicate handler name '{handler.name}'")
            seen_handlers.add(handler.name)

        for task in play.tasks:
            task.tags = self._merge_tags(play.tags, task.tags)

        self._validate_notifications(play)
        return play

    def _validate_notifications(self, play: Play) -> None:
        """Every statically known notification must reach a handler."""
        known = set()
        for handler in play.handlers:
            known.add(handler.name)
            known.update(handler.listen)

        for task in play.tasks + play.handlers:
            for name in task.notify:
                if has_template(name):
                    continue
                if name not in known:
                    raise self._error(f"The requested handler '{name}' was not found (notified by '{task.name}')")

    def _parse_task_list(self, data: Any, play: Optional[Play] = None,
                         base_dir: Optional[Path] = None) -> List[Task]:
        tasks: List[Task] = []
        for task_data in self._ensure_list(data):
            if not isinstance(task_data, dict):
                raise self._error(f"Task must be a mapping, got {type(task_data).__name__}")
            tasks.extend(self._parse_task_or_import(task_data, play, base_dir))
        return tasks

    def _parse_task_or_import(self, data: Dict[str, Any], play: Optional[Play],
                              base_dir: Optional[Path] = None) -> List[Task]:
        """Parse a task, expanding import_tasks and import_role statically."""
        if 'import_tasks' in data:
            return self._parse_import_tasks(data, play, base_dir or self._base_dir)
        if 'import_role' in data:
            return self._parse_import_role(data, play)
        return [self._parse_task(data)]

    def _parse_import_tasks(self, data: Dict[str, Any], play: Optional[Play], base_dir: Path) -> List[Task]:
        """
        Parse an import_tasks directive.

        The file is inlined at parse time; the import's when and tags apply
        to every imported task.
        """
        tasks_file = data.get('import_tasks')
        if isinstance(tasks_file, dict):
            tasks_file = tasks_file.get('file')

        if not tasks_file:
            raise self._error("import_tasks requires a file path")

        tasks_path = base_dir / str(tasks_file)
        if not tasks_path.exists():
            raise self._error(f"Tasks file not found: {tasks_file}")

        tasks_data = self._load_task_file(tasks_path)
        tasks = self._parse_task_list(tasks_data, play, tasks_path.parent)
        return self._apply_inherited(
            tasks,
            when=self._ensure_list(data.get('when')),
            tags=self._tag_list(data.get('tags')),
        )

    def _parse_import_role(self, data: Dict[str, Any], play: Optional[Play]) -> List[Task]:
        role_data = data.get('import_role')
        if isinstance(role_data, str):
            role_data = {'name': role_data}
        if not isinstance(role_data, dict) or not role_data.get('name'):
            raise self._error("import_role requires 'name' parameter")

        entry = {'role': role_data['name']}
        entry.update({k: v for k, v in role_data.items() if k != 'name'})
        role = self._load_role(entry)
        if play is not None:
            play.roles.append(role)
            play.handlers.extend(role.handlers)
        return self._apply_inherited(
            role.tasks,
            when=self._ensure_list(data.get('when')),
            tags=self._tag_list(data.get('tags')),
        )

    def _apply_inherited(self, tasks: List[Task], when: List[Any], tags: List[str]) -> List[Task]:
        for task in tasks:
            if when:
                task.when = list(when) + task.when
            if tags:
                task.tags = self._merge_tags(tags, task.tags)
        return tasks

    def _load_role(self, role_entry: Any) -> Role:
        """
        Load a role: tasks, handlers, defaults and vars.

        Args:
            role_entry: Either a string (role name) or dict with role, params, tags, when

        Returns:
            Role with its tasks already parsed
        """
        if isinstance(role_entry, str):
            role_name = role_entry
            params: Dict[str, Any] = {}
            role_tags: List[str] = []
            role_when: List[Any] = []
        elif isinstance(role_entry, dict):
            role_name = role_entry.get('role') or role_entry.get('name')
            if not role_name:
                raise self._error("Role entry must have 'role' or 'name' key")
            params = {k: v for k, v in role_entry.items()
                      if k not in ('role', 'name', 'tags', 'when', 'vars')}
            params.update(role_entry.get('vars') or {})
            role_tags = self._tag_list(role_entry.get('tags'))
            role_when = self._ensure_list(role_entry.get('when'))
        else:
            raise self._error(f"Invalid role entry type: {type(role_entry).__name__}")

        role_path = self._find_role_path(role_name)
        if not role_path:
            raise self._error(f"Role not found: {role_name}")

        role = Role(
            name=role_name,
            path=role_path,
            defaults=self._load_role_vars(role_path / "defaults"),
            vars=self._load_role_vars(role_path / "vars"),
            params=params,
        )

        tasks_file = self._find_main(role_path / "tasks")
        handlers_file = self._find_main(role_path / "handlers")
        if tasks_file is None and handlers_file is None:
            raise self._error(f"Role '{role_name}' has neither tasks/main.yml nor handlers/main.yml")

        if tasks_file is not None:
            role.tasks = self._parse_task_list(self._load_task_file(tasks_file), None, tasks_file.parent)
        if handlers_file is not None:
            role.handlers = self._parse_task_list(self._load_task_file(handlers_file), None, handlers_file.parent)

        for task in role.tasks + role.handlers:
            task.role = role_name
        self._apply_inherited(role.tasks, when=role_when, tags=role_tags)

        logger.debug("Loaded role %s from %s (%d tasks)", role_name, role_path, len(role.tasks))
        return role

    def _find_main(self, directory: Path) -> Optional[Path]:
        for candidate in ('main.yml', 'main.yaml'):
            path = directory / candidate
            if path.is_file():
                return path
        return None

    def _load_role_vars(self, directory: Path) -> Dict[str, Any]:
        path = self._find_main(directory)
        if path is None:
            return {}
        data = load_vars_file(path, self.vault) or {}
        if not isinstance(data, dict):
            raise self._error(f"Role vars must be a mapping: {path}")
        return data

    def _load_task_file(self, path: Path) -> List[Any]:
        try:
            documents = load_yaml_all(path.read_text(encoding='utf-8'))
        except yaml.YAMLError as e:
            raise ParseError(f"YAML syntax error: {e}", file_path=str(path))
        data = documents[0] if documents else None
        if data is None:
            return []
        if not isinstance(data, list):
            raise ParseError("Tasks file must contain a list", file_path=str(path))
        return data

    def _find_role_path(self, role_name: str) -> Optional[Path]:
        """
        Find the path to a role.

        Searches in:
        1. <playbook_dir>/roles/<role_name>
        2. ./roles/<role_name>

        Returns:
            Path to role directory or None if not found
        """
        search_paths = [
            self._base_dir / "roles" / role_name,
            Path.cwd() / "roles" / role_name,
        ]

        for path in search_paths:
            if path.is_dir():
                return path

        return None

    def _parse_task(self, data: Dict[str, Any]) -> Task:
        """Parse a single task from YAML data."""
        self._check_unsupported(data, 'tasks')

        if 'module' in data:
            module_name = data['module']
            module_args = data.get('params', data.get('args'))
            extra = [k for k in data if k not in TASK_KEYWORDS]
            if extra:
                raise self._error(f"Task '{data.get('name', module_name)}' has unknown keys: {extra}")
        else:
            candidates = [k for k in data if k not in TASK_KEYWORDS]
            if not candidates:
                raise self._error(f"Task has no module: {list(data.keys())}")
            if len(candidates) > 1:
                raise self._error(f"Conflicting action statements: {', '.join(candidates)}")
            module_name = candidates[0]
            module_args = data[module_name]

        if not isinstance(module_name, str) or not module_name:
            raise self._error(f"Invalid module name: {module_name!r}")

        args = self._normalize_args(module_name, module_args)
        if isinstance(data.get('args'), dict) and 'module' not in data:
            args = {**data['args'], **args}

        loop = None
        if 'loop' in data:
            loop = data['loop']
        elif 'with_items' in data:
            loop = data['with_items']
        elif 'with_list' in data:
            loop = data['with_list']

        loop_control = data.get('loop_control') or {}
        if not isinstance(loop_control, dict):
            raise self._error("'loop_control' must be a mapping")

        fail_fast = loop_control.get('fail_fast')
        check_mode = data.get('check_mode')

        return Task(
            name=str(data.get('name') or module_name),
            module=module_name,
            args=args,
            register=data.get('register'),
            when=self._ensure_list(data.get('when')),
            loop=loop,
            loop_var=loop_control.get('loop_var', 'item'),
            index_var=loop_control.get('index_var'),
            loop_fail_fast=None if fail_fast is None else bool(fail_fast),
            ignore_errors=bool(data.get('ignore_errors', False)),
            changed_when=data.get('changed_when'),
            failed_when=data.get('failed_when'),
            tags=self._tag_list(data.get('tags')),
            become=data.get('become'),
            become_user=data.get('become_user'),
            become_method=data.get('become_method'),
            check_mode=None if check_mode is None else bool(check_mode),
            notify=[str(n) for n in self._ensure_list(data.get('notify'))],
            listen=[str(n) for n in self._ensure_list(data.get('listen'))],
        )

    def _normalize_args(self, module_name: str, args: Any) -> Dict[str, Any]:
        """Normalize module arguments to a dictionary."""
        if args is None:
            return {}

        if isinstance(args, dict):
            return dict(args)

        if isinstance(args, str):
            short_name = module_name.rsplit('.', 1)[-1]
            if short_name in FREE_FORM_MODULES:
                return {'_raw_params': args}

            # Handle inline args: "msg=hello verbosity=1"
            parsed = {}
            for match in ARG_PATTERN.finditer(args):
                key = match.group(1)
                value = match.group(2) or match.group(3) or match.group(4)
                parsed[key] = value
            if not parsed:
                return {'_raw_params': args}
            return parsed

        return {'_raw_params': args}

    def _merge_tags(self, inherited: List[str], own: List[str]) -> List[str]:
        merged = list(inherited)
        for tag in own:
            if tag not in merged:
                merged.append(tag)
        return merged

    def _tag_list(self, value: Any) -> List[str]:
        """Tags may be a list or a comma-separated string."""
        if isinstance(value, str):
            return [t.strip() for t in value.split(',') if t.strip()]
        return [str(t) for t in self._ensure_list(value)]

    def _ensure_list(self, value: Any) -> List[Any]:
        """Ensure a value is a list."""
        if value is None:
            return []
        if isinstance(value, list):
            return value
        return [value]


def load_playbook(playbook_path: Union[str, Path], vault: Optional[VaultLib] = None) -> List[Play]:
    """Convenience function to parse a playbook file."""
    return PlaybookParser(playbook_path, vault=vault).parse()

"""
Converge Inventory Manager

Parses and manages inventory from INI files, YAML/JSON files, dynamic
inventory scripts or callables, and host/group vars directories.

The group graph is a DAG rooted at the implicit 'all' group. It is checked
for cycles every time a source is added, and frozen once a run resolves it.
"""

import fnmatch
import json
import logging
import os
import re
import subprocess
import sys
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from converge.engine.errors import (
    DuplicateHostError,
    InventoryCycleError,
    InventoryError,
    UnknownGroupError,
)
from converge.engine.vault import VaultLib, load_vars_file, load_yaml, wrap_encrypted

logger = logging.getLogger(__name__)

InventorySource = Union[str, Path, Callable[[], Dict[str, Any]]]

IMPLICIT_GROUPS = ('all', 'ungrouped')
WILDCARD_CHARS = set('*?[')


class Host:
    """Represents a single host in the inventory."""

    # Variables that identify how to reach a host; two declarations of the
    # same host may not disagree on these.
    CONNECTION_ATTRIBUTES = ('ansible_host', 'ansible_port', 'ansible_user', 'ansible_connection')

    def __init__(self, name: str, variables: Optional[Dict[str, Any]] = None):
        self.name = name
        self.vars: Dict[str, Any] = dict(variables) if variables else {}
        self._groups: Dict[str, None] = {}
        self._frozen = False

    @property
    def ansible_host(self) -> str:
        """Get the actual host to connect to (ansible_host or name)."""
        return self.vars.get('ansible_host', self.name)

    @property
    def ansible_port(self) -> int:
        """Get the port number."""
        return int(self.vars.get('ansible_port', 22))

    @property
    def ansible_user(self) -> Optional[str]:
        """Get the user to connect as."""
        return self.vars.get('ansible_user')

    @property
    def ansible_connection(self) -> str:
        """Get the connection type (ssh, local, ...)."""
        default = 'local' if self.name in ('localhost', '127.0.0.1') else 'ssh'
        return self.vars.get('ansible_connection', default)

    address = ansible_host
    port = ansible_port
    user = ansible_user
    connection = ansible_connection

    @property
    def groups(self) -> List[str]:
        """Names of the groups this host is a direct member of, in declaration order."""
        return list(self._groups)

    def add_group(self, group_name: str) -> None:
        """Add this host to a group."""
        if self._frozen:
            raise InventoryError(f"Cannot change group membership of {self.name} after load")
        self._groups[group_name] = None

    def remove_group(self, group_name: str) -> None:
        if self._frozen:
            raise InventoryError(f"Cannot change group membership of {self.name} after load")
        self._groups.pop(group_name, None)

    def freeze(self) -> None:
        self._frozen = True

    def set_variable(self, key: str, value: Any) -> None:
        """Set a host variable."""
        self.vars[key] = value

    def get_variable(self, key: str, default: Any = None) -> Any:
        """Get a host variable."""
        return self.vars.get(key, default)

    def get_vars(self) -> Dict[str, Any]:
        """Return a copy of the host's own variables."""
        return self.vars.copy()

    def conflicts_with(self, variables: Dict[str, Any]) -> Optional[Tuple[str, Any, Any]]:
        """Return the first connection attribute that differs from ``variables``."""
        for attr in self.CONNECTION_ATTRIBUTES:
            if attr in self.vars and attr in variables:
                if str(self.vars[attr]) != str(variables[attr]):
                    return attr, self.vars[attr], variables[attr]
        return None

    def __repr__(self) -> str:
        return f"Host({self.name!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Host):
            return NotImplemented
        return self.name == other.name

    def __hash__(self) -> int:
        return hash(self.name)


class Group:
    """Represents a group of hosts."""

    def __init__(self, name: str, variables: Optional[Dict[str, Any]] = None):
        self.name = name
        self.vars: Dict[str, Any] = dict(variables) if variables else {}
        # dicts keep insertion order, so they double as ordered sets
        self._hosts: Dict[str, None] = {}
        self._children: Dict[str, None] = {}
        self._parents: Dict[str, None] = {}

    @property
    def hosts(self) -> List[str]:
        """Return list of host names directly in this group."""
        return list(self._hosts)

    @property
    def children(self) -> List[str]:
        """Return list of child group names."""
        return list(self._children)

    @property
    def parents(self) -> List[str]:
        """Return list of parent group names."""
        return list(self._parents)

    @property
    def priority(self) -> int:
        try:
            return int(self.vars.get('ansible_group_priority', 1))
        except (TypeError, ValueError):
            return 1

    def add_host(self, host_name: str) -> None:
        """Add a host to this group."""
        self._hosts[host_name] = None

    def remove_host(self, host_name: str) -> None:
        self._hosts.pop(host_name, None)

    def add_child(self, group_name: str) -> None:
        """Add a child group."""
        self._children[group_name] = None

    def add_parent(self, group_name: str) -> None:
        """Record a parent group."""
        self._parents[group_name] = None

    def set_variable(self, key: str, value: Any) -> None:
        """Set a group variable."""
        self.vars[key] = value

    def __repr__(self) -> str:
        return f"Group({self.name!r}, hosts={len(self._hosts)})"


class InventoryManager:
    """
    Manages inventory parsing and host resolution.

    Supports:
    - INI format inventory files
    - YAML / JSON format inventory files
    - Executable dynamic inventory scripts (``--list`` JSON) and callables
    - host_vars/ and group_vars/ directories
    - Host patterns for play selectors and --limit
    """

    # Pattern for host range expansion: web[01:10].example.com
    RANGE_PATTERN = re.compile(r'\[(\d+):(\d+)\]')
    # Pattern for INI variable assignment: key=value
    VAR_PATTERN = re.compile(r'(\w+)=(?:"([^"]*)"|\'([^\']*)\'|(\S+))')

    def __init__(self, vault: Optional[VaultLib] = None):
        self.hosts: Dict[str, Host] = {}
        self.groups: Dict[str, Group] = {}
        self.vault = vault
        self._inventory_dir: Optional[Path] = None
        self._current_source: Optional[str] = None
        self._frozen = False

        # Always create 'all' and 'ungrouped' groups
        self.groups['all'] = Group('all')
        self.groups['ungrouped'] = Group('ungrouped')
        self._link('all', 'ungrouped')

    @classmethod
    def resolve(
        cls,
        sources: Union[InventorySource, Iterable[InventorySource]],
        vault: Optional[VaultLib] = None,
    ) -> 'InventoryManager':
        """
        Build a validated, read-only inventory from one or more sources.

        Raises:
            InventoryCycleError: Group parentage contains a cycle
            DuplicateHostError: A host is declared twice with conflicting connection attributes
            InventoryError: A source is missing or unreadable
        """
        if isinstance(sources, (str, Path)) or callable(sources):
            sources = [sources]

        manager = cls(vault=vault)
        for source in sources:
            manager.parse(source)
        manager.freeze()
        return manager

    def parse(self, source: InventorySource) -> 'InventoryManager':
        """
        Parse an inventory source.

        Args:
            source: Path to an inventory file, directory or executable script,
                or a callable returning inventory data

        Returns:
            self for chaining
        """
        if self._frozen:
            raise InventoryError("Inventory is frozen; sources must be added before the run starts")

        if callable(source) and not isinstance(source, (str, Path)):
            self._current_source = getattr(source, '__name__', repr(source))
            logger.debug("Loading dynamic inventory from callable %s", self._current_source)
            data = source()
            self._parse_structured_data(wrap_encrypted(data))
            self._finalize()
            return self

        source_path = Path(source)
        self._current_source = str(source_path)

        if not source_path.exists():
            raise InventoryError(f"Inventory path does not exist: {source_path}")

        logger.debug("Loading inventory from %s", source_path)
        if source_path.is_file():
            self._inventory_dir = source_path.parent
            self._parse_file(source_path)
        elif source_path.is_dir():
            self._inventory_dir = source_path
            self._parse_directory(source_path)
        else:
            raise InventoryError(f"Invalid inventory source: {source_path}")

        # Load host_vars and group_vars
        if self._inventory_dir:
            self._load_vars_directories(self._inventory_dir)

        self._finalize()
        return self

    def freeze(self) -> None:
        """Make group membership read-only for the rest of the run."""
        self._frozen = True
        for host in self.hosts.values():
            host.freeze()

    # ------------------------------------------------------------------
    # Host selection

    def get_hosts(self, pattern: str = "all", strict: bool = False) -> List[Host]:
        """
        Get hosts matching a pattern, in inventory order.

        Supported patterns:
        - "all" or "*" - all hosts
        - "group_name" - all hosts in a group (including children)
        - "host_name" - single host
        - "host1,host2" / "group1:group2" - union
        - "group1:&group2" - intersection
        - "group1:!group2" - exclusion
        - "web*" - fnmatch wildcard over host and group names
        - "~web\\d+" - regular expression over host and group names

        Args:
            pattern: Host pattern string
            strict: Raise UnknownGroupError for a plain name that matches
                nothing (wildcards and regexes may match zero hosts)

        Returns:
            List of matching Host objects
        """
        if isinstance(pattern, list):
            pattern = ','.join(str(p) for p in pattern)
        pattern = (pattern or 'all').strip()

        included: Dict[str, None] = {}
        intersections: List[str] = []
        exclusions: List[str] = []

        for term in self._split_pattern(pattern):
            if term.startswith('&'):
                intersections.append(term[1:])
            elif term.startswith('!'):
                exclusions.append(term[1:])
            else:
                for host in self._match_term(term, strict):
                    included[host.name] = None

        if not included and (intersections or exclusions) and not any(
            not t.startswith(('&', '!')) for t in self._split_pattern(pattern)
        ):
            included = {name: None for name in self.hosts}

        names = list(included)
        for term in intersections:
            keep = {h.name for h in self._match_term(term, strict)}
            names = [n for n in names if n in keep]
        for term in exclusions:
            drop = {h.name for h in self._match_term(term, strict)}
            names = [n for n in names if n not in drop]

        return [self.hosts[name] for name in names]

    def _split_pattern(self, pattern: str) -> List[str]:
        if pattern.startswith('~'):
            return [pattern]
        separator = ',' if ',' in pattern else ':'
        return [t.strip() for t in pattern.split(separator) if t.strip()]

    def _match_term(self, term: str, strict: bool) -> List[Host]:
        if term in ('all', '*'):
            return list(self.hosts.values())

        if term in self.groups:
            return self._get_group_hosts_recursive(term)

        if term in self.hosts:
            return [self.hosts[term]]

        if term.startswith('~'):
            try:
                regex = re.compile(term[1:])
            except re.error as e:
                raise InventoryError(f"Invalid host pattern regex {term!r}: {e}")
            return self._match_names(lambda name: regex.search(name) is not None)

        if WILDCARD_CHARS & set(term):
            return self._match_names(lambda name: fnmatch.fnmatchcase(name, term))

        if strict:
            raise UnknownGroupError(term)
        return []

    def _match_names(self, predicate: Callable[[str], bool]) -> List[Host]:
        matched: Dict[str, None] = {}
        for name in self.hosts:
            if predicate(name):
                matched[name] = None
        for group_name in self.groups:
            if predicate(group_name):
                for host in self._get_group_hosts_recursive(group_name):
                    matched[host.name] = None
        ordered = [n for n in self.hosts if n in matched]
        return [self.hosts[n] for n in ordered]

    def _get_group_hosts_recursive(self, group_name: str) -> List[Host]:
        """Get all hosts in a group, including from child groups."""
        if group_name == 'all':
            return list(self.hosts.values())

        found: Dict[str, None] = {}
        stack = [group_name]
        seen = set()
        while stack:
            name = stack.pop()
            if name in seen or name not in self.groups:
                continue
            seen.add(name)
            group = self.groups[name]
            for host_name in group.hosts:
                found[host_name] = None
            stack.extend(reversed(group.children))

        # Keep inventory declaration order
        return [host for name, host in self.hosts.items() if name in found]

    # ------------------------------------------------------------------
    # Group ancestry

    def get_group_ancestors(self, host: Union[str, Host]) -> List[Group]:
        """
        Return every group a host belongs to, directly or through parents.

        Ordered farthest ancestor first ('all' is always first) and nearest
        group last, so applying their vars in order lets nearer groups win.
        Groups at the same depth are ordered by ansible_group_priority, then name.
        """
        host_obj = self.hosts[host] if isinstance(host, str) else host

        closure: Dict[str, None] = {}
        stack = list(host_obj.groups)
        while stack:
            name = stack.pop()
            if name in closure or name not in self.groups:
                continue
            closure[name] = None
            stack.extend(self.groups[name].parents)
        closure['all'] = None

        depths = self._group_depths()
        groups = [self.groups[name] for name in closure]
        groups.sort(key=lambda g: (depths.get(g.name, 0), g.priority, g.name))
        return groups

    def group_names(self, host: Union[str, Host]) -> List[str]:
        """Sorted names of all groups a host belongs to, excluding 'all'."""
        return sorted(g.name for g in self.get_group_ancestors(host) if g.name != 'all')

    def _group_depths(self) -> Dict[str, int]:
        """Longest distance of each group from the root 'all' group."""
        depths: Dict[str, int] = {}

        def depth(name: str) -> int:
            if name in depths:
                return depths[name]
            parents = self.groups[name].parents
            value = 0 if not parents else 1 + max(depth(p) for p in parents if p in self.groups)
            depths[name] = value
            return value

        for name in self.groups:
            depth(name)
        return depths

    def get_host_vars(self, host_name: str) -> Dict[str, Any]:
        """Get inventory variables for a host (group vars then host vars)."""
        if host_name not in self.hosts:
            return {}

        host = self.hosts[host_name]
        merged_vars: Dict[str, Any] = {}

        for group in self.get_group_ancestors(host):
            merged_vars.update(group.vars)

        # Host vars override group vars
        merged_vars.update(host.get_vars())

        return merged_vars

    # ------------------------------------------------------------------
    # Reporting

    def list_inventory(self) -> Dict[str, Any]:
        """Return the inventory in dynamic-inventory ``--list`` JSON shape."""
        data: Dict[str, Any] = {'_meta': {'hostvars': {}}}
        for name, group in self.groups.items():
            entry: Dict[str, Any] = {}
            if group.hosts:
                entry['hosts'] = group.hosts
            if group.children:
                entry['children'] = group.children
            if group.vars:
                entry['vars'] = group.vars
            data[name] = entry
        for name, host in self.hosts.items():
            data['_meta']['hostvars'][name] = host.get_vars()
        return data

    def graph(self, group_name: str = 'all') -> str:
        """Render the group tree the way ``ansible-inventory --graph`` does."""
        lines: List[str] = []

        def walk(name: str, indent: int) -> None:
            prefix = '  ' * indent + ('|--' if indent else '')
            lines.append(f"{prefix}@{name}:")
            group = self.groups[name]
            for child in sorted(group.children):
                walk(child, indent + 1)
            for host_name in sorted(group.hosts):
                lines.append('  ' * (indent + 1) + f"|--{host_name}")

        if group_name not in self.groups:
            raise UnknownGroupError(group_name)
        walk(group_name, 0)
        return '\n'.join(lines)

    # ------------------------------------------------------------------
    # Graph construction

    def _ensure_group(self, name: str) -> Group:
        if name not in self.groups:
            self.groups[name] = Group(name)
        return self.groups[name]

    def _link(self, parent: str, child: str) -> None:
        self._ensure_group(parent).add_child(child)
        self._ensure_group(child).add_parent(parent)

    def _add_host(self, name: str, variables: Optional[Dict[str, Any]] = None) -> Host:
        """Add a host, merging with an existing declaration when compatible."""
        variables = variables or {}
        existing = self.hosts.get(name)
        if existing is None:
            host = Host(name, variables=variables)
            self.hosts[name] = host
            return host

        conflict = existing.conflicts_with(variables)
        if conflict:
            attr, first, second = conflict
            raise DuplicateHostError(name, attr, first, second, file_path=self._current_source)
        for key, value in variables.items():
            existing.set_variable(key, value)
        return existing

    def _add_host_to_group(self, host: Host, group_name: str) -> None:
        self._ensure_group(group_name).add_host(host.name)
        host.add_group(group_name)

    def _finalize(self) -> None:
        """Attach top-level groups to 'all', recompute 'ungrouped', check for cycles."""
        for name, group in self.groups.items():
            if name != 'all' and not group.parents:
                self._link('all', name)

        ungrouped = self.groups['ungrouped']
        for host_name, host in self.hosts.items():
            explicit = [g for g in host.groups if g not in IMPLICIT_GROUPS]
            if explicit:
                ungrouped.remove_host(host_name)
                host.remove_group('ungrouped')
            else:
                self._add_host_to_group(host, 'ungrouped')
            host.remove_group('all')
            self.groups['all'].remove_host(host_name)

        self._check_cycles()

    def _check_cycles(self) -> None:
        """Depth-first search over child edges; a back edge is a cycle."""
        WHITE, GREY, BLACK = 0, 1, 2
        color = {name: WHITE for name in self.groups}

        for root in self.groups:
            if color[root] != WHITE:
                continue
            path: List[str] = []
            stack: List[Tuple[str, Iterable[str]]] = []
            color[root] = GREY
            path.append(root)
            stack.append((root, iter(self.groups[root].children)))
            while stack:
                name, children = stack[-1]
                advanced = False
                for child in children:
                    if child not in color:
                        continue
                    if color[child] == GREY:
                        cycle = path[path.index(child):] + [child]
                        raise InventoryCycleError(cycle, file_path=self._current_source)
                    if color[child] == WHITE:
                        color[child] = GREY
                        path.append(child)
                        stack.append((child, iter(self.groups[child].children)))
                        advanced = True
                        break
                if not advanced:
                    color[name] = BLACK
                    path.pop()
                    stack.pop()

    # ------------------------------------------------------------------
    # File formats

    def _parse_file(self, path: Path) -> None:
        """Parse a single inventory file."""
        if self._is_executable_script(path):
            self._parse_script(path)
            return

        content = path.read_text(encoding='utf-8')

        # Detect format by extension or content
        if path.suffix in ('.yml', '.yaml'):
            self._parse_yaml_string(content, path)
        elif path.suffix == '.json':
            try:
                data = json.loads(content)
            except json.JSONDecodeError as e:
                raise InventoryError(f"Invalid JSON inventory: {e}", file_path=str(path))
            self._parse_structured_data(wrap_encrypted(data))
        else:
            if content.strip().startswith(('---', 'all:', 'ungrouped:')):
                self._parse_yaml_string(content, path)
                return
            self._parse_ini_string(content, path)

    def _is_executable_script(self, path: Path) -> bool:
        if sys.platform == 'win32' or not os.access(path, os.X_OK):
            return False
        if path.suffix in ('.yml', '.yaml', '.json', '.ini', '.cfg'):
            return False
        return True

    def _parse_script(self, path: Path) -> None:
        """Run a dynamic inventory script with --list and load its JSON."""
        data = self._run_script(path, '--list')
        if not isinstance(data, dict):
            raise InventoryError("Dynamic inventory must return a JSON object", file_path=str(path))

        if '_meta' not in data:
            # Old-style scripts answer --host per host
            hostvars = {}
            for group_data in data.values():
                hosts = group_data if isinstance(group_data, list) else (group_data or {}).get('hosts', [])
                for host_name in hosts:
                    if host_name not in hostvars:
                        hostvars[host_name] = self._run_script(path, '--host', host_name) or {}
            data = dict(data, _meta={'hostvars': hostvars})

        self._parse_structured_data(wrap_encrypted(data))

    def _run_script(self, path: Path, *args: str) -> Any:
        logger.debug("Running dynamic inventory script %s %s", path, ' '.join(args))
        try:
            result = subprocess.run(
                [str(path), *args],
                capture_output=True,
                text=True,
                timeout=60,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise InventoryError(f"Dynamic inventory script failed: {e}", file_path=str(path))
        if result.returncode != 0:
            raise InventoryError(
                f"Dynamic inventory script exited with {result.returncode}: {result.stderr.strip()}",
                file_path=str(path),
            )
        try:
            return json.loads(result.stdout or '{}')
        except json.JSONDecodeError as e:
            raise InventoryError(f"Dynamic inventory returned invalid JSON: {e}", file_path=str(path))

    def _parse_directory(self, path: Path) -> None:
        """Parse all inventory files in a directory."""
        for item in sorted(path.iterdir()):
            if item.is_file() and not item.name.startswith('.'):
                # Skip backup files, vars dirs, and non-inventory files
                if item.suffix not in ('.bak', '.orig', '.pyc', '.pyo', '.md'):
                    self._parse_file(item)

    def _read_vars(self, path: Path) -> Dict[str, Any]:
        data = load_vars_file(path, self.vault) or {}
        if not isinstance(data, dict):
            raise InventoryError("Vars file must contain a mapping", file_path=str(path))
        return data

    def _vars_files(self, item: Path) -> List[Path]:
        if item.is_file() and item.suffix in ('.yml', '.yaml', '.json', ''):
            return [item]
        if item.is_dir():
            return sorted(p for p in item.iterdir() if p.suffix in ('.yml', '.yaml', '.json'))
        return []

    def _load_vars_directories(self, base_path: Path) -> None:
        """Load variables from host_vars/ and group_vars/ directories."""
        group_vars_dir = base_path / 'group_vars'
        if group_vars_dir.is_dir():
            for item in sorted(group_vars_dir.iterdir()):
                group_name = item.stem if item.is_file() else item.name
                files = self._vars_files(item)
                if not files:
                    continue
                group = self._ensure_group(group_name)
                for vars_file in files:
                    for key, value in self._read_vars(vars_file).items():
                        group.set_variable(key, value)

        host_vars_dir = base_path / 'host_vars'
        if host_vars_dir.is_dir():
            for item in sorted(host_vars_dir.iterdir()):
                host_name = item.stem if item.is_file() else item.name
                if host_name not in self.hosts:
                    continue
                host = self.hosts[host_name]
                for vars_file in self._vars_files(item):
                    for key, value in self._read_vars(vars_file).items():
                        host.set_variable(key, value)

    def _parse_ini_string(self, content: str, source_path: Optional[Path] = None) -> None:
        """Parse INI format inventory."""
        current_group: Optional[str] = None
        current_section: Optional[str] = None  # 'hosts', 'vars', 'children'

        for line_num, line in enumerate(content.splitlines(), 1):
            line = line.strip()

            # Skip empty lines and comments
            if not line or line.startswith('#') or line.startswith(';'):
                continue

            # Check for group header
            if line.startswith('[') and line.endswith(']'):
                header = line[1:-1].strip()

                if header.endswith(':vars'):
                    current_group = header[:-len(':vars')].strip()
                    current_section = 'vars'
                elif header.endswith(':children'):
                    current_group = header[:-len(':children')].strip()
                    current_section = 'children'
                else:
                    current_group = header
                    current_section = 'hosts'

                if not current_group:
                    raise InventoryError(
                        f"Empty group name at line {line_num}",
                        file_path=str(source_path) if source_path else None,
                    )
                self._ensure_group(current_group)
                continue

            if current_section == 'vars':
                if '=' not in line:
                    raise InventoryError(
                        f"Expected key=value in [{current_group}:vars] at line {line_num}",
                        file_path=str(source_path) if source_path else None,
                    )
                key, value = self._parse_variable_line(line)
                if current_group and key:
                    self.groups[current_group].set_variable(key, value)

            elif current_section == 'children':
                child_name = line.split()[0]
                if current_group:
                    self._link(current_group, child_name)

            else:
                # Parse host entry (hosts section or no section)
                for name, variables in self._parse_host_line(line):
                    host = self._add_host(name, variables)
                    if current_group:
                        self._add_host_to_group(host, current_group)

    def _parse_host_line(self, line: str) -> List[Tuple[str, Dict[str, Any]]]:
        """Parse a single host line, handling ranges and variables."""
        parts = line.split()
        if not parts:
            return []

        host_pattern = parts[0]
        var_string = ' '.join(parts[1:]) if len(parts) > 1 else ''

        variables: Dict[str, Any] = {}

        for match in self.VAR_PATTERN.finditer(var_string):
            key = match.group(1)
            value = match.group(2) or match.group(3) or match.group(4)
            variables[key] = self._convert_value(value)

        return [(name, dict(variables)) for name in self._expand_host_pattern(host_pattern)]

    def _expand_host_pattern(self, pattern: str) -> List[str]:
        """Expand host patterns like web[01:03].example.com."""
        match = self.RANGE_PATTERN.search(pattern)
        if not match:
            return [pattern]

        start = int(match.group(1))
        end = int(match.group(2))
        width = len(match.group(1))

        results = []
        for i in range(start, end + 1):
            num_str = str(i).zfill(width)
            expanded = pattern[:match.start()] + num_str + pattern[match.end():]
            results.extend(self._expand_host_pattern(expanded))

        return results

    def _parse_variable_line(self, line: str) -> Tuple[str, Any]:
        """Parse a variable assignment line."""
        key, _, value = line.partition('=')
        key = key.strip()
        value = value.strip()

        # Handle quoted values
        if (value.startswith('"') and value.endswith('"')) or \
           (value.startswith("'") and value.endswith("'")):
            return key, value[1:-1]

        return key, self._convert_value(value)

    def _convert_value(self, value: str) -> Any:
        """Convert string value to appropriate Python type."""
        if not isinstance(value, str):
            return value

        if value.lower() in ('true', 'yes'):
            return True
        if value.lower() in ('false', 'no'):
            return False
        if value.lower() in ('null', 'none', '~'):
            return None

        try:
            return int(value)
        except ValueError:
            pass

        try:
            return float(value)
        except ValueError:
            pass

        return value

    def _parse_yaml_string(self, content: str, source_path: Optional[Path] = None) -> None:
        """Parse YAML format inventory."""
        import yaml

        try:
            data = load_yaml(content)
        except yaml.YAMLError as e:
            raise InventoryError(
                f"YAML syntax error: {e}",
                file_path=str(source_path) if source_path else None,
            )
        if data:
            self._parse_structured_data(data)

    def _parse_structured_data(self, data: Any) -> None:
        """
        Parse hierarchical inventory data.

        Accepts the YAML form (hosts and children as mappings) and the
        dynamic-inventory form (hosts and children as lists, plus _meta).
        """
        if not isinstance(data, dict):
            raise InventoryError("Inventory data must be a mapping", file_path=self._current_source)

        meta = data.get('_meta') or {}
        for group_name, group_data in data.items():
            if group_name == '_meta':
                continue
            self._parse_group(group_name, group_data)

        for host_name, host_vars in (meta.get('hostvars') or {}).items():
            host = self._add_host(host_name, host_vars or {})
            if not host.groups:
                self._add_host_to_group(host, 'ungrouped')

    def _parse_group(self, name: str, data: Any) -> None:
        """Parse a single group from structured inventory data."""
        group = self._ensure_group(name)

        if data is None:
            return
        if isinstance(data, list):
            # Simplified dynamic form: group: [host, ...]
            data = {'hosts': data}
        if not isinstance(data, dict):
            raise InventoryError(f"Group '{name}' must be a mapping or list", file_path=self._current_source)

        hosts_data = data.get('hosts') or {}
        if isinstance(hosts_data, dict):
            host_items = list(hosts_data.items())
        elif isinstance(hosts_data, list):
            host_items = [(h, None) for h in hosts_data]
        else:
            raise InventoryError(f"Hosts of group '{name}' must be a mapping or list", file_path=self._current_source)

        for host_name, host_vars in host_items:
            for expanded in self._expand_host_pattern(str(host_name)):
                host = self._add_host(expanded, host_vars or {})
                self._add_host_to_group(host, name)

        vars_data = data.get('vars') or {}
        if not isinstance(vars_data, dict):
            raise InventoryError(f"Vars of group '{name}' must be a mapping", file_path=self._current_source)
        for key, value in vars_data.items():
            group.set_variable(key, value)

        children_data = data.get('children') or {}
        if isinstance(children_data, dict):
            for child_name, child_data in children_data.items():
                self._link(name, child_name)
                self._parse_group(child_name, child_data)
        elif isinstance(children_data, list):
            for child_name in children_data:
                self._link(name, child_name)
        else:
            raise InventoryError(f"Children of group '{name}' must be a mapping or list", file_path=self._current_source)

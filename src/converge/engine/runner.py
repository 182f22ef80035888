"""
Converge Playbook Runner

High-level runner that coordinates inventory, playbook parsing,
scheduling, and output.
"""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, TextIO, Tuple, Union

from converge.config import RunConfig
from converge.connections.base import ConnectionFactory, create_connection_factory
from converge.engine.errors import (
    ConvergeError,
    ExitCode,
    ParseError,
    UnknownHandlerError,
    UnsupportedFeatureError,
)
from converge.engine.inventory import Host, InventoryManager, InventorySource
from converge.engine.playbook import Play, PlaybookParser, Task
from converge.engine.results import HostState, HostStats, PlaybookResult, TaskResult
from converge.engine.scheduler import RunCallback, RunContext, Scheduler
from converge.engine.templating import TemplateEngine
from converge.engine.variables import VariableManager
from converge.engine.vault import VaultLib, VaultSecret
from converge.modules.base import ModuleDispatcher, ModuleRegistry

logger = logging.getLogger(__name__)

COLORS = {
    'ok': '\033[32m',       # Green
    'changed': '\033[33m',  # Yellow
    'failed': '\033[31m',   # Red
    'skipped': '\033[36m',  # Cyan
    'unreachable': '\033[31m',
    'ignored': '\033[36m',
}
RESET = '\033[0m'


class DisplayCallback(RunCallback):
    """
    Prints the play log: PLAY/TASK banners, a line per host result and the
    final recap. Prints nothing in JSON mode.
    """

    def __init__(self, json_output: bool = False, verbosity: int = 0,
                 stream: Optional[TextIO] = None, color: Optional[bool] = None):
        self.json_output = json_output
        self.verbosity = verbosity
        self.stream = stream or sys.stdout
        if color is None:
            color = hasattr(self.stream, 'isatty') and self.stream.isatty()
        self.color = color
        self._last_banner: Optional[str] = None

    def _print(self, msg: str) -> None:
        if not self.json_output:
            print(msg, file=self.stream)

    def _paint(self, text: str, status: str) -> str:
        if not self.color:
            return text
        return f"{COLORS.get(status, '')}{text}{RESET}"

    def on_playbook_start(self, path: str) -> None:
        self._print(f"\nPLAYBOOK: {path}")

    def on_play_start(self, play: Play, hosts: List[Host]) -> None:
        """Print play banner."""
        self._last_banner = None
        self._print(f"\nPLAY [{play.name}] " + "*" * 50)
        if not hosts:
            self.warning(f"No hosts matched for play: {play.hosts}")

    def on_task_start(self, task: Task, host: Host, is_handler: bool = False) -> None:
        """Print task banner once per task, however many hosts run it."""
        label = f"RUNNING HANDLER [{task.display_name}]" if is_handler else f"TASK [{task.display_name}]"
        if label != self._last_banner:
            self._last_banner = label
            self._print(f"\n{label} " + "*" * max(0, 60 - len(label)))

    def on_task_result(self, task: Optional[Task], result: TaskResult) -> None:
        """Print result for a host."""
        if result.ignored:
            status = 'failed'
        elif result.unreachable:
            status = 'unreachable'
        else:
            status = result.status.value

        label = f"{status}: [{result.host}]"
        if result.item is not None:
            label += f" => (item={result.item})"

        show_msg = (
            result.failed
            or (task is not None and task.module in ('debug', 'ansible.builtin.debug'))
            or self.verbosity > 0
        )
        line = self._paint(label, status)
        if show_msg and result.msg:
            line += f" => {result.msg}"
        self._print(line)
        if result.ignored:
            self._print(self._paint("...ignoring", 'ignored'))

    def on_host_state(self, host: Host, state: HostState) -> None:
        if state == HostState.CANCELLED:
            self.warning(f"Run cancelled before {host.name} finished")

    def on_recap(self, result: PlaybookResult) -> None:
        """Print final recap."""
        self._print("\nPLAY RECAP " + "*" * 60)

        for host, stats in result.get_final_stats().items():
            self._print(f"{host:40} : {self._format_stats(stats)}")

    def _format_stats(self, stats: HostStats) -> str:
        parts = []
        for name, status in (
            ('ok', 'ok'),
            ('changed', 'changed'),
            ('unreachable', 'unreachable'),
            ('failed', 'failed'),
            ('skipped', 'skipped'),
            ('ignored', 'ignored'),
        ):
            value = getattr(stats, name)
            text = f"{name}={value}"
            parts.append(self._paint(text, status) if value else text)
        return "  ".join(parts)

    def warning(self, msg: str) -> None:
        """Print a warning message."""
        if not self.json_output:
            print(self._paint(f"[WARNING]: {msg}", 'changed'), file=sys.stderr)

    def error(self, msg: str) -> None:
        """Print an error message."""
        if not self.json_output:
            print(self._paint(msg, 'failed'), file=sys.stderr)


class PlaybookRunner:
    """
    High-level playbook runner.

    Coordinates:
    - Inventory loading and host selection
    - Playbook parsing
    - Vault secrets and connection creation
    - Scheduling plays across hosts
    - Output formatting
    """

    def __init__(
        self,
        inventory_source: Union[InventorySource, Iterable[InventorySource]],
        playbook_paths: Union[str, Path, List[Union[str, Path]]],
        extra_vars: Optional[Dict[str, Any]] = None,
        tags: Optional[List[str]] = None,
        skip_tags: Optional[List[str]] = None,
        limit: Optional[str] = None,
        check_mode: bool = False,
        forks: int = 5,
        timeout: Optional[float] = None,
        vault_secrets: Optional[List[VaultSecret]] = None,
        diff_mode: bool = False,
        verbosity: int = 0,
        json_output: bool = False,
        vault_password: Optional[str] = None,
        vault_password_files: Optional[List[str]] = None,
        loop_fail_fast: bool = False,
        force_handlers: bool = False,
        registry: Optional[ModuleRegistry] = None,
        connection_factory: Optional[ConnectionFactory] = None,
        callback: Optional[RunCallback] = None,
    ):
        if isinstance(playbook_paths, (str, Path)):
            playbook_paths = [playbook_paths]
        self.inventory_source = inventory_source
        self.playbook_paths = [str(p) for p in playbook_paths]
        self.extra_vars = extra_vars or {}
        self.tags = list(tags or [])
        self.skip_tags = list(skip_tags or [])
        self.limit = limit
        self.check_mode = check_mode
        self.forks = forks
        self.timeout = timeout
        self.diff_mode = diff_mode
        self.verbosity = verbosity
        self.json_output = json_output
        self.loop_fail_fast = loop_fail_fast
        self.force_handlers = force_handlers
        self.registry = registry if registry is not None else ModuleRegistry()
        self.connection_factory = connection_factory or create_connection_factory()
        self.display = callback if callback is not None else DisplayCallback(json_output, verbosity)

        # Components
        self.inventory: Optional[InventoryManager] = None
        self.run_context: Optional[RunContext] = None
        self._vault = self._init_vault(vault_secrets or [], vault_password, vault_password_files or [])

    @classmethod
    def from_config(
        cls,
        inventory_source: Union[InventorySource, Iterable[InventorySource]],
        playbook_paths: Union[str, Path, List[Union[str, Path]]],
        config: RunConfig,
        **kwargs: Any,
    ) -> 'PlaybookRunner':
        """Create a runner from a RunConfig; keyword arguments win."""
        options: Dict[str, Any] = {
            'extra_vars': config.extra_vars,
            'tags': config.tags,
            'skip_tags': config.skip_tags,
            'limit': config.limit,
            'check_mode': config.check_mode,
            'forks': config.forks,
            'timeout': config.timeout,
            'diff_mode': config.diff_mode,
            'verbosity': config.verbosity,
            'json_output': config.json_output,
            'vault_password_files': config.vault_password_files,
            'loop_fail_fast': config.loop_fail_fast,
            'force_handlers': config.force_handlers,
        }
        options.update(kwargs)
        return cls(inventory_source, playbook_paths, **options)

    def _init_vault(
        self,
        secrets: List[VaultSecret],
        password: Optional[str],
        password_files: List[str],
    ) -> VaultLib:
        """Collect vault secrets; an empty vault still reports a missing key clearly."""
        vault = VaultLib(list(secrets))
        for path in password_files:
            vault.add_secret(VaultSecret.from_file(path))
        if password:
            vault.add_secret(VaultSecret(password))
        return vault

    def run(self) -> int:
        """
        Run playbooks synchronously.

        Returns:
            Exit code (0=success, 2=host failures, 3=parse error, 4=unsupported, 130=cancelled)
        """
        try:
            result = asyncio.run(self.run_async())
        except (ParseError, UnknownHandlerError) as e:
            return self._fail("parse_error", f"Parse error: {e}", ExitCode.PARSE_ERROR)
        except UnsupportedFeatureError as e:
            return self._fail("unsupported_feature", f"Unsupported feature: {e}", ExitCode.UNSUPPORTED_FEATURE)
        except ConvergeError as e:
            return self._fail("error", f"Error: {e}", ExitCode.GENERIC_ERROR)
        except KeyboardInterrupt:
            return self._fail("interrupted", "Execution interrupted", ExitCode.INTERRUPTED)

        if self.json_output:
            print(result.to_json())
        return result.exit_code

    def _fail(self, error_type: str, message: str, exit_code: ExitCode) -> int:
        if self.json_output:
            self._print_json_error(error_type, message, int(exit_code))
        elif isinstance(self.display, DisplayCallback):
            self.display.error(message)
        else:
            logger.error(message)
        return int(exit_code)

    def _print_json_error(self, error_type: str, message: str, exit_code: int) -> None:
        """Print an error in JSON format."""
        error_obj = {
            "error": True,
            "error_type": error_type,
            "message": message,
            "exit_code": exit_code,
        }
        print(json.dumps(error_obj, indent=2))

    def load(self) -> List[Tuple[str, Play, List[Host]]]:
        """Load the inventory and every playbook; see _load()."""
        return self._load()[1]

    def _load(self) -> Tuple[InventoryManager, List[Tuple[str, Play, List[Host]]]]:
        """
        Load the inventory and every playbook, and resolve each play's hosts.

        All structural errors surface here, before any task runs.

        Raises:
            InventoryError: Bad inventory, or a play selects an unknown group
            ParseError: Bad playbook
        """
        inventory = InventoryManager.resolve(self.inventory_source, vault=self._vault)
        self.inventory = inventory

        limit_names = None
        if self.limit:
            limit_names = {h.name for h in inventory.get_hosts(self.limit)}
            if not limit_names:
                logger.warning("Limit '%s' matched no hosts", self.limit)

        selections: List[Tuple[str, Play, List[Host]]] = []
        for path in self.playbook_paths:
            for play in PlaybookParser(path, vault=self._vault).parse():
                hosts = inventory.get_hosts(play.hosts, strict=True)
                if limit_names is not None:
                    hosts = [h for h in hosts if h.name in limit_names]
                selections.append((path, play, hosts))
        return inventory, selections

    async def run_async(self) -> PlaybookResult:
        """Run playbooks asynchronously."""
        inventory, selections = self._load()

        run = RunContext(
            templar=TemplateEngine(vault=self._vault),
            dispatcher=ModuleDispatcher(self.registry),
            connection_factory=self.connection_factory,
            forks=self.forks,
            check_mode=self.check_mode,
            diff_mode=self.diff_mode,
            loop_fail_fast=self.loop_fail_fast,
            force_handlers=self.force_handlers,
            tags=self.tags,
            skip_tags=self.skip_tags,
            callback=self.display,
        )
        self.run_context = run
        scheduler = Scheduler(run, VariableManager(inventory, self.extra_vars))

        result = PlaybookResult(playbook_path=", ".join(self.playbook_paths))
        failed_hosts: set = set()
        current_path: Optional[str] = None

        timer = None
        if self.timeout:
            timer = asyncio.get_running_loop().call_later(self.timeout, run.cancel)

        try:
            for path, play, hosts in selections:
                if run.cancelled:
                    break
                if path != current_path:
                    current_path = path
                    on_playbook_start: Optional[Callable[[str], None]] = getattr(
                        self.display, 'on_playbook_start', None)
                    if on_playbook_start:
                        on_playbook_start(path)

                play_result = await scheduler.run_play(play, hosts, failed_hosts)
                result.add_play_result(play_result)
                failed_hosts.update(play_result.failed_hosts)
        finally:
            if timer is not None:
                timer.cancel()

        result.cancelled = run.cancelled

        on_recap = getattr(self.display, 'on_recap', None)
        if on_recap:
            on_recap(result)
        return result

    def cancel(self) -> None:
        """Abort the run: in-flight module calls finish, nothing new starts."""
        if self.run_context is not None:
            self.run_context.cancel()


def run(
    inventory_source: Union[InventorySource, Iterable[InventorySource]],
    playbook_paths: Union[str, Path, List[Union[str, Path]]],
    extra_vars: Optional[Dict[str, Any]] = None,
    tags: Optional[List[str]] = None,
    skip_tags: Optional[List[str]] = None,
    limit: Optional[str] = None,
    check_mode: bool = False,
    **kwargs: Any,
) -> PlaybookResult:
    """
    Run playbooks against an inventory and return the report.

    Prints nothing unless a ``callback`` is given. Structural errors
    (inventory, playbook, unknown group) raise before any task runs.
    """
    kwargs.setdefault('callback', RunCallback())
    runner = PlaybookRunner(
        inventory_source,
        playbook_paths,
        extra_vars=extra_vars,
        tags=tags,
        skip_tags=skip_tags,
        limit=limit,
        check_mode=check_mode,
        **kwargs,
    )
    return asyncio.run(runner.run_async())

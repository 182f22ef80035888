"""
Shared fixtures: in-memory connection, recording modules and helpers to
write inventories and playbooks under tmp_path.
"""

import textwrap
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from converge.connections.base import Connection, RunResult
from converge.engine.inventory import Host, InventoryManager
from converge.engine.runner import PlaybookRunner
from converge.engine.scheduler import RunCallback
from converge.modules.base import ModuleContext, ModuleRegistry


class FakeConnection(Connection):
    """Connection that records commands instead of running them."""

    def __init__(self, host: Host, responses: Optional[Dict[str, RunResult]] = None):
        super().__init__(host)
        self.connected = False
        self.closed = False
        self.commands_run: List[str] = []
        self.responses = responses or {}
        self.files: Dict[str, dict] = {}

    async def connect(self) -> None:
        self.connected = True

    async def close(self) -> None:
        self.closed = True

    async def run(
        self,
        command: str,
        shell: bool = True,
        timeout: Optional[int] = None,
        cwd: Optional[str] = None,
        environment: Optional[dict] = None,
    ) -> RunResult:
        self.commands_run.append(command)
        return self.responses.get(command, RunResult(rc=0, stdout="ok", stderr=""))

    async def stat(self, remote_path: str) -> Optional[dict]:
        return self.files.get(remote_path)


class Recorder:
    """
    Module callable that records each invocation and returns a canned result.

    ``outcome`` may be a dict or a callable ``(params, context) -> dict``.
    """

    def __init__(self, outcome: Any = None):
        self.outcome = outcome if outcome is not None else {"changed": False}
        self.calls: List[Tuple[str, Dict[str, Any]]] = []

    def __call__(self, params: Dict[str, Any], context: ModuleContext) -> Dict[str, Any]:
        self.calls.append((context.host.name, dict(params)))
        if callable(self.outcome):
            return self.outcome(params, context)
        return dict(self.outcome)

    def hosts(self) -> List[str]:
        return [host for host, _ in self.calls]

    def params_for(self, host: str) -> List[Dict[str, Any]]:
        return [params for h, params in self.calls if h == host]


class PackageState:
    """
    A package module with real state: installing reports a change the
    first time only.
    """

    supports_check_mode = True

    def __init__(self):
        self.installed: Dict[str, set] = {}

    def __call__(self, params: Dict[str, Any], context: ModuleContext) -> Dict[str, Any]:
        packages = self.installed.setdefault(context.host.name, set())
        name = params["name"]
        if name in packages:
            return {"changed": False, "msg": f"{name} already installed"}
        if not context.check_mode:
            packages.add(name)
        return {"changed": True, "msg": f"{name} installed"}


@pytest.fixture
def write_file(tmp_path: Path) -> Callable[[str, str], Path]:
    """Write dedented text to a file under tmp_path."""
    def write(relative: str, content: str) -> Path:
        path = tmp_path / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(content).lstrip("\n"))
        return path
    return write


@pytest.fixture
def inventory_from(write_file) -> Callable[[str], InventoryManager]:
    """Resolve an INI inventory from text."""
    def build(content: str, name: str = "inventory.ini") -> InventoryManager:
        return InventoryManager.resolve(write_file(name, content))
    return build


@pytest.fixture
def connections() -> Dict[str, FakeConnection]:
    """FakeConnection per host name, filled in as hosts connect."""
    return {}


@pytest.fixture
def connection_factory(connections: Dict[str, FakeConnection]):
    async def factory(host: Host) -> Connection:
        conn = FakeConnection(host)
        await conn.connect()
        connections[host.name] = conn
        return conn
    return factory


@pytest.fixture
def registry() -> ModuleRegistry:
    return ModuleRegistry()


@pytest.fixture
def make_runner(registry: ModuleRegistry, connection_factory):
    """Build a quiet PlaybookRunner wired to the fake registry and connections."""
    def build(inventory: Any, playbook: Any, **kwargs: Any) -> PlaybookRunner:
        kwargs.setdefault("registry", registry)
        kwargs.setdefault("connection_factory", connection_factory)
        kwargs.setdefault("callback", RunCallback())
        return PlaybookRunner(inventory, playbook, **kwargs)
    return build

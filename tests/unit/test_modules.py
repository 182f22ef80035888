"""
Tests for the module registry, dispatcher and built-in modules.
"""

import pytest

from conftest import FakeConnection, PackageState, Recorder
from converge.connections.base import RunResult
from converge.engine.errors import ConnectivityError, TemplateError, VaultBadKeyError
from converge.engine.inventory import Host
from converge.engine.results import TaskStatus
from converge.engine.templating import TemplateEngine
from converge.modules.base import ModuleContext, ModuleDispatcher, ModuleRegistry, ModuleResult


def _context(check_mode: bool = False, connection=None, variables=None) -> ModuleContext:
    host = Host("web1")
    return ModuleContext(
        host=host,
        vars=variables or {},
        templar=TemplateEngine(),
        connection=connection,
        check_mode=check_mode,
    )


class TestModuleRegistry:
    """Name resolution."""

    def test_builtins_registered(self):
        """Built-in modules are available by default."""
        registry = ModuleRegistry()
        for name in ("ping", "debug", "set_fact", "fail", "assert", "command", "shell"):
            assert name in registry

    def test_empty_registry(self):
        """include_builtins=False starts empty."""
        assert ModuleRegistry(include_builtins=False).names() == []

    def test_fully_qualified_name(self):
        """namespace.collection.name falls back to the short name."""
        registry = ModuleRegistry()
        assert registry.get("ansible.builtin.ping") is registry.get("ping")
        assert registry.supports_check_mode("ansible.builtin.ping") is True

    def test_check_mode_override(self):
        """register() can declare check mode support for a plain callable."""
        registry = ModuleRegistry(include_builtins=False)
        registry.register("noop", Recorder())
        registry.register("safe", Recorder(), supports_check_mode=True)

        assert registry.supports_check_mode("noop") is False
        assert registry.supports_check_mode("safe") is True
        assert registry.supports_check_mode("ghost") is False


class TestModuleDispatcher:
    """Invocation semantics."""

    @pytest.mark.asyncio
    async def test_unknown_module_is_failed_result(self):
        """An unregistered name is a failed result, not an exception."""
        result = await ModuleDispatcher().invoke("no_such_module", {}, _context())

        assert result.failed is True
        assert result.error_kind == "ModuleError"
        assert "Unknown module" in result.msg

    @pytest.mark.asyncio
    async def test_dict_outcome_is_coerced(self):
        """Plain callables may return Ansible-style dicts."""
        registry = ModuleRegistry(include_builtins=False)
        registry.register("custom", Recorder({"changed": True, "rc": 0, "path": "/tmp/x"}))

        result = await ModuleDispatcher(registry).invoke("custom", {"a": 1}, _context())

        assert isinstance(result, ModuleResult)
        assert result.changed is True
        assert result.results == {"path": "/tmp/x"}

    @pytest.mark.asyncio
    async def test_async_callable(self):
        """Coroutine functions are awaited."""
        async def module(params, context):
            return ModuleResult(changed=True, msg=params["word"])

        registry = ModuleRegistry(include_builtins=False)
        registry.register("async_mod", module)

        result = await ModuleDispatcher(registry).invoke("async_mod", {"word": "hi"}, _context())

        assert result.msg == "hi"

    @pytest.mark.asyncio
    async def test_none_outcome_is_ok(self):
        """A callable returning None is an unchanged success."""
        registry = ModuleRegistry(include_builtins=False)
        registry.register("quiet", lambda params, context: None)

        result = await ModuleDispatcher(registry).invoke("quiet", {}, _context())

        assert not result.failed
        assert not result.changed

    @pytest.mark.asyncio
    async def test_bad_outcome_type(self):
        """Returning something that is not a result fails the task."""
        registry = ModuleRegistry(include_builtins=False)
        registry.register("weird", lambda params, context: 42)

        result = await ModuleDispatcher(registry).invoke("weird", {}, _context())

        assert result.failed
        assert "expected a result" in result.msg

    @pytest.mark.asyncio
    async def test_exception_becomes_module_error(self):
        """An exception inside a module is a failed result of kind ModuleError."""
        result = await ModuleDispatcher().invoke("ping", {"data": "crash"}, _context())

        assert result.failed is True
        assert result.error_kind == "ModuleError"
        assert "RuntimeError: boom" in result.msg

    @pytest.mark.asyncio
    async def test_engine_error_keeps_its_kind(self):
        """Engine errors raised by a module keep their class name."""
        def module(params, context):
            raise VaultBadKeyError("no key")

        registry = ModuleRegistry(include_builtins=False)
        registry.register("vaulty", module)

        result = await ModuleDispatcher(registry).invoke("vaulty", {}, _context())

        assert result.error_kind == "VaultBadKeyError"

    @pytest.mark.asyncio
    async def test_connectivity_error_is_unreachable(self):
        """Connection failures are flagged unreachable."""
        def module(params, context):
            raise ConnectivityError("web1", "timed out", "ssh")

        registry = ModuleRegistry(include_builtins=False)
        registry.register("remote", module)

        result = await ModuleDispatcher(registry).invoke("remote", {}, _context())

        assert result.failed and result.unreachable
        assert result.to_task_result("web1", "remote").status == TaskStatus.FAILED

    @pytest.mark.asyncio
    async def test_residual_template_is_rejected(self):
        """Parameters must be fully rendered before dispatch."""
        recorder = Recorder()
        registry = ModuleRegistry(include_builtins=False)
        registry.register("custom", recorder)

        with pytest.raises(TemplateError):
            await ModuleDispatcher(registry).invoke("custom", {"opts": ["{{ leftover }}"]}, _context())
        assert recorder.calls == []

    @pytest.mark.asyncio
    async def test_check_mode_skips_unsupported(self):
        """Modules without check mode support are skipped, not run."""
        recorder = Recorder({"changed": True})
        registry = ModuleRegistry(include_builtins=False)
        registry.register("mutating", recorder)

        result = await ModuleDispatcher(registry).invoke("mutating", {}, _context(check_mode=True))

        assert result.skipped is True
        assert recorder.calls == []

    @pytest.mark.asyncio
    async def test_check_mode_runs_supported(self):
        """Check-mode aware modules predict without changing state."""
        state = PackageState()
        registry = ModuleRegistry(include_builtins=False)
        registry.register("package", state)
        dispatcher = ModuleDispatcher(registry)

        predicted = await dispatcher.invoke("package", {"name": "nginx"}, _context(check_mode=True))

        assert predicted.changed is True
        assert state.installed["web1"] == set()

    @pytest.mark.asyncio
    async def test_missing_required_arg(self):
        """Class modules validate required arguments."""
        result = await ModuleDispatcher().invoke("assert", {}, _context())

        assert result.failed
        assert "Missing required argument: that" in result.msg


class TestBuiltinModules:
    """Behaviour of the built-in modules."""

    @pytest.mark.asyncio
    async def test_ping(self):
        """ping returns pong."""
        result = await ModuleDispatcher().invoke("ping", {}, _context())
        assert result.results == {"ping": "pong"}
        assert not result.changed

    @pytest.mark.asyncio
    async def test_debug_msg_and_var(self):
        """debug prints a message or a variable."""
        dispatcher = ModuleDispatcher()
        ctx = _context(variables={"port": 80})

        assert (await dispatcher.invoke("debug", {"msg": "hello"}, ctx)).msg == "hello"
        assert (await dispatcher.invoke("debug", {"var": "port"}, ctx)).msg == "port: 80"
        missing = await dispatcher.invoke("debug", {"var": "nope"}, ctx)
        assert missing.msg == "nope: VARIABLE IS NOT DEFINED!"

    @pytest.mark.asyncio
    async def test_set_fact(self):
        """set_fact returns its arguments as facts."""
        result = await ModuleDispatcher().invoke("set_fact", {"color": "blue"}, _context())
        assert result.results == {"ansible_facts": {"color": "blue"}}

    @pytest.mark.asyncio
    async def test_fail(self):
        """fail always fails with its message."""
        result = await ModuleDispatcher().invoke("fail", {"msg": "stop"}, _context())
        assert result.failed and result.msg == "stop"

    @pytest.mark.asyncio
    async def test_assert(self):
        """assert evaluates every condition."""
        dispatcher = ModuleDispatcher()
        ctx = _context(variables={"port": 80})

        passed = await dispatcher.invoke("assert", {"that": ["port == 80", "port > 0"]}, ctx)
        failed = await dispatcher.invoke("assert", {"that": "port == 81", "fail_msg": "wrong port"}, ctx)

        assert not passed.failed
        assert failed.failed and failed.msg == "wrong port"

    @pytest.mark.asyncio
    async def test_command_runs_through_connection(self):
        """command runs via the host connection and always reports changed."""
        conn = FakeConnection(Host("web1"), responses={
            "false": RunResult(rc=1, stdout="", stderr="nope\n"),
        })
        dispatcher = ModuleDispatcher()

        ok = await dispatcher.invoke("command", {"_raw_params": "uptime"}, _context(connection=conn))
        bad = await dispatcher.invoke("command", {"_raw_params": "false"}, _context(connection=conn))

        assert ok.changed and not ok.failed and ok.stdout == "ok"
        assert bad.failed and bad.rc == 1 and bad.stderr == "nope"
        assert conn.commands_run == ["uptime", "false"]

    @pytest.mark.asyncio
    async def test_command_creates(self):
        """creates= skips the command when the path exists."""
        conn = FakeConnection(Host("web1"))
        conn.files["/etc/done"] = {"exists": True}

        result = await ModuleDispatcher().invoke(
            "command", {"_raw_params": "make install", "creates": "/etc/done"}, _context(connection=conn)
        )

        assert not result.changed
        assert conn.commands_run == []

    @pytest.mark.asyncio
    async def test_command_skipped_in_check_mode(self):
        """command cannot predict its effect and is skipped in check mode."""
        conn = FakeConnection(Host("web1"))

        result = await ModuleDispatcher().invoke(
            "shell", {"_raw_params": "rm -rf /tmp/x"}, _context(check_mode=True, connection=conn)
        )

        assert result.skipped
        assert conn.commands_run == []

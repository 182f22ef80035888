"""
Converge Module Base

Base class, registry and dispatcher for modules.

A module is any invokable registered under a name: a ``Module`` subclass,
or a plain function ``fn(params, context)`` returning a ``ModuleResult`` or
a dict (sync or async). The engine only talks to modules through
``ModuleDispatcher.invoke``.
"""

import inspect
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Type, Union

from converge.engine.errors import ConnectivityError, ConvergeError, TemplateError
from converge.engine.inventory import Host
from converge.engine.results import TaskResult, TaskStatus
from converge.engine.templating import TemplateEngine, has_template

logger = logging.getLogger(__name__)


@dataclass
class ModuleResult:
    """Result of module execution."""

    changed: bool = False
    rc: int = 0
    stdout: str = ""
    stderr: str = ""
    msg: str = ""
    failed: bool = False
    skipped: bool = False
    results: Dict[str, Any] = field(default_factory=dict)
    unreachable: bool = False
    error_kind: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'ModuleResult':
        """Build a result from an Ansible-style return dict."""
        known = {f.name for f in fields(cls)} - {'results'}
        kwargs = {k: v for k, v in data.items() if k in known}
        kwargs['results'] = {k: v for k, v in data.items() if k not in known}
        return cls(**kwargs)

    def to_task_result(self, host: str, task_name: str) -> TaskResult:
        """Convert to TaskResult."""
        if self.skipped:
            status = TaskStatus.SKIPPED
        elif self.failed or self.unreachable:
            status = TaskStatus.FAILED
        elif self.changed:
            status = TaskStatus.CHANGED
        else:
            status = TaskStatus.OK

        return TaskResult(
            host=host,
            task_name=task_name,
            status=status,
            changed=self.changed,
            rc=self.rc,
            stdout=self.stdout,
            stderr=self.stderr,
            msg=self.msg,
            results=self.results,
            error_kind=self.error_kind,
            unreachable=self.unreachable,
        )


@dataclass
class ModuleContext:
    """What a module may see of the host it runs on."""

    host: Host
    vars: Mapping[str, Any]
    templar: TemplateEngine
    connection: Any = None  # Connection object, None when the host has none
    check_mode: bool = False
    diff_mode: bool = False
    become: bool = False
    become_user: str = "root"
    become_method: str = "sudo"

    def get_vars(self) -> Mapping[str, Any]:
        """Get all variables for templating."""
        return self.vars


class Module(ABC):
    """
    Base class for class-based modules.

    Modules implement task execution logic for specific operations.
    """

    # Module name (used for registration)
    name: str = ""

    # Required arguments
    required_args: List[str] = []

    # Optional arguments with defaults
    optional_args: Dict[str, Any] = {}

    # Modules that can predict their outcome without changing anything
    supports_check_mode: bool = False

    def __init__(self, args: Dict[str, Any], context: ModuleContext):
        self.args = args
        self.context = context
        self.connection = context.connection

    def validate_args(self) -> Optional[str]:
        """
        Validate module arguments.

        Returns:
            Error message if validation fails, None otherwise
        """
        for required in self.required_args:
            if required not in self.args:
                return f"Missing required argument: {required}"
        return None

    def get_arg(self, name: str, default: Any = None) -> Any:
        """Get an argument value with optional default."""
        if name in self.args:
            return self.args[name]
        if name in self.optional_args:
            return self.optional_args[name]
        return default

    def wrap_become(self, cmd: str) -> str:
        """Wrap command with privilege escalation if become is enabled."""
        if not self.context.become:
            return cmd

        method = self.context.become_method
        user = self.context.become_user

        if method == "su":
            return f"su - {user} -c '{cmd}'"
        # Default to sudo
        return f"sudo -u {user} {cmd}"

    @abstractmethod
    async def run(self) -> ModuleResult:
        """
        Execute the module.

        Returns:
            ModuleResult with execution outcome
        """


Invokable = Union[Type[Module], Callable[..., Any]]

# Built-in modules register themselves here on import
_builtin_modules: Dict[str, Invokable] = {}


def register_module(cls: Type[Module]) -> Type[Module]:
    """Decorator to register a built-in module class."""
    _builtin_modules[cls.name] = cls
    return cls


class ModuleRegistry:
    """Name -> invokable mapping consulted by the dispatcher."""

    def __init__(self, include_builtins: bool = True):
        self._modules: Dict[str, Invokable] = {}
        self._check_mode: Dict[str, bool] = {}
        if include_builtins:
            _import_builtin_modules()
            self._modules.update(_builtin_modules)

    def register(
        self,
        name: str,
        invokable: Invokable,
        supports_check_mode: Optional[bool] = None,
    ) -> Invokable:
        """
        Register a module under ``name``.

        Args:
            name: Short module name used in tasks
            invokable: Module subclass or callable ``fn(params, context)``
            supports_check_mode: Override the invokable's own declaration
        """
        self._modules[name] = invokable
        if supports_check_mode is not None:
            self._check_mode[name] = supports_check_mode
        return invokable

    def get(self, name: str) -> Optional[Invokable]:
        """Get a module by name; 'ns.collection.name' falls back to 'name'."""
        if name in self._modules:
            return self._modules[name]
        if '.' in name:
            return self._modules.get(name.rsplit('.', 1)[1])
        return None

    def supports_check_mode(self, name: str) -> bool:
        if name not in self._check_mode and '.' in name:
            name = name.rsplit('.', 1)[1]
        if name in self._check_mode:
            return self._check_mode[name]
        return bool(getattr(self.get(name), 'supports_check_mode', False))

    def names(self) -> List[str]:
        """List all registered module names."""
        return sorted(self._modules)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.get(name) is not None

    def __iter__(self) -> Iterator[str]:
        return iter(self._modules)


def _find_template(value: Any) -> Optional[str]:
    if has_template(value):
        return value
    if isinstance(value, dict):
        for item in value.values():
            found = _find_template(item)
            if found is not None:
                return found
    if isinstance(value, (list, tuple)):
        for item in value:
            found = _find_template(item)
            if found is not None:
                return found
    return None


class ModuleDispatcher:
    """
    Invoke modules by name with fully rendered parameters.

    The module's outcome is reported unchanged; exceptions become failed
    results instead of propagating.
    """

    def __init__(self, registry: Optional[ModuleRegistry] = None):
        self.registry = registry if registry is not None else ModuleRegistry()

    async def invoke(self, module_name: str, params: Dict[str, Any], context: ModuleContext) -> ModuleResult:
        """
        Run one module invocation.

        Raises:
            TemplateError: A parameter still contains template markers
        """
        residual = _find_template(params)
        if residual is not None:
            raise TemplateError(
                f"unrendered template in parameters of module '{module_name}'",
                template=residual,
            )

        invokable = self.registry.get(module_name)
        if invokable is None:
            return ModuleResult(
                failed=True,
                msg=f"Unknown module: {module_name}",
                error_kind='ModuleError',
            )

        if context.check_mode and not self.registry.supports_check_mode(module_name):
            logger.debug("Skipping %s on %s: no check mode support", module_name, context.host.name)
            return ModuleResult(skipped=True, msg="Module does not support check mode")

        logger.debug("Invoking %s on %s", module_name, context.host.name)
        try:
            if inspect.isclass(invokable) and issubclass(invokable, Module):
                module = invokable(params, context)
                error = module.validate_args()
                if error:
                    return ModuleResult(failed=True, msg=error, error_kind='ModuleError')
                outcome: Any = await module.run()
            else:
                outcome = invokable(params, context)
                if inspect.isawaitable(outcome):
                    outcome = await outcome
        except ConnectivityError as e:
            return ModuleResult(failed=True, unreachable=True, msg=str(e), error_kind=type(e).__name__)
        except ConvergeError as e:
            return ModuleResult(failed=True, msg=str(e), error_kind=type(e).__name__)
        except Exception as e:
            logger.debug("Module %s raised on %s", module_name, context.host.name, exc_info=True)
            return ModuleResult(failed=True, msg=f"{type(e).__name__}: {e}", error_kind='ModuleError')

        return self._coerce(module_name, outcome)

    def _coerce(self, module_name: str, outcome: Any) -> ModuleResult:
        if isinstance(outcome, ModuleResult):
            return outcome
        if isinstance(outcome, Mapping):
            return ModuleResult.from_dict(outcome)
        if outcome is None:
            return ModuleResult()
        return ModuleResult(
            failed=True,
            msg=f"Module '{module_name}' returned {type(outcome).__name__}, expected a result",
            error_kind='ModuleError',
        )


def _import_builtin_modules() -> None:
    """Import all built-in modules to register them."""
    # These imports trigger the @register_module decorators
    from converge.modules import builtin_assert  # noqa: F401
    from converge.modules import builtin_command  # noqa: F401
    from converge.modules import builtin_debug  # noqa: F401
    from converge.modules import builtin_fail  # noqa: F401
    from converge.modules import builtin_ping  # noqa: F401
    from converge.modules import builtin_set_fact  # noqa: F401

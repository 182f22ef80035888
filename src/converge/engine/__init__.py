"""
Converge Engine Module

Core execution engine for resolving inventories and running playbooks.

The scheduler and runner live in their own modules:

    from converge.engine.runner import PlaybookRunner
"""

from converge.engine.errors import (
    ConnectivityError,
    ConvergeError,
    ExitCode,
    InventoryError,
    ModuleError,
    ParseError,
    TemplateError,
    UndefinedVariableError,
    UnknownHandlerError,
    UnsupportedFeatureError,
    VariableError,
    VaultError,
)
from converge.engine.handlers import HandlerRegistry
from converge.engine.inventory import Group, Host, InventoryManager
from converge.engine.playbook import Play, PlaybookParser, Task
from converge.engine.results import HostState, PlaybookResult, PlayResult, TaskResult, TaskStatus
from converge.engine.templating import TemplateEngine
from converge.engine.variables import Tier, VariableBag, VariableManager
from converge.engine.vault import EncryptedValue, VaultLib, VaultSecret

__all__ = [
    'ConnectivityError',
    'ConvergeError',
    'EncryptedValue',
    'ExitCode',
    'Group',
    'HandlerRegistry',
    'Host',
    'HostState',
    'InventoryError',
    'InventoryManager',
    'ModuleError',
    'ParseError',
    'Play',
    'PlaybookParser',
    'PlaybookResult',
    'PlayResult',
    'Task',
    'TaskResult',
    'TaskStatus',
    'TemplateEngine',
    'TemplateError',
    'Tier',
    'UndefinedVariableError',
    'UnknownHandlerError',
    'UnsupportedFeatureError',
    'VariableBag',
    'VariableError',
    'VariableManager',
    'VaultError',
    'VaultLib',
    'VaultSecret',
]

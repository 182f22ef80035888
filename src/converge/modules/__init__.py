"""
Converge Modules

Module registry, dispatcher and the built-in shims.
"""

from converge.modules.base import (
    Module,
    ModuleContext,
    ModuleDispatcher,
    ModuleRegistry,
    ModuleResult,
    register_module,
)

__all__ = [
    'Module',
    'ModuleContext',
    'ModuleDispatcher',
    'ModuleRegistry',
    'ModuleResult',
    'register_module',
]

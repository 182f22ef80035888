"""
Converge debug module

Print debug messages during playbook execution.
"""

import json
from typing import Optional

from converge.engine.errors import TemplateError, UndefinedVariableError
from converge.modules.base import Module, ModuleResult, register_module


@register_module
class DebugModule(Module):
    """
    Print debug messages.

    Useful for printing variable values and troubleshooting playbooks.
    ``var`` takes an expression, e.g. ``result.stdout_lines[0]``.
    """

    name = "debug"
    required_args = []
    optional_args = {
        "msg": "Hello world!",
        "var": None,
        "verbosity": 0,
    }
    supports_check_mode = True

    def validate_args(self) -> Optional[str]:
        if "msg" in self.args and "var" in self.args:
            return "'msg' and 'var' are mutually exclusive"
        return None

    async def run(self) -> ModuleResult:
        """Produce the debug message."""
        msg = self.get_arg("msg")
        var = self.get_arg("var")

        if var:
            try:
                value = self.context.templar.evaluate(str(var), self.context.get_vars())
            except UndefinedVariableError:
                value = "VARIABLE IS NOT DEFINED!"
            except TemplateError as e:
                return ModuleResult(failed=True, msg=str(e))
            if isinstance(value, (dict, list)):
                output = f"{var}: {json.dumps(value, indent=2, default=str)}"
            else:
                output = f"{var}: {value}"
            return ModuleResult(changed=False, msg=output, results={str(var): value})

        output = msg if isinstance(msg, str) else json.dumps(msg, default=str)
        return ModuleResult(
            changed=False,
            msg=output,
            results={"msg": msg},
        )

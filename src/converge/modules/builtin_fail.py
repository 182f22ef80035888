"""
Converge fail module

Stop the current host with a message, usually guarded by ``when``.
"""

import json

from converge.modules.base import Module, ModuleResult, register_module

DEFAULT_MESSAGE = "Failed as requested from task"


@register_module
class FailModule(Module):
    """Always fails. Other hosts are unaffected."""

    name = "fail"
    required_args = []
    optional_args = {"msg": DEFAULT_MESSAGE}
    supports_check_mode = True

    async def run(self) -> ModuleResult:
        msg = self.get_arg("msg", DEFAULT_MESSAGE)
        if not isinstance(msg, str):
            msg = json.dumps(msg, default=str)
        return ModuleResult(failed=True, msg=msg)

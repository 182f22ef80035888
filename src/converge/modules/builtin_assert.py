"""
Converge assert module

Assert conditions during playbook execution.
"""

from converge.engine.errors import TemplateError
from converge.modules.base import Module, ModuleResult, register_module


@register_module
class AssertModule(Module):
    """
    Assert conditions are true.

    ``that`` is rendered lazily: conditions are bare expressions evaluated
    against the host's variables, like ``when``.
    """

    name = "assert"
    required_args = ["that"]
    optional_args = {
        "msg": None,
        "success_msg": None,
        "fail_msg": None,
        "quiet": False,
    }
    supports_check_mode = True

    async def run(self) -> ModuleResult:
        """Evaluate assertions."""
        that = self.args["that"]
        msg = self.get_arg("fail_msg") or self.get_arg("msg")
        success_msg = self.get_arg("success_msg")
        quiet = self.get_arg("quiet", False)

        conditions = [that] if not isinstance(that, list) else list(that)

        host_vars = self.context.get_vars()
        templar = self.context.templar

        for condition in conditions:
            try:
                passed = templar.evaluate_when(condition, host_vars)
            except TemplateError as e:
                return ModuleResult(
                    failed=True,
                    msg=f"The conditional check '{condition}' failed: {e}",
                    results={"assertion": condition, "evaluated_to": False},
                )
            if not passed:
                return ModuleResult(
                    failed=True,
                    msg=str(msg) if msg else "Assertion failed",
                    results={"assertion": condition, "evaluated_to": False},
                )

        return ModuleResult(
            changed=False,
            msg="" if quiet else (success_msg or "All assertions passed"),
        )

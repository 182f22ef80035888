"""
Converge set_fact module

Set host facts (variables) during playbook execution.
"""

from typing import Optional

from converge.modules.base import Module, ModuleResult, register_module


@register_module
class SetFactModule(Module):
    """
    Set host facts from task.

    The facts are returned under ``ansible_facts``; the scheduler layers
    them onto the host's variables for subsequent tasks.
    """

    name = "set_fact"
    required_args = []
    optional_args = {
        "cacheable": False,  # Accepted for compatibility, no fact cache
    }
    supports_check_mode = True

    def validate_args(self) -> Optional[str]:
        if not any(key != "cacheable" for key in self.args):
            return "No key/value pairs provided, at least one is required"
        return None

    async def run(self) -> ModuleResult:
        """Set the facts."""
        facts = {k: v for k, v in self.args.items() if k != "cacheable"}

        return ModuleResult(
            changed=False,  # set_fact is not considered a change
            results={"ansible_facts": facts},
        )

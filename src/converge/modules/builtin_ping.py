"""
Converge ping module

Proves that a host is reachable: the scheduler has already opened the
connection by the time the module runs.
"""

from converge.modules.base import Module, ModuleResult, register_module


@register_module
class PingModule(Module):
    """
    Returns ``ping: <data>`` without touching the host.

    ``data=crash`` raises instead, to exercise failure handling.
    """

    name = "ping"
    required_args = []
    optional_args = {"data": "pong"}
    supports_check_mode = True

    async def run(self) -> ModuleResult:
        data = self.get_arg("data", "pong")
        if data == "crash":
            raise RuntimeError("boom")
        return ModuleResult(results={"ping": data})

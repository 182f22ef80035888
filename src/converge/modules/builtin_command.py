"""
Converge command and shell modules

Execute commands through the host's connection provider.
"""

import shlex
from typing import Optional

from converge.modules.base import Module, ModuleResult, register_module


@register_module
class CommandModule(Module):
    """
    Execute commands on target hosts.

    Unlike shell, this module does not process commands through a shell,
    so shell operators and variables won't work.
    """

    name = "command"
    required_args = []  # Either _raw_params, cmd or argv
    optional_args = {
        "chdir": None,
        "creates": None,
        "removes": None,
    }
    use_shell = False

    def validate_args(self) -> Optional[str]:
        if not any(k in self.args for k in ("_raw_params", "cmd", "argv")):
            return "Either free-form command, 'cmd' or 'argv' is required"
        return None

    def _command_line(self) -> str:
        if "argv" in self.args and not self.use_shell:
            return " ".join(shlex.quote(str(a)) for a in self.args["argv"])
        return str(self.args.get("_raw_params") or self.args.get("cmd", ""))

    async def run(self) -> ModuleResult:
        """Execute the command."""
        if not self.connection:
            return ModuleResult(
                failed=True,
                msg="No connection available",
            )

        cmd = self._command_line()
        creates = self.get_arg("creates")
        removes = self.get_arg("removes")

        # Check 'creates' - skip if file exists
        if creates:
            stat_result = await self.connection.stat(creates)
            if stat_result and stat_result.get("exists"):
                return ModuleResult(
                    changed=False,
                    msg=f"skipped, since {creates} exists",
                    rc=0,
                )

        # Check 'removes' - skip if file doesn't exist
        if removes:
            stat_result = await self.connection.stat(removes)
            if not stat_result or not stat_result.get("exists"):
                return ModuleResult(
                    changed=False,
                    msg=f"skipped, since {removes} does not exist",
                    rc=0,
                )

        result = await self.connection.run(
            self.wrap_become(cmd),
            shell=self.use_shell,
            cwd=self.get_arg("chdir"),
        )

        return ModuleResult(
            changed=True,  # Commands always report changed
            rc=result.rc,
            stdout=result.stdout.rstrip("\n"),
            stderr=result.stderr.rstrip("\n"),
            failed=result.rc != 0,
            msg=f"non-zero return code: {result.rc}" if result.rc != 0 else "",
            results={"cmd": cmd},
        )


@register_module
class ShellModule(CommandModule):
    """Execute commands through /bin/sh."""

    name = "shell"
    use_shell = True

"""
Converge Local Connection

Runs module commands as subprocesses of the control node. Selected for
``localhost`` and for any host with ``ansible_connection=local``.
"""

import asyncio
import logging
import os
import shlex
from pathlib import Path
from typing import Dict, Optional

from converge.connections.base import Connection, RunResult
from converge.engine.inventory import Host

logger = logging.getLogger(__name__)

# Exit codes reported in place of a real process status
RC_NOT_STARTED = 127
RC_TIMED_OUT = 124


def _decode(data: bytes) -> str:
    return data.decode('utf-8', errors='replace')


class LocalConnection(Connection):
    """Connection provider for the control node itself."""

    def __init__(self, host: Host):
        super().__init__(host)
        self.open = False

    async def connect(self) -> None:
        self.open = True

    async def close(self) -> None:
        self.open = False

    def _environment(self, extra: Optional[dict]) -> Dict[str, str]:
        env = dict(os.environ)
        for key, value in (extra or {}).items():
            env[str(key)] = str(value)
        return env

    async def _spawn(self, command: str, shell: bool, cwd: Optional[str],
                     env: Dict[str, str]) -> asyncio.subprocess.Process:
        pipes = {'stdout': asyncio.subprocess.PIPE, 'stderr': asyncio.subprocess.PIPE}
        if shell:
            return await asyncio.create_subprocess_shell(command, cwd=cwd, env=env, **pipes)
        argv = shlex.split(command)
        return await asyncio.create_subprocess_exec(*argv, cwd=cwd, env=env, **pipes)

    async def run(
        self,
        command: str,
        shell: bool = True,
        timeout: Optional[int] = None,
        cwd: Optional[str] = None,
        environment: Optional[dict] = None,
    ) -> RunResult:
        """
        Run a command on the control node.

        A command that cannot be started reports rc 127; one that outlives
        ``timeout`` is killed and reports rc 124.
        """
        logger.debug("%s: exec %s", self.host.name, command)
        try:
            process = await self._spawn(command, shell, cwd, self._environment(environment))
        except (OSError, ValueError) as e:
            return RunResult(rc=RC_NOT_STARTED, stdout="", stderr=str(e))

        try:
            out, err = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return RunResult(rc=RC_TIMED_OUT, stdout="", stderr=f"Command timed out after {timeout}s")

        return RunResult(rc=process.returncode or 0, stdout=_decode(out), stderr=_decode(err))

    async def stat(self, remote_path: str) -> Optional[dict]:
        """Describe a path on the control node, or None when it is missing."""
        path = Path(remote_path).expanduser()
        try:
            info = path.stat()
        except FileNotFoundError:
            return None

        return {
            'exists': True,
            'path': str(path),
            'isdir': path.is_dir(),
            'isfile': path.is_file(),
            'islink': path.is_symlink(),
            'size': info.st_size,
            'mtime': info.st_mtime,
            'mode': oct(info.st_mode)[-4:],
        }

"""
Converge SSH Connection (asyncssh)

Runs module commands on a remote host over one SSH session per host and
play. Connection settings come from the host's ``ansible_*`` variables.
"""

import asyncio
import getpass
import logging
import shlex
import stat as stat_module
from typing import Any, Dict, Optional

import asyncssh

from converge.connections.base import Connection, RunResult
from converge.engine.errors import ConnectivityError
from converge.engine.inventory import Host

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 30
FALSE_STRINGS = ('false', 'no', 'off', '0')


def build_command(
    command: str,
    shell: bool = True,
    cwd: Optional[str] = None,
    environment: Optional[dict] = None,
) -> str:
    """Compose the remote command line: env assignments, cd, then the command."""
    line = command
    if cwd:
        line = f"cd {shlex.quote(cwd)} && {line}"
    if shell or cwd:
        line = f"/bin/sh -c {shlex.quote(line)}"
    if environment:
        assignments = " ".join(f"{k}={shlex.quote(str(v))}" for k, v in environment.items())
        line = f"env {assignments} {line}"
    return line


class SSHConnection(Connection):
    """Connection provider backed by asyncssh."""

    def __init__(self, host: Host):
        super().__init__(host)
        self._conn: Optional[asyncssh.SSHClientConnection] = None
        self._sftp: Optional[asyncssh.SFTPClient] = None

    def _unreachable(self, message: str) -> ConnectivityError:
        return ConnectivityError(host=self.host.name, message=message, connection_type='ssh')

    def connect_options(self) -> Dict[str, Any]:
        """asyncssh.connect() keyword arguments for this host."""
        host = self.host
        options: Dict[str, Any] = {
            'host': host.address,
            'port': host.port,
            'username': host.user or getpass.getuser(),
            'connect_timeout': int(host.get_variable('ansible_ssh_timeout', DEFAULT_CONNECT_TIMEOUT)),
        }

        password = host.get_variable('ansible_password') or host.get_variable('ansible_ssh_pass')
        if password:
            options['password'] = str(password)

        key_file = host.get_variable('ansible_ssh_private_key_file')
        if key_file:
            options['client_keys'] = [str(key_file)]

        checking = host.get_variable('ansible_ssh_host_key_checking', True)
        if checking is False or str(checking).lower() in FALSE_STRINGS:
            options['known_hosts'] = None

        return options

    async def connect(self) -> None:
        options = self.connect_options()
        logger.debug("Opening SSH session to %s@%s:%s", options['username'], options['host'], options['port'])
        try:
            self._conn = await asyncssh.connect(**options)
        except (OSError, asyncssh.Error, asyncio.TimeoutError) as e:
            raise self._unreachable(str(e) or type(e).__name__)

    async def close(self) -> None:
        if self._sftp is not None:
            self._sftp.exit()
            self._sftp = None
        if self._conn is not None:
            self._conn.close()
            await self._conn.wait_closed()
            self._conn = None

    async def run(
        self,
        command: str,
        shell: bool = True,
        timeout: Optional[int] = None,
        cwd: Optional[str] = None,
        environment: Optional[dict] = None,
    ) -> RunResult:
        """
        Run a command on the remote host.

        Raises:
            ConnectivityError: The session is closed or dropped mid-command
        """
        if self._conn is None:
            raise self._unreachable("Not connected")

        line = build_command(command, shell=shell, cwd=cwd, environment=environment)
        try:
            completed = await asyncio.wait_for(self._conn.run(line, check=False), timeout=timeout)
        except asyncio.TimeoutError:
            return RunResult(rc=124, stdout="", stderr=f"Command timed out after {timeout}s")
        except (OSError, asyncssh.Error) as e:
            raise self._unreachable(str(e))

        return RunResult(
            rc=completed.exit_status or 0,
            stdout=str(completed.stdout or ""),
            stderr=str(completed.stderr or ""),
        )

    async def stat(self, remote_path: str) -> Optional[dict]:
        """Describe a remote path over SFTP, or None when it is missing."""
        if self._conn is None:
            raise self._unreachable("Not connected")
        if self._sftp is None:
            self._sftp = await self._conn.start_sftp_client()

        try:
            attrs = await self._sftp.stat(remote_path)
        except asyncssh.SFTPError:
            return None

        mode = attrs.permissions or 0
        return {
            'exists': True,
            'path': remote_path,
            'isdir': stat_module.S_ISDIR(mode),
            'isfile': stat_module.S_ISREG(mode),
            'islink': stat_module.S_ISLNK(mode),
            'size': attrs.size or 0,
            'mtime': attrs.mtime or 0,
            'mode': oct(mode)[-4:],
        }

"""
Converge Connection Base Class

Abstract base class for connection providers and the factory that picks
one for a host.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Coroutine, Dict, Optional, Type

from converge.engine.errors import ConnectivityError, ConvergeError, UnsupportedFeatureError
from converge.engine.inventory import Host

logger = logging.getLogger(__name__)


@dataclass
class RunResult:
    """Result of running a command on a host."""

    rc: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.rc == 0


class Connection(ABC):
    """
    Abstract base class for connections.

    Every provider (local, ssh) implements this interface. Failing to
    reach the host raises ConnectivityError.
    """

    def __init__(self, host: Host):
        self.host = host

    @abstractmethod
    async def connect(self) -> None:
        """Establish the connection."""

    @abstractmethod
    async def close(self) -> None:
        """Close the connection."""

    @abstractmethod
    async def run(
        self,
        command: str,
        shell: bool = True,
        timeout: Optional[int] = None,
        cwd: Optional[str] = None,
        environment: Optional[dict] = None,
    ) -> RunResult:
        """
        Run a command on the host.

        Args:
            command: Command to execute
            shell: If True, run through a shell
            timeout: Optional timeout in seconds
            cwd: Working directory
            environment: Environment variables

        Returns:
            RunResult with rc, stdout, stderr
        """

    @abstractmethod
    async def stat(self, remote_path: str) -> Optional[dict]:
        """
        Get file/directory information.

        Args:
            remote_path: Path to stat

        Returns:
            Dict with 'exists', 'isdir', 'size', 'mtime' or None if not found
        """

    @property
    def connection_type(self) -> str:
        """Return the connection type name."""
        return self.__class__.__name__.replace('Connection', '').lower()


ConnectionFactory = Callable[[Host], Coroutine[Any, Any, Connection]]


def _load_provider(conn_type: str) -> Type[Connection]:
    if conn_type == 'local':
        from converge.connections.local import LocalConnection
        return LocalConnection
    if conn_type == 'ssh':
        try:
            from converge.connections.ssh_asyncssh import SSHConnection
        except ImportError:
            raise UnsupportedFeatureError(
                "ssh connections",
                suggestion="SSH support requires asyncssh. Install with: pip install converge[ssh]",
            )
        return SSHConnection
    raise UnsupportedFeatureError(
        f"connection type '{conn_type}'",
        suggestion="Use ansible_connection=local or ansible_connection=ssh",
    )


def create_connection_factory(
    providers: Optional[Dict[str, Type[Connection]]] = None,
) -> ConnectionFactory:
    """
    Create a connection factory function.

    Args:
        providers: Extra or replacement providers keyed by connection type

    Returns a coroutine that creates and connects the provider selected by
    the host's ansible_connection.
    """
    overrides = dict(providers or {})

    async def factory(host: Host) -> Connection:
        conn_type = host.ansible_connection
        provider = overrides.get(conn_type) or _load_provider(conn_type)
        conn = provider(host)
        logger.debug("Connecting to %s via %s", host.name, conn_type)
        try:
            await conn.connect()
        except ConvergeError:
            raise
        except OSError as e:
            raise ConnectivityError(host.name, str(e), connection_type=conn_type)
        return conn

    return factory

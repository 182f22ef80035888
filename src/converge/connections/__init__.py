"""
Converge Connections

Connection providers: local and SSH (asyncssh).
"""

from converge.connections.base import (
    Connection,
    ConnectionFactory,
    RunResult,
    create_connection_factory,
)
from converge.connections.local import LocalConnection

__all__ = [
    'Connection',
    'ConnectionFactory',
    'RunResult',
    'LocalConnection',
    'create_connection_factory',
]

"""Configuration for TempDB client components."""

from __future__ import annotations

import ssl
from dataclasses import dataclass, replace
from enum import Enum

from tempdb_client.protocol import DEFAULT_PORT

DEFAULT_ADDRESS = "127.0.0.1:8081"
DEFAULT_POOL_CAPACITY = 10


class CommandPrefix(Enum):
    """What every command line is prefixed with.

    ``NAMESPACE`` re-sends the namespace-context string on each command.
    ``SESSION`` forwards the session id negotiated by the handshake.
    """

    NAMESPACE = "namespace"
    SESSION = "session"


@dataclass(frozen=True, slots=True)
class ClientConfig:
    """Connection settings for one logical database.

    Instances are immutable and hashable; the connection pool keys idle
    connections by config.
    """

    address: str = DEFAULT_ADDRESS
    namespace: str = ""
    use_tls: bool = False
    ssl_context: ssl.SSLContext | None = None
    connect_timeout_s: float = 5.0
    handshake: bool = True
    command_prefix: CommandPrefix = CommandPrefix.NAMESPACE
    read_limit: int = 16 * 1024 * 1024

    def __post_init__(self) -> None:
        if self.command_prefix is CommandPrefix.SESSION and not self.handshake:
            raise ValueError("session prefix requires the auth handshake")
        if self.connect_timeout_s <= 0:
            raise ValueError("connect_timeout_s must be positive")

    @property
    def host(self) -> str:
        host, _, _ = self.address.rpartition(":")
        return host or self.address

    @property
    def port(self) -> int:
        host, _, port_str = self.address.rpartition(":")
        if not host or not port_str:
            return DEFAULT_PORT
        return int(port_str)

    def tls_context(self) -> ssl.SSLContext | None:
        """SSL context to dial with, or None for plain TCP."""
        if not self.use_tls:
            return None
        return self.ssl_context or ssl.create_default_context()

    def with_address(self, address: str) -> ClientConfig:
        return replace(self, address=address)

    def with_namespace(self, namespace: str) -> ClientConfig:
        return replace(self, namespace=namespace)

    def with_connect_timeout(self, timeout_s: float) -> ClientConfig:
        return replace(self, connect_timeout_s=timeout_s)

    def with_ssl(self, ctx: ssl.SSLContext | None = None) -> ClientConfig:
        return replace(self, use_tls=True, ssl_context=ctx)

    def with_session_prefix(self) -> ClientConfig:
        return replace(self, handshake=True, command_prefix=CommandPrefix.SESSION)

    def without_handshake(self) -> ClientConfig:
        return replace(self, handshake=False, command_prefix=CommandPrefix.NAMESPACE)

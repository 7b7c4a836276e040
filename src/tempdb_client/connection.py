"""Authenticated TCP connection to a TempDB server.

One ``Connection`` wraps one socket and carries:
- a single long-lived ``StreamReader``/``StreamWriter`` pair
- the auth handshake and negotiated session id
- exclusive access for each command's request/reply exchange
- hand-off to a ``Subscription`` for push delivery
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from enum import Enum
from typing import Any

from tempdb_client.config import ClientConfig, CommandPrefix
from tempdb_client.errors import (
    AuthenticationError,
    ConnectionError,
    ProtocolError,
    TempDBError,
    TimeoutError,
)
from tempdb_client.protocol import (
    AUTH_OK_PREFIX,
    Reply,
    decode_reply,
    encode_auth,
    encode_command,
    read_line,
    read_reply_text,
)

log = logging.getLogger("tempdb_client.connection")


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    READY = "ready"
    SUBSCRIBED = "subscribed"
    FAILED = "failed"
    CLOSED = "closed"


class Connection:
    """A single TempDB session; at most one command in flight at a time."""

    def __init__(self, config: ClientConfig) -> None:
        self._config = config
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._lock = asyncio.Lock()
        self._state = ConnectionState.DISCONNECTED
        self._session_id: str | None = None

    def __repr__(self) -> str:
        return f"<Connection {self._config.address} {self._state.value}>"

    @property
    def config(self) -> ClientConfig:
        return self._config

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def ready(self) -> bool:
        return self._state is ConnectionState.READY

    # ----- lifecycle -----

    async def open(self) -> Connection:
        """Dial and, unless the deployment skips it, authenticate."""
        if self._config.handshake:
            _check_namespace(self._config.namespace)
        await self.connect()
        if self._config.handshake:
            await self.authenticate()
        else:
            self._state = ConnectionState.READY
        return self

    async def connect(self) -> None:
        """Open the TCP connection within ``connect_timeout_s``."""
        cfg = self._config
        self._state = ConnectionState.CONNECTING
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(
                    cfg.host,
                    cfg.port,
                    ssl=cfg.tls_context(),
                    limit=cfg.read_limit,
                ),
                timeout=cfg.connect_timeout_s,
            )
        except asyncio.TimeoutError as e:
            self._state = ConnectionState.FAILED
            raise TimeoutError(
                f"Connection to {cfg.address} timed out after {cfg.connect_timeout_s}s"
            ) from e
        except OSError as e:
            self._state = ConnectionState.FAILED
            raise ConnectionError(f"Failed to connect to {cfg.address}: {e}") from e

        log.info("Connected to %s", cfg.address)

    async def authenticate(self) -> str:
        """Send the namespace-context and expect ``AUTH OK <session-id>``.

        Returns the session id. On any failure the socket is torn down.
        """
        namespace = self._config.namespace
        try:
            _check_namespace(namespace)
        except AuthenticationError:
            await self._fail()
            raise
        if self._writer is None or self._reader is None:
            raise ConnectionError("Not connected")

        self._state = ConnectionState.AUTHENTICATING
        async with self._lock:
            try:
                self._writer.write(encode_auth(namespace))
                await self._writer.drain()
                line = await read_line(self._reader)
            except (OSError, ConnectionError, ProtocolError) as e:
                await self._fail()
                raise AuthenticationError(f"Authentication exchange failed: {e}") from e

        reply = line.strip()
        if not line.startswith(AUTH_OK_PREFIX):
            await self._fail()
            raise AuthenticationError(f"Authentication failed: {reply}", reply=reply)

        session_id = reply[len(AUTH_OK_PREFIX):].strip()
        if not session_id:
            await self._fail()
            raise AuthenticationError("Authentication reply carries no session id", reply=reply)

        self._session_id = session_id
        self._state = ConnectionState.READY
        log.debug("Authenticated to %s", self._config.address)
        return self._session_id

    async def close(self) -> None:
        """Close the socket. Safe to call more than once."""
        if self._state in (ConnectionState.CLOSED, ConnectionState.SUBSCRIBED):
            return
        self._state = ConnectionState.CLOSED
        await self._close_writer()
        log.info("Disconnected from %s", self._config.address)

    async def __aenter__(self) -> Connection:
        if self._state is ConnectionState.DISCONNECTED:
            await self.open()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # ----- commands -----

    @property
    def command_prefix(self) -> str:
        if self._config.command_prefix is CommandPrefix.SESSION:
            return self._session_id or ""
        return self._config.namespace

    async def execute(self, command: str, *args: Any) -> Reply:
        """Send one command and decode its reply.

        Raises:
            ConnectionError: not ready, or the socket failed mid-exchange.
            ServerError / EmptyResultError: the server rejected the command.
            ProtocolError: the reply could not be framed or decoded.

        Any failure while reading the reply frame marks the connection
        ``FAILED``. Errors decoded from a complete frame leave it ``READY``.
        """
        line = encode_command(self.command_prefix, command, *args)

        async with self._lock:
            if not self.ready or self._writer is None or self._reader is None:
                raise ConnectionError(f"Connection is not ready (state={self._state.value})")
            try:
                self._writer.write(line)
                await self._writer.drain()
                text = await read_reply_text(self._reader)
            except OSError as e:
                self._state = ConnectionState.FAILED
                raise ConnectionError(f"Send failed: {e}") from e
            except (TempDBError, asyncio.CancelledError):
                # part of the reply may still be unread; the stream is out of step
                self._state = ConnectionState.FAILED
                raise

        return decode_reply(text)

    async def ping(self) -> float:
        """Round-trip a ``PING``. Returns latency in seconds."""
        start = time.monotonic()
        await self.execute("PING")
        return time.monotonic() - start

    # ----- subscription hand-off -----

    def detach_for_subscription(
        self,
    ) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        """Give up the stream to a subscription reader.

        The connection stops accepting commands; the caller owns the socket.
        """
        if not self.ready or self._reader is None or self._writer is None:
            raise ConnectionError(f"Connection is not ready (state={self._state.value})")
        if self._lock.locked():
            raise ConnectionError("Connection has a command in flight")
        reader, writer = self._reader, self._writer
        self._reader = self._writer = None
        self._state = ConnectionState.SUBSCRIBED
        return reader, writer

    # ----- internal -----

    async def _fail(self) -> None:
        self._state = ConnectionState.FAILED
        await self._close_writer()

    async def _close_writer(self) -> None:
        writer = self._writer
        self._writer = None
        self._reader = None
        if writer is None:
            return
        writer.close()
        with contextlib.suppress(OSError):
            await writer.wait_closed()


def _check_namespace(namespace: str) -> None:
    if not namespace or "\r" in namespace or "\n" in namespace:
        raise AuthenticationError("Malformed namespace-context string")


async def connect(config: ClientConfig) -> Connection:
    """Create, connect and authenticate a Connection."""
    conn = Connection(config)
    await conn.open()
    return conn

"""Bounded cache of idle, authenticated connections.

Example::

    pool = ConnectionPool(capacity=10)
    async with pool.connection(config) as conn:
        await conn.execute("GET_KEY", "user:1")
    await pool.close()
"""

from __future__ import annotations

import contextlib
import logging
from collections import deque
from typing import AsyncIterator

from tempdb_client.config import DEFAULT_POOL_CAPACITY, ClientConfig
from tempdb_client.connection import Connection
from tempdb_client.errors import TempDBError

log = logging.getLogger("tempdb_client.pool")


class ConnectionPool:
    """Idle connections keyed by config, never more than ``capacity`` in total.

    ``acquire`` never waits for capacity: on a miss it dials a new
    connection. ``release`` queues the connection if there is room and closes
    it otherwise. Queue updates happen without an ``await`` between the
    capacity check and the mutation, so concurrent tasks cannot overfill the
    pool or queue one connection twice.
    """

    def __init__(self, capacity: int = DEFAULT_POOL_CAPACITY) -> None:
        if capacity < 0:
            raise ValueError("capacity must be >= 0")
        self._capacity = capacity
        self._idle: dict[ClientConfig, deque[Connection]] = {}
        self._idle_ids: set[int] = set()
        self._closed = False

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def idle_count(self) -> int:
        return len(self._idle_ids)

    @property
    def closed(self) -> bool:
        return self._closed

    async def acquire(self, config: ClientConfig) -> Connection:
        """Return a live connection for ``config``.

        A pooled connection is probed with ``PING`` first; if the probe fails
        it is closed and replaced by a fresh one. Dial and auth errors
        propagate.
        """
        conn = self._pop_idle(config)
        if conn is None:
            log.debug("Pool miss for %s", config.address)
            return await self._create(config)

        try:
            await conn.ping()
        except (TempDBError, OSError) as e:
            log.debug("Pooled connection to %s failed probe: %s", config.address, e)
            await conn.close()
            return await self._create(config)

        log.debug("Pool hit for %s", config.address)
        return conn

    async def release(self, conn: Connection) -> None:
        """Return ``conn`` to the pool, or close it if it cannot be kept."""
        if self._push_idle(conn):
            return
        await conn.close()

    @contextlib.asynccontextmanager
    async def connection(self, config: ClientConfig) -> AsyncIterator[Connection]:
        """Acquire a connection for the duration of the block."""
        conn = await self.acquire(config)
        try:
            yield conn
        finally:
            await self.release(conn)

    async def close(self) -> None:
        """Close every idle connection; later releases close immediately."""
        self._closed = True
        idle = [conn for queue in self._idle.values() for conn in queue]
        self._idle.clear()
        self._idle_ids.clear()
        for conn in idle:
            await conn.close()

    async def __aenter__(self) -> ConnectionPool:
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # ----- internal -----

    async def _create(self, config: ClientConfig) -> Connection:
        conn = Connection(config)
        await conn.open()
        return conn

    def _pop_idle(self, config: ClientConfig) -> Connection | None:
        queue = self._idle.get(config)
        if not queue:
            return None
        conn = queue.popleft()
        self._idle_ids.discard(id(conn))
        if not queue:
            del self._idle[config]
        return conn

    def _push_idle(self, conn: Connection) -> bool:
        if self._closed or not conn.ready:
            return False
        if id(conn) in self._idle_ids:
            # already queued; the caller released it twice
            return True
        if len(self._idle_ids) >= self._capacity:
            return False
        self._idle.setdefault(conn.config, deque()).append(conn)
        self._idle_ids.add(id(conn))
        return True

"""Push-message delivery on a dedicated subscribed connection.

Once a connection issues ``SUBSCRIBE`` the server may write ``MSG`` frames
to it at any time, so a single background task becomes the only reader of
that socket. It routes push frames to per-channel handlers and hands every
other frame to the oldest control command (``SUBSCRIBE``/``UNSUBSCRIBE``)
waiting for a reply. A subscribed connection never runs ordinary commands.

Example::

    async def on_message(text: str) -> None:
        print("got", text)

    sub = await db.subscribe("orders", on_message)
    await sub.subscribe("alerts", print)
    ...
    await sub.unsubscribe("orders")
    await sub.close()
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from collections import deque
from typing import Awaitable, Callable, Union

from tempdb_client.config import ClientConfig
from tempdb_client.connection import Connection
from tempdb_client.errors import ConnectionError, TempDBError
from tempdb_client.protocol import (
    PushFrame,
    Reply,
    decode_reply,
    encode_command,
    read_frame,
)

log = logging.getLogger("tempdb_client.pubsub")

MessageHandler = Callable[[str], Union[None, Awaitable[None]]]


class Subscription:
    """Owns a subscribed socket and delivers its push frames in order."""

    def __init__(
        self,
        config: ClientConfig,
        prefix: str,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        self._config = config
        self._prefix = prefix
        self._reader = reader
        self._writer = writer
        self._handlers: dict[str, MessageHandler] = {}
        self._unsubscribed: set[str] = set()
        self._pending: deque[asyncio.Future[str]] = deque()
        self._write_lock = asyncio.Lock()
        self._task: asyncio.Task | None = None
        self._exception: TempDBError | None = None
        self._closed = False

    @classmethod
    def start(cls, conn: Connection) -> Subscription:
        """Take over ``conn``'s stream and start the reader task."""
        prefix = conn.command_prefix
        reader, writer = conn.detach_for_subscription()
        sub = cls(conn.config, prefix, reader, writer)
        sub._task = asyncio.create_task(sub._reader_loop())
        log.info("Subscription reader started on %s", conn.config.address)
        return sub

    @property
    def channels(self) -> frozenset[str]:
        return frozenset(self._handlers)

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done() and not self._closed

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def exception(self) -> TempDBError | None:
        """The error that stopped the reader, if any."""
        return self._exception

    # ----- control commands -----

    async def subscribe(self, channel: str, handler: MessageHandler) -> Reply:
        """Register ``handler`` and send ``SUBSCRIBE channel``.

        The handler is called with the text after the ``MSG`` marker. Calls
        are sequential, in the order the server sent the frames.
        """
        if not callable(handler):
            raise TypeError("handler must be callable")
        self._handlers[channel] = handler
        self._unsubscribed.discard(channel)
        try:
            return await self._control("SUBSCRIBE", channel)
        except BaseException:
            self._handlers.pop(channel, None)
            raise

    async def unsubscribe(self, channel: str) -> Reply:
        """Stop routing ``channel`` and send ``UNSUBSCRIBE channel``.

        The reader keeps running until ``close()``.
        """
        self._handlers.pop(channel, None)
        self._unsubscribed.add(channel)
        return await self._control("UNSUBSCRIBE", channel)

    async def close(self) -> None:
        """Stop the reader and close the socket."""
        if self._closed:
            return
        self._closed = True
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        self._fail_pending(ConnectionError("Subscription closed"))
        self._writer.close()
        with contextlib.suppress(OSError):
            await self._writer.wait_closed()
        log.info("Subscription closed on %s", self._config.address)

    async def __aenter__(self) -> Subscription:
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # ----- internal -----

    async def _control(self, command: str, *args: str) -> Reply:
        if self._closed:
            raise ConnectionError("Subscription is closed")
        if self._exception is not None:
            raise ConnectionError(f"Subscription reader stopped: {self._exception}")

        line = encode_command(self._prefix, command, *args)
        fut: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        async with self._write_lock:
            self._pending.append(fut)
            try:
                self._writer.write(line)
                await self._writer.drain()
            except OSError as e:
                with contextlib.suppress(ValueError):
                    self._pending.remove(fut)
                raise ConnectionError(f"Send failed: {e}") from e

        return decode_reply(await fut)

    async def _reader_loop(self) -> None:
        try:
            while True:
                frame = await read_frame(self._reader)
                if isinstance(frame, PushFrame):
                    await self._dispatch(frame)
                else:
                    self._resolve(frame)
        except TempDBError as e:
            if not self._closed:
                log.warning("Subscription reader on %s stopped: %s", self._config.address, e)
            self._exception = e
            self._fail_pending(e)

    def _route(self, frame: PushFrame) -> MessageHandler | None:
        channel = frame.channel
        handler = self._handlers.get(channel)
        if handler is None and channel not in self._unsubscribed and len(self._handlers) == 1:
            # frame does not name a channel we know; only one is possible
            handler = next(iter(self._handlers.values()))
        return handler

    async def _dispatch(self, frame: PushFrame) -> None:
        handler = self._route(frame)
        if handler is None:
            log.debug("Dropping push frame for unrouted channel %r", frame.channel)
            return
        try:
            result = handler(frame.text)
            if inspect.isawaitable(result):
                await result
        except Exception:
            log.exception("Subscription handler failed for channel %r", frame.channel)

    def _resolve(self, text: str) -> None:
        if not self._pending:
            log.warning("Unexpected reply on subscribed connection: %r", text[:200])
            return
        # replies arrive in request order; a cancelled waiter still owns its reply
        fut = self._pending.popleft()
        if not fut.done():
            fut.set_result(text)

    def _fail_pending(self, exc: TempDBError) -> None:
        while self._pending:
            fut = self._pending.popleft()
            if not fut.done():
                fut.set_exception(exc)

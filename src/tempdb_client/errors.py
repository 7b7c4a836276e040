"""TempDB client error types."""

from __future__ import annotations


class TempDBError(Exception):
    """Base exception for all TempDB client errors."""

    def is_retryable(self) -> bool:
        """Whether this error is transient and the operation can be retried.

        Retryable errors: ConnectionError, TimeoutError. The client itself
        never retries; this is a hint for callers.
        """
        return False


class ConnectionError(TempDBError):
    """Connection-level errors (refused, closed, reset, not ready)."""

    def is_retryable(self) -> bool:
        return True


class TimeoutError(ConnectionError):
    """Connect exceeded its deadline."""


class AuthenticationError(TempDBError):
    """Handshake rejected by the server or malformed."""

    def __init__(self, message: str, reply: str | None = None) -> None:
        super().__init__(message)
        self.reply = reply


class ProtocolError(TempDBError):
    """Malformed envelope, framing violation, or unexpected payload shape."""


class ServerError(ProtocolError):
    """The server answered with ``status: error``."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class EmptyResultError(TempDBError):
    """Nothing to return, e.g. dequeue on an empty queue."""

    def __init__(self, message: str = "EMPTY") -> None:
        super().__init__(message)
        self.message = message


def error_from_message(message: str | None) -> TempDBError:
    """Create the appropriate exception from a server error message.

    Only the bare ``EMPTY`` marker is an empty result; any other message,
    even one mentioning emptiness, is a ``ServerError``.
    """
    message = message or "Unknown error"
    if message.strip().upper() == "EMPTY":
        return EmptyResultError(message)
    return ServerError(message)

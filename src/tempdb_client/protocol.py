"""TempDB wire protocol framing, encoding and reply decoding.

The protocol is line oriented text over TCP:

    Handshake   client: <namespace-context>\\n
                server: AUTH OK <session-id>\\n
    Request     <namespace-context|session-id> <COMMAND> <arg> ...\\r\\n
    Reply       a bare text line, or a JSON envelope that may be
                pretty-printed across several lines:
                {"status": "ok"|"error", "message": "...",
                 "data": {"type": "String|Json|List|Set|Batch", "data": ...}}
    Push        MSG <channel> <payload>\\n   (subscribed connections only)

JSON replies carry no length prefix, so a reply starting with ``{`` is read
line by line until its braces balance.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Union

from tempdb_client.errors import ConnectionError, ProtocolError, error_from_message

log = logging.getLogger("tempdb_client.protocol")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_PORT = 8081
AUTH_OK_PREFIX = "AUTH OK "
PUSH_MARKER = "MSG "
SENT_TO_PREFIX = "SENT_TO_"
DELETED_REPLY = "DELETED"
EMPTY_MARKER = "EMPTY"

COMMAND_TERMINATOR = "\r\n"
AUTH_TERMINATOR = "\n"

_LINE_BREAKS = ("\r", "\n")


# ---------------------------------------------------------------------------
# Reply types
# ---------------------------------------------------------------------------


class PayloadType(Enum):
    """Tag of a decoded reply payload; values are the wire ``type`` tags."""

    STRING = "String"
    JSON = "Json"
    LIST = "List"
    SET = "Set"
    BATCH = "Batch"
    NULL = "Null"


@dataclass(frozen=True, slots=True)
class Reply:
    """A decoded reply: the payload tag and the value shaped accordingly.

    ========  =====================
    type      value
    ========  =====================
    STRING    ``str``
    JSON      any JSON value
    LIST      ``list[str]``
    SET       ``set[str]``
    BATCH     ``dict[str, str]``
    NULL      ``None``
    ========  =====================
    """

    type: PayloadType
    value: Any = None

    @classmethod
    def null(cls) -> Reply:
        return cls(PayloadType.NULL, None)

    @property
    def is_null(self) -> bool:
        return self.type is PayloadType.NULL


@dataclass(frozen=True, slots=True)
class PushFrame:
    """An unsolicited ``MSG`` frame, with the marker already stripped."""

    text: str

    @property
    def channel(self) -> str:
        return self.text.split(" ", 1)[0]

    @property
    def message(self) -> str:
        parts = self.text.split(" ", 1)
        return parts[1] if len(parts) > 1 else ""


Frame = Union[PushFrame, str]
PushCallback = Callable[[PushFrame], Union[None, Awaitable[None]]]


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def _json_default(obj: Any) -> Any:
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def to_json(value: Any) -> str:
    """Compact single-line JSON, as arguments are sent on the wire."""
    return json.dumps(value, separators=(",", ":"), default=_json_default)


def encode_argument(arg: Any) -> str:
    """Render one command argument as wire text."""
    if isinstance(arg, str):
        text = arg
    elif isinstance(arg, bool):
        text = "true" if arg else "false"
    elif isinstance(arg, (int, float)):
        text = str(arg)
    else:
        text = to_json(arg)
    _check_single_line(text, "argument")
    return text


def encode_command(prefix: str, command: str, *args: Any) -> bytes:
    """Build ``<prefix> <COMMAND> <arg> ...\\r\\n``.

    Raises:
        ProtocolError: if any part would introduce a line break.
    """
    _check_single_line(prefix, "command prefix")
    _check_single_line(command, "command")
    parts = [prefix] if prefix else []
    parts.append(command)
    parts.extend(encode_argument(arg) for arg in args)
    return (" ".join(parts) + COMMAND_TERMINATOR).encode("utf-8")


def encode_auth(namespace: str) -> bytes:
    """Build the handshake line ``<namespace-context>\\n``."""
    _check_single_line(namespace, "namespace")
    return (namespace + AUTH_TERMINATOR).encode("utf-8")


def _check_single_line(text: str, what: str) -> None:
    if any(ch in text for ch in _LINE_BREAKS):
        raise ProtocolError(f"{what} must not contain line breaks: {text!r}")


# ---------------------------------------------------------------------------
# Framing
# ---------------------------------------------------------------------------


class BraceCounter:
    """Tracks ``{``/``}`` nesting across chunks of JSON text.

    Braces inside string literals are ignored.
    """

    __slots__ = ("depth", "_in_string", "_escaped")

    def __init__(self) -> None:
        self.depth = 0
        self._in_string = False
        self._escaped = False

    def feed(self, text: str) -> int:
        for ch in text:
            if self._in_string:
                if self._escaped:
                    self._escaped = False
                elif ch == "\\":
                    self._escaped = True
                elif ch == '"':
                    self._in_string = False
            elif ch == '"':
                self._in_string = True
            elif ch == "{":
                self.depth += 1
            elif ch == "}":
                self.depth -= 1
        return self.depth

    @property
    def balanced(self) -> bool:
        return self.depth <= 0 and not self._in_string


async def read_line(reader: asyncio.StreamReader) -> str:
    """Read one line, decoded, with its terminator kept."""
    try:
        raw = await reader.readline()
    except ValueError as e:
        # StreamReader reports limit overruns as ValueError
        raise ProtocolError(f"Reply line exceeds read limit: {e}") from e
    except OSError as e:
        raise ConnectionError(f"Read failed: {e}") from e
    if not raw:
        raise ConnectionError("Connection closed by server")
    return raw.decode("utf-8", errors="replace")


async def read_frame(reader: asyncio.StreamReader) -> Frame:
    """Read one logical frame from the stream.

    Returns a ``PushFrame`` for ``MSG`` lines, otherwise the reply text: one
    stripped line, or a complete JSON document assembled from as many lines
    as it takes to balance its braces.
    """
    line = await read_line(reader)
    stripped = line.strip()

    if stripped.startswith(PUSH_MARKER):
        return PushFrame(stripped[len(PUSH_MARKER):])

    if not stripped.startswith("{"):
        return stripped

    counter = BraceCounter()
    counter.feed(stripped)
    parts = [stripped]
    while not counter.balanced:
        try:
            line = await read_line(reader)
        except ConnectionError as e:
            raise ConnectionError(f"Connection closed inside a JSON reply: {e}") from e
        counter.feed(line)
        parts.append(line.rstrip("\r\n"))
    return "\n".join(parts)


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def decode_reply(text: str) -> Reply:
    """Decode a reply frame into a ``Reply``.

    Raises:
        ServerError: the envelope has ``status: error``.
        EmptyResultError: the server reported an empty result.
        ProtocolError: malformed envelope or a payload of the wrong shape.
    """
    stripped = text.strip()
    if not stripped.startswith("{"):
        return Reply(PayloadType.STRING, stripped)

    try:
        envelope = json.loads(stripped)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Malformed reply envelope: {e}") from e

    if not isinstance(envelope, dict) or "status" not in envelope:
        raise ProtocolError(f"Reply is not an envelope: {stripped[:200]!r}")

    status = envelope["status"]
    if status == "error":
        raise error_from_message(envelope.get("message"))
    if status != "ok":
        raise ProtocolError(f"Unknown reply status: {status!r}")

    return decode_payload(envelope.get("data"))


def decode_payload(data: Any) -> Reply:
    """Decode the ``data`` member of an ``ok`` envelope."""
    if data is None:
        return Reply.null()
    if not isinstance(data, dict) or "type" not in data:
        raise ProtocolError(f"Reply data is not a typed payload: {data!r}")

    tag = data["type"]
    try:
        payload_type = PayloadType(tag)
    except ValueError:
        log.debug("Unknown payload type %r, decoding as null", tag)
        return Reply.null()

    value = data.get("data")

    if payload_type is PayloadType.NULL:
        return Reply.null()
    if payload_type is PayloadType.JSON:
        return Reply(payload_type, value)
    if payload_type is PayloadType.STRING:
        if not isinstance(value, str):
            raise ProtocolError(f"String payload is {type(value).__name__}")
        return Reply(payload_type, value)
    if payload_type is PayloadType.LIST:
        return Reply(payload_type, _string_list(value, "List"))
    if payload_type is PayloadType.SET:
        return Reply(payload_type, set(_string_list(value, "Set")))

    # Batch
    if not isinstance(value, dict) or not all(
        isinstance(v, str) for v in value.values()
    ):
        raise ProtocolError(f"Batch payload is not a string mapping: {value!r}")
    return Reply(payload_type, dict(value))


def _string_list(value: Any, tag: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ProtocolError(f"{tag} payload is not a list of strings: {value!r}")
    return list(value)


async def read_reply_text(
    reader: asyncio.StreamReader,
    on_push: PushCallback | None = None,
) -> str:
    """Read frames until a complete reply frame arrives and return its text.

    Push frames met on the way go to ``on_push``, or are dropped.
    """
    while True:
        frame = await read_frame(reader)
        if not isinstance(frame, PushFrame):
            return frame
        if on_push is None:
            log.debug("Dropping push frame on synchronous path: %r", frame.text)
            continue
        result = on_push(frame)
        if asyncio.iscoroutine(result):
            await result


async def read_reply(
    reader: asyncio.StreamReader,
    on_push: PushCallback | None = None,
) -> Reply:
    """Read the next reply frame and decode it."""
    return decode_reply(await read_reply_text(reader, on_push))

"""Protocol constants and message handling for walrusfox.

Handles:
- Native messaging framing (4-byte little-endian length + UTF-8 JSON)
- Newline-delimited command tokens on the broker socket
- The browser action and socket command vocabularies
- Request/response models exchanged with the browser extension
"""

from __future__ import annotations

import asyncio
import json
import logging
import struct
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)

# =============================================================================
# Protocol Constants
# =============================================================================

# Native messaging frame header: unsigned 32-bit little-endian body length
FRAME_HEADER = struct.Struct("<I")
FRAME_HEADER_SIZE: int = FRAME_HEADER.size
MAX_FRAME_SIZE: int = 64 * 1024  # 64 KiB

# Socket line limits
DEFAULT_MAX_COMMAND_LENGTH: int = 1024
READ_CHUNK_SIZE: int = 4096

# Fixed payloads reported to the browser
INVALID_ACTION_MESSAGE: str = "Invalid action"
COLORS_ERROR_MESSAGE: str = "Failed to load colors"

# The bridge keeps no mode state of its own
DEFAULT_THEME_MODE: str = "auto"


class ProtocolError(Exception):
    """Raised when the native messaging stream violates the framing rules."""


# =============================================================================
# Vocabularies
# =============================================================================


class BrowserAction(str, Enum):
    """Actions the browser extension may request over native messaging."""

    VERSION = "debug:version"
    COLORS = "action:colors"
    THEME_MODE = "action:theme:mode"
    INVALID = "action:invalid"

    @classmethod
    def decode(cls, value: Any) -> BrowserAction:
        """Map a raw action value to a BrowserAction.

        Never fails: anything that is not one of the canonical strings
        decodes to INVALID.
        """
        if isinstance(value, str):
            for member in cls:
                if member.value == value:
                    return member
        return cls.INVALID


class SocketCommand(str, Enum):
    """Command tokens carried on the broker socket."""

    UPDATE = "update"
    AUTO = "auto"
    DARK = "dark"
    LIGHT = "light"
    # Parsing strips trailing newlines, so no token can ever equal this value
    UNKNOWN = "\n"


THEME_MODE_COMMANDS = frozenset(
    {SocketCommand.AUTO, SocketCommand.DARK, SocketCommand.LIGHT}
)


@dataclass(frozen=True)
class Command:
    """A decoded socket line.

    Attributes:
        kind: The recognized command, or UNKNOWN
        token: The line as received, without its terminator
    """

    kind: SocketCommand
    token: str

    @classmethod
    def parse(cls, line: str) -> Command:
        """Decode a socket line. Unrecognized tokens become UNKNOWN."""
        token = line.rstrip("\r\n")
        try:
            return cls(SocketCommand(token), token)
        except ValueError:
            return cls(SocketCommand.UNKNOWN, token)

    @property
    def is_theme_mode(self) -> bool:
        return self.kind in THEME_MODE_COMMANDS


# =============================================================================
# Message Models
# =============================================================================


class Request(BaseModel):
    """A request sent by the browser extension."""

    model_config = ConfigDict(extra="ignore")

    action: str


class Response(BaseModel):
    """A response (or unsolicited push) sent to the browser extension."""

    action: str
    success: bool
    error: str | None = None
    data: Any = None

    @classmethod
    def ok(cls, action: BrowserAction, data: Any) -> Response:
        return cls(action=action.value, success=True, data=data)

    @classmethod
    def failure(cls, action: BrowserAction, error: str) -> Response:
        return cls(action=action.value, success=False, error=error)

    @classmethod
    def invalid(cls) -> Response:
        """The fixed reply for any action the host does not understand."""
        return cls(
            action=BrowserAction.INVALID.value,
            success=False,
            data=INVALID_ACTION_MESSAGE,
        )

    def to_message(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


# =============================================================================
# Native Messaging Framing
# =============================================================================


def encode_message(value: Any) -> bytes:
    """Serialize a JSON value to UTF-8 bytes."""
    return json.dumps(value, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


def decode_message(body: bytes) -> Any:
    """Parse a UTF-8 JSON body.

    Raises:
        ValueError: If the body is not valid UTF-8, not valid JSON, or nested
            deeper than the interpreter can parse
    """
    try:
        return json.loads(body.decode("utf-8"))
    except RecursionError as e:
        raise ValueError("JSON value is nested too deeply") from e


def encode_frame(value: Any) -> bytes:
    """Encode a JSON value as a length-prefixed native messaging frame.

    Raises:
        ProtocolError: If the encoded body exceeds MAX_FRAME_SIZE
    """
    body = encode_message(value)
    if len(body) > MAX_FRAME_SIZE:
        raise ProtocolError(
            f"native messaging: outgoing message of {len(body)} bytes "
            f"exceeds {MAX_FRAME_SIZE}"
        )
    return FRAME_HEADER.pack(len(body)) + body


def decode_frame_length(header: bytes) -> int:
    """Validate a frame header and return the declared body length.

    Raises:
        ProtocolError: If the length is zero or exceeds MAX_FRAME_SIZE
    """
    (length,) = FRAME_HEADER.unpack(header)
    if length == 0 or length > MAX_FRAME_SIZE:
        raise ProtocolError(
            f"native messaging: invalid length {length} (max {MAX_FRAME_SIZE})"
        )
    return length


async def read_frame(reader: asyncio.StreamReader) -> bytes | None:
    """Read one frame body from a native messaging stream.

    Returns:
        The raw JSON body, or None on end of input

    Raises:
        ProtocolError: On an invalid declared length or a truncated body
    """
    try:
        header = await reader.readexactly(FRAME_HEADER_SIZE)
    except asyncio.IncompleteReadError as e:
        if e.partial:
            logger.warning(
                "native messaging: EOF inside frame header (%d of %d bytes)",
                len(e.partial),
                FRAME_HEADER_SIZE,
            )
        return None

    length = decode_frame_length(header)
    try:
        return await reader.readexactly(length)
    except asyncio.IncompleteReadError as e:
        raise ProtocolError(
            f"native messaging: truncated body ({len(e.partial)} of {length} bytes)"
        ) from e


# =============================================================================
# Socket Line Framing
# =============================================================================


def encode_command(token: str) -> bytes:
    """Encode a token as one newline-terminated socket line."""
    return (token.rstrip("\r\n") + "\n").encode("utf-8")


class LineBuffer:
    """Splits a socket byte stream into lines with a per-line length cap.

    Works on bytes so that multi-byte UTF-8 sequences split across reads are
    reassembled before decoding. Lines longer than max_length are dropped with
    a warning; the stream itself stays usable. The terminator (and a
    preceding carriage return) is stripped from returned lines.
    """

    def __init__(self, max_length: int = DEFAULT_MAX_COMMAND_LENGTH, label: str = "peer") -> None:
        self.max_length = max_length
        self.label = label
        self._buffer = bytearray()
        # Bytes already thrown away from an overlong line still in progress
        self._discarded = 0

    def feed(self, data: bytes) -> list[bytes]:
        """Add received bytes and return every line they complete."""
        self._buffer.extend(data)
        lines: list[bytes] = []

        while True:
            newline_pos = self._buffer.find(b"\n")
            if newline_pos < 0:
                if len(self._buffer) > self.max_length:
                    self._discarded += len(self._buffer)
                    self._buffer.clear()
                break

            line = bytes(self._buffer[:newline_pos])
            del self._buffer[: newline_pos + 1]
            if line.endswith(b"\r"):
                line = line[:-1]

            length = self._discarded + len(line)
            self._discarded = 0
            if length > self.max_length:
                logger.warning(
                    "Ignoring overlong command from %s (%d bytes)",
                    self.label,
                    length,
                )
                continue

            lines.append(line)

        return lines

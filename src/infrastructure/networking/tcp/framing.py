"""
Length-prefixed token framing used by broker gateways.

A message on the wire is [uint32 big-endian length][payload]; the payload is
a run of NUL-terminated ASCII tokens. Optional numbers travel as the empty
token. Business code passes None for "unset"; the legacy sentinels INT_MAX
and FLT_MAX are accepted too and collapse to the empty token here, at the
wire layer only.
"""

import math
import struct
import sys
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, List, Optional

from infrastructure.exceptions.system import ProtocolFatalError

INT_MAX = 2 ** 31 - 1
FLT_MAX = sys.float_info.max
INFINITY_TOKEN = "Infinity"

_LENGTH = struct.Struct(">I")
HEADER_SIZE = _LENGTH.size


def encode_field(value: Any) -> bytes:
    if value is None:
        text = ""
    elif isinstance(value, bool):
        text = "1" if value else "0"
    elif isinstance(value, int):
        text = "" if value == INT_MAX else str(int(value))
    elif isinstance(value, float):
        if value == math.inf:
            text = INFINITY_TOKEN
        elif value == FLT_MAX:
            text = ""
        else:
            text = repr(value)
    elif isinstance(value, Decimal):
        text = INFINITY_TOKEN if value.is_infinite() else format(value, 'f')
    else:
        text = str(value)
    return text.encode('ascii') + b"\0"


def _flatten(values: Iterable[Any]) -> Iterable[Any]:
    for value in values:
        if isinstance(value, (list, tuple)):
            yield from _flatten(value)
        else:
            yield value


def encode_fields(*values: Any) -> bytes:
    """Encode values (nested lists/tuples are spliced in place) as NUL-terminated tokens."""
    return b"".join(encode_field(v) for v in _flatten(values))


def frame(payload: bytes) -> bytes:
    return _LENGTH.pack(len(payload)) + payload


def encode_message(*values: Any) -> bytes:
    return frame(encode_fields(*values))


class FieldReader:
    """Sequential reader over the tokens of one payload."""

    def __init__(self, payload: bytes):
        tokens = payload.split(b"\0")
        # A well-formed payload ends with NUL, leaving one empty tail element
        if tokens and tokens[-1] == b"":
            tokens.pop()
        self._tokens = [t.decode('ascii', errors='replace') for t in tokens]
        self._pos = 0

    @property
    def remaining(self) -> int:
        return len(self._tokens) - self._pos

    def has_more(self) -> bool:
        return self._pos < len(self._tokens)

    def read_str(self) -> str:
        if self._pos >= len(self._tokens):
            return ""
        token = self._tokens[self._pos]
        self._pos += 1
        return token

    def read_int(self, default: Optional[int] = None) -> Optional[int]:
        token = self.read_str()
        if token == "":
            return default
        try:
            return int(token)
        except ValueError as e:
            raise ProtocolFatalError(f"Invalid integer token {token!r}") from e

    def read_float(self, default: Optional[float] = None) -> Optional[float]:
        token = self.read_str()
        if token == "":
            return default
        if token == INFINITY_TOKEN:
            return math.inf
        try:
            return float(token)
        except ValueError as e:
            raise ProtocolFatalError(f"Invalid float token {token!r}") from e

    def read_decimal(self, default: Optional[Decimal] = None) -> Optional[Decimal]:
        token = self.read_str()
        if token == "":
            return default
        if token == INFINITY_TOKEN:
            return Decimal("Infinity")
        try:
            return Decimal(token)
        except InvalidOperation as e:
            raise ProtocolFatalError(f"Invalid decimal token {token!r}") from e

    def read_bool(self) -> bool:
        token = self.read_str()
        try:
            return int(token) != 0
        except ValueError:
            return token.lower() == "true"

    def skip(self, count: int = 1) -> None:
        self._pos = min(self._pos + count, len(self._tokens))


class FrameSplitter:
    """
    Incremental splitter turning a byte stream into complete payloads.

    Raises:
        ProtocolFatalError: When buffered or declared data exceeds max_buffer_size
    """

    def __init__(self, max_buffer_size: int = 16 * 1024 * 1024):
        self.max_buffer_size = max_buffer_size
        self._buffer = bytearray()

    def feed(self, data: bytes) -> List[bytes]:
        if len(self._buffer) + len(data) > self.max_buffer_size:
            raise ProtocolFatalError(f"Receive buffer overflow ({len(self._buffer) + len(data)} bytes)")
        self._buffer.extend(data)

        payloads: List[bytes] = []
        while len(self._buffer) >= HEADER_SIZE:
            (length,) = _LENGTH.unpack_from(self._buffer, 0)
            if length > self.max_buffer_size:
                raise ProtocolFatalError(f"Declared frame length {length} exceeds buffer limit")
            end = HEADER_SIZE + length
            if len(self._buffer) < end:
                break
            payloads.append(bytes(self._buffer[HEADER_SIZE:end]))
            del self._buffer[:end]
        return payloads

    def reset(self) -> None:
        self._buffer.clear()

    @property
    def buffered(self) -> int:
        return len(self._buffer)

"""
Sync Wire Protocol

Design Decision: Framing
========================

Options Considered:
1. Length-prefixed JSON header + binary body
   - Self-describing, easy to extend
   - Not what existing peers speak

2. Java DataOutputStream framing (writeUTF / writeLong)
   - Byte-compatible with the existing mobile peers
   - No version byte, no checksum, no acknowledgment

Decision: DataOutputStream framing, one operation per connection
- Strings are an unsigned 16-bit big-endian length + "modified UTF-8"
- Lengths are signed 64-bit big-endian
- The receiver never answers; the sender closes when done

Frame Format:
```
ADD:    UTF "ADD"    | UTF <name> | int64 <length> | <length> raw bytes
DELETE: UTF "DELETE" | UTF <name>
```
"""

import asyncio
import struct
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from ..errors import ProtocolError

DEFAULT_PORT = 8888
CHUNK_SIZE = 8192  # 8KB
CONNECT_TIMEOUT = 5.0  # seconds

MAX_UTF_LENGTH = 0xFFFF

_UTF_LENGTH = struct.Struct('>H')
_PAYLOAD_LENGTH = struct.Struct('>q')


class OpCode(Enum):
    """Operation opcodes as they appear on the wire."""
    ADD = "ADD"
    DELETE = "DELETE"


@dataclass
class AddOperation:
    """Add (or overwrite) a file; content lives at content_path."""
    name: str
    content_path: Path
    length: int


@dataclass
class DeleteOperation:
    """Delete a file if present."""
    name: str


Operation = Union[AddOperation, DeleteOperation]


@dataclass
class FrameHeader:
    """Everything in a frame before the payload."""
    opcode: OpCode
    name: str
    length: Optional[int] = None


def check_file_name(name: str) -> str:
    """
    Validate a flat file name.

    The synchronized folder is single-level, so anything that could
    escape it or address a subdirectory is rejected.

    Raises:
        ProtocolError: if the name is unusable
    """
    if not name or name in ('.', '..'):
        raise ProtocolError(f"Invalid file name: {name!r}")
    if '/' in name or '\\' in name or '\x00' in name:
        raise ProtocolError(f"File name must not contain separators: {name!r}")
    try:
        name.encode('utf-8')
    except UnicodeEncodeError as e:
        raise ProtocolError(f"File name is not valid text: {name!r}") from e
    return name


def progress_percent(done: int, total: int) -> int:
    """Whole-percent progress, floored. Empty payloads count as complete."""
    if total <= 0:
        return 100
    return done * 100 // total


# === String encoding (Java modified UTF-8) ===

def encode_utf(text: str) -> bytes:
    """Encode a string the way DataOutputStream.writeUTF does."""
    out = bytearray()
    units = text.encode('utf-16-be', 'surrogatepass')
    for i in range(0, len(units), 2):
        c = (units[i] << 8) | units[i + 1]
        if 0x0001 <= c <= 0x007F:
            out.append(c)
        elif c <= 0x07FF:
            # NUL lands here and becomes C0 80
            out.append(0xC0 | (c >> 6))
            out.append(0x80 | (c & 0x3F))
        else:
            out.append(0xE0 | (c >> 12))
            out.append(0x80 | ((c >> 6) & 0x3F))
            out.append(0x80 | (c & 0x3F))

    if len(out) > MAX_UTF_LENGTH:
        raise ProtocolError(f"String too long to encode: {len(out)} bytes")

    return _UTF_LENGTH.pack(len(out)) + bytes(out)


def decode_utf(data: bytes) -> str:
    """Decode modified UTF-8 bytes (without the length prefix)."""
    units = bytearray()
    i = 0
    n = len(data)

    while i < n:
        b = data[i]
        if b < 0x80:
            c = b
            i += 1
        elif b & 0xE0 == 0xC0:
            if i + 1 >= n or data[i + 1] & 0xC0 != 0x80:
                raise ProtocolError(f"Malformed string at byte {i}")
            c = ((b & 0x1F) << 6) | (data[i + 1] & 0x3F)
            i += 2
        elif b & 0xF0 == 0xE0:
            if (i + 2 >= n or data[i + 1] & 0xC0 != 0x80
                    or data[i + 2] & 0xC0 != 0x80):
                raise ProtocolError(f"Malformed string at byte {i}")
            c = ((b & 0x0F) << 12) | ((data[i + 1] & 0x3F) << 6) | (data[i + 2] & 0x3F)
            i += 3
        else:
            raise ProtocolError(f"Malformed string at byte {i}")
        units += c.to_bytes(2, 'big')

    return units.decode('utf-16-be', 'surrogatepass')


# === Frame encoding ===

def encode_add_header(name: str, length: int) -> bytes:
    """Everything of an ADD frame that precedes the payload."""
    return (
        encode_utf(OpCode.ADD.value) +
        encode_utf(name) +
        _PAYLOAD_LENGTH.pack(length)
    )


def encode_delete(name: str) -> bytes:
    """A complete DELETE frame."""
    return encode_utf(OpCode.DELETE.value) + encode_utf(name)


# === Frame decoding ===

async def read_utf(reader: asyncio.StreamReader) -> str:
    """Read one length-prefixed string from a stream."""
    (length,) = _UTF_LENGTH.unpack(await reader.readexactly(_UTF_LENGTH.size))
    data = await reader.readexactly(length) if length > 0 else b''
    return decode_utf(data)


async def read_frame_header(reader: asyncio.StreamReader) -> FrameHeader:
    """
    Read opcode, name and (for ADD) the declared payload length.

    Raises:
        ProtocolError: on an unknown opcode, a bad name, a negative
            length or a stream that ends early
    """
    try:
        opcode_text = await read_utf(reader)
        try:
            opcode = OpCode(opcode_text)
        except ValueError:
            raise ProtocolError(f"Unknown opcode: {opcode_text!r}")

        name = check_file_name(await read_utf(reader))

        if opcode is OpCode.DELETE:
            return FrameHeader(opcode=opcode, name=name)

        raw = await reader.readexactly(_PAYLOAD_LENGTH.size)
        (length,) = _PAYLOAD_LENGTH.unpack(raw)
        if length < 0:
            raise ProtocolError(f"Negative payload length: {length}")

        return FrameHeader(opcode=opcode, name=name, length=length)

    except asyncio.IncompleteReadError as e:
        raise ProtocolError(
            f"Truncated frame: expected {e.expected} bytes, got {len(e.partial)}"
        ) from e

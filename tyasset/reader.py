"""
Binary Reader for TY asset files.

Provides low-level little-endian reading utilities with strict bounds
checking. Every read that would run past the end of the buffer raises
TruncatedDataError instead of returning short data.
"""

import struct
from typing import Optional, List
from .errors import TruncatedDataError


class BinaryReader:
    """Bounds-checked binary data reader.

    Cursor over a buffer with the unsigned counts, raw byte runs and
    null-terminated strings the TY formats are built from.
    """

    def __init__(self, data: bytes, offset: int = 0):
        self.data = data
        self.pos = offset

    def seek(self, pos: int):
        """Seek to absolute position."""
        if pos < 0 or pos > len(self.data):
            raise TruncatedDataError(
                f"Seek to {pos} outside buffer of {len(self.data)} bytes"
            )
        self.pos = pos

    def skip(self, count: int):
        """Advance the cursor, checking the destination is in range."""
        self.seek(self.pos + count)

    def tell(self) -> int:
        """Return current position."""
        return self.pos

    def remaining(self) -> int:
        """Return remaining bytes."""
        return len(self.data) - self.pos

    def require(self, count: int, what: str = "data"):
        """Raise if fewer than count bytes remain."""
        if count < 0 or self.pos + count > len(self.data):
            raise TruncatedDataError(
                f"Not enough space for {what}: need {count} bytes at {self.pos}, "
                f"have {max(0, self.remaining())}"
            )

    def read_bytes(self, count: int) -> bytes:
        """Read raw bytes."""
        self.require(count)
        result = self.data[self.pos : self.pos + count]
        self.pos += count
        return bytes(result)

    def read_uint8(self) -> int:
        return struct.unpack("<B", self.read_bytes(1))[0]

    def read_uint32(self) -> int:
        return struct.unpack("<I", self.read_bytes(4))[0]

    def read_cstring(self, max_length: Optional[int] = None) -> str:
        """Read a null-terminated Latin-1 string.

        Args:
            max_length: Stop after this many bytes even without a terminator

        The cursor is left just past the terminator (or the last byte read).
        """
        end = len(self.data)
        if max_length is not None:
            end = min(end, self.pos + max_length)
        if self.pos > end:
            raise TruncatedDataError(f"String offset {self.pos} outside buffer")
        terminator = self.data.find(b"\x00", self.pos, end)
        if terminator == -1:
            raw = self.data[self.pos : end]
            self.pos = end
        else:
            raw = self.data[self.pos : terminator]
            self.pos = terminator + 1
        return bytes(raw).decode("latin-1", errors="replace")


def uint16_at(data: bytes, offset: int) -> int:
    """Read a little-endian uint16 at an absolute offset."""
    if offset < 0 or offset + 2 > len(data):
        raise TruncatedDataError(f"uint16 at {offset} outside buffer of {len(data)} bytes")
    return struct.unpack_from("<H", data, offset)[0]


def uint32_at(data: bytes, offset: int) -> int:
    """Read a little-endian uint32 at an absolute offset."""
    if offset < 0 or offset + 4 > len(data):
        raise TruncatedDataError(f"uint32 at {offset} outside buffer of {len(data)} bytes")
    return struct.unpack_from("<I", data, offset)[0]


def int32_at(data: bytes, offset: int) -> int:
    """Read a little-endian int32 at an absolute offset."""
    if offset < 0 or offset + 4 > len(data):
        raise TruncatedDataError(f"int32 at {offset} outside buffer of {len(data)} bytes")
    return struct.unpack_from("<i", data, offset)[0]


def cstring_at(data: bytes, offset: int, max_length: Optional[int] = None) -> str:
    """Read a null-terminated string at an absolute offset.

    Standalone function for cases where a BinaryReader isn't used.
    """
    if offset < 0 or offset >= len(data):
        raise TruncatedDataError(f"String offset {offset} outside buffer of {len(data)} bytes")
    return BinaryReader(data, offset).read_cstring(max_length)


def byte_to_unit(value: int) -> float:
    """Map an unsigned byte channel to 0..1."""
    return value / 255.0


def find_pattern(data: bytes, pattern: bytes, start: int = 0, end: Optional[int] = None) -> int:
    """Return the first offset of pattern in data[start:end], or -1."""
    if end is None:
        end = len(data)
    return data.find(pattern, max(0, start), min(end, len(data)))


def find_all(data: bytes, pattern: bytes) -> List[int]:
    """Return every (possibly overlapping) offset of pattern in data."""
    positions = []
    off = data.find(pattern)
    while off != -1:
        positions.append(off)
        off = data.find(pattern, off + 1)
    return positions

"""
Little-endian word helpers shared by the unpacker and the asset decoders.
"""

from __future__ import annotations

import struct
from typing import List


class FormatError(ValueError):
    """Input bytes do not decode as the expected structure."""


class RangeError(ValueError):
    """A computed byte range falls outside the buffer."""


def le16(data: bytes, off: int) -> int:
    if off < 0 or off + 2 > len(data):
        raise FormatError(f"Out-of-range u16 read @0x{off:X}")
    return struct.unpack_from("<H", data, off)[0]


def le32(data: bytes, off: int) -> int:
    if off < 0 or off + 4 > len(data):
        raise FormatError(f"Out-of-range u32 read @0x{off:X}")
    return struct.unpack_from("<I", data, off)[0]


def u8(data: bytes, off: int) -> int:
    if off < 0 or off >= len(data):
        raise FormatError(f"Out-of-range u8 read @0x{off:X}")
    return data[off]


def le16_words(data: bytes, off: int, count: int) -> List[int]:
    if off < 0 or off + count * 2 > len(data):
        raise FormatError(f"Out-of-range u16[{count}] read @0x{off:X}")
    return list(struct.unpack_from(f"<{count}H", data, off))


def put_le16(buf: bytearray, v: int) -> None:
    buf += struct.pack("<H", v & 0xFFFF)

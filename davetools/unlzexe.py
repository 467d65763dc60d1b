"""
Unpacker for LZEXE-compressed DOS executables (stub versions 0.90 and 0.91).

Rebuilds the flat MZ image the packer started from:
- 28-byte load header, rewritten for the decompressed size
- relocation table, decoded from the variant-specific stub encoding
- program bytes, decompressed through a 0x4500-byte sliding window

Inputs whose header or stub does not match either variant are returned
unchanged.
"""

from __future__ import annotations

import dataclasses
import enum
import struct
from typing import Callable, Dict, List, Optional, Tuple

from .binio import FormatError, le16, le16_words, put_le16, u8


MZ_MAGIC = 0x5A4D
HEADER_WORDS = 0x10
OUT_HEADER_WORDS = 0x0E
OUT_HEADER_SIZE = 0x1C

HEADER_FIELDS = (
    "signature",
    "last_page_bytes",
    "pages",
    "relocations",
    "header_paragraphs",
    "min_alloc",
    "max_alloc",
    "ss",
    "sp",
    "checksum",
    "ip",
    "cs",
    "reloc_table_offset",
    "overlay",
    "extra0",
    "extra1",
)

SIG90 = bytes.fromhex(
    "06 0e 1f 8b 0e 0c 00 8b f1 4e 89 f7 8c db 03 1e"
    "0a 00 8e c3 b4 00 31 ed fd ac 01 c5 aa e2 fa 8b"
    "16 0e 00 8a c2 29 c5 8a c6 29 c5 39 d5 74 0c ba"
    "91 01 b4 09 cd 21 b8 ff 4c cd 21 53 b8 53 00 50"
    "cb 2e 8b 2e 08 00 8c da 89 e8 3d 00 10 76 03 b8"
    "00 10 29 c5 29 c2 29 c3 8e da 8e c3 b1 03 d3 e0"
    "89 c1 d1 e0 48 48 8b f0 8b f8 f3 a5 09 ed 75 d8"
    "fc 8e c2 8e db 31 f6 31 ff ba 10 00 ad 89 c5 d1"
    "ed 4a 75 05 ad 89 c5 b2 10 73 03 a4 eb f1 31 c9"
    "d1 ed 4a 75 05 ad 89 c5 b2 10 72 22 d1 ed 4a 75"
    "05 ad 89 c5 b2 10 d1 d1 d1 ed 4a 75 05 ad 89 c5"
    "b2 10 d1 d1 41 41 ac b7 ff 8a d8 e9 13 00 ad 8b"
    "d8 b1 03 d2 ef 80 cf e0 80 e4 07 74 0c 88 e1 41"
    "41 26 8a 01 aa e2 fa eb a6 ac 08 c0 74 40 3c 01"
    "74 05 88 c1 41 eb ea 89"
)

SIG91 = bytes.fromhex(
    "06 0e 1f 8b 0e 0c 00 8b f1 4e 89 f7 8c db 03 1e"
    "0a 00 8e c3 fd f3 a4 53 b8 2b 00 50 cb 2e 8b 2e"
    "08 00 8c da 89 e8 3d 00 10 76 03 b8 00 10 29 c5"
    "29 c2 29 c3 8e da 8e c3 b1 03 d3 e0 89 c1 d1 e0"
    "48 48 8b f0 8b f8 f3 a5 09 ed 75 d8 fc 8e c2 8e"
    "db 31 f6 31 ff ba 10 00 ad 89 c5 d1 ed 4a 75 05"
    "ad 89 c5 b2 10 73 03 a4 eb f1 31 c9 d1 ed 4a 75"
    "05 ad 89 c5 b2 10 72 22 d1 ed 4a 75 05 ad 89 c5"
    "b2 10 d1 d1 d1 ed 4a 75 05 ad 89 c5 b2 10 d1 d1"
    "41 41 ac b7 ff 8a d8 e9 13 00 ad 8b d8 b1 03 d2"
    "ef 80 cf e0 80 e4 07 74 0c 88 e1 41 41 26 8a 01"
    "aa e2 fa eb a6 ac 08 c0 74 34 3c 01 74 05 88 c1"
    "41 eb ea 89 fb 83 e7 0f 81 c7 00 20 b1 04 d3 eb"
    "8c c0 01 d8 2d 00 02 8e c0 89 f3 83 e6 0f d3 eb"
    "8c d8 01 d8 8e d8 e9 72"
)

Relocation = Tuple[int, int]


class PackerVariant(enum.Enum):
    V90 = 90
    V91 = 91


_SIGNATURES = ((PackerVariant.V90, SIG90), (PackerVariant.V91, SIG91))


@dataclasses.dataclass
class UnpackResult:
    data: bytes
    variant: Optional[PackerVariant]
    relocations: List[Relocation]
    in_header: List[int]
    out_header: List[int]
    load_size: int

    @property
    def packed(self) -> bool:
        return self.variant is not None

    def linear_relocations(self) -> List[int]:
        return [(seg << 4) + off for off, seg in self.relocations]


class BitReader:
    """LSB-first bit source over 16-bit little-endian words.

    Byte reads share the same cursor, so literal and distance bytes sit
    between the control words exactly where the packer interleaved them.
    """

    def __init__(self, data: bytes, pos: int):
        self.data = data
        self.pos = pos
        self.word = le16(data, pos)
        self.pos += 2
        self.count = 16

    def bit(self) -> int:
        b = self.word & 1
        self.count -= 1
        if self.count == 0:
            self.word = le16(self.data, self.pos)
            self.pos += 2
            self.count = 16
        else:
            self.word >>= 1
        return b

    def byte(self) -> int:
        v = u8(self.data, self.pos)
        self.pos += 1
        return v


class _Window:
    SIZE = 0x4500
    FLUSH_AT = 0x4000
    FLUSH_SIZE = 0x2000

    def __init__(self, out: bytearray):
        self.buf = bytearray(self.SIZE)
        self.pos = 0
        self.out = out
        self.written = 0

    def maybe_flush(self) -> None:
        if self.pos > self.FLUSH_AT:
            self.flush()

    def flush(self) -> None:
        n = self.FLUSH_SIZE
        self.out += self.buf[:n]
        self.written += n
        self.pos -= n
        self.buf[: self.pos] = self.buf[n : n + self.pos]

    def put(self, b: int) -> None:
        self.buf[self.pos] = b
        self.pos += 1

    def copy(self, dist: int, length: int) -> None:
        src = self.pos + dist
        if src < 0:
            raise FormatError(f"back-reference {dist} before window start (cursor {self.pos})")
        # Source and destination may overlap; copy forward one byte at a time.
        buf = self.buf
        for _ in range(length):
            buf[self.pos] = buf[src]
            self.pos += 1
            src += 1

    def drain(self) -> None:
        self.out += self.buf[: self.pos]
        self.written += self.pos
        self.pos = 0


def read_header(data: bytes) -> Optional[List[int]]:
    if len(data) < HEADER_WORDS * 2:
        return None
    return le16_words(data, 0, HEADER_WORDS)


def entry_offset(header: List[int]) -> int:
    return ((header[4] + header[11]) << 4) + header[10]


def detect(data: bytes) -> Optional[PackerVariant]:
    header = read_header(data)
    if header is None:
        return None
    if header[0] != MZ_MAGIC or header[13] != 0 or header[12] != 0x1C:
        return None
    entry = entry_offset(header)
    for variant, sig in _SIGNATURES:
        if data[entry : entry + len(sig)] == sig:
            return variant
    return None


def _reloc90(data: bytes, pos: int) -> List[Relocation]:
    relocs: List[Relocation] = []
    seg = 0
    while seg < 0xF000 + 0x1000:
        count = le16(data, pos)
        pos += 2
        for _ in range(count):
            relocs.append((le16(data, pos), seg))
            pos += 2
        seg += 0x1000
    return relocs


def _reloc91(data: bytes, pos: int) -> List[Relocation]:
    relocs: List[Relocation] = []
    off = 0
    seg = 0
    while True:
        span = u8(data, pos)
        pos += 1
        if span == 0:
            span = le16(data, pos)
            pos += 2
            if span == 0:
                seg = (seg + 0x0FFF) & 0xFFFF
                continue
            if span == 1:
                break
        off = (off + span) & 0xFFFF
        seg = (seg + (off >> 4)) & 0xFFFF
        off &= 0x0F
        relocs.append((off, seg))
    return relocs


_RELOC_DECODERS: Dict[PackerVariant, Tuple[int, Callable[[bytes, int], List[Relocation]]]] = {
    PackerVariant.V90: (0x19D, _reloc90),
    PackerVariant.V91: (0x158, _reloc91),
}


def read_relocations(data: bytes, fpos: int, variant: PackerVariant) -> List[Relocation]:
    rel_off, decoder = _RELOC_DECODERS[variant]
    start = fpos + rel_off
    if start >= len(data):
        raise FormatError("compressed relocation table not found")
    try:
        return decoder(data, start)
    except FormatError as e:
        raise FormatError(f"compressed relocation table truncated: {e}") from e


def _decompress(data: bytes, ip: int, out: bytearray) -> int:
    window = _Window(out)
    try:
        bits = BitReader(data, ip)
        while True:
            window.maybe_flush()
            if bits.bit():
                window.put(bits.byte())
                continue
            if not bits.bit():
                length = (bits.bit() << 1) | bits.bit()
                length += 2
                dist = (bits.byte() | 0xFF00) - 0x10000
            else:
                lo = bits.byte()
                hi = bits.byte()
                dist = (lo | ((hi & 0xF8) << 5) | 0xE000) - 0x10000
                length = (hi & 0x07) + 2
                if length == 2:
                    length = bits.byte()
                    if length == 0:
                        break
                    if length == 1:
                        continue
                    length += 1
            window.copy(dist, length)
    except (IndexError, FormatError) as e:
        raise FormatError("could not unpack corrupted compressed stream") from e
    window.drain()
    return window.written


def _finalize_header(ihead: List[int], ohead: List[int], info: List[int], load_size: int) -> None:
    if ihead[6] != 0:
        extra = (info[5] + (((info[6] + 16 - 1) & 0xFFFF) >> 4) + 9) & 0xFFFF
        ohead[5] = (ohead[5] - extra) & 0xFFFF
        if ihead[6] != 0xFFFF:
            ohead[6] = (ohead[6] - ((ihead[5] - ohead[5]) & 0xFFFF)) & 0xFFFF
    start = ohead[4] << 4
    ohead[1] = (load_size + start) & 0x1FF
    ohead[2] = ((load_size + start + 0x1FF) >> 9) & 0xFFFF


def unpack(data: bytes) -> UnpackResult:
    variant = detect(data)
    if variant is None:
        header = read_header(data) or []
        return UnpackResult(
            data=bytes(data),
            variant=None,
            relocations=[],
            in_header=header,
            out_header=list(header),
            load_size=len(data),
        )

    ihead = read_header(data) or []
    ohead = list(ihead)

    fpos = (ihead[11] + ihead[4]) << 4
    if fpos >= len(data):
        raise FormatError("compressed relocation table not found")
    try:
        info = le16_words(data, fpos, 8)
    except FormatError as e:
        raise FormatError(f"packer info block truncated: {e}") from e
    ohead[10] = info[0]
    ohead[11] = info[1]
    ohead[8] = info[2]
    ohead[7] = info[3]
    ohead[12] = OUT_HEADER_SIZE

    out = bytearray(OUT_HEADER_SIZE)
    relocs = read_relocations(data, fpos, variant)
    for off, seg in relocs:
        put_le16(out, off)
        put_le16(out, seg)
    ohead[3] = len(relocs) & 0xFFFF

    pad = (0x200 - len(out)) & 0x1FF
    ohead[4] = (len(out) + pad) >> 4
    out += bytes(pad)

    ip = (ihead[11] - info[4] + ihead[4]) << 4
    load_size = _decompress(data, ip, out)

    _finalize_header(ihead, ohead, info, load_size)
    struct.pack_into(f"<{OUT_HEADER_WORDS}H", out, 0, *ohead[:OUT_HEADER_WORDS])

    return UnpackResult(
        data=bytes(out),
        variant=variant,
        relocations=relocs,
        in_header=ihead,
        out_header=ohead,
        load_size=load_size,
    )


def header_report(header: List[int]) -> Dict[str, str]:
    return {name: f"0x{v:04X}" for name, v in zip(HEADER_FIELDS, header)}

"""
Fixture builders: an LZEXE-style packer, the VGA RLE encoder, and a
synthetic unpacked image carrying tiles, palette and levels.
"""

from __future__ import annotations

import struct
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

from davetools.layout import DaveLayout
from davetools.levels import LEVEL_SIZE
from davetools.unlzexe import SIG90, SIG91, PackerVariant


# ---------------------------------------------------------------------------
# LZ stream encoder
# ---------------------------------------------------------------------------


class LzEncoder:
    """Writes the control-word / byte interleaving the unpacker reads."""

    def __init__(self) -> None:
        self.out = bytearray(2)
        self.slot = 0
        self.nbits = 0

    def bit(self, b: int) -> None:
        if b:
            self.out[self.slot + (self.nbits >> 3)] |= 1 << (self.nbits & 7)
        self.nbits += 1
        if self.nbits == 16:
            self.slot = len(self.out)
            self.out += b"\x00\x00"
            self.nbits = 0

    def byte(self, v: int) -> None:
        self.out.append(v & 0xFF)

    def literal(self, v: int) -> None:
        self.bit(1)
        self.byte(v)

    def short_match(self, dist: int, length: int) -> None:
        assert 1 <= dist <= 256 and 2 <= length <= 5
        code = length - 2
        self.bit(0)
        self.bit(0)
        self.bit(code >> 1)
        self.bit(code & 1)
        self.byte(-dist & 0xFF)

    def _long(self, dist: int, field: int) -> None:
        v = -dist & 0x1FFF
        self.bit(0)
        self.bit(1)
        self.byte(v & 0xFF)
        self.byte(((v >> 8) << 3) | field)

    def long_match(self, dist: int, length: int) -> None:
        assert 1 <= dist <= 0x2000 and 3 <= length <= 256
        if length <= 9:
            self._long(dist, length - 2)
        else:
            self._long(dist, 0)
            self.byte(length - 1)

    def noop(self) -> None:
        self._long(1, 0)
        self.byte(1)

    def end(self) -> bytes:
        self._long(1, 0)
        self.byte(0)
        return bytes(self.out)


def lz_compress(data: bytes, chain: int = 32) -> bytes:
    enc = LzEncoder()
    heads: Dict[bytes, List[int]] = {}
    n = len(data)
    pos = 0
    while pos < n:
        best_len = 0
        best_dist = 0
        limit = min(256, n - pos)
        if limit >= 2:
            for cand in reversed(heads.get(data[pos : pos + 2], [])[-chain:]):
                dist = pos - cand
                if dist > 0x2000:
                    break
                length = 2
                while length < limit and data[cand + length] == data[pos + length]:
                    length += 1
                if length > best_len:
                    best_len, best_dist = length, dist
        if best_len >= 2 and best_dist <= 256 and best_len <= 5:
            enc.short_match(best_dist, best_len)
            step = best_len
        elif best_len >= 3:
            enc.long_match(best_dist, best_len)
            step = best_len
        else:
            enc.literal(data[pos])
            step = 1
        for p in range(pos, pos + step):
            if p + 2 <= n:
                heads.setdefault(data[p : p + 2], []).append(p)
        pos += step
    return enc.end()


def reference_decompress(stream: bytes) -> bytes:
    """Same token grammar, no window: output grows without bound."""
    pos = 0
    word = struct.unpack_from("<H", stream, pos)[0]
    pos += 2
    count = 16
    out = bytearray()

    def bit() -> int:
        nonlocal word, count, pos
        b = word & 1
        count -= 1
        if count == 0:
            word = struct.unpack_from("<H", stream, pos)[0]
            pos += 2
            count = 16
        else:
            word >>= 1
        return b

    def byte() -> int:
        nonlocal pos
        v = stream[pos]
        pos += 1
        return v

    while True:
        if bit():
            out.append(byte())
            continue
        if not bit():
            length = (bit() << 1) | bit()
            length += 2
            dist = 256 - byte()
        else:
            lo = byte()
            hi = byte()
            dist = 0x2000 - (lo | ((hi & 0xF8) << 5))
            length = (hi & 7) + 2
            if length == 2:
                length = byte()
                if length == 0:
                    break
                if length == 1:
                    continue
                length += 1
        for _ in range(length):
            out.append(out[-dist])
    return bytes(out)


# ---------------------------------------------------------------------------
# Relocation encodings and executable containers
# ---------------------------------------------------------------------------


def encode_reloc90(relocs: Sequence[Tuple[int, int]]) -> bytes:
    out = bytearray()
    for seg in range(0, 0x10000, 0x1000):
        offs = [off for off, s in relocs if s == seg]
        out += struct.pack("<H", len(offs))
        for off in offs:
            out += struct.pack("<H", off)
    return bytes(out)


def encode_reloc91(relocs: Sequence[Tuple[int, int]]) -> bytes:
    out = bytearray()
    prev = 0
    for off, seg in relocs:
        span = ((seg << 4) + off) - prev
        assert span > 0, "relocations must be ascending and start above 0"
        while span > 0xFFF0:
            out += b"\x00\x00\x00"
            span -= 0xFFF0
        if span < 0x100:
            out.append(span)
        else:
            out += b"\x00" + struct.pack("<H", span)
        prev = (seg << 4) + off
    out += b"\x00\x01\x00"
    return bytes(out)


def build_packed_exe(
    payload: bytes,
    relocs: Sequence[Tuple[int, int]],
    variant: PackerVariant,
    *,
    ip: int = 0x0100,
    cs: int = 0x0010,
    sp: int = 0x0800,
    ss: int = 0x0030,
    min_alloc: int = 0x0040,
    max_alloc: int = 0,
    checksum: int = 0x1234,
    inf5: int = 0,
    inf6: int = 0,
    stream: Optional[bytes] = None,
) -> bytes:
    if stream is None:
        stream = lz_compress(payload)
    stream = stream + bytes((-len(stream)) & 0x0F)
    comp_paras = len(stream) >> 4
    hdr_paras = 2

    if variant is PackerVariant.V90:
        sig, rel_off, rel = SIG90, 0x19D, encode_reloc90(relocs)
    else:
        sig, rel_off, rel = SIG91, 0x158, encode_reloc91(relocs)

    stub = bytearray(struct.pack("<7H", ip, cs, sp, ss, comp_paras, inf5, inf6))
    stub += sig
    stub += bytes(rel_off - len(stub))
    stub += rel

    body = stream + bytes(stub)
    total = hdr_paras * 16 + len(body)
    header = struct.pack(
        "<14H",
        0x5A4D,
        total & 0x1FF,
        (total + 0x1FF) >> 9,
        0,
        hdr_paras,
        min_alloc,
        max_alloc,
        0x0040,
        0x0080,
        checksum,
        0x000E,
        comp_paras,
        0x001C,
        0,
    )
    header += b"LZ91" if variant is PackerVariant.V91 else b"LZ09"
    return header + body


def build_flat_exe(
    payload: bytes,
    relocs: Sequence[Tuple[int, int]],
    *,
    ip: int = 0x0100,
    cs: int = 0x0010,
    sp: int = 0x0800,
    ss: int = 0x0030,
    min_alloc: int = 0x0040,
    max_alloc: int = 0,
    checksum: int = 0x1234,
) -> bytes:
    out = bytearray(0x1C)
    for off, seg in relocs:
        out += struct.pack("<HH", off, seg)
    out += bytes((0x200 - len(out)) & 0x1FF)
    hdr_paras = len(out) >> 4
    size = len(out) + len(payload)
    struct.pack_into(
        "<14H",
        out,
        0,
        0x5A4D,
        size & 0x1FF,
        (size + 0x1FF) >> 9,
        len(relocs),
        hdr_paras,
        min_alloc,
        max_alloc,
        ss,
        sp,
        checksum,
        ip,
        cs,
        0x1C,
        0,
    )
    return bytes(out) + payload


# ---------------------------------------------------------------------------
# VGA RLE and asset image
# ---------------------------------------------------------------------------


def rle_compress(data: bytes) -> bytes:
    out = bytearray(struct.pack("<I", len(data)))
    lit = bytearray()

    def flush() -> None:
        while lit:
            chunk = lit[:128]
            del lit[:128]
            out.append(0x80 | (len(chunk) - 1))
            out.extend(chunk)

    i = 0
    n = len(data)
    while i < n:
        run = 1
        while i + run < n and data[i + run] == data[i] and run < 130:
            run += 1
        if run >= 3:
            flush()
            out.append(run - 3)
            out.append(data[i])
            i += run
        else:
            lit.append(data[i])
            i += 1
    flush()
    return bytes(out)


def build_tile_stream(tiles: Sequence[bytes]) -> bytes:
    head = 4 + 4 * len(tiles)
    offsets = []
    pos = head
    for t in tiles:
        offsets.append(pos)
        pos += len(t)
    return struct.pack(f"<I{len(tiles)}I", len(tiles), *offsets) + b"".join(tiles)


def build_asset_image(
    tiles: Sequence[bytes],
    palette6: bytes,
    levels: Sequence[bytes],
    base: int = 0x200,
) -> Tuple[bytes, DaveLayout]:
    """Unpacked image with assets laid out back to back from `base`."""
    blob = rle_compress(build_tile_stream(tiles))
    vga = base
    pal = vga + len(blob)
    lvl = pal + len(palette6)
    image = bytearray(base) + blob + palette6 + b"".join(levels)
    layout = DaveLayout(vga_offset=vga, palette_offset=pal, level_offset=lvl, level_count=len(levels))
    return bytes(image), layout


def blank_level(first_tile: int = 0) -> bytes:
    rec = bytearray(LEVEL_SIZE)
    rec[256] = first_tile
    return bytes(rec)


@pytest.fixture
def palette6() -> bytes:
    pal = bytearray(768)
    for i in range(256):
        pal[i * 3 : i * 3 + 3] = bytes(((i * 1) & 0x3F, (i * 3) & 0x3F, (i * 7) & 0x3F))
    pal[5 * 3 : 5 * 3 + 3] = b"\x10\x20\x30"
    return bytes(pal)

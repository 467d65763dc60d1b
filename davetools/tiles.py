"""
VGA tile graphics embedded in the unpacked executable.

Blob layout (after RLE expansion):
- uint32le tile_count
- tile_count * uint32le offsets into the expanded stream
- per tile: optional inline size (w, 0, h, 0) then one palette index per pixel

Pixels are looked up in a 256-entry 6-bit VGA palette and rendered as RGBA.
"""

from __future__ import annotations

import dataclasses
import pathlib
import struct
from typing import List, Tuple

import numpy as np
from PIL import Image

from .binio import FormatError, le32
from .layout import DEFAULT_LAYOUT, DaveLayout


PALETTE_ENTRIES = 256
PALETTE_BYTES = PALETTE_ENTRIES * 3
# Offsets above this are one short in the retail blob.
OFFSET_QUIRK_THRESHOLD = 65280


@dataclasses.dataclass
class Tile:
    index: int
    width: int
    height: int
    offset: int
    consumed: int
    rgba: np.ndarray

    def to_image(self) -> Image.Image:
        return Image.fromarray(self.rgba)


@dataclasses.dataclass
class TileSet:
    stream: bytes
    declared_length: int
    index: List[int]
    palette: np.ndarray
    tiles: List[Tile]


def rle_decompress(data: bytes, off: int) -> Tuple[bytes, int]:
    total = le32(data, off)
    pos = off + 4
    n = len(data)
    out = bytearray()
    while len(out) < total:
        if pos >= n:
            raise FormatError(f"VGA RLE control byte out of range @0x{pos:X}")
        b = data[pos]
        pos += 1
        if b & 0x80:
            run = (b & 0x7F) + 1
            if pos + run > n:
                raise FormatError(f"VGA RLE literal run out of range @0x{pos:X}")
            out += data[pos : pos + run]
            pos += run
        else:
            if pos >= n:
                raise FormatError(f"VGA RLE repeat byte out of range @0x{pos:X}")
            out += bytes((data[pos],)) * (b + 3)
            pos += 1
    return bytes(out), total


def read_palette(data: bytes, off: int) -> np.ndarray:
    if off < 0 or off + PALETTE_BYTES > len(data):
        raise FormatError(f"palette region out of range @0x{off:X}")
    raw = np.frombuffer(data, dtype=np.uint8, count=PALETTE_BYTES, offset=off)
    # 6-bit DAC values to 8-bit.
    pal = (raw.astype(np.uint16) << 2) & 0xFF
    return pal.astype(np.uint8).reshape(PALETTE_ENTRIES, 3)


def read_tile_index(stream: bytes, declared_length: int) -> List[int]:
    if len(stream) < 4:
        raise FormatError(f"decompressed tile index buffer of {len(stream)} bytes is too small")
    n = le32(stream, 0)
    if len(stream) < n * 4 + 4:
        raise FormatError(
            f"decompressed tile index buffer of {len(stream)} bytes is too small for tile count of {n}"
        )
    index = list(struct.unpack_from(f"<{n}I", stream, 4))
    index.append(declared_length)
    for t in range(n):
        if index[t] > index[t + 1]:
            raise FormatError(f"tile{t}: offset 0x{index[t]:X} is past next offset 0x{index[t + 1]:X}")
    return index


def tile_geometry(stream: bytes, cb: int, tile_size: int = 16) -> Tuple[int, int, int]:
    """Return (pixel_start, width, height) for the tile starting at cb."""
    if cb > OFFSET_QUIRK_THRESHOLD:
        cb += 1
    if cb + 3 >= len(stream):
        raise FormatError(f"invalid current byte index {cb}")
    w = h = tile_size
    if stream[cb + 1] == 0 and stream[cb + 3] == 0:
        if 0 < stream[cb] < 0xBF and 0 < stream[cb + 2] < 0x64:
            w, h = stream[cb], stream[cb + 2]
            cb += 4
    return cb, w, h


def decode_tile(stream: bytes, index: List[int], t: int, palette: np.ndarray, tile_size: int = 16) -> Tile:
    if t < 0 or t + 1 >= len(index):
        raise FormatError(f"invalid tile index {t}")
    start, w, h = tile_geometry(stream, index[t], tile_size)
    end = index[t + 1]
    if end > start:
        if end > len(stream):
            raise FormatError(f"invalid current byte index {len(stream)}")
        px = np.frombuffer(stream[start:end], dtype=np.uint8)
    else:
        px = np.zeros(0, dtype=np.uint8)

    if px.size:
        top = int(px.max())
        if top >= len(palette):
            raise FormatError(f"invalid palette index {top}")

    rgba = np.zeros((h, w, 4), dtype=np.uint8)
    flat = rgba.reshape(-1, 4)
    # Bytes past w*h are dropped; short tiles keep transparent pixels.
    k = min(int(px.size), w * h)
    flat[:k, :3] = palette[px[:k]]
    flat[:k, 3] = 255
    return Tile(index=t, width=w, height=h, offset=start, consumed=int(px.size), rgba=rgba)


def decode_tiles(image: bytes, layout: DaveLayout = DEFAULT_LAYOUT) -> TileSet:
    stream, declared = rle_decompress(image, layout.vga_offset)
    palette = read_palette(image, layout.palette_offset)
    index = read_tile_index(stream, declared)
    tiles: List[Tile] = []
    for t in range(len(index) - 1):
        try:
            tiles.append(decode_tile(stream, index, t, palette, layout.tile_size))
        except FormatError as e:
            raise FormatError(f"tile{t}: {e}") from e
    return TileSet(stream=stream, declared_length=declared, index=index, palette=palette, tiles=tiles)


def save_tile_png(tile: Tile, out_path: pathlib.Path) -> None:
    out_path.parent.mkdir(parents=True, exist_ok=True)
    tile.to_image().save(out_path)

"""
Level records: 256-byte monster path, 100x10 tile grid, 24 bytes of padding.
"""

from __future__ import annotations

import dataclasses
import pathlib
import struct
from typing import Iterable, List, Tuple

import numpy as np

from .binio import FormatError, RangeError
from .layout import DEFAULT_LAYOUT, DaveLayout


LEVEL_PATH_SIZE = 256
LEVEL_TILES_SIZE = 1000
LEVEL_PAD_SIZE = 24
LEVEL_SIZE = LEVEL_PATH_SIZE + LEVEL_TILES_SIZE + LEVEL_PAD_SIZE
LEVEL_WIDTH = 100
LEVEL_HEIGHT = 10
PATH_END = -22


@dataclasses.dataclass(frozen=True)
class Level:
    path: bytes
    tiles: bytes
    pad: bytes

    @classmethod
    def from_bytes(cls, rec: bytes) -> "Level":
        if len(rec) != LEVEL_SIZE:
            raise FormatError(f"level record must be {LEVEL_SIZE} bytes (got {len(rec)})")
        tiles_off = LEVEL_PATH_SIZE
        pad_off = tiles_off + LEVEL_TILES_SIZE
        return cls(path=bytes(rec[:tiles_off]), tiles=bytes(rec[tiles_off:pad_off]), pad=bytes(rec[pad_off:]))

    def to_bytes(self) -> bytes:
        return self.path + self.tiles + self.pad

    def tile(self, x: int, y: int) -> int:
        if not (0 <= x < LEVEL_WIDTH and 0 <= y < LEVEL_HEIGHT):
            raise RangeError(f"grid position ({x}, {y}) outside {LEVEL_WIDTH}x{LEVEL_HEIGHT}")
        return self.tiles[y * LEVEL_WIDTH + x]

    def grid(self) -> np.ndarray:
        return np.frombuffer(self.tiles, dtype=np.uint8).reshape(LEVEL_HEIGHT, LEVEL_WIDTH)

    def path_steps(self) -> Iterable[Tuple[int, int]]:
        # Signed (dx, dy) pairs up to the (-22, -22) end marker.
        steps = struct.unpack(f"<{LEVEL_PATH_SIZE}b", self.path)
        for i in range(0, LEVEL_PATH_SIZE, 2):
            dx, dy = steps[i], steps[i + 1]
            if dx == PATH_END and dy == PATH_END:
                return
            yield dx, dy


def extract_level(image: bytes, level: int, layout: DaveLayout = DEFAULT_LAYOUT) -> Level:
    start = layout.level_offset + LEVEL_SIZE * level
    end = start + LEVEL_SIZE
    if level < 0 or end > len(image):
        raise RangeError(f"level does not exist in file (0x{start:X}..0x{end:X}, image is 0x{len(image):X} bytes)")
    return Level.from_bytes(image[start:end])


def extract_levels(image: bytes, layout: DaveLayout = DEFAULT_LAYOUT) -> List[Level]:
    levels: List[Level] = []
    for i in range(layout.level_count):
        try:
            levels.append(extract_level(image, i, layout))
        except (FormatError, RangeError) as e:
            raise type(e)(f"level{i}: {e}") from e
    return levels


def write_level(level: Level, out_path: pathlib.Path) -> None:
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_bytes(level.to_bytes())

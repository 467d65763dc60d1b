"""
Composite overview of all levels: one band of 10 tile rows per level,
100 tile columns wide.
"""

from __future__ import annotations

import pathlib
from typing import Sequence

import numpy as np
from PIL import Image

from .binio import FormatError
from .levels import LEVEL_HEIGHT, LEVEL_WIDTH, Level
from .tiles import Tile


def _stamp(canvas: np.ndarray, rgba: np.ndarray, x: int, y: int, size: int) -> None:
    src = rgba[:size, :size]
    h, w = src.shape[:2]
    dst = canvas[y : y + h, x : x + w]
    opaque = src[..., 3] != 0
    dst[opaque] = src[opaque]


def compose_map(levels: Sequence[Level], tiles: Sequence[Tile], tile_size: int = 16) -> np.ndarray:
    band = LEVEL_HEIGHT * tile_size
    canvas = np.zeros((len(levels) * band, LEVEL_WIDTH * tile_size, 4), dtype=np.uint8)
    for k, level in enumerate(levels):
        grid = level.grid()
        for j in range(LEVEL_HEIGHT):
            for i in range(LEVEL_WIDTH):
                tid = int(grid[j, i])
                if tid >= len(tiles):
                    raise FormatError(f"level{k}: tile id {tid} at ({i}, {j}) has no decoded tile")
                _stamp(canvas, tiles[tid].rgba, i * tile_size, k * band + j * tile_size, tile_size)
    return canvas


def save_map_png(canvas: np.ndarray, out_path: pathlib.Path) -> None:
    out_path.parent.mkdir(parents=True, exist_ok=True)
    Image.fromarray(canvas).save(out_path)

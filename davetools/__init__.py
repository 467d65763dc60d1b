"""Dangerous Dave executable unpacker and asset extractor."""

from .binio import FormatError, RangeError
from .layout import DEFAULT_LAYOUT, DaveLayout, load_layout
from .levels import Level, extract_level, extract_levels
from .tiles import Tile, TileSet, decode_tiles
from .unlzexe import PackerVariant, UnpackResult, detect, unpack

__all__ = [
    "DEFAULT_LAYOUT",
    "DaveLayout",
    "FormatError",
    "Level",
    "PackerVariant",
    "RangeError",
    "Tile",
    "TileSet",
    "UnpackResult",
    "decode_tiles",
    "detect",
    "extract_level",
    "extract_levels",
    "load_layout",
    "unpack",
]

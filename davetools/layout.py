"""
Byte offsets of the asset blobs inside the unpacked DAVE.EXE image.

The defaults match the retail executable. A JSON or YAML file can override
any of them, e.g. for a differently linked build:

    vga_offset: 0x120f0
    palette_offset: 0x26b0a
    level_offset: 0x26e0a
"""

from __future__ import annotations

import dataclasses
import json
import pathlib
from typing import Any, Dict

import yaml


@dataclasses.dataclass(frozen=True)
class DaveLayout:
    vga_offset: int = 0x120F0
    palette_offset: int = 0x26B0A
    level_offset: int = 0x26E0A
    level_count: int = 10
    tile_size: int = 16


DEFAULT_LAYOUT = DaveLayout()


def _to_int(v: Any) -> int:
    if isinstance(v, bool):
        raise ValueError(f"Expected int-like value, got: {type(v).__name__}")
    if isinstance(v, int):
        return int(v)
    if isinstance(v, str):
        return int(v, 0)
    raise ValueError(f"Expected int-like value, got: {type(v).__name__}")


def _load_config(path: pathlib.Path) -> Dict[str, Any]:
    ext = path.suffix.lower()
    text = path.read_text(encoding="utf-8")
    if ext == ".json":
        data = json.loads(text)
    else:
        data = yaml.safe_load(text)
    if not isinstance(data, dict):
        raise ValueError("Config root must be a mapping/object")
    return data


def layout_from_mapping(cfg: Dict[str, Any], base: DaveLayout = DEFAULT_LAYOUT) -> DaveLayout:
    known = {f.name for f in dataclasses.fields(DaveLayout)}
    unknown = sorted(set(cfg) - known)
    if unknown:
        raise ValueError(f"Unknown layout keys: {', '.join(unknown)}")
    values = {k: _to_int(v) for k, v in cfg.items()}
    for k, v in values.items():
        if v < 0:
            raise ValueError(f"Layout value '{k}' must be >= 0, got {v}")
    if values.get("tile_size", base.tile_size) <= 0:
        raise ValueError("Layout value 'tile_size' must be > 0")
    return dataclasses.replace(base, **values)


def load_layout(path: pathlib.Path) -> DaveLayout:
    return layout_from_mapping(_load_config(path))

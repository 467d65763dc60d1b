"""
Dangerous Dave (DOS) asset extraction.

Pipeline:
- undo the LZEXE packing of DAVE.EXE (passes unpacked images through)
- slice the ten level records
- expand the VGA tile blob and render each tile with the game palette
- stamp every level grid into one overview map

Outputs: daveu.exe, level<N>.dat, tile<N>.png, map.png, manifest.json.
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import pathlib
from typing import Dict, List, Optional, Sequence

import numpy as np

from .layout import DEFAULT_LAYOUT, DaveLayout, load_layout
from .levels import Level, extract_levels, write_level
from .tiles import TileSet, decode_tiles, save_tile_png
from .unlzexe import UnpackResult, detect, entry_offset, header_report, read_header, unpack
from .worldmap import compose_map, save_map_png


@dataclasses.dataclass
class Extraction:
    unpacked: UnpackResult
    levels: List[Level]
    tileset: TileSet
    map_rgba: Optional[np.ndarray]


def extract_all(data: bytes, layout: DaveLayout = DEFAULT_LAYOUT, with_map: bool = True) -> Extraction:
    unpacked = unpack(data)
    levels = extract_levels(unpacked.data, layout)
    tileset = decode_tiles(unpacked.data, layout)
    map_rgba = compose_map(levels, tileset.tiles, layout.tile_size) if with_map else None
    return Extraction(unpacked=unpacked, levels=levels, tileset=tileset, map_rgba=map_rgba)


def _variant_name(unpacked: UnpackResult) -> Optional[str]:
    return str(unpacked.variant.value) if unpacked.variant is not None else None


def _say(quiet: bool, msg: str) -> None:
    if not quiet:
        print(msg)


def _write_levels(levels: Sequence[Level], out_dir: pathlib.Path, quiet: bool) -> List[Dict[str, object]]:
    recs: List[Dict[str, object]] = []
    for i, level in enumerate(levels):
        path = out_dir / f"level{i}.dat"
        _say(quiet, f"writing level: {path}")
        write_level(level, path)
        recs.append({"level": i, "file": str(path), "path_steps": len(list(level.path_steps()))})
    return recs


def _write_tiles(tileset: TileSet, out_dir: pathlib.Path, quiet: bool) -> List[Dict[str, object]]:
    recs: List[Dict[str, object]] = []
    for tile in tileset.tiles:
        path = out_dir / f"tile{tile.index}.png"
        _say(quiet, f"writing image: {path}")
        try:
            save_tile_png(tile, path)
        except OSError as e:
            raise type(e)(e.errno, f"tile{tile.index}: {e.strerror or e}", e.filename) from e
        recs.append(
            {
                "tile": tile.index,
                "png": str(path),
                "width": tile.width,
                "height": tile.height,
                "offset": tile.offset,
                "consumed": tile.consumed,
            }
        )
    return recs


def write_extraction(
    extraction: Extraction,
    out_dir: pathlib.Path,
    source: str = "",
    quiet: bool = False,
) -> Dict[str, object]:
    out_dir.mkdir(parents=True, exist_ok=True)
    unpacked = extraction.unpacked

    exe_path = out_dir / "daveu.exe"
    _say(quiet, f"writing uncompressed exe: {exe_path}")
    exe_path.write_bytes(unpacked.data)

    level_recs = _write_levels(extraction.levels, out_dir, quiet)
    tile_recs = _write_tiles(extraction.tileset, out_dir, quiet)

    map_path: Optional[pathlib.Path] = None
    if extraction.map_rgba is not None:
        map_path = out_dir / "map.png"
        _say(quiet, f"writing image: {map_path}")
        save_map_png(extraction.map_rgba, map_path)

    manifest: Dict[str, object] = {
        "input": source,
        "variant": _variant_name(unpacked),
        "unpacked_size": len(unpacked.data),
        "load_size": unpacked.load_size,
        "relocations": len(unpacked.relocations),
        "exe": str(exe_path),
        "map": str(map_path) if map_path is not None else None,
        "counts": {
            "levels": len(level_recs),
            "tiles": len(tile_recs),
        },
        "levels": level_recs,
        "tiles": tile_recs,
    }
    out_manifest = out_dir / "manifest.json"
    out_manifest.write_text(json.dumps(manifest, indent=2), encoding="utf-8")
    manifest["manifest"] = str(out_manifest)
    return manifest


def _layout_from_args(args: argparse.Namespace) -> DaveLayout:
    if getattr(args, "config", None):
        return load_layout(pathlib.Path(args.config))
    return DEFAULT_LAYOUT


def cmd_info(args: argparse.Namespace) -> int:
    raw = pathlib.Path(args.input).read_bytes()
    header = read_header(raw)
    variant = detect(raw)
    report: Dict[str, object] = {
        "input": args.input,
        "size": len(raw),
        "packed": variant is not None,
        "variant": str(variant.value) if variant is not None else None,
        "header": header_report(header) if header is not None else None,
        "entry_offset": f"0x{entry_offset(header):X}" if header is not None else None,
    }
    if args.json:
        pathlib.Path(args.json).write_text(json.dumps(report, indent=2), encoding="utf-8")
    print(json.dumps(report, indent=2))
    return 0


def cmd_unpack(args: argparse.Namespace) -> int:
    raw = pathlib.Path(args.input).read_bytes()
    unpacked = unpack(raw)
    out = pathlib.Path(args.out)
    out.parent.mkdir(parents=True, exist_ok=True)
    _say(args.quiet, f"writing uncompressed exe: {out}")
    out.write_bytes(unpacked.data)
    print(
        json.dumps(
            {
                "input": args.input,
                "variant": _variant_name(unpacked),
                "out": str(out),
                "packed_size": len(raw),
                "unpacked_size": len(unpacked.data),
                "load_size": unpacked.load_size,
                "relocations": len(unpacked.relocations),
                "header": header_report(unpacked.out_header[:14]) if unpacked.out_header else None,
            },
            indent=2,
        )
    )
    return 0


def cmd_levels(args: argparse.Namespace) -> int:
    layout = _layout_from_args(args)
    unpacked = unpack(pathlib.Path(args.input).read_bytes())
    out_dir = pathlib.Path(args.outdir)
    out_dir.mkdir(parents=True, exist_ok=True)
    recs = _write_levels(extract_levels(unpacked.data, layout), out_dir, args.quiet)
    print(json.dumps({"outdir": str(out_dir), "variant": _variant_name(unpacked), "levels": len(recs)}, indent=2))
    return 0


def cmd_tiles(args: argparse.Namespace) -> int:
    layout = _layout_from_args(args)
    unpacked = unpack(pathlib.Path(args.input).read_bytes())
    tileset = decode_tiles(unpacked.data, layout)
    out_dir = pathlib.Path(args.outdir)
    out_dir.mkdir(parents=True, exist_ok=True)
    recs = _write_tiles(tileset, out_dir, args.quiet)
    sized = sum(1 for r in recs if (r["width"], r["height"]) != (layout.tile_size, layout.tile_size))
    print(
        json.dumps(
            {
                "outdir": str(out_dir),
                "variant": _variant_name(unpacked),
                "tiles": len(recs),
                "inline_sized": sized,
                "stream_size": len(tileset.stream),
            },
            indent=2,
        )
    )
    return 0


def cmd_dump(args: argparse.Namespace) -> int:
    layout = _layout_from_args(args)
    raw = pathlib.Path(args.input).read_bytes()
    extraction = extract_all(raw, layout, with_map=not args.no_map)
    manifest = write_extraction(extraction, pathlib.Path(args.outdir), source=args.input, quiet=args.quiet)
    print(
        json.dumps(
            {
                "outdir": args.outdir,
                "manifest": manifest["manifest"],
                "variant": manifest["variant"],
                **manifest["counts"],  # type: ignore[dict-item]
            },
            indent=2,
        )
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Dangerous Dave executable unpacker and asset extractor")
    sub = p.add_subparsers(dest="cmd", required=True)

    pi = sub.add_parser("info", help="Report MZ header fields and detected LZEXE variant")
    pi.add_argument("--input", required=True, help="Path to DAVE.EXE")
    pi.add_argument("--json", help="Optional output JSON path")
    pi.set_defaults(func=cmd_info)

    pu = sub.add_parser("unpack", help="Write the decompressed executable image")
    pu.add_argument("--input", required=True, help="Path to DAVE.EXE")
    pu.add_argument("--out", required=True, help="Output executable path")
    pu.add_argument("--quiet", action="store_true", help="Do not print per-file progress")
    pu.set_defaults(func=cmd_unpack)

    pl = sub.add_parser("levels", help="Write the 1280-byte level records")
    pl.add_argument("--input", required=True, help="Path to DAVE.EXE (packed or unpacked)")
    pl.add_argument("--outdir", required=True, help="Output directory")
    pl.add_argument("--config", help="JSON/YAML layout overrides")
    pl.add_argument("--quiet", action="store_true", help="Do not print per-file progress")
    pl.set_defaults(func=cmd_levels)

    pt = sub.add_parser("tiles", help="Write one RGBA PNG per VGA tile")
    pt.add_argument("--input", required=True, help="Path to DAVE.EXE (packed or unpacked)")
    pt.add_argument("--outdir", required=True, help="Output directory")
    pt.add_argument("--config", help="JSON/YAML layout overrides")
    pt.add_argument("--quiet", action="store_true", help="Do not print per-file progress")
    pt.set_defaults(func=cmd_tiles)

    pd = sub.add_parser("dump", help="Unpack and extract everything (exe, levels, tiles, map)")
    pd.add_argument("--input", required=True, help="Path to DAVE.EXE (packed or unpacked)")
    pd.add_argument("--outdir", required=True, help="Output directory")
    pd.add_argument("--config", help="JSON/YAML layout overrides")
    pd.add_argument("--no-map", action="store_true", help="Skip the composite map.png")
    pd.add_argument("--quiet", action="store_true", help="Do not print per-file progress")
    pd.set_defaults(func=cmd_dump)

    return p


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())

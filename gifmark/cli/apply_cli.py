"""
CLI commands that watermark files.

Usage:
    gifmark apply banner.gif --text DRAFT --rotation -30 --opacity 0.4
    gifmark apply banner.gif --preset watermark.yaml -o out.gif
    gifmark apply photo.png --kind image --image logo.png --image-size 25
    gifmark batch *.gif --kind tiled --text CONFIDENTIAL --out-dir marked/
"""

from __future__ import annotations

import argparse
import queue
import sys
from pathlib import Path
from typing import Any

from tqdm import tqdm

from ..config import load_descriptor, load_image, load_pipeline_config
from ..encoding import palette_size
from ..exceptions import GifMarkError, PipelineError
from ..pipeline import GifWatermarker, JobOptions, is_gif, status_message, suggest_filename
from ..scheduler import JobHandle
from ..types import PipelineConfig, WatermarkDescriptor, WatermarkPosition, WatermarkResult

# argparse dest -> descriptor field
_FLAG_FIELDS = {
    "kind": "kind",
    "text": "text",
    "color": "color",
    "font_size": "font_size_px",
    "opacity": "opacity",
    "rotation": "rotation_deg",
    "scale": "scale",
    "spacing": "tile_spacing_px",
    "image_size": "image_size_pct",
    "font": "font_path",
    "position": "position",
    "margin": "margin_px",
    "shadow": "shadow",
    "shadow_color": "shadow_color",
    "shadow_blur": "shadow_blur_px",
}


def build_descriptor(args: argparse.Namespace) -> WatermarkDescriptor:
    """Preset file (if any) overlaid with explicit command-line flags."""
    data: dict[str, Any] = {}
    image_source = None
    if args.preset:
        preset = load_descriptor(args.preset)
        data = preset.to_mapping()
        image_source = preset.image_source

    for dest, field_name in _FLAG_FIELDS.items():
        value = getattr(args, dest, None)
        if value is not None:
            data[field_name] = value
    if args.anchor is not None:
        data["anchor"] = {"x_pct": args.anchor[0], "y_pct": args.anchor[1]}
    if args.shadow_offset is not None:
        data["shadow_offset_x_px"], data["shadow_offset_y_px"] = args.shadow_offset

    if args.image:
        image_source = load_image(args.image)
        if args.kind is None:
            data["kind"] = "image"
    return WatermarkDescriptor.from_mapping(data, image_source=image_source)


def build_pipeline_config(args: argparse.Namespace) -> PipelineConfig:
    cfg = load_pipeline_config(args.config) if args.config else PipelineConfig()
    if args.jobs is not None:
        cfg.max_jobs = args.jobs
    if args.workers is not None:
        cfg.frame_workers = args.workers
    if args.processes:
        cfg.use_processes = True
    if args.timeout is not None:
        cfg.watchdog_timeout_s = args.timeout
    if args.decode_backend:
        cfg.decode_backends = args.decode_backend
    if args.encode_backend:
        cfg.encode_backends = args.encode_backend
    if args.quality is not None:
        cfg.quality = args.quality
    palette_size(cfg.quality)  # raises ValueError when out of range
    return cfg


def _report(path: Path, out: Path, result: WatermarkResult) -> str:
    kind = f"{result.frame_count} frames" if result.is_animated else "static"
    extra = ", cached" if result.cached else ""
    line = f"{path} -> {out} ({kind}, {result.backend or 'compositor'}{extra})"
    if result.degraded:
        line += "\n  Note: the animation could not be re-encoded; saved as a static image."
    return line


# ---------------------------------------------------------------------------
# gifmark apply
# ---------------------------------------------------------------------------

def cmd_apply(args: argparse.Namespace) -> int:
    """Main handler for ``gifmark apply``."""
    src = Path(args.input)
    if not src.is_file():
        print(f"Error: file not found: {src}", file=sys.stderr)
        return 1
    try:
        wm = build_descriptor(args)
        config = build_pipeline_config(args)
    except (GifMarkError, ValueError, TypeError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2

    out = Path(args.output) if args.output else src.with_name(suggest_filename(src.name))
    data = src.read_bytes()

    with GifWatermarker(config) as watermarker:
        if not is_gif(data):
            try:
                watermarker.watermark_file(src, wm, out)
            except (OSError, GifMarkError) as exc:
                print(f"Error: {exc}", file=sys.stderr)
                return 1
            print(f"{src} -> {out} (static)")
            return 0

        handle = watermarker.watermark_gif(
            data, wm, JobOptions(use_cache=not args.no_cache, name=src.name)
        )
        bar = tqdm(total=0, desc=src.name, unit="frame", file=sys.stderr,
                   dynamic_ncols=True, disable=args.quiet)

        def on_frame(progress):
            if bar.total != progress.total:
                bar.total = progress.total
                bar.refresh()
            bar.update(progress.processed - bar.n)

        handle.on_frame_progress(on_frame)
        try:
            result = handle.result()
        except PipelineError as exc:
            bar.close()
            print(f"Error: {status_message(exc)}", file=sys.stderr)
            return 1
        bar.close()

    out.write_bytes(result.data)
    print(_report(src, out, result))
    return 0


# ---------------------------------------------------------------------------
# gifmark batch
# ---------------------------------------------------------------------------

def cmd_batch(args: argparse.Namespace) -> int:
    """Main handler for ``gifmark batch``: every input as its own job."""
    try:
        wm = build_descriptor(args)
        config = build_pipeline_config(args)
    except (GifMarkError, ValueError, TypeError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2

    out_dir = Path(args.out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    inputs = [Path(p) for p in args.inputs]
    missing = [p for p in inputs if not p.is_file()]
    for p in missing:
        print(f"Error: file not found: {p}", file=sys.stderr)
    inputs = [p for p in inputs if p.is_file()]
    failures = len(missing)

    finished: queue.Queue[tuple[Path, JobHandle]] = queue.Queue()
    with GifWatermarker(config) as watermarker:
        handles = []
        for src in inputs:
            data = src.read_bytes()
            if not is_gif(data):
                try:
                    out = watermarker.watermark_file(src, wm, out_dir / suggest_filename(src.name))
                    print(f"{src} -> {out} (static)")
                except (OSError, GifMarkError) as exc:
                    print(f"Error: {src}: {exc}", file=sys.stderr)
                    failures += 1
                continue
            handle = watermarker.watermark_gif(
                data, wm, JobOptions(use_cache=not args.no_cache, name=src.name)
            )
            handle.add_done_callback(lambda h, src=src: finished.put((src, h)))
            handles.append(handle)

        with tqdm(total=len(handles), desc="Watermarking", unit="file",
                  file=sys.stderr, dynamic_ncols=True, disable=args.quiet) as bar:
            for _ in handles:
                src, handle = finished.get()
                exc = handle.exception()
                if exc is not None:
                    failures += 1
                    tqdm.write(f"Error: {src}: {status_message(exc)}", file=sys.stderr)
                else:
                    result = handle.result()
                    out = out_dir / suggest_filename(src.name)
                    out.write_bytes(result.data)
                    tqdm.write(_report(src, out, result))
                bar.update(1)

    if failures:
        print(f"{failures} file(s) failed.", file=sys.stderr)
        return 1
    return 0


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------

def _add_watermark_args(p: argparse.ArgumentParser) -> None:
    g = p.add_argument_group("watermark")
    g.add_argument("--preset", default=None,
                   help="YAML file with watermark settings; flags override it")
    g.add_argument("--kind", choices=["text", "tiled", "image"], default=None,
                   help="Watermark kind (default: text)")
    g.add_argument("--text", default=None, help="Watermark text")
    g.add_argument("--image", default=None, help="Image file for --kind image")
    g.add_argument("--color", default=None,
                   help="Text colour, e.g. '#ff0000' or 'white' (default: red)")
    g.add_argument("--font", default=None, help="Path to a TrueType font")
    g.add_argument("--font-size", type=float, default=None,
                   help="Font size in pixels (default: 24)")
    g.add_argument("--opacity", type=float, default=None,
                   help="Opacity 0..1 (default: 0.5)")
    g.add_argument("--rotation", type=float, default=None,
                   help="Clockwise rotation in degrees (default: 0)")
    g.add_argument("--anchor", type=float, nargs=2, metavar=("X_PCT", "Y_PCT"),
                   default=None, help="Watermark center in percent (default: 50 50)")
    g.add_argument("--scale", type=float, default=None,
                   help="Size multiplier (default: 1.0)")
    g.add_argument("--spacing", type=int, default=None,
                   help="Tile spacing in pixels for --kind tiled (default: 150)")
    g.add_argument("--image-size", type=float, default=None,
                   help="Image width in percent of the frame width (default: 40)")
    g.add_argument("--position", choices=[p.value for p in WatermarkPosition], default=None,
                   help="Placement preset; 'custom' uses --anchor (default: custom)")
    g.add_argument("--margin", type=float, default=None,
                   help="Distance in pixels from the edge for corner presets (default: 10)")
    g.add_argument("--shadow", action="store_true", default=None,
                   help="Draw a drop shadow under the watermark")
    g.add_argument("--shadow-color", default=None,
                   help="Shadow colour (default: black at half alpha)")
    g.add_argument("--shadow-blur", type=float, default=None,
                   help="Shadow blur radius in pixels (default: 3)")
    g.add_argument("--shadow-offset", type=float, nargs=2, metavar=("DX", "DY"),
                   default=None, help="Shadow offset in pixels (default: 2 2)")


def _add_pipeline_args(p: argparse.ArgumentParser) -> None:
    g = p.add_argument_group("pipeline")
    g.add_argument("--config", default=None, help="YAML file with pipeline settings")
    g.add_argument("--jobs", type=int, default=None,
                   help="Files processed concurrently (default: 2)")
    g.add_argument("--workers", type=int, default=None,
                   help="Frame workers; 0 = auto, 1 = inline (default: 0)")
    g.add_argument("--processes", action="store_true",
                   help="Composite frames in worker processes instead of threads")
    g.add_argument("--timeout", type=float, default=None,
                   help="Watchdog interval in seconds (default: 10)")
    g.add_argument("--decode-backend", action="append", default=None,
                   help="Decode backend to try, repeatable, in order")
    g.add_argument("--encode-backend", action="append", default=None,
                   help="Encode backend to try, repeatable, in order")
    g.add_argument("--quality", type=int, default=None,
                   help="GIF output quality, 1 (best) to 30 (smallest palette) (default: 10)")
    g.add_argument("--no-cache", action="store_true", help="Bypass the result cache")


def build_apply_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the ``apply`` and ``batch`` subcommands."""
    p = subparsers.add_parser(
        "apply",
        help="Watermark one GIF or image",
        description="Watermark every frame of an animated GIF (or a still image).",
    )
    p.add_argument("input", help="Input GIF or image")
    p.add_argument("-o", "--output", default=None,
                   help="Output path (default: <input_stem>_watermarked.<ext>)")
    _add_watermark_args(p)
    _add_pipeline_args(p)
    p.set_defaults(func=cmd_apply)

    b = subparsers.add_parser(
        "batch",
        help="Watermark many files concurrently",
        description="Watermark several files; each file is an independent job.",
    )
    b.add_argument("inputs", nargs="+", help="Input GIFs or images")
    b.add_argument("--out-dir", required=True, help="Directory for the results")
    _add_watermark_args(b)
    _add_pipeline_args(b)
    b.set_defaults(func=cmd_batch)

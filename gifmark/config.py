"""
Runtime configuration: font discovery and YAML presets.

Fonts are located once per (name, path) and loaded fresh for every
watermark render, since FreeType faces are not shared across threads.

Preset files are plain YAML mappings::

    # watermark.yaml
    kind: text
    text: DRAFT
    opacity: 0.4
    rotation_deg: -30
    anchor: {x_pct: 50, y_pct: 50}

An ``image`` key on an image watermark names a file, resolved relative
to the YAML file.  Pipeline settings use the PipelineConfig field names.
"""

from __future__ import annotations

import functools
import logging
import os
import platform
from dataclasses import fields
from pathlib import Path
from typing import Any, Mapping

import yaml
from PIL import Image, ImageFont

from gifmark.exceptions import DescriptorError
from gifmark.types import PipelineConfig, WatermarkDescriptor

logger = logging.getLogger(__name__)

# Tried in order when no explicit font path is given.
DEFAULT_FONT_NAMES = (
    "DejaVuSans.ttf",
    "Arial.ttf",
    "arial.ttf",
    "Helvetica.ttc",
    "LiberationSans-Regular.ttf",
)


def _font_dirs() -> list[Path]:
    system = platform.system()
    if system == "Darwin":
        return [Path("/System/Library/Fonts"), Path("/Library/Fonts"),
                Path.home() / "Library" / "Fonts"]
    if system == "Windows":
        return [Path(os.environ.get("WINDIR", r"C:\Windows")) / "Fonts"]
    return [Path("/usr/share/fonts"), Path("/usr/local/share/fonts"),
            Path.home() / ".fonts", Path.home() / ".local" / "share" / "fonts"]


@functools.lru_cache(maxsize=None)
def find_system_font(name: str) -> str | None:
    """Return the first path where a font file called *name* exists."""
    for root in _font_dirs():
        if not root.is_dir():
            continue
        direct = root / name
        if direct.is_file():
            return str(direct)
        for candidate in root.rglob(name):
            return str(candidate)
    return None


def resolve_font(
    size: float,
    font_path: str | None = None,
) -> ImageFont.FreeTypeFont | ImageFont.ImageFont:
    """Load a font at *size* pixels.

    Order: *font_path* if given, then DEFAULT_FONT_NAMES by name (Pillow
    searches its own font path first, then the platform font folders),
    then Pillow's bundled default font.

    Raises DescriptorError if an explicit *font_path* cannot be loaded.
    """
    px = max(1, int(round(size)))
    if font_path is not None:
        try:
            return ImageFont.truetype(font_path, px)
        except OSError as exc:
            raise DescriptorError(f"Cannot load font {font_path!r}: {exc}") from exc

    for name in DEFAULT_FONT_NAMES:
        try:
            return ImageFont.truetype(name, px)
        except OSError:
            path = find_system_font(name)
            if path is None:
                continue
            try:
                return ImageFont.truetype(path, px)
            except OSError:
                logger.debug("Font %s is unreadable, skipping", path)
    logger.debug("No TrueType font found; using Pillow's default font")
    return ImageFont.load_default(size=px)


# ---------------------------------------------------------------------------
# YAML presets
# ---------------------------------------------------------------------------

def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise DescriptorError(f"{path}: invalid YAML: {exc}") from exc
    if not isinstance(data, Mapping):
        raise DescriptorError(f"{path}: expected a mapping at the top level")
    return dict(data)


def load_image(path: str | Path) -> Image.Image:
    """Read a watermark image as RGBA."""
    try:
        with Image.open(path) as img:
            img.load()
            return img.convert("RGBA")
    except OSError as exc:
        raise DescriptorError(f"Cannot read watermark image {path}: {exc}") from exc


def descriptor_from_mapping(
    data: Mapping[str, Any],
    base_dir: Path | None = None,
) -> WatermarkDescriptor:
    """Build a descriptor, loading an ``image`` path relative to *base_dir*."""
    data = dict(data)
    image_source = None
    image_ref = data.pop("image", None)
    if image_ref is not None:
        image_path = Path(image_ref)
        if not image_path.is_absolute() and base_dir is not None:
            image_path = base_dir / image_path
        image_source = load_image(image_path)
    font_ref = data.get("font_path")
    if font_ref is not None and base_dir is not None and not Path(font_ref).is_absolute():
        candidate = base_dir / font_ref
        if candidate.is_file():
            data["font_path"] = str(candidate)
    return WatermarkDescriptor.from_mapping(data, image_source=image_source)


def load_descriptor(path: str | Path) -> WatermarkDescriptor:
    """Read a watermark preset from a YAML file."""
    path = Path(path)
    return descriptor_from_mapping(_read_yaml(path), base_dir=path.parent)


def dump_descriptor(wm: WatermarkDescriptor) -> str:
    """Serialize *wm* (without its image payload) as YAML."""
    return yaml.safe_dump(wm.to_mapping(), sort_keys=True)


def load_pipeline_config(path: str | Path) -> PipelineConfig:
    """Read PipelineConfig fields from a YAML file; unknown keys are errors."""
    data = _read_yaml(Path(path))
    known = {f.name for f in fields(PipelineConfig)}
    unknown = set(data) - known
    if unknown:
        raise DescriptorError(f"{path}: unknown pipeline settings {sorted(unknown)}")
    return PipelineConfig(**data)

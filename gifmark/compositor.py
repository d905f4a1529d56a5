"""
Watermark Compositor.

``composite(frame, screen_width, screen_height, wm)`` is a pure function:
the same inputs always produce byte-identical pixels, which is what makes
both the processing cache and per-frame parallelism safe.

Geometry
--------
All placement is relative to the GIF's logical screen, not the frame's
own rectangle, so sub-rectangle frames line up with full-screen ones.

    anchor point   (ax, ay) = (x_pct/100 * W, y_pct/100 * H) for CUSTOM;
                   screen center for CENTER; for a corner preset the
                   rotated watermark box sits margin_px in from that
                   corner
    text           drawn at font_size_px * scale, centered on the anchor
    image          width = image_size_pct/100 * W * scale, aspect kept,
                   centered on the anchor
    tiled text     anchor ignored; tile centers at (col*s, row*s) for
                   col < ceil(W/s)+1, row < ceil(H/s)+1

Rotation is clockwise in screen coordinates and applied around the
watermark's own center (per tile for tiled text).  Opacity scales the
alpha of the drawn watermark only.  A drop shadow, if enabled, is
offset in screen coordinates after rotation, blurred, and faded
together with the watermark.  Overscan past the frame edges is
allowed and simply clipped.
"""

from __future__ import annotations

import logging
import math

import numpy as np
from PIL import Image, ImageDraw, ImageFilter

from gifmark.config import resolve_font
from gifmark.exceptions import MissingImageError
from gifmark.types import Frame, WatermarkDescriptor, WatermarkKind, WatermarkPosition

logger = logging.getLogger(__name__)

_TEXT_PAD = 2


# ---------------------------------------------------------------------------
# Building blocks
# ---------------------------------------------------------------------------

def _apply_opacity(img: Image.Image, opacity: float) -> Image.Image:
    """Scale the alpha channel of an RGBA image by *opacity*."""
    if opacity >= 1.0:
        return img
    arr = np.array(img, dtype=np.uint16)
    factor = int(round(opacity * 255))
    arr[..., 3] = (arr[..., 3] * factor + 127) // 255
    return Image.fromarray(arr.astype(np.uint8))


def _rotate(img: Image.Image, degrees: float) -> Image.Image:
    """Rotate clockwise by *degrees*, growing the canvas to fit."""
    if degrees % 360.0 == 0.0:
        return img
    return img.rotate(-degrees, resample=Image.Resampling.BICUBIC, expand=True)


def _stamp(layer: Image.Image, tile: Image.Image, cx: float, cy: float) -> None:
    """Alpha-composite *tile* onto *layer* centered at (cx, cy), clipped."""
    x = int(round(cx - tile.width / 2.0))
    y = int(round(cy - tile.height / 2.0))
    left, top = max(x, 0), max(y, 0)
    right = min(x + tile.width, layer.width)
    bottom = min(y + tile.height, layer.height)
    if right <= left or bottom <= top:
        return
    part = tile.crop((left - x, top - y, right - x, bottom - y))
    layer.alpha_composite(part, dest=(left, top))


def _shadow_pad(wm: WatermarkDescriptor) -> tuple[int, int]:
    """Transparent border added on each side of a tile for its shadow."""
    if not wm.shadow:
        return 0, 0
    blur = int(math.ceil(2 * wm.shadow_blur_px))
    return (blur + abs(int(round(wm.shadow_offset_x_px))),
            blur + abs(int(round(wm.shadow_offset_y_px))))


def _add_shadow(tile: Image.Image, wm: WatermarkDescriptor) -> Image.Image:
    """Put a blurred, offset copy of *tile*'s silhouette underneath it.

    The tile stays centered on the padded canvas, so anchoring by center
    is unaffected.
    """
    if not wm.shadow:
        return tile
    pad_x, pad_y = _shadow_pad(wm)
    dx = int(round(wm.shadow_offset_x_px))
    dy = int(round(wm.shadow_offset_y_px))
    r, g, b, a = wm.shadow_color

    # Shadow RGB fills the whole canvas so blurring only spreads alpha.
    out = Image.new("RGBA", (tile.width + 2 * pad_x, tile.height + 2 * pad_y), (r, g, b, 0))
    silhouette = Image.new("RGBA", tile.size, (r, g, b, 0))
    silhouette.putalpha(tile.getchannel("A").point(lambda v: v * a // 255))
    out.paste(silhouette, (pad_x + dx, pad_y + dy))
    if wm.shadow_blur_px > 0:
        out = out.filter(ImageFilter.GaussianBlur(wm.shadow_blur_px))
    out.alpha_composite(tile, dest=(pad_x, pad_y))
    return out


def _finish(tile: Image.Image, wm: WatermarkDescriptor) -> Image.Image:
    return _apply_opacity(_add_shadow(_rotate(tile, wm.normalized_rotation), wm), wm.opacity)


def render_text_tile(wm: WatermarkDescriptor) -> Image.Image:
    """Render the descriptor's text, rotated and faded, on a tight canvas."""
    font = resolve_font(wm.font_size_px * wm.scale, wm.font_path)
    measure = ImageDraw.Draw(Image.new("RGBA", (1, 1)))
    left, top, right, bottom = measure.textbbox((0, 0), wm.text, font=font)
    width = max(1, right - left) + 2 * _TEXT_PAD
    height = max(1, bottom - top) + 2 * _TEXT_PAD

    tile = Image.new("RGBA", (width, height), (0, 0, 0, 0))
    ImageDraw.Draw(tile).text(
        (_TEXT_PAD - left, _TEXT_PAD - top), wm.text, font=font, fill=wm.color
    )
    return _finish(tile, wm)


def render_image_tile(wm: WatermarkDescriptor, screen_width: int) -> Image.Image:
    """Resize, rotate and fade the descriptor's image."""
    src = wm.image_source
    if src is None:
        raise MissingImageError("Image watermark has no image_source")
    width = max(1, int(round(wm.image_size_pct / 100.0 * screen_width * wm.scale)))
    height = max(1, int(round(width * src.height / src.width)))
    tile = src.resize((width, height), Image.Resampling.LANCZOS)
    return _finish(tile, wm)


def tile_centers(screen_width: int, screen_height: int, spacing: int) -> list[tuple[int, int]]:
    """Grid of tile centers covering the screen plus one extra row/column."""
    cols = math.ceil(screen_width / spacing) + 1
    rows = math.ceil(screen_height / spacing) + 1
    return [(col * spacing, row * spacing) for row in range(rows) for col in range(cols)]


def placement(
    screen_width: int,
    screen_height: int,
    tile_size: tuple[int, int],
    wm: WatermarkDescriptor,
) -> tuple[float, float]:
    """Center point of a single (non-tiled) watermark of *tile_size*."""
    position = wm.position
    if position is WatermarkPosition.CUSTOM:
        return (wm.anchor.x_pct / 100.0 * screen_width,
                wm.anchor.y_pct / 100.0 * screen_height)
    if position is WatermarkPosition.CENTER:
        return screen_width / 2.0, screen_height / 2.0

    half_w, half_h = tile_size[0] / 2.0, tile_size[1] / 2.0
    left = position in (WatermarkPosition.TOP_LEFT, WatermarkPosition.BOTTOM_LEFT)
    top = position in (WatermarkPosition.TOP_LEFT, WatermarkPosition.TOP_RIGHT)
    cx = wm.margin_px + half_w if left else screen_width - wm.margin_px - half_w
    cy = wm.margin_px + half_h if top else screen_height - wm.margin_px - half_h
    return cx, cy


def render_layer(screen_width: int, screen_height: int, wm: WatermarkDescriptor) -> Image.Image:
    """Draw the watermark alone on a transparent screen-sized RGBA layer."""
    if wm.kind is WatermarkKind.IMAGE and wm.image_source is None:
        raise MissingImageError("Image watermark has no image_source")

    layer = Image.new("RGBA", (screen_width, screen_height), (0, 0, 0, 0))
    if wm.kind is WatermarkKind.TILED_TEXT:
        tile = render_text_tile(wm)
        for cx, cy in tile_centers(screen_width, screen_height, wm.tile_spacing_px):
            _stamp(layer, tile, cx, cy)
        return layer

    if wm.kind is WatermarkKind.IMAGE:
        tile = render_image_tile(wm, screen_width)
    else:
        tile = render_text_tile(wm)
    pad_x, pad_y = _shadow_pad(wm)
    cx, cy = placement(screen_width, screen_height,
                       (tile.width - 2 * pad_x, tile.height - 2 * pad_y), wm)
    _stamp(layer, tile, cx, cy)
    return layer


# ---------------------------------------------------------------------------
# Public operations
# ---------------------------------------------------------------------------

def composite_layer(frame: Frame, layer: Image.Image) -> Frame:
    """Composite a pre-rendered screen *layer* onto *frame*.

    Pixels under fully transparent layer pixels are left untouched.
    """
    box = (frame.x_offset, frame.y_offset,
           frame.x_offset + frame.width, frame.y_offset + frame.height)
    region = layer.crop(box)
    base = frame.to_image()
    base.alpha_composite(region)
    return frame.with_pixels(base.tobytes())


def composite(
    frame: Frame,
    screen_width: int,
    screen_height: int,
    wm: WatermarkDescriptor,
) -> Frame:
    """Return a new Frame with *wm* drawn on it.

    Raises MissingImageError, before any buffer is allocated, if *wm* is
    an image watermark without an image.
    """
    if wm.kind is WatermarkKind.IMAGE and wm.image_source is None:
        raise MissingImageError("Image watermark has no image_source")
    return composite_layer(frame, render_layer(screen_width, screen_height, wm))


def watermark_static_image(image: Image.Image, wm: WatermarkDescriptor) -> Image.Image:
    """Watermark a single still image; any mode in, RGBA out."""
    if wm.kind is WatermarkKind.IMAGE and wm.image_source is None:
        raise MissingImageError("Image watermark has no image_source")
    base = image.convert("RGBA")
    return Image.alpha_composite(base, render_layer(base.width, base.height, wm))

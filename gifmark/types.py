"""
Core data structures used throughout the watermarking pipeline.

Every value that crosses a stage boundary (decode -> composite -> encode)
is immutable: stages return new objects instead of mutating their input,
so a cached result can never alias a frame that is still being worked on.
"""

from __future__ import annotations

import enum
import hashlib
import math
from dataclasses import dataclass, field, fields
from typing import Any, Mapping, Optional, Tuple

from PIL import Image, ImageColor

from gifmark.exceptions import DescriptorError

# Permitted anchor overscan, in percent of the frame size.
ANCHOR_MIN_PCT = -20.0
ANCHOR_MAX_PCT = 120.0

# Decimal places kept for floats in the canonical descriptor form.
FINGERPRINT_PRECISION = 4

# Output quality range, 1 (best) to 30 (smallest palette).
QUALITY_MIN = 1
QUALITY_MAX = 30
DEFAULT_QUALITY = 10

RGBA = Tuple[int, int, int, int]


class WatermarkKind(enum.Enum):
    """What gets drawn onto each frame."""
    TEXT = "text"
    TILED_TEXT = "tiled"
    IMAGE = "image"


class WatermarkPosition(enum.Enum):
    """Where a single watermark sits.  CUSTOM uses the percent anchor."""
    CUSTOM = "custom"
    CENTER = "center"
    TOP_LEFT = "top-left"
    TOP_RIGHT = "top-right"
    BOTTOM_LEFT = "bottom-left"
    BOTTOM_RIGHT = "bottom-right"


class DisposalMethod(enum.IntEnum):
    """GIF89a disposal methods (Graphic Control Extension, bits 2-4)."""
    NONE = 0                    # No disposal specified.
    DO_NOT_DISPOSE = 1          # Leave the frame in place.
    RESTORE_TO_BACKGROUND = 2   # Clear the frame's rectangle.
    RESTORE_TO_PREVIOUS = 3     # Restore what was there before the frame.

    @classmethod
    def from_wire(cls, value: int) -> DisposalMethod:
        """Map a raw 3-bit field to a member; reserved values become NONE."""
        try:
            return cls(value)
        except ValueError:
            return cls.NONE


class JobState(enum.Enum):
    """Lifecycle of a single watermarking job."""
    QUEUED = "queued"
    DECODING = "decoding"
    COMPOSITING = "compositing"
    ENCODING = "encoding"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (JobState.DONE, JobState.FAILED, JobState.CANCELLED)


# ---------------------------------------------------------------------------
# Watermark descriptor
# ---------------------------------------------------------------------------

def _normalize_color(value: Any) -> RGBA:
    """Accept an RGB(A) tuple or any Pillow colour string."""
    if isinstance(value, str):
        try:
            rgb = ImageColor.getcolor(value, "RGBA")
        except ValueError as exc:
            raise DescriptorError(f"Unknown colour {value!r}") from exc
        return tuple(int(c) for c in rgb)  # type: ignore[return-value]
    try:
        channels = [int(c) for c in value]
    except TypeError as exc:
        raise DescriptorError(f"Colour must be a tuple or string, got {value!r}") from exc
    if len(channels) == 3:
        channels.append(255)
    if len(channels) != 4 or any(c < 0 or c > 255 for c in channels):
        raise DescriptorError(f"Colour must have 3 or 4 channels in 0..255, got {value!r}")
    return tuple(channels)  # type: ignore[return-value]


@dataclass(frozen=True)
class Anchor:
    """Watermark center, in percent of the frame's width and height."""
    x_pct: float = 50.0
    y_pct: float = 50.0


@dataclass(frozen=True)
class WatermarkDescriptor:
    """Immutable snapshot of the parameters for one watermarking operation.

    The descriptor is validated on construction: a text watermark without
    text, or an image watermark without an image, never reaches a worker.
    ``image_source`` is copied so the caller may keep editing its own image.
    """
    kind: WatermarkKind = WatermarkKind.TEXT
    text: str = ""
    color: Any = (255, 0, 0, 255)
    font_size_px: float = 24.0
    opacity: float = 0.5
    rotation_deg: float = 0.0
    anchor: Anchor = field(default_factory=Anchor)
    scale: float = 1.0
    tile_spacing_px: int = 150
    image_source: Optional[Image.Image] = None
    image_size_pct: float = 40.0
    font_path: Optional[str] = None
    position: WatermarkPosition = WatermarkPosition.CUSTOM
    margin_px: float = 10.0
    shadow: bool = False
    shadow_color: Any = (0, 0, 0, 128)
    shadow_blur_px: float = 3.0
    shadow_offset_x_px: float = 2.0
    shadow_offset_y_px: float = 2.0

    def __post_init__(self) -> None:
        kind = self.kind
        if not isinstance(kind, WatermarkKind):
            try:
                kind = WatermarkKind(kind)
            except ValueError as exc:
                raise DescriptorError(f"Unknown watermark kind {self.kind!r}") from exc
            object.__setattr__(self, "kind", kind)

        object.__setattr__(self, "color", _normalize_color(self.color))
        object.__setattr__(self, "shadow_color", _normalize_color(self.shadow_color))

        position = self.position
        if not isinstance(position, WatermarkPosition):
            try:
                position = WatermarkPosition(position)
            except ValueError as exc:
                raise DescriptorError(f"Unknown position {self.position!r}") from exc
            object.__setattr__(self, "position", position)

        anchor = self.anchor
        if not isinstance(anchor, Anchor):
            anchor = Anchor(*anchor)
            object.__setattr__(self, "anchor", anchor)
        for name, value in (("x_pct", anchor.x_pct), ("y_pct", anchor.y_pct)):
            if not (ANCHOR_MIN_PCT <= value <= ANCHOR_MAX_PCT):
                raise DescriptorError(
                    f"anchor.{name}={value} outside "
                    f"[{ANCHOR_MIN_PCT}, {ANCHOR_MAX_PCT}]"
                )

        if not (0.0 <= self.opacity <= 1.0):
            raise DescriptorError(f"opacity must be in [0, 1], got {self.opacity}")
        if not self.font_size_px > 0:
            raise DescriptorError(f"font_size_px must be positive, got {self.font_size_px}")
        if not self.scale > 0:
            raise DescriptorError(f"scale must be positive, got {self.scale}")
        if int(self.tile_spacing_px) != self.tile_spacing_px or self.tile_spacing_px <= 0:
            raise DescriptorError(
                f"tile_spacing_px must be a positive integer, got {self.tile_spacing_px}"
            )
        object.__setattr__(self, "tile_spacing_px", int(self.tile_spacing_px))
        if not self.image_size_pct > 0:
            raise DescriptorError(f"image_size_pct must be positive, got {self.image_size_pct}")
        if not math.isfinite(self.rotation_deg):
            raise DescriptorError(f"rotation_deg must be finite, got {self.rotation_deg}")
        if not self.margin_px >= 0:
            raise DescriptorError(f"margin_px must be non-negative, got {self.margin_px}")
        if not self.shadow_blur_px >= 0:
            raise DescriptorError(
                f"shadow_blur_px must be non-negative, got {self.shadow_blur_px}"
            )
        for name in ("shadow_offset_x_px", "shadow_offset_y_px"):
            if not math.isfinite(getattr(self, name)):
                raise DescriptorError(f"{name} must be finite, got {getattr(self, name)}")

        if kind in (WatermarkKind.TEXT, WatermarkKind.TILED_TEXT):
            if not self.text:
                raise DescriptorError(f"{kind.value} watermark requires non-empty text")
        elif kind is WatermarkKind.IMAGE:
            if self.image_source is None:
                raise DescriptorError("image watermark requires image_source")

        if self.image_source is not None:
            # convert() always returns a new image, even for RGBA input.
            object.__setattr__(self, "image_source", self.image_source.convert("RGBA"))

    @property
    def normalized_rotation(self) -> float:
        """Rotation in degrees, folded into [0, 360)."""
        return self.rotation_deg % 360.0

    # -- Serialization -----------------------------------------------------

    def canonical(self, precision: int = FINGERPRINT_PRECISION) -> dict[str, Any]:
        """Stable, float-rounded representation used for fingerprinting."""
        def r(value: float) -> float:
            # Fold -0.0 into 0.0 so it serializes identically.
            return round(float(value), precision) + 0.0

        data: dict[str, Any] = {
            "kind": self.kind.value,
            "color": list(self.color),
            "font_size_px": r(self.font_size_px),
            "opacity": r(self.opacity),
            "rotation_deg": r(self.normalized_rotation),
            "anchor": [r(self.anchor.x_pct), r(self.anchor.y_pct)],
            "scale": r(self.scale),
            "font_path": self.font_path,
        }
        if self.kind is WatermarkKind.IMAGE:
            img = self.image_source
            data["image"] = {
                "size": list(img.size) if img is not None else None,
                "sha256": (hashlib.sha256(img.tobytes()).hexdigest()
                           if img is not None else None),
            }
            data["image_size_pct"] = r(self.image_size_pct)
        else:
            data["text"] = self.text
        if self.kind is WatermarkKind.TILED_TEXT:
            data["tile_spacing_px"] = self.tile_spacing_px
        elif self.position is not WatermarkPosition.CUSTOM:
            data["position"] = self.position.value
            data["margin_px"] = r(self.margin_px)
        if self.shadow:
            data["shadow"] = {
                "color": list(self.shadow_color),
                "blur_px": r(self.shadow_blur_px),
                "offset_px": [r(self.shadow_offset_x_px), r(self.shadow_offset_y_px)],
            }
        return data

    def to_mapping(self) -> dict[str, Any]:
        """Plain-data form (without the image payload) for YAML/JSON."""
        out: dict[str, Any] = {}
        for f in fields(self):
            if f.name == "image_source":
                continue
            value = getattr(self, f.name)
            if isinstance(value, enum.Enum):
                value = value.value
            elif isinstance(value, Anchor):
                value = {"x_pct": value.x_pct, "y_pct": value.y_pct}
            elif isinstance(value, tuple):
                value = list(value)
            out[f.name] = value
        return out

    @classmethod
    def from_mapping(
        cls,
        data: Mapping[str, Any],
        image_source: Image.Image | None = None,
    ) -> WatermarkDescriptor:
        """Build a descriptor from a plain mapping (e.g. parsed YAML)."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise DescriptorError(f"Unknown descriptor fields: {sorted(unknown)}")
        kwargs = dict(data)
        anchor = kwargs.get("anchor")
        if isinstance(anchor, Mapping):
            kwargs["anchor"] = Anchor(**anchor)
        if image_source is not None:
            kwargs["image_source"] = image_source
        return cls(**kwargs)


# ---------------------------------------------------------------------------
# Frames and documents
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Frame:
    """One GIF frame: RGBA pixels of its own rectangle plus timing metadata."""
    width: int
    height: int
    pixels: bytes                 # RGBA, row-major, width * height * 4 bytes
    delay_cs: int = 10            # 0 = as fast as the renderer allows
    disposal: DisposalMethod = DisposalMethod.NONE
    x_offset: int = 0
    y_offset: int = 0

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"Frame size must be positive, got {self.width}x{self.height}")
        if len(self.pixels) != self.width * self.height * 4:
            raise ValueError(
                f"Frame buffer holds {len(self.pixels)} bytes, expected "
                f"{self.width * self.height * 4} for {self.width}x{self.height} RGBA"
            )
        if self.delay_cs < 0:
            raise ValueError(f"delay_cs must be >= 0, got {self.delay_cs}")
        if self.x_offset < 0 or self.y_offset < 0:
            raise ValueError("Frame offsets must be non-negative")
        if not isinstance(self.disposal, DisposalMethod):
            object.__setattr__(self, "disposal", DisposalMethod.from_wire(int(self.disposal)))

    @property
    def size(self) -> tuple[int, int]:
        return (self.width, self.height)

    def to_image(self) -> Image.Image:
        """Return a fresh RGBA Pillow image of this frame's pixels."""
        return Image.frombytes("RGBA", self.size, self.pixels)

    def with_pixels(self, pixels: bytes) -> Frame:
        """Return a copy with new pixels and identical timing/placement."""
        return Frame(
            width=self.width,
            height=self.height,
            pixels=pixels,
            delay_cs=self.delay_cs,
            disposal=self.disposal,
            x_offset=self.x_offset,
            y_offset=self.y_offset,
        )

    @classmethod
    def from_image(
        cls,
        img: Image.Image,
        delay_cs: int = 10,
        disposal: DisposalMethod = DisposalMethod.NONE,
        x_offset: int = 0,
        y_offset: int = 0,
    ) -> Frame:
        rgba = img if img.mode == "RGBA" else img.convert("RGBA")
        return cls(
            width=rgba.width,
            height=rgba.height,
            pixels=rgba.tobytes(),
            delay_cs=delay_cs,
            disposal=disposal,
            x_offset=x_offset,
            y_offset=y_offset,
        )


@dataclass(frozen=True)
class GifDocument:
    """A decoded (or to-be-encoded) animated GIF."""
    width: int
    height: int
    frames: Tuple[Frame, ...]
    loop_count: Optional[int] = 0     # 0 = infinite, None = no loop extension
    background_index: int = 0

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ValueError(
                f"Logical screen must be positive, got {self.width}x{self.height}"
            )
        frames = tuple(self.frames)
        if not frames:
            raise ValueError("A GifDocument needs at least one frame.")
        object.__setattr__(self, "frames", frames)
        if self.loop_count is not None and self.loop_count < 0:
            raise ValueError(f"loop_count must be >= 0, got {self.loop_count}")
        for i, frame in enumerate(frames):
            if (frame.x_offset + frame.width > self.width
                    or frame.y_offset + frame.height > self.height):
                raise ValueError(
                    f"Frame {i} ({frame.width}x{frame.height} at "
                    f"+{frame.x_offset}+{frame.y_offset}) exceeds the "
                    f"{self.width}x{self.height} logical screen."
                )

    @property
    def size(self) -> tuple[int, int]:
        return (self.width, self.height)

    @property
    def is_animated(self) -> bool:
        return len(self.frames) > 1

    def with_frames(self, frames: Tuple[Frame, ...] | list[Frame]) -> GifDocument:
        """Return a new document sharing this one's screen and loop settings."""
        return GifDocument(
            width=self.width,
            height=self.height,
            frames=tuple(frames),
            loop_count=self.loop_count,
            background_index=self.background_index,
        )


# ---------------------------------------------------------------------------
# Results and configuration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EncodeResult:
    """Bytes produced by the Frame Encoder."""
    data: bytes
    degraded: bool
    backend: str
    frame_count: int


@dataclass(frozen=True)
class WatermarkResult:
    """Terminal payload of a watermarking job."""
    data: bytes
    degraded: bool
    is_animated: bool
    frame_count: int
    backend: str = ""
    cached: bool = False


@dataclass(frozen=True)
class Progress:
    """A progress event: *processed* of *total* frames in *state*."""
    processed: int
    total: int
    state: JobState

    @property
    def fraction(self) -> float:
        return self.processed / self.total if self.total else 0.0


@dataclass
class PipelineConfig:
    """Full configuration for a GifWatermarker."""
    max_jobs: int = 2                     # Concurrent jobs (one per source file)
    frame_workers: int = 0                # 0 = auto-detect from CPU count, 1 = inline
    use_processes: bool = False           # Composite frames in worker processes
    cache_capacity: int = 20
    watchdog_timeout_s: float = 10.0      # No-progress interval before failing over
    coalesce: bool = True                 # Decode frames onto the full logical screen
    decode_backends: list[str] | None = None   # None = default priority
    encode_backends: list[str] | None = None
    quality: int = DEFAULT_QUALITY        # 1 = largest palette, 30 = smallest

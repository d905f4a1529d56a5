"""
gifmark -- Watermark animated GIFs frame by frame.

Decodes a GIF into frames, draws a text, tiled-text or image watermark
on every frame, and re-encodes it with the original timing, disposal
and looping.  Decoding and encoding fall back across several backends;
jobs run on a bounded, cancellable worker pool.
"""

__version__ = "0.1.0"

from gifmark.exceptions import (
    DecodeError,
    DescriptorError,
    EncodeError,
    GifMarkError,
    PipelineError,
)
from gifmark.pipeline import (
    GifWatermarker,
    JobOptions,
    is_gif,
    status_message,
    suggest_filename,
    watermark_gif,
    watermark_static_image,
)
from gifmark.types import (
    Anchor,
    DisposalMethod,
    Frame,
    GifDocument,
    JobState,
    PipelineConfig,
    WatermarkDescriptor,
    WatermarkKind,
    WatermarkResult,
)

__all__ = [
    "Anchor",
    "DecodeError",
    "DescriptorError",
    "DisposalMethod",
    "EncodeError",
    "Frame",
    "GifDocument",
    "GifMarkError",
    "GifWatermarker",
    "JobOptions",
    "JobState",
    "PipelineConfig",
    "PipelineError",
    "WatermarkDescriptor",
    "WatermarkKind",
    "WatermarkResult",
    "is_gif",
    "status_message",
    "suggest_filename",
    "watermark_gif",
    "watermark_static_image",
]

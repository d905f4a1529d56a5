"""
Custom exception hierarchy for gifmark.

All gifmark exceptions inherit from GifMarkError so callers can catch
the entire family with a single except clause.
"""

from __future__ import annotations

from typing import Sequence


class GifMarkError(Exception):
    """Base exception for all gifmark errors."""


class DescriptorError(GifMarkError, ValueError):
    """Raised when a watermark descriptor is malformed."""


# ---------------------------------------------------------------------------
# Backend-internal failures (never surfaced to callers individually)
# ---------------------------------------------------------------------------

class BackendError(GifMarkError):
    """Raised by a single decode/encode backend."""


class GifFormatError(BackendError):
    """Raised by the native codec on a malformed GIF container."""


class BackendTimeoutError(BackendError):
    """Raised when a backend makes no progress within the watchdog interval."""


# ---------------------------------------------------------------------------
# Stage errors
# ---------------------------------------------------------------------------

class _ChainExhausted:
    """Mixin carrying the per-backend failure list."""

    def __init__(self, message: str, failures: Sequence = ()) -> None:
        super().__init__(message)
        self.failures = list(failures)


class DecodeError(GifMarkError):
    """Raised when GIF bytes cannot be turned into a frame sequence."""


class InvalidFormatError(DecodeError):
    """Raised when the input does not start with a GIF signature."""


class DecodeBackendsExhaustedError(_ChainExhausted, DecodeError):
    """Raised when every decode backend failed."""


class CompositorError(GifMarkError):
    """Raised when a watermark cannot be composited onto a frame."""


class MissingImageError(CompositorError):
    """Raised when an image watermark has no image payload."""


class EncodeError(GifMarkError):
    """Raised when a frame sequence cannot be written as a GIF."""


class EncodeBackendsExhaustedError(_ChainExhausted, EncodeError):
    """Raised when every encode backend and the static fallback failed."""


# ---------------------------------------------------------------------------
# Pipeline errors (what JobHandle.result() raises)
# ---------------------------------------------------------------------------

class PipelineError(GifMarkError):
    """Base for errors that terminate a watermarking job."""


class JobCancelledError(PipelineError):
    """Raised when a job was cancelled before producing output."""


class JobTimeoutError(PipelineError):
    """Raised when a job stops reporting progress."""


class UpstreamError(PipelineError):
    """Wraps a decode, compositor or encode error raised inside a job."""

    def __init__(self, cause: Exception) -> None:
        super().__init__(f"{type(cause).__name__}: {cause}")
        self.cause = cause

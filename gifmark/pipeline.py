"""
Pipeline Orchestrator: the public "watermark this GIF" operation.

    bytes --> FrameDecoder --> GifDocument
          --> composite_layer (per frame, on the frame executor)
          --> FrameEncoder --> EncodeResult --> WatermarkResult

The orchestrator owns the decoder, the encoder, the processing cache and
the concurrency manager.  A cache hit returns an already-resolved handle
without scheduling any work.  Only full-fidelity results are committed
to the cache, from the job's completion callback.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional, Union

from PIL import Image

from gifmark import compositor
from gifmark.cache import ProcessingCache, fingerprint
from gifmark.decoding import FrameDecoder, get_decode_backends
from gifmark.encoding import FrameEncoder, get_encode_backends
from gifmark.exceptions import (
    DecodeBackendsExhaustedError,
    DecodeError,
    DescriptorError,
    EncodeError,
    InvalidFormatError,
    JobCancelledError,
    JobTimeoutError,
    MissingImageError,
    UpstreamError,
)
from gifmark.gifcodec import has_gif_signature
from gifmark.scheduler import ConcurrencyManager, Job, JobContext, JobHandle
from gifmark.types import (
    JobState,
    PipelineConfig,
    WatermarkDescriptor,
    WatermarkResult,
)

logger = logging.getLogger(__name__)

DescriptorLike = Union[WatermarkDescriptor, Mapping[str, Any]]


# ---------------------------------------------------------------------------
# Helpers exposed to collaborators
# ---------------------------------------------------------------------------

def is_gif(data: bytes) -> bool:
    """True if *data* starts with a GIF signature."""
    return has_gif_signature(data)


def suggest_filename(original_name: str, ext: str | None = None) -> str:
    """``photo.gif`` -> ``photo_watermarked.gif``.

    *ext* defaults to the original extension, or ``gif`` if there is none.
    """
    path = Path(original_name)
    suffix = (ext or path.suffix.lstrip(".") or "gif").lower()
    return f"{path.stem}_watermarked.{suffix}"


def status_message(exc: BaseException) -> str:
    """Short, user-facing text for a pipeline error.  Never a traceback."""
    if isinstance(exc, JobCancelledError):
        return "Cancelled."
    if isinstance(exc, JobTimeoutError):
        return "Processing stalled and was stopped. Please try again."
    cause = exc.cause if isinstance(exc, UpstreamError) else exc
    if isinstance(cause, InvalidFormatError):
        return "This file is not a GIF."
    if isinstance(cause, DecodeBackendsExhaustedError):
        return "This GIF could not be read. It may be damaged."
    if isinstance(cause, DecodeError):
        return "This GIF could not be read."
    if isinstance(cause, MissingImageError):
        return "Choose an image for the watermark first."
    if isinstance(cause, DescriptorError):
        return "The watermark settings are invalid."
    if isinstance(cause, EncodeError):
        return "The watermarked GIF could not be saved."
    return "Watermarking failed."


def _as_descriptor(descriptor: DescriptorLike) -> WatermarkDescriptor:
    if isinstance(descriptor, WatermarkDescriptor):
        return descriptor
    return WatermarkDescriptor.from_mapping(descriptor)


@dataclass(frozen=True)
class JobOptions:
    """Per-call options for ``watermark_gif``."""
    use_cache: bool = True
    name: str = ""


# ---------------------------------------------------------------------------
# Job
# ---------------------------------------------------------------------------

class WatermarkJob(Job):
    """Decode, composite every frame, encode."""

    def __init__(
        self,
        data: bytes,
        descriptor: WatermarkDescriptor,
        decoder: FrameDecoder,
        encoder: FrameEncoder,
        name: str = "",
    ) -> None:
        self.data = data
        self.descriptor = descriptor
        self.decoder = decoder
        self.encoder = encoder
        self.name = name

    def run(self, ctx: JobContext) -> WatermarkResult:
        ctx.enter(JobState.DECODING)
        doc = self.decoder.decode(self.data)

        ctx.enter(JobState.COMPOSITING, total=len(doc.frames))
        layer = compositor.render_layer(doc.width, doc.height, self.descriptor)
        frames = ctx.map_frames(compositor.composite_layer, doc.frames, layer)

        ctx.enter(JobState.ENCODING)
        encoded = self.encoder.encode(doc.with_frames(frames))
        return WatermarkResult(
            data=encoded.data,
            degraded=encoded.degraded,
            is_animated=encoded.frame_count > 1,
            frame_count=encoded.frame_count,
            backend=encoded.backend,
        )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class GifWatermarker:
    """Owns the pipeline stages and schedules watermarking jobs."""

    def __init__(self, config: PipelineConfig | None = None) -> None:
        self.config = config or PipelineConfig()
        cfg = self.config
        self.decoder = FrameDecoder(
            get_decode_backends(cfg.decode_backends),
            coalesce=cfg.coalesce,
            backend_timeout_s=cfg.watchdog_timeout_s,
        )
        self.encoder = FrameEncoder(
            get_encode_backends(cfg.encode_backends),
            backend_timeout_s=cfg.watchdog_timeout_s,
            quality=cfg.quality,
        )
        self.cache = ProcessingCache(cfg.cache_capacity)
        self.manager = ConcurrencyManager(
            max_jobs=cfg.max_jobs,
            frame_workers=cfg.frame_workers,
            watchdog_timeout_s=cfg.watchdog_timeout_s,
            use_processes=cfg.use_processes,
        )

    def __enter__(self) -> GifWatermarker:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self, cancel_pending: bool = False) -> None:
        """Shut down the worker pools."""
        self.manager.shutdown(wait=True, cancel_pending=cancel_pending)

    # -- Entry points ------------------------------------------------------

    def watermark_gif(
        self,
        data: bytes,
        descriptor: DescriptorLike,
        options: JobOptions | None = None,
    ) -> JobHandle:
        """Schedule watermarking of GIF *data* and return its handle.

        *descriptor* is snapshotted now; later edits by the caller do not
        reach the job.
        """
        options = options or JobOptions()
        data = bytes(data)
        wm = _as_descriptor(descriptor)

        key: Optional[str] = None
        if options.use_cache:
            key = fingerprint(data, wm)
            entry = self.cache.get_entry(key)
            if entry is not None:
                logger.info("Cache hit for %s (%s)", options.name or "gif", key[:12])
                result = WatermarkResult(
                    data=entry.result_bytes,
                    degraded=False,
                    is_animated=entry.is_animated,
                    frame_count=entry.frame_count,
                    backend=entry.backend,
                    cached=True,
                )
                return JobHandle.resolved(self.manager.next_id(), result, options.name)

        job = WatermarkJob(data, wm, self.decoder, self.encoder, options.name)
        handle = self.manager.submit(job)
        handle.add_done_callback(lambda h: self._on_job_done(h, key))
        return handle

    def _on_job_done(self, handle: JobHandle, key: Optional[str]) -> None:
        if handle.state is JobState.DONE:
            result = handle.result()
            if result.degraded:
                logger.warning("%s: encoding degraded to a static image", handle.name)
            elif key is not None:
                self.cache.put(key, result.data, frame_count=result.frame_count,
                               is_animated=result.is_animated, backend=result.backend)
            return
        if handle.state is JobState.FAILED:
            exc = handle.exception()
            cause = getattr(exc, "cause", None)
            for failure in getattr(cause, "failures", ()):
                logger.warning("%s: backend %s", handle.name, failure)

    def watermark_static_image(self, image: Image.Image, descriptor: DescriptorLike) -> Image.Image:
        """Watermark a single still image (no codec involved)."""
        return compositor.watermark_static_image(image, _as_descriptor(descriptor))

    def watermark_file(
        self,
        path: str | Path,
        descriptor: DescriptorLike,
        output: str | Path | None = None,
        timeout: Optional[float] = None,
    ) -> Path:
        """Watermark the file at *path* and write the result.

        GIFs go through the full pipeline; any other image Pillow can
        open takes the still-image path.  Returns the output path.
        """
        path = Path(path)
        out = Path(output) if output is not None else path.with_name(suggest_filename(path.name))
        data = path.read_bytes()

        if is_gif(data):
            handle = self.watermark_gif(data, descriptor, JobOptions(name=path.name))
            result = handle.result(timeout=timeout)
            out.write_bytes(result.data)
            return out

        with Image.open(path) as img:
            img.load()
            fmt = img.format
            marked = self.watermark_static_image(img, descriptor)
        if fmt == "JPEG" or out.suffix.lower() in (".jpg", ".jpeg"):
            marked = marked.convert("RGB")
        marked.save(out)
        return out


# ---------------------------------------------------------------------------
# Module-level convenience API
# ---------------------------------------------------------------------------

_default: GifWatermarker | None = None
_default_lock = threading.Lock()


def get_default_watermarker() -> GifWatermarker:
    """The lazily created process-wide GifWatermarker."""
    global _default
    with _default_lock:
        if _default is None:
            _default = GifWatermarker()
        return _default


def watermark_gif(
    data: bytes,
    descriptor: DescriptorLike,
    options: JobOptions | None = None,
) -> JobHandle:
    """Schedule *data* on the default watermarker."""
    return get_default_watermarker().watermark_gif(data, descriptor, options)


def watermark_static_image(image: Image.Image, descriptor: DescriptorLike) -> Image.Image:
    """Watermark a still image with the compositor only."""
    return compositor.watermark_static_image(image, _as_descriptor(descriptor))

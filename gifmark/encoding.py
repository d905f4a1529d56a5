"""
Frame Encoder: GifDocument -> GIF bytes.

Backend priority (highest to lowest):
    1. pillow       -- ``Image.save(save_all=True)``, fast, good palettes
    2. native       -- the package's own GIF89a writer, one median-cut
                       local palette per frame
    3. imagemagick  -- ``magick`` subprocess, only if the binary is on PATH

Each backend's output is re-parsed and must carry exactly the input's
frame count, per-frame delays, per-frame disposal methods and loop
count.  A backend that quietly drops, merges or retimes frames is
treated as failed.  When every backend fails, the first frame is
written as a static GIF and the result is flagged ``degraded``.

Timing
------
Delays are written in the GIF's native unit (1/100 s) and never
adjusted; a delay of 0 stays 0.
"""

from __future__ import annotations

import io
import logging
import platform
import shutil
import subprocess
import tempfile
import time
from dataclasses import replace
from pathlib import Path
from typing import List, Optional, Sequence

import numpy as np
from PIL import Image

from gifmark.backends import (
    BackendFailure,
    EncodeBackend,
    ProgressFn,
    no_progress,
    resolve_backends,
    run_chain,
)
from gifmark.exceptions import BackendError, EncodeBackendsExhaustedError
from gifmark.gifcodec import IndexedImage, parse_gif, write_gif
from gifmark.types import (
    DEFAULT_QUALITY,
    QUALITY_MAX,
    QUALITY_MIN,
    DisposalMethod,
    EncodeResult,
    Frame,
    GifDocument,
)

logger = logging.getLogger(__name__)

# Alpha below this becomes the transparent palette entry.
ALPHA_THRESHOLD = 128


# ---------------------------------------------------------------------------
# Structure verification
# ---------------------------------------------------------------------------

def verify_structure(data: bytes, doc: GifDocument) -> None:
    """Raise BackendError unless *data* matches *doc*'s frame metadata."""
    container = parse_gif(data, strict=True)
    if len(container.images) != len(doc.frames):
        raise BackendError(
            f"Output has {len(container.images)} frames, expected {len(doc.frames)}"
        )
    if container.loop_count != doc.loop_count:
        raise BackendError(
            f"Output loop count {container.loop_count}, expected {doc.loop_count}"
        )
    for i, (image, frame) in enumerate(zip(container.images, doc.frames)):
        control = image.control
        delay = control.delay_cs if control else 0
        disposal = control.disposal if control else 0
        if delay != frame.delay_cs:
            raise BackendError(f"Frame {i}: delay {delay}cs, expected {frame.delay_cs}cs")
        if disposal != int(frame.disposal):
            raise BackendError(
                f"Frame {i}: disposal {disposal}, expected {int(frame.disposal)}"
            )


# ---------------------------------------------------------------------------
# Palette helpers
# ---------------------------------------------------------------------------

def quantize_frame(frame: Frame, max_colors: int = 255) -> IndexedImage:
    """Median-cut a frame to at most *max_colors* plus a transparent entry."""
    img = frame.to_image()
    alpha = np.asarray(img.getchannel("A"))
    quantized = img.convert("RGB").quantize(
        colors=max_colors,
        method=Image.Quantize.MEDIANCUT,
        dither=Image.Dither.FLOYDSTEINBERG,
    )
    indices = np.array(quantized, dtype=np.uint8)
    n_colors = int(indices.max()) + 1
    raw_palette = quantized.getpalette() or []
    raw_palette = raw_palette + [0] * max(0, 3 * n_colors - len(raw_palette))
    palette = [tuple(raw_palette[i:i + 3]) for i in range(0, 3 * n_colors, 3)]

    transparent_index = None
    clear = alpha < ALPHA_THRESHOLD
    if clear.any():
        transparent_index = n_colors
        palette.append((0, 0, 0))
        indices[clear] = transparent_index

    return IndexedImage(
        width=frame.width,
        height=frame.height,
        indices=indices.tobytes(),
        palette=palette,
        delay_cs=frame.delay_cs,
        disposal=int(frame.disposal),
        transparent_index=transparent_index,
        left=frame.x_offset,
        top=frame.y_offset,
    )


def palette_size(quality: int) -> int:
    """Colours per frame for an output *quality* (1 best, 30 smallest).

    Qualities up to the default keep a full palette; above it the palette
    shrinks linearly to 32 colours at QUALITY_MAX.
    """
    if not QUALITY_MIN <= quality <= QUALITY_MAX:
        raise ValueError(f"quality must be in [{QUALITY_MIN}, {QUALITY_MAX}], got {quality}")
    if quality <= DEFAULT_QUALITY:
        return 255
    step = (255 - 32) / (QUALITY_MAX - DEFAULT_QUALITY)
    return int(round(255 - (quality - DEFAULT_QUALITY) * step))


def limit_colours(doc: GifDocument, colors: int) -> GifDocument:
    """Reduce every frame to at most *colors* RGB values, alpha untouched."""
    frames = []
    for frame in doc.frames:
        img = frame.to_image()
        reduced = img.convert("RGB").quantize(
            colors=colors, method=Image.Quantize.MEDIANCUT, dither=Image.Dither.NONE,
        ).convert("RGBA")
        reduced.putalpha(img.getchannel("A"))
        frames.append(frame.with_pixels(reduced.tobytes()))
    return replace(doc, frames=tuple(frames))


def _cube_palette() -> list[tuple[int, int, int]]:
    steps = [i * 51 for i in range(6)]
    return [(r, g, b) for r in steps for g in steps for b in steps]


CUBE_TRANSPARENT_INDEX = 216


def quantize_to_cube(img: Image.Image) -> IndexedImage:
    """Map an RGBA image onto the fixed 6x6x6 colour cube."""
    arr = np.asarray(img.convert("RGBA"), dtype=np.uint16)
    levels = (arr[..., :3] + 25) // 51
    indices = (levels[..., 0] * 36 + levels[..., 1] * 6 + levels[..., 2]).astype(np.uint8)
    indices[arr[..., 3] < ALPHA_THRESHOLD] = CUBE_TRANSPARENT_INDEX
    return IndexedImage(
        width=img.width,
        height=img.height,
        indices=indices.tobytes(),
        palette=_cube_palette() + [(0, 0, 0)],
        transparent_index=CUBE_TRANSPARENT_INDEX,
    )


def flatten_first_frame(doc: GifDocument) -> Image.Image:
    """The first frame placed on a transparent logical screen."""
    first = doc.frames[0]
    canvas = Image.new("RGBA", doc.size, (0, 0, 0, 0))
    canvas.paste(first.to_image(), (first.x_offset, first.y_offset))
    return canvas


# ---------------------------------------------------------------------------
# 1. Pillow
# ---------------------------------------------------------------------------

_PILLOW_UNSAFE_DISPOSALS = (
    DisposalMethod.RESTORE_TO_BACKGROUND,
    DisposalMethod.RESTORE_TO_PREVIOUS,
)


class PillowEncodeBackend(EncodeBackend):
    """Pillow GIF writer.  Requires full-screen frames.

    Pillow stores each frame as the rectangle that differs from the
    previous input frame, which is only what a viewer shows when the
    previous frame stays on screen.  Documents using restore-to-background
    or restore-to-previous are refused and go to the native writer.

    Pillow merges identical consecutive frames; the structure check
    turns that into a fallback.
    """

    name = "pillow"

    @staticmethod
    def is_available() -> bool:
        return True

    @staticmethod
    def install_hint() -> str:
        return "pip install Pillow"

    def encode(self, doc, progress=no_progress):
        for i, frame in enumerate(doc.frames):
            if frame.size != doc.size or frame.x_offset or frame.y_offset:
                raise BackendError(f"Frame {i} is a sub-rectangle; Pillow needs full frames")
            if frame.disposal in _PILLOW_UNSAFE_DISPOSALS:
                raise BackendError(
                    f"Frame {i} uses disposal {int(frame.disposal)}; Pillow writes "
                    "frames as deltas against the previous input frame"
                )

        images = []
        for frame in doc.frames:
            images.append(frame.to_image())
            progress()
        params = {
            "format": "GIF",
            "save_all": True,
            "append_images": images[1:],
            "duration": [frame.delay_cs * 10 for frame in doc.frames],
            "disposal": [int(frame.disposal) for frame in doc.frames],
            "optimize": False,
        }
        if doc.loop_count is not None:
            params["loop"] = doc.loop_count

        buf = io.BytesIO()
        images[0].save(buf, **params)
        return buf.getvalue()


# ---------------------------------------------------------------------------
# 2. Native
# ---------------------------------------------------------------------------

class NativeEncodeBackend(EncodeBackend):
    """Pure-Python writer: one local palette per frame, exact GCE fields."""

    name = "native"

    @staticmethod
    def is_available() -> bool:
        return True

    def encode(self, doc, progress=no_progress):
        images = []
        for frame in doc.frames:
            images.append(quantize_frame(frame))
            progress()
        return write_gif(
            doc.width,
            doc.height,
            images,
            loop_count=doc.loop_count,
            background_index=doc.background_index,
            progress=progress,
        )


# ---------------------------------------------------------------------------
# 3. ImageMagick
# ---------------------------------------------------------------------------

_IM_DISPOSE = {
    DisposalMethod.NONE: "Undefined",
    DisposalMethod.DO_NOT_DISPOSE: "None",
    DisposalMethod.RESTORE_TO_BACKGROUND: "Background",
    DisposalMethod.RESTORE_TO_PREVIOUS: "Previous",
}


class ImageMagickEncodeBackend(EncodeBackend):
    """``magick`` subprocess writer.

    Command structure::

        magick
          -delay 10 -dispose None -page 100x100+0+0 frame_000000.png
          -delay 0  -dispose Background -page 100x100+4+4 frame_000001.png
          ...
          -loop 0
          gif:output.gif

    ``-delay``, ``-dispose`` and ``-page`` are settings that apply to the
    images read after them, so each frame carries its own values.
    """

    name = "imagemagick"
    timeout_s = 300
    poll_interval_s = 1.0

    @staticmethod
    def is_available() -> bool:
        return shutil.which("magick") is not None

    @staticmethod
    def install_hint() -> str:
        os_name = platform.system()
        if os_name == "Darwin":
            return "brew install imagemagick"
        if os_name == "Linux":
            return "sudo apt-get install imagemagick"
        if os_name == "Windows":
            return "choco install imagemagick"
        return "Install ImageMagick 7 (provides 'magick') for your platform."

    def build_command(self, doc: GifDocument, frame_paths: Sequence[Path], output: Path) -> List[str]:
        cmd: List[str] = ["magick"]
        for frame, path in zip(doc.frames, frame_paths):
            cmd += [
                "-delay", str(frame.delay_cs),
                "-dispose", _IM_DISPOSE[frame.disposal],
                "-page", f"{doc.width}x{doc.height}+{frame.x_offset}+{frame.y_offset}",
                str(path),
            ]
        if doc.loop_count is not None:
            cmd += ["-loop", str(doc.loop_count)]
        cmd.append(f"gif:{output}")
        return cmd

    def encode(self, doc, progress=no_progress):
        if shutil.which("magick") is None:
            raise BackendError("ImageMagick (magick) is not installed or not on PATH")

        with tempfile.TemporaryDirectory(prefix="gifmark_im_") as tmpdir:
            tmp = Path(tmpdir)
            frame_paths = []
            for i, frame in enumerate(doc.frames):
                path = tmp / f"frame_{i:06d}.png"
                frame.to_image().save(path, format="PNG")
                frame_paths.append(path)
                progress()
            output = tmp / "output.gif"

            cmd = self.build_command(doc, frame_paths, output)
            logger.debug("ImageMagick command: %s", " ".join(cmd))
            returncode, stderr = self._run(cmd, progress)
            if returncode != 0:
                raise BackendError(
                    f"ImageMagick failed (rc={returncode}):\n"
                    f"{stderr.decode(errors='replace')}"
                )
            return output.read_bytes()

    def _run(self, cmd: List[str], progress: ProgressFn) -> tuple[int, bytes]:
        """Run *cmd*, reporting progress while the process is alive."""
        deadline = time.monotonic() + self.timeout_s
        proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        try:
            while True:
                try:
                    _, stderr = proc.communicate(timeout=self.poll_interval_s)
                    return proc.returncode, stderr
                except subprocess.TimeoutExpired:
                    if time.monotonic() > deadline:
                        raise BackendError(
                            f"ImageMagick did not finish within {self.timeout_s}s"
                        ) from None
                    progress()
        finally:
            if proc.poll() is None:
                proc.kill()
                proc.communicate()


# ---------------------------------------------------------------------------
# Registry and encoder
# ---------------------------------------------------------------------------

ENCODE_BACKEND_PRIORITY: List[type] = [
    PillowEncodeBackend,
    NativeEncodeBackend,
    ImageMagickEncodeBackend,
]


def get_encode_backends(names: Optional[Sequence[str]] = None) -> List[EncodeBackend]:
    """Instantiate encode backends in priority order (or in *names* order)."""
    return resolve_backends(ENCODE_BACKEND_PRIORITY, names, "encode backend")


def encode_static(doc: GifDocument) -> bytes:
    """Single-frame GIF of ``doc.frames[0]`` on the fixed colour cube."""
    indexed = quantize_to_cube(flatten_first_frame(doc))
    indexed.delay_cs = doc.frames[0].delay_cs
    return write_gif(doc.width, doc.height, [indexed], loop_count=None)


class FrameEncoder:
    """Encode a document with the first backend whose output verifies."""

    def __init__(
        self,
        backends: Optional[Sequence[EncodeBackend]] = None,
        backend_timeout_s: Optional[float] = None,
        verify: bool = True,
        quality: int = DEFAULT_QUALITY,
    ) -> None:
        self.backends = list(backends) if backends is not None else get_encode_backends()
        self.backend_timeout_s = backend_timeout_s
        self.verify = verify
        self.colors = palette_size(quality)
        self.quality = quality

    def _attempt(self, backend: EncodeBackend, doc: GifDocument, progress: ProgressFn) -> bytes:
        data = backend.encode(doc, progress=progress)
        if self.verify:
            verify_structure(data, doc)
        return data

    def encode(self, doc: GifDocument) -> EncodeResult:
        """Return encoded bytes; degraded to a static frame if all backends fail.

        Raises EncodeBackendsExhaustedError only if the static fallback
        itself cannot be written.
        """
        if self.colors < 255:
            logger.debug("Quality %d: limiting frames to %d colours", self.quality, self.colors)
            doc = limit_colours(doc, self.colors)
        outcome = run_chain(
            self.backends,
            lambda backend, progress: self._attempt(backend, doc, progress),
            "encode",
            self.backend_timeout_s,
        )
        if outcome.succeeded:
            return EncodeResult(
                data=outcome.result,
                degraded=False,
                backend=outcome.backend.name,
                frame_count=len(doc.frames),
            )

        failures = list(outcome.failures)
        logger.warning(
            "All encode backends failed (%s); writing first frame as a static GIF",
            "; ".join(str(f) for f in failures) or "no backends configured",
        )
        try:
            data = encode_static(doc)
        except Exception as exc:
            failures.append(BackendFailure("static", exc))
            raise EncodeBackendsExhaustedError(
                "All encode backends and the static fallback failed: "
                + "; ".join(str(f) for f in failures),
                failures,
            ) from exc
        return EncodeResult(data=data, degraded=True, backend="static", frame_count=1)


def encode(doc: GifDocument) -> EncodeResult:
    """Encode *doc* with the default backend chain."""
    return FrameEncoder().encode(doc)

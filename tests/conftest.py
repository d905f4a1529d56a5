"""
Shared fixtures for the gifmark test suite.
"""

from __future__ import annotations

import io
import shutil

import pytest
from PIL import Image

from gifmark.encoding import NativeEncodeBackend
from gifmark.gifcodec import IndexedImage, write_gif
from gifmark.types import DisposalMethod, Frame, GifDocument


def pytest_configure(config):
    """Register custom markers used across sub-suites."""
    config.addinivalue_line("markers", "slow: exercises real timeouts or worker pools")
    config.addinivalue_line("markers", "imagemagick: needs the magick binary on PATH")


@pytest.fixture(scope="session")
def has_magick() -> bool:
    return shutil.which("magick") is not None


# ---------------------------------------------------------------------------
# Synthetic frames and GIFs
# ---------------------------------------------------------------------------

def make_frame(
    size=(100, 100),
    color=(0, 0, 200, 255),
    delay_cs=10,
    disposal=DisposalMethod.NONE,
    offset=(0, 0),
) -> Frame:
    """A solid-colour frame."""
    img = Image.new("RGBA", size, color)
    return Frame.from_image(img, delay_cs=delay_cs, disposal=disposal,
                            x_offset=offset[0], y_offset=offset[1])


def make_document(n_frames=10, size=(100, 100), delay_cs=10, loop_count=0) -> GifDocument:
    """Frames in distinct solid colours so no two are identical."""
    frames = tuple(
        make_frame(size, (0, 20 * i % 256, 200, 255), delay_cs=delay_cs)
        for i in range(n_frames)
    )
    return GifDocument(width=size[0], height=size[1], frames=frames, loop_count=loop_count)


def two_colour_gif(
    n_frames=10,
    size=(100, 100),
    delays=None,
    disposals=None,
    loop_count=0,
) -> bytes:
    """GIF from the native writer: a 10x10 white square moving over blue."""
    width, height = size
    delays = delays if delays is not None else [10] * n_frames
    disposals = disposals if disposals is not None else [0] * n_frames
    images = []
    for i in range(n_frames):
        idx = bytearray(width * height)
        x0 = (i * 8) % max(1, width - 10)
        for y in range(height // 2 - 5, height // 2 + 5):
            for x in range(x0, x0 + 10):
                idx[y * width + x] = 1
        images.append(IndexedImage(
            width=width,
            height=height,
            indices=bytes(idx),
            palette=[(0, 0, 200), (255, 255, 255)],
            delay_cs=delays[i],
            disposal=disposals[i],
        ))
    return write_gif(width, height, images, loop_count=loop_count)


def pillow_gif(n_frames=4, size=(40, 40), duration_ms=100, loop=0) -> bytes:
    """GIF written by Pillow from P-mode frames with a fixed palette."""
    palette = [0, 0, 0, 255, 0, 0, 0, 255, 0, 0, 0, 255] + [0] * (768 - 12)
    frames = []
    for i in range(n_frames):
        img = Image.new("P", size, 0)
        img.putpalette(palette)
        for y in range(size[1]):
            for x in range(size[0]):
                img.putpixel((x, y), (x // 5 + y // 7 + i) % 4)
        frames.append(img)
    buf = io.BytesIO()
    frames[0].save(buf, format="GIF", save_all=True, append_images=frames[1:],
                   duration=duration_ms, loop=loop)
    return buf.getvalue()


@pytest.fixture
def draft_gif() -> bytes:
    """10 frames, 100x100, loop=0, 10cs each."""
    return NativeEncodeBackend().encode(make_document())


@pytest.fixture
def moving_square_gif() -> bytes:
    return two_colour_gif()


@pytest.fixture
def sample_document() -> GifDocument:
    return make_document()

"""
Tests for the native GIF89a container codec.
"""

from __future__ import annotations

import io
import random

import pytest
from PIL import Image

from conftest import pillow_gif, two_colour_gif
from gifmark.exceptions import GifFormatError
from gifmark.gifcodec import (
    IndexedImage,
    has_gif_signature,
    image_to_rgba,
    lzw_decode,
    lzw_encode,
    parse_gif,
    write_gif,
)


class TestSignature:
    def test_gif89a(self):
        assert has_gif_signature(b"GIF89a....")

    def test_gif87a(self):
        assert has_gif_signature(b"GIF87a")

    def test_not_a_gif(self):
        assert not has_gif_signature(b"not a gif")
        assert not has_gif_signature(b"")
        assert not has_gif_signature(b"\x89PNG\r\n\x1a\n")


class TestLzw:
    def test_runs_hit_the_kwkwk_case(self):
        data = bytes([1] * 500 + [0, 1, 2, 3] * 50)
        encoded = lzw_encode(data, 2)
        assert lzw_decode(2, encoded, len(data)) == data

    def test_table_overflow_emits_clear_codes(self):
        rng = random.Random(1234)
        data = bytes(rng.randrange(256) for _ in range(30000))
        encoded = lzw_encode(data, 8)
        assert lzw_decode(8, encoded, len(data)) == data

    def test_single_pixel(self):
        assert lzw_decode(2, lzw_encode(b"\x03", 2), 1) == b"\x03"

    def test_short_stream_is_padded(self):
        data = bytes([1, 2, 3, 1, 2, 3])
        encoded = lzw_encode(data, 2)
        assert lzw_decode(2, encoded, 10) == data + bytes(4)

    def test_invalid_min_code_size(self):
        with pytest.raises(GifFormatError):
            lzw_decode(1, b"\x00", 4)

    def test_output_readable_by_pillow(self):
        rng = random.Random(7)
        width, height = 64, 48
        indices = bytes(rng.randrange(16) for _ in range(width * height))
        palette = [(i * 16, 255 - i * 16, (i * 37) % 256) for i in range(16)]
        data = write_gif(width, height, [IndexedImage(width, height, indices, palette)])

        with Image.open(io.BytesIO(data)) as im:
            rgb = im.convert("RGB")
        expected = [palette[i] for i in indices]
        assert list(rgb.getdata()) == expected


class TestParse:
    def test_structure_of_written_file(self):
        data = two_colour_gif(n_frames=3, delays=[0, 5, 250], disposals=[1, 2, 3])
        container = parse_gif(data)
        assert container.version == "GIF89a"
        assert (container.width, container.height) == (100, 100)
        assert container.loop_count == 0
        assert [img.control.delay_cs for img in container.images] == [0, 5, 250]
        assert [img.control.disposal for img in container.images] == [1, 2, 3]
        assert not container.truncated

    def test_no_loop_extension(self):
        data = two_colour_gif(n_frames=2, loop_count=None)
        assert parse_gif(data).loop_count is None

    def test_finite_loop_count(self):
        assert parse_gif(two_colour_gif(n_frames=2, loop_count=3)).loop_count == 3

    def test_transparent_index(self):
        img = IndexedImage(2, 1, bytes([0, 1]), [(10, 20, 30), (0, 0, 0)],
                           transparent_index=1)
        data = write_gif(2, 1, [img])
        container = parse_gif(data)
        rgba = image_to_rgba(container, container.images[0])
        assert rgba == bytes([10, 20, 30, 255, 0, 0, 0, 0])

    def test_rejects_non_gif(self):
        with pytest.raises(GifFormatError):
            parse_gif(b"not a gif at all")

    def test_truncated_strict_raises(self):
        data = two_colour_gif(n_frames=3)
        with pytest.raises(GifFormatError):
            parse_gif(data[: len(data) - 40])

    def test_truncated_lenient_keeps_started_images(self):
        data = two_colour_gif(n_frames=3)
        container = parse_gif(data[: len(data) - 40], strict=False)
        assert container.truncated
        assert len(container.images) == 3

    def test_missing_trailer_lenient(self):
        data = two_colour_gif(n_frames=2)
        container = parse_gif(data[:-1], strict=False)
        assert container.truncated
        assert len(container.images) == 2

    def test_interlaced_matches_pillow(self):
        # Pillow writes interlaced images by default for sizes >= 16.
        data = pillow_gif(n_frames=1, size=(40, 40))
        container = parse_gif(data)
        assert container.images[0].interlaced
        native = image_to_rgba(container, container.images[0])
        with Image.open(io.BytesIO(data)) as im:
            expected = im.convert("RGBA").tobytes()
        assert native == expected

    def test_comment_extension(self):
        data = two_colour_gif(n_frames=1)
        comment = b"\x21\xFE\x05hello\x00"
        # Insert right after the logical screen descriptor (no global table).
        patched = data[:13] + comment + data[13:]
        assert parse_gif(patched).comments == [b"hello"]


class TestWrite:
    def test_rejects_empty(self):
        with pytest.raises(GifFormatError):
            write_gif(1, 1, [])

    def test_rejects_wrong_buffer_size(self):
        with pytest.raises(GifFormatError):
            write_gif(2, 2, [IndexedImage(2, 2, b"\x00", [(0, 0, 0)])])

    def test_delay_zero_written_verbatim(self):
        data = two_colour_gif(n_frames=2, delays=[0, 0])
        assert [img.control.delay_cs for img in parse_gif(data).images] == [0, 0]

    def test_offsets(self):
        img = IndexedImage(2, 2, bytes(4), [(1, 2, 3)], left=5, top=7)
        container = parse_gif(write_gif(10, 10, [img]))
        assert (container.images[0].left, container.images[0].top) == (5, 7)

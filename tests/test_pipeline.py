"""
End-to-end tests for the pipeline orchestrator.
"""

from __future__ import annotations

import io
import threading
from unittest import mock

import pytest
from PIL import Image

from conftest import two_colour_gif
from gifmark import compositor, pipeline
from gifmark.decoding import NativeDecodeBackend
from gifmark.exceptions import (
    DecodeBackendsExhaustedError,
    InvalidFormatError,
    JobCancelledError,
    JobTimeoutError,
    MissingImageError,
    UpstreamError,
)
from gifmark.gifcodec import IndexedImage, parse_gif, write_gif
from gifmark.pipeline import (
    GifWatermarker,
    JobOptions,
    is_gif,
    status_message,
    suggest_filename,
)
from gifmark.types import JobState, PipelineConfig, WatermarkDescriptor, WatermarkKind

DRAFT = WatermarkDescriptor(text="DRAFT", anchor=(50, 50), rotation_deg=-30, opacity=0.4,
                            color=(255, 0, 0, 255))


def _gate_compositing(gate):
    """Hold every job at the start of compositing until *gate* is set."""
    real = compositor.render_layer

    def gated(*args):
        gate.wait(10)
        return real(*args)

    return mock.patch.object(compositor, "render_layer", side_effect=gated)


@pytest.fixture
def watermarker():
    wm = GifWatermarker(PipelineConfig(frame_workers=2, watchdog_timeout_s=30.0))
    yield wm
    wm.close(cancel_pending=True)


class TestDraftScenario:
    def test_ten_frame_draft(self, watermarker, draft_gif):
        handle = watermarker.watermark_gif(draft_gif, DRAFT)
        result = handle.result(timeout=60)

        assert handle.state is JobState.DONE
        assert not result.degraded
        assert result.is_animated
        assert result.frame_count == 10

        container = parse_gif(result.data)
        assert len(container.images) == 10
        assert container.loop_count == 0
        assert all(img.control.delay_cs == 10 for img in container.images)

        doc = NativeDecodeBackend().decode(result.data)
        for frame in doc.frames:
            img = frame.to_image()
            near_center = [img.getpixel((x, y))[0]
                           for x in range(44, 57) for y in range(44, 57)]
            assert max(near_center) > 60
            assert img.getpixel((2, 2))[0] < 30

    def test_progress_reaches_total(self, watermarker, draft_gif):
        seen = []
        gate = threading.Event()
        with _gate_compositing(gate):
            handle = watermarker.watermark_gif(draft_gif, DRAFT, JobOptions(use_cache=False))
            handle.on_frame_progress(seen.append)
            gate.set()
            handle.result(timeout=60)
        assert handle.progress.state is JobState.DONE
        assert seen
        assert [p.processed for p in seen] == sorted(p.processed for p in seen)
        assert seen[-1].processed == seen[-1].total == 10

    def test_mapping_descriptor(self, watermarker, draft_gif):
        result = watermarker.watermark_gif(draft_gif, {"text": "DRAFT"}).result(timeout=60)
        assert result.frame_count == 10


class TestCaching:
    def test_second_call_is_a_hit(self, watermarker, draft_gif):
        first = watermarker.watermark_gif(draft_gif, DRAFT).result(timeout=60)
        handle = watermarker.watermark_gif(draft_gif, DRAFT)
        assert handle.done()
        second = handle.result(timeout=0)
        assert second.cached and not first.cached
        assert second.data == first.data
        assert second.frame_count == first.frame_count
        assert watermarker.cache.stats()["hits"] == 1

    def test_different_descriptor_misses(self, watermarker, draft_gif):
        watermarker.watermark_gif(draft_gif, DRAFT).result(timeout=60)
        other = WatermarkDescriptor(text="DRAFT", opacity=0.9)
        result = watermarker.watermark_gif(draft_gif, other).result(timeout=60)
        assert not result.cached
        assert len(watermarker.cache) == 2

    def test_use_cache_false(self, watermarker, draft_gif):
        options = JobOptions(use_cache=False)
        watermarker.watermark_gif(draft_gif, DRAFT, options).result(timeout=60)
        again = watermarker.watermark_gif(draft_gif, DRAFT, options).result(timeout=60)
        assert not again.cached
        assert len(watermarker.cache) == 0

    def test_degraded_result_not_cached(self, draft_gif):
        with GifWatermarker(PipelineConfig(encode_backends=[], frame_workers=1)) as wm:
            result = wm.watermark_gif(draft_gif, DRAFT).result(timeout=60)
            assert result.degraded
            assert result.frame_count == 1
            assert not result.is_animated
            assert len(wm.cache) == 0
            again = wm.watermark_gif(draft_gif, DRAFT).result(timeout=60)
            assert not again.cached


class TestFailures:
    def test_not_a_gif(self, watermarker):
        handle = watermarker.watermark_gif(b"\x89PNG\r\n\x1a\n" + bytes(32), DRAFT)
        with pytest.raises(UpstreamError) as excinfo:
            handle.result(timeout=60)
        assert isinstance(excinfo.value.cause, InvalidFormatError)
        assert handle.state is JobState.FAILED
        assert status_message(excinfo.value) == "This file is not a GIF."

    def test_missing_image(self, watermarker, draft_gif):
        wm = WatermarkDescriptor(text="x")
        object.__setattr__(wm, "kind", WatermarkKind.IMAGE)
        handle = watermarker.watermark_gif(draft_gif, wm, JobOptions(use_cache=False))
        exc = handle.exception(timeout=60)
        assert isinstance(exc.cause, MissingImageError)
        assert status_message(exc) == "Choose an image for the watermark first."

    def test_undecodable(self, draft_gif):
        config = PipelineConfig(decode_backends=["pillow"], frame_workers=1)
        with GifWatermarker(config) as wm:
            exc = wm.watermark_gif(draft_gif[:40], DRAFT).exception(timeout=60)
        assert isinstance(exc.cause, DecodeBackendsExhaustedError)
        assert "damaged" in status_message(exc)

    def test_truncated_gif_recovered(self, watermarker):
        data = two_colour_gif(n_frames=3)
        result = watermarker.watermark_gif(data[: len(data) - 40], DRAFT).result(timeout=60)
        assert result.frame_count == 3


class TestSubRectangles:
    def test_uncoalesced_frames_keep_offsets(self):
        base = IndexedImage(40, 40, bytes(1600), [(0, 0, 200)], delay_cs=5)
        patch = IndexedImage(10, 10, bytes(100), [(0, 200, 0)], delay_cs=5, left=15, top=15)
        data = write_gif(40, 40, [base, patch])
        with GifWatermarker(PipelineConfig(coalesce=False, frame_workers=1)) as wm:
            result = wm.watermark_gif(data, DRAFT).result(timeout=60)
        assert result.backend == "native"
        image = parse_gif(result.data).images[1]
        assert (image.left, image.top, image.width, image.height) == (15, 15, 10, 10)


class TestFiles:
    def test_gif_file(self, watermarker, draft_gif, tmp_path):
        src = tmp_path / "clip.gif"
        src.write_bytes(draft_gif)
        out = watermarker.watermark_file(src, DRAFT, timeout=60)
        assert out == tmp_path / "clip_watermarked.gif"
        assert is_gif(out.read_bytes())

    def test_png_file(self, watermarker, tmp_path):
        src = tmp_path / "photo.png"
        Image.new("RGB", (120, 80), (0, 0, 200)).save(src)
        out = watermarker.watermark_file(src, DRAFT)
        assert out.name == "photo_watermarked.png"
        with Image.open(out) as img:
            assert img.size == (120, 80)

    def test_jpeg_output_is_rgb(self, watermarker, tmp_path):
        src = tmp_path / "photo.jpg"
        Image.new("RGB", (60, 60), (0, 0, 200)).save(src)
        out = watermarker.watermark_file(src, DRAFT, output=tmp_path / "marked.jpg")
        with Image.open(out) as img:
            assert img.mode == "RGB"


class TestHelpers:
    @pytest.mark.parametrize("name,expected", [
        ("photo.gif", "photo_watermarked.gif"),
        ("Clip.GIF", "Clip_watermarked.gif"),
        ("noext", "noext_watermarked.gif"),
        ("a.b.png", "a.b_watermarked.png"),
    ])
    def test_suggest_filename(self, name, expected):
        assert suggest_filename(name) == expected

    def test_suggest_filename_override(self):
        assert suggest_filename("photo.png", "gif") == "photo_watermarked.gif"

    def test_is_gif(self):
        assert is_gif(b"GIF87a")
        assert not is_gif(b"GIF")

    def test_status_messages(self):
        assert status_message(JobCancelledError("x")) == "Cancelled."
        assert "stalled" in status_message(JobTimeoutError("x"))
        assert status_message(UpstreamError(RuntimeError("x"))) == "Watermarking failed."

    def test_module_level_static_image(self):
        img = Image.new("RGB", (50, 50), (0, 0, 200))
        out = pipeline.watermark_static_image(img, {"text": "DRAFT"})
        assert out.size == (50, 50)
        assert out.mode == "RGBA"

    def test_static_image_round_trips_through_png(self, watermarker):
        img = Image.new("RGBA", (30, 30), (0, 0, 200, 255))
        out = watermarker.watermark_static_image(img, DRAFT)
        buf = io.BytesIO()
        out.save(buf, format="PNG")
        assert buf.getvalue().startswith(b"\x89PNG")


class TestCancellation:
    @pytest.mark.parametrize("workers", [1, 2])
    def test_cancel_mid_compositing(self, draft_gif, workers):
        gate = threading.Event()
        events = []
        config = PipelineConfig(frame_workers=workers, watchdog_timeout_s=30.0)
        with GifWatermarker(config) as wm, _gate_compositing(gate):
            with mock.patch.object(wm.encoder, "encode", wraps=wm.encoder.encode) as encode:
                handle = wm.watermark_gif(draft_gif, DRAFT)
                handle.on_frame_progress(lambda p: p.processed == 3 and handle.cancel())
                handle.on_done(events.append)
                gate.set()
                with pytest.raises(JobCancelledError):
                    handle.result(timeout=60)

            assert handle.state is JobState.CANCELLED
            assert handle.progress.processed < 10
            encode.assert_not_called()
            assert len(wm.cache) == 0
            assert len(events) == 1
            assert isinstance(events[0], JobCancelledError)

            # A fresh run of the same input is not served from a cache entry.
            again = wm.watermark_gif(draft_gif, DRAFT).result(timeout=60)
            assert not again.cached
            assert again.frame_count == 10

    def test_done_event_carries_bytes(self, watermarker, draft_gif):
        events = []
        handle = watermarker.watermark_gif(draft_gif, DRAFT, JobOptions(use_cache=False))
        handle.on_done(events.append)
        result = handle.result(timeout=60)
        assert events == [result]
        assert events[0].data.startswith(b"GIF89a")
        assert events[0].degraded is False

    def test_done_event_for_cache_hit(self, watermarker, draft_gif):
        watermarker.watermark_gif(draft_gif, DRAFT).result(timeout=60)
        events = []
        watermarker.watermark_gif(draft_gif, DRAFT).on_done(events.append)
        assert len(events) == 1
        assert events[0].cached

"""
Tests for the concurrency manager, job handles and frame fan-out.
"""

from __future__ import annotations

import threading
import time

import pytest

from gifmark.exceptions import (
    DecodeError,
    JobCancelledError,
    JobTimeoutError,
    UpstreamError,
)
from gifmark.scheduler import ConcurrencyManager, Job, JobHandle
from gifmark.types import JobState, WatermarkResult


class FramesJob(Job):
    """Walks the pipeline states and maps *fn* over *items*."""

    def __init__(self, items, fn, gate=None, name="frames"):
        self.items = list(items)
        self.fn = fn
        self.gate = gate
        self.name = name
        self.started = threading.Event()

    def run(self, ctx):
        self.started.set()
        if self.gate is not None:
            self.gate.wait(5)
        ctx.enter(JobState.DECODING)
        ctx.enter(JobState.COMPOSITING, total=len(self.items))
        out = ctx.map_frames(self.fn, self.items)
        ctx.enter(JobState.ENCODING)
        return WatermarkResult(data=bytes(out), degraded=False, is_animated=len(out) > 1,
                               frame_count=len(out), backend="test")


class RaisingJob(Job):
    name = "raising"

    def __init__(self, error):
        self.error = error

    def run(self, ctx):
        ctx.enter(JobState.DECODING)
        raise self.error


def _identity(i):
    return i


@pytest.fixture
def manager():
    mgr = ConcurrencyManager(max_jobs=2, frame_workers=4, watchdog_timeout_s=5.0)
    yield mgr
    mgr.shutdown(wait=True, cancel_pending=True)


class TestOrdering:
    def test_results_in_input_order(self, manager):
        def slow_first(i):
            time.sleep(0.002 * (20 - i))
            return i

        handle = manager.submit(FramesJob(range(20), slow_first))
        result = handle.result(timeout=10)
        assert result.data == bytes(range(20))
        assert result.frame_count == 20

    def test_inline_when_single_worker(self):
        with ConcurrencyManager(max_jobs=1, frame_workers=1) as mgr:
            assert mgr.frame_executor() is None
            events = []
            job = FramesJob(range(5), _identity, gate=threading.Event())
            handle = mgr.submit(job)
            handle.on_frame_progress(events.append)
            job.gate.set()
            assert handle.result(timeout=10).data == bytes(range(5))
        assert [p.processed for p in events] == [1, 2, 3, 4, 5]
        assert all(p.total == 5 for p in events)


class TestStates:
    def test_state_sequence(self, manager):
        states = []
        job = FramesJob(range(3), _identity, gate=threading.Event())
        handle = manager.submit(job)
        handle.on_state_change(states.append)
        job.gate.set()
        handle.result(timeout=10)
        assert states == [JobState.DECODING, JobState.COMPOSITING,
                          JobState.ENCODING, JobState.DONE]
        assert handle.state is JobState.DONE

    def test_frame_progress_during_compositing(self, manager):
        progress = []
        job = FramesJob(range(6), _identity, gate=threading.Event())
        handle = manager.submit(job)
        handle.on_frame_progress(progress.append)
        job.gate.set()
        handle.result(timeout=10)
        assert sorted(p.processed for p in progress) == [1, 2, 3, 4, 5, 6]
        assert all(p.state is JobState.COMPOSITING for p in progress)
        assert handle.progress.state is JobState.DONE

    def test_listener_exception_does_not_fail_job(self, manager):
        def explode(_):
            raise RuntimeError("listener bug")

        job = FramesJob(range(3), _identity, gate=threading.Event())
        handle = manager.submit(job)
        handle.on_progress(explode)
        job.gate.set()
        assert handle.result(timeout=10).frame_count == 3
        assert handle.state is JobState.DONE

    def test_result_timeout(self, manager):
        gate = threading.Event()
        handle = manager.submit(FramesJob(range(1), _identity, gate=gate))
        try:
            with pytest.raises(TimeoutError):
                handle.result(timeout=0.05)
        finally:
            gate.set()
        handle.result(timeout=10)


class TestCancellation:
    def test_cancel_queued_job(self):
        with ConcurrencyManager(max_jobs=1, frame_workers=1) as mgr:
            blocker = FramesJob(range(1), _identity, gate=threading.Event())
            first = mgr.submit(blocker)
            assert blocker.started.wait(5)
            queued_job = FramesJob(range(1), _identity)
            queued = mgr.submit(queued_job)
            assert queued.state is JobState.QUEUED

            assert queued.cancel()
            assert queued.state is JobState.CANCELLED
            with pytest.raises(JobCancelledError):
                queued.result(timeout=1)

            blocker.gate.set()
            assert first.result(timeout=10).frame_count == 1
        assert not queued_job.started.is_set()

    def test_cancel_mid_compositing(self, manager):
        calls = []

        def slow(i):
            calls.append(i)
            time.sleep(0.01)
            return i

        job = FramesJob(range(50), slow, gate=threading.Event())
        handle = manager.submit(job)

        def stop_after_three(progress):
            if progress.processed == 3:
                handle.cancel()

        handle.on_frame_progress(stop_after_three)
        job.gate.set()
        with pytest.raises(JobCancelledError):
            handle.result(timeout=10)
        assert handle.state is JobState.CANCELLED
        assert len(calls) < 50

    def test_cancel_before_start_of_stage(self, manager):
        job = FramesJob(range(3), _identity, gate=threading.Event())
        handle = manager.submit(job)
        assert job.started.wait(5)
        handle.cancel()
        job.gate.set()
        with pytest.raises(JobCancelledError):
            handle.result(timeout=10)

    def test_cancel_after_done(self, manager):
        handle = manager.submit(FramesJob(range(2), _identity))
        handle.result(timeout=10)
        assert handle.cancel() is False
        assert handle.state is JobState.DONE


class TestFailures:
    @pytest.mark.slow
    def test_watchdog(self):
        release = threading.Event()

        def stuck(i):
            release.wait(5)
            return i

        mgr = ConcurrencyManager(max_jobs=1, frame_workers=2, watchdog_timeout_s=0.1)
        try:
            handle = mgr.submit(FramesJob(range(4), stuck))
            with pytest.raises(JobTimeoutError):
                handle.result(timeout=10)
            assert handle.state is JobState.FAILED
        finally:
            release.set()
            mgr.shutdown(wait=True)

    def test_gifmark_error_wrapped(self, manager):
        handle = manager.submit(RaisingJob(DecodeError("bad bytes")))
        with pytest.raises(UpstreamError) as excinfo:
            handle.result(timeout=10)
        assert isinstance(excinfo.value.cause, DecodeError)
        assert "bad bytes" in str(excinfo.value)
        assert handle.state is JobState.FAILED

    def test_unexpected_error_wrapped(self, manager):
        handle = manager.submit(RaisingJob(RuntimeError("boom")))
        with pytest.raises(UpstreamError) as excinfo:
            handle.result(timeout=10)
        assert isinstance(excinfo.value.cause, RuntimeError)

    def test_pipeline_error_passes_through(self, manager):
        handle = manager.submit(RaisingJob(JobTimeoutError("slow")))
        with pytest.raises(JobTimeoutError):
            handle.result(timeout=10)

    def test_frame_error_fails_job(self, manager):
        def bad(i):
            if i == 3:
                raise ValueError("frame 3")
            return i

        handle = manager.submit(FramesJob(range(10), bad))
        assert isinstance(handle.exception(timeout=10), UpstreamError)
        assert handle.state is JobState.FAILED


class TestManager:
    def test_max_jobs_bound(self):
        lock = threading.Lock()
        running = [0]
        peak = [0]

        def track(i):
            with lock:
                running[0] += 1
                peak[0] = max(peak[0], running[0])
            time.sleep(0.02)
            with lock:
                running[0] -= 1
            return i

        with ConcurrencyManager(max_jobs=2, frame_workers=1) as mgr:
            handles = [mgr.submit(FramesJob(range(2), track)) for _ in range(5)]
            for handle in handles:
                handle.result(timeout=10)
        assert peak[0] <= 2

    def test_unique_ids(self, manager):
        handles = [manager.submit(FramesJob(range(1), _identity)) for _ in range(3)]
        assert len({h.id for h in handles}) == 3
        for handle in handles:
            handle.result(timeout=10)

    def test_active_jobs_forgotten_when_done(self, manager):
        handle = manager.submit(FramesJob(range(1), _identity))
        handle.result(timeout=10)
        deadline = time.monotonic() + 2
        while handle in manager.active_jobs() and time.monotonic() < deadline:
            time.sleep(0.01)
        assert handle not in manager.active_jobs()

    def test_submit_after_shutdown(self):
        mgr = ConcurrencyManager(max_jobs=1, frame_workers=1)
        mgr.shutdown()
        with pytest.raises(RuntimeError):
            mgr.submit(FramesJob(range(1), _identity))

    def test_invalid_max_jobs(self):
        with pytest.raises(ValueError):
            ConcurrencyManager(max_jobs=0)


class TestResolvedHandle:
    RESULT = WatermarkResult(data=b"GIF", degraded=False, is_animated=True,
                             frame_count=4, cached=True)

    def test_immediately_done(self):
        handle = JobHandle.resolved(7, self.RESULT)
        assert handle.done()
        assert handle.state is JobState.DONE
        assert handle.result(timeout=0) is self.RESULT
        assert handle.progress.fraction == 1.0

    def test_late_listeners_fire_once(self):
        handle = JobHandle.resolved(7, self.RESULT)
        states, done = [], []
        handle.on_state_change(states.append)
        handle.add_done_callback(done.append)
        assert states == [JobState.DONE]
        assert done == [handle]

    def test_late_done_event_is_the_result(self):
        events = []
        JobHandle.resolved(7, self.RESULT).on_done(events.append)
        assert events == [self.RESULT]


class TestDoneEvent:
    def test_success_delivers_result(self, manager):
        gate = threading.Event()
        events = []
        handle = manager.submit(FramesJob(range(3), _identity, gate=gate))
        handle.on_done(events.append)
        gate.set()
        result = handle.result(timeout=10)
        assert events == [result]
        assert events[0].data == bytes([0, 1, 2])
        assert events[0].degraded is False

    def test_failure_delivers_error(self, manager):
        events = []
        handle = manager.submit(RaisingJob(DecodeError("bad bytes")))
        handle.on_done(events.append)
        error = handle.exception(timeout=10)
        assert events == [error]
        assert isinstance(error, UpstreamError)

    def test_cancellation_delivers_error(self):
        mgr = ConcurrencyManager(max_jobs=1, frame_workers=1)
        gate = threading.Event()
        events = []
        try:
            blocking_job = FramesJob(range(2), _identity, gate=gate)
            blocker = mgr.submit(blocking_job)
            assert blocking_job.started.wait(5)
            queued = mgr.submit(FramesJob(range(2), _identity))
            queued.on_done(events.append)
            assert queued.cancel()
        finally:
            gate.set()
            mgr.shutdown(wait=True)
        blocker.result(timeout=10)
        assert len(events) == 1
        assert isinstance(events[0], JobCancelledError)

    def test_fires_once(self, manager):
        events = []
        handle = manager.submit(FramesJob(range(2), _identity))
        handle.on_done(events.append)
        handle.result(timeout=10)
        handle.cancel()
        assert len(events) == 1

    def test_resolved_result_returned_directly(self):
        handle = JobHandle.resolved(1, TestResolvedHandle.RESULT)
        assert handle.result() is TestResolvedHandle.RESULT

"""
Concurrency Manager: bounded, cancellable background jobs.

Architecture
------------
Jobs (one per source file) run on a ``ThreadPoolExecutor`` with
``max_jobs`` workers, so extra submissions wait in FIFO order in the
``QUEUED`` state.  Inside a job, per-frame work is fanned out to a
shared frame executor: a ``ProcessPoolExecutor`` when ``use_processes``
is set, otherwise a thread pool.  Pixel work in Pillow and numpy
releases the GIL for most of its runtime, so threads are the default.

Each job keeps at most one frame per frame worker in flight.  Results
are collected as they complete and re-ordered by original index, so
output order never depends on completion order.

State machine::

    QUEUED -> DECODING -> COMPOSITING(i/N) -> ENCODING -> DONE
       |          |              |               |
       +----------+--------------+---------------+-> FAILED | CANCELLED

Cancellation
------------
Cooperative.  A queued job is removed from the executor and never runs.
A running job checks its flag between stages and between frames: it
stops dispatching frames, cancels frames not yet started, waits for the
in-flight ones, discards everything and resolves ``CANCELLED``.

Watchdog
--------
If no frame completes within ``watchdog_timeout_s`` the job fails with
JobTimeoutError.  Inline frame work (``frame_workers=1``) cannot be
interrupted and is not watched.
"""

from __future__ import annotations

import abc
import itertools
import logging
import os
import threading
from concurrent.futures import (
    FIRST_COMPLETED,
    Executor,
    Future,
    ProcessPoolExecutor,
    ThreadPoolExecutor,
    wait,
)
from typing import Any, Callable, Optional, Sequence

from gifmark.exceptions import (
    GifMarkError,
    JobCancelledError,
    JobTimeoutError,
    PipelineError,
    UpstreamError,
)
from gifmark.types import JobState, Progress, WatermarkResult

logger = logging.getLogger(__name__)

Listener = Callable[[Any], None]


# ---------------------------------------------------------------------------
# Handle
# ---------------------------------------------------------------------------

class JobHandle:
    """Caller-side view of one submitted job.

    Listeners are invoked on the worker thread that produced the event.
    A listener registered after the job finished is called once with the
    final value.  Listener exceptions are logged and ignored.

    Done callbacks run before ``result()`` unblocks in other threads, so
    anything they publish (e.g. a cache entry) is visible to the waiter.
    """

    def __init__(self, job_id: int, name: str = "") -> None:
        self.id = job_id
        self.name = name or f"job-{job_id}"
        self._state = JobState.QUEUED
        self._progress = Progress(0, 0, JobState.QUEUED)
        self._result: Optional[WatermarkResult] = None
        self._exception: Optional[PipelineError] = None
        self._cancel_requested = threading.Event()
        self._finished = False
        self._resolver: Optional[int] = None
        self._done = threading.Event()
        self._lock = threading.RLock()
        self._future: Optional[Future] = None
        self._progress_listeners: list[Listener] = []
        self._frame_listeners: list[Listener] = []
        self._state_listeners: list[Listener] = []
        self._done_callbacks: list[Callable[[JobHandle], None]] = []

    @classmethod
    def resolved(cls, job_id: int, result: WatermarkResult, name: str = "") -> JobHandle:
        """A handle that is already DONE with *result* (e.g. a cache hit)."""
        handle = cls(job_id, name)
        total = result.frame_count
        handle._progress = Progress(total, total, JobState.DONE)
        handle._state = JobState.DONE
        handle._result = result
        handle._finished = True
        handle._done.set()
        return handle

    def __repr__(self) -> str:
        return f"<JobHandle {self.id} {self.name!r} {self._state.value}>"

    # -- Introspection -----------------------------------------------------

    @property
    def state(self) -> JobState:
        return self._state

    @property
    def progress(self) -> Progress:
        return self._progress

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested.is_set()

    def done(self) -> bool:
        return self._done.is_set()

    # -- Listeners ---------------------------------------------------------

    def on_progress(self, callback: Listener) -> JobHandle:
        """Call *callback(Progress)* on every state change and frame."""
        return self._register(self._progress_listeners, callback, lambda: self._progress)

    def on_frame_progress(self, callback: Listener) -> JobHandle:
        """Call *callback(Progress)* after each composited frame."""
        return self._register(self._frame_listeners, callback, lambda: self._progress)

    def on_state_change(self, callback: Listener) -> JobHandle:
        """Call *callback(JobState)* on every state transition."""
        return self._register(self._state_listeners, callback, lambda: self._state)

    def on_done(self, callback: Listener) -> JobHandle:
        """Call *callback* once with the terminal event.

        The event is the WatermarkResult (encoded bytes, ``degraded`` flag)
        on success, or the job's PipelineError on failure or cancellation.
        """
        self.add_done_callback(lambda handle: callback(handle._exception or handle._result))
        return self

    def add_done_callback(self, callback: Callable[[JobHandle], None]) -> None:
        """Call *callback(handle)* once the job reaches a terminal state."""
        with self._lock:
            if not self._finished:
                self._done_callbacks.append(callback)
                return
        self._safe_call(callback, self)

    def _register(self, listeners: list, callback: Listener, current: Callable[[], Any]) -> JobHandle:
        with self._lock:
            if not self._finished:
                listeners.append(callback)
                return self
        self._safe_call(callback, current())
        return self

    def _safe_call(self, callback: Callable, value: Any) -> None:
        try:
            callback(value)
        except Exception:
            logger.warning("Listener %r of %s raised", callback, self.name, exc_info=True)

    def _emit(self, listeners: list, value: Any) -> None:
        with self._lock:
            snapshot = list(listeners)
        for callback in snapshot:
            self._safe_call(callback, value)

    # -- Transitions (called by the manager) -------------------------------

    def _attach(self, future: Future) -> None:
        self._future = future

    def _set_state(self, state: JobState, total: Optional[int] = None) -> None:
        with self._lock:
            self._state = state
            processed = self._progress.processed if total is None else 0
            total = self._progress.total if total is None else total
            self._progress = Progress(processed, total, state)
            progress = self._progress
        logger.debug("%s -> %s", self.name, state.value)
        self._emit(self._state_listeners, state)
        self._emit(self._progress_listeners, progress)

    def _frame_done(self, processed: int, total: int) -> None:
        with self._lock:
            self._progress = Progress(processed, total, self._state)
            progress = self._progress
        self._emit(self._frame_listeners, progress)
        self._emit(self._progress_listeners, progress)

    def _resolve(
        self,
        state: JobState,
        result: Optional[WatermarkResult] = None,
        exception: Optional[PipelineError] = None,
    ) -> None:
        with self._lock:
            if self._finished or self._resolver is not None:
                return
            self._resolver = threading.get_ident()
            self._result = result
            self._exception = exception
        self._set_state(state)
        with self._lock:
            self._finished = True
            callbacks = list(self._done_callbacks)
            self._done_callbacks.clear()
            self._progress_listeners.clear()
            self._frame_listeners.clear()
            self._state_listeners.clear()
        for callback in callbacks:
            self._safe_call(callback, self)
        self._done.set()

    def _wait(self, timeout: Optional[float]) -> None:
        # A done callback reads the outcome before _done is set.
        if self._resolver == threading.get_ident():
            return
        if not self._done.wait(timeout):
            raise TimeoutError(f"{self.name} did not finish within {timeout}s")

    # -- Control -----------------------------------------------------------

    def cancel(self) -> bool:
        """Request cancellation.  Returns False if the job already finished."""
        if self._finished:
            return False
        self._cancel_requested.set()
        future = self._future
        if future is not None and future.cancel():
            logger.info("%s cancelled while queued", self.name)
            self._resolve(JobState.CANCELLED,
                          exception=JobCancelledError(f"{self.name} was cancelled"))
        return True

    def result(self, timeout: Optional[float] = None) -> WatermarkResult:
        """Block until done; return the result or raise its PipelineError."""
        self._wait(timeout)
        if self._exception is not None:
            raise self._exception
        return self._result

    def exception(self, timeout: Optional[float] = None) -> Optional[PipelineError]:
        """Block until done; return the job's error, or None on success."""
        self._wait(timeout)
        return self._exception


# ---------------------------------------------------------------------------
# Job interface and context
# ---------------------------------------------------------------------------

class Job(abc.ABC):
    """A unit of work for the manager: decode, composite, encode one file."""

    name: str = ""

    @abc.abstractmethod
    def run(self, ctx: JobContext) -> WatermarkResult:
        """Do the work, reporting through *ctx*.  Raise to fail."""


class JobContext:
    """What a running job uses to report progress and fan out frames."""

    def __init__(self, handle: JobHandle, manager: ConcurrencyManager) -> None:
        self.handle = handle
        self.manager = manager

    @property
    def cancelled(self) -> bool:
        return self.handle.cancel_requested

    def check_cancelled(self) -> None:
        if self.handle.cancel_requested:
            raise JobCancelledError(f"{self.handle.name} was cancelled")

    def enter(self, state: JobState, total: Optional[int] = None) -> None:
        """Move to *state* after checking for cancellation."""
        self.check_cancelled()
        self.handle._set_state(state, total)

    def map_frames(self, fn: Callable[..., Any], items: Sequence[Any], *args: Any) -> list:
        """Return ``[fn(item, *args) for item in items]`` in input order.

        Runs on the manager's frame executor, checking for cancellation
        between frames and enforcing the watchdog interval.
        """
        total = len(items)
        executor = self.manager.frame_executor()
        if executor is None:
            return self._map_inline(fn, items, args, total)

        window = self.manager.frame_workers
        timeout = self.manager.watchdog_timeout_s
        results: dict[int, Any] = {}
        pending: dict[Future, int] = {}
        queue = iter(enumerate(items))

        def dispatch() -> None:
            while len(pending) < window and not self.cancelled:
                nxt = next(queue, None)
                if nxt is None:
                    return
                idx, item = nxt
                logger.debug("%s: dispatch frame %d/%d", self.handle.name, idx + 1, total)
                pending[executor.submit(fn, item, *args)] = idx

        dispatch()
        while pending:
            done, _ = wait(pending, timeout=timeout, return_when=FIRST_COMPLETED)
            if not done:
                self._abandon(pending)
                raise JobTimeoutError(
                    f"{self.handle.name}: no frame finished within {timeout:g}s "
                    f"({len(results)}/{total} done)"
                )
            for fut in done:
                idx = pending.pop(fut)
                try:
                    results[idx] = fut.result()
                except Exception:
                    self._abandon(pending)
                    raise
                self.handle._frame_done(len(results), total)
            if self.cancelled:
                self._abandon(pending, wait_running=True)
                raise JobCancelledError(
                    f"{self.handle.name} was cancelled after {len(results)}/{total} frames"
                )
            dispatch()

        self.check_cancelled()
        return [results[i] for i in range(total)]

    def _map_inline(self, fn, items, args, total) -> list:
        out = []
        for idx, item in enumerate(items):
            self.check_cancelled()
            out.append(fn(item, *args))
            self.handle._frame_done(idx + 1, total)
        self.check_cancelled()
        return out

    @staticmethod
    def _abandon(pending: dict, wait_running: bool = False) -> None:
        """Cancel frames not yet started; optionally wait for running ones."""
        for fut in pending:
            fut.cancel()
        if wait_running:
            wait(pending)


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

def _determine_frame_workers(frame_workers: int) -> int:
    """0 = one per CPU, leaving one for the job threads."""
    if frame_workers > 0:
        return frame_workers
    cpu = os.cpu_count() or 2
    return max(1, cpu - 1)


class ConcurrencyManager:
    """Runs jobs on a bounded worker pool and resolves their handles."""

    def __init__(
        self,
        max_jobs: int = 2,
        frame_workers: int = 0,
        watchdog_timeout_s: Optional[float] = 10.0,
        use_processes: bool = False,
    ) -> None:
        if max_jobs < 1:
            raise ValueError(f"max_jobs must be >= 1, got {max_jobs}")
        self.max_jobs = max_jobs
        self.frame_workers = _determine_frame_workers(frame_workers)
        self.watchdog_timeout_s = watchdog_timeout_s
        self.use_processes = use_processes
        self._job_pool = ThreadPoolExecutor(max_workers=max_jobs,
                                            thread_name_prefix="gifmark-job")
        self._frame_pool: Optional[Executor] = None
        self._pool_lock = threading.Lock()
        self._ids = itertools.count(1)
        self._active: set[JobHandle] = set()
        self._closed = False

    def __enter__(self) -> ConcurrencyManager:
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown()

    def next_id(self) -> int:
        return next(self._ids)

    def frame_executor(self) -> Optional[Executor]:
        """Shared frame pool, created on first use; None means run inline."""
        if self.frame_workers <= 1:
            return None
        with self._pool_lock:
            if self._frame_pool is None:
                if self.use_processes:
                    self._frame_pool = ProcessPoolExecutor(max_workers=self.frame_workers)
                else:
                    self._frame_pool = ThreadPoolExecutor(
                        max_workers=self.frame_workers,
                        thread_name_prefix="gifmark-frame",
                    )
            return self._frame_pool

    def submit(self, job: Job) -> JobHandle:
        """Queue *job* and return its handle immediately."""
        if self._closed:
            raise RuntimeError("ConcurrencyManager has been shut down")
        handle = JobHandle(self.next_id(), job.name)
        with self._pool_lock:
            self._active.add(handle)
        handle.add_done_callback(self._forget)
        handle._attach(self._job_pool.submit(self._run, job, handle))
        logger.info("Queued %s", handle.name)
        return handle

    def _forget(self, handle: JobHandle) -> None:
        with self._pool_lock:
            self._active.discard(handle)

    def _run(self, job: Job, handle: JobHandle) -> None:
        ctx = JobContext(handle, self)
        try:
            ctx.check_cancelled()
            result = job.run(ctx)
            ctx.check_cancelled()
        except JobCancelledError as exc:
            logger.info("%s cancelled", handle.name)
            handle._resolve(JobState.CANCELLED, exception=exc)
        except PipelineError as exc:
            logger.warning("%s failed: %s", handle.name, exc)
            handle._resolve(JobState.FAILED, exception=exc)
        except GifMarkError as exc:
            logger.warning("%s failed: %s", handle.name, exc)
            handle._resolve(JobState.FAILED, exception=UpstreamError(exc))
        except Exception as exc:
            logger.error("%s crashed", handle.name, exc_info=True)
            handle._resolve(JobState.FAILED, exception=UpstreamError(exc))
        else:
            logger.info("%s done (%d frame(s), backend=%s%s)", handle.name,
                        result.frame_count, result.backend,
                        ", degraded" if result.degraded else "")
            handle._resolve(JobState.DONE, result=result)

    def active_jobs(self) -> list[JobHandle]:
        with self._pool_lock:
            return sorted(self._active, key=lambda h: h.id)

    def shutdown(self, wait: bool = True, cancel_pending: bool = False) -> None:
        """Stop accepting jobs; optionally cancel everything unfinished."""
        self._closed = True
        if cancel_pending:
            for handle in self.active_jobs():
                handle.cancel()
        self._job_pool.shutdown(wait=wait)
        with self._pool_lock:
            pool, self._frame_pool = self._frame_pool, None
        if pool is not None:
            pool.shutdown(wait=wait)

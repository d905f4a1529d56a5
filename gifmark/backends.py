"""
Decode/encode backend interfaces and the fallback-chain runner.

Every GIF library the pipeline can use is wrapped behind one of two
capability interfaces:

    DecodeBackend.decode(data, coalesce, progress)  -> GifDocument
    EncodeBackend.encode(doc, progress)             -> bytes

The Frame Decoder and Frame Encoder never call a backend directly; they
hand their ordered backend list to ``run_chain``, which tries each one in
priority order, logs and records every failure, and returns the first
success.  A backend that raises, returns an unusable result, or stops
making progress for the watchdog interval is treated the same way: the
next backend runs.

Progress
--------
Backends call ``progress()`` once per frame they finish.  Each call
restarts the watchdog interval, so a slow backend that keeps working is
never cut off.  Once a backend has been abandoned, its next
``progress()`` call raises BackendTimeoutError so its thread stops.
"""

from __future__ import annotations

import abc
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Callable, Generic, List, Optional, Sequence, TypeVar

from gifmark.exceptions import BackendTimeoutError
from gifmark.types import GifDocument

logger = logging.getLogger(__name__)

B = TypeVar("B", bound="Backend")
R = TypeVar("R")

ProgressFn = Callable[[], None]


def no_progress() -> None:
    """Progress callback used when no watchdog is running."""


# ---------------------------------------------------------------------------
# Abstract bases
# ---------------------------------------------------------------------------

class Backend(abc.ABC):
    """Common surface shared by decode and encode backends."""

    name: str = "abstract"

    @staticmethod
    @abc.abstractmethod
    def is_available() -> bool:
        """Return True if this backend's dependencies are satisfied."""

    @staticmethod
    def install_hint() -> str:
        """Human-readable install instructions for the current platform."""
        return ""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name!r}>"


class DecodeBackend(Backend):
    """Turns GIF bytes into a GifDocument."""

    #: True if the backend can only recover one representative frame.
    single_frame: bool = False

    @abc.abstractmethod
    def decode(
        self,
        data: bytes,
        coalesce: bool = True,
        progress: ProgressFn = no_progress,
    ) -> GifDocument:
        """Decode *data*; raise on any failure.  Call *progress* per frame."""


class EncodeBackend(Backend):
    """Turns a GifDocument into GIF bytes."""

    @abc.abstractmethod
    def encode(self, doc: GifDocument, progress: ProgressFn = no_progress) -> bytes:
        """Encode *doc*; raise on any failure.  Call *progress* per frame."""


# ---------------------------------------------------------------------------
# Fallback chain
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BackendFailure:
    """One backend's failure inside a chain run."""
    backend: str
    error: BaseException
    elapsed_s: float = 0.0

    def __str__(self) -> str:
        return f"{self.backend}: {type(self.error).__name__}: {self.error}"


@dataclass
class ChainOutcome(Generic[B, R]):
    """Result of ``run_chain``: the winning backend, or only failures."""
    result: Optional[R] = None
    backend: Optional[B] = None
    failures: List[BackendFailure] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.backend is not None


class Heartbeat:
    """Last-progress timestamp shared between a backend and its watchdog."""

    def __init__(self, label: str) -> None:
        self.label = label
        self.ticks = 0
        self._last = time.monotonic()
        self._abandoned = threading.Event()

    def tick(self) -> None:
        if self._abandoned.is_set():
            raise BackendTimeoutError(f"{self.label} was abandoned by its watchdog")
        self.ticks += 1
        self._last = time.monotonic()

    def idle_s(self) -> float:
        return time.monotonic() - self._last

    def abandon(self) -> None:
        self._abandoned.set()


def _call_with_watchdog(
    fn: Callable[[ProgressFn], R],
    timeout_s: float,
    label: str,
) -> R:
    """Run *fn(tick)* on a helper thread until it finishes or goes quiet.

    The interval restarts whenever *fn* calls ``tick``.  A thread cannot
    be killed: on expiry the helper is abandoned, its eventual result
    discarded, and its next ``tick`` raises so it unwinds.
    """
    beat = Heartbeat(label)
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"gifmark-{label}")
    try:
        future = pool.submit(fn, beat.tick)
        while True:
            remaining = timeout_s - beat.idle_s()
            if remaining <= 0:
                beat.abandon()
                future.cancel()
                raise BackendTimeoutError(
                    f"{label} made no progress within {timeout_s:g}s "
                    f"(after {beat.ticks} progress tick(s))"
                )
            try:
                return future.result(timeout=remaining)
            except FutureTimeoutError:
                continue
    finally:
        pool.shutdown(wait=False)


def run_chain(
    backends: Sequence[B],
    attempt: Callable[[B, ProgressFn], R],
    stage: str,
    timeout_s: Optional[float] = None,
) -> ChainOutcome[B, R]:
    """Try *attempt(backend, progress)* for each backend in order.

    Parameters
    ----------
    backends : sequence of Backend
        Candidates in priority order.
    attempt : callable
        Runs one backend and returns its result, raising on failure
        (including "result is unusable").  Its second argument is the
        progress callback to hand to the backend.
    stage : str
        ``"decode"`` or ``"encode"``, used in log messages.
    timeout_s : float, optional
        Per-backend no-progress interval.  ``None`` runs inline with no
        limit.

    Returns
    -------
    ChainOutcome
        ``backend``/``result`` of the first success, plus every failure
        recorded before it.  ``backend`` is None if all failed.
    """
    outcome: ChainOutcome[B, R] = ChainOutcome()
    for backend in backends:
        logger.debug("Trying %s backend %s", stage, backend.name)
        t0 = time.monotonic()
        try:
            if timeout_s is None:
                result = attempt(backend, no_progress)
            else:
                result = _call_with_watchdog(
                    lambda tick: attempt(backend, tick), timeout_s,
                    f"{stage}-{backend.name}",
                )
        except Exception as exc:
            failure = BackendFailure(backend.name, exc, time.monotonic() - t0)
            outcome.failures.append(failure)
            logger.warning("%s backend %s failed: %s", stage.capitalize(),
                           backend.name, exc)
            continue
        outcome.result = result
        outcome.backend = backend
        logger.info("%s backend %s succeeded in %.3fs", stage.capitalize(),
                    backend.name, time.monotonic() - t0)
        return outcome
    return outcome


# ---------------------------------------------------------------------------
# Registry helpers
# ---------------------------------------------------------------------------

def resolve_backends(
    priority: Sequence[type],
    names: Optional[Sequence[str]] = None,
    kind: str = "backend",
) -> list:
    """Instantiate backends from *priority*, optionally filtered by *names*.

    ``names=None`` keeps the default priority and drops unavailable
    backends.  An explicit name list keeps the caller's order and raises
    ValueError for unknown names; unavailable ones are skipped with a
    warning.
    """
    by_name = {cls.name: cls for cls in priority}
    if names is None:
        selected = list(priority)
    else:
        selected = []
        for name in names:
            cls = by_name.get(name)
            if cls is None:
                raise ValueError(
                    f"Unknown {kind} '{name}'. Available: {list(by_name)}"
                )
            selected.append(cls)

    instances = []
    for cls in selected:
        if cls.is_available():
            instances.append(cls())
        else:
            logger.warning("%s '%s' is not available. Install: %s",
                           kind.capitalize(), cls.name, cls.install_hint())
    return instances

"""
In-memory processing cache.

Encoded results are stored under a fingerprint of (source bytes,
watermark descriptor).  Because decoding, compositing and encoding are
deterministic for fixed inputs, a hit is byte-identical to what a full
pipeline run would produce.

Fingerprint
-----------
    sha256( sha256(source) || "\\n" || json(wm.canonical()) )

``canonical()`` rounds every float to FINGERPRINT_PRECISION decimals
and folds rotation into [0, 360), so 30.00000001 and 30 (or -330)
share an entry.

Eviction
--------
Bounded LRU by *insertion* order: each put stamps the entry with a
monotonically increasing counter and, when the cache is full, the entry
with the smallest counter is dropped.  ``get`` does not refresh an
entry.  There is no time-based expiry.
"""

from __future__ import annotations

import hashlib
import itertools
import json
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Iterator

from gifmark.types import FINGERPRINT_PRECISION, WatermarkDescriptor

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 20


def source_hash(source: bytes) -> str:
    """SHA-256 of the raw source bytes."""
    return hashlib.sha256(source).hexdigest()


def fingerprint(
    source: bytes,
    wm: WatermarkDescriptor,
    precision: int = FINGERPRINT_PRECISION,
) -> str:
    """Stable cache key for watermarking *source* with *wm*."""
    canonical = json.dumps(wm.canonical(precision), sort_keys=True, separators=(",", ":"))
    h = hashlib.sha256()
    h.update(source_hash(source).encode("ascii"))
    h.update(b"\n")
    h.update(canonical.encode("utf-8"))
    return h.hexdigest()


@dataclass(frozen=True)
class CacheEntry:
    """One cached encoder output."""
    fingerprint: str
    result_bytes: bytes
    created_at: int              # insertion counter, not wall-clock time
    frame_count: int = 0
    is_animated: bool = False
    backend: str = ""


class ProcessingCache:
    """Bounded insertion-order LRU of encoded GIFs.

    The orchestrator is the only writer; the lock keeps ``stats()`` and
    lookups consistent when handles resolve on worker threads.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.capacity = capacity
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._counter = itertools.count()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    # -- Lookup ------------------------------------------------------------

    def get(self, key: str) -> bytes | None:
        """Return the cached bytes for *key*, or None."""
        entry = self.get_entry(key)
        return entry.result_bytes if entry is not None else None

    def get_entry(self, key: str) -> CacheEntry | None:
        """Return the full entry for *key*, or None.  Counts a hit or miss."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
            else:
                self.hits += 1
            return entry

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        """Fingerprints from oldest to newest insertion."""
        with self._lock:
            return iter(list(self._entries))

    # -- Store -------------------------------------------------------------

    def put(
        self,
        key: str,
        data: bytes,
        frame_count: int = 0,
        is_animated: bool = False,
        backend: str = "",
    ) -> CacheEntry:
        """Insert *data* under *key*, evicting the oldest entry if full.

        Re-inserting an existing key replaces it and makes it the newest.
        """
        with self._lock:
            if key in self._entries:
                del self._entries[key]
            while len(self._entries) >= self.capacity:
                oldest, _ = self._entries.popitem(last=False)
                self.evictions += 1
                logger.debug("Cache full (%d), evicted %s", self.capacity, oldest[:12])
            entry = CacheEntry(
                fingerprint=key,
                result_bytes=bytes(data),
                created_at=next(self._counter),
                frame_count=frame_count,
                is_animated=is_animated,
                backend=backend,
            )
            self._entries[key] = entry
            return entry

    def clear(self) -> int:
        """Drop every entry. Returns how many were removed."""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            return count

    # -- Statistics --------------------------------------------------------

    def stats(self) -> dict[str, Any]:
        """Return cache statistics."""
        with self._lock:
            return {
                "entries": len(self._entries),
                "capacity": self.capacity,
                "hits": self.hits,
                "misses": self.misses,
                "evictions": self.evictions,
                "size_bytes": sum(len(e.result_bytes) for e in self._entries.values()),
            }

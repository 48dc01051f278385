"""Resolution cache for remote formulary lookups.

`CoverageCache` is the injected abstraction; `InMemoryTTLCache` backs it with a
process-local dict for single-process deployments. Entries expire after a
fixed TTL and are evicted lazily on the next read of that key.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Hashable
from dataclasses import dataclass

from rx_coverage.models import CoverageRecord


@dataclass(frozen=True)
class CacheEntry:
    record: CoverageRecord
    stored_at: float


class CoverageCache:
    """Key-value store of CoverageRecords with a TTL."""

    def get(self, key: Hashable) -> CoverageRecord | None:
        raise NotImplementedError

    def set(self, key: Hashable, record: CoverageRecord) -> None:
        raise NotImplementedError

    def invalidate(self, key: Hashable | None = None) -> None:
        raise NotImplementedError


class InMemoryTTLCache(CoverageCache):
    def __init__(self, ttl_seconds: float, *, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[Hashable, CacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> CoverageRecord | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() - entry.stored_at >= self.ttl_seconds:
                del self._entries[key]
                return None
            return entry.record

    def set(self, key: Hashable, record: CoverageRecord) -> None:
        with self._lock:
            self._entries[key] = CacheEntry(record=record, stored_at=self._clock())

    def invalidate(self, key: Hashable | None = None) -> None:
        with self._lock:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

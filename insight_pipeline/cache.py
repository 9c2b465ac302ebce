"""Size- and age-bounded in-memory artifact cache."""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Optional

from .models import CacheEntry
from .utils import MB, estimate_payload_size

log = logging.getLogger(__name__)


class ArtifactCache:
    """Thread-safe cache of intermediate artifacts (chunk lists, chunk analyses).

    The size of an entry is its caller-supplied size or an estimate from its
    JSON encoding. Whenever the running total exceeds ``max_size_bytes`` the
    cache is optimized: expired entries go first, then the oldest entries
    one at a time until the total fits again.
    """

    def __init__(
        self,
        max_size_bytes: int = 100 * MB,
        max_age_seconds: float = 30 * 60,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_size_bytes = max_size_bytes
        self.max_age_seconds = max_age_seconds
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._total = 0
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._lock = threading.RLock()

    # -- basic operations ---------------------------------------------------

    def set(self, key: str, payload: Any, size: Optional[int] = None) -> None:
        entry_size = estimate_payload_size(payload) if size is None else max(0, size)
        with self._lock:
            previous = self._entries.pop(key, None)
            if previous is not None:
                self._total -= previous.size
            self._entries[key] = CacheEntry(
                key=key, payload=payload, size=entry_size, timestamp=self._clock()
            )
            self._total += entry_size
            if self._total > self.max_size_bytes:
                self.optimize()

    def get(self, key: str) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            self._hits += 1
            return entry.payload

    def delete(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.pop(key, None)
            if entry is None:
                return False
            self._total -= entry.size
            return True

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._total = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    @property
    def total_size(self) -> int:
        with self._lock:
            return self._total

    # -- eviction -----------------------------------------------------------

    def _evict(self, key: str) -> None:
        entry = self._entries.pop(key)
        self._total -= entry.size
        self._evictions += 1

    def optimize(self) -> int:
        """Drop expired entries, then oldest entries while over budget.

        Returns the number of entries evicted.
        """
        with self._lock:
            evicted = 0
            cutoff = self._clock() - self.max_age_seconds
            for key in [k for k, e in self._entries.items() if e.timestamp < cutoff]:
                self._evict(key)
                evicted += 1

            if self._total > self.max_size_bytes:
                by_age = sorted(self._entries.values(), key=lambda e: e.timestamp)
                for entry in by_age:
                    if self._total <= self.max_size_bytes:
                        break
                    self._evict(entry.key)
                    evicted += 1

            if evicted:
                log.debug(
                    "Cache optimized: %s evicted, %s entries / %s bytes remain",
                    evicted,
                    len(self._entries),
                    self._total,
                )
            return evicted

    def resize(self, max_size_bytes: int) -> None:
        with self._lock:
            self.max_size_bytes = max_size_bytes
            if self._total > self.max_size_bytes:
                self.optimize()

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "entries": len(self._entries),
                "size": self._total,
                "max_size": self.max_size_bytes,
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
            }

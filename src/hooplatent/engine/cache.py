"""Bounded, time-expiring cache used in front of durable posterior storage."""

from __future__ import annotations

import collections
import dataclasses
import logging
import threading
import time
from typing import Callable, Generic, Hashable, Iterator, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

Clock = Callable[[], float]


@dataclasses.dataclass(slots=True)
class _Entry(Generic[V]):
    value: V
    stored_at: float


@dataclasses.dataclass(slots=True)
class CacheStats:
    hits: int = 0
    misses: int = 0
    expirations: int = 0
    evictions: int = 0


class TTLCache(Generic[K, V]):
    """Thread-safe mapping whose entries expire after ``ttl_seconds``.

    When ``capacity`` is exceeded the oldest stored entries are evicted
    first.  The clock is injectable so expiry can be driven explicitly in
    tests; it defaults to :func:`time.monotonic`.

    Read-through callers take :meth:`generation` before loading a value and
    store it with :meth:`set_if_generation`; an :meth:`invalidate` in between
    makes that store a no-op, so a load that raced a write is never cached.
    """

    def __init__(
        self,
        ttl_seconds: float = 1800.0,
        capacity: int = 1000,
        *,
        clock: Clock | None = None,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be greater than zero")
        if capacity <= 0:
            raise ValueError("capacity must be greater than zero")
        self.ttl_seconds = float(ttl_seconds)
        self.capacity = int(capacity)
        self._clock = clock or time.monotonic
        self._entries: "collections.OrderedDict[K, _Entry[V]]" = collections.OrderedDict()
        self._lock = threading.RLock()
        self._generations: dict[K, int] = {}
        self._epoch = 0
        self.stats = CacheStats()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            entry = self._entries.get(key)  # type: ignore[arg-type]
            return entry is not None and not self._expired(entry, self._clock())

    def __iter__(self) -> Iterator[K]:
        with self._lock:
            return iter(list(self._entries))

    def _expired(self, entry: _Entry[V], now: float) -> bool:
        return now - entry.stored_at >= self.ttl_seconds

    def get(self, key: K) -> V | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.stats.misses += 1
                return None
            if self._expired(entry, self._clock()):
                del self._entries[key]
                self.stats.expirations += 1
                self.stats.misses += 1
                logger.debug("Cache entry for %s expired", key)
                return None
            self.stats.hits += 1
            return entry.value

    def set(self, key: K, value: V) -> None:
        with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = _Entry(value=value, stored_at=self._clock())
            while len(self._entries) > self.capacity:
                evicted, _ = self._entries.popitem(last=False)
                self.stats.evictions += 1
                logger.debug("Evicted oldest cache entry %s", evicted)

    def generation(self, key: K) -> tuple[int, int]:
        with self._lock:
            return self._epoch, self._generations.get(key, 0)

    def set_if_generation(self, key: K, value: V, generation: tuple[int, int]) -> bool:
        """Store ``value`` only if ``key`` was not invalidated since ``generation``."""
        with self._lock:
            if self.generation(key) != generation:
                logger.debug("Discarding stale load for %s", key)
                return False
            self.set(key, value)
            return True

    def invalidate(self, key: K) -> bool:
        with self._lock:
            self._generations[key] = self._generations.get(key, 0) + 1
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._epoch += 1
            self._generations.clear()
            self._entries.clear()

    def purge_expired(self) -> int:
        """Drop every expired entry and return how many were removed."""
        with self._lock:
            now = self._clock()
            stale = [key for key, entry in self._entries.items() if self._expired(entry, now)]
            for key in stale:
                del self._entries[key]
            self.stats.expirations += len(stale)
            return len(stale)


__all__ = ["CacheStats", "Clock", "TTLCache"]

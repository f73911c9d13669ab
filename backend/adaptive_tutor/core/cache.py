"""Time-bounded cache entries shared by the registry, profile and context caches."""

import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Generic, Hashable, Optional, TypeVar

from .errors import CacheMiss, CacheStale

V = TypeVar("V")


@dataclass(frozen=True)
class CacheEntry(Generic[V]):
    """An immutable cached value with its creation time and TTL (seconds)."""

    value: V
    ttl: float
    created_at: float = field(default_factory=time.monotonic)

    def age(self, now: Optional[float] = None) -> float:
        return (time.monotonic() if now is None else now) - self.created_at

    def is_fresh(self, now: Optional[float] = None) -> bool:
        return self.age(now) < self.ttl


class TTLCache(Generic[V]):
    """
    Keyed TTL cache with replace-only writes.

    Entries are never mutated in place: ``put`` swaps in a new ``CacheEntry``
    so concurrent readers either see the old generation or the new one.

    Every ``invalidate`` bumps the key's generation. A reader that captured
    ``generation(key)`` before its slow load passes it to ``put``; the write
    is dropped when an invalidation landed in between, so a load that raced
    a store write can never cache the pre-write value.
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[Hashable, CacheEntry[V]] = {}
        self._generations: Dict[Hashable, int] = {}

    def get(self, key: Hashable) -> V:
        """Return a fresh value or raise ``CacheMiss`` / ``CacheStale``."""
        entry = self._entries.get(key)
        if entry is None:
            raise CacheMiss(str(key))
        if not entry.is_fresh(self._clock()):
            raise CacheStale(str(key))
        return entry.value

    def generation(self, key: Hashable) -> int:
        return self._generations.get(key, 0)

    def put(self, key: Hashable, value: V, generation: Optional[int] = None) -> Optional[CacheEntry[V]]:
        """
        Store ``value`` under ``key``.

        Returns:
            The new entry, or None when ``generation`` no longer matches
        """
        if generation is not None and generation != self.generation(key):
            return None
        entry = CacheEntry(value=value, ttl=self.ttl, created_at=self._clock())
        self._entries[key] = entry
        return entry

    def invalidate(self, key: Hashable) -> bool:
        self._generations[key] = self.generation(key) + 1
        return self._entries.pop(key, None) is not None

    def __contains__(self, key: Hashable) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.is_fresh(self._clock())

    def __len__(self) -> int:
        return len(self._entries)

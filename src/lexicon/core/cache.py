"""Bounded in-memory cache with per-entry time-to-live.

Two instances back the scan service: the scan-dedup cache (keyed by image
fingerprint) and the collection-read cache (keyed by session id).  Both live
in process memory and are shared by every request handler.

Concurrency
-----------
All operations are synchronous and never yield to the event loop, so under
asyncio they are atomic with respect to other coroutines.  The cache is not
safe for use from several OS threads without an external lock.

Expiry and eviction
-------------------
Expiry is lazy: an entry past its ``expires_at`` reads as absent and is
dropped on the spot.  When a new key arrives at capacity, expired entries
are purged first; if the cache is still full, the entry with the soonest
expiry is evicted.  Every entry of one instance shares the same TTL, so the
soonest expiry is always the least recently inserted entry (overwriting a
key counts as a fresh insertion).

Statistics
----------
``hits``, ``misses`` and ``evictions`` count from construction or the last
:meth:`TTLCache.flush_all`, whichever is later.  Only capacity evictions
count toward ``evictions``; expiry is not an eviction.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Generic, TypeVar

from lexicon.core.models import CacheStats

V = TypeVar("V")


@dataclass(frozen=True)
class CacheEntry(Generic[V]):
    """A single cached value and its lifetime bounds (timer seconds)."""

    key: str
    value: V
    inserted_at: float
    expires_at: float


class TTLCache(Generic[V]):
    """Key/value store bounded by entry count and entry age.

    Args:
        max_entries: Maximum number of live entries.
        ttl_s: Lifetime of each entry in seconds.
        name: Label used in stats and logs.
        timer: Monotonic clock returning seconds.  Tests inject a manual
            clock here.

    Raises:
        ValueError: If ``max_entries < 1`` or ``ttl_s <= 0``.
    """

    def __init__(
        self,
        max_entries: int,
        ttl_s: float,
        *,
        name: str = "cache",
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        if ttl_s <= 0:
            raise ValueError("ttl_s must be positive")

        self.name = name
        self._max_entries = max_entries
        self._ttl = ttl_s
        self._timer = timer
        # Insertion order == expiry order because the TTL is uniform.
        self._entries: OrderedDict[str, CacheEntry[V]] = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    @property
    def max_entries(self) -> int:
        return self._max_entries

    @property
    def ttl_s(self) -> float:
        return self._ttl

    def get(self, key: str) -> V | None:
        """Return the live value for *key*, or ``None``."""
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None
        if entry.expires_at <= self._timer():
            del self._entries[key]
            self._misses += 1
            return None
        self._hits += 1
        return entry.value

    def set(self, key: str, value: V) -> None:
        """Insert or overwrite *key*, restarting its TTL."""
        now = self._timer()
        if key in self._entries:
            del self._entries[key]
        elif len(self._entries) >= self._max_entries:
            self._purge_expired(now)
            while len(self._entries) >= self._max_entries:
                self._entries.popitem(last=False)
                self._evictions += 1

        self._entries[key] = CacheEntry(
            key=key,
            value=value,
            inserted_at=now,
            expires_at=now + self._ttl,
        )

    def invalidate(self, key: str) -> None:
        """Remove *key* if present."""
        self._entries.pop(key, None)

    def flush_all(self) -> None:
        """Remove every entry and reset the counters."""
        self._entries.clear()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def stats(self) -> CacheStats:
        """Return counters and the number of live entries."""
        self._purge_expired(self._timer())
        return CacheStats(
            hits=self._hits,
            misses=self._misses,
            current_size=len(self._entries),
            evictions=self._evictions,
            max_entries=self._max_entries,
            ttl_s=self._ttl,
        )

    def _purge_expired(self, now: float) -> None:
        # Entries are ordered by expiry, so stop at the first live one.
        while self._entries:
            key, entry = next(iter(self._entries.items()))
            if entry.expires_at > now:
                break
            del self._entries[key]

    def __contains__(self, key: object) -> bool:
        entry = self._entries.get(key)  # type: ignore[arg-type]
        return entry is not None and entry.expires_at > self._timer()

    def __len__(self) -> int:
        self._purge_expired(self._timer())
        return len(self._entries)

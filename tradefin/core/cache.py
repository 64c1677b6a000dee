"""
Last-known-good store for external reference data.

The verification fallback path needs the most recent market snapshot that
was successfully read, together with how old it is.  :class:`SnapshotCache`
keeps one value per key with the monotonic time it was stored; readers ask
for it with a maximum age and get ``None`` once it is too old to trust.

Single event loop, no awaits inside methods: dict operations are atomic
with respect to other coroutines, so no locking is needed.
"""

import logging
import time
from typing import Any, Dict, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CacheEntry(Generic[T]):
    """A stored value with the monotonic time it was stored."""

    __slots__ = ("value", "stored_at")

    def __init__(self, value: T):
        self.value = value
        self.stored_at = time.monotonic()

    def age(self) -> float:
        """Seconds since the value was stored."""
        return time.monotonic() - self.stored_at

    def is_expired(self, max_age: float) -> bool:
        """Return True if the entry is older than ``max_age`` seconds."""
        return self.age() > max_age


class SnapshotCache(Generic[T]):
    """
    Keyed last-known-good store with age-bounded reads.

    Unlike a read-through cache, expired entries are *kept*: a stale snapshot
    is still useful for diagnostics (``get_stats``) even though
    :meth:`get_fresh` refuses to hand it out.

    Parameters
    ----------
    max_age : float
        Default freshness window in seconds for :meth:`get_fresh`.
    """

    def __init__(self, max_age: float = 3600.0):
        self._store: Dict[str, CacheEntry[T]] = {}
        self._max_age = max_age
        self._hits = 0
        self._stale = 0
        self._misses = 0

    @property
    def max_age(self) -> float:
        return self._max_age

    def put(self, key: str, value: T) -> None:
        """Record ``value`` as the last known good value for ``key``."""
        self._store[key] = CacheEntry(value)
        logger.debug("Snapshot stored: %s", key)

    def get_fresh(self, key: str, max_age: Optional[float] = None) -> Optional[T]:
        """
        Return the stored value if it is no older than ``max_age``.

        Returns ``None`` when nothing was stored or the value is stale.
        """
        limit = self._max_age if max_age is None else max_age
        entry = self._store.get(key)
        if entry is None:
            self._misses += 1
            return None
        if entry.is_expired(limit):
            self._stale += 1
            logger.warning(
                "Snapshot %s is stale (%.0fs old, limit %.0fs)", key, entry.age(), limit
            )
            return None
        self._hits += 1
        return entry.value

    def peek(self, key: str) -> Optional[CacheEntry[T]]:
        """Return the raw entry (value + age) regardless of freshness."""
        return self._store.get(key)

    def clear(self) -> None:
        """Forget every stored snapshot."""
        count = len(self._store)
        self._store.clear()
        if count:
            logger.debug("Snapshot cache cleared (%d entries)", count)

    def get_stats(self) -> Dict[str, Any]:
        """Return counters and per-key ages for the health endpoint."""
        return {
            "max_age_seconds": self._max_age,
            "entries": {k: round(e.age(), 1) for k, e in self._store.items()},
            "hits": self._hits,
            "stale": self._stale,
            "misses": self._misses,
        }

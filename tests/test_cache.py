"""
Unit tests for the last-known-good snapshot cache.

Tests cover:
- CacheEntry age / expiry
- put / get_fresh within and beyond the freshness window
- Stale entries are kept (peek) but never handed out
- Statistics reporting
"""

import time

from tradefin.core.cache import CacheEntry, SnapshotCache

# ────────────────────────────────────────────────────────────────────────────
# CacheEntry
# ────────────────────────────────────────────────────────────────────────────


class TestCacheEntry:
    """Tests for the CacheEntry data class."""

    def test_entry_stores_value(self):
        assert CacheEntry("snapshot").value == "snapshot"

    def test_entry_not_expired_immediately(self):
        assert not CacheEntry("snapshot").is_expired(max_age=10.0)

    def test_entry_expires_after_max_age(self):
        entry = CacheEntry("snapshot")
        entry.stored_at = time.monotonic() - 15.0
        assert entry.is_expired(max_age=10.0)
        assert entry.age() >= 15.0

    def test_entry_not_expired_just_inside_window(self):
        entry = CacheEntry("snapshot")
        entry.stored_at = time.monotonic() - 9.9
        assert not entry.is_expired(max_age=10.0)


# ────────────────────────────────────────────────────────────────────────────
# SnapshotCache
# ────────────────────────────────────────────────────────────────────────────


class TestSnapshotCache:
    """Freshness-bounded reads."""

    def test_put_and_get_fresh(self):
        cache = SnapshotCache(max_age=60)
        cache.put("market", {"kenya": 12})
        assert cache.get_fresh("market") == {"kenya": 12}

    def test_missing_key(self):
        assert SnapshotCache().get_fresh("market") is None

    def test_overwrite_refreshes_age(self):
        cache = SnapshotCache(max_age=60)
        cache.put("market", "old")
        cache.peek("market").stored_at = time.monotonic() - 120
        cache.put("market", "new")
        assert cache.get_fresh("market") == "new"

    def test_stale_entry_not_returned_but_kept(self):
        cache = SnapshotCache(max_age=60)
        cache.put("market", "snapshot")
        cache.peek("market").stored_at = time.monotonic() - 120

        assert cache.get_fresh("market") is None
        assert cache.peek("market").value == "snapshot"

    def test_per_call_max_age_overrides_default(self):
        cache = SnapshotCache(max_age=60)
        cache.put("market", "snapshot")
        cache.peek("market").stored_at = time.monotonic() - 30

        assert cache.get_fresh("market") == "snapshot"
        assert cache.get_fresh("market", max_age=10) is None

    def test_clear(self):
        cache = SnapshotCache()
        cache.put("market", "snapshot")
        cache.clear()
        assert cache.peek("market") is None

    def test_max_age_property(self):
        assert SnapshotCache(max_age=42).max_age == 42


class TestSnapshotCacheStats:
    """Tests for get_stats."""

    def test_initial(self):
        stats = SnapshotCache(max_age=60).get_stats()
        assert stats == {"max_age_seconds": 60, "entries": {}, "hits": 0, "stale": 0, "misses": 0}

    def test_counts_hits_stale_and_misses(self):
        cache = SnapshotCache(max_age=60)
        cache.get_fresh("market")  # miss
        cache.put("market", "snapshot")
        cache.get_fresh("market")  # hit
        cache.peek("market").stored_at = time.monotonic() - 120
        cache.get_fresh("market")  # stale

        stats = cache.get_stats()
        assert (stats["hits"], stats["stale"], stats["misses"]) == (1, 1, 1)
        assert stats["entries"]["market"] >= 120

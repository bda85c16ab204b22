"""Tests for the LRU read cache."""

import pytest

from notevault.repository.cache import LRUCache
from tests.fakes import FakeClock


class TestLRUCache:
    def test_evicts_least_recently_used(self):
        cache = LRUCache(max_size=2, ttl_seconds=None)
        cache.set("a", 1)
        cache.set("b", 2)
        assert cache.get("a") == 1  # "b" is now least recently used

        cache.set("c", 3)

        assert cache.keys() == ["a", "c"]
        assert cache.get("b") is None
        assert cache.stats.evictions == 1

    def test_set_existing_refreshes_recency(self):
        cache = LRUCache(max_size=2, ttl_seconds=None)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("a", 10)
        cache.set("c", 3)
        assert cache.keys() == ["a", "c"]
        assert cache.get("a") == 10

    def test_expiry(self):
        clock = FakeClock()
        cache = LRUCache(max_size=5, ttl_seconds=10, clock=clock)
        cache.set("a", 1)

        clock.advance(10)
        assert cache.get("a") == 1
        clock.advance(0.1)
        assert cache.get("a") is None
        assert cache.stats.expirations == 1
        assert len(cache) == 0

    def test_zero_size_disables(self):
        cache = LRUCache(max_size=0)
        cache.set("a", 1)
        assert len(cache) == 0

    def test_negative_size_rejected(self):
        with pytest.raises(ValueError):
            LRUCache(max_size=-1)

    def test_invalidate_and_clear(self):
        cache = LRUCache()
        cache.set("a", 1)
        cache.set("b", 2)
        cache.invalidate("a")
        cache.invalidate("missing")
        assert "a" not in cache
        assert "b" in cache
        cache.clear()
        assert len(cache) == 0

    def test_stats(self):
        cache = LRUCache(max_size=3)
        cache.set("a", 1)
        cache.get("a")
        cache.get("a")
        cache.get("b")
        assert "a" in cache  # membership checks do not count

        stats = cache.get_stats()
        assert stats["hits"] == 2
        assert stats["misses"] == 1
        assert stats["hit_rate"] == 0.667
        assert stats["size"] == 1

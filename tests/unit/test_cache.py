"""
Unit tests for the LRU cache.
"""

import pytest

from galerie.core.cache import LRUCache


class TestLRUCache:
    """Tests for LRUCache."""

    def test_hit_and_miss(self):
        cache = LRUCache(max_entries=2)
        assert cache.get("a") is None
        cache.put("a", 1)
        assert cache.get("a") == 1
        assert cache.stats() == {"entries": 1, "hits": 1, "misses": 1}

    def test_evicts_least_recently_used(self):
        """Reading an entry protects it from eviction."""
        cache = LRUCache(max_entries=2)
        cache.put("a", 1)
        cache.put("b", 2)
        cache.get("a")
        cache.put("c", 3)

        assert cache.get("b") is None
        assert cache.get("a") == 1
        assert cache.get("c") == 3
        assert len(cache) == 2

    def test_ttl_expiry(self):
        """Entries older than the TTL are dropped."""
        now = {"t": 0.0}
        cache = LRUCache(ttl=10, clock=lambda: now["t"])
        cache.put("a", 1)

        now["t"] = 10
        assert cache.get("a") == 1
        now["t"] = 10.5
        assert cache.get("a") is None
        assert len(cache) == 0

    def test_evict_and_clear(self):
        cache = LRUCache()
        cache.put("a", 1)
        cache.put("b", 2)
        cache.evict("a")
        cache.evict("missing")
        assert cache.get("a") is None
        cache.clear()
        assert len(cache) == 0

    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            LRUCache(max_entries=0)

"""
Unit tests for the policy cache.
"""

import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_policy.app.cache.policy_cache import PolicyCache


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestPolicyCache:
    """Test cases for PolicyCache."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def cache(self, clock):
        return PolicyCache(ttl_seconds=60, max_entries=3, clock=clock)

    def test_get_set(self, cache):
        cache.set("region", 1, ("oslo",), {"a": 1})

        assert cache.get("region", 1, ("oslo",)) == {"a": 1}
        assert cache.get("region", 2, ("oslo",)) is None

    def test_entries_expire(self, cache, clock):
        cache.set("region", 1, ("oslo",), "value")
        clock.now += 61

        assert cache.get("region", 1, ("oslo",)) is None
        assert len(cache) == 0

    def test_lru_eviction(self, cache):
        for name in ("a", "b", "c"):
            cache.set("ns", 1, (name,), name)
        cache.get("ns", 1, ("a",))
        cache.set("ns", 1, ("d",), "d")

        assert cache.get("ns", 1, ("b",)) is None
        assert cache.get("ns", 1, ("a",)) == "a"
        assert cache.stats()["evictions"] == 1

    def test_invalidate_stale(self, cache):
        cache.set("region", 1, ("oslo",), "old")
        cache.set("region", 2, ("oslo",), "new")
        cache.set("rules", 1, ("all",), "rules")

        dropped = cache.invalidate_stale("region", 2)

        assert dropped == 1
        assert cache.get("region", 2, ("oslo",)) == "new"
        assert cache.get("rules", 1, ("all",)) == "rules"

    def test_invalidate_with_predicate(self, cache):
        cache.set("region", 1, ("oslo",), "oslo")
        cache.set("region", 1, ("bergen",), "bergen")

        cache.invalidate("region", lambda lookup: lookup == ("oslo",))

        assert cache.get("region", 1, ("oslo",)) is None
        assert cache.get("region", 1, ("bergen",)) == "bergen"

    def test_stats(self, cache):
        cache.set("ns", 1, ("k",), "v")
        cache.get("ns", 1, ("k",))
        cache.get("ns", 1, ("missing",))

        stats = cache.stats()

        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_ratio"] == 0.5
        assert stats["entries"] == 1

    def test_clear(self, cache):
        cache.set("ns", 1, ("k",), "v")
        cache.clear()

        assert len(cache) == 0

"""
tests/test_cache.py — TTLCache Unit Tests
==========================================

Time is driven by a fake clock; nothing sleeps.
"""

from __future__ import annotations

import pytest

from conduit.engine.cache import TTLCache


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return TTLCache(ttl_seconds=60, clock=clock)


class TestExpiry:
    def test_value_available_before_ttl(self, cache, clock):
        cache.set("k", 1)
        clock.now = 59.9
        assert cache.get("k") == 1

    def test_value_expires_at_ttl(self, cache, clock):
        cache.set("k", 1)
        clock.now = 60
        assert cache.get("k") is None
        assert cache.get("k", "fallback") == "fallback"

    def test_set_refreshes_expiry(self, cache, clock):
        cache.set("k", 1)
        clock.now = 50
        cache.set("k", 2)
        clock.now = 100
        assert cache.get("k") == 2

    def test_len_ignores_expired(self, cache, clock):
        cache.set("a", 1)
        clock.now = 30
        cache.set("b", 2)
        clock.now = 61
        assert len(cache) == 1

    def test_rejects_non_positive_ttl(self):
        with pytest.raises(ValueError):
            TTLCache(ttl_seconds=0)


class TestGetOrLoad:
    def test_loader_called_once_while_fresh(self, cache):
        calls = []

        def loader():
            calls.append(1)
            return 42

        assert cache.get_or_load("k", loader) == 42
        assert cache.get_or_load("k", loader) == 42
        assert len(calls) == 1

    def test_none_results_are_cached(self, cache):
        calls = []

        def loader():
            calls.append(1)
            return None

        assert cache.get_or_load("missing", loader) is None
        assert cache.get_or_load("missing", loader) is None
        assert len(calls) == 1

    def test_reload_after_expiry(self, cache, clock):
        values = iter([1, 2])
        cache.get_or_load("k", lambda: next(values))
        clock.now = 120
        assert cache.get_or_load("k", lambda: next(values)) == 2


class TestInvalidation:
    def test_invalidate_single_key(self, cache):
        cache.set("a", 1)
        cache.invalidate("a")
        cache.invalidate("never-set")
        assert cache.get("a") is None

    def test_invalidate_where_scopes_by_guild(self, cache):
        cache.set((1, "slash", "ping"), 10)
        cache.set((1, "prefix", "ping"), 11)
        cache.set((2, "slash", "ping"), 20)
        dropped = cache.invalidate_where(lambda key: key[0] == 1)
        assert dropped == 2
        assert cache.get((2, "slash", "ping")) == 20

    def test_clear(self, cache):
        cache.set("a", 1)
        cache.clear()
        assert len(cache) == 0


class TestSizeBound:
    def test_oldest_entry_evicted_when_full(self, clock):
        cache = TTLCache(ttl_seconds=60, max_entries=3, clock=clock)
        for i in range(5):
            cache.set(f"junk{i}", None)
        assert len(cache) == 3
        assert cache.get("junk0", "gone") == "gone"
        assert cache.get("junk4", "gone") is None

    def test_reset_key_moves_to_back(self, clock):
        cache = TTLCache(ttl_seconds=60, max_entries=2, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("a", 3)
        cache.set("c", 4)
        assert cache.get("a") == 3
        assert cache.get("b") is None

    def test_full_cache_sheds_expired_entries_first(self, clock):
        cache = TTLCache(ttl_seconds=60, max_entries=2, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        clock.now = 100
        cache.set("c", 3)
        assert len(cache._entries) == 1

    def test_rejects_non_positive_size(self):
        with pytest.raises(ValueError):
            TTLCache(ttl_seconds=60, max_entries=0)

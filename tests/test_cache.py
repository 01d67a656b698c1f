"""Tests for the TTL cache."""

from contextsync.cache import TTLCache


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestTTLCache:
    """Tests for TTLCache."""

    def test_get_and_expire(self):
        clock = FakeClock()
        cache = TTLCache(ttl=10, clock=clock)
        cache.set("k", "v")

        assert cache.get("k") == "v"
        assert "k" in cache

        clock.now = 11
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_per_entry_ttl(self):
        clock = FakeClock()
        cache = TTLCache(ttl=100, clock=clock)
        cache.set("short", 1, ttl=1)
        cache.set("long", 2)

        clock.now = 5
        assert cache.get("short") is None
        assert cache.get("long") == 2

    def test_pop_is_one_shot(self):
        cache = TTLCache(ttl=10)
        cache.set("state", ("alice", "slack"))

        assert cache.pop("state") == ("alice", "slack")
        assert cache.pop("state") is None

    def test_pop_expired(self):
        clock = FakeClock()
        cache = TTLCache(ttl=10, clock=clock)
        cache.set("state", "x")
        clock.now = 20

        assert cache.pop("state") is None
        assert len(cache) == 0

    def test_evicts_expired_then_oldest_when_full(self):
        clock = FakeClock()
        cache = TTLCache(ttl=10, max_size=2, clock=clock)
        cache.set("a", 1, ttl=1)
        cache.set("b", 2)
        clock.now = 5

        cache.set("c", 3)
        assert cache.get("a") is None
        assert cache.get("b") == 2

        cache.set("d", 4)
        assert cache.get("b") is None
        assert cache.get("c") == 3
        assert cache.get("d") == 4

    def test_invalidate_and_clear(self):
        cache = TTLCache()
        cache.set("a", 1)
        cache.set("b", 2)

        cache.invalidate("a")
        assert cache.get("a") is None

        cache.clear()
        assert len(cache) == 0

    def test_falsy_values_are_cached(self):
        cache = TTLCache()
        cache.set("zero", 0)
        assert cache.get("zero") == 0

"""Tests for the in-memory expiring cache."""

from readerpass.core.cache import ExpiringCache


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_entries_expire_after_ttl():
    clock = FakeClock()
    cache = ExpiringCache(ttl_seconds=60, time_fn=clock)
    cache.set("ip", "NG")
    clock.now += 59
    assert cache.get("ip") == "NG"
    clock.now += 1
    assert cache.get("ip") is None
    assert len(cache) == 0


def test_full_cache_drops_entry_closest_to_expiry():
    clock = FakeClock()
    cache = ExpiringCache(ttl_seconds=60, time_fn=clock, max_entries=2)
    cache.set("a", 1)
    clock.now += 1
    cache.set("b", 2)
    cache.set("c", 3)
    assert cache.get("a") is None
    assert cache.get("b") == 2
    assert cache.get("c") == 3


def test_clear():
    cache = ExpiringCache(ttl_seconds=60)
    cache.set("a", 1)
    cache.clear()
    assert cache.get("a") is None

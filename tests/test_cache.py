# tests/test_cache.py

import pytest

from hostbill import cache as cache_module
from hostbill.cache import TTLCache


class _Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock(monkeypatch):
    c = _Clock()
    monkeypatch.setattr(cache_module.time, "monotonic", c)
    return c


def test_get_returns_value_until_ttl_elapses(clock):
    c = TTLCache(default_ttl=10)
    c.set("workers", {"count": 3})

    clock.now += 9.9
    assert c.get("workers") == {"count": 3}

    clock.now += 0.1
    assert c.get("workers") is None
    # expired entries are dropped on read
    assert c.stats()["size"] == 0


def test_per_entry_ttl_overrides_default(clock):
    c = TTLCache(default_ttl=600)
    c.set("short", 1, ttl=5)
    c.set("long", 2)

    clock.now += 6
    assert c.get("short") is None
    assert c.get("long") == 2


def test_invalid_ttl_is_rejected():
    with pytest.raises(ValueError):
        TTLCache(default_ttl=0)
    c = TTLCache(default_ttl=60)
    with pytest.raises(ValueError):
        c.set("k", "v", ttl=-1)


def test_invalidate_pattern_only_drops_matching_keys(clock):
    c = TTLCache(default_ttl=60)
    c.set("pool:alpha:/pool/workers?", 1)
    c.set("pool:alpha:/workspace?", 2)
    c.set("pool:beta:/pool/workers?", 3)

    assert c.invalidate_pattern(r"^pool:alpha:") == 2
    assert c.get("pool:beta:/pool/workers?") == 3
    assert c.stats()["keys"] == ["pool:beta:/pool/workers?"]


def test_invalidate_and_clear():
    c = TTLCache(default_ttl=60)
    c.set("a", 1)
    c.set("b", 2)

    assert c.invalidate("a") is True
    assert c.invalidate("a") is False
    c.clear()
    assert c.get("b") is None

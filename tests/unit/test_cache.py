"""Unit tests for the in-process caches."""

from costgate.storage.cache import SpendCache, TTLCache


def test_ttl_cache_expiry():
    """Test entries expire after the TTL."""
    now = [0.0]
    cache = TTLCache(10, clock=lambda: now[0])
    cache.put("a", 1)

    now[0] = 9.9
    assert cache.get("a") == 1

    now[0] = 10.0
    assert cache.get("a") is None
    assert len(cache) == 0


def test_ttl_cache_caches_none():
    """Test negative lookups are cached as well."""
    calls = []

    def loader():
        calls.append(1)
        return None

    cache = TTLCache(60)

    assert cache.get_or_load("missing", loader) is None
    assert cache.get_or_load("missing", loader) is None
    assert len(calls) == 1


def test_ttl_cache_invalidate():
    """Test invalidating one key or everything."""
    cache = TTLCache(60)
    cache.put("a", 1)
    cache.put("b", 2)

    cache.invalidate("a")
    assert cache.get("a", "gone") == "gone"
    assert cache.get("b") == 2

    cache.invalidate()
    assert len(cache) == 0


def test_spend_cache_keeps_larger_total():
    """Test a late, smaller total does not replace a larger one."""
    cache = SpendCache()

    cache.record("k", 5.0)
    cache.record("k", 3.0)
    assert cache.get("k") == 5.0

    cache.record("k", 7.5)
    assert cache.get("k") == 7.5


def test_spend_cache_discard_if():
    """Test discarding totals of retired buckets."""
    cache = SpendCache()
    cache.record(("project:search", "daily", "2025-01-14"), 1.0)
    cache.record(("project:search", "daily", "2025-01-15"), 2.0)

    assert cache.discard_if(lambda key: key[2] < "2025-01-15") == 1
    assert len(cache) == 1
    assert cache.get(("project:search", "daily", "2025-01-14")) is None

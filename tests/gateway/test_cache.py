"""Tests for TTLCache."""

import pytest

from relaygate.gateway.cache import TTLCache


class TestTTLCache:
    """Tests for get/set/delete/clear and expiry."""

    def test_set_then_get(self, clock):
        """A fresh entry is returned as stored."""
        cache = TTLCache(default_ttl=60.0, clock=clock)

        cache.set("models", '{"object": "list"}')

        assert cache.get("models") == '{"object": "list"}'

    def test_missing_key(self, clock):
        cache = TTLCache(default_ttl=60.0, clock=clock)

        assert cache.get("nope") is None

    def test_expired_entry_is_absent_and_purged(self, clock):
        """An entry read after its deadline is gone and removed."""
        cache = TTLCache(default_ttl=60.0, clock=clock)
        cache.set("k", "v")

        clock.advance(60.0)

        assert cache.get("k") is None
        assert len(cache) == 0

    def test_entry_alive_just_before_expiry(self, clock):
        cache = TTLCache(default_ttl=60.0, clock=clock)
        cache.set("k", "v")

        clock.advance(59.9)

        assert cache.get("k") == "v"

    def test_per_entry_ttl_overrides_default(self, clock):
        """An explicit ttl wins over the default."""
        cache = TTLCache(default_ttl=1800.0, clock=clock)
        cache.set("short", "v", ttl=5.0)
        cache.set("long", "v")

        clock.advance(10.0)

        assert cache.get("short") is None
        assert cache.get("long") == "v"

    def test_no_background_sweep(self, clock):
        """Expired entries stay stored until they are read."""
        cache = TTLCache(default_ttl=1.0, clock=clock)
        cache.set("a", "1")
        cache.set("b", "2")

        clock.advance(5.0)

        assert len(cache) == 2
        cache.get("a")
        assert len(cache) == 1

    def test_overwrite_refreshes_expiry(self, clock):
        cache = TTLCache(default_ttl=10.0, clock=clock)
        cache.set("k", "old")
        clock.advance(8.0)
        cache.set("k", "new")
        clock.advance(8.0)

        assert cache.get("k") == "new"

    def test_bounded_size_evicts_oldest_written(self, clock):
        """When full, the least recently written entry goes first."""
        cache = TTLCache(default_ttl=60.0, max_entries=2, clock=clock)
        cache.set("a", "1")
        cache.set("b", "2")
        cache.set("a", "1'")  # rewrite moves "a" to the back
        cache.set("c", "3")

        assert cache.get("b") is None
        assert cache.get("a") == "1'"
        assert cache.get("c") == "3"

    def test_delete_and_clear(self, clock):
        cache = TTLCache(default_ttl=60.0, clock=clock)
        cache.set("a", "1")
        cache.set("b", "2")

        cache.delete("a")
        cache.delete("missing")
        assert cache.get("a") is None
        assert len(cache) == 1

        cache.clear()
        assert len(cache) == 0

    def test_rejects_zero_capacity(self):
        with pytest.raises(ValueError):
            TTLCache(default_ttl=60.0, max_entries=0)

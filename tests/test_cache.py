"""
Test suite for cache module

Tests the in-memory TTL cache, the Redis backend against a mocked client,
the fail-safe wrapper, key naming and certificate invalidation.
"""

import json
import logging
import pytest
import redis
from unittest.mock import MagicMock, patch

from cdt_core.cache import (
    CacheBackend, CacheKeys, FailSafeCache, InMemoryCache, RedisCache,
    create_cache, fail_safe, invalidate_certificate
)
from cdt_core.certificates import CertificateStatus, ListFilters
from cdt_core.errors import CacheError


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestInMemoryCache:
    """Test in-memory cache backend"""

    def setup_method(self):
        self.clock = FakeClock()
        self.cache = InMemoryCache(default_ttl_seconds=300, clock=self.clock)

    def test_set_and_get(self):
        self.cache.set("cdt:1", {"status": "draft"})
        assert self.cache.get("cdt:1") == {"status": "draft"}
        assert self.cache.get("cdt:2") is None

    def test_values_are_copies(self):
        """Callers cannot mutate what is cached"""
        value = {"items": [1, 2]}
        self.cache.set("k", value)
        value["items"].append(3)
        cached = self.cache.get("k")
        cached["items"].append(4)
        assert self.cache.get("k") == {"items": [1, 2]}

    def test_expiry(self):
        self.cache.set("k", "v", ttl_seconds=10)
        self.clock.now += 9
        assert self.cache.get("k") == "v"
        self.clock.now += 1
        assert self.cache.get("k") is None

    def test_default_ttl(self):
        self.cache.set("k", "v")
        self.clock.now += 299
        assert self.cache.get("k") == "v"
        self.clock.now += 1
        assert self.cache.get("k") is None

    def test_non_positive_ttl_never_expires(self):
        self.cache.set("k", "v", ttl_seconds=0)
        self.clock.now += 10 ** 6
        assert self.cache.get("k") == "v"

    def test_delete(self):
        self.cache.set("k", "v")
        assert self.cache.delete("k")
        assert not self.cache.delete("k")
        assert self.cache.get("k") is None

    def test_invalidate_pattern(self):
        self.cache.set("cdts:user:u1:status:all:page:1:limit:20", [])
        self.cache.set("cdts:user:u1:status:draft:page:1:limit:20", [])
        self.cache.set("cdts:user:u2:status:all:page:1:limit:20", [])
        self.cache.set("cdt:1", {})

        assert self.cache.invalidate_pattern("cdts:user:u1:*") == 2
        assert self.cache.get("cdts:user:u2:status:all:page:1:limit:20") == []
        assert self.cache.get("cdt:1") == {}
        assert self.cache.invalidate_pattern("nothing:*") == 0

    def test_cleanup(self):
        self.cache.set("short", 1, ttl_seconds=5)
        self.cache.set("long", 2, ttl_seconds=50)
        self.clock.now += 10
        assert self.cache.cleanup() == 1
        assert self.cache.get_metrics()['cache_size'] == 1

    def test_clear(self):
        self.cache.set("a", 1)
        self.cache.set("b", 2)
        assert self.cache.clear() == 2
        assert self.cache.get("a") is None

    def test_metrics(self):
        self.cache.set("k", "v")
        self.cache.get("k")
        self.cache.get("missing")
        self.cache.delete("k")
        self.cache.set("x:1", 1)
        self.cache.invalidate_pattern("x:*")

        metrics = self.cache.get_metrics()
        assert metrics['hits'] == 1
        assert metrics['misses'] == 1
        assert metrics['sets'] == 2
        assert metrics['deletes'] == 1
        assert metrics['invalidations'] == 1
        assert metrics['hit_rate'] == 50.0
        assert metrics['miss_rate'] == 50.0
        assert metrics['total_requests'] == 2
        assert metrics['cache_size'] == 0
        assert metrics['backend'] == "in-memory"

    def test_reset_metrics(self):
        self.cache.get("missing")
        self.cache.reset_metrics()
        metrics = self.cache.get_metrics()
        assert metrics['misses'] == 0
        assert metrics['hit_rate'] == 0.0

    def test_set_if_generation(self):
        generation = self.cache.generation()
        assert self.cache.set_if_generation("cdt:1", {"status": "pending"}, generation, 60)
        assert self.cache.get("cdt:1") == {"status": "pending"}

    def test_set_if_generation_refuses_stale_fill(self):
        """A fill computed before an invalidation is dropped"""
        generation = self.cache.generation()
        assert self.cache.bump_generation() == generation + 1

        assert not self.cache.set_if_generation("cdt:1", {"status": "pending"}, generation)
        assert self.cache.get("cdt:1") is None
        assert self.cache.get_metrics()['sets'] == 0

    def test_clear_keeps_generation(self):
        self.cache.bump_generation()
        self.cache.clear()
        assert self.cache.generation() == 1


class TestRedisCache:
    """Test Redis backend with a mocked client"""

    def setup_method(self):
        self.client = MagicMock()
        self.cache = RedisCache(client=self.client, key_prefix="test:", default_ttl_seconds=300)

    def test_get_hit(self):
        self.client.get.return_value = json.dumps({"status": "active"})
        assert self.cache.get("cdt:1") == {"status": "active"}
        self.client.get.assert_called_once_with("test:cdt:1")

    def test_get_miss(self):
        self.client.get.return_value = None
        assert self.cache.get("cdt:1") is None
        self.client.scan_iter.return_value = iter([])
        assert self.cache.get_metrics()['misses'] == 1

    def test_set_with_ttl(self):
        self.cache.set("cdt:1", {"a": 1}, ttl_seconds=60)
        self.client.setex.assert_called_once_with("test:cdt:1", 60, json.dumps({"a": 1}))

    def test_set_rounds_fractional_ttl_up(self):
        self.cache.set("k", 1, ttl_seconds=0.2)
        self.client.setex.assert_called_once_with("test:k", 1, "1")

    def test_set_without_expiry(self):
        self.cache.set("k", [1], ttl_seconds=0)
        self.client.set.assert_called_once_with("test:k", "[1]")
        self.client.setex.assert_not_called()

    def test_delete(self):
        self.client.delete.return_value = 1
        assert self.cache.delete("k")
        self.client.delete.assert_called_once_with("test:k")

    def test_invalidate_pattern_uses_scan(self):
        self.client.scan_iter.return_value = iter(["test:cdts:all:a", "test:cdts:all:b"])
        assert self.cache.invalidate_pattern("cdts:all:*") == 2
        self.client.scan_iter.assert_called_once_with(match="test:cdts:all:*")
        self.client.delete.assert_called_once_with("test:cdts:all:a", "test:cdts:all:b")

    def test_invalidate_pattern_without_matches(self):
        self.client.scan_iter.return_value = iter([])
        assert self.cache.invalidate_pattern("cdts:all:*") == 0
        self.client.delete.assert_not_called()

    def test_clear_only_touches_prefix(self):
        self.client.scan_iter.return_value = iter(["test:a"])
        assert self.cache.clear() == 1
        self.client.scan_iter.assert_called_once_with(match="test:*")

    def test_driver_errors_become_cache_errors(self):
        self.client.get.side_effect = redis.ConnectionError("connection refused")
        self.client.setex.side_effect = redis.TimeoutError("timeout")
        self.client.scan_iter.side_effect = redis.ConnectionError("connection refused")

        with pytest.raises(CacheError, match="GET"):
            self.cache.get("k")
        with pytest.raises(CacheError, match="SET"):
            self.cache.set("k", 1, ttl_seconds=10)
        with pytest.raises(CacheError):
            self.cache.invalidate_pattern("*")

    def test_corrupt_value_is_cache_error(self):
        self.client.get.return_value = "{not json"
        with pytest.raises(CacheError, match="not JSON"):
            self.cache.get("cdt:1")

    def test_corrupt_value_degrades_to_miss(self):
        self.client.get.return_value = "<html>"
        assert FailSafeCache(self.cache).get("cdt:1") is None

    def test_generation_counter(self):
        self.client.get.return_value = None
        assert self.cache.generation() == 0
        self.client.get.return_value = "7"
        assert self.cache.generation() == 7

        self.client.incr.return_value = 8
        assert self.cache.bump_generation() == 8
        self.client.incr.assert_called_once_with("test:meta:generation")

    def test_set_if_generation_watches_counter(self):
        pipe = self.client.pipeline.return_value.__enter__.return_value
        pipe.get.return_value = "3"

        assert self.cache.set_if_generation("cdt:1", {"a": 1}, 3, ttl_seconds=60)
        pipe.watch.assert_called_once_with("test:meta:generation")
        pipe.multi.assert_called_once()
        pipe.setex.assert_called_once_with("test:cdt:1", 60, json.dumps({"a": 1}))
        pipe.execute.assert_called_once()

    def test_set_if_generation_stale(self):
        pipe = self.client.pipeline.return_value.__enter__.return_value
        pipe.get.return_value = "4"

        assert not self.cache.set_if_generation("cdt:1", {"a": 1}, 3, ttl_seconds=60)
        pipe.setex.assert_not_called()
        pipe.execute.assert_not_called()

    def test_set_if_generation_bumped_during_write(self):
        pipe = self.client.pipeline.return_value.__enter__.return_value
        pipe.get.return_value = "3"
        pipe.execute.side_effect = redis.WatchError("watched key changed")

        assert not self.cache.set_if_generation("cdt:1", {"a": 1}, 3, ttl_seconds=60)

    def test_invalidation_skips_generation_key(self):
        self.client.scan_iter.return_value = iter(["test:meta:generation", "test:cdt:1"])
        assert self.cache.clear() == 1
        self.client.delete.assert_called_once_with("test:cdt:1")

    def test_requires_url_or_client(self):
        with pytest.raises(ValueError, match="redis_url or client"):
            RedisCache()

    def test_builds_client_from_url(self):
        with patch("cdt_core.cache.redis.from_url") as from_url:
            RedisCache(redis_url="redis://cache:6379/1")
        from_url.assert_called_once_with("redis://cache:6379/1", decode_responses=True)


class TestFailSafeCache:
    """Test that cache failures never reach callers"""

    def setup_method(self):
        self.backend = MagicMock(spec=CacheBackend)
        for name in ("get", "set", "delete", "invalidate_pattern", "clear", "get_metrics",
                     "generation", "bump_generation", "set_if_generation"):
            getattr(self.backend, name).side_effect = CacheError("backend down")
        self.cache = FailSafeCache(self.backend)

    def test_reads_degrade_to_misses(self, caplog):
        with caplog.at_level(logging.WARNING, logger="cdt_core.cache"):
            assert self.cache.get("cdt:1") is None
        assert "Cache get failed for cdt:1" in caplog.text

    def test_writes_are_swallowed(self):
        self.cache.set("k", 1, 10)
        assert self.cache.delete("k") is False
        assert self.cache.invalidate_pattern("cdts:all:*") == 0
        assert self.cache.clear() == 0
        assert self.cache.get_metrics() == {}

    def test_generation_failures(self):
        """An unknown generation reads as None so callers skip filling"""
        assert self.cache.generation() is None
        assert self.cache.bump_generation() is None
        assert self.cache.set_if_generation("k", 1, 0, 10) is False

    def test_passes_through_when_healthy(self):
        cache = FailSafeCache(InMemoryCache())
        cache.set("k", "v")
        assert cache.get("k") == "v"

    def test_other_errors_propagate(self):
        """Only cache failures are swallowed"""
        self.backend.get.side_effect = KeyError("bug")
        with pytest.raises(KeyError):
            self.cache.get("k")

    def test_fail_safe_wraps_once(self):
        wrapped = fail_safe(InMemoryCache())
        assert isinstance(wrapped, FailSafeCache)
        assert fail_safe(wrapped) is wrapped


class TestCacheKeys:
    """Test key naming and certificate invalidation"""

    def test_key_formats(self):
        assert CacheKeys.certificate("abc") == "cdt:abc"
        assert CacheKeys.user_page("u1", None, 1, 20) == "cdts:user:u1:status:all:page:1:limit:20"
        assert CacheKeys.user_page("u1", CertificateStatus.ACTIVE, 2, 10) == \
            "cdts:user:u1:status:active:page:2:limit:10"
        assert CacheKeys.user_list("u1", ListFilters()).startswith("cdts:user:u1:")
        assert CacheKeys.all_list(ListFilters()).startswith("cdts:all:")
        assert CacheKeys.all_count(ListFilters()).startswith("cdts:all:")
        assert CacheKeys.all_page(ListFilters()).startswith("cdts:all:")

    def test_invalidate_certificate(self):
        cache = InMemoryCache()
        keep = [
            "cdt:other",
            CacheKeys.user_page("u2", None, 1, 20),
        ]
        drop = [
            "cdt:c1",
            CacheKeys.user_page("u1", None, 1, 20),
            CacheKeys.user_list("u1", ListFilters(status="draft")),
            CacheKeys.all_list(ListFilters()),
            CacheKeys.all_count(ListFilters()),
            CacheKeys.PENDING,
            CacheKeys.ADMIN_STATS,
        ]
        for key in keep + drop:
            cache.set(key, {"cached": True})

        invalidate_certificate(cache, "c1", "u1")

        assert all(cache.get(key) is None for key in drop)
        assert all(cache.get(key) == {"cached": True} for key in keep)

    def test_invalidate_certificate_bumps_generation(self):
        cache = InMemoryCache()
        generation = cache.generation()
        invalidate_certificate(cache, "c1", "u1")
        assert cache.generation() > generation

    @pytest.mark.parametrize("user_id", ["user[1]", "who?", "a*b", "team]x"])
    def test_user_pattern_matches_own_keys_only(self, user_id):
        """Glob characters in user ids are matched literally"""
        cache = InMemoryCache()
        own = CacheKeys.user_page(user_id, None, 1, 20)
        other = CacheKeys.user_page("user1", None, 1, 20)
        cache.set(own, [])
        cache.set(other, [])

        assert cache.invalidate_pattern(CacheKeys.user_pattern(user_id)) == 1
        assert cache.get(own) is None
        assert cache.get(other) == []


class TestCreateCache:
    """Test backend factory"""

    def test_memory(self):
        assert isinstance(create_cache("memory"), InMemoryCache)

    def test_redis(self):
        with patch("cdt_core.cache.redis.from_url"):
            cache = create_cache("redis", redis_url="redis://localhost:6379/0")
        assert isinstance(cache, RedisCache)

    def test_unknown_backend(self):
        with pytest.raises(ValueError, match="Unknown cache backend"):
            create_cache("memcached")

"""
Tests for the per-category caches.

Covers:
- TTL expiry and LRU eviction of the in-process cache (fake clock, no sleeping)
- Per-user purge across every category
- De-duplication of concurrent identical fetches
- The Redis-backed variant against a dict-backed fake client
"""

import pickle
import threading
import unittest

import redis

from vtop.cache import (
    CacheRegistry,
    CacheTTL,
    InflightRequests,
    LRUCache,
    RedisCache,
    cache_or_fetch,
    user_cache_key,
)
from vtop.errors import SessionExpired, UpstreamTimeout, VtopError
from tests.fakes import FakeClock, FakeRedis


class TestLRUCache(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock(100.0)

    def test_get_returns_value_until_ttl_passes(self) -> None:
        cache = LRUCache(max_size=5, default_ttl=10, clock=self.clock)
        cache.set("a", 1)
        self.clock.advance(10)
        self.assertEqual(cache.get("a"), 1)
        self.clock.advance(0.5)
        self.assertIsNone(cache.get("a"))
        # expired entries are dropped on read
        self.assertEqual(len(cache), 0)

    def test_explicit_ttl_overrides_default(self) -> None:
        cache = LRUCache(max_size=5, default_ttl=CacheTTL.EXTENDED, clock=self.clock)
        cache.set("a", 1, ttl=CacheTTL.SHORT)
        self.clock.advance(CacheTTL.SHORT + 1)
        self.assertIsNone(cache.get("a"))

    def test_evicts_least_recently_used(self) -> None:
        cache = LRUCache(max_size=3, default_ttl=100, clock=self.clock)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("c", 3)
        cache.get("a")
        cache.set("d", 4)
        self.assertEqual(len(cache), 3)
        self.assertIsNone(cache.get("b"))
        for key in ("a", "c", "d"):
            self.assertIn(key, cache)

    def test_expired_entries_are_purged_before_evicting(self) -> None:
        cache = LRUCache(max_size=3, default_ttl=100, clock=self.clock)
        cache.set("a", 1, ttl=5)
        cache.set("b", 2)
        cache.set("c", 3)
        self.clock.advance(10)
        cache.set("d", 4)
        self.assertEqual(len(cache), 3)
        self.assertIsNone(cache.get("a"))
        self.assertEqual(cache.get("b"), 2)

    def test_overwriting_a_key_at_capacity_keeps_others(self) -> None:
        cache = LRUCache(max_size=2, default_ttl=100, clock=self.clock)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("a", 10)
        self.assertEqual(cache.get("a"), 10)
        self.assertEqual(cache.get("b"), 2)

    def test_size_never_exceeds_max(self) -> None:
        cache = LRUCache(max_size=4, default_ttl=100, clock=self.clock)
        for i in range(20):
            cache.set(f"k{i}", i)
            self.assertLessEqual(len(cache), 4)
        self.assertEqual(cache.stats(), {"size": 4, "max_size": 4})

    def test_invalidate_pattern_and_delete(self) -> None:
        cache = LRUCache(max_size=10, default_ttl=100, clock=self.clock)
        cache.set("21BCE1234:attendance:VL1", 1)
        cache.set("21BCE1234:marks:VL1", 2)
        cache.set("22MIS0001:attendance:VL1", 3)
        self.assertEqual(cache.invalidate_pattern(r"^21BCE1234:"), 2)
        self.assertEqual(len(cache), 1)
        self.assertTrue(cache.delete("22MIS0001:attendance:VL1"))
        self.assertFalse(cache.delete("22MIS0001:attendance:VL1"))

    def test_rejects_zero_capacity(self) -> None:
        with self.assertRaises(ValueError):
            LRUCache(max_size=0)


class TestCacheRegistry(unittest.TestCase):
    def test_presets(self) -> None:
        registry = CacheRegistry.in_memory(max_size=50)
        self.assertEqual(registry["semesters"].max_size, 10)
        self.assertEqual(registry["semesters"].default_ttl, CacheTTL.EXTENDED)
        self.assertEqual(registry["attendance"].max_size, 50)
        self.assertEqual(registry["attendance"].default_ttl, CacheTTL.MEDIUM)
        self.assertEqual(registry["profile"].default_ttl, CacheTTL.LONG)
        self.assertIn("course_page", registry)

    def test_clear_user_touches_only_that_user(self) -> None:
        registry = CacheRegistry.in_memory()
        registry["attendance"].set(user_cache_key("21BCE1234", "attendance", "VL1"), "a")
        registry["profile"].set(user_cache_key("21BCE1234", "profile"), "p")
        registry["profile"].set(user_cache_key("21BCE12345", "profile"), "other")
        self.assertEqual(registry.clear_user("21BCE1234"), 2)
        self.assertIsNone(registry["attendance"].get("21BCE1234:attendance:VL1"))
        self.assertEqual(registry["profile"].get("21BCE12345:profile"), "other")

    def test_user_cache_key_layout(self) -> None:
        self.assertEqual(user_cache_key("21BCE1234", "profile"), "21BCE1234:profile")
        self.assertEqual(user_cache_key("21BCE1234", "marks", "VL1"), "21BCE1234:marks:VL1")


class TestCacheOrFetch(unittest.TestCase):
    def test_fetches_once_then_serves_cached(self) -> None:
        cache = LRUCache(max_size=5, default_ttl=100, clock=FakeClock())
        calls = []

        def fetch():
            calls.append(1)
            return {"value": len(calls)}

        first = cache_or_fetch(cache, "k", fetch)
        second = cache_or_fetch(cache, "k", fetch)
        self.assertEqual(first, second)
        self.assertEqual(len(calls), 1)

    def test_failed_fetch_caches_nothing(self) -> None:
        cache = LRUCache(max_size=5, default_ttl=100, clock=FakeClock())

        def fetch():
            raise RuntimeError("boom")

        with self.assertRaises(RuntimeError):
            cache_or_fetch(cache, "k", fetch, inflight=InflightRequests())
        self.assertEqual(len(cache), 0)


class TestInflightRequests(unittest.TestCase):
    def test_concurrent_callers_share_one_fetch(self) -> None:
        inflight = InflightRequests()
        second_calls = []
        results = {}

        def second_fetch():
            second_calls.append(1)
            return "second"

        def waiter():
            results["waiter"] = inflight.run("k", second_fetch)

        def owner_fetch():
            t = threading.Thread(target=waiter)
            t.start()
            # The waiter cannot finish while this fetch is still running.
            t.join(timeout=0.5)
            results["alive_while_fetching"] = t.is_alive()
            results["thread"] = t
            return "first"

        results["owner"] = inflight.run("k", owner_fetch)
        results["thread"].join(timeout=5)

        self.assertTrue(results["alive_while_fetching"])
        self.assertEqual(results["owner"], "first")
        self.assertEqual(results["waiter"], "first")
        self.assertEqual(second_calls, [])
        self.assertEqual(len(inflight), 0)

    def test_error_reaches_caller_and_clears_key(self) -> None:
        inflight = InflightRequests()

        def fetch():
            raise ValueError("nope")

        with self.assertRaises(ValueError):
            inflight.run("k", fetch)
        self.assertEqual(len(inflight), 0)
        self.assertEqual(inflight.run("k", lambda: 42), 42)

    def _race(self, owner_error):
        """Owner fails with ``owner_error`` while a second caller waits on the same key."""
        inflight = InflightRequests()
        results = {}

        def waiter():
            try:
                results["waiter"] = inflight.run("21BCE1234:marks", lambda: "own fetch")
            except VtopError as e:
                results["waiter"] = e

        def owner_fetch():
            t = threading.Thread(target=waiter)
            t.start()
            t.join(timeout=0.5)
            results["thread"] = t
            raise owner_error

        with self.assertRaises(type(owner_error)):
            inflight.run("21BCE1234:marks", owner_fetch)
        results["thread"].join(timeout=5)
        return results["waiter"]

    def test_reauth_error_is_not_shared(self) -> None:
        self.assertEqual(self._race(SessionExpired()), "own fetch")

    def test_transient_error_is_shared(self) -> None:
        error = UpstreamTimeout()
        self.assertIs(self._race(error), error)


class TestRedisCache(unittest.TestCase):
    def setUp(self) -> None:
        self.client = FakeRedis()
        self.cache = RedisCache(self.client, "vtop:attendance", default_ttl=CacheTTL.MEDIUM)

    def test_roundtrip_uses_namespace_and_ttl(self) -> None:
        self.cache.set("21BCE1234:attendance:VL1", {"a": 1})
        self.assertIn("vtop:attendance:21BCE1234:attendance:VL1", self.client.store)
        self.assertEqual(self.client.ttls["vtop:attendance:21BCE1234:attendance:VL1"], CacheTTL.MEDIUM)
        self.assertEqual(self.cache.get("21BCE1234:attendance:VL1"), {"a": 1})

    def test_corrupt_value_is_dropped(self) -> None:
        self.client.store["vtop:attendance:bad"] = b"not a pickle"
        self.assertIsNone(self.cache.get("bad"))
        self.assertNotIn("vtop:attendance:bad", self.client.store)

    def test_redis_errors_behave_like_a_miss(self) -> None:
        class Broken(FakeRedis):
            def get(self, key):
                raise redis.exceptions.ConnectionError("down")

        cache = RedisCache(Broken(), "vtop:profile")
        self.assertIsNone(cache.get("k"))

    def test_invalidate_pattern_strips_namespace(self) -> None:
        self.client.store["vtop:attendance:21BCE1234:attendance:VL1"] = pickle.dumps(1)
        self.client.store["vtop:attendance:22MIS0001:attendance:VL1"] = pickle.dumps(2)
        self.assertEqual(self.cache.invalidate_pattern(r"^21BCE1234:"), 1)
        self.assertEqual(list(self.client.store), ["vtop:attendance:22MIS0001:attendance:VL1"])

    def test_registry_with_redis(self) -> None:
        registry = CacheRegistry.with_redis(self.client)
        registry["profile"].set("21BCE1234:profile", "p")
        registry["marks"].set("21BCE1234:marks:VL1", "m")
        self.assertEqual(registry.clear_user("21BCE1234"), 2)
        self.assertEqual(self.client.store, {})


if __name__ == "__main__":
    unittest.main()

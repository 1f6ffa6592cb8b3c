import asyncio
import unittest

from review_core.common.cache import (
    CacheKeys,
    CacheLayer,
    Expiring,
    KeyBuilder,
    MemoryCacheBackend,
    TieredCache,
    get_or_recompute,
)
from review_core.common.cache.entry import CacheEntry

from conftest import FakeClock


class TestCacheEntry(unittest.TestCase):
    """Test the CacheEntry class."""

    def test_init(self):
        entry = CacheEntry({"test": "value"}, now=100.0)
        self.assertEqual(entry.value, {"test": "value"})
        self.assertIsNone(entry.expires_at)
        self.assertEqual(entry.access_count, 0)

        entry = CacheEntry("value", now=100.0, ttl=10)
        self.assertEqual(entry.expires_at, 110.0)

    def test_is_expired(self):
        entry = CacheEntry("test", now=100.0, ttl=10)
        self.assertFalse(entry.is_expired(109.9))
        self.assertTrue(entry.is_expired(110.0))
        self.assertFalse(CacheEntry("test", now=100.0).is_expired(1e12))

    def test_access_and_remaining_ttl(self):
        entry = CacheEntry("test", now=100.0, ttl=30)
        entry.access(105.0)
        self.assertEqual(entry.access_count, 1)
        self.assertEqual(entry.last_accessed, 105.0)
        self.assertEqual(entry.remaining_ttl(105.0), 25)
        self.assertEqual(entry.remaining_ttl(200.0), 0)


class TestKeyBuilder(unittest.TestCase):
    """Test key construction."""

    def test_build(self):
        self.assertEqual(KeyBuilder.build("a", 1, None), "a:1:null")
        self.assertEqual(KeyBuilder.build("x", namespace="ns"), "ns:x")

    def test_layout(self):
        self.assertEqual(CacheKeys.aggregation("item-1"), "aggregation:item-1")
        self.assertEqual(CacheKeys.prediction("u1", "i1"), "prediction:u1:i1")
        self.assertEqual(CacheKeys.profile("u1"), "profile:u1")
        self.assertNotIn("secret-token", CacheKeys.blacklist("secret-token"))


class TestMemoryCacheBackend(unittest.TestCase):
    """Test the MemoryCacheBackend class."""

    def setUp(self):
        self.clock = FakeClock()
        self.cache = MemoryCacheBackend(max_size=3, clock=self.clock)
        self.loop = asyncio.new_event_loop()

    def tearDown(self):
        self.loop.close()

    def run_async(self, coro):
        return self.loop.run_until_complete(coro)

    def test_get_set_delete(self):
        result = self.run_async(self.cache.set("key", {"a": 1}, ttl=60))
        self.assertTrue(result.success)

        result = self.run_async(self.cache.get("key"))
        self.assertTrue(result.hit)
        self.assertEqual(result.value, {"a": 1})
        self.assertEqual(result.source, "memory")

        self.assertTrue(self.run_async(self.cache.delete("key")))
        self.assertFalse(self.run_async(self.cache.get("key")).hit)
        self.assertFalse(self.run_async(self.cache.delete("key")))

    def test_values_are_copied(self):
        value = {"items": [1]}
        self.run_async(self.cache.set("key", value))
        value["items"].append(2)
        cached = self.run_async(self.cache.get("key")).value
        self.assertEqual(cached, {"items": [1]})
        cached["items"].append(3)
        self.assertEqual(self.run_async(self.cache.get("key")).value, {"items": [1]})

    def test_ttl_expiry_follows_clock(self):
        self.run_async(self.cache.set("key", "value", ttl=10))
        self.clock.advance(9)
        self.assertTrue(self.run_async(self.cache.has("key")))
        self.clock.advance(1)
        self.assertFalse(self.run_async(self.cache.has("key")))

        stats = self.run_async(self.cache.get_stats())
        self.assertEqual(stats["expirations"], 1)

    def test_add_is_set_if_absent(self):
        self.assertTrue(self.run_async(self.cache.add("lock", "a", ttl=5)))
        self.assertFalse(self.run_async(self.cache.add("lock", "b", ttl=5)))
        self.assertEqual(self.run_async(self.cache.get("lock")).value, "a")

        self.clock.advance(5)
        self.assertTrue(self.run_async(self.cache.add("lock", "b", ttl=5)))

    def test_expire_resets_countdown(self):
        self.run_async(self.cache.set("key", "value", ttl=10))
        self.clock.advance(8)
        self.assertTrue(self.run_async(self.cache.expire("key", 10)))
        self.clock.advance(8)
        self.assertTrue(self.run_async(self.cache.has("key")))
        self.assertFalse(self.run_async(self.cache.expire("missing", 10)))

    def test_lru_eviction(self):
        for key in ("a", "b", "c"):
            self.run_async(self.cache.set(key, key))
        self.run_async(self.cache.get("a"))
        self.run_async(self.cache.set("d", "d"))

        self.assertFalse(self.run_async(self.cache.has("b")))
        self.assertTrue(self.run_async(self.cache.has("a")))
        self.assertEqual(self.run_async(self.cache.get_stats())["evictions"], 1)

    def test_eviction_spares_sets_and_lists(self):
        self.run_async(self.cache.sadd("s", "x"))
        self.run_async(self.cache.rpush("q", "item-1"))
        self.run_async(self.cache.set("a", 1))
        self.run_async(self.cache.set("b", 2))

        self.assertFalse(self.run_async(self.cache.has("a")))
        self.assertEqual(self.run_async(self.cache.smembers("s")), ["x"])
        self.assertEqual(self.run_async(self.cache.lrange("q")), ["item-1"])

        self.run_async(self.cache.sadd("t", "y"))
        self.run_async(self.cache.set("c", 3))
        self.assertEqual(len(self.cache), 4)
        self.assertEqual(self.run_async(self.cache.smembers("t")), ["y"])

    def test_set_primitives(self):
        self.assertEqual(self.run_async(self.cache.sadd("s", "x", "y")), 2)
        self.assertEqual(self.run_async(self.cache.sadd("s", "y")), 0)
        self.assertEqual(self.run_async(self.cache.smembers("s")), ["x", "y"])
        self.assertEqual(self.run_async(self.cache.srem("s", "x", "z")), 1)
        self.assertEqual(self.run_async(self.cache.srem("s", "y")), 1)
        self.assertFalse(self.run_async(self.cache.has("s")))

    def test_list_primitives(self):
        self.assertEqual(self.run_async(self.cache.rpush("q", "a", "b", "c", "b")), 4)
        self.assertEqual(self.run_async(self.cache.lrange("q", 1, 2)), ["b", "c"])
        self.assertEqual(self.run_async(self.cache.lrem("q", "b")), 2)
        self.assertEqual(self.run_async(self.cache.lrange("q")), ["a", "c"])
        self.run_async(self.cache.lrem("q", "a"))
        self.run_async(self.cache.lrem("q", "c"))
        self.assertFalse(self.run_async(self.cache.has("q")))
        self.assertEqual(self.run_async(self.cache.lrange("q")), [])

    def test_containers_are_not_values(self):
        self.run_async(self.cache.sadd("s", "x"))
        self.assertFalse(self.run_async(self.cache.get("s")).hit)

    def test_cleanup_expired(self):
        self.run_async(self.cache.set("short", 1, ttl=1))
        self.run_async(self.cache.set("long", 2, ttl=100))
        self.clock.advance(2)
        self.assertEqual(self.cache.cleanup_expired(), 1)
        self.assertEqual(len(self.cache), 1)


class TestTieredCache(unittest.TestCase):
    """Test layering, promotion and tag invalidation."""

    def setUp(self):
        self.clock = FakeClock()
        self.backend = MemoryCacheBackend(clock=self.clock)
        self.cache = TieredCache(self.backend)
        self.loop = asyncio.new_event_loop()

    def tearDown(self):
        self.loop.close()

    def run_async(self, coro):
        return self.loop.run_until_complete(coro)

    def test_miss_in_every_layer(self):
        result = self.run_async(self.cache.get("missing"))
        self.assertFalse(result.hit)
        self.assertEqual(self.run_async(self.cache.get_stats())["misses"], 1)

    def test_hit_below_l1_is_promoted(self):
        self.run_async(self.cache.set("key", "value", CacheLayer.L3))
        self.assertFalse(self.run_async(self.backend.has("l1:key")))

        result = self.run_async(self.cache.get("key"))
        self.assertTrue(result.hit)
        self.assertEqual(result.source, "L3")
        self.assertTrue(self.run_async(self.backend.has("l1:key")))

        result = self.run_async(self.cache.get("key"))
        self.assertEqual(result.source, "L1")

        stats = self.run_async(self.cache.get_stats())
        self.assertEqual(stats["promotions"], 1)
        self.assertEqual(stats["layer_hits"]["L3"], 1)
        self.assertEqual(stats["layer_hits"]["L1"], 1)

    def test_layer_ttls(self):
        self.run_async(self.cache.set("key", "value", CacheLayer.L1))
        self.clock.advance(self.cache.ttl_for(CacheLayer.L1))
        self.assertFalse(self.run_async(self.cache.get("key")).hit)

        self.run_async(self.cache.set("key", "value", CacheLayer.L4))
        self.clock.advance(self.cache.ttl_for(CacheLayer.L3))
        self.assertTrue(self.run_async(self.cache.get("key")).hit)

    def test_delete_removes_every_layer(self):
        self.run_async(self.cache.set("key", "value", CacheLayer.L2))
        self.run_async(self.cache.get("key"))
        self.assertEqual(self.run_async(self.cache.delete("key")), 2)
        self.assertFalse(self.run_async(self.cache.get("key")).hit)

    def test_invalidate_by_tags(self):
        self.run_async(self.cache.set_with_tags("p:1", 1, 60, ["item:a", "user:1"]))
        self.run_async(self.cache.set_with_tags("p:2", 2, 60, ["item:a", "user:2"]))
        self.run_async(self.cache.set_with_tags("p:3", 3, 60, ["item:b", "user:1"]))

        self.assertEqual(self.run_async(self.cache.invalidate_by_tags(["item:a"])), 2)
        self.assertFalse(self.run_async(self.cache.get("p:1")).hit)
        self.assertFalse(self.run_async(self.cache.get("p:2")).hit)
        self.assertTrue(self.run_async(self.cache.get("p:3")).hit)

        self.assertEqual(self.run_async(self.cache.invalidate_by_tags(["user:1"])), 2)
        self.assertFalse(self.run_async(self.cache.get("p:3")).hit)

    def test_invalidation_reaches_promoted_copies(self):
        self.run_async(self.cache.set_with_tags("p:1", 1, 60, ["item:a"], CacheLayer.L3))
        self.run_async(self.cache.get("p:1"))
        self.run_async(self.cache.invalidate_by_tags(["item:a"]))
        self.assertFalse(self.run_async(self.backend.has("l1:p:1")))
        self.assertFalse(self.run_async(self.backend.has("l3:p:1")))

    def test_layer_backend_override(self):
        local = MemoryCacheBackend(name="local", clock=self.clock)
        cache = TieredCache(self.backend, layer_backends={CacheLayer.L1: local})
        self.run_async(cache.set("key", "value", CacheLayer.L2))
        self.run_async(cache.get("key"))
        self.assertTrue(self.run_async(local.has("l1:key")))
        self.assertFalse(self.run_async(self.backend.has("l1:key")))


class TestExpiring(unittest.TestCase):
    """Test reader-checked expiry and get-or-recompute."""

    def setUp(self):
        self.clock = FakeClock()
        self.cache = TieredCache(MemoryCacheBackend(clock=self.clock))
        self.loop = asyncio.new_event_loop()
        self.computed = 0

    def tearDown(self):
        self.loop.close()

    async def compute(self):
        self.computed += 1
        return {"n": self.computed}

    def fetch(self, ttl=60):
        return self.loop.run_until_complete(get_or_recompute(
            self.cache, "key", self.compute, ttl, encode=dict, decode=dict, clock=self.clock
        ))

    def test_expiring_value(self):
        value = Expiring.for_ttl("v", 10, 100.0)
        self.assertFalse(value.is_expired(109.0))
        self.assertTrue(value.is_expired(110.0))
        self.assertEqual(value.remaining(104.0), 6.0)

    def test_recomputes_only_after_expiry(self):
        first = self.fetch()
        self.assertEqual(first.value, {"n": 1})
        self.assertEqual(first.expires_at, self.clock() + 60)

        self.clock.advance(30)
        self.assertEqual(self.fetch().value, {"n": 1})

        self.clock.advance(30)
        self.assertEqual(self.fetch().value, {"n": 2})
        self.assertEqual(self.computed, 2)

    def test_none_is_not_cached(self):
        async def nothing():
            return None

        result = self.loop.run_until_complete(get_or_recompute(
            self.cache, "none", nothing, 60, encode=dict, decode=dict, clock=self.clock
        ))
        self.assertIsNone(result)
        self.assertFalse(self.loop.run_until_complete(self.cache.get("none")).hit)

    def test_malformed_entry_is_replaced(self):
        self.loop.run_until_complete(self.cache.set("key", "garbage"))
        self.assertEqual(self.fetch().value, {"n": 1})


if __name__ == "__main__":
    unittest.main()

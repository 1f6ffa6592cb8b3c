import asyncio
import json
import unittest
from unittest.mock import AsyncMock, MagicMock

from redis.exceptions import ConnectionError as RedisConnectionError

from review_core.common.cache import CacheError, RedisCacheBackend
from review_core.common.exceptions import DegradedDependencyError
from review_core.common.redis import check_redis


class TestRedisCacheBackend(unittest.TestCase):
    """Test the RedisCacheBackend against a mocked client."""

    def setUp(self):
        self.redis_client = MagicMock()
        for method in ("get", "set", "delete", "exists", "expire", "persist", "sadd", "srem",
                       "smembers", "rpush", "lrem", "lrange", "info", "aclose"):
            setattr(self.redis_client, method, AsyncMock())
        self.cache = RedisCacheBackend(self.redis_client, key_prefix="test:")
        self.loop = asyncio.new_event_loop()

    def tearDown(self):
        self.loop.close()

    def run_async(self, coro):
        return self.loop.run_until_complete(coro)

    def test_get_hit(self):
        self.redis_client.get.return_value = json.dumps({"a": 1}).encode("utf-8")
        result = self.run_async(self.cache.get("key"))
        self.assertTrue(result.hit)
        self.assertEqual(result.value, {"a": 1})
        self.redis_client.get.assert_awaited_once_with("test:key")

    def test_get_miss(self):
        self.redis_client.get.return_value = None
        result = self.run_async(self.cache.get("key"))
        self.assertFalse(result.hit)
        self.assertFalse(result.degraded)

    def test_get_undecodable_value_is_a_miss(self):
        self.redis_client.get.return_value = b"not json"
        result = self.run_async(self.cache.get("key"))
        self.assertFalse(result.hit)
        self.assertFalse(result.degraded)

    def test_get_connection_error_is_degraded(self):
        self.redis_client.get.side_effect = RedisConnectionError("down")
        result = self.run_async(self.cache.get("key"))
        self.assertFalse(result.success)
        self.assertTrue(result.degraded)
        self.assertEqual(self.run_async(self.cache.get_stats())["errors"], 1)

    def test_set_serializes_with_ttl(self):
        result = self.run_async(self.cache.set("key", {"a": 1}, ttl=30))
        self.assertTrue(result.success)
        self.redis_client.set.assert_awaited_once_with("test:key", json.dumps({"a": 1}), ex=30)

    def test_set_without_ttl(self):
        self.run_async(self.cache.set("key", "v"))
        self.redis_client.set.assert_awaited_once_with("test:key", json.dumps("v"), ex=None)

    def test_set_unserializable_value(self):
        result = self.run_async(self.cache.set("key", object()))
        self.assertFalse(result.success)
        self.assertFalse(result.degraded)
        self.redis_client.set.assert_not_awaited()

    def test_set_connection_error_is_degraded(self):
        self.redis_client.set.side_effect = RedisConnectionError("down")
        result = self.run_async(self.cache.set("key", "v"))
        self.assertTrue(result.degraded)

    def test_add_uses_nx(self):
        self.redis_client.set.return_value = True
        self.assertTrue(self.run_async(self.cache.add("lock", "v", ttl=5)))
        self.redis_client.set.assert_awaited_once_with("test:lock", json.dumps("v"), ex=5, nx=True)

        self.redis_client.set.return_value = None
        self.assertFalse(self.run_async(self.cache.add("lock", "v", ttl=5)))

    def test_primitives_raise_cache_error(self):
        self.redis_client.sadd.side_effect = RedisConnectionError("down")
        self.redis_client.lrange.side_effect = RedisConnectionError("down")
        self.redis_client.exists.side_effect = RedisConnectionError("down")

        with self.assertRaises(CacheError):
            self.run_async(self.cache.sadd("s", "x"))
        with self.assertRaises(CacheError):
            self.run_async(self.cache.lrange("q"))
        with self.assertRaises(CacheError):
            self.run_async(self.cache.has("k"))

    def test_unreachable_redis_is_reported_as_degraded(self):
        self.redis_client.rpush.side_effect = RedisConnectionError("down")

        with self.assertRaises(DegradedDependencyError) as ctx:
            self.run_async(self.cache.rpush("q", "a"))
        self.assertEqual(ctx.exception.dependency, "redis")
        self.assertIsInstance(ctx.exception.original_exception, RedisConnectionError)

    def test_expire_zero_persists(self):
        self.redis_client.persist.return_value = 1
        self.assertTrue(self.run_async(self.cache.expire("key", 0)))
        self.redis_client.persist.assert_awaited_once_with("test:key")
        self.redis_client.expire.assert_not_awaited()

    def test_members_are_decoded(self):
        self.redis_client.smembers.return_value = {b"b", b"a"}
        self.assertEqual(self.run_async(self.cache.smembers("s")), ["a", "b"])

        self.redis_client.lrange.return_value = [b"x", b"y"]
        self.assertEqual(self.run_async(self.cache.lrange("q")), ["x", "y"])
        self.redis_client.lrange.assert_awaited_once_with("test:q", 0, -1)

    def test_lrem_removes_all_occurrences(self):
        self.redis_client.lrem.return_value = 2
        self.assertEqual(self.run_async(self.cache.lrem("q", "x")), 2)
        self.redis_client.lrem.assert_awaited_once_with("test:q", 0, "x")

    def test_close(self):
        self.run_async(self.cache.close())
        self.redis_client.aclose.assert_awaited_once()


class TestCheckRedis(unittest.TestCase):
    """Test the Redis health check."""

    def setUp(self):
        self.loop = asyncio.new_event_loop()

    def tearDown(self):
        self.loop.close()

    def test_ping_answered(self):
        client = MagicMock()
        client.ping = AsyncMock(return_value=True)
        self.assertTrue(self.loop.run_until_complete(check_redis(client)))

    def test_ping_failed(self):
        client = MagicMock()
        client.ping = AsyncMock(side_effect=RedisConnectionError("refused"))
        self.assertFalse(self.loop.run_until_complete(check_redis(client)))


if __name__ == "__main__":
    unittest.main()

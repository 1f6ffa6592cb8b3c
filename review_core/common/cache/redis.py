"""
Redis Cache Backend Module

This module implements the cache backend interface on Redis, for deployments
where several scheduler processes share one fast tier.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Union

from redis.asyncio import Redis
from redis.exceptions import RedisError

from review_core.common.exceptions import DegradedDependencyError

from .base import CacheBackend, CacheResult

logger = logging.getLogger(__name__)


def _text(value: Union[str, bytes, None]) -> Optional[str]:
    if isinstance(value, bytes):
        return value.decode('utf-8')
    return value


class RedisCacheBackend(CacheBackend):
    """
    Redis cache backend implementation.

    Values are stored as JSON strings under ``<key_prefix><key>``. Sets and
    lists map onto native Redis sets and lists. ``add`` uses ``SET NX EX``,
    so concurrent processes contend for a key atomically.

    ``get``/``set`` report Redis failures in the ``CacheResult``; every other
    primitive raises ``DegradedDependencyError`` (a ``CacheError``).
    """

    def __init__(self, redis_client: Redis, key_prefix: str = "review:", name: str = "redis"):
        """
        Initialize the Redis cache backend.

        Args:
            redis_client: asyncio Redis client
            key_prefix: Prefix for all Redis keys
            name: Name for this cache backend
        """
        self._redis = redis_client
        self._key_prefix = key_prefix
        self._name = name
        self._hits = 0
        self._misses = 0
        self._errors = 0

    @property
    def name(self) -> str:
        return self._name

    def _build_key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    def _failure(self, operation: str, error: Exception) -> DegradedDependencyError:
        self._errors += 1
        logger.error(f"Redis error in {operation}: {error}")
        return DegradedDependencyError(self.name, f"{operation} failed", error)

    async def get(self, key: str) -> CacheResult:
        try:
            data = await self._redis.get(self._build_key(key))
        except RedisError as e:
            self._failure("get", e)
            return CacheResult(success=False, source=self.name, error=str(e), degraded=True)

        if data is None:
            self._misses += 1
            return CacheResult(success=False, hit=False, source=self.name, error="Key not found")

        try:
            value = json.loads(_text(data))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.warning(f"Discarding undecodable value at {key}: {e}")
            self._misses += 1
            return CacheResult(success=False, source=self.name, error="Deserialization failed")

        self._hits += 1
        return CacheResult(success=True, value=value, hit=True, source=self.name)

    async def set(self, key: str, value: Any, ttl: int = 0) -> CacheResult:
        try:
            payload = json.dumps(value)
        except (TypeError, ValueError) as e:
            return CacheResult(success=False, source=self.name, error=f"Serialization failed: {e}")

        try:
            await self._redis.set(self._build_key(key), payload, ex=ttl or None)
        except RedisError as e:
            self._failure("set", e)
            return CacheResult(success=False, source=self.name, error=str(e), degraded=True)

        return CacheResult(success=True, value=value, ttl=ttl or None, source=self.name)

    async def add(self, key: str, value: Any, ttl: int = 0) -> bool:
        try:
            stored = await self._redis.set(self._build_key(key), json.dumps(value), ex=ttl or None, nx=True)
        except RedisError as e:
            raise self._failure("add", e)
        return bool(stored)

    async def delete(self, key: str) -> bool:
        try:
            return bool(await self._redis.delete(self._build_key(key)))
        except RedisError as e:
            raise self._failure("delete", e)

    async def has(self, key: str) -> bool:
        try:
            return bool(await self._redis.exists(self._build_key(key)))
        except RedisError as e:
            raise self._failure("has", e)

    async def expire(self, key: str, ttl: int) -> bool:
        try:
            if not ttl:
                return bool(await self._redis.persist(self._build_key(key)))
            return bool(await self._redis.expire(self._build_key(key), ttl))
        except RedisError as e:
            raise self._failure("expire", e)

    async def clear(self) -> bool:
        """Delete every key under this backend's prefix."""
        try:
            keys = [k async for k in self._redis.scan_iter(match=f"{self._key_prefix}*", count=500)]
            if keys:
                await self._redis.delete(*keys)
            return True
        except RedisError as e:
            raise self._failure("clear", e)

    async def sadd(self, key: str, *members: str) -> int:
        try:
            return int(await self._redis.sadd(self._build_key(key), *members))
        except RedisError as e:
            raise self._failure("sadd", e)

    async def srem(self, key: str, *members: str) -> int:
        try:
            return int(await self._redis.srem(self._build_key(key), *members))
        except RedisError as e:
            raise self._failure("srem", e)

    async def smembers(self, key: str) -> List[str]:
        try:
            members = await self._redis.smembers(self._build_key(key))
        except RedisError as e:
            raise self._failure("smembers", e)
        return sorted(_text(m) for m in members)

    async def rpush(self, key: str, *values: str) -> int:
        try:
            return int(await self._redis.rpush(self._build_key(key), *values))
        except RedisError as e:
            raise self._failure("rpush", e)

    async def lrem(self, key: str, value: str) -> int:
        try:
            return int(await self._redis.lrem(self._build_key(key), 0, value))
        except RedisError as e:
            raise self._failure("lrem", e)

    async def lrange(self, key: str, start: int = 0, end: int = -1) -> List[str]:
        try:
            values = await self._redis.lrange(self._build_key(key), start, end)
        except RedisError as e:
            raise self._failure("lrange", e)
        return [_text(v) for v in values]

    async def get_stats(self) -> Dict[str, Any]:
        total = self._hits + self._misses
        stats = {
            'backend': self.name,
            'hits': self._hits,
            'misses': self._misses,
            'hit_rate': self._hits / total if total > 0 else 0,
            'errors': self._errors
        }
        try:
            info = await self._redis.info(section="memory")
            stats['used_memory'] = info.get('used_memory')
        except RedisError as e:
            logger.debug(f"Redis INFO unavailable: {e}")
        return stats

    async def close(self) -> None:
        await self._redis.aclose()

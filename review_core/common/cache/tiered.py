"""
Tiered Cache Module

This module provides a four-layer cache in front of the durable store.
Layers represent access-frequency tiers with increasing TTLs; reads check
the layers in order and promote hits into the fastest one. Keys can be
indexed under tags for bulk invalidation.
"""

import enum
import logging
from typing import Any, Dict, Iterable, Mapping, Optional

from review_core.common.config import CacheSettings

from .base import CacheBackend, CacheError, CacheResult
from .key_builder import CacheKeys

logger = logging.getLogger(__name__)


class CacheLayer(enum.IntEnum):
    """Cache tiers, fastest first."""
    L1 = 1
    L2 = 2
    L3 = 3
    L4 = 4

    @property
    def prefix(self) -> str:
        return f"l{self.value}:"


DEFAULT_LAYER_TTLS: Dict[CacheLayer, int] = {
    CacheLayer.L1: 300,       # 5 minutes
    CacheLayer.L2: 1800,      # 30 minutes
    CacheLayer.L3: 7200,      # 2 hours
    CacheLayer.L4: 86400,     # 1 day
}


class TieredCache:
    """
    Hierarchical cache over one or more backends.

    Every layer is a key namespace (``l1:`` .. ``l4:``). By default all
    layers live on one backend; ``layer_backends`` places individual layers
    elsewhere (for example L1 in process, L2-L4 in Redis).

    The cache is a pure latency optimization. Backend failures are logged,
    counted and reported as misses; nothing here raises to callers.
    """

    def __init__(
        self,
        backend: CacheBackend,
        layer_ttls: Optional[Mapping[CacheLayer, int]] = None,
        layer_backends: Optional[Mapping[CacheLayer, CacheBackend]] = None,
        tag_index_grace: int = 3600,
        name: str = "tiered"
    ):
        """
        Initialize the tiered cache.

        Args:
            backend: Backend used for every layer without an override
            layer_ttls: TTL per layer in seconds
            layer_backends: Optional per-layer backend overrides
            tag_index_grace: Extra seconds a tag index outlives its entries
            name: Name used in results and logs
        """
        self._name = name
        self._ttls = dict(DEFAULT_LAYER_TTLS)
        self._ttls.update(layer_ttls or {})
        self._backends = {layer: backend for layer in CacheLayer}
        self._backends.update(layer_backends or {})
        self._tag_backend = backend
        self._tag_index_grace = tag_index_grace
        self._stats: Dict[str, Any] = {
            "hits": {layer.name: 0 for layer in CacheLayer},
            "misses": 0,
            "promotions": 0,
            "sets": 0,
            "invalidations": 0,
            "errors": 0
        }

    @classmethod
    def from_settings(
        cls,
        backend: CacheBackend,
        settings: CacheSettings,
        layer_backends: Optional[Mapping[CacheLayer, CacheBackend]] = None
    ) -> "TieredCache":
        """Build a tiered cache with TTLs taken from configuration."""
        return cls(
            backend,
            layer_ttls={
                CacheLayer.L1: settings.l1_ttl,
                CacheLayer.L2: settings.l2_ttl,
                CacheLayer.L3: settings.l3_ttl,
                CacheLayer.L4: settings.l4_ttl,
            },
            layer_backends=layer_backends,
            tag_index_grace=settings.tag_index_grace
        )

    @property
    def name(self) -> str:
        return self._name

    def ttl_for(self, layer: CacheLayer) -> int:
        """TTL in seconds used for writes into ``layer``."""
        return self._ttls[layer]

    def _record_error(self, operation: str, key: str, error: Exception) -> None:
        self._stats["errors"] += 1
        logger.warning(f"Tiered cache {operation} failed for {key}: {error}")

    async def get(self, key: str) -> CacheResult:
        """
        Look a key up in L1, L2, L3 then L4.

        A hit below L1 is copied into L1 before returning.

        Args:
            key: Logical cache key

        Returns:
            CacheResult; ``source`` names the layer that served the value
        """
        for layer in CacheLayer:
            result = await self._backends[layer].get(layer.prefix + key)
            if result.error and result.error != "Key not found":
                self._record_error("get", key, Exception(result.error))
            if not result.hit:
                continue

            self._stats["hits"][layer.name] += 1
            if layer is not CacheLayer.L1:
                await self._promote(key, result.value)
            return CacheResult(
                success=True,
                value=result.value,
                hit=True,
                ttl=result.ttl,
                source=layer.name
            )

        self._stats["misses"] += 1
        return CacheResult(success=False, hit=False, source=self.name, error="Key not found in any layer")

    async def _promote(self, key: str, value: Any) -> None:
        result = await self._backends[CacheLayer.L1].set(
            CacheLayer.L1.prefix + key, value, self._ttls[CacheLayer.L1]
        )
        if result.success:
            self._stats["promotions"] += 1
        else:
            self._record_error("promote", key, Exception(result.error))

    async def set(
        self,
        key: str,
        value: Any,
        layer: CacheLayer = CacheLayer.L1,
        ttl: Optional[int] = None
    ) -> bool:
        """
        Write a value into exactly one layer.

        Args:
            key: Logical cache key
            value: JSON-compatible value
            layer: Target layer
            ttl: Override of the layer TTL

        Returns:
            True if the write succeeded
        """
        result = await self._backends[layer].set(layer.prefix + key, value, ttl or self._ttls[layer])
        if not result.success:
            self._record_error("set", key, Exception(result.error))
            return False
        self._stats["sets"] += 1
        return True

    async def set_with_tags(
        self,
        key: str,
        value: Any,
        ttl: Optional[int],
        tags: Iterable[str],
        layer: CacheLayer = CacheLayer.L1
    ) -> bool:
        """
        Write a value and index its key under each tag.

        The tag index outlives the entry by ``tag_index_grace`` seconds so
        that invalidation still reaches entries promoted into other layers.
        """
        if not await self.set(key, value, layer, ttl):
            return False

        index_ttl = (ttl or self._ttls[layer]) + self._tag_index_grace
        for tag in tags:
            index_key = CacheKeys.tag_index(tag)
            try:
                await self._tag_backend.sadd(index_key, key)
                await self._tag_backend.expire(index_key, index_ttl)
            except CacheError as e:
                self._record_error("tag", key, e)
        return True

    async def delete(self, key: str) -> int:
        """Remove a key from every layer. Returns the number of layers that held it."""
        removed = 0
        for layer in CacheLayer:
            try:
                removed += int(await self._backends[layer].delete(layer.prefix + key))
            except CacheError as e:
                self._record_error("delete", key, e)
        return removed

    async def invalidate_by_tags(self, tags: Iterable[str]) -> int:
        """
        Expire every entry indexed under any of the tags.

        Args:
            tags: Tags to invalidate

        Returns:
            Number of distinct keys invalidated
        """
        tags = list(tags)
        invalidated = set()
        for tag in tags:
            index_key = CacheKeys.tag_index(tag)
            try:
                keys = await self._tag_backend.smembers(index_key)
            except CacheError as e:
                self._record_error("invalidate", index_key, e)
                continue

            for key in keys:
                if key not in invalidated:
                    await self.delete(key)
                    invalidated.add(key)

            try:
                await self._tag_backend.delete(index_key)
            except CacheError as e:
                self._record_error("invalidate", index_key, e)

        self._stats["invalidations"] += len(invalidated)
        if invalidated:
            logger.debug(f"Invalidated {len(invalidated)} cache entries for tags {tags}")
        return len(invalidated)

    async def get_stats(self) -> Dict[str, Any]:
        """Hit, miss, promotion and error counts plus backend statistics."""
        total_hits = sum(self._stats["hits"].values())
        total = total_hits + self._stats["misses"]
        backends = {}
        for backend in {id(b): b for b in self._backends.values()}.values():
            backends[backend.name] = await backend.get_stats()
        return {
            "name": self.name,
            "layer_hits": dict(self._stats["hits"]),
            "hits": total_hits,
            "misses": self._stats["misses"],
            "hit_rate": total_hits / total if total else 0,
            "promotions": self._stats["promotions"],
            "sets": self._stats["sets"],
            "invalidations": self._stats["invalidations"],
            "errors": self._stats["errors"],
            "backends": backends
        }

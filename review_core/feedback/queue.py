"""
Adjustment Queue Module

This module implements the priority queue of items waiting for difficulty
recalibration. Each urgency tier is a FIFO list of item ids; the entry
record of an item lives beside its tier and a consumer holds a per-item
lease while working on it. Expired leases are found through an index set
rather than by scanning keys.
"""

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from review_core.common.cache import CacheBackend, CacheError, CacheKeys
from review_core.common.config import QueueSettings
from review_core.common.exceptions import DegradedDependencyError
from review_core.domain.model import Urgency

logger = logging.getLogger(__name__)

PENDING = "pending"
PROCESSING = "processing"


@dataclass
class AdjustmentQueueEntry:
    """
    An item waiting in (or leased from) one urgency tier.

    Attributes:
        item_id: Item to recalibrate
        urgency: Tier the entry sits in
        added_at: Epoch seconds the item first entered the queue
        attempts: Failed processing attempts so far
        state: ``pending`` or ``processing``
        lease_token: Token of the current lease, while processing
    """
    item_id: str
    urgency: Urgency
    added_at: float
    attempts: int = 0
    state: str = PENDING
    lease_token: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "urgency": self.urgency.value,
            "added_at": self.added_at,
            "attempts": self.attempts,
            "state": self.state,
            "lease_token": self.lease_token
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AdjustmentQueueEntry":
        return cls(
            item_id=data["item_id"],
            urgency=Urgency(data["urgency"]),
            added_at=float(data["added_at"]),
            attempts=int(data.get("attempts", 0)),
            state=data.get("state", PENDING),
            lease_token=data.get("lease_token")
        )


@dataclass(frozen=True)
class Lease:
    """Exclusive right of one consumer to process one item until ``expires_at``."""
    item_id: str
    urgency: Urgency
    token: str
    consumer_id: str
    acquired_at: float
    expires_at: float
    attempts: int = 0


class AdjustmentQueue:
    """
    Three-tier queue of items flagged for recalibration.

    Enqueueing is idempotent per item and only ever raises an item's tier.
    Consumers drain HIGH before MEDIUM before LOW and must ``complete`` or
    ``fail`` each lease; a lease that times out is reclaimed and counts as a
    failed attempt. After ``max_attempts`` failures the item is dropped.
    """

    def __init__(
        self,
        backend: CacheBackend,
        settings: Optional[QueueSettings] = None,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize the queue.

        Args:
            backend: Cache backend holding lists, entries and leases
            settings: Lease timeout, retry bound and entry TTL
            clock: Source of the current epoch time
        """
        self._backend = backend
        self._settings = settings or QueueSettings()
        self._clock = clock
        self._stats = {
            "enqueued": 0, "promoted": 0, "restored": 0, "completed": 0,
            "retried": 0, "dropped": 0, "reclaimed": 0
        }

    @property
    def max_attempts(self) -> int:
        return self._settings.max_attempts

    async def _load(self, urgency: Urgency, item_id: str) -> Optional[AdjustmentQueueEntry]:
        result = await self._backend.get(CacheKeys.queue_entry(urgency, item_id))
        if result.degraded:
            raise DegradedDependencyError(self._backend.name, result.error or "queue entry lookup failed")
        if not result.hit:
            return None
        try:
            return AdjustmentQueueEntry.from_dict(result.value)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Discarding malformed queue entry for {item_id}: {e}")
            return None

    async def _save(self, entry: AdjustmentQueueEntry) -> None:
        result = await self._backend.set(
            CacheKeys.queue_entry(entry.urgency, entry.item_id),
            entry.to_dict(),
            self._settings.entry_ttl
        )
        if not result.success:
            raise DegradedDependencyError(self._backend.name, result.error or "queue entry write failed")

    async def _find(self, item_id: str) -> Optional[AdjustmentQueueEntry]:
        for urgency in Urgency.by_priority():
            entry = await self._load(urgency, item_id)
            if entry is not None:
                return entry
        return None

    async def _listed(self, urgency: Urgency, item_id: str) -> bool:
        return item_id in await self._backend.lrange(CacheKeys.queue_list(urgency))

    async def _push(self, urgency: Urgency, item_id: str) -> None:
        # An id appears at most once per tier list
        list_key = CacheKeys.queue_list(urgency)
        await self._backend.lrem(list_key, item_id)
        await self._backend.rpush(list_key, item_id)

    async def enqueue(self, item_id: str, urgency: Urgency) -> bool:
        """
        Put an item on the queue at ``urgency``.

        An item already pending at the same or a higher tier is left alone.
        A pending item at a lower tier moves up and keeps its attempt count.
        An item under lease is not re-enqueued. An entry whose lease lapsed
        without the item going back to its tier, or whose list slot was
        lost, is restored at its tier.

        Args:
            item_id: Item to recalibrate
            urgency: Requested tier

        Returns:
            True if the queue changed
        """
        urgency = Urgency.parse(urgency)
        try:
            existing = await self._find(item_id)
            if existing is not None:
                if await self._backend.has(CacheKeys.queue_lease(item_id)):
                    return False

                if existing.state == PROCESSING:
                    await self._backend.srem(CacheKeys.queue_processing(), item_id)
                    existing.state = PENDING
                    existing.lease_token = None
                elif existing.urgency.rank >= urgency.rank and await self._listed(existing.urgency, item_id):
                    return False

                if existing.urgency.rank >= urgency.rank:
                    await self._save(existing)
                    await self._push(existing.urgency, item_id)
                    self._stats["restored"] += 1
                    logger.warning(f"Restored stranded {item_id} to the {existing.urgency.value} queue")
                    return True

                await self._backend.lrem(CacheKeys.queue_list(existing.urgency), item_id)
                await self._backend.delete(CacheKeys.queue_entry(existing.urgency, item_id))

            entry = AdjustmentQueueEntry(
                item_id=item_id,
                urgency=urgency,
                added_at=existing.added_at if existing else self._clock(),
                attempts=existing.attempts if existing else 0
            )
            if not await self._backend.add(
                CacheKeys.queue_entry(urgency, item_id), entry.to_dict(), self._settings.entry_ttl
            ):
                # A concurrent producer queued the item first
                return False
            await self._push(urgency, item_id)
        except CacheError as e:
            logger.error(f"Failed to enqueue {item_id} at {urgency.value}: {e}")
            return False

        if existing is not None:
            self._stats["promoted"] += 1
            logger.info(f"Promoted {item_id} from {existing.urgency.value} to {urgency.value}")
        else:
            self._stats["enqueued"] += 1
            logger.info(f"Queued {item_id} for recalibration at {urgency.value}")
        return True

    async def dequeue_next(self, consumer_id: str) -> Optional[Lease]:
        """
        Lease the oldest item of the most urgent non-empty tier.

        Expired leases are reclaimed first so their items compete again.

        Args:
            consumer_id: Identifier of the worker taking the lease

        Returns:
            A lease, or None when the queue is empty or unreachable
        """
        try:
            await self._reclaim_expired()
            for urgency in Urgency.by_priority():
                lease = await self._lease_from(urgency, consumer_id)
                if lease is not None:
                    return lease
        except CacheError as e:
            logger.error(f"Failed to dequeue for {consumer_id}: {e}")
        return None

    async def _lease_from(self, urgency: Urgency, consumer_id: str) -> Optional[Lease]:
        list_key = CacheKeys.queue_list(urgency)
        candidates = await self._backend.lrange(list_key, 0, self._settings.scan_window - 1)
        for item_id in dict.fromkeys(candidates):
            entry = await self._load(urgency, item_id)
            if entry is None:
                # Stale list element; the entry expired or moved tiers
                await self._backend.lrem(list_key, item_id)
                continue
            if entry.state == PROCESSING:
                continue

            now = self._clock()
            token = uuid.uuid4().hex
            if not await self._backend.add(
                CacheKeys.queue_lease(item_id),
                {"token": token, "consumer_id": consumer_id},
                self._settings.lease_seconds
            ):
                logger.debug(f"Lease for {item_id} already held; skipping")
                continue

            # Lease, then index, then leave the list: a claim interrupted at
            # any step is either still listed or found by the reclaim pass
            await self._backend.sadd(CacheKeys.queue_processing(), item_id)
            await self._backend.lrem(list_key, item_id)
            entry.state = PROCESSING
            entry.lease_token = token
            await self._save(entry)

            logger.debug(f"{consumer_id} leased {item_id} from {urgency.value}")
            return Lease(
                item_id=item_id,
                urgency=urgency,
                token=token,
                consumer_id=consumer_id,
                acquired_at=now,
                expires_at=now + self._settings.lease_seconds,
                attempts=entry.attempts
            )
        return None

    async def _holds(self, lease: Lease) -> bool:
        result = await self._backend.get(CacheKeys.queue_lease(lease.item_id))
        return result.hit and isinstance(result.value, dict) and result.value.get("token") == lease.token

    async def complete(self, lease: Lease) -> bool:
        """
        Finish a leased item and remove it from the queue.

        Returns:
            False if the lease had already expired or been reclaimed
        """
        try:
            if not await self._holds(lease):
                logger.warning(f"Lease on {lease.item_id} held by {lease.consumer_id} is no longer valid")
                return False
            await self._backend.delete(CacheKeys.queue_lease(lease.item_id))
            await self._backend.delete(CacheKeys.queue_entry(lease.urgency, lease.item_id))
            await self._backend.srem(CacheKeys.queue_processing(), lease.item_id)
        except CacheError as e:
            logger.error(f"Failed to complete {lease.item_id}: {e}")
            return False

        self._stats["completed"] += 1
        return True

    async def fail(self, lease: Lease, error: Optional[BaseException] = None) -> bool:
        """
        Give a leased item back after a failed attempt.

        The item is re-queued at the tail of its tier with one more attempt,
        or dropped once it reaches ``max_attempts``.

        Returns:
            True if the item was re-queued, False if dropped or not held
        """
        try:
            if not await self._holds(lease):
                logger.warning(f"Lease on {lease.item_id} held by {lease.consumer_id} is no longer valid")
                return False
            await self._backend.delete(CacheKeys.queue_lease(lease.item_id))
            return await self._requeue_or_drop(lease.urgency, lease.item_id, error)
        except CacheError as e:
            logger.error(f"Failed to release {lease.item_id}: {e}")
            return False

    async def reclaim_expired(self) -> int:
        """
        Return processing items whose lease timed out to their tier.

        Each reclaim counts as a failed attempt.

        Returns:
            Number of items reclaimed (re-queued or dropped)
        """
        try:
            return await self._reclaim_expired()
        except CacheError as e:
            logger.error(f"Failed to reclaim expired leases: {e}")
            return 0

    async def _reclaim_expired(self) -> int:
        reclaimed = 0
        for item_id in await self._backend.smembers(CacheKeys.queue_processing()):
            if await self._backend.has(CacheKeys.queue_lease(item_id)):
                continue
            entry = await self._find(item_id)
            if entry is None:
                await self._backend.srem(CacheKeys.queue_processing(), item_id)
                continue
            await self._requeue_or_drop(entry.urgency, item_id, TimeoutError("lease expired"))
            reclaimed += 1

        if reclaimed:
            self._stats["reclaimed"] += reclaimed
            logger.warning(f"Reclaimed {reclaimed} expired leases")
        return reclaimed

    async def _requeue_or_drop(self, urgency: Urgency, item_id: str, error: Optional[BaseException]) -> bool:
        # Only the caller that removes the item from the index handles it
        if not await self._backend.srem(CacheKeys.queue_processing(), item_id):
            return False

        entry = await self._load(urgency, item_id)
        if entry is None:
            return False

        entry.attempts += 1
        if entry.attempts >= self._settings.max_attempts:
            await self._backend.delete(CacheKeys.queue_entry(urgency, item_id))
            self._stats["dropped"] += 1
            logger.error(
                f"Dropping {item_id} from the {urgency.value} queue after {entry.attempts} attempts: {error}"
            )
            return False

        entry.state = PENDING
        entry.lease_token = None
        await self._save(entry)
        await self._push(urgency, item_id)
        self._stats["retried"] += 1
        logger.info(f"Re-queued {item_id} at {urgency.value} (attempt {entry.attempts}): {error}")
        return True

    async def get_entry(self, item_id: str) -> Optional[AdjustmentQueueEntry]:
        """Current entry of an item in any tier, or None."""
        try:
            return await self._find(item_id)
        except CacheError as e:
            logger.warning(f"Queue entry lookup failed for {item_id}: {e}")
            return None

    async def _depth(self, urgency: Urgency) -> int:
        depth = 0
        for item_id in dict.fromkeys(await self._backend.lrange(CacheKeys.queue_list(urgency))):
            entry = await self._load(urgency, item_id)
            if entry is not None and entry.state == PENDING:
                depth += 1
        return depth

    async def status(self) -> Dict[str, Any]:
        """
        Queue depth per tier plus the number of items under lease.

        Depth counts items with a live pending entry; list elements left
        behind by expired entries are not counted. When the backend is
        unreachable all counts are zero and ``degraded`` is True.
        """
        try:
            counts = {urgency.value: await self._depth(urgency) for urgency in Urgency.by_priority()}
            counts["processing"] = len(await self._backend.smembers(CacheKeys.queue_processing()))
        except CacheError as e:
            logger.warning(f"Queue status unavailable: {e}")
            return {"high": 0, "medium": 0, "low": 0, "processing": 0, "degraded": True}

        counts["degraded"] = False
        return counts

    def get_stats(self) -> Dict[str, int]:
        return dict(self._stats)


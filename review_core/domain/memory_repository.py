"""
Memory Review Store Module

This module provides an in-memory implementation of the ReviewStore
interface for development, single-process deployments and testing.
"""

import asyncio
import copy
import logging
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from review_core.common.exceptions import ConflictError

from .model import DifficultyAdjustment, ForgettingCurveProfile, ItemDifficulty, ReviewSchedule, ReviewStatus
from .repository import ReviewStore

logger = logging.getLogger(__name__)


class MemoryReviewStore(ReviewStore):
    """
    In-memory implementation of the ReviewStore.

    A pair index maps each (user, item) to its pending schedule id and is
    only changed under the store lock, which gives the same conditional
    create semantics as the unique index of the SQL store. Records are
    copied on the way in and out.
    """

    def __init__(self, items: Optional[List[ItemDifficulty]] = None):
        """
        Initialize the store.

        Args:
            items: Optional item metadata to seed the store with
        """
        self._schedules: Dict[str, ReviewSchedule] = {}
        self._pending: Dict[Tuple[str, str], str] = {}
        self._profiles: Dict[str, ForgettingCurveProfile] = {}
        self._items: Dict[str, ItemDifficulty] = {}
        self._adjustments: Dict[str, List[DifficultyAdjustment]] = {}
        self._lock = asyncio.Lock()

        for item in items or []:
            self._items[item.item_id] = copy.deepcopy(item)

    async def get_schedule(self, schedule_id: str) -> Optional[ReviewSchedule]:
        return copy.deepcopy(self._schedules.get(schedule_id))

    async def get_pending_schedule(self, user_id: str, item_id: str) -> Optional[ReviewSchedule]:
        schedule_id = self._pending.get((user_id, item_id))
        return copy.deepcopy(self._schedules[schedule_id]) if schedule_id else None

    def _insert_pending(self, schedule: ReviewSchedule) -> None:
        pair = (schedule.user_id, schedule.item_id)
        if pair in self._pending:
            raise ConflictError(
                "ReviewSchedule", self._pending[pair],
                f"pair ({schedule.user_id}, {schedule.item_id}) already has a pending schedule"
            )
        self._schedules[schedule.id] = copy.deepcopy(schedule)
        self._pending[pair] = schedule.id

    def _require_pending(self, schedule_id: str) -> ReviewSchedule:
        stored = self._schedules.get(schedule_id)
        if stored is None or not stored.is_pending:
            status = stored.status.value if stored else "missing"
            raise ConflictError("ReviewSchedule", schedule_id, f"is not pending (status: {status})")
        return stored

    async def create_schedule(self, schedule: ReviewSchedule) -> ReviewSchedule:
        async with self._lock:
            self._insert_pending(schedule)
        return copy.deepcopy(schedule)

    async def advance_schedule(self, closed: ReviewSchedule, next_schedule: ReviewSchedule) -> None:
        async with self._lock:
            self._require_pending(closed.id)
            pair = (closed.user_id, closed.item_id)

            # The successor takes over the pair slot before the old row closes
            self._schedules[next_schedule.id] = copy.deepcopy(next_schedule)
            self._pending[pair] = next_schedule.id
            self._schedules[closed.id] = copy.deepcopy(closed)

    async def close_schedule(self, closed: ReviewSchedule) -> ReviewSchedule:
        async with self._lock:
            self._require_pending(closed.id)
            self._schedules[closed.id] = copy.deepcopy(closed)
            self._pending.pop((closed.user_id, closed.item_id), None)
        return copy.deepcopy(closed)

    async def list_pending_schedules(
        self,
        user_id: str,
        due_before: Optional[datetime] = None,
        due_after: Optional[datetime] = None
    ) -> List[ReviewSchedule]:
        pending = [
            self._schedules[schedule_id]
            for (owner, _), schedule_id in self._pending.items()
            if owner == user_id
        ]
        if due_before is not None:
            pending = [s for s in pending if s.scheduled_at <= due_before]
        if due_after is not None:
            pending = [s for s in pending if s.scheduled_at >= due_after]
        return [copy.deepcopy(s) for s in sorted(pending, key=lambda s: s.scheduled_at)]

    async def mark_overdue(self, cutoff: datetime) -> int:
        flagged = 0
        async with self._lock:
            for schedule_id in self._pending.values():
                schedule = self._schedules[schedule_id]
                if schedule.status is ReviewStatus.SCHEDULED and schedule.scheduled_at < cutoff:
                    schedule.status = ReviewStatus.OVERDUE
                    flagged += 1
        return flagged

    async def list_recent_users(self, item_id: str, since: datetime) -> List[str]:
        users = {
            s.user_id for s in self._schedules.values()
            if s.item_id == item_id and max(s.created_at, s.completed_at or s.created_at) >= since
        }
        return sorted(users)

    async def get_profile(self, user_id: str) -> Optional[ForgettingCurveProfile]:
        return copy.deepcopy(self._profiles.get(user_id))

    async def save_profile(self, profile: ForgettingCurveProfile) -> ForgettingCurveProfile:
        self._profiles[profile.user_id] = copy.deepcopy(profile)
        return profile

    async def get_item(self, item_id: str) -> Optional[ItemDifficulty]:
        return copy.deepcopy(self._items.get(item_id))

    async def list_items(
        self,
        subject: Optional[str] = None,
        min_difficulty: Optional[float] = None,
        max_difficulty: Optional[float] = None,
        limit: Optional[int] = None
    ) -> List[ItemDifficulty]:
        items = [
            item for item in sorted(self._items.values(), key=lambda i: i.item_id)
            if (subject is None or item.subject == subject)
            and (min_difficulty is None or item.baseline_difficulty >= min_difficulty)
            and (max_difficulty is None or item.baseline_difficulty <= max_difficulty)
        ]
        if limit is not None:
            items = items[:limit]
        return [copy.deepcopy(i) for i in items]

    async def save_item(self, item: ItemDifficulty) -> ItemDifficulty:
        self._items[item.item_id] = copy.deepcopy(item)
        return item

    async def record_adjustment(self, adjustment: DifficultyAdjustment) -> DifficultyAdjustment:
        self._adjustments.setdefault(adjustment.item_id, []).append(copy.deepcopy(adjustment))
        logger.debug(
            f"Recorded difficulty adjustment for {adjustment.item_id}: "
            f"{adjustment.previous_difficulty} -> {adjustment.new_difficulty}"
        )
        return adjustment

    async def list_adjustments(self, item_id: str) -> List[DifficultyAdjustment]:
        return [copy.deepcopy(a) for a in self._adjustments.get(item_id, [])]

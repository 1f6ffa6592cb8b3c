"""
Review Store Module

This module defines the contract of the durable store, the system of record
for review schedules, learner profiles and item difficulty metadata.
"""

import abc
from datetime import datetime
from typing import List, Optional

from .model import DifficultyAdjustment, ForgettingCurveProfile, ItemDifficulty, ReviewSchedule


class ReviewStore(abc.ABC):
    """
    Abstract base class for durable review stores.

    Lookups return None for absent records. Writes that would break the
    one-pending-schedule-per-pair rule raise ``ConflictError``; other write
    failures raise ``StoreError``.
    """

    # Schedules

    @abc.abstractmethod
    async def get_schedule(self, schedule_id: str) -> Optional[ReviewSchedule]:
        """Get a schedule by id."""

    @abc.abstractmethod
    async def get_pending_schedule(self, user_id: str, item_id: str) -> Optional[ReviewSchedule]:
        """Get the pending (SCHEDULED or OVERDUE) schedule of a pair, if any."""

    @abc.abstractmethod
    async def create_schedule(self, schedule: ReviewSchedule) -> ReviewSchedule:
        """
        Insert a pending schedule.

        Args:
            schedule: The new schedule

        Returns:
            The stored schedule

        Raises:
            ConflictError: If the pair already has a pending schedule
        """

    @abc.abstractmethod
    async def advance_schedule(self, closed: ReviewSchedule, next_schedule: ReviewSchedule) -> None:
        """
        Replace a pending schedule by its successor in one atomic step.

        The successor row is written before the previous row is closed, and
        both writes commit or neither does.

        Args:
            closed: The previous schedule carrying its final status and outcome
            next_schedule: The new pending schedule for the same pair

        Raises:
            ConflictError: If the previous schedule is no longer pending
            StoreError: If the write fails
        """

    @abc.abstractmethod
    async def close_schedule(self, closed: ReviewSchedule) -> ReviewSchedule:
        """
        Close a pending schedule without a successor (e.g. when skipped).

        Raises:
            ConflictError: If the schedule is no longer pending
        """

    @abc.abstractmethod
    async def list_pending_schedules(
        self,
        user_id: str,
        due_before: Optional[datetime] = None,
        due_after: Optional[datetime] = None
    ) -> List[ReviewSchedule]:
        """List a learner's pending schedules, optionally only those due within ``[due_after, due_before]``."""

    @abc.abstractmethod
    async def mark_overdue(self, cutoff: datetime) -> int:
        """
        Flag SCHEDULED rows due strictly before ``cutoff`` as OVERDUE.

        Returns:
            Number of rows flagged
        """

    @abc.abstractmethod
    async def list_recent_users(self, item_id: str, since: datetime) -> List[str]:
        """Users with a schedule for ``item_id`` created or completed since ``since``."""

    # Profiles

    @abc.abstractmethod
    async def get_profile(self, user_id: str) -> Optional[ForgettingCurveProfile]:
        """Get a learner profile."""

    @abc.abstractmethod
    async def save_profile(self, profile: ForgettingCurveProfile) -> ForgettingCurveProfile:
        """Create or replace a learner profile."""

    # Items

    @abc.abstractmethod
    async def get_item(self, item_id: str) -> Optional[ItemDifficulty]:
        """Get item difficulty metadata."""

    @abc.abstractmethod
    async def list_items(
        self,
        subject: Optional[str] = None,
        min_difficulty: Optional[float] = None,
        max_difficulty: Optional[float] = None,
        limit: Optional[int] = None
    ) -> List[ItemDifficulty]:
        """Items filtered by subject and an inclusive baseline difficulty band, ordered by item id."""

    @abc.abstractmethod
    async def save_item(self, item: ItemDifficulty) -> ItemDifficulty:
        """Create or replace item difficulty metadata."""

    @abc.abstractmethod
    async def record_adjustment(self, adjustment: DifficultyAdjustment) -> DifficultyAdjustment:
        """Append a recalibration to an item's history."""

    @abc.abstractmethod
    async def list_adjustments(self, item_id: str) -> List[DifficultyAdjustment]:
        """Recalibration history of an item, oldest first."""

    async def close(self) -> None:
        """Release store resources."""

"""
SQL Review Store Module

This module implements the ReviewStore interface on SQLAlchemy's async ORM.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from review_core.common.exceptions import ConflictError, StoreError
from review_core.database.models import (
    DifficultyAdjustmentRecord,
    ForgettingCurveProfileRecord,
    ItemDifficultyRecord,
    ReviewScheduleRecord,
)

from .model import (
    DifficultyAdjustment,
    ForgettingCurveProfile,
    ItemDifficulty,
    ReviewSchedule,
    ReviewStatus,
    as_utc,
)
from .repository import ReviewStore

logger = logging.getLogger(__name__)

_PENDING = [status.value for status in ReviewStatus.pending()]


def _schedule_values(schedule: ReviewSchedule) -> dict:
    return {
        "id": schedule.id,
        "user_id": schedule.user_id,
        "item_id": schedule.item_id,
        "current_level": schedule.current_level,
        "status": schedule.status.value,
        "scheduled_at": as_utc(schedule.scheduled_at),
        "next_scheduled_at": as_utc(schedule.next_scheduled_at),
        "is_success": schedule.is_success,
        "response_time": schedule.response_time,
        "confidence_level": schedule.confidence_level,
        "difficulty_score_at_review": schedule.difficulty_score_at_review,
        "retention_rate": schedule.retention_rate,
        "previous_schedule_id": schedule.previous_schedule_id,
        "created_at": as_utc(schedule.created_at),
        "completed_at": as_utc(schedule.completed_at),
    }


def _to_schedule(record: ReviewScheduleRecord) -> ReviewSchedule:
    return ReviewSchedule(
        id=record.id,
        user_id=record.user_id,
        item_id=record.item_id,
        current_level=record.current_level,
        status=ReviewStatus(record.status),
        scheduled_at=as_utc(record.scheduled_at),
        next_scheduled_at=as_utc(record.next_scheduled_at),
        is_success=record.is_success,
        response_time=record.response_time,
        confidence_level=record.confidence_level,
        difficulty_score_at_review=record.difficulty_score_at_review,
        retention_rate=record.retention_rate,
        previous_schedule_id=record.previous_schedule_id,
        created_at=as_utc(record.created_at),
        completed_at=as_utc(record.completed_at),
    )


def _to_profile(record: ForgettingCurveProfileRecord) -> ForgettingCurveProfile:
    return ForgettingCurveProfile(
        user_id=record.user_id,
        retention_factor=record.retention_factor,
        initial_level=record.initial_level,
        difficulty_adjustments=dict(record.difficulty_adjustments or {}),
        success_count=record.success_count,
        failure_count=record.failure_count,
        success_rate=record.success_rate,
        ideal_difficulty=record.ideal_difficulty,
        min_comfortable=record.min_comfortable,
        max_comfortable=record.max_comfortable,
        updated_at=as_utc(record.updated_at),
    )


def _to_item(record: ItemDifficultyRecord) -> ItemDifficulty:
    return ItemDifficulty(
        item_id=record.item_id,
        baseline_difficulty=record.baseline_difficulty,
        subject=record.subject,
        updated_at=as_utc(record.updated_at),
    )


class SQLReviewStore(ReviewStore):
    """
    Review store backed by a relational database.

    One pending schedule per pair is enforced by a partial unique index;
    a violating insert surfaces as ``ConflictError``. Closing a schedule is
    a conditional UPDATE on its pending status, so two racing completions
    cannot both succeed.
    """

    def __init__(self, session_factory: async_sessionmaker, engine: Optional[AsyncEngine] = None):
        """
        Initialize the store.

        Args:
            session_factory: Factory producing AsyncSessions
            engine: Engine to dispose on close, when the store owns it
        """
        self._session_factory = session_factory
        self._engine = engine

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncIterator[AsyncSession]:
        """Session in a transaction; driver errors become StoreError."""
        async with self._session_factory() as session:
            try:
                async with session.begin():
                    yield session
            except (ConflictError, IntegrityError):
                raise
            except SQLAlchemyError as e:
                logger.error(f"Database error during {operation}: {e}")
                raise StoreError(f"{operation} failed", e)

    async def get_schedule(self, schedule_id: str) -> Optional[ReviewSchedule]:
        async with self._transaction("get_schedule") as session:
            record = await session.get(ReviewScheduleRecord, schedule_id)
            return _to_schedule(record) if record else None

    async def get_pending_schedule(self, user_id: str, item_id: str) -> Optional[ReviewSchedule]:
        query = select(ReviewScheduleRecord).where(
            ReviewScheduleRecord.user_id == user_id,
            ReviewScheduleRecord.item_id == item_id,
            ReviewScheduleRecord.status.in_(_PENDING),
        )
        async with self._transaction("get_pending_schedule") as session:
            record = (await session.execute(query)).scalars().first()
            return _to_schedule(record) if record else None

    async def create_schedule(self, schedule: ReviewSchedule) -> ReviewSchedule:
        try:
            async with self._transaction("create_schedule") as session:
                session.add(ReviewScheduleRecord(**_schedule_values(schedule)))
        except IntegrityError as e:
            raise ConflictError(
                "ReviewSchedule", schedule.id,
                f"pair ({schedule.user_id}, {schedule.item_id}) already has a pending schedule"
            ) from e
        return schedule

    async def _close(self, session: AsyncSession, closed: ReviewSchedule) -> None:
        values = _schedule_values(closed)
        values.pop("id")
        result = await session.execute(
            update(ReviewScheduleRecord)
            .where(ReviewScheduleRecord.id == closed.id, ReviewScheduleRecord.status.in_(_PENDING))
            .values(**values)
        )
        if result.rowcount != 1:
            raise ConflictError("ReviewSchedule", closed.id, "is not pending")

    async def advance_schedule(self, closed: ReviewSchedule, next_schedule: ReviewSchedule) -> None:
        # The unique index is checked per statement, so the old row is closed
        # first; the shared transaction still publishes both rows together.
        try:
            async with self._transaction("advance_schedule") as session:
                await self._close(session, closed)
                await session.flush()
                session.add(ReviewScheduleRecord(**_schedule_values(next_schedule)))
        except IntegrityError as e:
            raise ConflictError(
                "ReviewSchedule", next_schedule.id,
                f"pair ({next_schedule.user_id}, {next_schedule.item_id}) already has a pending schedule"
            ) from e

    async def close_schedule(self, closed: ReviewSchedule) -> ReviewSchedule:
        async with self._transaction("close_schedule") as session:
            await self._close(session, closed)
        return closed

    async def list_pending_schedules(
        self,
        user_id: str,
        due_before: Optional[datetime] = None,
        due_after: Optional[datetime] = None
    ) -> List[ReviewSchedule]:
        query = select(ReviewScheduleRecord).where(
            ReviewScheduleRecord.user_id == user_id,
            ReviewScheduleRecord.status.in_(_PENDING),
        )
        if due_before is not None:
            query = query.where(ReviewScheduleRecord.scheduled_at <= as_utc(due_before))
        if due_after is not None:
            query = query.where(ReviewScheduleRecord.scheduled_at >= as_utc(due_after))
        query = query.order_by(ReviewScheduleRecord.scheduled_at)
        async with self._transaction("list_pending_schedules") as session:
            return [_to_schedule(r) for r in (await session.execute(query)).scalars()]

    async def mark_overdue(self, cutoff: datetime) -> int:
        async with self._transaction("mark_overdue") as session:
            result = await session.execute(
                update(ReviewScheduleRecord)
                .where(
                    ReviewScheduleRecord.status == ReviewStatus.SCHEDULED.value,
                    ReviewScheduleRecord.scheduled_at < as_utc(cutoff),
                )
                .values(status=ReviewStatus.OVERDUE.value)
            )
            return result.rowcount or 0

    async def list_recent_users(self, item_id: str, since: datetime) -> List[str]:
        since = as_utc(since)
        query = (
            select(ReviewScheduleRecord.user_id)
            .where(
                ReviewScheduleRecord.item_id == item_id,
                or_(
                    ReviewScheduleRecord.created_at >= since,
                    ReviewScheduleRecord.completed_at >= since,
                ),
            )
            .distinct()
            .order_by(ReviewScheduleRecord.user_id)
        )
        async with self._transaction("list_recent_users") as session:
            return list((await session.execute(query)).scalars())

    async def get_profile(self, user_id: str) -> Optional[ForgettingCurveProfile]:
        async with self._transaction("get_profile") as session:
            record = await session.get(ForgettingCurveProfileRecord, user_id)
            return _to_profile(record) if record else None

    async def save_profile(self, profile: ForgettingCurveProfile) -> ForgettingCurveProfile:
        values = profile.to_dict()
        values["updated_at"] = as_utc(profile.updated_at)
        async with self._transaction("save_profile") as session:
            await session.merge(ForgettingCurveProfileRecord(**values))
        return profile

    async def get_item(self, item_id: str) -> Optional[ItemDifficulty]:
        async with self._transaction("get_item") as session:
            record = await session.get(ItemDifficultyRecord, item_id)
            return None if record is None else _to_item(record)

    async def list_items(
        self,
        subject: Optional[str] = None,
        min_difficulty: Optional[float] = None,
        max_difficulty: Optional[float] = None,
        limit: Optional[int] = None
    ) -> List[ItemDifficulty]:
        query = select(ItemDifficultyRecord)
        if subject is not None:
            query = query.where(ItemDifficultyRecord.subject == subject)
        if min_difficulty is not None:
            query = query.where(ItemDifficultyRecord.baseline_difficulty >= min_difficulty)
        if max_difficulty is not None:
            query = query.where(ItemDifficultyRecord.baseline_difficulty <= max_difficulty)
        query = query.order_by(ItemDifficultyRecord.item_id)
        if limit is not None:
            query = query.limit(limit)
        async with self._transaction("list_items") as session:
            return [_to_item(r) for r in (await session.execute(query)).scalars()]

    async def save_item(self, item: ItemDifficulty) -> ItemDifficulty:
        async with self._transaction("save_item") as session:
            await session.merge(ItemDifficultyRecord(
                item_id=item.item_id,
                baseline_difficulty=item.baseline_difficulty,
                subject=item.subject,
                updated_at=as_utc(item.updated_at),
            ))
        return item

    async def record_adjustment(self, adjustment: DifficultyAdjustment) -> DifficultyAdjustment:
        values = adjustment.to_dict()
        values["created_at"] = as_utc(adjustment.created_at)
        async with self._transaction("record_adjustment") as session:
            session.add(DifficultyAdjustmentRecord(**values))
        return adjustment

    async def list_adjustments(self, item_id: str) -> List[DifficultyAdjustment]:
        query = (
            select(DifficultyAdjustmentRecord)
            .where(DifficultyAdjustmentRecord.item_id == item_id)
            .order_by(DifficultyAdjustmentRecord.created_at)
        )
        async with self._transaction("list_adjustments") as session:
            return [
                DifficultyAdjustment(
                    id=r.id,
                    item_id=r.item_id,
                    previous_difficulty=r.previous_difficulty,
                    new_difficulty=r.new_difficulty,
                    reason=r.reason,
                    urgency=r.urgency,
                    feedback_count=r.feedback_count,
                    created_at=as_utc(r.created_at),
                )
                for r in (await session.execute(query)).scalars()
            ]

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()

"""
Review Scheduling Service

This module runs the forgetting-curve state machine against the durable
store: it opens review cycles, closes them with an outcome while opening the
successor, sweeps overdue cycles and keeps learner profiles current.
"""

import time
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from review_core.common.cache import CacheKeys, CacheLayer, TieredCache
from review_core.common.config import CacheSettings, SchedulingSettings
from review_core.common.exceptions import CacheError, ConflictError, InvalidInputError, NotFoundError, StoreError
from review_core.common.logger import app_logger, log_execution_time
from review_core.domain.model import (
    ForgettingCurveProfile,
    ReviewFeedback,
    ReviewSchedule,
    ReviewStatus,
    validate_level,
)
from review_core.domain.repository import ReviewStore
from review_core.feedback.aggregator import FeedbackAggregator
from review_core.prediction.predictor import DifficultyPredictor

from .forgetting import FailurePolicy, ForgettingCurveModel, ProfileDelta

logger = app_logger.getChild("scheduling.service")


@dataclass
class CompletionResult:
    """
    Outcome of completing a review.

    Attributes:
        next_schedule: The newly opened cycle
        profile_delta: Changes made to the learner profile; None when the
            profile could not be updated after the cycle was closed
        previous_schedule: The cycle that was closed
    """
    next_schedule: ReviewSchedule
    profile_delta: Optional[ProfileDelta]
    previous_schedule: ReviewSchedule

    def to_dict(self) -> Dict[str, Any]:
        return {
            "next_schedule": self.next_schedule.to_dict(),
            "profile_delta": self.profile_delta.to_dict() if self.profile_delta else None,
            "previous_schedule": self.previous_schedule.to_dict()
        }


@dataclass
class ReviewItem:
    """A pending cycle with the figures used to rank it."""
    schedule: ReviewSchedule
    priority_score: float
    retention_rate: float
    difficulty: Optional[float]
    is_overdue: bool
    overdue_hours: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schedule": self.schedule.to_dict(),
            "priority_score": self.priority_score,
            "retention_rate": self.retention_rate,
            "difficulty": self.difficulty,
            "is_overdue": self.is_overdue,
            "overdue_hours": self.overdue_hours
        }


class ReviewSchedulingService:
    """
    Schedules and completes reviews for (user, item) pairs.

    The store is the system of record. Profiles are read through the tiered
    cache and written to the store first; the cached copy is then dropped.
    Once a completion has closed its cycle, the profile update and the
    feedback forwarded to the aggregator are best effort and never fail it.
    """

    def __init__(
        self,
        store: ReviewStore,
        model: Optional[ForgettingCurveModel] = None,
        cache: Optional[TieredCache] = None,
        aggregator: Optional[FeedbackAggregator] = None,
        settings: Optional[SchedulingSettings] = None,
        cache_settings: Optional[CacheSettings] = None,
        predictor: Optional[DifficultyPredictor] = None,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize the service.

        Args:
            store: Durable review store
            model: Forgetting-curve model; built from ``settings`` when omitted
            cache: Tiered cache for profiles
            aggregator: Receives feedback derived from completions
            settings: Scheduling configuration
            cache_settings: Supplies the profile cache TTL
            predictor: Supplies the difficulty recorded on each cycle
            clock: Source of the current epoch time
        """
        self._settings = settings or SchedulingSettings()
        self._store = store
        self._model = model or ForgettingCurveModel(
            failure_policy=FailurePolicy(self._settings.failure_policy),
            success_score_ratio=self._settings.success_score_ratio
        )
        self._cache = cache
        self._aggregator = aggregator
        self._profile_ttl = (cache_settings or CacheSettings()).profile_ttl
        self.predictor = predictor
        self._clock = clock

    @property
    def model(self) -> ForgettingCurveModel:
        return self._model

    def now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), timezone.utc)

    # Profiles

    async def get_profile(self, user_id: str) -> ForgettingCurveProfile:
        """
        A learner's profile, created with defaults on first use.

        Reads ``profile:<userId>`` from the cache and falls back to the store.
        """
        if self._cache is not None:
            result = await self._cache.get(CacheKeys.profile(user_id))
            if result.hit:
                try:
                    return ForgettingCurveProfile.from_dict(result.value)
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning(f"Discarding malformed cached profile for {user_id}: {e}")

        profile = await self._store.get_profile(user_id)
        if profile is None:
            profile = ForgettingCurveProfile.default(
                user_id,
                retention_factor=self._settings.default_retention,
                initial_level=self._settings.default_level
            )
            profile.updated_at = self.now()
            await self._store.save_profile(profile)
            logger.info(f"Created default forgetting-curve profile for {user_id}")

        await self._cache_profile(profile)
        return profile

    async def save_profile(self, profile: ForgettingCurveProfile) -> ForgettingCurveProfile:
        """Persist a profile, then drop its cached copy and the predictions derived from it."""
        await self._store.save_profile(profile)
        if self._cache is not None:
            await self._cache.delete(CacheKeys.profile(profile.user_id))
            await self._cache.invalidate_by_tags([CacheKeys.user_tag(profile.user_id)])
        return profile

    async def _cache_profile(self, profile: ForgettingCurveProfile) -> None:
        if self._cache is not None:
            await self._cache.set(
                CacheKeys.profile(profile.user_id), profile.to_dict(), CacheLayer.L2, self._profile_ttl
            )

    # Lifecycle

    @log_execution_time(logger)
    async def schedule_review(
        self,
        user_id: str,
        item_id: str,
        level: Optional[int] = None
    ) -> ReviewSchedule:
        """
        Open the first review cycle of a pair.

        Args:
            user_id: Learner
            item_id: Item to review
            level: Starting level; defaults to the profile's initial level

        Returns:
            The SCHEDULED cycle, due one level interval from now

        Raises:
            ConflictError: The pair already has a pending cycle
            InvalidInputError: Bad identifiers or level
        """
        if not user_id or not item_id:
            raise InvalidInputError("user_id and item_id are required", {"user_id": user_id, "item_id": item_id})

        existing = await self._store.get_pending_schedule(user_id, item_id)
        if existing is not None:
            raise ConflictError(
                "ReviewSchedule", existing.id,
                f"pair ({user_id}, {item_id}) already has a pending schedule"
            )

        profile = await self.get_profile(user_id)
        start_level = validate_level(level if level is not None else profile.initial_level)
        now = self.now()
        schedule = ReviewSchedule.create(
            user_id,
            item_id,
            start_level,
            now + self._model.interval(start_level),
            created_at=now,
            difficulty_score=await self._predicted_difficulty(user_id, item_id)
        )
        await self._store.create_schedule(schedule)

        logger.info(f"Scheduled {item_id} for {user_id} at level {start_level}, due {schedule.scheduled_at}")
        return schedule

    async def _require_pending(self, schedule_id: str) -> ReviewSchedule:
        schedule = await self._store.get_schedule(schedule_id)
        if schedule is None:
            raise NotFoundError("ReviewSchedule", schedule_id)
        if not schedule.is_pending:
            raise ConflictError("ReviewSchedule", schedule_id, f"is already {schedule.status.value}")
        return schedule

    async def _predicted_difficulty(self, user_id: str, item_id: str) -> Optional[float]:
        if self.predictor is None:
            return None
        try:
            prediction = await self.predictor.predict_difficulty(user_id, item_id)
        except (CacheError, StoreError) as e:
            logger.warning(f"No difficulty prediction for ({user_id}, {item_id}): {e}")
            return None
        return prediction.predicted_difficulty if prediction else None

    @log_execution_time(logger)
    async def complete_review(
        self,
        schedule_id: str,
        feedback: Any,
        response_time: Optional[float] = None,
        confidence_level: Optional[int] = None,
        score: Optional[float] = None,
        max_score: Optional[float] = None,
        subject: Optional[str] = None
    ) -> CompletionResult:
        """
        Close a pending cycle with an outcome and open the next one.

        The successor row is written before the closed row is published, as
        one store operation, so the pair always has exactly one pending row.
        The closed row records the predicted difficulty and the estimated
        retention at review time. Once the rows are committed, a failure to
        update the learner profile is logged and leaves ``profile_delta``
        empty; retrying would only hit the closed cycle.

        Args:
            schedule_id: Pending cycle to close
            feedback: ReviewFeedback member or its name
            response_time: Seconds taken
            confidence_level: Self-reported confidence, 1-5
            score: Optional achieved score
            max_score: Maximum achievable score
            subject: Item subject for the per-subject profile offset

        Returns:
            The next cycle and the profile delta

        Raises:
            NotFoundError: Unknown schedule id
            ConflictError: The cycle is already closed
            InvalidInputError: Malformed outcome; nothing is changed
        """
        feedback = ReviewFeedback.parse(feedback)
        self._validate_outcome(response_time, confidence_level, score, max_score)

        schedule = await self._require_pending(schedule_id)
        now = self.now()
        transition = self._model.transition(schedule.current_level, feedback, now, score, max_score)
        profile = await self.get_profile(schedule.user_id)
        difficulty = await self._predicted_difficulty(schedule.user_id, schedule.item_id)
        retention = self._model.estimate_retention(
            schedule.current_level, now - schedule.created_at, profile.retention_factor
        )

        next_schedule = ReviewSchedule.create(
            schedule.user_id,
            schedule.item_id,
            transition.new_level,
            transition.next_scheduled_at,
            previous_schedule_id=schedule.id,
            created_at=now,
            difficulty_score=difficulty
        )
        closed = replace(
            schedule,
            status=ReviewStatus.COMPLETED,
            is_success=transition.success,
            response_time=response_time,
            confidence_level=confidence_level,
            next_scheduled_at=transition.next_scheduled_at,
            difficulty_score_at_review=difficulty if difficulty is not None else schedule.difficulty_score_at_review,
            retention_rate=round(retention, 4),
            completed_at=now
        )
        await self._store.advance_schedule(closed, next_schedule)

        delta = await self._record_outcome(
            schedule.user_id, transition.success, response_time, confidence_level, subject, now
        )

        logger.info(
            f"Completed {schedule.id} ({feedback.value}): level {transition.previous_level} -> "
            f"{transition.new_level}, next due {transition.next_scheduled_at}"
        )

        await self._forward_feedback(schedule.item_id, feedback, response_time, transition.success)
        return CompletionResult(next_schedule=next_schedule, profile_delta=delta, previous_schedule=closed)

    async def _record_outcome(
        self,
        user_id: str,
        success: bool,
        response_time: Optional[float],
        confidence_level: Optional[int],
        subject: Optional[str],
        now: datetime
    ) -> Optional[ProfileDelta]:
        try:
            profile = await self.get_profile(user_id)
            updated, delta = self._model.update_profile(
                profile, success, response_time, confidence_level, subject, now
            )
            await self.save_profile(updated)
        except (CacheError, StoreError) as e:
            logger.error(f"Profile of {user_id} was not updated after a completed review: {e}")
            return None
        return delta

    @staticmethod
    def _validate_outcome(
        response_time: Optional[float],
        confidence_level: Optional[int],
        score: Optional[float],
        max_score: Optional[float]
    ) -> None:
        errors = {}
        if response_time is not None and response_time < 0:
            errors["response_time"] = "must not be negative"
        if confidence_level is not None and not 1 <= confidence_level <= 5:
            errors["confidence_level"] = "must be between 1 and 5"
        if score is not None and score < 0:
            errors["score"] = "must not be negative"
        if max_score is not None and max_score <= 0:
            errors["max_score"] = "must be positive"
        if errors:
            raise InvalidInputError("Invalid review outcome", errors)

    async def _forward_feedback(
        self,
        item_id: str,
        feedback: ReviewFeedback,
        response_time: Optional[float],
        success: bool
    ) -> None:
        if self._aggregator is None:
            return
        try:
            await self._aggregator.record_feedback(
                item_id, feedback.to_difficulty_feedback(), response_time, success
            )
        except Exception as e:
            logger.warning(f"Feedback for {item_id} was not aggregated: {e}")

    async def skip_review(self, schedule_id: str) -> ReviewSchedule:
        """
        Close a pending cycle without an outcome.

        No successor is opened and no feedback is aggregated.

        Raises:
            NotFoundError: Unknown schedule id
            ConflictError: The cycle is already closed
        """
        schedule = await self._require_pending(schedule_id)
        skipped = replace(schedule, status=ReviewStatus.SKIPPED, completed_at=self.now())
        await self._store.close_schedule(skipped)
        logger.info(f"Skipped {schedule_id} for {schedule.user_id}")
        return skipped

    async def sweep_overdue(self, grace_seconds: Optional[int] = None) -> int:
        """
        Flag SCHEDULED cycles due before ``now - grace`` as OVERDUE.

        Levels are left unchanged.

        Returns:
            Number of cycles flagged
        """
        grace = self._settings.overdue_grace_seconds if grace_seconds is None else grace_seconds
        cutoff = self.now() - timedelta(seconds=grace)
        flagged = await self._store.mark_overdue(cutoff)
        if flagged:
            logger.info(f"Marked {flagged} reviews overdue (cutoff {cutoff})")
        return flagged

    # Queries

    async def get_due_reviews(self, user_id: str, limit: int = 20) -> List[ReviewSchedule]:
        """
        Pending cycles of a learner that are due now, most pressing first.

        Overdue cycles come first, then cycles ranked by review priority.
        """
        now = self.now()
        due = await self._store.list_pending_schedules(user_id, due_before=now)
        profile = await self.get_profile(user_id)

        ranked = sorted(
            (self._review_item(s, profile, now) for s in due),
            key=lambda r: (r.schedule.status is not ReviewStatus.OVERDUE, -r.priority_score)
        )
        return [r.schedule for r in ranked[:limit]]

    async def get_schedule_by_time_range(
        self,
        user_id: str,
        start: datetime,
        end: datetime
    ) -> List[ReviewItem]:
        """
        Pending cycles of a learner due between ``start`` and ``end`` (inclusive).

        Returns:
            Ranked review items, earliest due first

        Raises:
            InvalidInputError: ``start`` is after ``end``
        """
        if start > end:
            raise InvalidInputError("start must not be after end", {"start": str(start), "end": str(end)})
        now = self.now()
        pending = await self._store.list_pending_schedules(user_id, due_before=end, due_after=start)
        profile = await self.get_profile(user_id)
        return [self._review_item(s, profile, now) for s in pending]

    def _review_item(self, schedule: ReviewSchedule, profile: ForgettingCurveProfile, now: datetime) -> ReviewItem:
        hours_past_due = (now - schedule.scheduled_at).total_seconds() / 3600.0
        return ReviewItem(
            schedule=schedule,
            priority_score=self._model.review_priority(
                schedule, now, profile.retention_factor, profile.success_rate
            ),
            retention_rate=round(self._model.estimate_retention(
                schedule.current_level, now - schedule.created_at, profile.retention_factor
            ), 4),
            difficulty=schedule.difficulty_score_at_review,
            is_overdue=schedule.status is ReviewStatus.OVERDUE or hours_past_due > 0,
            overdue_hours=round(max(hours_past_due, 0.0), 2)
        )

    async def get_schedule_stats(self, user_id: str) -> Dict[str, Any]:
        """Counts of a learner's pending cycles by due window and level."""
        now = self.now()
        pending = await self._store.list_pending_schedules(user_id)

        end_of_day = now.replace(hour=23, minute=59, second=59, microsecond=999999)
        by_level: Dict[int, int] = {}
        for schedule in pending:
            by_level[schedule.current_level] = by_level.get(schedule.current_level, 0) + 1

        return {
            "total_pending": len(pending),
            "overdue": sum(1 for s in pending if s.status is ReviewStatus.OVERDUE),
            "due_now": sum(1 for s in pending if s.is_due(now)),
            "due_today": sum(1 for s in pending if s.scheduled_at <= end_of_day),
            "due_this_week": sum(1 for s in pending if s.scheduled_at <= now + timedelta(days=7)),
            "by_level": dict(sorted(by_level.items()))
        }

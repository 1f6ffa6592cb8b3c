"""
Review Engine Module

This module wires the scheduler's services into one context object and
exposes the operations other systems call: scheduling and completing
reviews, recording difficulty feedback, predicting difficulty and
inspecting the adjustment queue.
"""

import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from review_core.common.auth.sessions import Session, SessionRegistry
from review_core.common.cache import (
    CacheBackend,
    CacheLayer,
    MemoryCacheBackend,
    RedisCacheBackend,
    TieredCache,
)
from review_core.common.config import AppConfig, load_config
from review_core.common.exceptions import BaseError, InvalidInputError
from review_core.common.logger import app_logger
from review_core.common.redis import check_redis, create_redis_client
from review_core.database import create_engine, create_session_factory, initialize_database
from review_core.domain.memory_repository import MemoryReviewStore
from review_core.domain.model import DifficultyFeedback, ReviewSchedule
from review_core.domain.repository import ReviewStore
from review_core.domain.sql_repository import SQLReviewStore
from review_core.feedback.aggregator import FeedbackAggregator
from review_core.feedback.consumer import AdjustmentConsumer, ProcessedItem
from review_core.feedback.queue import AdjustmentQueue
from review_core.prediction.predictor import DifficultyPrediction, DifficultyPredictor, clamp_difficulty
from review_core.scheduling.service import CompletionResult, ReviewItem, ReviewSchedulingService

logger = app_logger.getChild("engine")

# Shift of a learner's ideal difficulty per unit of adaptation rate
IDEAL_DIFFICULTY_NUDGES = {
    DifficultyFeedback.TOO_EASY: 0.1,
    DifficultyFeedback.JUST_RIGHT: 0.0,
    DifficultyFeedback.TOO_HARD: -0.1,
    DifficultyFeedback.RETRY: -0.2,
}


class FeedbackMetadata(BaseModel):
    """Optional details sent with a feedback event."""
    model_config = ConfigDict(extra="ignore")

    response_time: Optional[float] = Field(default=None, ge=0)
    is_correct: Optional[bool] = None
    confidence_level: Optional[int] = Field(default=None, ge=1, le=5)
    session_id: Optional[str] = None


class ReviewEngine:
    """
    Context object holding every scheduler service.

    Services receive their collaborators from here instead of reaching for
    globals, so several engines (for example one per test) can coexist.
    """

    def __init__(
        self,
        store: ReviewStore,
        cache_backend: CacheBackend,
        config: Optional[AppConfig] = None,
        clock: Callable[[], float] = time.time,
        layer_backends: Optional[Mapping[CacheLayer, CacheBackend]] = None
    ):
        """
        Initialize the engine.

        Args:
            store: Durable review store
            cache_backend: Backend for the tiered cache, queue, windows and sessions
            config: Application configuration; defaults are used when omitted
            clock: Source of the current epoch time, shared by every service
            layer_backends: Optional per-layer overrides for the tiered cache
        """
        self.config = config or AppConfig()
        self.store = store
        self.cache_backend = cache_backend
        self.clock = clock

        self.cache = TieredCache.from_settings(cache_backend, self.config.cache, layer_backends)
        self.queue = AdjustmentQueue(cache_backend, self.config.queue, clock)
        self.aggregator = FeedbackAggregator(cache_backend, self.queue, self.config.feedback, clock)
        self.scheduling = ReviewSchedulingService(
            store,
            cache=self.cache,
            aggregator=self.aggregator,
            settings=self.config.scheduling,
            cache_settings=self.config.cache,
            clock=clock
        )
        self.predictor = DifficultyPredictor(
            store,
            self.cache,
            self.aggregator,
            self.config.prediction,
            profile_loader=self.scheduling.get_profile,
            clock=clock
        )
        self.scheduling.predictor = self.predictor
        self.consumer = AdjustmentConsumer(
            self.queue, self.aggregator, store, self.predictor, self.config.prediction, clock=clock
        )
        self.sessions = SessionRegistry(cache_backend, self.config.sessions, clock)

    async def schedule_review(self, user_id: str, item_id: str) -> ReviewSchedule:
        """Open the first review cycle of a (user, item) pair."""
        return await self.scheduling.schedule_review(user_id, item_id)

    async def complete_review(
        self,
        schedule_id: str,
        feedback: Any,
        response_time: Optional[float] = None,
        confidence_level: Optional[int] = None,
        score: Optional[float] = None,
        max_score: Optional[float] = None
    ) -> CompletionResult:
        """Close a pending cycle and open the next; see ``ReviewSchedulingService``."""
        subject = None
        schedule = await self.store.get_schedule(schedule_id)
        if schedule is not None:
            item = await self.store.get_item(schedule.item_id)
            subject = item.subject if item else None
        return await self.scheduling.complete_review(
            schedule_id, feedback, response_time, confidence_level, score, max_score, subject
        )

    async def skip_review(self, schedule_id: str) -> ReviewSchedule:
        return await self.scheduling.skip_review(schedule_id)

    async def record_feedback(
        self,
        item_id: str,
        user_id: str,
        feedback: Any,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Record how an item felt to a learner.

        Malformed input raises ``InvalidInputError`` before anything changes.
        Everything after validation is best effort: cache and store failures
        are logged, never raised.

        Args:
            item_id: Item the feedback is about
            user_id: Learner giving the feedback
            feedback: DifficultyFeedback or ReviewFeedback member, or its name
            metadata: Optional ``response_time``, ``is_correct``, ``confidence_level``
        """
        kind = DifficultyFeedback.parse(feedback)
        try:
            details = FeedbackMetadata.model_validate(metadata or {})
        except PydanticValidationError as e:
            raise InvalidInputError(
                "Invalid feedback metadata",
                {".".join(str(p) for p in err["loc"]): err["msg"] for err in e.errors()}
            ) from e

        try:
            await self.aggregator.record_feedback(item_id, kind, details.response_time, details.is_correct)
        except BaseError as e:
            logger.warning(f"Feedback on {item_id} from {user_id} was not aggregated: {e}")

        try:
            await self._nudge_ideal_difficulty(user_id, kind)
        except BaseError as e:
            logger.warning(f"Profile of {user_id} was not adapted to feedback on {item_id}: {e}")

    async def _nudge_ideal_difficulty(self, user_id: str, kind: DifficultyFeedback) -> None:
        nudge = IDEAL_DIFFICULTY_NUDGES[kind] * self.config.prediction.adaptation_rate * 10
        if not nudge:
            return
        profile = await self.scheduling.get_profile(user_id)
        profile.ideal_difficulty = round(clamp_difficulty(profile.ideal_difficulty + nudge), 4)
        profile.updated_at = self.scheduling.now()
        await self.scheduling.save_profile(profile)

    async def predict_difficulty(self, user_id: str, item_id: str) -> Optional[DifficultyPrediction]:
        """Personalized difficulty, or None for an unknown item."""
        return await self.predictor.predict_difficulty(user_id, item_id)

    async def get_adjustment_queue_status(self) -> Dict[str, Any]:
        """Queue depth per urgency tier."""
        return await self.queue.status()

    async def sweep_overdue(self, grace_seconds: Optional[int] = None) -> int:
        return await self.scheduling.sweep_overdue(grace_seconds)

    async def process_adjustments(self, max_items: Optional[int] = None) -> List[ProcessedItem]:
        """Recalibrate up to ``max_items`` queued items."""
        return await self.consumer.drain(max_items or self.config.queue.drain_batch)

    async def get_due_reviews(self, user_id: str, limit: int = 20) -> List[ReviewSchedule]:
        return await self.scheduling.get_due_reviews(user_id, limit)

    async def get_schedule_by_time_range(self, user_id: str, start: datetime, end: datetime) -> List[ReviewItem]:
        """Pending cycles due within ``[start, end]``, earliest first."""
        return await self.scheduling.get_schedule_by_time_range(user_id, start, end)

    async def get_schedule_stats(self, user_id: str) -> Dict[str, Any]:
        return await self.scheduling.get_schedule_stats(user_id)

    async def get_personalized_items(
        self,
        user_id: str,
        subject: Optional[str] = None,
        limit: int = 10
    ) -> List[DifficultyPrediction]:
        """Items near the learner's ideal difficulty, best fit first."""
        return await self.predictor.get_personalized_items(user_id, subject, limit)

    async def open_session(self, user_id: str, metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Open a learner session.

        Returns:
            The session plus a short-lived access token bound to it
        """
        session = await self.sessions.create_session(user_id, metadata=metadata)
        return {"session": session.to_dict(), "access_token": self.sessions.issue_access_token(session)}

    async def get_user_sessions(self, user_id: str) -> List[Session]:
        return await self.sessions.get_user_sessions(user_id)

    async def close(self) -> None:
        """Release the cache backend and the store."""
        await self.cache_backend.close()
        await self.store.close()


async def build_engine(config: Optional[AppConfig] = None, clock: Callable[[], float] = time.time) -> ReviewEngine:
    """
    Build an engine from configuration.

    The cache backend is in-process or Redis per ``cache.backend``; the
    store is in-process or SQL per ``database.backend``. A SQL schema is
    created if missing.

    Args:
        config: Application configuration; loaded from file and environment when omitted
        clock: Source of the current epoch time

    Returns:
        A ready engine
    """
    config = config or load_config()

    if config.cache.backend == "redis":
        client = create_redis_client(config.redis)
        if not await check_redis(client):
            logger.warning("Redis is unreachable; cache, queue and sessions start degraded")
        backend: CacheBackend = RedisCacheBackend(client, key_prefix=config.cache.key_prefix)
    else:
        memory = MemoryCacheBackend(max_size=config.cache.memory_max_size, clock=clock)
        memory.start_cleanup_task(config.cache.cleanup_interval)
        backend = memory

    if config.database.backend == "sql":
        engine = create_engine(config.database)
        await initialize_database(engine)
        store: ReviewStore = SQLReviewStore(create_session_factory(engine), engine)
    else:
        store = MemoryReviewStore()

    logger.info(f"Built review engine with {backend.name} cache and {type(store).__name__}")
    return ReviewEngine(store, backend, config, clock)

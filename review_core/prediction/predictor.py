"""
Difficulty Predictor Module

This module predicts how hard an item will feel to a given learner. The
item's baseline difficulty is shifted by a global term learned from recent
correctness on the item and a personal term from the learner's profile.
Predictions are cached per (user, item) and tagged by both so that either
side can invalidate them.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from review_core.common.cache import CacheKeys, CacheLayer, Expiring, TieredCache, get_or_recompute
from review_core.common.config import PredictionSettings
from review_core.domain.model import ForgettingCurveProfile, ItemDifficulty
from review_core.domain.repository import ReviewStore
from review_core.feedback.aggregator import FeedbackAggregation, FeedbackAggregator

logger = logging.getLogger(__name__)

MIN_DIFFICULTY = 1.0
MAX_DIFFICULTY = 10.0

# Half-width of the baseline band around a learner's ideal difficulty
PERSONALIZED_BAND = 1.0

ProfileLoader = Callable[[str], Awaitable[ForgettingCurveProfile]]


def clamp_difficulty(value: float) -> float:
    return min(max(value, MIN_DIFFICULTY), MAX_DIFFICULTY)


@dataclass
class DifficultyPrediction:
    """
    Personalized difficulty of one item for one learner.

    Attributes:
        user_id: Learner
        item_id: Item
        predicted_difficulty: Expected difficulty, 1-10
        personalized_score: Fit with the learner's comfort band, 0-110
        confidence: Confidence in the prediction, 0.5-0.95
        factors: Baseline and the adjustments that produced the prediction
        expires_at: Epoch seconds after which the prediction is recomputed
    """
    user_id: str
    item_id: str
    predicted_difficulty: float
    personalized_score: float
    confidence: float
    factors: Dict[str, float] = field(default_factory=dict)
    expires_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "item_id": self.item_id,
            "predicted_difficulty": self.predicted_difficulty,
            "personalized_score": self.personalized_score,
            "confidence": self.confidence,
            "factors": dict(self.factors),
            "expires_at": self.expires_at
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DifficultyPrediction":
        return cls(
            user_id=data["user_id"],
            item_id=data["item_id"],
            predicted_difficulty=float(data["predicted_difficulty"]),
            personalized_score=float(data["personalized_score"]),
            confidence=float(data["confidence"]),
            factors={k: float(v) for k, v in (data.get("factors") or {}).items()},
            expires_at=data.get("expires_at")
        )


class DifficultyPredictor:
    """
    Cached, personalized difficulty predictions.

    ``predict_difficulty`` serves from the tiered cache and recomputes on a
    miss or after expiry; a cold or unreachable cache only costs latency.
    Identical baseline, aggregation and profile inputs always yield the same
    prediction.
    """

    def __init__(
        self,
        store: ReviewStore,
        cache: TieredCache,
        aggregator: FeedbackAggregator,
        settings: Optional[PredictionSettings] = None,
        profile_loader: Optional[ProfileLoader] = None,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize the predictor.

        Args:
            store: Durable store holding item baselines and profiles
            cache: Tiered cache for predictions
            aggregator: Source of recent per-item correctness
            settings: Formula constants and cache TTL
            profile_loader: Coroutine returning a learner's profile; defaults to the store
            clock: Source of the current epoch time
        """
        self._store = store
        self._cache = cache
        self._aggregator = aggregator
        self._settings = settings or PredictionSettings()
        self._profile_loader = profile_loader or self._load_profile
        self._clock = clock

    async def _load_profile(self, user_id: str) -> ForgettingCurveProfile:
        profile = await self._store.get_profile(user_id)
        return profile or ForgettingCurveProfile.default(user_id)

    def global_adjustment(self, aggregation: Optional[FeedbackAggregation]) -> float:
        """
        Shift from recent correctness on the item.

        Items answered correctly less often than the target band are harder
        than their baseline says, and vice versa. Too few samples mean no shift.
        """
        if aggregation is None or aggregation.success_rate is None:
            return 0.0
        if aggregation.correctness_samples < self._settings.min_samples:
            return 0.0

        rate = aggregation.success_rate
        if rate < self._settings.target_success_low:
            return (self._settings.target_success_low - rate) * self._settings.global_scale
        if rate > self._settings.target_success_high:
            return -(rate - self._settings.target_success_high) * self._settings.global_scale
        return 0.0

    def personal_adjustment(self, profile: ForgettingCurveProfile, subject: Optional[str]) -> float:
        """Learners comfortable with harder material perceive items as easier."""
        shift = (self._settings.neutral_difficulty - profile.ideal_difficulty) * self._settings.personal_weight
        return shift + profile.subject_adjustment(subject)

    @staticmethod
    def personalized_score(predicted: float, profile: ForgettingCurveProfile) -> float:
        score = 100 - abs(predicted - profile.ideal_difficulty) * 10
        if profile.min_comfortable <= predicted <= profile.max_comfortable:
            score += 10
        return round(min(max(score, 0.0), 110.0), 2)

    @staticmethod
    def confidence(aggregation: Optional[FeedbackAggregation]) -> float:
        samples = aggregation.total_feedbacks if aggregation else 0
        return round(min(0.95, 0.5 + 0.05 * samples), 2)

    def compute(
        self,
        user_id: str,
        item: ItemDifficulty,
        profile: ForgettingCurveProfile,
        aggregation: Optional[FeedbackAggregation]
    ) -> DifficultyPrediction:
        """
        Pure prediction from one snapshot of inputs.

        Returns:
            The prediction, without an expiry
        """
        baseline = item.baseline_difficulty
        global_adj = self.global_adjustment(aggregation)
        personal_adj = self.personal_adjustment(profile, item.subject)
        predicted = round(clamp_difficulty(baseline + global_adj + personal_adj), 2)

        return DifficultyPrediction(
            user_id=user_id,
            item_id=item.item_id,
            predicted_difficulty=predicted,
            personalized_score=self.personalized_score(predicted, profile),
            confidence=self.confidence(aggregation),
            factors={
                "baseline": baseline,
                "global_adjustment": round(global_adj, 4),
                "personal_adjustment": round(personal_adj, 4)
            }
        )

    async def _recompute(self, user_id: str, item_id: str) -> Optional[DifficultyPrediction]:
        item = await self._store.get_item(item_id)
        if item is None:
            logger.debug(f"No difficulty metadata for item {item_id}")
            return None
        profile = await self._profile_loader(user_id)
        aggregation = await self._aggregator.get_aggregation(item_id)
        return self.compute(user_id, item, profile, aggregation)

    @staticmethod
    def _tags(user_id: str, item_id: str) -> Tuple[str, str]:
        return CacheKeys.item_tag(item_id), CacheKeys.user_tag(user_id)

    async def predict_difficulty(self, user_id: str, item_id: str) -> Optional[DifficultyPrediction]:
        """
        Predicted difficulty of an item for a learner.

        Args:
            user_id: Learner
            item_id: Item

        Returns:
            The prediction, or None when the item is unknown
        """
        cached = await get_or_recompute(
            self._cache,
            CacheKeys.prediction(user_id, item_id),
            lambda: self._recompute(user_id, item_id),
            self._settings.ttl,
            encode=DifficultyPrediction.to_dict,
            decode=DifficultyPrediction.from_dict,
            tags=self._tags(user_id, item_id),
            clock=self._clock
        )
        if cached is None:
            return None
        return replace(cached.value, expires_at=cached.expires_at)

    async def refresh_prediction(self, user_id: str, item_id: str) -> Optional[DifficultyPrediction]:
        """Recompute a prediction and overwrite the cached one."""
        prediction = await self._recompute(user_id, item_id)
        if prediction is None:
            return None
        fresh = Expiring.for_ttl(prediction, self._settings.ttl, self._clock())
        await self._cache.set_with_tags(
            CacheKeys.prediction(user_id, item_id),
            fresh.to_dict(DifficultyPrediction.to_dict),
            self._settings.ttl,
            self._tags(user_id, item_id),
            CacheLayer.L1
        )
        return replace(prediction, expires_at=fresh.expires_at)

    async def batch_update_predictions(self, pairs: Iterable[Tuple[str, str]]) -> int:
        """
        Recompute predictions for many (user, item) pairs.

        Work runs concurrently, bounded by ``batch_concurrency``. A failure
        on one pair is logged and does not stop the others.

        Args:
            pairs: (user_id, item_id) pairs

        Returns:
            Number of predictions refreshed
        """
        semaphore = asyncio.Semaphore(self._settings.batch_concurrency)

        async def refresh(user_id: str, item_id: str) -> bool:
            async with semaphore:
                return await self.refresh_prediction(user_id, item_id) is not None

        pairs = list(dict.fromkeys(pairs))
        results = await asyncio.gather(*(refresh(u, i) for u, i in pairs), return_exceptions=True)

        refreshed = 0
        for (user_id, item_id), result in zip(pairs, results):
            if isinstance(result, Exception):
                logger.error(f"Failed to refresh prediction for ({user_id}, {item_id}): {result}")
            elif result:
                refreshed += 1
        logger.info(f"Refreshed {refreshed}/{len(pairs)} difficulty predictions")
        return refreshed

    async def get_personalized_items(
        self,
        user_id: str,
        subject: Optional[str] = None,
        limit: int = 10
    ) -> List[DifficultyPrediction]:
        """
        Items that suit a learner, best fit first.

        Candidates have a baseline within ``PERSONALIZED_BAND`` of the
        learner's ideal difficulty; twice ``limit`` of them are predicted and
        the best ``limit`` by personalized score are kept.

        Args:
            user_id: Learner
            subject: Restrict candidates to one subject
            limit: Maximum number of items returned
        """
        if limit <= 0:
            return []
        profile = await self._profile_loader(user_id)
        candidates = await self._store.list_items(
            subject=subject,
            min_difficulty=profile.ideal_difficulty - PERSONALIZED_BAND,
            max_difficulty=profile.ideal_difficulty + PERSONALIZED_BAND,
            limit=limit * 2
        )

        predictions = []
        for item in candidates:
            prediction = await self.predict_difficulty(user_id, item.item_id)
            if prediction is not None:
                predictions.append(prediction)

        predictions.sort(key=lambda p: (-p.personalized_score, p.item_id))
        logger.debug(f"Selected {min(limit, len(predictions))} of {len(candidates)} candidate items for {user_id}")
        return predictions[:limit]

    async def invalidate_item(self, item_id: str) -> int:
        """Drop every cached prediction for an item."""
        return await self._cache.invalidate_by_tags([CacheKeys.item_tag(item_id)])

    async def invalidate_user(self, user_id: str) -> int:
        """Drop every cached prediction for a learner."""
        return await self._cache.invalidate_by_tags([CacheKeys.user_tag(user_id)])


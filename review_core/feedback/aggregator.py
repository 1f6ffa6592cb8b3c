"""
Feedback Aggregator Module

This module folds the stream of per-item learner feedback into rolling
window statistics and flags items whose difficulty needs recalibration.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from review_core.common.cache import CacheBackend, CacheError, CacheKeys
from review_core.common.config import FeedbackSettings
from review_core.common.exceptions import InvalidInputError
from review_core.domain.model import DifficultyFeedback, Urgency

from .queue import AdjustmentQueue

logger = logging.getLogger(__name__)


def _empty_counts() -> Dict[DifficultyFeedback, int]:
    return {kind: 0 for kind in DifficultyFeedback}


@dataclass
class FeedbackAggregation:
    """
    Rolling feedback statistics of one item.

    This is an approximate counter: concurrent writers race on
    read-modify-write and the last one wins, so counts may lag reality by
    the updates lost within one window. The window length bounds how stale
    the figures can get, since the record expires with its window.

    Attributes:
        item_id: Item the feedback is about
        window_start: Epoch seconds the window opened
        window_seconds: Window length (staleness bound)
        total_feedbacks: Feedback events in the window
        counts_by_kind: Events per feedback kind; sums to ``total_feedbacks``
        avg_response_time: Running mean of reported response times
        response_samples: Number of response times folded in
        success_rate: Running mean of reported correctness, if any
        correctness_samples: Number of correctness reports folded in
        needs_adjustment: Whether the item is flagged for recalibration
        urgency: Recalibration urgency
        last_updated: Epoch seconds of the latest event
    """
    item_id: str
    window_start: float
    window_seconds: int
    total_feedbacks: int = 0
    counts_by_kind: Dict[DifficultyFeedback, int] = field(default_factory=_empty_counts)
    avg_response_time: float = 0.0
    response_samples: int = 0
    success_rate: Optional[float] = None
    correctness_samples: int = 0
    needs_adjustment: bool = False
    urgency: Urgency = Urgency.LOW
    last_updated: Optional[float] = None

    @property
    def negative_rate(self) -> float:
        if not self.total_feedbacks:
            return 0.0
        negative = self.counts_by_kind[DifficultyFeedback.RETRY] + self.counts_by_kind[DifficultyFeedback.TOO_HARD]
        return negative / self.total_feedbacks

    @property
    def easy_rate(self) -> float:
        if not self.total_feedbacks:
            return 0.0
        return self.counts_by_kind[DifficultyFeedback.TOO_EASY] / self.total_feedbacks

    @property
    def window_end(self) -> float:
        return self.window_start + self.window_seconds

    def is_expired(self, now: float) -> bool:
        return now >= self.window_end

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "window_start": self.window_start,
            "window_seconds": self.window_seconds,
            "total_feedbacks": self.total_feedbacks,
            "counts_by_kind": {kind.value: count for kind, count in self.counts_by_kind.items()},
            "avg_response_time": self.avg_response_time,
            "response_samples": self.response_samples,
            "success_rate": self.success_rate,
            "correctness_samples": self.correctness_samples,
            "needs_adjustment": self.needs_adjustment,
            "urgency": self.urgency.value,
            "last_updated": self.last_updated
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeedbackAggregation":
        counts = _empty_counts()
        for kind, count in (data.get("counts_by_kind") or {}).items():
            counts[DifficultyFeedback(kind)] = int(count)
        success_rate = data.get("success_rate")
        return cls(
            item_id=data["item_id"],
            window_start=float(data["window_start"]),
            window_seconds=int(data["window_seconds"]),
            total_feedbacks=int(data.get("total_feedbacks", 0)),
            counts_by_kind=counts,
            avg_response_time=float(data.get("avg_response_time", 0.0)),
            response_samples=int(data.get("response_samples", 0)),
            success_rate=float(success_rate) if success_rate is not None else None,
            correctness_samples=int(data.get("correctness_samples", 0)),
            needs_adjustment=bool(data.get("needs_adjustment", False)),
            urgency=Urgency(data.get("urgency", Urgency.LOW.value)),
            last_updated=data.get("last_updated")
        )


class FeedbackAggregator:
    """
    Per-item feedback window with recalibration triggers.

    Each event updates ``aggregation:<itemId>`` in the cache. When the
    negative or easy share crosses its threshold the item is pushed onto
    the adjustment queue. If the cache cannot be reached the window is kept
    in process memory until it recovers.
    """

    def __init__(
        self,
        backend: CacheBackend,
        queue: Optional[AdjustmentQueue] = None,
        settings: Optional[FeedbackSettings] = None,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize the aggregator.

        Args:
            backend: Cache backend holding the windows
            queue: Queue flagged items are pushed onto
            settings: Window length and thresholds
            clock: Source of the current epoch time
        """
        self._backend = backend
        self._queue = queue
        self._settings = settings or FeedbackSettings()
        self._clock = clock
        self._local: Dict[str, FeedbackAggregation] = {}

    def _new_window(self, item_id: str, now: float) -> FeedbackAggregation:
        return FeedbackAggregation(item_id=item_id, window_start=now, window_seconds=self._settings.window_ttl)

    def classify(self, aggregation: FeedbackAggregation) -> None:
        """Recompute ``needs_adjustment`` and ``urgency`` from the current rates."""
        negative = aggregation.negative_rate
        aggregation.needs_adjustment = (
            negative > self._settings.negative_threshold
            or aggregation.easy_rate > self._settings.easy_threshold
        )
        # Inclusive, so a window that is exactly 80% negative is already urgent
        if negative >= self._settings.high_urgency_threshold:
            aggregation.urgency = Urgency.HIGH
        elif aggregation.needs_adjustment:
            aggregation.urgency = Urgency.MEDIUM
        else:
            aggregation.urgency = Urgency.LOW

    async def _read(self, item_id: str, now: float) -> Optional[FeedbackAggregation]:
        """Load the live window; ``None`` on a miss. Falls back locally when degraded."""
        result = await self._backend.get(CacheKeys.aggregation(item_id))
        if result.degraded:
            logger.warning(f"Aggregation cache unavailable for {item_id}, using local window: {result.error}")
            local = self._local.get(item_id)
            if local is not None and local.is_expired(now):
                del self._local[item_id]
                return None
            return local
        if not result.hit:
            return None
        try:
            aggregation = FeedbackAggregation.from_dict(result.value)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Discarding malformed aggregation for {item_id}: {e}")
            return None
        return None if aggregation.is_expired(now) else aggregation

    async def _write(self, aggregation: FeedbackAggregation, now: float) -> None:
        ttl = max(1, int(aggregation.window_end - now))
        result = await self._backend.set(CacheKeys.aggregation(aggregation.item_id), aggregation.to_dict(), ttl)
        if result.success:
            self._local.pop(aggregation.item_id, None)
            return
        logger.warning(f"Failed to store aggregation for {aggregation.item_id}, keeping it locally: {result.error}")
        self._local[aggregation.item_id] = aggregation

    async def record_feedback(
        self,
        item_id: str,
        feedback: Any,
        response_time: Optional[float] = None,
        is_correct: Optional[bool] = None
    ) -> FeedbackAggregation:
        """
        Fold one feedback event into the item's window.

        Args:
            item_id: Item the feedback is about
            feedback: DifficultyFeedback or ReviewFeedback member, or its name
            response_time: Seconds the learner took, if known
            is_correct: Whether the learner answered correctly, if known

        Returns:
            The updated aggregation

        Raises:
            InvalidInputError: Unknown feedback kind or negative response time
        """
        kind = DifficultyFeedback.parse(feedback)
        if response_time is not None and response_time < 0:
            raise InvalidInputError(
                f"Response time must not be negative, got {response_time}",
                {"response_time": response_time}
            )

        now = self._clock()
        aggregation = await self._read(item_id, now) or self._new_window(item_id, now)

        aggregation.total_feedbacks += 1
        aggregation.counts_by_kind[kind] += 1

        if response_time is not None:
            aggregation.response_samples += 1
            aggregation.avg_response_time += (
                (response_time - aggregation.avg_response_time) / aggregation.response_samples
            )

        if is_correct is not None:
            aggregation.correctness_samples += 1
            current = aggregation.success_rate or 0.0
            aggregation.success_rate = current + ((1.0 if is_correct else 0.0) - current) / aggregation.correctness_samples

        aggregation.last_updated = now
        self.classify(aggregation)
        await self._write(aggregation, now)

        if aggregation.needs_adjustment and aggregation.urgency is not Urgency.LOW and self._queue is not None:
            await self._queue.enqueue(item_id, aggregation.urgency)

        return aggregation

    async def get_aggregation(self, item_id: str) -> Optional[FeedbackAggregation]:
        """Current window of an item, or None when it has no recent feedback."""
        return await self._read(item_id, self._clock())

    async def reset(self, item_id: str) -> None:
        """Discard an item's window, typically after recalibrating it."""
        self._local.pop(item_id, None)
        try:
            await self._backend.delete(CacheKeys.aggregation(item_id))
        except CacheError as e:
            logger.warning(f"Failed to reset aggregation for {item_id}: {e}")
            return
        logger.debug(f"Reset feedback window for {item_id}")

"""
Adjustment Consumer Module

This module drains the adjustment queue: each leased item gets its baseline
difficulty recalibrated from the feedback window that flagged it, and the
predictions that depended on the old baseline are refreshed.
"""

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from review_core.common.config import PredictionSettings
from review_core.common.logger import with_context
from review_core.domain.model import DifficultyAdjustment, ItemDifficulty
from review_core.domain.repository import ReviewStore
from review_core.prediction.predictor import DifficultyPredictor, clamp_difficulty

from .aggregator import FeedbackAggregation, FeedbackAggregator
from .queue import AdjustmentQueue, Lease

logger = logging.getLogger(__name__)


@dataclass
class ProcessedItem:
    """Outcome of one processed queue entry."""
    item_id: str
    urgency: str
    adjustment: Optional[DifficultyAdjustment] = None
    refreshed_predictions: int = 0


def recalibration_delta(aggregation: FeedbackAggregation, settings: PredictionSettings) -> float:
    """
    Baseline shift suggested by one feedback window.

    The feedback balance (negative share minus easy share) moves the
    baseline by up to one ``adjustment_step`` either way; correctness
    outside the target band adds half a step more. Positive means harder.
    """
    delta = (aggregation.negative_rate - aggregation.easy_rate) * settings.adjustment_step

    if aggregation.success_rate is not None and aggregation.correctness_samples >= settings.min_samples:
        if aggregation.success_rate < settings.target_success_low:
            delta += settings.adjustment_step / 2
        elif aggregation.success_rate > settings.target_success_high:
            delta -= settings.adjustment_step / 2

    return round(delta, 2)


class AdjustmentConsumer:
    """
    Worker that recalibrates items taken from the adjustment queue.

    A failure while processing an item hands its lease back to the queue,
    which retries it a bounded number of times.
    """

    def __init__(
        self,
        queue: AdjustmentQueue,
        aggregator: FeedbackAggregator,
        store: ReviewStore,
        predictor: DifficultyPredictor,
        settings: Optional[PredictionSettings] = None,
        consumer_id: Optional[str] = None,
        clock: Callable[[], float] = time.time
    ):
        self._queue = queue
        self._aggregator = aggregator
        self._store = store
        self._predictor = predictor
        self._settings = settings or PredictionSettings()
        self.consumer_id = consumer_id or f"consumer-{uuid.uuid4().hex[:8]}"
        self._clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), timezone.utc)

    async def recalibrate(self, item_id: str, urgency: str) -> ProcessedItem:
        """
        Recalibrate one item from its current feedback window.

        Args:
            item_id: Item to recalibrate
            urgency: Tier the item was taken from, for the audit record

        Returns:
            What was changed
        """
        processed = ProcessedItem(item_id=item_id, urgency=urgency)

        aggregation = await self._aggregator.get_aggregation(item_id)
        if aggregation is None or not aggregation.total_feedbacks:
            logger.info(f"No feedback window left for {item_id}; nothing to recalibrate")
            return processed

        now = self._now()
        item = await self._store.get_item(item_id)
        if item is None:
            item = ItemDifficulty(item_id=item_id, baseline_difficulty=self._settings.default_baseline, updated_at=now)

        previous = item.baseline_difficulty
        new = round(clamp_difficulty(previous + recalibration_delta(aggregation, self._settings)), 2)

        if new != previous:
            item.baseline_difficulty = new
            item.updated_at = now
            await self._store.save_item(item)
            processed.adjustment = await self._store.record_adjustment(DifficultyAdjustment(
                item_id=item_id,
                previous_difficulty=previous,
                new_difficulty=new,
                reason=(
                    f"negative_rate={aggregation.negative_rate:.2f} "
                    f"easy_rate={aggregation.easy_rate:.2f} "
                    f"success_rate={aggregation.success_rate}"
                ),
                urgency=urgency,
                feedback_count=aggregation.total_feedbacks,
                created_at=now
            ))
            logger.info(f"Recalibrated {item_id}: {previous} -> {new} ({urgency})")

        await self._aggregator.reset(item_id)
        await self._predictor.invalidate_item(item_id)

        since = now - timedelta(days=self._settings.recent_user_days)
        users = await self._store.list_recent_users(item_id, since)
        if users:
            processed.refreshed_predictions = await self._predictor.batch_update_predictions(
                (user_id, item_id) for user_id in users
            )
        return processed

    async def process_next(self) -> Optional[ProcessedItem]:
        """
        Lease and process the most urgent queued item.

        Returns:
            The outcome, or None when nothing was processed
        """
        lease = await self._queue.dequeue_next(self.consumer_id)
        if lease is None:
            return None
        return await self._process(lease)

    async def _process(self, lease: Lease) -> Optional[ProcessedItem]:
        try:
            processed = await self.recalibrate(lease.item_id, lease.urgency.value)
        except Exception as e:
            log = with_context(__name__, item_id=lease.item_id, consumer_id=self.consumer_id)
            log.exception(f"Recalibration failed (attempt {lease.attempts + 1})")
            await self._queue.fail(lease, e)
            return None

        await self._queue.complete(lease)
        return processed

    async def drain(self, max_items: int = 50) -> List[ProcessedItem]:
        """
        Process queued items until the queue is empty or ``max_items`` were taken.

        Returns:
            Outcomes of the successfully processed items
        """
        processed = []
        for _ in range(max_items):
            lease = await self._queue.dequeue_next(self.consumer_id)
            if lease is None:
                break
            outcome = await self._process(lease)
            if outcome is not None:
                processed.append(outcome)

        if processed:
            logger.info(f"{self.consumer_id} processed {len(processed)} queued items")
        return processed

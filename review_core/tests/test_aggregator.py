from unittest.mock import AsyncMock

import pytest

from review_core.common.cache import CacheKeys, CacheResult
from review_core.common.exceptions import InvalidInputError
from review_core.domain.model import DifficultyFeedback, Urgency
from review_core.feedback import AdjustmentQueue, FeedbackAggregation, FeedbackAggregator


@pytest.fixture
def queue(backend, clock):
    return AdjustmentQueue(backend, clock=clock)


@pytest.fixture
def aggregator(backend, queue, clock):
    return FeedbackAggregator(backend, queue, clock=clock)


async def record_many(aggregator, item_id, kinds):
    aggregation = None
    for kind in kinds:
        aggregation = await aggregator.record_feedback(item_id, kind)
    return aggregation


@pytest.mark.asyncio
async def test_mostly_negative_window_is_high_urgency(aggregator, queue):
    kinds = ["retry"] * 6 + ["too_hard"] * 2 + ["just_right"] * 2
    aggregation = await record_many(aggregator, "item-x", kinds)

    assert aggregation.total_feedbacks == 10
    assert aggregation.negative_rate == pytest.approx(0.8)
    assert aggregation.needs_adjustment
    assert aggregation.urgency is Urgency.HIGH

    entry = await queue.get_entry("item-x")
    assert entry is not None
    assert entry.urgency is Urgency.HIGH
    assert (await queue.status())["high"] == 1


@pytest.mark.asyncio
async def test_review_outcomes_are_accepted(aggregator):
    kinds = ["retry"] * 6 + ["hard"] * 2 + ["good"] * 2
    aggregation = await record_many(aggregator, "item-x", kinds)

    assert aggregation.counts_by_kind[DifficultyFeedback.TOO_HARD] == 2
    assert aggregation.counts_by_kind[DifficultyFeedback.JUST_RIGHT] == 2
    assert aggregation.urgency is Urgency.HIGH


@pytest.mark.asyncio
async def test_counts_sum_to_total(aggregator):
    kinds = ["retry", "too_easy", "just_right", "too_hard", "too_easy"]
    aggregation = await record_many(aggregator, "item-1", kinds)

    assert sum(aggregation.counts_by_kind.values()) == aggregation.total_feedbacks == 5
    assert aggregation.counts_by_kind[DifficultyFeedback.TOO_EASY] == 2


@pytest.mark.asyncio
async def test_balanced_window_is_not_flagged(aggregator, queue):
    kinds = ["just_right"] * 7 + ["retry"] * 3
    aggregation = await record_many(aggregator, "item-1", kinds)

    assert not aggregation.needs_adjustment
    assert aggregation.urgency is Urgency.LOW
    assert await queue.get_entry("item-1") is None


@pytest.mark.asyncio
async def test_easy_window_is_medium_urgency(aggregator, queue):
    aggregation = await record_many(aggregator, "item-1", ["too_easy"] * 8 + ["just_right"] * 2)

    assert aggregation.needs_adjustment
    assert aggregation.urgency is Urgency.MEDIUM
    assert (await queue.get_entry("item-1")).urgency is Urgency.MEDIUM


@pytest.mark.asyncio
async def test_running_averages(aggregator):
    await aggregator.record_feedback("item-1", "just_right", response_time=10, is_correct=True)
    await aggregator.record_feedback("item-1", "too_hard", response_time=20, is_correct=False)
    aggregation = await aggregator.record_feedback("item-1", "just_right", is_correct=True)

    assert aggregation.avg_response_time == pytest.approx(15.0)
    assert aggregation.response_samples == 2
    assert aggregation.success_rate == pytest.approx(2 / 3)
    assert aggregation.correctness_samples == 3


@pytest.mark.asyncio
async def test_invalid_input(aggregator):
    with pytest.raises(InvalidInputError):
        await aggregator.record_feedback("item-1", "meh")
    with pytest.raises(InvalidInputError):
        await aggregator.record_feedback("item-1", "retry", response_time=-2)
    assert await aggregator.get_aggregation("item-1") is None


@pytest.mark.asyncio
async def test_window_expires(aggregator, clock):
    await aggregator.record_feedback("item-1", "retry")
    clock.advance(299)
    assert (await aggregator.get_aggregation("item-1")).total_feedbacks == 1

    clock.advance(1)
    assert await aggregator.get_aggregation("item-1") is None
    aggregation = await aggregator.record_feedback("item-1", "just_right")
    assert aggregation.total_feedbacks == 1
    assert aggregation.window_start == clock()


@pytest.mark.asyncio
async def test_reset(aggregator, backend):
    await aggregator.record_feedback("item-1", "retry")
    await aggregator.reset("item-1")
    assert not await backend.has(CacheKeys.aggregation("item-1"))


@pytest.mark.asyncio
async def test_degraded_cache_keeps_local_window(clock):
    backend = AsyncMock()
    backend.get.return_value = CacheResult(success=False, error="down", degraded=True)
    backend.set.return_value = CacheResult(success=False, error="down", degraded=True)
    aggregator = FeedbackAggregator(backend, clock=clock)

    await aggregator.record_feedback("item-1", "retry")
    aggregation = await aggregator.record_feedback("item-1", "too_hard")

    assert aggregation.total_feedbacks == 2
    assert (await aggregator.get_aggregation("item-1")).total_feedbacks == 2


def test_aggregation_serialization():
    aggregation = FeedbackAggregation(item_id="item-1", window_start=100.0, window_seconds=300)
    aggregation.total_feedbacks = 2
    aggregation.counts_by_kind[DifficultyFeedback.RETRY] = 2
    aggregation.urgency = Urgency.HIGH

    restored = FeedbackAggregation.from_dict(aggregation.to_dict())
    assert restored == aggregation
    assert restored.window_end == 400.0

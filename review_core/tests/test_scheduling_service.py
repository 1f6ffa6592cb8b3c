import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from review_core.common.cache import CacheKeys, TieredCache
from review_core.common.config import SchedulingSettings
from review_core.common.exceptions import ConflictError, InvalidInputError, NotFoundError, StoreError
from review_core.domain.model import ReviewFeedback, ReviewStatus
from review_core.scheduling import ReviewSchedulingService


@pytest.fixture
def cache(backend):
    return TieredCache(backend)


@pytest.fixture
def service(store, cache, clock):
    return ReviewSchedulingService(store, cache=cache, clock=clock)


@pytest.mark.asyncio
async def test_schedule_review_uses_profile_level(service, store, clock):
    schedule = await service.schedule_review("u1", "item-1")

    assert schedule.status is ReviewStatus.SCHEDULED
    assert schedule.current_level == 1
    assert schedule.scheduled_at == clock.as_datetime() + timedelta(minutes=20)
    assert await store.get_pending_schedule("u1", "item-1") == schedule


@pytest.mark.asyncio
async def test_schedule_review_twice_conflicts(service):
    await service.schedule_review("u1", "item-1")
    with pytest.raises(ConflictError):
        await service.schedule_review("u1", "item-1")


@pytest.mark.asyncio
async def test_schedule_review_rejects_bad_input(service):
    with pytest.raises(InvalidInputError):
        await service.schedule_review("", "item-1")
    with pytest.raises(InvalidInputError):
        await service.schedule_review("u1", "item-1", level=9)


@pytest.mark.asyncio
async def test_complete_good_at_level_three(service, store, clock):
    schedule = await service.schedule_review("u1", "item-1", level=3)
    clock.advance(8 * 3600)

    result = await service.complete_review(schedule.id, "good", response_time=12)

    assert result.next_schedule.current_level == 4
    assert result.next_schedule.status is ReviewStatus.SCHEDULED
    assert result.next_schedule.previous_schedule_id == schedule.id
    assert result.next_schedule.scheduled_at == clock.as_datetime() + timedelta(days=1)

    closed = await store.get_schedule(schedule.id)
    assert closed.status is ReviewStatus.COMPLETED
    assert closed.is_success is True
    assert closed.response_time == 12
    assert closed.next_scheduled_at == result.next_schedule.scheduled_at

    pending = await store.get_pending_schedule("u1", "item-1")
    assert pending.id == result.next_schedule.id


@pytest.mark.asyncio
async def test_completing_twice_conflicts(service, store):
    schedule = await service.schedule_review("u1", "item-1")
    result = await service.complete_review(schedule.id, ReviewFeedback.EASY)

    with pytest.raises(ConflictError):
        await service.complete_review(schedule.id, ReviewFeedback.EASY)

    pending = await store.list_pending_schedules("u1")
    assert [s.id for s in pending] == [result.next_schedule.id]


@pytest.mark.asyncio
async def test_complete_unknown_schedule(service):
    with pytest.raises(NotFoundError):
        await service.complete_review("missing", "good")


@pytest.mark.asyncio
async def test_invalid_outcome_changes_nothing(service, store):
    schedule = await service.schedule_review("u1", "item-1")

    with pytest.raises(InvalidInputError):
        await service.complete_review(schedule.id, "so-so")
    with pytest.raises(InvalidInputError):
        await service.complete_review(schedule.id, "good", response_time=-1)
    with pytest.raises(InvalidInputError):
        await service.complete_review(schedule.id, "good", confidence_level=6)

    stored = await store.get_schedule(schedule.id)
    assert stored.status is ReviewStatus.SCHEDULED


@pytest.mark.asyncio
async def test_failure_decrements_level(service, clock):
    schedule = await service.schedule_review("u1", "item-1", level=4)
    result = await service.complete_review(schedule.id, "retry")

    assert result.next_schedule.current_level == 3
    assert result.next_schedule.scheduled_at == clock.as_datetime() + timedelta(hours=8)
    assert result.profile_delta.success is False


@pytest.mark.asyncio
async def test_reset_policy(store, cache, clock):
    service = ReviewSchedulingService(
        store, cache=cache, settings=SchedulingSettings(failure_policy="reset"), clock=clock
    )
    schedule = await service.schedule_review("u1", "item-1", level=6)
    result = await service.complete_review(schedule.id, "hard")
    assert result.next_schedule.current_level == 1


@pytest.mark.asyncio
async def test_score_ratio_overrides_hard(service):
    schedule = await service.schedule_review("u1", "item-1", level=2)
    result = await service.complete_review(schedule.id, "hard", score=8, max_score=10)
    assert result.next_schedule.current_level == 3


@pytest.mark.asyncio
async def test_concurrent_completions_only_one_wins(service, store):
    schedule = await service.schedule_review("u1", "item-1")

    results = await asyncio.gather(
        service.complete_review(schedule.id, "good"),
        service.complete_review(schedule.id, "good"),
        return_exceptions=True
    )

    assert sum(1 for r in results if isinstance(r, ConflictError)) == 1
    assert len(await store.list_pending_schedules("u1")) == 1


@pytest.mark.asyncio
async def test_default_profile_is_created_and_cached(service, store, cache):
    profile = await service.get_profile("u1")

    assert profile.retention_factor == 0.9
    assert profile.initial_level == 1
    assert await store.get_profile("u1") is not None
    assert (await cache.get(CacheKeys.profile("u1"))).hit


@pytest.mark.asyncio
async def test_completion_updates_profile_and_drops_cached_copy(service, cache):
    schedule = await service.schedule_review("u1", "item-1")
    await service.complete_review(schedule.id, "good", subject="algebra")

    assert not (await cache.get(CacheKeys.profile("u1"))).hit
    profile = await service.get_profile("u1")
    assert profile.success_count == 1
    assert profile.success_rate == 1.0
    assert profile.difficulty_adjustments["algebra"] < 0


@pytest.mark.asyncio
async def test_skip_closes_without_successor(service, store):
    schedule = await service.schedule_review("u1", "item-1")
    skipped = await service.skip_review(schedule.id)

    assert skipped.status is ReviewStatus.SKIPPED
    assert await store.get_pending_schedule("u1", "item-1") is None
    with pytest.raises(ConflictError):
        await service.skip_review(schedule.id)


@pytest.mark.asyncio
async def test_sweep_flags_overdue_without_changing_level(service, store, clock):
    first = await service.schedule_review("u1", "item-1", level=1)
    second = await service.schedule_review("u1", "item-2", level=5)

    clock.advance(3600)
    assert await service.sweep_overdue() == 1
    assert await service.sweep_overdue() == 0

    flagged = await store.get_schedule(first.id)
    assert flagged.status is ReviewStatus.OVERDUE
    assert flagged.current_level == 1
    assert (await store.get_schedule(second.id)).status is ReviewStatus.SCHEDULED


@pytest.mark.asyncio
async def test_sweep_grace_period(service, clock):
    await service.schedule_review("u1", "item-1", level=1)
    clock.advance(30 * 60)
    assert await service.sweep_overdue(grace_seconds=3600) == 0
    assert await service.sweep_overdue(grace_seconds=0) == 1


@pytest.mark.asyncio
async def test_overdue_schedule_can_be_completed(service, clock):
    schedule = await service.schedule_review("u1", "item-1")
    clock.advance(7200)
    await service.sweep_overdue()

    result = await service.complete_review(schedule.id, "good")
    assert result.previous_schedule.status is ReviewStatus.COMPLETED
    assert result.next_schedule.current_level == 2


@pytest.mark.asyncio
async def test_due_reviews_put_overdue_first(service, clock):
    await service.schedule_review("u1", "item-1", level=1)
    await service.schedule_review("u1", "item-2", level=2)
    await service.schedule_review("u1", "item-y", level=8)

    clock.advance(30 * 60)
    await service.sweep_overdue()
    clock.advance(45 * 60)

    due = await service.get_due_reviews("u1")
    assert [s.item_id for s in due] == ["item-1", "item-2"]
    assert due[0].status is ReviewStatus.OVERDUE


@pytest.mark.asyncio
async def test_schedule_stats(service, clock):
    await service.schedule_review("u1", "item-1", level=1)
    await service.schedule_review("u1", "item-2", level=5)
    clock.advance(3600)
    await service.sweep_overdue()

    stats = await service.get_schedule_stats("u1")
    assert stats["total_pending"] == 2
    assert stats["overdue"] == 1
    assert stats["due_now"] == 1
    assert stats["due_this_week"] == 2
    assert stats["by_level"] == {1: 1, 5: 1}


@pytest.mark.asyncio
async def test_profile_write_failure_after_commit_keeps_completion(store, cache, clock):
    aggregator = AsyncMock()
    service = ReviewSchedulingService(store, cache=cache, aggregator=aggregator, clock=clock)
    schedule = await service.schedule_review("u1", "item-1")

    with patch.object(store, "save_profile", side_effect=StoreError("disk full")):
        result = await service.complete_review(schedule.id, "good")

    assert result.profile_delta is None
    assert result.to_dict()["profile_delta"] is None
    assert (await store.get_schedule(schedule.id)).status is ReviewStatus.COMPLETED
    assert (await store.get_pending_schedule("u1", "item-1")).id == result.next_schedule.id
    aggregator.record_feedback.assert_awaited_once()


@pytest.mark.asyncio
async def test_completion_records_retention_at_review(service, store, clock):
    schedule = await service.schedule_review("u1", "item-1")
    clock.advance(20 * 60)

    result = await service.complete_review(schedule.id, "good")

    closed = await store.get_schedule(schedule.id)
    assert closed.retention_rate == 0.58
    assert result.previous_schedule.retention_rate == 0.58
    assert closed.difficulty_score_at_review is None
    assert result.next_schedule.retention_rate is None


@pytest.mark.asyncio
async def test_schedule_by_time_range(service, clock):
    await service.schedule_review("u1", "item-1", level=1)
    await service.schedule_review("u1", "item-2", level=3)
    await service.schedule_review("u1", "item-y", level=5)
    now = clock.as_datetime()

    within_hour = await service.get_schedule_by_time_range("u1", now, now + timedelta(hours=1))
    assert [r.schedule.item_id for r in within_hour] == ["item-1"]

    inclusive = await service.get_schedule_by_time_range("u1", now + timedelta(minutes=20), now + timedelta(hours=8))
    assert [r.schedule.item_id for r in inclusive] == ["item-1", "item-2"]
    assert inclusive[0].is_overdue is False
    assert inclusive[0].retention_rate == 1.0

    clock.advance(80 * 60)
    late = await service.get_schedule_by_time_range("u1", now, now + timedelta(hours=1))
    assert late[0].is_overdue is True
    assert late[0].overdue_hours == 1.0
    assert late[0].to_dict()["schedule"]["item_id"] == "item-1"

    with pytest.raises(InvalidInputError):
        await service.get_schedule_by_time_range("u1", now + timedelta(hours=1), now)

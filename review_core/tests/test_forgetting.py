import datetime

import pytest

from review_core.common.exceptions import InvalidInputError
from review_core.domain.model import ForgettingCurveProfile, ReviewFeedback, ReviewSchedule, ReviewStatus
from review_core.scheduling import LEVEL_INTERVALS, FailurePolicy, ForgettingCurveModel

NOW = datetime.datetime(2024, 3, 1, 12, 0, tzinfo=datetime.timezone.utc)


def test_intervals_strictly_increase():
    intervals = [LEVEL_INTERVALS[level] for level in range(1, 9)]
    assert intervals == sorted(intervals)
    assert len(set(intervals)) == 8
    assert LEVEL_INTERVALS[1] == datetime.timedelta(minutes=20)
    assert LEVEL_INTERVALS[8] == datetime.timedelta(days=30)


def test_rejects_non_increasing_intervals():
    intervals = dict(LEVEL_INTERVALS)
    intervals[5] = intervals[4]
    with pytest.raises(ValueError):
        ForgettingCurveModel(intervals=intervals)


@pytest.mark.parametrize("level,expected", [(1, 2), (3, 4), (7, 8), (8, 8)])
def test_success_moves_up_capped(level, expected):
    assert ForgettingCurveModel().next_level(level, True) == expected


@pytest.mark.parametrize("policy,level,expected", [
    (FailurePolicy.DECREMENT, 5, 4),
    (FailurePolicy.DECREMENT, 1, 1),
    (FailurePolicy.RESET, 6, 1),
    (FailurePolicy.HOLD, 6, 6),
])
def test_failure_policies(policy, level, expected):
    assert ForgettingCurveModel(failure_policy=policy).next_level(level, False) == expected


@pytest.mark.parametrize("level", [0, 9, -1, "3", True])
def test_out_of_range_level(level):
    with pytest.raises(InvalidInputError):
        ForgettingCurveModel().next_level(level, True)


def test_transition_good_at_level_three():
    transition = ForgettingCurveModel().transition(3, ReviewFeedback.GOOD, NOW)
    assert transition.success
    assert transition.new_level == 4
    assert transition.level_change == 1
    assert transition.next_scheduled_at == NOW + datetime.timedelta(days=1)


def test_score_ratio_counts_as_success():
    model = ForgettingCurveModel()
    assert model.is_success(ReviewFeedback.HARD, score=7, max_score=10)
    assert not model.is_success(ReviewFeedback.HARD, score=6.9, max_score=10)
    assert not model.is_success(ReviewFeedback.RETRY)
    assert model.is_success(ReviewFeedback.EASY, score=0, max_score=10)


def test_retention_decays_to_level_rate():
    model = ForgettingCurveModel()
    assert model.estimate_retention(1, datetime.timedelta(0)) == 1.0
    at_interval = model.estimate_retention(1, LEVEL_INTERVALS[1])
    assert at_interval == pytest.approx(0.58)
    assert model.estimate_retention(1, LEVEL_INTERVALS[1] * 2) < at_interval
    assert model.estimate_retention(1, LEVEL_INTERVALS[1], retention_factor=1.2) > at_interval


def test_first_review_sets_success_rate():
    profile = ForgettingCurveProfile.default("u1")
    updated, delta = ForgettingCurveModel().update_profile(profile, True, now=NOW)
    assert updated.success_rate == 1.0
    assert updated.success_count == 1
    assert delta.counters == {"success_count": 1, "failure_count": 0}
    assert profile.success_count == 0


def test_success_rate_is_moving_average():
    profile = ForgettingCurveProfile(user_id="u1", success_count=2, success_rate=1.0)
    updated, _ = ForgettingCurveModel().update_profile(profile, False, now=NOW)
    assert updated.success_rate == pytest.approx(0.7)
    assert updated.failure_count == 1


def test_retention_factor_drifts_with_success_rate():
    model = ForgettingCurveModel()

    strong = ForgettingCurveProfile(user_id="u1", success_count=5, success_rate=0.9, retention_factor=1.0)
    updated, delta = model.update_profile(strong, True, now=NOW)
    assert updated.retention_factor == pytest.approx(1.05)
    assert delta.retention_factor_after > delta.retention_factor_before

    weak = ForgettingCurveProfile(user_id="u2", failure_count=5, success_rate=0.2, retention_factor=0.52)
    updated, _ = model.update_profile(weak, False, now=NOW)
    assert updated.retention_factor == 0.5


def test_subject_adjustment_moves_with_outcome():
    model = ForgettingCurveModel()
    profile = ForgettingCurveProfile.default("u1")

    easier, delta = model.update_profile(profile, True, response_time=2, confidence_level=5, subject="algebra", now=NOW)
    assert easier.difficulty_adjustments["algebra"] < 0
    assert delta.subject_adjustment_after == easier.difficulty_adjustments["algebra"]

    harder, _ = model.update_profile(profile, False, response_time=90, confidence_level=1, subject="algebra", now=NOW)
    assert harder.difficulty_adjustments["algebra"] > 0
    assert -2.0 <= harder.difficulty_adjustments["algebra"] <= 2.0


def test_review_priority_weights():
    model = ForgettingCurveModel()
    fresh = ReviewSchedule.create("u1", "a", 1, NOW + datetime.timedelta(minutes=20), created_at=NOW)

    # nothing forgotten yet; difficulty 5, due in 20 minutes, no successes, no previous review
    assert model.review_priority(fresh, NOW) == 39.43
    assert model.review_priority(fresh, NOW, success_rate=1.0) == 29.43
    assert model.review_priority(fresh, NOW, difficulty=9.0) == 49.43


def test_late_reviews_rank_above_upcoming_ones():
    model = ForgettingCurveModel()
    upcoming = ReviewSchedule.create("u1", "a", 1, NOW + datetime.timedelta(minutes=20), created_at=NOW)
    late = ReviewSchedule.create(
        "u1", "b", 1, NOW - datetime.timedelta(hours=1), created_at=NOW - datetime.timedelta(minutes=80)
    )
    late.status = ReviewStatus.OVERDUE
    assert model.review_priority(late, NOW) > model.review_priority(upcoming, NOW)


def test_review_priority_uses_recorded_difficulty_and_previous_review():
    model = ForgettingCurveModel()
    due = NOW + datetime.timedelta(minutes=20)
    plain = ReviewSchedule.create("u1", "a", 1, due, created_at=NOW)
    hard = ReviewSchedule.create("u1", "a", 1, due, created_at=NOW, difficulty_score=8.0)
    assert model.review_priority(hard, NOW) - model.review_priority(plain, NOW) == pytest.approx(7.5)

    # a successor opened just now was reviewed moments ago
    successor = ReviewSchedule.create("u1", "a", 1, due, previous_schedule_id="s0", created_at=NOW)
    assert model.review_priority(successor, NOW) == pytest.approx(model.review_priority(plain, NOW) - 7.0)

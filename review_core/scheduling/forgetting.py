"""
Forgetting Curve Model

This module implements the level-based forgetting curve used to space
reviews. Each (user, item) pair sits on one of eight levels bound to a
fixed re-test interval; a successful recall moves it up, a failed one moves
it according to the configured failure policy.
"""

import enum
import math
import datetime
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, Tuple

from review_core.common.logger import app_logger
from review_core.domain.model import (
    MAX_LEVEL,
    MIN_LEVEL,
    ForgettingCurveProfile,
    ReviewFeedback,
    ReviewSchedule,
    validate_level,
)

logger = app_logger.getChild("scheduling.forgetting")

LEVEL_INTERVALS: Dict[int, datetime.timedelta] = {
    1: datetime.timedelta(minutes=20),
    2: datetime.timedelta(hours=1),
    3: datetime.timedelta(hours=8),
    4: datetime.timedelta(days=1),
    5: datetime.timedelta(days=3),
    6: datetime.timedelta(days=7),
    7: datetime.timedelta(days=14),
    8: datetime.timedelta(days=30),
}

# Expected retention at the end of each level's interval for a learner
# with the default retention factor
BASE_RETENTION_RATES: Dict[int, float] = {
    1: 0.58,
    2: 0.44,
    3: 0.36,
    4: 0.33,
    5: 0.28,
    6: 0.25,
    7: 0.21,
    8: 0.18,
}

DEFAULT_RETENTION_FACTOR = 0.9
RETENTION_FACTOR_RANGE = (0.5, 1.5)
SUBJECT_ADJUSTMENT_RANGE = (-2.0, 2.0)
PERFORMANCE_FACTOR_RANGE = (0.1, 2.0)

PRIORITY_WEIGHTS: Dict[str, float] = {
    "retention": 0.35,
    "difficulty": 0.25,
    "overdue": 0.20,
    "frequency": 0.10,
    "recency": 0.10,
}

# Assumed gap when a cycle has no previous review
DEFAULT_RECENCY_DAYS = 7


class FailurePolicy(enum.Enum):
    """What a failed recall does to the level."""
    DECREMENT = "decrement"    # drop one level, floored at 1
    RESET = "reset"            # back to level 1
    HOLD = "hold"              # stay on the current level


@dataclass(frozen=True)
class Transition:
    """Outcome of applying one review to a level."""
    success: bool
    previous_level: int
    new_level: int
    next_scheduled_at: datetime.datetime

    @property
    def level_change(self) -> int:
        return self.new_level - self.previous_level


@dataclass
class ProfileDelta:
    """Changes a completion made to a learner profile."""
    success: bool
    retention_factor_before: float
    retention_factor_after: float
    success_rate_before: float
    success_rate_after: float
    subject: Optional[str] = None
    subject_adjustment_before: float = 0.0
    subject_adjustment_after: float = 0.0
    counters: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "retention_factor": {"before": self.retention_factor_before, "after": self.retention_factor_after},
            "success_rate": {"before": self.success_rate_before, "after": self.success_rate_after},
            "subject": self.subject,
            "subject_adjustment": {"before": self.subject_adjustment_before, "after": self.subject_adjustment_after},
            "counters": dict(self.counters),
        }


def response_time_factor(response_time: Optional[float]) -> float:
    """Quick answers indicate stronger recall."""
    if response_time is None:
        return 1.0
    if response_time <= 3:
        return 1.3
    if response_time <= 10:
        return 1.1
    if response_time <= 30:
        return 1.0
    if response_time <= 60:
        return 0.9
    return 0.8


def confidence_factor(confidence_level: Optional[int]) -> float:
    """Self-reported confidence on a 1-5 scale; 3 is neutral-ish."""
    if confidence_level is None:
        return 1.0
    return 0.8 + (confidence_level - 1) * 0.1


def _clamp(value: float, bounds: Tuple[float, float]) -> float:
    return min(max(value, bounds[0]), bounds[1])


class ForgettingCurveModel:
    """
    Level-based forgetting curve.

    Decides level transitions and due dates, estimates retention and keeps
    learner profiles up to date after each completed review.
    """

    def __init__(
        self,
        failure_policy: FailurePolicy = FailurePolicy.DECREMENT,
        success_score_ratio: float = 0.7,
        intervals: Optional[Dict[int, datetime.timedelta]] = None
    ):
        """
        Initialize the model.

        Args:
            failure_policy: Level change applied on a failed recall
            success_score_ratio: Fraction of the maximum score that counts as success
            intervals: Interval per level, strictly increasing with the level
        """
        self.failure_policy = failure_policy
        self.success_score_ratio = success_score_ratio
        self.intervals = dict(intervals or LEVEL_INTERVALS)

        ordered = [self.intervals[level] for level in range(MIN_LEVEL, MAX_LEVEL + 1)]
        if any(later <= earlier for earlier, later in zip(ordered, ordered[1:])):
            raise ValueError("Level intervals must be strictly increasing")

    def interval(self, level: int) -> datetime.timedelta:
        """Re-test interval bound to ``level``."""
        return self.intervals[validate_level(level)]

    def is_success(
        self,
        feedback: ReviewFeedback,
        score: Optional[float] = None,
        max_score: Optional[float] = None
    ) -> bool:
        """
        Classify a review outcome.

        A GOOD or EASY answer is a success, as is a score of at least
        ``success_score_ratio`` of ``max_score`` when a score is given.
        """
        if feedback.is_success:
            return True
        if score is not None and max_score:
            return score / max_score >= self.success_score_ratio
        return False

    def next_level(self, level: int, success: bool) -> int:
        """Level after one review."""
        validate_level(level)
        if success:
            return min(level + 1, MAX_LEVEL)
        if self.failure_policy is FailurePolicy.RESET:
            return MIN_LEVEL
        if self.failure_policy is FailurePolicy.HOLD:
            return level
        return max(level - 1, MIN_LEVEL)

    def transition(
        self,
        level: int,
        feedback: ReviewFeedback,
        now: datetime.datetime,
        score: Optional[float] = None,
        max_score: Optional[float] = None
    ) -> Transition:
        """
        Apply a review outcome to a level.

        Args:
            level: Current level
            feedback: Learner's reported outcome
            now: Completion time
            score: Optional achieved score
            max_score: Maximum achievable score

        Returns:
            The transition with the new level and due time
        """
        success = self.is_success(feedback, score, max_score)
        new_level = self.next_level(level, success)
        return Transition(
            success=success,
            previous_level=level,
            new_level=new_level,
            next_scheduled_at=now + self.interval(new_level)
        )

    def estimate_retention(
        self,
        level: int,
        elapsed: datetime.timedelta,
        retention_factor: float = DEFAULT_RETENTION_FACTOR
    ) -> float:
        """
        Estimate recall probability after ``elapsed`` time on ``level``.

        Retention decays exponentially from 1 so that it reaches the level's
        base rate, scaled by the learner's retention factor, at the end of
        the level's interval.

        Returns:
            Retention probability (0-1)
        """
        end_rate = min(0.99, BASE_RETENTION_RATES[validate_level(level)] * retention_factor / DEFAULT_RETENTION_FACTOR)
        fraction = max(elapsed.total_seconds(), 0.0) / self.interval(level).total_seconds()
        return min(max(math.pow(end_rate, fraction), 0.0), 1.0)

    def update_profile(
        self,
        profile: ForgettingCurveProfile,
        success: bool,
        response_time: Optional[float] = None,
        confidence_level: Optional[int] = None,
        subject: Optional[str] = None,
        now: Optional[datetime.datetime] = None
    ) -> Tuple[ForgettingCurveProfile, ProfileDelta]:
        """
        Fold one completed review into a learner profile.

        The success rate is an exponential moving average (70% history,
        30% latest outcome). Once a learner has three or more reviews the
        retention factor drifts up 5% while the rate stays above 0.8 and
        down 5% while it is below 0.6. The subject offset moves down after
        a success (the subject feels easier) and up after a failure, scaled
        by how fast and confident the answer was.

        Args:
            profile: Current profile (not modified)
            success: Whether recall succeeded
            response_time: Seconds taken
            confidence_level: Self-reported confidence, 1-5
            subject: Item subject for the per-subject offset
            now: Update time

        Returns:
            (updated profile, delta)
        """
        updated = ForgettingCurveProfile.from_dict(profile.to_dict())
        outcome = 1.0 if success else 0.0

        if profile.total_reviews == 0:
            updated.success_rate = outcome
        else:
            updated.success_rate = round(0.7 * profile.success_rate + 0.3 * outcome, 4)

        if success:
            updated.success_count += 1
        else:
            updated.failure_count += 1

        if updated.total_reviews >= 3:
            if updated.success_rate > 0.8:
                updated.retention_factor = min(RETENTION_FACTOR_RANGE[1], profile.retention_factor * 1.05)
            elif updated.success_rate < 0.6:
                updated.retention_factor = max(RETENTION_FACTOR_RANGE[0], profile.retention_factor * 0.95)
            updated.retention_factor = round(updated.retention_factor, 4)

        before = profile.subject_adjustment(subject)
        after = before
        if subject:
            performance = response_time_factor(response_time) * confidence_factor(confidence_level)
            if success:
                performance = _clamp(performance * 1.2, PERFORMANCE_FACTOR_RANGE)
                after = before - 0.1 * performance
            else:
                performance = _clamp(performance * 0.5, PERFORMANCE_FACTOR_RANGE)
                after = before + 0.2 * (PERFORMANCE_FACTOR_RANGE[1] - performance) / PERFORMANCE_FACTOR_RANGE[1]
            after = round(_clamp(after, SUBJECT_ADJUSTMENT_RANGE), 4)
            updated.difficulty_adjustments[subject] = after

        updated.updated_at = now or datetime.datetime.now(datetime.timezone.utc)

        delta = ProfileDelta(
            success=success,
            retention_factor_before=profile.retention_factor,
            retention_factor_after=updated.retention_factor,
            success_rate_before=profile.success_rate,
            success_rate_after=updated.success_rate,
            subject=subject,
            subject_adjustment_before=before,
            subject_adjustment_after=after,
            counters={
                "success_count": updated.success_count - profile.success_count,
                "failure_count": updated.failure_count - profile.failure_count,
            }
        )
        return updated, delta

    def review_priority(
        self,
        schedule: ReviewSchedule,
        now: datetime.datetime,
        retention_factor: float = DEFAULT_RETENTION_FACTOR,
        success_rate: float = 0.0,
        difficulty: Optional[float] = None
    ) -> float:
        """
        Rank a pending review on a 0-100 scale; higher means review sooner.

        The score is a weighted sum (see ``PRIORITY_WEIGHTS``) of the
        expected forgetting since the cycle opened, item difficulty, how far
        past due the cycle is, the learner's failure rate and the time since
        the previous review.

        Args:
            schedule: Pending cycle
            now: Ranking time
            retention_factor: Learner's retention factor
            success_rate: Learner's success rate
            difficulty: Item difficulty (1-10); defaults to the difficulty
                recorded on the cycle, then to 5
        """
        if difficulty is None:
            difficulty = schedule.difficulty_score_at_review
        if difficulty is None:
            difficulty = 5.0

        retention = self.estimate_retention(schedule.current_level, now - schedule.created_at, retention_factor)
        hours_past_due = (now - schedule.scheduled_at).total_seconds() / 3600.0
        if hours_past_due >= 0:
            overdue_score = min(100.0, hours_past_due * 10)
        else:
            overdue_score = max(0.0, 50 + hours_past_due)

        if schedule.previous_schedule_id is not None:
            days_since_review = max((now - schedule.created_at).total_seconds(), 0.0) / 86400.0
        else:
            days_since_review = DEFAULT_RECENCY_DAYS

        scores = {
            "retention": (1 - retention) * 100,
            "difficulty": difficulty * 10,
            "overdue": overdue_score,
            "frequency": (1 - success_rate) * 100,
            "recency": min(100.0, days_since_review * 10),
        }
        return round(sum(PRIORITY_WEIGHTS[name] * value for name, value in scores.items()), 2)

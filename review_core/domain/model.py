"""
Review Domain Model Module

This module defines the entities persisted by the durable store and the
closed enumerations shared across the scheduler: review outcomes, learner
difficulty feedback and recalibration urgency.
"""

import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from review_core.common.exceptions import InvalidInputError

MIN_LEVEL = 1
MAX_LEVEL = 8


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to aware UTC; naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Union[str, datetime, None]) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return as_utc(value)
    return as_utc(datetime.fromisoformat(value))


def _parse_enum(enum_cls: type, value: Any, aliases: Optional[Dict[str, Any]] = None) -> Any:
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        normalized = value.strip().upper().replace("-", "_").replace(" ", "_")
        if aliases and normalized in aliases:
            return aliases[normalized]
        if normalized in enum_cls.__members__:
            return enum_cls[normalized]
    allowed = [member.value for member in enum_cls]
    raise InvalidInputError(
        f"Unknown {enum_cls.__name__} value: {value!r}",
        {"value": repr(value), "allowed": allowed}
    )


class ReviewStatus(enum.Enum):
    """Lifecycle of one review cycle."""
    SCHEDULED = "scheduled"
    OVERDUE = "overdue"
    COMPLETED = "completed"
    SKIPPED = "skipped"

    @property
    def is_pending(self) -> bool:
        """Pending rows still await an outcome; closed rows are immutable."""
        return self in (ReviewStatus.SCHEDULED, ReviewStatus.OVERDUE)

    @classmethod
    def pending(cls) -> List["ReviewStatus"]:
        return [cls.SCHEDULED, cls.OVERDUE]


class ReviewFeedback(enum.Enum):
    """Outcome reported by the learner when completing a review."""
    RETRY = "retry"
    HARD = "hard"
    GOOD = "good"
    EASY = "easy"

    @classmethod
    def parse(cls, value: Any) -> "ReviewFeedback":
        """Parse a case-insensitive name; unknown values raise InvalidInputError."""
        return _parse_enum(cls, value)

    @property
    def is_success(self) -> bool:
        return self in (ReviewFeedback.GOOD, ReviewFeedback.EASY)

    def to_difficulty_feedback(self) -> "DifficultyFeedback":
        return _REVIEW_TO_DIFFICULTY[self]


class DifficultyFeedback(enum.Enum):
    """How an item felt to the learner, as seen by the feedback aggregator."""
    RETRY = "retry"
    TOO_HARD = "too_hard"
    JUST_RIGHT = "just_right"
    TOO_EASY = "too_easy"

    @classmethod
    def parse(cls, value: Any) -> "DifficultyFeedback":
        """
        Parse a difficulty feedback kind.

        Review outcomes (``hard``, ``good``, ``easy`` or ReviewFeedback members)
        are accepted and mapped onto the matching difficulty kind.
        """
        if isinstance(value, ReviewFeedback):
            return value.to_difficulty_feedback()
        aliases = {member.name: member.to_difficulty_feedback() for member in ReviewFeedback}
        return _parse_enum(cls, value, aliases)

    @property
    def score(self) -> int:
        """Signed feedback value; negative means harder than comfortable."""
        return _FEEDBACK_SCORES[self]

    @property
    def is_negative(self) -> bool:
        return self in (DifficultyFeedback.RETRY, DifficultyFeedback.TOO_HARD)


_REVIEW_TO_DIFFICULTY = {
    ReviewFeedback.RETRY: DifficultyFeedback.RETRY,
    ReviewFeedback.HARD: DifficultyFeedback.TOO_HARD,
    ReviewFeedback.GOOD: DifficultyFeedback.JUST_RIGHT,
    ReviewFeedback.EASY: DifficultyFeedback.TOO_EASY,
}

_FEEDBACK_SCORES = {
    DifficultyFeedback.RETRY: -2,
    DifficultyFeedback.TOO_HARD: -1,
    DifficultyFeedback.JUST_RIGHT: 0,
    DifficultyFeedback.TOO_EASY: 1,
}


class Urgency(enum.Enum):
    """How badly an item's difficulty needs recalibration."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @classmethod
    def parse(cls, value: Any) -> "Urgency":
        return _parse_enum(cls, value)

    @property
    def rank(self) -> int:
        return _URGENCY_RANKS[self]

    @classmethod
    def by_priority(cls) -> List["Urgency"]:
        """Tiers in the order a consumer drains them."""
        return [cls.HIGH, cls.MEDIUM, cls.LOW]


_URGENCY_RANKS = {Urgency.LOW: 0, Urgency.MEDIUM: 1, Urgency.HIGH: 2}


def validate_level(level: int) -> int:
    """Reject levels outside the forgetting-curve range."""
    if isinstance(level, bool) or not isinstance(level, int) or not MIN_LEVEL <= level <= MAX_LEVEL:
        raise InvalidInputError(
            f"Level must be an integer between {MIN_LEVEL} and {MAX_LEVEL}, got {level!r}",
            {"level": repr(level)}
        )
    return level


@dataclass
class ReviewSchedule:
    """
    One review cycle of a (user, item) pair.

    A pair has at most one pending (SCHEDULED or OVERDUE) row at a time.
    Once COMPLETED or SKIPPED a row never changes again; the next cycle is a
    new row linked through ``previous_schedule_id``.

    Attributes:
        id: Unique identifier of the cycle
        user_id: Learner
        item_id: Content item under review
        current_level: Forgetting-curve level (1-8) the cycle was scheduled at
        status: Lifecycle status
        scheduled_at: When the review is due
        next_scheduled_at: Due time of the following cycle, set on completion
        is_success: Recall outcome, set on completion
        response_time: Seconds the learner took, set on completion
        confidence_level: Self-reported confidence (1-5), set on completion
        difficulty_score_at_review: Predicted difficulty for the learner when
            the cycle was opened, refreshed when it is completed
        retention_rate: Estimated recall probability at completion
        previous_schedule_id: Cycle this one follows
        created_at: Row creation time
        completed_at: When the row was closed
    """
    id: str
    user_id: str
    item_id: str
    current_level: int
    status: ReviewStatus
    scheduled_at: datetime
    next_scheduled_at: Optional[datetime] = None
    is_success: Optional[bool] = None
    response_time: Optional[float] = None
    confidence_level: Optional[int] = None
    difficulty_score_at_review: Optional[float] = None
    retention_rate: Optional[float] = None
    previous_schedule_id: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None

    @classmethod
    def create(
        cls,
        user_id: str,
        item_id: str,
        level: int,
        scheduled_at: datetime,
        previous_schedule_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
        difficulty_score: Optional[float] = None
    ) -> "ReviewSchedule":
        """Create a new SCHEDULED cycle with a generated id."""
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            item_id=item_id,
            current_level=validate_level(level),
            status=ReviewStatus.SCHEDULED,
            scheduled_at=as_utc(scheduled_at),
            difficulty_score_at_review=difficulty_score,
            previous_schedule_id=previous_schedule_id,
            created_at=as_utc(created_at) or utc_now()
        )

    @property
    def is_pending(self) -> bool:
        return self.status.is_pending

    def is_due(self, now: datetime) -> bool:
        """Due comparisons are inclusive to tolerate clock skew."""
        return now >= self.scheduled_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "item_id": self.item_id,
            "current_level": self.current_level,
            "status": self.status.value,
            "scheduled_at": _iso(self.scheduled_at),
            "next_scheduled_at": _iso(self.next_scheduled_at),
            "is_success": self.is_success,
            "response_time": self.response_time,
            "confidence_level": self.confidence_level,
            "difficulty_score_at_review": self.difficulty_score_at_review,
            "retention_rate": self.retention_rate,
            "previous_schedule_id": self.previous_schedule_id,
            "created_at": _iso(self.created_at),
            "completed_at": _iso(self.completed_at)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReviewSchedule":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            item_id=data["item_id"],
            current_level=int(data["current_level"]),
            status=ReviewStatus(data["status"]),
            scheduled_at=_parse(data["scheduled_at"]),
            next_scheduled_at=_parse(data.get("next_scheduled_at")),
            is_success=data.get("is_success"),
            response_time=data.get("response_time"),
            confidence_level=data.get("confidence_level"),
            difficulty_score_at_review=data.get("difficulty_score_at_review"),
            retention_rate=data.get("retention_rate"),
            previous_schedule_id=data.get("previous_schedule_id"),
            created_at=_parse(data.get("created_at")) or utc_now(),
            completed_at=_parse(data.get("completed_at"))
        )


@dataclass
class ForgettingCurveProfile:
    """
    Per-learner memory and comfort parameters.

    Attributes:
        user_id: Learner
        retention_factor: Multiplier on base retention (0.5-1.5)
        initial_level: Level new schedules start at
        difficulty_adjustments: Per-subject difficulty offsets (-2 to 2)
        success_count: Successful completions
        failure_count: Failed completions
        success_rate: Exponentially weighted success rate
        ideal_difficulty: Difficulty the learner is most comfortable with
        min_comfortable: Lower edge of the comfortable band
        max_comfortable: Upper edge of the comfortable band
        updated_at: Last mutation time
    """
    user_id: str
    retention_factor: float = 0.9
    initial_level: int = MIN_LEVEL
    difficulty_adjustments: Dict[str, float] = field(default_factory=dict)
    success_count: int = 0
    failure_count: int = 0
    success_rate: float = 0.0
    ideal_difficulty: float = 5.0
    min_comfortable: float = 3.0
    max_comfortable: float = 7.0
    updated_at: datetime = field(default_factory=utc_now)

    @classmethod
    def default(cls, user_id: str, retention_factor: float = 0.9, initial_level: int = MIN_LEVEL) -> "ForgettingCurveProfile":
        return cls(user_id=user_id, retention_factor=retention_factor, initial_level=initial_level)

    @property
    def total_reviews(self) -> int:
        return self.success_count + self.failure_count

    def subject_adjustment(self, subject: Optional[str]) -> float:
        if not subject:
            return 0.0
        return self.difficulty_adjustments.get(subject, 0.0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "retention_factor": self.retention_factor,
            "initial_level": self.initial_level,
            "difficulty_adjustments": dict(self.difficulty_adjustments),
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "success_rate": self.success_rate,
            "ideal_difficulty": self.ideal_difficulty,
            "min_comfortable": self.min_comfortable,
            "max_comfortable": self.max_comfortable,
            "updated_at": _iso(self.updated_at)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ForgettingCurveProfile":
        return cls(
            user_id=data["user_id"],
            retention_factor=float(data.get("retention_factor", 0.9)),
            initial_level=int(data.get("initial_level", MIN_LEVEL)),
            difficulty_adjustments=dict(data.get("difficulty_adjustments") or {}),
            success_count=int(data.get("success_count", 0)),
            failure_count=int(data.get("failure_count", 0)),
            success_rate=float(data.get("success_rate", 0.0)),
            ideal_difficulty=float(data.get("ideal_difficulty", 5.0)),
            min_comfortable=float(data.get("min_comfortable", 3.0)),
            max_comfortable=float(data.get("max_comfortable", 7.0)),
            updated_at=_parse(data.get("updated_at")) or utc_now()
        )


@dataclass
class ItemDifficulty:
    """Baseline difficulty metadata of a content item (1 = easiest, 10 = hardest)."""
    item_id: str
    baseline_difficulty: float = 5.0
    subject: Optional[str] = None
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "baseline_difficulty": self.baseline_difficulty,
            "subject": self.subject,
            "updated_at": _iso(self.updated_at)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ItemDifficulty":
        return cls(
            item_id=data["item_id"],
            baseline_difficulty=float(data.get("baseline_difficulty", 5.0)),
            subject=data.get("subject"),
            updated_at=_parse(data.get("updated_at")) or utc_now()
        )


@dataclass
class DifficultyAdjustment:
    """A recalibration of an item's baseline difficulty."""
    item_id: str
    previous_difficulty: float
    new_difficulty: float
    reason: str
    urgency: str
    feedback_count: int
    created_at: datetime = field(default_factory=utc_now)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "item_id": self.item_id,
            "previous_difficulty": self.previous_difficulty,
            "new_difficulty": self.new_difficulty,
            "reason": self.reason,
            "urgency": self.urgency,
            "feedback_count": self.feedback_count,
            "created_at": _iso(self.created_at)
        }

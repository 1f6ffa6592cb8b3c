"""
Review Store Tables

This module maps the review domain entities onto relational tables. A
partial unique index on pending schedules enforces one pending row per
(user, item) pair inside the database itself.
"""

from sqlalchemy import Boolean, Column, DateTime, Float, Index, Integer, JSON, String, text

from .base import ModelBase

PENDING_STATUSES = "('scheduled', 'overdue')"


class ReviewScheduleRecord(ModelBase):
    """Row per review cycle."""

    __tablename__ = "review_schedules"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    item_id = Column(String(64), nullable=False, index=True)
    current_level = Column(Integer, nullable=False)
    status = Column(String(16), nullable=False, index=True)
    scheduled_at = Column(DateTime(timezone=True), nullable=False, index=True)
    next_scheduled_at = Column(DateTime(timezone=True), nullable=True)
    is_success = Column(Boolean, nullable=True)
    response_time = Column(Float, nullable=True)
    confidence_level = Column(Integer, nullable=True)
    difficulty_score_at_review = Column(Float, nullable=True)
    retention_rate = Column(Float, nullable=True)
    previous_schedule_id = Column(String(36), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index(
            "uq_review_schedules_pending_pair",
            "user_id",
            "item_id",
            unique=True,
            sqlite_where=text(f"status IN {PENDING_STATUSES}"),
            postgresql_where=text(f"status IN {PENDING_STATUSES}"),
        ),
    )


class ForgettingCurveProfileRecord(ModelBase):
    """Row per learner profile."""

    __tablename__ = "forgetting_curve_profiles"

    user_id = Column(String(64), primary_key=True)
    retention_factor = Column(Float, nullable=False, default=0.9)
    initial_level = Column(Integer, nullable=False, default=1)
    difficulty_adjustments = Column(JSON, nullable=False, default=dict)
    success_count = Column(Integer, nullable=False, default=0)
    failure_count = Column(Integer, nullable=False, default=0)
    success_rate = Column(Float, nullable=False, default=0.0)
    ideal_difficulty = Column(Float, nullable=False, default=5.0)
    min_comfortable = Column(Float, nullable=False, default=3.0)
    max_comfortable = Column(Float, nullable=False, default=7.0)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class ItemDifficultyRecord(ModelBase):
    """Row per content item."""

    __tablename__ = "item_difficulties"

    item_id = Column(String(64), primary_key=True)
    baseline_difficulty = Column(Float, nullable=False, default=5.0)
    subject = Column(String(128), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class DifficultyAdjustmentRecord(ModelBase):
    """Append-only recalibration history."""

    __tablename__ = "difficulty_adjustments"

    id = Column(String(36), primary_key=True)
    item_id = Column(String(64), nullable=False, index=True)
    previous_difficulty = Column(Float, nullable=False)
    new_difficulty = Column(Float, nullable=False)
    reason = Column(String(255), nullable=False)
    urgency = Column(String(16), nullable=False)
    feedback_count = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)

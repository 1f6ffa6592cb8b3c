"""
Review Domain

This package holds the scheduler's entities and the durable store they are
persisted in.
"""

from review_core.domain.memory_repository import MemoryReviewStore
from review_core.domain.model import (
    DifficultyAdjustment,
    DifficultyFeedback,
    ForgettingCurveProfile,
    ItemDifficulty,
    ReviewFeedback,
    ReviewSchedule,
    ReviewStatus,
    Urgency,
)
from review_core.domain.repository import ReviewStore

__all__ = [
    'DifficultyAdjustment',
    'DifficultyFeedback',
    'ForgettingCurveProfile',
    'ItemDifficulty',
    'MemoryReviewStore',
    'ReviewFeedback',
    'ReviewSchedule',
    'ReviewStatus',
    'ReviewStore',
    'Urgency',
]

"""
Forgetting-Curve Scheduling

This package decides when each learner next reviews each item.
"""

from review_core.scheduling.forgetting import (
    LEVEL_INTERVALS,
    FailurePolicy,
    ForgettingCurveModel,
    ProfileDelta,
    Transition,
)
from review_core.scheduling.service import CompletionResult, ReviewItem, ReviewSchedulingService

__all__ = [
    'LEVEL_INTERVALS',
    'CompletionResult',
    'FailurePolicy',
    'ForgettingCurveModel',
    'ProfileDelta',
    'ReviewItem',
    'ReviewSchedulingService',
    'Transition',
]

"""
Feedback Aggregation and Recalibration

This package turns learner feedback into per-item statistics, queues items
whose difficulty looks wrong and recalibrates them.
"""

from review_core.feedback.aggregator import FeedbackAggregation, FeedbackAggregator
from review_core.feedback.queue import AdjustmentQueue, AdjustmentQueueEntry, Lease

__all__ = [
    'AdjustmentQueue',
    'AdjustmentQueueEntry',
    'FeedbackAggregation',
    'FeedbackAggregator',
    'Lease',
]

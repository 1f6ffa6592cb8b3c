"""
Review Core

This package is the core of a spaced-repetition learning scheduler.

It provides:
1. A forgetting-curve state machine deciding when each learner reviews each item
2. Per-item feedback aggregation that flags items whose difficulty looks wrong
3. A three-tier adjustment queue with leases and bounded retries
4. Personalized difficulty prediction behind a four-layer tiered cache
5. A session and revoked-token registry

``ReviewEngine`` wires these together; ``build_engine`` creates one from
configuration.
"""

from review_core.engine import FeedbackMetadata, ReviewEngine, build_engine

__version__ = "0.1.0"

__all__ = ['FeedbackMetadata', 'ReviewEngine', 'build_engine']

"""Shared fixtures for the review core tests."""

from datetime import datetime, timezone

import pytest

from review_core.common.cache import MemoryCacheBackend
from review_core.common.config import AppConfig
from review_core.domain.memory_repository import MemoryReviewStore
from review_core.domain.model import ItemDifficulty
from review_core.engine import ReviewEngine

START = 1_700_000_000.0


class FakeClock:
    """Epoch clock that only moves when told to."""

    def __init__(self, start: float = START):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now

    def as_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.now, timezone.utc)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend(clock):
    return MemoryCacheBackend(clock=clock)


@pytest.fixture
def items():
    return [
        ItemDifficulty(item_id="item-1", baseline_difficulty=5.0, subject="algebra"),
        ItemDifficulty(item_id="item-2", baseline_difficulty=7.0, subject="geometry"),
        ItemDifficulty(item_id="item-y", baseline_difficulty=4.0),
    ]


@pytest.fixture
def store(items):
    return MemoryReviewStore(items)


@pytest.fixture
def config():
    return AppConfig()


@pytest.fixture
def engine(store, backend, config, clock):
    return ReviewEngine(store, backend, config, clock)

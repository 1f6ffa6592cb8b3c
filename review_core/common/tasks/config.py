"""
Worker Configuration

Celery settings for the review worker: where messages go and how often the
maintenance jobs run.
"""

from dataclasses import dataclass, field
from typing import Any, Dict

from review_core.common.config import TaskSettings


@dataclass
class TaskConfig:
    """
    Celery options for the review worker.

    Attributes:
        broker_url: Message broker the beat and worker share
        result_backend: Where job results are stored
        sweep_interval: Seconds between overdue sweeps
        queue_interval: Seconds between adjustment queue drains
        overrides: Raw Celery options applied last
    """
    broker_url: str = "redis://localhost:6379/1"
    result_backend: str = "redis://localhost:6379/2"
    sweep_interval: int = 300
    queue_interval: int = 30
    overrides: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings: TaskSettings) -> "TaskConfig":
        return cls(
            broker_url=settings.broker_url,
            result_backend=settings.result_backend,
            sweep_interval=settings.sweep_interval,
            queue_interval=settings.queue_interval
        )

    def to_celery_config(self) -> Dict[str, Any]:
        """Celery ``conf`` mapping; jobs exchange JSON only and run on UTC."""
        options: Dict[str, Any] = {
            "broker_url": self.broker_url,
            "result_backend": self.result_backend,
            "task_serializer": "json",
            "result_serializer": "json",
            "accept_content": ["json"],
            "timezone": "UTC",
            "enable_utc": True,
        }
        options.update(self.overrides)
        return options

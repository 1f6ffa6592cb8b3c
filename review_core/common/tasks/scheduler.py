"""
Task Scheduler Module

This module creates the Celery application the background jobs run on and
maintains its beat schedule of periodic tasks.
"""

import logging
from typing import Any, Dict, Optional

from celery import Celery

from review_core.common.tasks.config import TaskConfig
from review_core.common.tasks.registry import TaskRegistry

# Set up logging
logger = logging.getLogger(__name__)


def create_celery_app(
    config: TaskConfig,
    app_name: str = "review_core",
    registry: Optional[TaskRegistry] = None
) -> Celery:
    """
    Create a configured Celery application.

    Args:
        config: Task configuration
        app_name: Name of the Celery application
        registry: Task definitions to bind to the application

    Returns:
        The Celery application
    """
    app = Celery(app_name, broker=config.broker_url, backend=config.result_backend)
    app.conf.update(config.to_celery_config())
    app.conf.beat_schedule = {}

    if registry is not None:
        registry.bind(app)

    logger.info(f"Initialized Celery app {app_name} with broker {config.broker_url}")
    return app


def schedule_periodic_task(
    app: Celery,
    entry_name: str,
    task_name: str,
    interval_seconds: float,
    kwargs: Optional[Dict[str, Any]] = None,
    expires: Optional[float] = None
) -> None:
    """
    Add or replace a periodic task in the beat schedule.

    Args:
        app: The Celery application
        entry_name: Unique name of the schedule entry
        task_name: Registered task to run
        interval_seconds: Seconds between runs
        kwargs: Keyword arguments for the task
        expires: Seconds after which an unstarted run is discarded
    """
    if interval_seconds <= 0:
        raise ValueError(f"Interval must be positive, got {interval_seconds}")

    entry: Dict[str, Any] = {
        "task": task_name,
        "schedule": float(interval_seconds),
        "kwargs": kwargs or {},
    }
    if expires is not None:
        entry["options"] = {"expires": expires}

    app.conf.beat_schedule[entry_name] = entry
    logger.info(f"Scheduled periodic task {task_name} every {interval_seconds}s as {entry_name}")

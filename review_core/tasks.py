"""
Background Jobs

This module defines the periodic jobs of the scheduler: flagging overdue
reviews and draining the adjustment queue. Each job builds an engine from
configuration, runs the async service code to completion and releases the
engine again. Jobs run in the worker process, so they only see state kept
in Redis and the SQL store; any other configuration is refused.

Run a worker with beat embedded::

    celery -A review_core.tasks:celery_app worker -B
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from celery import Celery

from review_core.common.config import AppConfig, get_config
from review_core.common.exceptions import ConfigurationError
from review_core.common.logger import app_logger
from review_core.common.tasks import TaskConfig, TaskRegistry, create_celery_app, schedule_periodic_task
from review_core.engine import ReviewEngine, build_engine

logger = app_logger.getChild("tasks")

T = TypeVar("T")

SWEEP_TASK = "review_core.sweep_overdue_reviews"
QUEUE_TASK = "review_core.process_adjustment_queue"

registry = TaskRegistry()


async def run_overdue_sweep(engine: ReviewEngine, grace_seconds: Optional[int] = None) -> Dict[str, Any]:
    """Flag overdue reviews and report how many changed."""
    flagged = await engine.sweep_overdue(grace_seconds)
    return {"flagged": flagged}


async def run_adjustment_queue(engine: ReviewEngine, max_items: Optional[int] = None) -> Dict[str, Any]:
    """Drain the adjustment queue and report what was recalibrated."""
    processed = await engine.process_adjustments(max_items)
    return {
        "processed": len(processed),
        "adjusted": [p.item_id for p in processed if p.adjustment is not None],
        "queue": await engine.get_adjustment_queue_status()
    }


def _unshared_backends(config: AppConfig) -> List[str]:
    missing = []
    if config.cache.backend != "redis":
        missing.append(f"cache.backend is {config.cache.backend!r}, not 'redis'")
    if config.database.backend != "sql":
        missing.append(f"database.backend is {config.database.backend!r}, not 'sql'")
    return missing


def require_shared_backends(config: AppConfig) -> None:
    """
    Refuse configurations whose state a worker process cannot see.

    Raises:
        ConfigurationError: The cache is not Redis or the store is not SQL
    """
    missing = _unshared_backends(config)
    if missing:
        raise ConfigurationError(f"Background jobs need shared backends: {'; '.join(missing)}")


async def _with_engine(job: Callable[[ReviewEngine], Awaitable[T]], config: Optional[AppConfig] = None) -> T:
    config = config or get_config()
    require_shared_backends(config)
    engine = await build_engine(config)
    try:
        return await job(engine)
    finally:
        await engine.close()


@registry.task(name=SWEEP_TASK, queue="scheduling", max_retries=0, tags=["scheduling"])
def sweep_overdue_reviews(grace_seconds: Optional[int] = None) -> Dict[str, Any]:
    """Mark reviews past their due time (plus grace) as overdue."""
    result = asyncio.run(_with_engine(lambda engine: run_overdue_sweep(engine, grace_seconds)))
    logger.info(f"Overdue sweep flagged {result['flagged']} reviews")
    return result


@registry.task(name=QUEUE_TASK, queue="feedback", max_retries=0, tags=["feedback"])
def process_adjustment_queue(max_items: Optional[int] = None) -> Dict[str, Any]:
    """Recalibrate items waiting in the adjustment queue."""
    result = asyncio.run(_with_engine(lambda engine: run_adjustment_queue(engine, max_items)))
    logger.info(f"Adjustment queue run processed {result['processed']} items")
    return result


def create_worker_app(config: Optional[AppConfig] = None) -> Celery:
    """
    Create the Celery application with both jobs on the beat schedule.

    The application is created for any configuration so that the module
    imports cleanly; the jobs themselves refuse to run without shared
    backends.

    Args:
        config: Application configuration; the process configuration when omitted

    Returns:
        The Celery application
    """
    config = config or get_config()
    missing = _unshared_backends(config)
    if missing:
        logger.warning(f"Worker jobs will fail until shared backends are configured: {'; '.join(missing)}")
    task_config = TaskConfig.from_settings(config.tasks)
    app = create_celery_app(task_config, registry=registry)

    schedule_periodic_task(
        app, "sweep-overdue-reviews", SWEEP_TASK, task_config.sweep_interval,
        expires=task_config.sweep_interval
    )
    schedule_periodic_task(
        app, "process-adjustment-queue", QUEUE_TASK, task_config.queue_interval,
        kwargs={"max_items": config.queue.drain_batch},
        expires=task_config.queue_interval
    )
    return app


celery_app = create_worker_app()

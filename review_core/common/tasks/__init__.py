"""
Task Scheduling Module

This module provides the background task layer, using Celery as the backend:
task configuration, a registry of task definitions and the beat schedule of
periodic jobs.
"""

from review_core.common.tasks.config import TaskConfig
from review_core.common.tasks.registry import TaskDefinition, TaskRegistry
from review_core.common.tasks.scheduler import (
    create_celery_app,
    schedule_periodic_task,
)

__all__ = [
    'TaskConfig',
    'TaskDefinition',
    'TaskRegistry',
    'create_celery_app',
    'schedule_periodic_task',
]

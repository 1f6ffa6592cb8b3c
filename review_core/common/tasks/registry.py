"""
Task Registry

Jobs are declared at import time with ``TaskRegistry.task`` and bound to a
Celery application later, once the worker knows its configuration.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from celery import Celery
from celery.app.task import Task as CeleryTask

logger = logging.getLogger(__name__)


@dataclass
class TaskDefinition:
    """A job function plus the routing options Celery needs for it."""
    name: str
    func: Callable
    description: str = ""
    queue: Optional[str] = None
    max_retries: Optional[int] = None
    tags: List[str] = field(default_factory=list)

    def register_with_celery(self, app: Celery) -> CeleryTask:
        """Bind the job to ``app`` under its registered name."""
        options: Dict[str, Any] = {"name": self.name}
        if self.queue is not None:
            options["queue"] = self.queue
        if self.max_retries is not None:
            options["max_retries"] = self.max_retries

        bound = app.task(**options)(self.func)
        logger.info(f"Bound job {self.name} to {app.main}")
        return bound


class TaskRegistry:
    """Named job definitions waiting to be bound to a Celery app."""

    def __init__(self):
        self._tasks: Dict[str, TaskDefinition] = {}

    def register_task(self, func: Callable, name: Optional[str] = None, **options: Any) -> TaskDefinition:
        """
        Add ``func`` as a job.

        Registering the same function twice under one name is allowed.

        Raises:
            ValueError: If another function already owns the name
        """
        job_name = name or f"{func.__module__}.{func.__name__}"
        current = self._tasks.get(job_name)
        if current is not None and current.func is not func:
            raise ValueError(f"Task {job_name} is already registered")

        definition = TaskDefinition(
            job_name, func, description=(func.__doc__ or "").strip(), **options
        )
        self._tasks[job_name] = definition
        return definition

    def task(self, name: Optional[str] = None, **options: Any) -> Callable[[Callable], Callable]:
        """Decorator form of ``register_task``; the function stays callable."""
        def decorator(func: Callable) -> Callable:
            self.register_task(func, name, **options)
            return func
        return decorator

    def get_task(self, name: str) -> Optional[TaskDefinition]:
        return self._tasks.get(name)

    def bind(self, app: Celery) -> Dict[str, CeleryTask]:
        return {name: definition.register_with_celery(app) for name, definition in self._tasks.items()}

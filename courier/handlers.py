"""Injectable registry mapping task types to handler coroutines."""

from __future__ import annotations

import importlib
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from .models import ScheduledTask
from .tasks import TaskPayload, TaskType

logger = logging.getLogger(__name__)

# A handler returns an optional result dict stored on the task. It signals
# failure by raising: RetryableError (or any exception) retries with backoff,
# PermanentError stops retries.
TaskHandler = Callable[[ScheduledTask, TaskPayload], Awaitable[dict[str, Any] | None]]


class HandlerRegistry:
    def __init__(self) -> None:
        self._handlers: dict[TaskType, TaskHandler] = {}

    def register(self, task_type: TaskType, handler: TaskHandler | None = None) -> Any:
        """Register ``handler`` for ``task_type``; usable as a decorator."""

        def _add(fn: TaskHandler) -> TaskHandler:
            if task_type in self._handlers:
                raise ValueError(f"Handler already registered for {task_type.value}")
            self._handlers[task_type] = fn
            return fn

        if handler is None:
            return _add
        return _add(handler)

    def get(self, task_type: TaskType) -> TaskHandler | None:
        return self._handlers.get(task_type)

    def __contains__(self, task_type: object) -> bool:
        return task_type in self._handlers

    def registered(self) -> list[TaskType]:
        return sorted(self._handlers, key=lambda t: t.value)


def load_handler_modules(registry: HandlerRegistry, modules: Iterable[str]) -> None:
    """Import each module path and call its ``register(registry)``."""
    for path in modules:
        module = importlib.import_module(path)
        register = getattr(module, "register", None)
        if not callable(register):
            raise ValueError(f"Handler module {path} has no register(registry) function")
        register(registry)
        logger.info("Loaded task handlers from %s", path)

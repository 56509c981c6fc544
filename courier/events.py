"""
Structured scheduler events for the orchestrator and dispatcher.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from .config import settings

logger = logging.getLogger(__name__)

EVENTS_CHANNEL = "channel:courier:events"


class EventType(str, Enum):
    MESSAGE_SENT = "message.sent"
    MESSAGE_RESCHEDULED = "message.rescheduled"
    MESSAGE_SUPERSEDED = "message.superseded"
    MESSAGE_RETRY = "message.retry"
    MESSAGE_FAILED = "message.failed"

    TASK_COMPLETED = "task.completed"
    TASK_RETRY = "task.retry"
    TASK_DEAD_LETTERED = "task.dead_lettered"
    TASK_FAILED_PERMANENT = "task.failed_permanent"
    TASK_PARKED = "task.parked"


@dataclass
class SchedulerEvent:
    """Standardized event emitted on every terminal or rescheduling transition."""

    type: EventType
    actor: str
    subject_id: str
    subject_type: str
    id: UUID = field(default_factory=uuid4)
    user_id: str | None = None
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "type": self.type.value,
            "actor": self.actor,
            "subject_id": self.subject_id,
            "subject_type": self.subject_type,
            "user_id": self.user_id,
            "message": self.message,
            "data": self.data,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
        }


EventHandler = Callable[[SchedulerEvent], Awaitable[None] | None]


class EventEmitter:
    """Emits events to registered handlers after the transition has committed."""

    def __init__(self) -> None:
        self._handlers: list[EventHandler] = []

    def on_event(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    async def emit(self, event: SchedulerEvent) -> None:
        for handler in self._handlers:
            try:
                result = handler(event)
                if hasattr(result, "__await__"):
                    await result
            except Exception as exc:
                logger.warning("Event handler error for %s: %s", event.type.value, exc)


event_bus = EventEmitter()


async def record_event(session: AsyncSession, event: SchedulerEvent) -> None:
    """Persist an event to the action log inside the caller's transaction."""
    from .db import log_action

    await log_action(
        session,
        event.actor,
        event.type.value,
        user_id=event.user_id,
        subject_id=event.subject_id,
        subject_type=event.subject_type,
        details={"message": event.message, **event.data},
        error=event.error,
    )


async def publish_event_handler(event: SchedulerEvent) -> None:
    """Handler that publishes events to Redis Pub/Sub."""
    if not settings.redis_publish_enabled:
        return

    try:
        from .redis_client import get_redis_client

        redis = get_redis_client()
        await redis.publish(EVENTS_CHANNEL, json.dumps(event.to_dict()))
    except Exception as exc:
        logger.warning("Redis publish failed: %s", exc)


event_bus.on_event(publish_event_handler)

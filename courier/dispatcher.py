"""
Background task claim and dispatch loop.

    pending -> claimed -> completed
                       -> pending (retry_count + 1, backoff)
                       -> failed_permanent
                       -> dead_lettered (retries exhausted, or corrupt payload)

Tasks whose type is unknown, or has no registered handler, are parked: they
stay ``claimed`` with ``parked = true`` for manual inspection.
"""

from __future__ import annotations

import logging
import os
import socket
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import db
from .config import settings
from .errors import DataIntegrityError, PermanentError, describe_error
from .events import EventEmitter, EventType, SchedulerEvent, event_bus, record_event
from .handlers import HandlerRegistry
from .models import ScheduledTask, TaskDeadLetter, TaskStatus, priority_rank, utcnow
from .tasks import parse_task_payload, parse_task_type

logger = logging.getLogger(__name__)

ACTOR = "dispatcher"


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


def compute_backoff(
    retry_count: int,
    base_seconds: int | None = None,
    max_seconds: int | None = None,
) -> timedelta:
    """Exponential backoff ``base * 2**retry_count``, capped at ``max_seconds``."""
    base = settings.task_backoff_base_seconds if base_seconds is None else base_seconds
    cap = settings.task_backoff_max_seconds if max_seconds is None else max_seconds
    return timedelta(seconds=min(base * (2**retry_count), cap))


@dataclass
class DispatchResult:
    claimed: int = 0
    completed: int = 0
    retried: int = 0
    failed_permanent: int = 0
    dead_lettered: int = 0
    parked: int = 0
    left_claimed: int = 0
    outcomes: dict[str, str] = field(default_factory=dict)


# =============================================================================
# Store operations
# =============================================================================


async def claim_due_tasks(
    session: AsyncSession,
    now: datetime,
    limit: int,
    worker_id: str,
) -> list[ScheduledTask]:
    """Atomically move up to ``limit`` due ``pending`` tasks to ``claimed``."""
    rank = priority_rank(ScheduledTask.priority)
    candidate_ids = (
        await session.execute(
            select(ScheduledTask.id)
            .where(
                ScheduledTask.status == TaskStatus.PENDING.value,
                ScheduledTask.scheduled_for <= now,
            )
            .order_by(rank, ScheduledTask.scheduled_for, ScheduledTask.created_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
    ).scalars().all()

    claimed: list[str] = []
    for task_id in candidate_ids:
        result = await session.execute(
            update(ScheduledTask)
            .where(ScheduledTask.id == task_id, ScheduledTask.status == TaskStatus.PENDING.value)
            .values(
                status=TaskStatus.CLAIMED.value,
                claimed_at=now,
                claimed_by=worker_id,
                last_attempted_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            claimed.append(task_id)

    if not claimed:
        return []

    rows = await session.execute(
        select(ScheduledTask)
        .where(ScheduledTask.id.in_(claimed))
        .order_by(rank, ScheduledTask.scheduled_for, ScheduledTask.created_at)
    )
    return list(rows.scalars().all())


# =============================================================================
# Dispatch loop
# =============================================================================


class TaskDispatcher:
    """One claim-and-dispatch pass per ``run_tick`` call."""

    def __init__(
        self,
        registry: HandlerRegistry,
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        clock: Callable[[], datetime] = utcnow,
        events: EventEmitter | None = None,
        worker_id: str | None = None,
        batch_size: int | None = None,
        backoff_base_seconds: int | None = None,
        backoff_max_seconds: int | None = None,
    ) -> None:
        self.registry = registry
        self.session_factory = session_factory
        self.clock = clock
        self.events = events or event_bus
        self.worker_id = worker_id or default_worker_id()
        self.batch_size = batch_size or settings.dispatcher_batch_size
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds

    async def run_tick(self) -> DispatchResult:
        now = self.clock()
        result = DispatchResult()

        async with db.get_session(self.session_factory) as session:
            tasks = await claim_due_tasks(session, now, self.batch_size, self.worker_id)
        result.claimed = len(tasks)

        for task in tasks:
            try:
                outcome = await self.process_task(task, now)
            except Exception:
                # Reconciliation requeues the task once the claim goes stale.
                logger.exception("Unhandled error processing task %s; left claimed", task.id)
                outcome = "left_claimed"
            result.outcomes[task.id] = outcome
            setattr(result, outcome, getattr(result, outcome) + 1)

        if tasks:
            logger.info(
                "Dispatcher tick: claimed=%d completed=%d retried=%d failed_permanent=%d "
                "dead_lettered=%d parked=%d left_claimed=%d",
                result.claimed,
                result.completed,
                result.retried,
                result.failed_permanent,
                result.dead_lettered,
                result.parked,
                result.left_claimed,
            )
        return result

    async def process_task(self, task: ScheduledTask, now: datetime) -> str:
        """Run one claimed task; return the DispatchResult counter it lands in."""
        task_type = parse_task_type(task.task_type)
        handler = self.registry.get(task_type) if task_type is not None else None
        if handler is None:
            return await self._park(task, now)

        try:
            payload = parse_task_payload(task_type, task.context_json)
        except DataIntegrityError as exc:
            return await self._dead_letter(task, now, exc, retry_count=task.retry_count)

        try:
            result_json = await handler(task, payload)
        except PermanentError as exc:
            return await self._fail_permanent(task, now, exc)
        except Exception as exc:
            return await self._retry_or_dead_letter(task, now, exc)

        return await self._complete(task, now, result_json)

    # -------------------------------------------------------------------------
    # Transitions out of claimed
    # -------------------------------------------------------------------------

    async def _transition(
        self,
        session: AsyncSession,
        task: ScheduledTask,
        values: dict[str, Any],
    ) -> bool:
        result = await session.execute(
            update(ScheduledTask)
            .where(
                ScheduledTask.id == task.id,
                ScheduledTask.status == TaskStatus.CLAIMED.value,
                ScheduledTask.claimed_by == self.worker_id,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning("Task %s is no longer claimed by %s", task.id, self.worker_id)
            return False
        return True

    def _event(
        self,
        task: ScheduledTask,
        event_type: EventType,
        message: str,
        *,
        error: str | None = None,
        **data: Any,
    ) -> SchedulerEvent:
        return SchedulerEvent(
            type=event_type,
            actor=ACTOR,
            subject_id=task.id,
            subject_type="task",
            user_id=task.user_id,
            message=message,
            data={"task_type": task.task_type, "agent_type": task.agent_type, **data},
            error=error,
        )

    async def _apply(
        self,
        task: ScheduledTask,
        values: dict[str, Any],
        event: SchedulerEvent,
        dead_letter: TaskDeadLetter | None = None,
    ) -> None:
        async with db.get_session(self.session_factory) as session:
            if not await self._transition(session, task, values):
                return
            if dead_letter is not None:
                session.add(dead_letter)
            await record_event(session, event)
        await self.events.emit(event)

    async def _complete(self, task: ScheduledTask, now: datetime, result_json: Any) -> str:
        await self._apply(
            task,
            {
                "status": TaskStatus.COMPLETED.value,
                "completed_at": now,
                "result_json": result_json if isinstance(result_json, dict) else None,
            },
            self._event(task, EventType.TASK_COMPLETED, "Task completed"),
        )
        return "completed"

    async def _park(self, task: ScheduledTask, now: datetime) -> str:
        reason = f"No handler registered for task type {task.task_type!r}"
        await self._apply(
            task,
            {"parked": True, "error_log": reason},
            self._event(task, EventType.TASK_PARKED, reason),
        )
        logger.warning("Task %s parked: %s", task.id, reason)
        return "parked"

    async def _fail_permanent(self, task: ScheduledTask, now: datetime, exc: BaseException) -> str:
        error = describe_error(exc)
        await self._apply(
            task,
            {
                "status": TaskStatus.FAILED_PERMANENT.value,
                "error_log": error,
                "completed_at": now,
            },
            self._event(task, EventType.TASK_FAILED_PERMANENT, "Task failed permanently", error=error),
        )
        logger.error(
            "Task %s (%s) failed permanently at retry %d: %s",
            task.id,
            task.task_type,
            task.retry_count,
            error,
        )
        return "failed_permanent"

    async def _retry_or_dead_letter(
        self, task: ScheduledTask, now: datetime, exc: BaseException
    ) -> str:
        if task.retry_count >= task.max_retries:
            return await self._dead_letter(task, now, exc, retry_count=task.retry_count + 1)

        error = describe_error(exc)
        retry_count = task.retry_count + 1
        delay = compute_backoff(
            task.retry_count, self.backoff_base_seconds, self.backoff_max_seconds
        )
        scheduled_for = now + delay
        await self._apply(
            task,
            {
                "status": TaskStatus.PENDING.value,
                "retry_count": retry_count,
                "scheduled_for": scheduled_for,
                "error_log": error,
                "claimed_at": None,
                "claimed_by": None,
            },
            self._event(
                task,
                EventType.TASK_RETRY,
                f"Retry {retry_count}/{task.max_retries} scheduled",
                error=error,
                retry_count=retry_count,
                scheduled_for=scheduled_for.isoformat(),
            ),
        )
        logger.warning(
            "Task %s (%s) failed, retry %d/%d in %ds: %s",
            task.id,
            task.task_type,
            retry_count,
            task.max_retries,
            int(delay.total_seconds()),
            error,
        )
        return "retried"

    async def _dead_letter(
        self,
        task: ScheduledTask,
        now: datetime,
        exc: BaseException,
        *,
        retry_count: int,
    ) -> str:
        error = describe_error(exc)
        await self._apply(
            task,
            {
                "status": TaskStatus.DEAD_LETTERED.value,
                "retry_count": retry_count,
                "error_log": error,
                "completed_at": now,
            },
            self._event(
                task,
                EventType.TASK_DEAD_LETTERED,
                "Task dead-lettered",
                error=error,
                retry_count=retry_count,
            ),
            dead_letter=TaskDeadLetter(
                task_id=task.id,
                task_type=task.task_type,
                agent_type=task.agent_type,
                user_id=task.user_id,
                payload=task.context_json,
                error_message=error,
                retry_count=retry_count,
                original_created_at=task.created_at,
            ),
        )
        logger.error(
            "Task %s (%s) dead-lettered after %d retries: %s",
            task.id,
            task.task_type,
            retry_count,
            error,
        )
        return "dead_lettered"

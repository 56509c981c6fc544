"""State reconciliation for rows abandoned mid-flight."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import db
from .config import settings
from .models import MessageStatus, OutboundMessage, ScheduledTask, TaskStatus, utcnow

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    messages_requeued: int = 0
    tasks_requeued: int = 0


async def requeue_stale_messages(
    session: AsyncSession,
    now: datetime,
    stale_after: timedelta,
) -> int:
    """Return ``attempting`` rows older than ``stale_after`` to ``queued``.

    Hand-off and the ``sent`` transition commit together, so a row still in
    ``attempting`` was never handed to the transport.
    """
    result = await session.execute(
        update(OutboundMessage)
        .where(
            OutboundMessage.status == MessageStatus.ATTEMPTING.value,
            OutboundMessage.claimed_at < now - stale_after,
        )
        .values(
            status=MessageStatus.QUEUED.value,
            claimed_at=None,
            last_error="requeued by reconciliation",
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def requeue_stale_tasks(
    session: AsyncSession,
    now: datetime,
    stale_after: timedelta,
) -> int:
    """Return non-parked ``claimed`` tasks older than ``stale_after`` to ``pending``."""
    result = await session.execute(
        update(ScheduledTask)
        .where(
            ScheduledTask.status == TaskStatus.CLAIMED.value,
            ScheduledTask.parked.is_(False),
            ScheduledTask.claimed_at < now - stale_after,
        )
        .values(status=TaskStatus.PENDING.value, claimed_at=None, claimed_by=None)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def reconcile(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    *,
    now: datetime | None = None,
) -> ReconcileResult:
    """Requeue stale in-flight messages and tasks."""
    now = now or utcnow()
    async with db.get_session(session_factory) as session:
        result = ReconcileResult(
            messages_requeued=await requeue_stale_messages(
                session, now, timedelta(seconds=settings.attempting_stale_seconds)
            ),
            tasks_requeued=await requeue_stale_tasks(
                session, now, timedelta(seconds=settings.claimed_stale_seconds)
            ),
        )
    if result.messages_requeued or result.tasks_requeued:
        logger.warning(
            "Reconciliation requeued %d message(s) and %d task(s)",
            result.messages_requeued,
            result.tasks_requeued,
        )
    return result

"""
Outbound message scheduling loop.

Each tick claims due ``queued`` rows (priority, then due time, then insertion
order), moves them to ``attempting`` and drives every claimed message to a
terminal state or back to ``queued``:

    relevance -> quiet hours -> rate limit -> render -> reserve + hand-off + sent

The budget slot is reserved in the same transaction as the hand-off, so a
failed render or hand-off never spends it. Recoverable failures requeue the
row with exponential backoff; only permanent errors mark it ``failed``.

Rows sharing a ``sequence_id`` are processed as one unit: one relevance
check, one budget slot, and a single hand-off transaction for all parts.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import db
from .config import settings
from .dispatcher import compute_backoff
from .errors import CourierError, DataIntegrityError, PermanentError, describe_error
from .events import EventEmitter, EventType, SchedulerEvent, event_bus, record_event
from .models import (
    MessageStatus,
    OutboundMessage,
    Priority,
    User,
    priority_rank,
    utcnow,
)
from .quiet_hours import (
    QuietHoursWindow,
    is_recently_active,
    is_suppressed,
    next_open_at,
    optimal_send_time,
    window_for_user,
)
from .rate_limit import ReserveResult, check_and_reserve, check_budget, policy_for_user
from .relevance import RelevanceChecker, RelevanceDecision, RelevanceVerdict
from .render import Renderer
from .tasks import TaskType, owning_agent
from .transport import OutboxTransport, Transport

logger = logging.getLogger(__name__)

ACTOR = "orchestrator"


@dataclass
class TickResult:
    swept: int = 0
    claimed: int = 0
    sent: int = 0
    rescheduled: int = 0
    superseded: int = 0
    retried: int = 0
    failed: int = 0
    left_attempting: int = 0
    outcomes: dict[str, str] = field(default_factory=dict)

    def record(self, unit: list[OutboundMessage], outcome: str) -> None:
        for message in unit:
            self.outcomes[message.id] = outcome
        counter = {
            MessageStatus.SENT.value: "sent",
            MessageStatus.RESCHEDULED.value: "rescheduled",
            MessageStatus.SUPERSEDED.value: "superseded",
            MessageStatus.FAILED.value: "failed",
            "retry": "retried",
            MessageStatus.ATTEMPTING.value: "left_attempting",
        }[outcome]
        setattr(self, counter, getattr(self, counter) + len(unit))


# =============================================================================
# Store operations
# =============================================================================


async def sweep_duplicate_topics(session: AsyncSession) -> int:
    """Supersede all but the newest queued row per (user, topic).

    Sequence parts are never swept. Running it again changes nothing.
    """
    groups = (
        await session.execute(
            select(OutboundMessage.user_id, OutboundMessage.topic)
            .where(
                OutboundMessage.status == MessageStatus.QUEUED.value,
                OutboundMessage.topic.is_not(None),
                OutboundMessage.sequence_id.is_(None),
            )
            .group_by(OutboundMessage.user_id, OutboundMessage.topic)
            .having(func.count() > 1)
        )
    ).all()

    swept = 0
    for user_id, topic in groups:
        newest_id = (
            await session.execute(
                select(OutboundMessage.id)
                .where(
                    OutboundMessage.user_id == user_id,
                    OutboundMessage.topic == topic,
                    OutboundMessage.status == MessageStatus.QUEUED.value,
                    OutboundMessage.sequence_id.is_(None),
                )
                .order_by(OutboundMessage.created_at.desc(), OutboundMessage.id.desc())
                .limit(1)
            )
        ).scalar_one()
        swept += await db.supersede_topic(
            session, user_id, topic, keep_id=newest_id, reason="duplicate_topic"
        )
    return swept


async def _claim_ids(session: AsyncSession, message_ids: list[str], now: datetime) -> list[str]:
    claimed: list[str] = []
    for message_id in message_ids:
        result = await session.execute(
            update(OutboundMessage)
            .where(
                OutboundMessage.id == message_id,
                OutboundMessage.status == MessageStatus.QUEUED.value,
            )
            .values(status=MessageStatus.ATTEMPTING.value, claimed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            claimed.append(message_id)
    return claimed


async def claim_due_messages(
    session: AsyncSession,
    now: datetime,
    limit: int,
) -> list[OutboundMessage]:
    """Atomically move due ``queued`` rows to ``attempting`` and return them.

    Candidate rows are locked with SKIP LOCKED, and each row is claimed with a
    conditional update, so a concurrent claimer never gets the same row.
    Queued siblings of a claimed sequence part are claimed with it.
    """
    candidate_ids = (
        await session.execute(
            select(OutboundMessage.id)
            .where(
                OutboundMessage.status == MessageStatus.QUEUED.value,
                OutboundMessage.scheduled_for <= now,
            )
            .order_by(
                priority_rank(OutboundMessage.priority),
                OutboundMessage.scheduled_for,
                OutboundMessage.created_at,
            )
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
    ).scalars().all()

    claimed = await _claim_ids(session, candidate_ids, now)
    if not claimed:
        return []

    sequence_ids = (
        await session.execute(
            select(OutboundMessage.sequence_id)
            .where(OutboundMessage.id.in_(claimed), OutboundMessage.sequence_id.is_not(None))
            .distinct()
        )
    ).scalars().all()
    if sequence_ids:
        sibling_ids = (
            await session.execute(
                select(OutboundMessage.id)
                .where(
                    OutboundMessage.sequence_id.in_(sequence_ids),
                    OutboundMessage.status == MessageStatus.QUEUED.value,
                )
                .with_for_update(skip_locked=True)
            )
        ).scalars().all()
        claimed.extend(await _claim_ids(session, sibling_ids, now))

    rows = await session.execute(
        select(OutboundMessage)
        .where(OutboundMessage.id.in_(claimed))
        .order_by(
            priority_rank(OutboundMessage.priority),
            OutboundMessage.scheduled_for,
            OutboundMessage.created_at,
            OutboundMessage.sequence_position,
        )
    )
    return list(rows.scalars().all())


def group_units(messages: list[OutboundMessage]) -> list[list[OutboundMessage]]:
    """Group claimed rows into delivery units, keeping claim order."""
    units: list[list[OutboundMessage]] = []
    by_sequence: dict[str, list[OutboundMessage]] = {}
    for message in messages:
        if message.sequence_id is None:
            units.append([message])
            continue
        unit = by_sequence.get(message.sequence_id)
        if unit is None:
            unit = by_sequence[message.sequence_id] = []
            units.append(unit)
        unit.append(message)
    for unit in by_sequence.values():
        unit.sort(key=lambda m: m.sequence_position or 0)
    return units


async def queue_message(
    session: AsyncSession,
    *,
    user_id: str,
    agent_id: str,
    message_data: dict[str, Any],
    priority: str = Priority.MEDIUM.value,
    scheduled_for: datetime | None = None,
    requires_fresh_context: bool = False,
    topic: str | None = None,
    conversation_id: str | None = None,
    can_delay: bool = False,
    now: datetime | None = None,
) -> OutboundMessage:
    """Producer entry point.

    With ``can_delay`` and no explicit time, a message for a user who is not
    active is scheduled for their next good hour outside quiet hours.
    """
    now = now or utcnow()
    if scheduled_for is None and can_delay:
        user = await db.get_user(session, user_id)
        if user is None:
            raise DataIntegrityError(f"User not found: {user_id}")
        last_inbound = await db.last_inbound_at(session, user_id)
        if not is_recently_active(last_inbound, now):
            scheduled_for = optimal_send_time(user, now)

    return await db.enqueue_message(
        session,
        user_id=user_id,
        agent_id=agent_id,
        message_data=message_data,
        priority=priority,
        scheduled_for=scheduled_for or now,
        requires_fresh_context=requires_fresh_context,
        topic=topic,
        conversation_id=conversation_id,
        now=now,
    )


# =============================================================================
# Scheduling loop
# =============================================================================


class MessageOrchestrator:
    """One scheduling pass per ``run_tick`` call."""

    def __init__(
        self,
        *,
        renderer: Renderer,
        relevance: RelevanceChecker,
        transport: Transport | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        clock: Callable[[], datetime] = utcnow,
        events: EventEmitter | None = None,
        batch_size: int | None = None,
        backoff_base_seconds: int | None = None,
        backoff_max_seconds: int | None = None,
        render_timeout_seconds: float | None = None,
        urgent_bypasses_quiet_hours: bool | None = None,
    ) -> None:
        self.renderer = renderer
        self.relevance = relevance
        self.transport = transport or OutboxTransport()
        self.session_factory = session_factory
        self.clock = clock
        self.events = events or event_bus
        self.batch_size = batch_size or settings.orchestrator_batch_size
        self.backoff_base_seconds = backoff_base_seconds or settings.message_backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds or settings.message_backoff_max_seconds
        self.render_timeout = render_timeout_seconds or settings.render_timeout_seconds
        self.urgent_bypasses_quiet_hours = (
            settings.urgent_bypasses_quiet_hours
            if urgent_bypasses_quiet_hours is None
            else urgent_bypasses_quiet_hours
        )

    async def run_tick(self) -> TickResult:
        now = self.clock()
        result = TickResult()

        async with db.get_session(self.session_factory) as session:
            result.swept = await sweep_duplicate_topics(session)
        async with db.get_session(self.session_factory) as session:
            claimed = await claim_due_messages(session, now, self.batch_size)
        result.claimed = len(claimed)

        for unit in group_units(claimed):
            try:
                outcome = await self.process_unit(unit, now)
            except Exception:
                # Reconciliation requeues the row once it goes stale.
                logger.exception(
                    "Unhandled error processing message %s; left attempting", unit[0].id
                )
                outcome = MessageStatus.ATTEMPTING.value
            result.record(unit, outcome)

        if result.claimed or result.swept:
            logger.info(
                "Orchestrator tick: claimed=%d sent=%d rescheduled=%d superseded=%d "
                "retried=%d failed=%d left_attempting=%d swept=%d",
                result.claimed,
                result.sent,
                result.rescheduled,
                result.superseded,
                result.retried,
                result.failed,
                result.left_attempting,
                result.swept,
            )
        return result

    async def process_unit(self, unit: list[OutboundMessage], now: datetime) -> str:
        """Drive one claimed message (or whole sequence); return the outcome label."""
        head = unit[0]
        try:
            if head.sequence_total and len(unit) != head.sequence_total:
                await self._release(unit, now)
                logger.warning(
                    "Sequence %s claimed partially (%d/%d); released",
                    head.sequence_id,
                    len(unit),
                    head.sequence_total,
                )
                return "retry"

            async with db.get_session(self.session_factory) as session:
                user = await db.get_user(session, head.user_id)
                if user is None:
                    raise DataIntegrityError(f"User not found: {head.user_id}")
                last_inbound = await db.last_inbound_at(session, head.user_id)
                delta = []
                if any(m.requires_fresh_context for m in unit):
                    delta = await db.get_conversation_delta(
                        session, head.user_id, head.created_at, limit=settings.relevance_delta_limit
                    )

            if any(m.requires_fresh_context for m in unit):
                decision = await self.relevance.check(head, delta, now)
                await self._record_relevance(head, decision)
                if decision.verdict == RelevanceVerdict.STALE_SUPERSEDE:
                    return await self._supersede(
                        unit, now, decision.reason or "stale", reformulate=decision.reformulate
                    )
                if decision.verdict == RelevanceVerdict.STALE_RESCHEDULE:
                    return await self._reschedule(unit, now, decision.reschedule_at, "stale_context")

            window = window_for_user(user)
            bypass = self.urgent_bypasses_quiet_hours and head.priority == Priority.URGENT.value
            if not bypass and is_suppressed(window, now, last_inbound):
                return await self._reschedule(unit, now, next_open_at(window, now), "quiet_hours")

            async with db.get_session(self.session_factory) as session:
                budget = await check_budget(session, user.id, now, policy_for_user(user))
            if not budget.allowed:
                return await self._reschedule(
                    unit, now, self._deferred_until(budget, window, bypass), "rate_limited"
                )

            texts = [await self._render(message) for message in unit]
        except PermanentError as exc:
            return await self._fail(unit, now, exc)
        except Exception as exc:
            return await self._retry(unit, now, exc)

        return await self._deliver(unit, user, window, bypass, texts, now)

    def _deferred_until(
        self, budget: ReserveResult, window: QuietHoursWindow, bypass: bool
    ) -> datetime:
        if bypass:
            return budget.next_allowed_at
        return next_open_at(window, budget.next_allowed_at)

    async def _render(self, message: OutboundMessage) -> str:
        if message.final_message:
            return message.final_message
        text = await asyncio.wait_for(
            self.renderer.render(message.message_data), timeout=self.render_timeout
        )
        if not text or not text.strip():
            raise DataIntegrityError(f"Renderer returned empty text for {message.id}")
        return text

    async def _deliver(
        self,
        unit: list[OutboundMessage],
        user: User,
        window: QuietHoursWindow,
        bypass: bool,
        texts: list[str],
        now: datetime,
    ) -> str:
        """Reserve a budget slot and hand off every part in one transaction."""
        event = SchedulerEvent(
            type=EventType.MESSAGE_SENT,
            actor=ACTOR,
            subject_id=unit[0].id,
            subject_type="message",
            user_id=user.id,
            message=f"Delivered {len(unit)} message(s) to outbox",
            data={"message_ids": [m.id for m in unit], "agent_id": unit[0].agent_id},
        )
        handing_off = False
        try:
            async with db.get_session(self.session_factory) as session:
                reservation = await check_and_reserve(
                    session, user.id, now, policy_for_user(user), message_id=unit[0].id
                )
                if reservation.allowed:
                    handing_off = True
                    for message, text in zip(unit, texts, strict=True):
                        delivered_id = await self.transport.hand_off(session, message, text, now)
                        result = await session.execute(
                            update(OutboundMessage)
                            .where(
                                OutboundMessage.id == message.id,
                                OutboundMessage.status == MessageStatus.ATTEMPTING.value,
                            )
                            .values(
                                status=MessageStatus.SENT.value,
                                final_message=text,
                                sent_at=now,
                                delivered_message_id=delivered_id,
                                attempt_count=OutboundMessage.attempt_count + 1,
                                updated_at=now,
                            )
                            .execution_options(synchronize_session=False)
                        )
                        if result.rowcount != 1:
                            raise CourierError(f"Message {message.id} is no longer attempting")
                    await record_event(session, event)
        except Exception as exc:
            if not handing_off:
                return await self._retry(unit, now, exc)
            # Outcome unknown; reconciliation requeues stale attempting rows.
            logger.exception(
                "Hand-off failed for message %s (attempt %d); left attempting",
                unit[0].id,
                unit[0].attempt_count + 1,
            )
            await self._log_error(unit[0], "delivery_error", exc)
            return MessageStatus.ATTEMPTING.value

        if not reservation.allowed:
            # Another worker took the last slot after the budget check.
            return await self._reschedule(
                unit, now, self._deferred_until(reservation, window, bypass), "rate_limited"
            )
        await self.events.emit(event)
        return MessageStatus.SENT.value

    # -------------------------------------------------------------------------
    # Transitions out of attempting
    # -------------------------------------------------------------------------

    async def _transition(
        self,
        unit: list[OutboundMessage],
        now: datetime,
        values: dict[str, Any],
        event: SchedulerEvent,
        follow_up: Callable[[AsyncSession], Awaitable[None]] | None = None,
    ) -> int:
        async with db.get_session(self.session_factory) as session:
            result = await session.execute(
                update(OutboundMessage)
                .where(
                    OutboundMessage.id.in_([m.id for m in unit]),
                    OutboundMessage.status == MessageStatus.ATTEMPTING.value,
                )
                .values(**values, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount and follow_up is not None:
                await follow_up(session)
            await record_event(session, event)
        await self.events.emit(event)
        return result.rowcount or 0

    def _event(
        self,
        unit: list[OutboundMessage],
        event_type: EventType,
        message: str,
        *,
        error: str | None = None,
        **data: Any,
    ) -> SchedulerEvent:
        return SchedulerEvent(
            type=event_type,
            actor=ACTOR,
            subject_id=unit[0].id,
            subject_type="message",
            user_id=unit[0].user_id,
            message=message,
            data={"message_ids": [m.id for m in unit], **data},
            error=error,
        )

    async def _reschedule(
        self,
        unit: list[OutboundMessage],
        now: datetime,
        scheduled_for: datetime,
        reason: str,
    ) -> str:
        await self._transition(
            unit,
            now,
            {
                "status": MessageStatus.QUEUED.value,
                "scheduled_for": scheduled_for,
                "reschedule_count": OutboundMessage.reschedule_count + 1,
                "last_reschedule_reason": reason,
                "claimed_at": None,
            },
            self._event(
                unit,
                EventType.MESSAGE_RESCHEDULED,
                f"Rescheduled ({reason})",
                reason=reason,
                scheduled_for=scheduled_for.isoformat(),
            ),
        )
        logger.info("Message %s rescheduled to %s (%s)", unit[0].id, scheduled_for.isoformat(), reason)
        return MessageStatus.RESCHEDULED.value

    async def _supersede(
        self,
        unit: list[OutboundMessage],
        now: datetime,
        reason: str,
        *,
        reformulate: bool = False,
    ) -> str:
        async def request_reformulation(session: AsyncSession) -> None:
            await self._request_reformulation(session, unit[0], now)

        await self._transition(
            unit,
            now,
            {
                "status": MessageStatus.SUPERSEDED.value,
                "superseded_reason": reason[:100],
                "claimed_at": None,
            },
            self._event(
                unit,
                EventType.MESSAGE_SUPERSEDED,
                "Superseded as stale",
                reason=reason,
                reformulate=reformulate,
            ),
            follow_up=request_reformulation if reformulate else None,
        )
        logger.info("Message %s superseded: %s", unit[0].id, reason)
        return MessageStatus.SUPERSEDED.value

    async def _request_reformulation(
        self, session: AsyncSession, message: OutboundMessage, now: datetime
    ) -> None:
        """Ask the owning agent for a rewrite that fits the new context."""
        task = await db.create_task(
            session,
            task_type=TaskType.REFORMULATE_MESSAGE.value,
            agent_type=owning_agent(message.agent_id),
            context_json={
                "original_message_id": message.id,
                "original_message_data": message.message_data,
                "reason": "context_changed",
                "topic": message.topic,
            },
            scheduled_for=now,
            priority=Priority.HIGH.value,
            user_id=message.user_id,
            context_id=message.id,
            context_type="message",
            created_by=ACTOR,
            now=now,
        )
        logger.info("Reformulation requested for message %s (task %s)", message.id, task.id)

    async def _fail(self, unit: list[OutboundMessage], now: datetime, exc: BaseException) -> str:
        error = describe_error(exc)
        await self._transition(
            unit,
            now,
            {
                "status": MessageStatus.FAILED.value,
                "attempt_count": OutboundMessage.attempt_count + 1,
                "last_error": error,
                "claimed_at": None,
            },
            self._event(unit, EventType.MESSAGE_FAILED, "Delivery failed permanently", error=error),
        )
        logger.error(
            "Message %s failed permanently (attempt %d): %s",
            unit[0].id,
            unit[0].attempt_count + 1,
            error,
        )
        return MessageStatus.FAILED.value

    async def _retry(self, unit: list[OutboundMessage], now: datetime, exc: BaseException) -> str:
        """Requeue after a recoverable failure, backing off per attempt."""
        attempt = unit[0].attempt_count + 1
        retry_at = now + compute_backoff(
            unit[0].attempt_count, self.backoff_base_seconds, self.backoff_max_seconds
        )
        error = describe_error(exc)
        await self._transition(
            unit,
            now,
            {
                "status": MessageStatus.QUEUED.value,
                "scheduled_for": retry_at,
                "attempt_count": OutboundMessage.attempt_count + 1,
                "last_error": error,
                "claimed_at": None,
            },
            self._event(
                unit,
                EventType.MESSAGE_RETRY,
                "Attempt failed; requeued with backoff",
                error=error,
                attempt=attempt,
                scheduled_for=retry_at.isoformat(),
            ),
        )
        logger.warning(
            "Message %s attempt %d failed; retry at %s: %s",
            unit[0].id,
            attempt,
            retry_at.isoformat(),
            error,
        )
        return "retry"

    async def _release(self, unit: list[OutboundMessage], now: datetime) -> None:
        async with db.get_session(self.session_factory) as session:
            await session.execute(
                update(OutboundMessage)
                .where(
                    OutboundMessage.id.in_([m.id for m in unit]),
                    OutboundMessage.status == MessageStatus.ATTEMPTING.value,
                )
                .values(status=MessageStatus.QUEUED.value, claimed_at=None, updated_at=now)
                .execution_options(synchronize_session=False)
            )

    # -------------------------------------------------------------------------
    # Audit
    # -------------------------------------------------------------------------

    async def _record_relevance(self, message: OutboundMessage, decision: RelevanceDecision) -> None:
        action = "relevance_fail_open" if decision.fallback else "relevance_check"
        async with db.get_session(self.session_factory) as session:
            await db.log_action(
                session,
                ACTOR,
                action,
                user_id=message.user_id,
                subject_id=message.id,
                subject_type="message",
                details=decision.to_dict(),
                error=decision.reason if decision.fallback else None,
            )

    async def _log_error(self, message: OutboundMessage, action: str, exc: BaseException) -> None:
        try:
            async with db.get_session(self.session_factory) as session:
                await db.log_action(
                    session,
                    ACTOR,
                    action,
                    user_id=message.user_id,
                    subject_id=message.id,
                    subject_type="message",
                    error=describe_error(exc),
                )
        except Exception as log_exc:
            logger.warning("Could not record %s for %s: %s", action, message.id, log_exc)

"""Async database connection and store operations for the courier services."""

from collections.abc import AsyncGenerator, Sequence
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from .config import settings
from .errors import (
    DataIntegrityError,
    SchemaNotInitializedError,
    is_schema_missing_error,
    schema_not_initialized_message,
)
from .models import (
    ActionLog,
    Base,
    ConversationMessage,
    Direction,
    MessageStatus,
    OutboundMessage,
    Priority,
    ScheduledTask,
    TaskDeadLetter,
    TaskStatus,
    User,
    new_id,
    utcnow,
)

# Create async engine and session factory
engine = create_async_engine(settings.async_database_url, echo=False, pool_pre_ping=True)
async_session_factory = async_sessionmaker(engine, expire_on_commit=False)


async def init_db() -> None:
    """Create all tables (for development/testing)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def get_session(
    factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncGenerator[AsyncSession]:
    """Async context manager for database sessions."""
    async with (factory or async_session_factory)() as session:
        try:
            yield session
            await session.commit()
        except Exception as exc:
            await session.rollback()
            if isinstance(exc, SQLAlchemyError) and is_schema_missing_error(exc):
                raise SchemaNotInitializedError(
                    schema_not_initialized_message(exc)
                ) from exc
            raise


def _validate_priority(priority: str) -> str:
    try:
        return Priority(priority).value
    except ValueError as exc:
        raise DataIntegrityError(f"Unknown priority: {priority!r}") from exc


# =============================================================================
# User Operations
# =============================================================================


async def create_user(session: AsyncSession, phone_number: str, **preferences: Any) -> User:
    """Create a user with optional delivery preferences."""
    user = User(phone_number=phone_number, **preferences)
    session.add(user)
    await session.flush()
    return user


async def get_user(session: AsyncSession, user_id: str) -> User | None:
    """Get a user by ID."""
    result = await session.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


# =============================================================================
# Transcript Operations
# =============================================================================


async def record_inbound_message(
    session: AsyncSession,
    user_id: str,
    content: str,
    *,
    conversation_id: str | None = None,
    received_at: datetime | None = None,
) -> ConversationMessage:
    """Record an inbound SMS; feeds the active-user override and relevance deltas."""
    received_at = received_at or utcnow()
    message = ConversationMessage(
        user_id=user_id,
        conversation_id=conversation_id,
        role="user",
        content=content,
        direction=Direction.INBOUND.value,
        status="received",
        created_at=received_at,
    )
    session.add(message)
    await session.execute(
        update(User).where(User.id == user_id).values(last_active_at=received_at)
    )
    await session.flush()
    return message


async def last_inbound_at(session: AsyncSession, user_id: str) -> datetime | None:
    """Timestamp of the user's most recent inbound message."""
    result = await session.execute(
        select(func.max(ConversationMessage.created_at)).where(
            ConversationMessage.user_id == user_id,
            ConversationMessage.direction == Direction.INBOUND.value,
        )
    )
    return result.scalar_one_or_none()


async def get_conversation_delta(
    session: AsyncSession,
    user_id: str,
    since: datetime,
    *,
    limit: int = 20,
) -> list[ConversationMessage]:
    """Conversation turns after ``since``, oldest first (the most recent ``limit``)."""
    result = await session.execute(
        select(ConversationMessage)
        .where(
            ConversationMessage.user_id == user_id,
            ConversationMessage.created_at > since,
        )
        .order_by(ConversationMessage.created_at.desc())
        .limit(limit)
    )
    rows = list(result.scalars().all())
    rows.reverse()
    return rows


# =============================================================================
# Message Queue Operations (producer side)
# =============================================================================


async def enqueue_message(
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
    final_message: str | None = None,
    sequence_id: str | None = None,
    sequence_position: int | None = None,
    sequence_total: int | None = None,
    now: datetime | None = None,
) -> OutboundMessage:
    """Insert a queued outbound message.

    When ``topic`` is set, older still-queued rows for the same (user, topic)
    are marked superseded by the new row.
    """
    if not isinstance(message_data, dict):
        raise DataIntegrityError("message_data must be a JSON object")

    now = now or utcnow()
    topic = topic or message_data.get("topic")
    message = OutboundMessage(
        id=new_id(),
        user_id=user_id,
        agent_id=agent_id,
        message_data=message_data,
        priority=_validate_priority(priority),
        scheduled_for=scheduled_for or now,
        requires_fresh_context=requires_fresh_context,
        topic=topic,
        conversation_id=conversation_id,
        final_message=final_message,
        status=MessageStatus.QUEUED.value,
        sequence_id=sequence_id,
        sequence_position=sequence_position,
        sequence_total=sequence_total,
        created_at=now,
        updated_at=now,
    )
    session.add(message)
    await session.flush()

    if topic and sequence_id is None:
        await supersede_topic(session, user_id, topic, keep_id=message.id)

    return message


async def enqueue_sequence(
    session: AsyncSession,
    *,
    user_id: str,
    agent_id: str,
    parts: Sequence[dict[str, Any]],
    priority: str = Priority.MEDIUM.value,
    scheduled_for: datetime | None = None,
    requires_fresh_context: bool = False,
    conversation_id: str | None = None,
    now: datetime | None = None,
) -> list[OutboundMessage]:
    """Queue a multi-message sequence delivered all-or-nothing."""
    if not parts:
        raise DataIntegrityError("A message sequence needs at least one part")

    sequence_id = new_id()
    now = now or utcnow()
    scheduled_for = scheduled_for or now
    messages: list[OutboundMessage] = []
    for position, message_data in enumerate(parts, start=1):
        messages.append(
            await enqueue_message(
                session,
                user_id=user_id,
                agent_id=agent_id,
                message_data=message_data,
                priority=priority,
                scheduled_for=scheduled_for,
                requires_fresh_context=requires_fresh_context,
                conversation_id=conversation_id,
                sequence_id=sequence_id,
                sequence_position=position,
                sequence_total=len(parts),
                now=now,
            )
        )
    return messages


async def supersede_topic(
    session: AsyncSession,
    user_id: str,
    topic: str,
    *,
    keep_id: str,
    reason: str = "replaced_by_newer",
) -> int:
    """Mark still-queued rows on (user, topic) other than ``keep_id`` superseded.

    Only rows in ``queued`` are touched, so repeating the call is a no-op.
    """
    result = await session.execute(
        update(OutboundMessage)
        .where(
            OutboundMessage.user_id == user_id,
            OutboundMessage.topic == topic,
            OutboundMessage.id != keep_id,
            OutboundMessage.status == MessageStatus.QUEUED.value,
        )
        .values(
            status=MessageStatus.SUPERSEDED.value,
            superseded_by_id=keep_id,
            superseded_reason=reason,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def cancel_message(
    session: AsyncSession,
    message_id: str,
    reason: str = "cancelled_by_producer",
) -> bool:
    """Supersede a message if it is still queued.

    Returns False once the row has been claimed or reached a terminal state;
    an in-flight attempt is never interrupted.
    """
    result = await session.execute(
        update(OutboundMessage)
        .where(
            OutboundMessage.id == message_id,
            OutboundMessage.status == MessageStatus.QUEUED.value,
        )
        .values(
            status=MessageStatus.SUPERSEDED.value,
            superseded_reason=reason,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


async def get_message(session: AsyncSession, message_id: str) -> OutboundMessage | None:
    """Get a queued/sent message by ID."""
    result = await session.execute(select(OutboundMessage).where(OutboundMessage.id == message_id))
    return result.scalar_one_or_none()


# =============================================================================
# Task Operations (producer side)
# =============================================================================


async def create_task(
    session: AsyncSession,
    *,
    task_type: str,
    agent_type: str,
    context_json: Any,
    scheduled_for: datetime | None = None,
    priority: str = Priority.MEDIUM.value,
    user_id: str | None = None,
    context_id: str | None = None,
    context_type: str | None = None,
    max_retries: int | None = None,
    created_by: str | None = None,
    now: datetime | None = None,
) -> ScheduledTask:
    """Insert a pending background task."""
    now = now or utcnow()
    task = ScheduledTask(
        task_type=task_type,
        agent_type=agent_type,
        user_id=user_id,
        context_id=context_id,
        context_type=context_type,
        scheduled_for=scheduled_for or now,
        priority=_validate_priority(priority),
        status=TaskStatus.PENDING.value,
        context_json=context_json,
        retry_count=0,
        max_retries=settings.task_default_max_retries if max_retries is None else max_retries,
        created_by=created_by,
        created_at=now,
    )
    session.add(task)
    await session.flush()
    return task


async def get_task(session: AsyncSession, task_id: str) -> ScheduledTask | None:
    """Get a task by ID."""
    result = await session.execute(select(ScheduledTask).where(ScheduledTask.id == task_id))
    return result.scalar_one_or_none()


async def list_dead_letters(session: AsyncSession, limit: int = 50) -> list[TaskDeadLetter]:
    """Most recent dead-letter records."""
    result = await session.execute(
        select(TaskDeadLetter).order_by(TaskDeadLetter.created_at.desc()).limit(limit)
    )
    return list(result.scalars().all())


# =============================================================================
# Audit Log Operations
# =============================================================================


async def log_action(
    session: AsyncSession,
    actor: str,
    action_type: str,
    *,
    user_id: str | None = None,
    subject_id: str | None = None,
    subject_type: str | None = None,
    details: dict[str, Any] | None = None,
    error: str | None = None,
    latency_ms: int | None = None,
) -> ActionLog:
    """Record a scheduler action."""
    entry = ActionLog(
        actor=actor,
        action_type=action_type,
        user_id=user_id,
        subject_id=subject_id,
        subject_type=subject_type,
        details=details,
        error=error,
        latency_ms=latency_ms,
    )
    session.add(entry)
    await session.flush()
    return entry


# =============================================================================
# Health
# =============================================================================


async def get_health_counts(session: AsyncSession) -> dict[str, int]:
    """Row counts for monitoring: queued, attempting, pending, claimed, dead_lettered."""
    message_rows = (
        await session.execute(
            select(OutboundMessage.status, func.count())
            .where(
                OutboundMessage.status.in_(
                    (MessageStatus.QUEUED.value, MessageStatus.ATTEMPTING.value)
                )
            )
            .group_by(OutboundMessage.status)
        )
    ).all()
    task_rows = (
        await session.execute(
            select(ScheduledTask.status, func.count())
            .where(
                ScheduledTask.status.in_(
                    (
                        TaskStatus.PENDING.value,
                        TaskStatus.CLAIMED.value,
                        TaskStatus.DEAD_LETTERED.value,
                    )
                )
            )
            .group_by(ScheduledTask.status)
        )
    ).all()

    counts = {
        MessageStatus.QUEUED.value: 0,
        MessageStatus.ATTEMPTING.value: 0,
        TaskStatus.PENDING.value: 0,
        TaskStatus.CLAIMED.value: 0,
        TaskStatus.DEAD_LETTERED.value: 0,
    }
    for status, count in [*message_rows, *task_rows]:
        counts[status] = int(count or 0)
    return counts

"""SQLAlchemy models for the courier scheduling store."""

from __future__ import annotations

from datetime import UTC, date, datetime, time
from enum import Enum
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
    Uuid,
    case,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func


@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(_element, _compiler, **_kw):
    return "JSON"


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from backends without tz support."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def new_id() -> str:
    return str(uuid4())


class Base(DeclarativeBase):
    """Base class for all models."""

    type_annotation_map = {
        dict[str, Any]: JSONB,
    }


# =============================================================================
# ENUMS
# =============================================================================


class Priority(str, Enum):
    URGENT = "urgent"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# Lower rank is served first.
PRIORITY_RANK: dict[str, int] = {
    Priority.URGENT.value: 1,
    Priority.HIGH.value: 2,
    Priority.MEDIUM.value: 3,
    Priority.LOW.value: 4,
}


def priority_rank(column: Any) -> Any:
    """SQL expression ordering urgent < high < medium < low."""
    return case(PRIORITY_RANK, value=column, else_=len(PRIORITY_RANK) + 1)


class MessageStatus(str, Enum):
    QUEUED = "queued"
    ATTEMPTING = "attempting"
    SENT = "sent"
    # Outcome label only; the stored row goes back to QUEUED with a new scheduled_for.
    RESCHEDULED = "rescheduled"
    SUPERSEDED = "superseded"
    FAILED = "failed"


TERMINAL_MESSAGE_STATUSES = (
    MessageStatus.SENT.value,
    MessageStatus.SUPERSEDED.value,
    MessageStatus.FAILED.value,
)


class TaskStatus(str, Enum):
    PENDING = "pending"
    CLAIMED = "claimed"
    COMPLETED = "completed"
    # Outcome label only; the stored row goes back to PENDING with backoff.
    FAILED_RETRYABLE = "failed_retryable"
    FAILED_PERMANENT = "failed_permanent"
    DEAD_LETTERED = "dead_lettered"


TERMINAL_TASK_STATUSES = (
    TaskStatus.COMPLETED.value,
    TaskStatus.FAILED_PERMANENT.value,
    TaskStatus.DEAD_LETTERED.value,
)


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


# =============================================================================
# USERS AND TRANSCRIPT
# =============================================================================


class User(Base):
    """SMS user with delivery preferences."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=new_id)
    phone_number: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    first_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    poc_agent_type: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Delivery preferences; NULL falls back to settings
    timezone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    quiet_hours_start: Mapped[time | None] = mapped_column(Time, nullable=True)
    quiet_hours_end: Mapped[time | None] = mapped_column(Time, nullable=True)
    quiet_hours_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    max_messages_per_day: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_messages_per_hour: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # Learned from replies, e.g. {"best_hours": [9, 18]} in local time
    response_pattern: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    last_active_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class ConversationMessage(Base):
    """Transcript rows. Outbound rows with status 'pending' are the send-ready boundary."""

    __tablename__ = "conversation_messages"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    conversation_id: Mapped[str | None] = mapped_column(Uuid(as_uuid=False), nullable=True)
    role: Mapped[str] = mapped_column(String(50), nullable=False)  # 'user', 'concierge', ...
    content: Mapped[str] = mapped_column(Text, nullable=False)
    direction: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str | None] = mapped_column(String(50), nullable=True)  # pending, sent, delivered, failed
    queue_message_id: Mapped[str | None] = mapped_column(Uuid(as_uuid=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_conversation_messages_user", "user_id", "direction", "created_at"),
        Index("idx_conversation_messages_outbox", "direction", "status"),
    )


# =============================================================================
# MESSAGE QUEUE STORE
# =============================================================================


class OutboundMessage(Base):
    """Outbound message queue owned by the orchestrator."""

    __tablename__ = "message_queue"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    agent_id: Mapped[str] = mapped_column(String(100), nullable=False)
    conversation_id: Mapped[str | None] = mapped_column(Uuid(as_uuid=False), nullable=True)
    topic: Mapped[str | None] = mapped_column(String(200), nullable=True)

    message_data: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    final_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    priority: Mapped[str] = mapped_column(String(20), default=Priority.MEDIUM.value)
    scheduled_for: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    requires_fresh_context: Mapped[bool] = mapped_column(Boolean, default=False)

    status: Mapped[str] = mapped_column(String(20), default=MessageStatus.QUEUED.value)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0)
    reschedule_count: Mapped[int] = mapped_column(Integer, default=0)
    last_reschedule_reason: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    superseded_by_id: Mapped[str | None] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("message_queue.id"), nullable=True
    )
    superseded_reason: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Multi-message sequences are delivered all-or-nothing
    sequence_id: Mapped[str | None] = mapped_column(Uuid(as_uuid=False), nullable=True)
    sequence_position: Mapped[int | None] = mapped_column(Integer, nullable=True)
    sequence_total: Mapped[int | None] = mapped_column(Integer, nullable=True)

    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_message_id: Mapped[str | None] = mapped_column(Uuid(as_uuid=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        Index("idx_queue_due", "status", "scheduled_for"),
        Index("idx_queue_user_topic", "user_id", "topic", "status"),
        Index("idx_queue_sequence", "sequence_id", "sequence_position"),
    )


class UserSendBudget(Base):
    """Per-user, per-local-day send counter."""

    __tablename__ = "user_send_budget"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    budget_date: Mapped[date] = mapped_column(Date, nullable=False)
    messages_sent: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_message_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (UniqueConstraint("user_id", "budget_date", name="uq_budget_user_date"),)


class SendReservation(Base):
    """One row per reserved send; backs the rolling hourly window."""

    __tablename__ = "send_reservations"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    message_id: Mapped[str | None] = mapped_column(Uuid(as_uuid=False), nullable=True)
    reserved_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("idx_reservations_user_time", "user_id", "reserved_at"),)


# =============================================================================
# TASK CLAIM STORE
# =============================================================================


class ScheduledTask(Base):
    """Deferred background work owned by the dispatcher."""

    __tablename__ = "scheduled_tasks"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=new_id)
    task_type: Mapped[str] = mapped_column(String(100), nullable=False)
    agent_type: Mapped[str] = mapped_column(String(50), nullable=False)
    user_id: Mapped[str | None] = mapped_column(Uuid(as_uuid=False), nullable=True)
    context_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    context_type: Mapped[str | None] = mapped_column(String(50), nullable=True)

    scheduled_for: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    priority: Mapped[str] = mapped_column(String(20), default=Priority.MEDIUM.value)

    status: Mapped[str] = mapped_column(String(30), default=TaskStatus.PENDING.value)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, default=3)
    parked: Mapped[bool] = mapped_column(Boolean, default=False)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    claimed_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_attempted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    context_json: Mapped[Any] = mapped_column(JSON, nullable=True)
    result_json: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    error_log: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_tasks_due", "status", "scheduled_for"),
        Index("idx_tasks_user", "user_id", "status"),
        Index("idx_tasks_context", "context_type", "context_id"),
    )


class TaskDeadLetter(Base):
    """Terminal record of a task that will never be retried automatically."""

    __tablename__ = "task_dead_letters"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=new_id)
    task_id: Mapped[str] = mapped_column(Uuid(as_uuid=False), nullable=False)
    task_type: Mapped[str] = mapped_column(String(100), nullable=False)
    agent_type: Mapped[str] = mapped_column(String(50), nullable=False)
    user_id: Mapped[str | None] = mapped_column(Uuid(as_uuid=False), nullable=True)
    payload: Mapped[Any] = mapped_column(JSON, nullable=True)
    error_message: Mapped[str] = mapped_column(Text, nullable=False)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False)
    original_created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("idx_dead_letters_task", "task_id"),
        Index("idx_dead_letters_type", "task_type", "created_at"),
    )


# =============================================================================
# AUDIT
# =============================================================================


class ActionLog(Base):
    """Audit trail of scheduler decisions, provider calls and errors."""

    __tablename__ = "action_log"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=new_id)
    actor: Mapped[str] = mapped_column(String(50), nullable=False)  # 'orchestrator', 'dispatcher'
    action_type: Mapped[str] = mapped_column(String(100), nullable=False)
    user_id: Mapped[str | None] = mapped_column(Uuid(as_uuid=False), nullable=True)
    subject_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    subject_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    latency_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (Index("idx_action_log_subject", "subject_type", "subject_id"),)

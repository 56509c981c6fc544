"""Initial schema - message queue, send budget, task claim store.

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Users table
    op.create_table(
        "users",
        sa.Column("id", postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column("phone_number", sa.String(20), nullable=False, unique=True),
        sa.Column("first_name", sa.String(100), nullable=True),
        sa.Column("poc_agent_type", sa.String(50), nullable=True),
        sa.Column("timezone", sa.String(50), nullable=True),
        sa.Column("quiet_hours_start", sa.Time(), nullable=True),
        sa.Column("quiet_hours_end", sa.Time(), nullable=True),
        sa.Column("quiet_hours_enabled", sa.Boolean(), server_default="true"),
        sa.Column("max_messages_per_day", sa.Integer(), nullable=True),
        sa.Column("max_messages_per_hour", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("last_active_at", sa.DateTime(timezone=True), nullable=True),
    )

    # Conversation transcript and outbound send-ready boundary
    op.create_table(
        "conversation_messages",
        sa.Column("id", postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=False),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("conversation_id", postgresql.UUID(as_uuid=False), nullable=True),
        sa.Column("role", sa.String(50), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("direction", sa.String(20), nullable=False),
        sa.Column("status", sa.String(50), nullable=True),
        sa.Column("queue_message_id", postgresql.UUID(as_uuid=False), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "idx_conversation_messages_user",
        "conversation_messages",
        ["user_id", "direction", "created_at"],
    )
    op.create_index(
        "idx_conversation_messages_outbox", "conversation_messages", ["direction", "status"]
    )

    # Outbound message queue
    op.create_table(
        "message_queue",
        sa.Column("id", postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=False),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("agent_id", sa.String(100), nullable=False),
        sa.Column("conversation_id", postgresql.UUID(as_uuid=False), nullable=True),
        sa.Column("topic", sa.String(200), nullable=True),
        sa.Column("message_data", postgresql.JSONB(), nullable=False),
        sa.Column("final_message", sa.Text(), nullable=True),
        sa.Column("priority", sa.String(20), server_default="medium"),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False),
        sa.Column("requires_fresh_context", sa.Boolean(), server_default="false"),
        sa.Column("status", sa.String(20), server_default="queued"),
        sa.Column("attempt_count", sa.Integer(), server_default="0"),
        sa.Column("reschedule_count", sa.Integer(), server_default="0"),
        sa.Column("last_reschedule_reason", sa.String(100), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column(
            "superseded_by_id",
            postgresql.UUID(as_uuid=False),
            sa.ForeignKey("message_queue.id"),
            nullable=True,
        ),
        sa.Column("superseded_reason", sa.String(100), nullable=True),
        sa.Column("sequence_id", postgresql.UUID(as_uuid=False), nullable=True),
        sa.Column("sequence_position", sa.Integer(), nullable=True),
        sa.Column("sequence_total", sa.Integer(), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_message_id", postgresql.UUID(as_uuid=False), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_queue_due", "message_queue", ["status", "scheduled_for"])
    op.create_index("idx_queue_user_topic", "message_queue", ["user_id", "topic", "status"])
    op.create_index("idx_queue_sequence", "message_queue", ["sequence_id", "sequence_position"])

    # Per-user, per-local-day send budget
    op.create_table(
        "user_send_budget",
        sa.Column("id", postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=False),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("budget_date", sa.Date(), nullable=False),
        sa.Column("messages_sent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_message_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("user_id", "budget_date", name="uq_budget_user_date"),
    )

    # Reservation ledger backing the rolling hourly window
    op.create_table(
        "send_reservations",
        sa.Column("id", postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=False),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("message_id", postgresql.UUID(as_uuid=False), nullable=True),
        sa.Column("reserved_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "idx_reservations_user_time", "send_reservations", ["user_id", "reserved_at"]
    )

    # Background task claim store
    op.create_table(
        "scheduled_tasks",
        sa.Column("id", postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column("task_type", sa.String(100), nullable=False),
        sa.Column("agent_type", sa.String(50), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=False), nullable=True),
        sa.Column("context_id", sa.String(100), nullable=True),
        sa.Column("context_type", sa.String(50), nullable=True),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False),
        sa.Column("priority", sa.String(20), server_default="medium"),
        sa.Column("status", sa.String(30), server_default="pending"),
        sa.Column("retry_count", sa.Integer(), server_default="0"),
        sa.Column("max_retries", sa.Integer(), server_default="3"),
        sa.Column("parked", sa.Boolean(), server_default="false"),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claimed_by", sa.String(100), nullable=True),
        sa.Column("last_attempted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("context_json", sa.JSON(), nullable=True),
        sa.Column("result_json", postgresql.JSONB(), nullable=True),
        sa.Column("error_log", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(100), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("idx_tasks_due", "scheduled_tasks", ["status", "scheduled_for"])
    op.create_index("idx_tasks_user", "scheduled_tasks", ["user_id", "status"])
    op.create_index("idx_tasks_context", "scheduled_tasks", ["context_type", "context_id"])

    # Dead letters
    op.create_table(
        "task_dead_letters",
        sa.Column("id", postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column("task_id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("task_type", sa.String(100), nullable=False),
        sa.Column("agent_type", sa.String(50), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=False), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False),
        sa.Column("original_created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_dead_letters_task", "task_dead_letters", ["task_id"])
    op.create_index("idx_dead_letters_type", "task_dead_letters", ["task_type", "created_at"])

    # Action log
    op.create_table(
        "action_log",
        sa.Column("id", postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column("actor", sa.String(50), nullable=False),
        sa.Column("action_type", sa.String(100), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=False), nullable=True),
        sa.Column("subject_id", sa.String(100), nullable=True),
        sa.Column("subject_type", sa.String(50), nullable=True),
        sa.Column("details", postgresql.JSONB(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("latency_ms", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_action_log_subject", "action_log", ["subject_type", "subject_id"])


def downgrade() -> None:
    op.drop_table("action_log")
    op.drop_table("task_dead_letters")
    op.drop_table("scheduled_tasks")
    op.drop_table("send_reservations")
    op.drop_table("user_send_budget")
    op.drop_table("message_queue")
    op.drop_table("conversation_messages")
    op.drop_table("users")

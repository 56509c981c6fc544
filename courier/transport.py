"""Hand-off of rendered messages to the outbound transport."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from .models import ConversationMessage, Direction, OutboundMessage


class Transport(Protocol):
    async def hand_off(
        self,
        session: AsyncSession,
        message: OutboundMessage,
        text: str,
        now: datetime,
    ) -> str:
        """Make ``text`` send-ready for ``message.user_id``; return the delivery row id."""
        ...


class OutboxTransport:
    """Writes outbound ``conversation_messages`` rows with status ``pending``.

    The SMS sender polls that boundary. The write shares the caller's
    transaction, so the hand-off and the ``sent`` transition commit together.
    """

    async def hand_off(
        self,
        session: AsyncSession,
        message: OutboundMessage,
        text: str,
        now: datetime,
    ) -> str:
        row = ConversationMessage(
            user_id=message.user_id,
            conversation_id=message.conversation_id,
            role=message.agent_id,
            content=text,
            direction=Direction.OUTBOUND.value,
            status="pending",
            queue_message_id=message.id,
            created_at=now,
        )
        session.add(row)
        await session.flush()
        return row.id

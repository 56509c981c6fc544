"""Relevance checks for context-sensitive queued messages."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Protocol

from .config import settings
from .errors import ProviderError, describe_error
from .llm_client import LLMClient, extract_json
from .models import ConversationMessage, OutboundMessage

logger = logging.getLogger(__name__)


class RelevanceVerdict(str, Enum):
    STILL_RELEVANT = "still_relevant"
    STALE_SUPERSEDE = "stale_supersede"
    STALE_RESCHEDULE = "stale_reschedule"


@dataclass(frozen=True)
class RelevanceDecision:
    verdict: RelevanceVerdict
    reschedule_at: datetime | None = None
    reason: str = ""
    # Only meaningful with STALE_SUPERSEDE: ask the owning agent for a rewrite.
    reformulate: bool = False
    # True when the provider could not be consulted and we proceeded anyway.
    fallback: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "verdict": self.verdict.value,
            "reschedule_at": self.reschedule_at.isoformat() if self.reschedule_at else None,
            "reason": self.reason,
            "reformulate": self.reformulate,
            "fallback": self.fallback,
        }


class RelevanceProvider(Protocol):
    async def check(
        self,
        message: OutboundMessage,
        delta: list[ConversationMessage],
        now: datetime,
    ) -> RelevanceDecision: ...


RELEVANCE_SYSTEM_PROMPT = """You decide whether a queued SMS is still appropriate to send.
You will see the queued message and every conversation turn since it was queued.

Reply with a single JSON object:
{"verdict": "still_relevant" | "stale_supersede" | "stale_reschedule",
 "delay_minutes": <integer, only for stale_reschedule>,
 "reformulate": <true if a rewritten message would still help, only for stale_supersede>,
 "reason": "<short explanation>"}

- still_relevant: the message still makes sense, or adds useful context.
- stale_supersede: the conversation moved on and the message would be confusing or redundant.
- stale_reschedule: the message is fine but the user is mid-conversation on something else."""


def build_relevance_prompt(message: OutboundMessage, delta: list[ConversationMessage]) -> str:
    queued = message.final_message or json.dumps(message.message_data, default=str)
    turns = "\n".join(
        f"[{turn.created_at.isoformat() if turn.created_at else '?'}] {turn.role}: {turn.content}"
        for turn in delta
    )
    return f"QUEUED MESSAGE:\n{queued}\n\nCONVERSATION SINCE IT WAS QUEUED:\n{turns}"


class LLMRelevanceProvider:
    """Relevance provider backed by the LLM client."""

    def __init__(self, client: LLMClient, *, min_delay_minutes: int = 5) -> None:
        self._client = client
        self._min_delay = min_delay_minutes

    async def check(
        self,
        message: OutboundMessage,
        delta: list[ConversationMessage],
        now: datetime,
    ) -> RelevanceDecision:
        reply = await self._client.complete(
            system=RELEVANCE_SYSTEM_PROMPT,
            prompt=build_relevance_prompt(message, delta),
            max_tokens=300,
        )
        data = extract_json(reply)
        try:
            verdict = RelevanceVerdict(data.get("verdict"))
        except ValueError as e:
            raise ProviderError(f"Unknown relevance verdict: {data.get('verdict')!r}") from e

        reason = str(data.get("reason") or "")
        if verdict == RelevanceVerdict.STALE_RESCHEDULE:
            try:
                delay = int(data.get("delay_minutes") or 0)
            except (TypeError, ValueError) as e:
                raise ProviderError(f"Invalid delay_minutes: {data.get('delay_minutes')!r}") from e
            return RelevanceDecision(
                verdict=verdict,
                reschedule_at=now + timedelta(minutes=max(delay, self._min_delay)),
                reason=reason,
            )
        if verdict == RelevanceVerdict.STALE_SUPERSEDE:
            return RelevanceDecision(
                verdict=verdict, reason=reason, reformulate=data.get("reformulate") is True
            )
        return RelevanceDecision(verdict=verdict, reason=reason)


class RelevanceChecker:
    """Runs a provider with a timeout and fails open when it cannot answer."""

    def __init__(self, provider: RelevanceProvider, *, timeout_seconds: float | None = None) -> None:
        self._provider = provider
        self._timeout = (
            settings.relevance_timeout_seconds if timeout_seconds is None else timeout_seconds
        )

    async def check(
        self,
        message: OutboundMessage,
        delta: list[ConversationMessage],
        now: datetime,
    ) -> RelevanceDecision:
        if not delta:
            return RelevanceDecision(RelevanceVerdict.STILL_RELEVANT, reason="no_new_context")

        try:
            decision = await asyncio.wait_for(self._ask(message, delta, now), timeout=self._timeout)
        except (ProviderError, TimeoutError) as exc:
            reason = "timeout" if isinstance(exc, TimeoutError) else describe_error(exc)
            logger.warning(
                "relevance_fail_open message=%s user=%s reason=%s",
                message.id,
                message.user_id,
                reason,
            )
        except Exception as exc:
            reason = describe_error(exc)
            logger.exception(
                "relevance_fail_open_unexpected message=%s user=%s reason=%s",
                message.id,
                message.user_id,
                reason,
            )
        else:
            return decision
        return RelevanceDecision(RelevanceVerdict.STILL_RELEVANT, reason=reason, fallback=True)

    async def _ask(
        self,
        message: OutboundMessage,
        delta: list[ConversationMessage],
        now: datetime,
    ) -> RelevanceDecision:
        decision = await self._provider.check(message, delta, now)
        if decision.verdict == RelevanceVerdict.STALE_RESCHEDULE and decision.reschedule_at is None:
            raise ProviderError("stale_reschedule verdict without a reschedule time")
        return decision

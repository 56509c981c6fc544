"""Rendering structured ``message_data`` into SMS text."""

from __future__ import annotations

import json
from typing import Any, Protocol

from .errors import ProviderError, RenderError
from .llm_client import LLMClient

MAX_SMS_CHARS = 1600

RENDER_SYSTEM_PROMPT = """You turn structured notification data into one short, friendly SMS.
Write in plain conversational prose, no markdown, no greeting boilerplate.
Keep it under 320 characters unless the data clearly needs more.
Reply with the message text only."""


class Renderer(Protocol):
    async def render(self, message_data: dict[str, Any]) -> str: ...


def prerendered_text(message_data: dict[str, Any]) -> str | None:
    """Producers may ship literal text in ``message_data['text']``."""
    text = message_data.get("text")
    if isinstance(text, str) and text.strip():
        return text.strip()
    return None


class LLMRenderer:
    """Renderer backed by the LLM client."""

    def __init__(self, client: LLMClient, *, max_chars: int = MAX_SMS_CHARS) -> None:
        self._client = client
        self._max_chars = max_chars

    async def render(self, message_data: dict[str, Any]) -> str:
        literal = prerendered_text(message_data)
        if literal:
            return literal[: self._max_chars]

        prompt = "STRUCTURED DATA:\n" + json.dumps(message_data, indent=2, default=str)
        try:
            text = await self._client.complete(system=RENDER_SYSTEM_PROMPT, prompt=prompt)
        except ProviderError as e:
            raise RenderError(f"Rendering failed: {e}") from e
        return text[: self._max_chars]

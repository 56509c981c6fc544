"""Async client for the LLM provider used by relevance checks and rendering."""

from __future__ import annotations

import json
import re
from typing import Any

import httpx

from .config import settings
from .errors import ProviderError

ANTHROPIC_VERSION = "2023-06-01"

_JSON_BLOCK_RE = re.compile(r"\{.*\}", re.DOTALL)


def _extract_text(content: list[dict[str, Any]]) -> str:
    texts: list[str] = []
    for block in content:
        if block.get("type") == "text" and isinstance(block.get("text"), str):
            texts.append(block["text"])
    return "".join(texts).strip()


def extract_json(text: str) -> dict[str, Any]:
    """Pull the first JSON object out of a model reply."""
    match = _JSON_BLOCK_RE.search(text)
    if not match:
        raise ProviderError(f"No JSON object in provider reply: {text[:200]}")
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise ProviderError(f"Invalid JSON in provider reply: {e}") from e
    if not isinstance(data, dict):
        raise ProviderError("Provider reply JSON is not an object")
    return data


class LLMClient:
    """Thin wrapper around the Messages API."""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        model: str | None = None,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._model = model or settings.llm_model
        self._client = httpx.AsyncClient(
            base_url=(base_url or settings.llm_api_url).rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds),
            headers={
                "x-api-key": api_key if api_key is not None else settings.llm_api_key,
                "anthropic-version": ANTHROPIC_VERSION,
                "content-type": "application/json",
            },
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def complete(self, *, system: str, prompt: str, max_tokens: int = 512) -> str:
        body = {
            "model": self._model,
            "max_tokens": max_tokens,
            "system": system,
            "messages": [{"role": "user", "content": prompt}],
        }
        try:
            resp = await self._client.post("/v1/messages", json=body)
            resp.raise_for_status()
        except httpx.RequestError as e:
            raise ProviderError(f"LLM request failed: {e}") from e
        except httpx.HTTPStatusError as e:
            raise ProviderError(
                f"LLM API error {e.response.status_code}: {e.response.text[:500]}"
            ) from e

        try:
            payload = resp.json()
        except ValueError as e:
            raise ProviderError(f"LLM response is not JSON: {resp.text[:200]}") from e
        content = payload.get("content") if isinstance(payload, dict) else None
        if not isinstance(content, list):
            raise ProviderError(f"Unexpected LLM response: {payload}")
        text = _extract_text(content)
        if not text:
            raise ProviderError("LLM returned an empty reply")
        return text

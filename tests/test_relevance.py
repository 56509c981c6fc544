import json
from datetime import UTC, datetime, timedelta

import httpx
import pytest

from courier.errors import ProviderError, RenderError
from courier.llm_client import LLMClient, extract_json
from courier.models import ConversationMessage, OutboundMessage
from courier.relevance import (
    LLMRelevanceProvider,
    RelevanceChecker,
    RelevanceDecision,
    RelevanceVerdict,
    build_relevance_prompt,
)
from courier.render import LLMRenderer, prerendered_text

NOW = datetime(2026, 3, 10, 16, 0, tzinfo=UTC)


def reply(text: str) -> httpx.Response:
    return httpx.Response(200, json={"content": [{"type": "text", "text": text}]})


def make_client(handler) -> LLMClient:
    return LLMClient(
        base_url="https://llm.test",
        api_key="test-key",
        model="test-model",
        transport=httpx.MockTransport(handler),
    )


def queued_message() -> OutboundMessage:
    return OutboundMessage(
        id="msg-1",
        user_id="user-1",
        agent_id="concierge",
        message_data={"text": "Did the plumber show up?"},
    )


def delta() -> list[ConversationMessage]:
    return [
        ConversationMessage(
            role="user", content="plumber fixed it!", direction="inbound", created_at=NOW
        )
    ]


@pytest.mark.asyncio
async def test_complete_posts_messages_request() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return reply("hello there")

    client = make_client(handler)
    text = await client.complete(system="be brief", prompt="say hi", max_tokens=50)
    await client.aclose()

    assert text == "hello there"
    request = seen[0]
    assert request.url == "https://llm.test/v1/messages"
    assert request.headers["x-api-key"] == "test-key"
    assert request.headers["anthropic-version"] == "2023-06-01"
    body = json.loads(request.content)
    assert body["model"] == "test-model"
    assert body["max_tokens"] == 50
    assert body["system"] == "be brief"
    assert body["messages"] == [{"role": "user", "content": "say hi"}]


@pytest.mark.asyncio
async def test_complete_wraps_http_errors() -> None:
    client = make_client(lambda request: httpx.Response(529, text="overloaded"))

    with pytest.raises(ProviderError, match="529"):
        await client.complete(system="s", prompt="p")
    await client.aclose()


def test_extract_json_finds_object_in_prose() -> None:
    text = 'Sure.\n```json\n{"verdict": "still_relevant", "reason": "ok"}\n```'

    assert extract_json(text) == {"verdict": "still_relevant", "reason": "ok"}
    with pytest.raises(ProviderError):
        extract_json("no json here")
    with pytest.raises(ProviderError):
        extract_json("{broken")


def test_relevance_prompt_includes_message_and_turns() -> None:
    prompt = build_relevance_prompt(queued_message(), delta())

    assert "Did the plumber show up?" in prompt
    assert "user: plumber fixed it!" in prompt


@pytest.mark.asyncio
async def test_llm_provider_parses_supersede_verdict() -> None:
    client = make_client(
        lambda request: reply('{"verdict": "stale_supersede", "reason": "already resolved"}')
    )
    decision = await LLMRelevanceProvider(client).check(queued_message(), delta(), NOW)

    assert decision == RelevanceDecision(RelevanceVerdict.STALE_SUPERSEDE, reason="already resolved")


@pytest.mark.asyncio
async def test_llm_provider_enforces_minimum_reschedule_delay() -> None:
    client = make_client(
        lambda request: reply('{"verdict": "stale_reschedule", "delay_minutes": 2, "reason": "busy"}')
    )
    decision = await LLMRelevanceProvider(client, min_delay_minutes=5).check(
        queued_message(), delta(), NOW
    )

    assert decision.verdict == RelevanceVerdict.STALE_RESCHEDULE
    assert decision.reschedule_at == NOW + timedelta(minutes=5)


@pytest.mark.asyncio
async def test_checker_fails_open_on_unusable_reply(caplog) -> None:
    client = make_client(lambda request: reply('{"verdict": "maybe"}'))
    checker = RelevanceChecker(LLMRelevanceProvider(client), timeout_seconds=5)

    decision = await checker.check(queued_message(), delta(), NOW)

    assert decision.verdict == RelevanceVerdict.STILL_RELEVANT
    assert decision.fallback is True
    assert decision.reason.startswith("ProviderError")
    assert "relevance_fail_open message=msg-1" in caplog.text


@pytest.mark.asyncio
async def test_checker_fails_open_on_reschedule_without_time() -> None:
    class NoTimeProvider:
        async def check(self, message, delta, now):
            return RelevanceDecision(RelevanceVerdict.STALE_RESCHEDULE)

    decision = await RelevanceChecker(NoTimeProvider()).check(queued_message(), delta(), NOW)

    assert decision.verdict == RelevanceVerdict.STILL_RELEVANT
    assert decision.fallback is True


@pytest.mark.asyncio
async def test_checker_skips_provider_without_new_turns() -> None:
    class ExplodingProvider:
        async def check(self, message, delta, now):
            raise AssertionError("provider should not be called")

    decision = await RelevanceChecker(ExplodingProvider()).check(queued_message(), [], NOW)

    assert decision.verdict == RelevanceVerdict.STILL_RELEVANT
    assert decision.reason == "no_new_context"
    assert decision.fallback is False


@pytest.mark.asyncio
async def test_renderer_prefers_literal_text() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("provider should not be called")

    renderer = LLMRenderer(make_client(handler), max_chars=10)

    assert await renderer.render({"text": "  Hello, world!  "}) == "Hello, wor"
    assert prerendered_text({"text": "   "}) is None


@pytest.mark.asyncio
async def test_renderer_renders_structured_data() -> None:
    prompts: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        prompts.append(json.loads(request.content)["messages"][0]["content"])
        return reply("Your intro with Dana is set for Friday.")

    renderer = LLMRenderer(make_client(handler))
    text = await renderer.render({"kind": "intro_confirmed", "with": "Dana", "day": "Friday"})

    assert text == "Your intro with Dana is set for Friday."
    assert '"with": "Dana"' in prompts[0]


@pytest.mark.asyncio
async def test_renderer_wraps_provider_errors() -> None:
    renderer = LLMRenderer(make_client(lambda request: httpx.Response(500, text="down")))

    with pytest.raises(RenderError):
        await renderer.render({"kind": "digest"})


@pytest.mark.asyncio
async def test_complete_wraps_non_json_body() -> None:
    client = make_client(lambda request: httpx.Response(200, text="<html>gateway</html>"))

    with pytest.raises(ProviderError, match="not JSON"):
        await client.complete(system="s", prompt="p")
    await client.aclose()


@pytest.mark.asyncio
async def test_checker_fails_open_on_non_json_body() -> None:
    client = make_client(lambda request: httpx.Response(200, text="<html>gateway</html>"))
    checker = RelevanceChecker(LLMRelevanceProvider(client), timeout_seconds=5)

    decision = await checker.check(queued_message(), delta(), NOW)
    await client.aclose()

    assert decision.verdict == RelevanceVerdict.STILL_RELEVANT
    assert decision.fallback is True
    assert decision.reason.startswith("ProviderError")


@pytest.mark.asyncio
async def test_checker_fails_open_on_unexpected_provider_exception(caplog) -> None:
    class BrokenProvider:
        async def check(self, message, delta, now):
            raise KeyError("verdict")

    decision = await RelevanceChecker(BrokenProvider()).check(queued_message(), delta(), NOW)

    assert decision.verdict == RelevanceVerdict.STILL_RELEVANT
    assert decision.fallback is True
    assert decision.reason.startswith("KeyError")
    assert "relevance_fail_open_unexpected message=msg-1" in caplog.text


@pytest.mark.asyncio
async def test_llm_provider_reads_reformulate_flag() -> None:
    client = make_client(
        lambda request: reply(
            '{"verdict": "stale_supersede", "reformulate": true, "reason": "plans changed"}'
        )
    )
    decision = await LLMRelevanceProvider(client).check(queued_message(), delta(), NOW)
    await client.aclose()

    assert decision.verdict == RelevanceVerdict.STALE_SUPERSEDE
    assert decision.reformulate is True
    assert decision.to_dict()["reformulate"] is True

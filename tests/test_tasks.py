import json

import pytest

from courier.config import settings
from courier.errors import DataIntegrityError
from courier.events import (
    EVENTS_CHANNEL,
    EventEmitter,
    EventType,
    SchedulerEvent,
    publish_event_handler,
)
from courier.tasks import (
    TASK_PAYLOADS,
    Introduction,
    Reformulation,
    TaskType,
    Verification,
    owning_agent,
    parse_task_payload,
    parse_task_type,
)


def test_every_task_type_has_a_payload_model() -> None:
    assert set(TASK_PAYLOADS) == set(TaskType)


def test_parse_task_type() -> None:
    assert parse_task_type("send_introduction") is TaskType.SEND_INTRODUCTION
    assert parse_task_type("launch_rocket") is None


def test_parse_payload_accepts_json_strings_and_keeps_extra_keys() -> None:
    payload = parse_task_payload(
        TaskType.SEND_INTRODUCTION,
        '{"intro_opportunity_id": "io-1", "connector_user_id": "u-1", '
        '"prospect_name": "Dana", "note": "met at expo"}',
    )

    assert isinstance(payload, Introduction)
    assert payload.prospect_name == "Dana"
    assert payload.model_extra == {"note": "met at expo"}


def test_parse_payload_validates_literals() -> None:
    payload = parse_task_payload(TaskType.VERIFY_LINKEDIN_CONNECTION, {"verification_type": "linkedin"})
    assert isinstance(payload, Verification)

    with pytest.raises(DataIntegrityError):
        parse_task_payload(TaskType.VERIFY_USER, {"verification_type": "carrier_pigeon"})


@pytest.mark.parametrize("context_json", [None, 42, "[1, 2]", "{oops"])
def test_parse_payload_rejects_non_objects(context_json) -> None:
    with pytest.raises(DataIntegrityError):
        parse_task_payload(TaskType.RE_ENGAGEMENT_CHECK, context_json)


@pytest.mark.asyncio
async def test_emitter_isolates_handler_failures(caplog) -> None:
    emitter = EventEmitter()
    seen = []

    def broken(event: SchedulerEvent) -> None:
        raise RuntimeError("subscriber down")

    async def recorder(event: SchedulerEvent) -> None:
        seen.append(event.type)

    emitter.on_event(broken)
    emitter.on_event(recorder)
    event = SchedulerEvent(
        type=EventType.TASK_COMPLETED, actor="dispatcher", subject_id="t-1", subject_type="task"
    )

    await emitter.emit(event)

    assert seen == [EventType.TASK_COMPLETED]
    assert "subscriber down" in caplog.text
    assert event.to_dict()["type"] == "task.completed"


@pytest.mark.asyncio
async def test_events_are_published_to_redis_when_enabled(monkeypatch) -> None:
    published = []

    class FakeRedis:
        async def publish(self, channel: str, message: str) -> None:
            published.append((channel, json.loads(message)))

    monkeypatch.setattr(settings, "redis_publish_enabled", True)
    monkeypatch.setattr("courier.redis_client.get_redis_client", lambda: FakeRedis())
    event = SchedulerEvent(
        type=EventType.MESSAGE_SENT, actor="orchestrator", subject_id="m-1", subject_type="message"
    )

    await publish_event_handler(event)

    assert published[0][0] == EVENTS_CHANNEL
    assert published[0][1]["type"] == "message.sent"
    assert published[0][1]["subject_id"] == "m-1"


@pytest.mark.asyncio
async def test_events_are_not_published_when_disabled(monkeypatch) -> None:
    def fail() -> None:
        raise AssertionError("redis should not be used")

    monkeypatch.setattr(settings, "redis_publish_enabled", False)
    monkeypatch.setattr("courier.redis_client.get_redis_client", fail)

    await publish_event_handler(
        SchedulerEvent(type=EventType.TASK_PARKED, actor="dispatcher", subject_id="t-1", subject_type="task")
    )


def test_reformulation_payload_keeps_original_message_data() -> None:
    payload = parse_task_payload(
        TaskType.REFORMULATE_MESSAGE,
        {"original_message_id": "m-1", "original_message_data": {"text": "Did the plumber come?"}},
    )

    assert isinstance(payload, Reformulation)
    assert payload.original_message_data == {"text": "Did the plumber come?"}
    assert payload.reason == "context_changed"

    with pytest.raises(DataIntegrityError):
        parse_task_payload(TaskType.REFORMULATE_MESSAGE, {"reason": "context_changed"})


def test_owning_agent_strips_version_suffixes() -> None:
    assert owning_agent("concierge") == "concierge"
    assert owning_agent("intro_handler_v2") == "intro_handler"
    assert owning_agent("scout_beta") == "scout"

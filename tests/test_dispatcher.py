import sys
import types
from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from courier import db
from courier.dispatcher import TaskDispatcher, claim_due_tasks, compute_backoff
from courier.errors import PermanentError, RetryableError
from courier.events import EventType
from courier.handlers import HandlerRegistry, load_handler_modules
from courier.models import Priority, TaskDeadLetter, TaskStatus, as_utc
from courier.reconciliation import reconcile
from courier.tasks import AgentType, ConversationSummary, TaskType


async def create_task(session_factory, clock, **kwargs):
    kwargs.setdefault("task_type", TaskType.CREATE_CONVERSATION_SUMMARY.value)
    kwargs.setdefault("agent_type", AgentType.CONCIERGE.value)
    kwargs.setdefault("context_json", {"conversation_id": "conv-1"})
    async with db.get_session(session_factory) as session:
        return await db.create_task(session, now=clock(), **kwargs)


def make_dispatcher(session_factory, clock, events, registry, **kwargs) -> TaskDispatcher:
    kwargs.setdefault("worker_id", "worker-a")
    return TaskDispatcher(
        registry, session_factory=session_factory, clock=clock, events=events, **kwargs
    )


def test_backoff_doubles_and_caps() -> None:
    assert compute_backoff(0, 60, 3600) == timedelta(seconds=60)
    assert compute_backoff(1, 60, 3600) == timedelta(seconds=120)
    assert compute_backoff(2, 60, 3600) == timedelta(seconds=240)
    assert compute_backoff(10, 60, 3600) == timedelta(seconds=3600)


@pytest.mark.asyncio
async def test_successful_task_completes_with_result(
    session_factory, clock, events, fetch_task
) -> None:
    registry = HandlerRegistry()
    received = []

    @registry.register(TaskType.CREATE_CONVERSATION_SUMMARY)
    async def summarize(task, payload):
        received.append(payload)
        return {"summary": "user asked about plumbers"}

    task = await create_task(session_factory, clock)
    result = await make_dispatcher(session_factory, clock, events, registry).run_tick()

    assert result.completed == 1
    assert isinstance(received[0], ConversationSummary)
    assert received[0].conversation_id == "conv-1"
    row = await fetch_task(task.id)
    assert row.status == TaskStatus.COMPLETED.value
    assert row.result_json == {"summary": "user asked about plumbers"}
    assert as_utc(row.completed_at) == clock()


@pytest.mark.asyncio
async def test_failure_is_retried_with_backoff(session_factory, clock, events, fetch_task) -> None:
    registry = HandlerRegistry()

    @registry.register(TaskType.CREATE_CONVERSATION_SUMMARY)
    async def flaky(task, payload):
        raise RetryableError("summarizer busy")

    task = await create_task(session_factory, clock)
    dispatcher = make_dispatcher(
        session_factory, clock, events, registry, backoff_base_seconds=60, backoff_max_seconds=3600
    )
    result = await dispatcher.run_tick()

    assert result.retried == 1
    row = await fetch_task(task.id)
    assert row.status == TaskStatus.PENDING.value
    assert row.retry_count == 1
    assert as_utc(row.scheduled_for) == clock() + timedelta(seconds=60)
    assert row.claimed_by is None
    assert "summarizer busy" in row.error_log

    # Not due yet.
    assert (await dispatcher.run_tick()).claimed == 0


@pytest.mark.asyncio
async def test_exhausted_retries_dead_letter_terminally(
    session_factory, clock, events, fetch_task
) -> None:
    registry = HandlerRegistry()
    calls = []
    seen = []
    events.on_event(seen.append)

    @registry.register(TaskType.CREATE_CONVERSATION_SUMMARY)
    async def broken(task, payload):
        calls.append(task.retry_count)
        raise RuntimeError("boom")

    task = await create_task(session_factory, clock, max_retries=2)
    dispatcher = make_dispatcher(
        session_factory, clock, events, registry, backoff_base_seconds=60, backoff_max_seconds=3600
    )

    assert (await dispatcher.run_tick()).retried == 1
    clock.advance(seconds=61)
    assert (await dispatcher.run_tick()).retried == 1
    clock.advance(seconds=121)
    assert (await dispatcher.run_tick()).dead_lettered == 1

    row = await fetch_task(task.id)
    assert row.status == TaskStatus.DEAD_LETTERED.value
    assert row.retry_count == 3
    assert calls == [0, 1, 2]

    async with db.get_session(session_factory) as session:
        letters = (
            await session.execute(select(TaskDeadLetter).where(TaskDeadLetter.task_id == task.id))
        ).scalars().all()
    assert len(letters) == 1
    assert letters[0].retry_count == 3
    assert letters[0].error_message == "RuntimeError: boom"
    assert letters[0].payload == {"conversation_id": "conv-1"}

    clock.advance(days=1)
    assert (await dispatcher.run_tick()).claimed == 0
    assert calls == [0, 1, 2]
    assert [event.type for event in seen] == [
        EventType.TASK_RETRY,
        EventType.TASK_RETRY,
        EventType.TASK_DEAD_LETTERED,
    ]



@pytest.mark.asyncio
async def test_store_error_on_one_task_does_not_stall_the_batch(
    session_factory, clock, events, fetch_task, monkeypatch, caplog
) -> None:
    registry = HandlerRegistry()

    @registry.register(TaskType.CREATE_CONVERSATION_SUMMARY)
    async def summarize(task, payload):
        return {"ok": True}

    first = await create_task(session_factory, clock, priority=Priority.HIGH.value)
    second = await create_task(session_factory, clock)
    dispatcher = make_dispatcher(session_factory, clock, events, registry)
    apply = dispatcher._apply

    async def flaky_apply(task, values, event, dead_letter=None):
        if task.id == first.id:
            raise OperationalError(
                "UPDATE scheduled_tasks", {}, Exception("could not serialize access")
            )
        return await apply(task, values, event, dead_letter)

    monkeypatch.setattr(dispatcher, "_apply", flaky_apply)

    result = await dispatcher.run_tick()

    assert result.claimed == 2
    assert result.completed == 1
    assert result.left_claimed == 1
    assert result.outcomes[first.id] == "left_claimed"
    assert (await fetch_task(first.id)).status == TaskStatus.CLAIMED.value
    assert (await fetch_task(second.id)).status == TaskStatus.COMPLETED.value
    assert f"Unhandled error processing task {first.id}" in caplog.text


@pytest.mark.asyncio
@pytest.mark.parametrize("context_json", ["{not json", [1, 2, 3], {"unexpected": True}])
async def test_corrupt_payload_dead_letters_without_retry(
    session_factory, clock, events, fetch_task, context_json
) -> None:
    registry = HandlerRegistry()
    calls = []

    @registry.register(TaskType.CREATE_CONVERSATION_SUMMARY)
    async def summarize(task, payload):
        calls.append(payload)

    task = await create_task(session_factory, clock, context_json=context_json)
    result = await make_dispatcher(session_factory, clock, events, registry).run_tick()

    assert result.dead_lettered == 1
    assert calls == []
    row = await fetch_task(task.id)
    assert row.status == TaskStatus.DEAD_LETTERED.value
    assert row.retry_count == 0
    assert row.error_log.startswith("DataIntegrityError")
    async with db.get_session(session_factory) as session:
        assert len(await db.list_dead_letters(session)) == 1


@pytest.mark.asyncio
async def test_permanent_error_stops_retries(session_factory, clock, events, fetch_task) -> None:
    registry = HandlerRegistry()

    @registry.register(TaskType.CREATE_CONVERSATION_SUMMARY)
    async def gone(task, payload):
        raise PermanentError("conversation deleted")

    task = await create_task(session_factory, clock)
    result = await make_dispatcher(session_factory, clock, events, registry).run_tick()

    assert result.failed_permanent == 1
    row = await fetch_task(task.id)
    assert row.status == TaskStatus.FAILED_PERMANENT.value
    assert row.retry_count == 0
    assert row.error_log == "PermanentError: conversation deleted"


@pytest.mark.asyncio
async def test_unknown_or_unhandled_types_are_parked(
    session_factory, clock, events, fetch_task
) -> None:
    registry = HandlerRegistry()
    unknown = await create_task(session_factory, clock, task_type="teleport_user")
    unhandled = await create_task(
        session_factory, clock, task_type=TaskType.RESEARCH_SOLUTION.value, context_json={}
    )
    dispatcher = make_dispatcher(session_factory, clock, events, registry)

    result = await dispatcher.run_tick()

    assert result.parked == 2
    for task_id in (unknown.id, unhandled.id):
        row = await fetch_task(task_id)
        assert row.status == TaskStatus.CLAIMED.value
        assert row.parked is True
        assert "No handler registered" in row.error_log

    clock.advance(hours=2)
    assert (await dispatcher.run_tick()).claimed == 0
    reconciled = await reconcile(session_factory, now=clock())
    assert reconciled.tasks_requeued == 0


@pytest.mark.asyncio
async def test_claims_by_priority_then_due_time(session_factory, clock) -> None:
    low = await create_task(session_factory, clock, priority=Priority.LOW.value)
    clock.advance(seconds=1)
    urgent = await create_task(session_factory, clock, priority=Priority.URGENT.value)
    clock.advance(seconds=1)
    medium = await create_task(session_factory, clock)
    await create_task(
        session_factory, clock, priority=Priority.URGENT.value, scheduled_for=clock() + timedelta(hours=1)
    )

    async with db.get_session(session_factory) as session:
        claimed = await claim_due_tasks(session, clock(), 10, "worker-a")

    assert [task.id for task in claimed] == [urgent.id, medium.id, low.id]
    assert all(task.claimed_by == "worker-a" for task in claimed)


@pytest.mark.asyncio
async def test_claimed_task_is_not_claimed_by_another_worker(session_factory, clock) -> None:
    task = await create_task(session_factory, clock)

    async with db.get_session(session_factory) as session:
        first = await claim_due_tasks(session, clock(), 10, "worker-a")
    async with db.get_session(session_factory) as session:
        second = await claim_due_tasks(session, clock(), 10, "worker-b")

    assert [t.id for t in first] == [task.id]
    assert second == []


@pytest.mark.asyncio
async def test_stale_claim_is_requeued(session_factory, clock, fetch_task) -> None:
    task = await create_task(session_factory, clock)
    async with db.get_session(session_factory) as session:
        await claim_due_tasks(session, clock(), 10, "crashed-worker")

    result = await reconcile(session_factory, now=clock() + timedelta(minutes=31))

    assert result.tasks_requeued == 1
    row = await fetch_task(task.id)
    assert row.status == TaskStatus.PENDING.value
    assert row.claimed_by is None


def test_registry_rejects_duplicate_handlers() -> None:
    registry = HandlerRegistry()

    async def handler(task, payload):
        return None

    registry.register(TaskType.VERIFY_USER, handler)
    assert TaskType.VERIFY_USER in registry
    assert registry.get(TaskType.VERIFY_USER) is handler
    with pytest.raises(ValueError):
        registry.register(TaskType.VERIFY_USER, handler)


def test_load_handler_modules_calls_register(monkeypatch) -> None:
    module = types.ModuleType("courier_test_handlers")

    async def verify(task, payload):
        return {"verified": True}

    def register(registry: HandlerRegistry) -> None:
        registry.register(TaskType.VERIFY_USER, verify)

    module.register = register
    monkeypatch.setitem(sys.modules, "courier_test_handlers", module)

    registry = HandlerRegistry()
    load_handler_modules(registry, ["courier_test_handlers"])

    assert registry.registered() == [TaskType.VERIFY_USER]


def test_load_handler_modules_requires_register(monkeypatch) -> None:
    monkeypatch.setitem(sys.modules, "courier_empty_handlers", types.ModuleType("courier_empty_handlers"))

    with pytest.raises(ValueError):
        load_handler_modules(HandlerRegistry(), ["courier_empty_handlers"])

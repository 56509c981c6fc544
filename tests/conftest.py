"""Shared test fixtures and configuration for pytest.

Store tests run against a file-backed SQLite database through aiosqlite.
Every transaction starts with ``BEGIN IMMEDIATE`` so concurrent sessions are
serialized on the write lock the way row locks serialize them on Postgres.
"""

import asyncio
import itertools
import json
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, time, timedelta
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from courier import db
from courier.events import EventEmitter
from courier.models import Base, OutboundMessage, ScheduledTask
from courier.orchestrator import MessageOrchestrator
from courier.relevance import RelevanceChecker, RelevanceDecision, RelevanceVerdict

# Tuesday 2026-03-10 16:00 UTC is 12:00 in New York (EDT since 2026-03-08).
NOON_NEW_YORK = datetime(2026, 3, 10, 16, 0, tzinfo=UTC)


class FrozenClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeRenderer:
    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self.error: Exception | None = None
        self.delay = 0.0

    async def render(self, message_data: dict[str, Any]) -> str:
        self.calls.append(message_data)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return message_data.get("text") or json.dumps(message_data, sort_keys=True)


class FakeRelevanceProvider:
    def __init__(self) -> None:
        self.calls: list[tuple[str, list[str]]] = []
        self.decision = RelevanceDecision(RelevanceVerdict.STILL_RELEVANT, reason="on topic")
        self.error: Exception | None = None
        self.delay = 0.0

    async def check(self, message, delta, now) -> RelevanceDecision:
        self.calls.append((message.id, [turn.content for turn in delta]))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.decision


@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession]]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'courier.db'}")

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_implicit_begin(dbapi_connection, connection_record) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(NOON_NEW_YORK)


@pytest.fixture
def make_user(session_factory):
    """Factory creating New York users with a 22:00-08:00 quiet window."""
    phones = itertools.count(1)

    async def _make(**preferences: Any):
        preferences.setdefault("timezone", "America/New_York")
        preferences.setdefault("quiet_hours_start", time(22, 0))
        preferences.setdefault("quiet_hours_end", time(8, 0))
        async with db.get_session(session_factory) as session:
            return await db.create_user(session, f"+1555000{next(phones):04d}", **preferences)

    return _make


@pytest.fixture
def renderer() -> FakeRenderer:
    return FakeRenderer()


@pytest.fixture
def relevance_provider() -> FakeRelevanceProvider:
    return FakeRelevanceProvider()


@pytest.fixture
def events() -> EventEmitter:
    return EventEmitter()


@pytest.fixture
def make_orchestrator(session_factory, clock, renderer, relevance_provider, events):
    def _make(*, relevance_timeout: float = 1.0, **kwargs: Any) -> MessageOrchestrator:
        return MessageOrchestrator(
            renderer=kwargs.pop("renderer", renderer),
            relevance=RelevanceChecker(relevance_provider, timeout_seconds=relevance_timeout),
            session_factory=session_factory,
            clock=clock,
            events=events,
            **kwargs,
        )

    return _make


@pytest.fixture
def fetch_message(session_factory):
    async def _fetch(message_id: str) -> OutboundMessage:
        async with db.get_session(session_factory) as session:
            return (
                await session.execute(select(OutboundMessage).where(OutboundMessage.id == message_id))
            ).scalar_one()

    return _fetch


@pytest.fixture
def fetch_task(session_factory):
    async def _fetch(task_id: str) -> ScheduledTask:
        async with db.get_session(session_factory) as session:
            return (
                await session.execute(select(ScheduledTask).where(ScheduledTask.id == task_id))
            ).scalar_one()

    return _fetch

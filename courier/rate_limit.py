"""Per-user send budget: daily and rolling-hour limits."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from zoneinfo import ZoneInfo

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from .config import settings
from .models import SendReservation, User, UserSendBudget, as_utc

HOURLY_WINDOW = timedelta(hours=1)


@dataclass(frozen=True)
class RateLimitPolicy:
    """Send limits for one user. A limit of ``0`` mutes the user."""

    max_per_day: int
    max_per_hour: int
    timezone: str

    def __post_init__(self) -> None:
        if self.max_per_day < 0 or self.max_per_hour < 0:
            raise ValueError("Rate limits must not be negative")

    @property
    def muted(self) -> bool:
        return self.max_per_day == 0 or self.max_per_hour == 0


@dataclass(frozen=True)
class ReserveResult:
    allowed: bool
    next_allowed_at: datetime | None
    sent_today: int
    sent_last_hour: int


def policy_for_user(user: User) -> RateLimitPolicy:
    """Per-user limits with configured defaults for unset columns."""
    per_day = user.max_messages_per_day
    per_hour = user.max_messages_per_hour
    return RateLimitPolicy(
        max_per_day=settings.max_messages_per_day if per_day is None else per_day,
        max_per_hour=settings.max_messages_per_hour if per_hour is None else per_hour,
        timezone=user.timezone or settings.default_timezone,
    )


def local_day(now: datetime, timezone: str) -> date:
    return now.astimezone(ZoneInfo(timezone)).date()


def next_local_midnight(now: datetime, timezone: str) -> datetime:
    tz = ZoneInfo(timezone)
    tomorrow = now.astimezone(tz).date() + timedelta(days=1)
    return datetime.combine(tomorrow, datetime.min.time(), tzinfo=tz).astimezone(UTC)


def next_hourly_slot(reserved: list[datetime], max_per_hour: int) -> datetime:
    """When the rolling hour frees a slot, given ascending reservation times."""
    # Dropping to max_per_hour - 1 in-window sends requires the
    # (len - max_per_hour)-th oldest reservation to age out.
    return reserved[len(reserved) - max_per_hour] + HOURLY_WINDOW


async def _ensure_budget_row(session: AsyncSession, user_id: str, budget_date: date) -> None:
    dialect = session.get_bind().dialect.name
    insert = sqlite.insert if dialect == "sqlite" else postgresql.insert
    await session.execute(
        insert(UserSendBudget)
        .values(user_id=user_id, budget_date=budget_date, messages_sent=0)
        .on_conflict_do_nothing(index_elements=["user_id", "budget_date"])
    )


async def _reserved_in_window(session: AsyncSession, user_id: str, now: datetime) -> list[datetime]:
    rows = await session.execute(
        select(SendReservation.reserved_at)
        .where(
            SendReservation.user_id == user_id,
            SendReservation.reserved_at > now - HOURLY_WINDOW,
        )
        .order_by(SendReservation.reserved_at)
    )
    return [as_utc(value) for value in rows.scalars()]


def _evaluate(
    now: datetime,
    policy: RateLimitPolicy,
    sent_today: int,
    reserved: list[datetime],
) -> ReserveResult:
    if policy.muted:
        return ReserveResult(False, next_local_midnight(now, policy.timezone), sent_today, len(reserved))

    day_full = sent_today >= policy.max_per_day
    hour_full = len(reserved) >= policy.max_per_hour
    if not (day_full or hour_full):
        return ReserveResult(True, None, sent_today, len(reserved))

    candidates: list[datetime] = []
    if day_full:
        candidates.append(next_local_midnight(now, policy.timezone))
    if hour_full:
        candidates.append(next_hourly_slot(reserved, policy.max_per_hour))
    return ReserveResult(
        allowed=False,
        next_allowed_at=max(candidates),
        sent_today=sent_today,
        sent_last_hour=len(reserved),
    )


async def check_budget(
    session: AsyncSession,
    user_id: str,
    now: datetime,
    policy: RateLimitPolicy,
) -> ReserveResult:
    """Report whether a send would be allowed now, without consuming anything."""
    now = as_utc(now)
    sent_today = (
        await session.execute(
            select(UserSendBudget.messages_sent).where(
                UserSendBudget.user_id == user_id,
                UserSendBudget.budget_date == local_day(now, policy.timezone),
            )
        )
    ).scalar_one_or_none()
    reserved = await _reserved_in_window(session, user_id, now)
    return _evaluate(now, policy, sent_today or 0, reserved)


async def check_and_reserve(
    session: AsyncSession,
    user_id: str,
    now: datetime,
    policy: RateLimitPolicy,
    *,
    message_id: str | None = None,
) -> ReserveResult:
    """Check the user's budget and, if a send is allowed, consume one slot.

    The budget row is locked for the rest of the transaction, so concurrent
    callers for the same user are serialized and never both take the last slot.
    Store errors propagate; the caller must not treat them as allowed.
    """
    now = as_utc(now)
    budget_date = local_day(now, policy.timezone)
    await _ensure_budget_row(session, user_id, budget_date)

    sent_today = (
        await session.execute(
            select(UserSendBudget.messages_sent)
            .where(UserSendBudget.user_id == user_id, UserSendBudget.budget_date == budget_date)
            .with_for_update()
        )
    ).scalar_one()
    reserved = await _reserved_in_window(session, user_id, now)

    result = _evaluate(now, policy, sent_today, reserved)
    if not result.allowed:
        return result

    await session.execute(
        update(UserSendBudget)
        .where(UserSendBudget.user_id == user_id, UserSendBudget.budget_date == budget_date)
        .values(messages_sent=UserSendBudget.messages_sent + 1, last_message_at=now)
        .execution_options(synchronize_session=False)
    )
    session.add(SendReservation(user_id=user_id, message_id=message_id, reserved_at=now))
    await session.flush()

    return ReserveResult(
        allowed=True,
        next_allowed_at=None,
        sent_today=sent_today + 1,
        sent_last_hour=len(reserved) + 1,
    )

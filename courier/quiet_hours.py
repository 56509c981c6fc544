"""Quiet-hours evaluation in the user's local time."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, time, timedelta
from zoneinfo import ZoneInfo

from .config import settings
from .models import User, as_utc


def parse_clock(value: str) -> time:
    """Parse ``HH:MM`` into a ``time``."""
    hour, _, minute = value.partition(":")
    return time(int(hour), int(minute or 0))


@dataclass(frozen=True)
class QuietHoursWindow:
    """Local-time window during which non-urgent sends are suppressed.

    ``start > end`` describes a window that crosses midnight (22:00-08:00).
    ``start == end`` describes an empty window.
    """

    start: time
    end: time
    timezone: str
    enabled: bool = True

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def contains(self, local_time: time) -> bool:
        if not self.enabled or self.start == self.end:
            return False
        if self.start < self.end:
            return self.start <= local_time < self.end
        return local_time >= self.start or local_time < self.end


def window_for_user(user: User) -> QuietHoursWindow:
    """Quiet-hours window for a user, falling back to configured defaults."""
    start = user.quiet_hours_start
    end = user.quiet_hours_end
    return QuietHoursWindow(
        start=parse_clock(settings.quiet_hours_start) if start is None else start,
        end=parse_clock(settings.quiet_hours_end) if end is None else end,
        timezone=user.timezone or settings.default_timezone,
        enabled=user.quiet_hours_enabled is not False,
    )


def is_quiet(window: QuietHoursWindow, now: datetime) -> bool:
    """True if ``now`` falls inside the window in the window's timezone."""
    local = now.astimezone(window.tz)
    return window.contains(local.time().replace(tzinfo=None))


def is_recently_active(
    last_inbound_at: datetime | None,
    now: datetime,
    minutes: int | None = None,
) -> bool:
    """True if the user sent an inbound message within the last ``minutes``."""
    if last_inbound_at is None:
        return False
    minutes = settings.active_override_minutes if minutes is None else minutes
    return now - as_utc(last_inbound_at) <= timedelta(minutes=minutes)


def is_suppressed(
    window: QuietHoursWindow,
    now: datetime,
    last_inbound_at: datetime | None = None,
    *,
    active_override_minutes: int | None = None,
) -> bool:
    """Whether a send at ``now`` is held back by quiet hours.

    A user who messaged us recently is awake, so the window does not apply.
    """
    if not is_quiet(window, now):
        return False
    return not is_recently_active(last_inbound_at, now, active_override_minutes)


def next_open_at(window: QuietHoursWindow, after: datetime) -> datetime:
    """Earliest instant at or after ``after`` that is outside the window (UTC)."""
    after = as_utc(after)
    if not is_quiet(window, after):
        return after

    tz = window.tz
    local = after.astimezone(tz)
    day = local.date()
    candidate = datetime.combine(day, window.end, tzinfo=tz)
    if candidate <= local:
        candidate = datetime.combine(day + timedelta(days=1), window.end, tzinfo=tz)
    return candidate.astimezone(UTC)


def optimal_send_time(user: User, now: datetime) -> datetime:
    """Earliest good moment at or after ``now`` to reach ``user``.

    Prefers the local ``best_hours`` learned in ``user.response_pattern``;
    the result is then pushed out of quiet hours.
    """
    now = as_utc(now)
    window = window_for_user(user)
    pattern = user.response_pattern or {}
    best_hours = sorted(
        {h for h in pattern.get("best_hours") or [] if isinstance(h, int) and 0 <= h <= 23}
    )
    candidate = now
    if best_hours:
        local = now.astimezone(window.tz)
        if local.hour not in best_hours:
            later = [h for h in best_hours if h > local.hour]
            day = local.date() if later else local.date() + timedelta(days=1)
            hour = later[0] if later else best_hours[0]
            candidate = datetime.combine(day, time(hour), tzinfo=window.tz).astimezone(UTC)
    return next_open_at(window, candidate)

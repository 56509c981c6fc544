"""Error types and helpers for the courier services."""

from __future__ import annotations

import re
from collections.abc import Iterator

import click


class CourierError(Exception):
    """Base class for scheduling and dispatch errors."""


class RetryableError(CourierError):
    """Transient failure; the row is retried with backoff."""


class PermanentError(CourierError):
    """Failure that retrying cannot fix."""


class DataIntegrityError(PermanentError):
    """Malformed payload, missing required field, or referenced entity not found."""


class ProviderError(CourierError):
    """The LLM provider failed, timed out, or returned an unusable response."""


class RenderError(CourierError):
    """Rendering ``message_data`` into SMS text failed."""


class SchemaNotInitializedError(click.ClickException):
    """Raised when the database schema/migrations have not been applied."""


# Postgres, then SQLite, wording for a query against a table that is not there.
_MISSING_TABLE_PATTERNS = (
    re.compile(r'relation "(?P<table>[^"]+)" does not exist', re.IGNORECASE),
    re.compile(r"no such table:\s*(?P<table>\w+)", re.IGNORECASE),
)


def _causes(exc: BaseException) -> Iterator[BaseException]:
    """Yield ``exc`` followed by whatever it was raised from or during."""
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def missing_table_name(exc: BaseException) -> str | None:
    """Name of the table a missing-table error complains about, if any."""
    for cause in _causes(exc):
        text = str(cause)
        for pattern in _MISSING_TABLE_PATTERNS:
            match = pattern.search(text)
            if match:
                return match.group("table")
    return None


def is_schema_missing_error(exc: BaseException) -> bool:
    """True when ``exc`` means migrations have not been applied."""
    if missing_table_name(exc) is not None:
        return True
    return any(
        type(cause).__name__ == "UndefinedTableError" or "UndefinedTableError" in str(cause)
        for cause in _causes(exc)
    )


def schema_not_initialized_message(exc: BaseException) -> str:
    table = missing_table_name(exc)
    headline = "Database schema is not initialized"
    if table:
        headline += f" (missing table `{table}`)"
    return (
        f"{headline}.\n"
        "Apply migrations with: `alembic upgrade head`\n"
        "Then verify with: `courier schema-check`"
    )


def describe_error(exc: BaseException, limit: int = 500) -> str:
    """Short ``Type: message`` string suitable for error columns."""
    text = f"{type(exc).__name__}: {exc}"
    return text[:limit]

"""Datetime helpers: lax backend timestamps in, one canonical string out."""

from __future__ import annotations

from datetime import UTC, datetime
from email.utils import parsedate_to_datetime

import pendulum
from pendulum.parsing.exceptions import ParserError


def parse_datetime(value: str | datetime, default_tz: str = "UTC") -> datetime:
    """Parse a lax datetime string into a timezone-aware datetime.

    Backends report modification times in different shapes:
    - 2026-02-02T22:21:29.975Z (S3, JavaScript clients)
    - Tue, 02 Feb 2026 22:21:29 GMT (HTTP Last-Modified)
    - 2026-02-02 22:21:29+00:00
    - 1770070889975 (B2 upload timestamps, epoch milliseconds)

    Missing timezone defaults to default_tz.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            tz = pendulum.timezone(default_tz)
            value = value.replace(tzinfo=tz)  # type: ignore[arg-type]
        return value

    value_str = value.strip()
    if value_str.isdigit():
        return datetime.fromtimestamp(int(value_str) / 1000, tz=UTC)

    try:
        parsed = pendulum.parse(value_str, tz=default_tz, strict=False)
    except ParserError:
        return parsedate_to_datetime(value_str)
    if not isinstance(parsed, pendulum.DateTime):
        # pendulum.parse returns Date for date-only strings
        parsed = pendulum.datetime(
            parsed.year, parsed.month, parsed.day, tz=default_tz  # type: ignore[union-attr]
        )
    return parsed  # type: ignore[return-value]


def format_timestamp(dt: datetime) -> str:
    """Format a datetime as UTC ISO 8601 with millisecond precision.

    Output: YYYY-MM-DDTHH:MM:SS.mmmZ. Snapshot hashes embed this string, so
    every storage timestamp must go through here before it is compared.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    utc = dt.astimezone(UTC)
    return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}Z"


def to_timestamp(value: str | datetime | None) -> str | None:
    """Normalize an optional backend timestamp to the canonical string."""
    if value is None:
        return None
    if isinstance(value, str):
        if not value.strip():
            return None
        value = parse_datetime(value)
    return format_timestamp(value)


def now_utc() -> datetime:
    """Return the current UTC datetime."""
    return datetime.now(UTC)


def now_iso() -> str:
    """Return the current time as a canonical timestamp string."""
    return format_timestamp(now_utc())


def month_start(dt: datetime) -> datetime:
    """Return midnight UTC on the first day of dt's month."""
    utc = dt.astimezone(UTC)
    return utc.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

"""Tests for datetime parsing and canonical timestamps."""

from datetime import UTC, datetime, timedelta, timezone

from backend.services.datetime_service import (
    format_timestamp,
    month_start,
    now_iso,
    now_utc,
    parse_datetime,
    to_timestamp,
)


class TestDatetimeParsing:
    def test_parse_iso_with_z(self) -> None:
        result = parse_datetime("2026-02-02T22:21:29.975Z")
        assert result.year == 2026
        assert result.hour == 22
        assert result.utcoffset() == timedelta(0)

    def test_parse_http_date(self) -> None:
        result = parse_datetime("Tue, 02 Feb 2026 22:21:29 GMT")
        assert result == datetime(2026, 2, 2, 22, 21, 29, tzinfo=UTC)

    def test_parse_epoch_milliseconds(self) -> None:
        result = parse_datetime("1770070889975")
        assert result == datetime.fromtimestamp(1770070889.975, tz=UTC)

    def test_parse_date_only(self) -> None:
        result = parse_datetime("2026-02-02")
        assert (result.year, result.month, result.day, result.hour) == (2026, 2, 2, 0)

    def test_parse_with_default_timezone(self) -> None:
        result = parse_datetime("2026-02-02 10:30", default_tz="America/New_York")
        assert result.hour == 10
        assert result.utcoffset() == timedelta(hours=-5)

    def test_parse_datetime_object(self) -> None:
        dt = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)
        assert parse_datetime(dt) == dt

    def test_parse_datetime_naive_adds_tz(self) -> None:
        result = parse_datetime(datetime(2026, 1, 1, 12, 0), default_tz="UTC")
        assert result.tzinfo is not None


class TestCanonicalTimestamps:
    def test_format_truncates_to_milliseconds(self) -> None:
        dt = datetime(2026, 2, 2, 22, 21, 29, 975359, tzinfo=UTC)
        assert format_timestamp(dt) == "2026-02-02T22:21:29.975Z"

    def test_format_converts_to_utc(self) -> None:
        dt = datetime(2026, 2, 3, 0, 0, tzinfo=timezone(timedelta(hours=2)))
        assert format_timestamp(dt) == "2026-02-02T22:00:00.000Z"

    def test_format_treats_naive_as_utc(self) -> None:
        assert format_timestamp(datetime(2026, 1, 1)) == "2026-01-01T00:00:00.000Z"

    def test_to_timestamp_accepts_strings(self) -> None:
        assert to_timestamp("Tue, 02 Feb 2026 22:21:29 GMT") == "2026-02-02T22:21:29.000Z"

    def test_to_timestamp_blank_is_none(self) -> None:
        assert to_timestamp(None) is None
        assert to_timestamp("  ") is None

    def test_now_helpers_are_utc(self) -> None:
        assert now_utc().tzinfo is not None
        assert now_iso().endswith("Z")

    def test_month_start(self) -> None:
        dt = datetime(2026, 3, 17, 9, 30, tzinfo=UTC)
        assert month_start(dt) == datetime(2026, 3, 1, tzinfo=UTC)

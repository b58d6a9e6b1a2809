"""
Tests for utils.time module - UTC timestamp utilities.

This module tests all time utility functions to ensure:
- All timestamps are timezone-aware (UTC)
- Formats match ISO 8601 with 'Z' suffix
- Ledger values from both PostgreSQL and SQLite parse to aware UTC datetimes
- Stopwatch measures elapsed time with the monotonic clock
- Deterministic behavior with time mocking (freezegun)
"""

from datetime import UTC, datetime, timedelta, timezone

import pytest
from freezegun import freeze_time

from ledger_migrate.utils.time import Stopwatch, parse_timestamp, utc_now, utc_timestamp


class TestUtcNow:
    """Test utc_now() function."""

    def test_has_utc_timezone(self):
        """utc_now() should return timezone-aware datetime with UTC."""
        result = utc_now()
        assert result.tzinfo == UTC

    @freeze_time("2025-12-13 08:30:45")
    def test_frozen_time_returns_expected_datetime(self):
        """utc_now() should return frozen time when using freezegun."""
        result = utc_now()
        assert (result.year, result.month, result.day) == (2025, 12, 13)
        assert (result.hour, result.minute, result.second) == (8, 30, 45)


class TestUtcTimestamp:
    """Test utc_timestamp() function."""

    @freeze_time("2025-12-13 08:30:45")
    def test_format_is_iso8601_with_z_suffix(self):
        assert utc_timestamp() == "2025-12-13T08:30:45Z"

    @freeze_time("2025-12-31 23:59:59")
    def test_end_of_year_formatting(self):
        assert utc_timestamp() == "2025-12-31T23:59:59Z"


class TestParseTimestamp:
    """Test parse_timestamp() with the shapes ledger rows come back in."""

    def test_parses_z_suffix(self):
        result = parse_timestamp("2025-12-13T08:30:45Z")
        assert result == datetime(2025, 12, 13, 8, 30, 45, tzinfo=UTC)

    def test_parses_sqlite_current_timestamp_format(self):
        """SQLite CURRENT_TIMESTAMP has a space separator and no offset."""
        result = parse_timestamp("2025-12-13 08:30:45")
        assert result == datetime(2025, 12, 13, 8, 30, 45, tzinfo=UTC)

    def test_converts_offset_to_utc(self):
        result = parse_timestamp("2025-12-13T10:30:45+02:00")
        assert result == datetime(2025, 12, 13, 8, 30, 45, tzinfo=UTC)
        assert result.tzinfo == UTC

    def test_accepts_aware_datetime(self):
        """psycopg returns TIMESTAMPTZ as an aware datetime."""
        value = datetime(2025, 12, 13, 9, 30, tzinfo=timezone(timedelta(hours=1)))
        assert parse_timestamp(value) == datetime(2025, 12, 13, 8, 30, tzinfo=UTC)

    def test_naive_datetime_assumed_utc(self):
        result = parse_timestamp(datetime(2025, 12, 13, 8, 30))
        assert result.tzinfo == UTC
        assert result.hour == 8

    def test_raises_on_invalid_format(self):
        with pytest.raises(ValueError, match="Invalid ISO 8601 timestamp format"):
            parse_timestamp("13/12/2025 08:30")

    def test_raises_on_empty_string(self):
        with pytest.raises(ValueError):
            parse_timestamp("")

    def test_roundtrip_with_utc_timestamp(self):
        with freeze_time("2025-12-14 12:00:00"):
            assert parse_timestamp(utc_timestamp()) == utc_now()


class TestStopwatch:
    """Test Stopwatch elapsed-time measurement."""

    def test_elapsed_ms_uses_monotonic_clock(self):
        with freeze_time("2025-12-13 08:00:00") as frozen:
            watch = Stopwatch()
            frozen.tick(0.25)
            assert watch.elapsed_ms() == 250

    def test_elapsed_ms_starts_near_zero(self):
        watch = Stopwatch()
        assert 0 <= watch.elapsed_ms() < 1000

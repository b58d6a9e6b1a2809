"""
UTC timestamp utilities for ledger-migrate.

All timestamps written to the ledger or emitted in logs MUST be in UTC with
explicit timezone markers. Durations are measured with a monotonic clock so
that wall-clock adjustments during a long migration cannot produce negative
execution times.

This module provides:
- utc_now(): Current time as timezone-aware datetime
- utc_timestamp(): ISO 8601 timestamp string with 'Z' suffix
- parse_timestamp(): Parse a ledger/ISO 8601 value to an aware datetime
- Stopwatch: Monotonic elapsed-time helper for migration timings

Examples:
    >>> from ledger_migrate.utils.time import utc_now, utc_timestamp
    >>> utc_now().tzinfo
    datetime.timezone.utc
    >>> utc_timestamp()
    '2025-12-13T08:30:45Z'
"""

import time
from datetime import UTC, datetime


def utc_now() -> datetime:
    """
    Return current time in UTC with timezone info.

    This is the canonical way to get current time in the codebase. The
    `applied_at` column of every ledger row written by the runner comes from
    here.

    Returns:
        datetime: Current UTC time with tzinfo=UTC

    Note:
        NEVER use datetime.now() without timezone parameter.
        NEVER use datetime.utcnow() (deprecated, returns naive datetime).
    """
    return datetime.now(UTC)


def utc_timestamp() -> str:
    """
    Return ISO 8601 timestamp string with 'Z' suffix.

    Format: YYYY-MM-DDTHH:MM:SSZ

    Returns:
        str: ISO 8601 formatted timestamp in UTC

    Example:
        >>> timestamp = utc_timestamp()
        >>> timestamp.endswith('Z')
        True
    """
    return utc_now().strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_timestamp(value: str | datetime) -> datetime:
    """
    Parse a ledger timestamp into a timezone-aware UTC datetime.

    PostgreSQL returns `applied_at` as an aware datetime already; SQLite
    returns the text it stored. Both forms are accepted:

    - datetime with tzinfo: converted to UTC
    - naive datetime: assumed to be UTC (TIMESTAMP WITHOUT TIME ZONE rows
      written by NOW() on a UTC server)
    - 'YYYY-MM-DDTHH:MM:SSZ' or any ISO 8601 string with an offset
    - 'YYYY-MM-DD HH:MM:SS' (SQLite CURRENT_TIMESTAMP), assumed UTC

    Args:
        value: Timestamp as stored in the ledger

    Returns:
        datetime: Timezone-aware datetime in UTC

    Raises:
        ValueError: If the string is not a recognizable ISO 8601 timestamp

    Examples:
        >>> parse_timestamp('2025-12-13T08:30:45Z').year
        2025
        >>> parse_timestamp('2025-12-13 08:30:45').tzinfo == UTC
        True
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"

    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as e:
        raise ValueError(f"Invalid ISO 8601 timestamp format: {value}") from e

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


class Stopwatch:
    """
    Monotonic elapsed-time measurement in whole milliseconds.

    Example:
        >>> watch = Stopwatch()
        >>> do_work()
        >>> watch.elapsed_ms()
        12
    """

    def __init__(self) -> None:
        self._start = time.monotonic()

    def elapsed_ms(self) -> int:
        """Milliseconds since the stopwatch was created."""
        return int((time.monotonic() - self._start) * 1000)

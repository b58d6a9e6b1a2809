"""
Tests for migrator/prober.py - database readiness polling.

A fake backend scripts the sequence of ping results; sleeping is replaced by
a recorder so the tests run instantly and can assert the wait schedule.
"""

import sqlite3

import pytest

from ledger_migrate.config.schema import DatabaseSettings, ProbeSettings
from ledger_migrate.exceptions import ConnectivityError
from ledger_migrate.migrator.prober import ConnectivityProber
from ledger_migrate.storage.backends import SqliteBackend


class FakeBackend:
    """Backend whose ping() raises the queued errors, then succeeds."""

    transient_errors = (ConnectionRefusedError,)

    def __init__(self, failures):
        self.failures = list(failures)
        self.pings = 0

    def ping(self):
        self.pings += 1
        if self.failures:
            raise self.failures.pop(0)

    def describe(self):
        return "postgres@db:5432/st44"


@pytest.fixture
def sleeps():
    return []


def _prober(backend, sleeps, **settings):
    return ConnectivityProber(backend, ProbeSettings(**settings), sleep=sleeps.append)


# ============================================================================
# Success paths
# ============================================================================


def test_ready_on_first_attempt(sleeps):
    backend = FakeBackend([])

    attempts = _prober(backend, sleeps).wait_until_ready()

    assert attempts == 1
    assert sleeps == []


def test_ready_after_transient_failures(sleeps):
    backend = FakeBackend([ConnectionRefusedError("refused")] * 3)

    attempts = _prober(backend, sleeps, poll_interval=2.0).wait_until_ready()

    assert attempts == 4
    assert backend.pings == 4
    assert sleeps == [2.0, 2.0, 2.0]


def test_poll_interval_override(sleeps):
    backend = FakeBackend([ConnectionRefusedError("refused")])

    _prober(backend, sleeps).wait_until_ready(poll_interval=0.5)

    assert sleeps == [0.5]


def test_exponential_backoff_is_capped(sleeps):
    backend = FakeBackend([ConnectionRefusedError("refused")] * 4)

    _prober(
        backend, sleeps, backoff="exponential", poll_interval=1.0, max_interval=4.0
    ).wait_until_ready()

    assert sleeps == [1.0, 2.0, 4.0, 4.0]


def test_attempts_logged(sleeps, caplog):
    backend = FakeBackend([ConnectionRefusedError("the database system is starting up")])

    with caplog.at_level("INFO"):
        _prober(backend, sleeps).wait_until_ready()

    assert "Database not ready (attempt 1)" in caplog.text
    assert "Database is ready" in caplog.text


# ============================================================================
# Failure paths
# ============================================================================


def test_gives_up_after_max_attempts(sleeps):
    last = ConnectionRefusedError("still refused")
    backend = FakeBackend([ConnectionRefusedError("refused")] * 2 + [last])

    with pytest.raises(ConnectivityError) as exc_info:
        _prober(backend, sleeps, max_attempts=3).wait_until_ready()

    error = exc_info.value
    assert error.attempts == 3
    assert error.last_error is last
    assert "not ready after 3 attempt(s)" in str(error)
    assert "postgres@db:5432/st44" in str(error)
    assert backend.pings == 3


def test_does_not_sleep_past_timeout(sleeps):
    backend = FakeBackend([ConnectionRefusedError("refused")] * 5)

    with pytest.raises(ConnectivityError) as exc_info:
        _prober(backend, sleeps, timeout=3.0, poll_interval=4.0, max_attempts=5).wait_until_ready()

    assert exc_info.value.attempts == 1
    assert sleeps == []


def test_non_transient_error_fails_immediately(sleeps):
    backend = FakeBackend([PermissionError("password authentication failed")])

    with pytest.raises(ConnectivityError, match="Cannot connect") as exc_info:
        _prober(backend, sleeps, max_attempts=5).wait_until_ready()

    assert isinstance(exc_info.value.last_error, PermissionError)
    assert backend.pings == 1
    assert sleeps == []


def test_sqlite_unreachable_path(tmp_path, sleeps):
    backend = SqliteBackend(
        DatabaseSettings(driver="sqlite", name=str(tmp_path / "missing" / "app.db"))
    )

    with pytest.raises(ConnectivityError) as exc_info:
        _prober(backend, sleeps, max_attempts=2, poll_interval=0.1).wait_until_ready()

    assert isinstance(exc_info.value.last_error, sqlite3.OperationalError)
    assert exc_info.value.attempts == 2


def test_sqlite_ready(tmp_path, sleeps):
    backend = SqliteBackend(DatabaseSettings(driver="sqlite", name=str(tmp_path / "app.db")))

    assert _prober(backend, sleeps).wait_until_ready() == 1

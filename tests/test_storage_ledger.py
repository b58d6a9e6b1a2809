"""
Tests for storage/ledger.py - the applied-version ledger.

Runs against real SQLite files so that DDL, conflict handling and the
legacy three-column upgrade are exercised end to end.
"""

import sqlite3
from datetime import UTC, datetime
from unittest.mock import patch

import pytest

from ledger_migrate.config.schema import DatabaseSettings
from ledger_migrate.exceptions import LedgerError
from ledger_migrate.storage.backends import SqliteBackend
from ledger_migrate.storage.ledger import Ledger, LedgerEntry

LEGACY_LEDGER_DDL = """
CREATE TABLE schema_migrations (
    version VARCHAR(255) PRIMARY KEY,
    name VARCHAR(255) NOT NULL,
    applied_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
)
"""


@pytest.fixture
def session(tmp_path):
    backend = SqliteBackend(DatabaseSettings(driver="sqlite", name=str(tmp_path / "ledger.db")))
    with backend.session() as s:
        yield s


@pytest.fixture
def ledger(session):
    ledger = Ledger(session, "schema_migrations")
    ledger.ensure_ledger_exists()
    return ledger


# ============================================================================
# ensure_ledger_exists
# ============================================================================


def test_ensure_creates_table_with_all_columns(ledger, session):
    assert session.column_names("schema_migrations") == [
        "version",
        "name",
        "applied_at",
        "checksum",
        "execution_time_ms",
    ]


def test_ensure_is_idempotent(ledger, session):
    ledger.record_applied("001", "create_users")

    ledger.ensure_ledger_exists()
    ledger.ensure_ledger_exists()

    assert ledger.list_applied_versions() == {"001"}


def test_ensure_upgrades_legacy_table(session):
    session.execute(LEGACY_LEDGER_DDL)
    session.execute(
        "INSERT INTO schema_migrations (version, name) VALUES ('000', 'create_migrations_table')"
    )

    ledger = Ledger(session, "schema_migrations")
    ledger.ensure_ledger_exists()

    assert "checksum" in session.column_names("schema_migrations")
    assert "execution_time_ms" in session.column_names("schema_migrations")
    entry = ledger.list_entries()[0]
    assert entry.full_name == "000_create_migrations_table"
    assert entry.checksum is None
    assert entry.execution_time_ms is None


def test_lock_key_is_stable_per_table(session):
    assert Ledger(session, "schema_migrations").lock_key == Ledger(session, "schema_migrations").lock_key
    assert Ledger(session, "schema_migrations").lock_key != Ledger(session, "other").lock_key


# ============================================================================
# Concurrent creation
# ============================================================================


def _race_on(session, prefix, error):
    """Make session.execute lose a race: another runner's DDL lands first, then ours fails."""
    original = session.execute

    def execute(sql, params=()):
        if sql.strip().startswith(prefix):
            original(sql, params)
            raise error
        return original(sql, params)

    return patch.object(session, "execute", side_effect=execute)


def test_concurrent_create_counts_as_success(session):
    ledger = Ledger(session, "schema_migrations")
    duplicate = sqlite3.OperationalError("table schema_migrations already exists")

    with _race_on(session, "CREATE TABLE", duplicate), patch.object(
        session, "recover", wraps=session.recover
    ) as recover:
        ledger.ensure_ledger_exists()

    recover.assert_called_once()
    assert "checksum" in session.column_names("schema_migrations")
    assert ledger.list_applied_versions() == set()


def test_concurrent_column_upgrade_counts_as_success(session):
    session.execute(LEGACY_LEDGER_DDL)
    ledger = Ledger(session, "schema_migrations")
    duplicate = sqlite3.OperationalError("duplicate column name: checksum")

    with _race_on(session, "ALTER TABLE", duplicate), patch.object(
        session, "recover", wraps=session.recover
    ) as recover:
        ledger.ensure_ledger_exists()

    assert recover.call_count == 2
    assert session.column_names("schema_migrations")[-2:] == ["checksum", "execution_time_ms"]


def test_create_failure_other_than_duplicate_raises(session):
    ledger = Ledger(session, "schema_migrations")
    denied = sqlite3.OperationalError("attempt to write a readonly database")

    with patch.object(session, "execute", side_effect=denied), patch.object(
        session, "recover", wraps=session.recover
    ) as recover:
        with pytest.raises(LedgerError, match="Cannot create schema_migrations") as exc_info:
            ledger.ensure_ledger_exists()

    recover.assert_called_once()
    assert exc_info.value.__cause__ is denied


def test_upgrade_failure_other_than_duplicate_raises(session):
    session.execute(LEGACY_LEDGER_DDL)
    ledger = Ledger(session, "schema_migrations")
    original = session.execute
    denied = sqlite3.OperationalError("attempt to write a readonly database")

    def execute(sql, params=()):
        if sql.startswith("ALTER TABLE"):
            raise denied
        return original(sql, params)

    with patch.object(session, "execute", side_effect=execute):
        with pytest.raises(LedgerError, match="Cannot upgrade schema_migrations"):
            ledger.ensure_ledger_exists()


# ============================================================================
# Reads and writes
# ============================================================================


def test_record_applied_inserts_once(ledger):
    assert ledger.record_applied("001", "create_users", checksum="a" * 64) is True
    assert ledger.record_applied("001", "create_users", checksum="b" * 64) is False

    entries = ledger.list_entries()
    assert len(entries) == 1
    assert entries[0].checksum == "a" * 64


def test_record_applied_stores_metadata(ledger):
    when = datetime(2025, 12, 13, 8, 30, 45, tzinfo=UTC)

    ledger.record_applied("002", "create_households", when, "c" * 64, 17)

    assert ledger.list_entries() == [
        LedgerEntry(
            version="002",
            name="create_households",
            applied_at=when,
            checksum="c" * 64,
            execution_time_ms=17,
        )
    ]


def test_list_entries_ordered_by_version(ledger):
    ledger.record_applied("003", "create_tasks")
    ledger.record_applied("001", "create_users")
    ledger.record_applied("002", "create_households")

    assert [e.version for e in ledger.list_entries()] == ["001", "002", "003"]


def test_is_applied(ledger):
    ledger.record_applied("001", "create_users")

    assert ledger.is_applied("001") is True
    assert ledger.is_applied("002") is False


def test_entries_written_by_sql_default_timestamp_parse(ledger, session):
    session.execute("INSERT INTO schema_migrations (version, name) VALUES ('005', 'self_recorded')")

    entry = ledger.list_entries()[0]

    assert entry.applied_at.tzinfo == UTC


def test_backfill_checksum_fills_missing_only(ledger, session):
    session.execute("INSERT INTO schema_migrations (version, name) VALUES ('001', 'create_users')")
    ledger.record_applied("002", "create_households", checksum="original")

    ledger.backfill_checksum("001", "d" * 64, 9)
    ledger.backfill_checksum("002", "changed", 9)

    entries = {e.version: e for e in ledger.list_entries()}
    assert entries["001"].checksum == "d" * 64
    assert entries["001"].execution_time_ms == 9
    assert entries["002"].checksum == "original"


def test_remove_entry(ledger):
    ledger.record_applied("001", "create_users")

    assert ledger.remove_entry("001") is True
    assert ledger.remove_entry("001") is False
    assert ledger.list_applied_versions() == set()


# ============================================================================
# Failure translation
# ============================================================================


def test_missing_table_raises_ledger_error(session):
    ledger = Ledger(session, "schema_migrations")

    with pytest.raises(LedgerError, match="Cannot read schema_migrations"):
        ledger.list_applied_versions()


def test_write_failure_raises_ledger_error(ledger, session):
    session.execute("DROP TABLE schema_migrations")

    with pytest.raises(LedgerError, match="Cannot write"):
        ledger.record_applied("001", "create_users")


def test_unparseable_applied_at_raises(ledger, session):
    session.execute(
        "INSERT INTO schema_migrations (version, name, applied_at) VALUES ('001', 'x', 'yesterday')"
    )

    with pytest.raises(LedgerError, match="Invalid applied_at"):
        ledger.list_entries()

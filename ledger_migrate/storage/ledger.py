"""
Applied-version ledger for ledger-migrate.

The ledger is the `schema_migrations` table inside the target database. A row
exists for a version if and only if that migration's effects are durably
present, because the executor writes the row in the same transaction that
applies the body. The API's /health/database endpoint reads the same table.

Schema (created on first use, upgraded from the legacy three-column layout):

    version            VARCHAR(32) PRIMARY KEY
    name               VARCHAR(255) NOT NULL
    applied_at         TIMESTAMPTZ NOT NULL DEFAULT NOW()
    checksum           VARCHAR(64)      -- sha256 of the applied body, nullable
    execution_time_ms  INTEGER          -- nullable

Idempotency lives here rather than in migration text: creation tolerates a
concurrent creator, and inserts ignore an existing version.
"""

import logging
import zlib
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime

from ledger_migrate.config.constants import DEFAULT_LEDGER_TABLE
from ledger_migrate.exceptions import LedgerError
from ledger_migrate.storage.backends import Session
from ledger_migrate.utils.time import parse_timestamp, utc_now

logger = logging.getLogger(__name__)

_CREATE_TABLE = {
    "postgresql": """
        CREATE TABLE IF NOT EXISTS {table} (
            version VARCHAR(32) PRIMARY KEY,
            name VARCHAR(255) NOT NULL,
            applied_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
            checksum VARCHAR(64),
            execution_time_ms INTEGER
        )
    """,
    "sqlite": """
        CREATE TABLE IF NOT EXISTS {table} (
            version TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            applied_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            checksum TEXT,
            execution_time_ms INTEGER
        )
    """,
}

# Columns missing from ledgers created by 000_create_migrations_table.sql
_UPGRADE_COLUMNS = {
    "checksum": "VARCHAR(64)",
    "execution_time_ms": "INTEGER",
}


@dataclass(frozen=True)
class LedgerEntry:
    """
    One row of the ledger.

    Attributes:
        version: Migration version (e.g. "001")
        name: Descriptive name (e.g. "create_users_table")
        applied_at: When the migration committed (UTC)
        checksum: sha256 of the body that was applied; None for rows written
            by the files themselves before the checksum column existed
        execution_time_ms: Body execution time; None for legacy rows
    """

    version: str
    name: str
    applied_at: datetime
    checksum: str | None = None
    execution_time_ms: int | None = None

    @property
    def full_name(self) -> str:
        return f"{self.version}_{self.name}"


class Ledger:
    """
    Reads and writes the applied-version ledger through a Session.

    All driver errors are re-raised as LedgerError so callers see a single
    exception type regardless of backend.

    Example:
        >>> with backend.session() as session:
        ...     ledger = Ledger(session, "schema_migrations")
        ...     ledger.ensure_ledger_exists()
        ...     ledger.list_applied_versions()
        {'000', '001'}
    """

    def __init__(self, session: Session, table: str = DEFAULT_LEDGER_TABLE):
        self.session = session
        self.table = table

    @property
    def lock_key(self) -> int:
        """Advisory lock key shared by every runner using this ledger table."""
        return zlib.crc32(self.table.encode("utf-8"))

    @contextmanager
    def _guard(self, action: str) -> Iterator[None]:
        try:
            yield
        except self.session.errors as e:
            raise LedgerError(f"Cannot {action} {self.table}: {e}") from e

    def ensure_ledger_exists(self) -> None:
        """
        Create the ledger table if absent and add any missing columns.

        Safe to call on every run and from several runners at once: a
        concurrent creator's duplicate-object error counts as success.

        Raises:
            LedgerError: On permission or connectivity failure
        """
        ddl = _CREATE_TABLE[self.session.dialect].format(table=self.table)
        try:
            self.session.execute(ddl)
        except self.session.errors as e:
            self.session.recover()
            if not self.session.is_duplicate_object(e):
                raise LedgerError(f"Cannot create {self.table}: {e}") from e
            logger.debug(f"Ledger table {self.table} created concurrently")

        with self._guard("inspect"):
            existing = set(self.session.column_names(self.table))

        for column, column_type in _UPGRADE_COLUMNS.items():
            if column in existing:
                continue
            try:
                self.session.execute(
                    f"ALTER TABLE {self.table} ADD COLUMN {column} {column_type}"
                )
            except self.session.errors as e:
                self.session.recover()
                if not self.session.is_duplicate_object(e):
                    raise LedgerError(f"Cannot upgrade {self.table}: {e}") from e
            logger.info(
                f"Upgraded ledger table {self.table}",
                extra={"context": {"added_column": column}},
            )

    def list_applied_versions(self) -> set[str]:
        """
        Return the set of applied versions.

        Raises:
            LedgerError: On permission or connectivity failure
        """
        with self._guard("read"):
            rows = self.session.query(f"SELECT version FROM {self.table}")
        return {str(row[0]) for row in rows}

    def list_entries(self) -> list[LedgerEntry]:
        """
        Return all ledger rows ordered by version.

        Raises:
            LedgerError: On permission or connectivity failure, or if a row
                carries an unparseable applied_at
        """
        with self._guard("read"):
            rows = self.session.query(
                f"SELECT version, name, applied_at, checksum, execution_time_ms "
                f"FROM {self.table} ORDER BY version"
            )

        entries = []
        for version, name, applied_at, checksum, execution_time_ms in rows:
            try:
                applied = parse_timestamp(applied_at)
            except (TypeError, ValueError) as e:
                raise LedgerError(
                    f"Invalid applied_at for version {version} in {self.table}: {applied_at!r}"
                ) from e
            entries.append(
                LedgerEntry(
                    version=str(version),
                    name=name,
                    applied_at=applied,
                    checksum=checksum,
                    execution_time_ms=execution_time_ms,
                )
            )
        return entries

    def is_applied(self, version: str) -> bool:
        """True if a ledger row exists for version."""
        p = self.session.placeholder
        with self._guard("read"):
            rows = self.session.query(
                f"SELECT 1 FROM {self.table} WHERE version = {p}", (version,)
            )
        return bool(rows)

    def record_applied(
        self,
        version: str,
        name: str,
        applied_at: datetime | None = None,
        checksum: str | None = None,
        execution_time_ms: int | None = None,
    ) -> bool:
        """
        Insert a ledger row, ignoring an existing row for the same version.

        Args:
            version: Migration version
            name: Migration name
            applied_at: Commit time (defaults to now, UTC)
            checksum: sha256 of the applied body
            execution_time_ms: Body execution time

        Returns:
            True if a row was inserted, False if the version was already recorded

        Raises:
            LedgerError: On permission or connectivity failure
        """
        p = self.session.placeholder
        when = self.session.timestamp_param(applied_at or utc_now())
        with self._guard("write"):
            inserted = self.session.execute(
                f"INSERT INTO {self.table} "
                f"(version, name, applied_at, checksum, execution_time_ms) "
                f"VALUES ({p}, {p}, {p}, {p}, {p}) "
                f"ON CONFLICT (version) DO NOTHING",
                (version, name, when, checksum, execution_time_ms),
            )
        return inserted > 0

    def backfill_checksum(
        self, version: str, checksum: str, execution_time_ms: int | None = None
    ) -> None:
        """
        Fill checksum and timing on a row that was written without them.

        Rows that already carry a checksum are left untouched, so the
        recorded value always describes the body that was actually applied.
        """
        p = self.session.placeholder
        with self._guard("write"):
            self.session.execute(
                f"UPDATE {self.table} "
                f"SET checksum = {p}, "
                f"execution_time_ms = COALESCE(execution_time_ms, {p}) "
                f"WHERE version = {p} AND checksum IS NULL",
                (checksum, execution_time_ms, version),
            )

    def remove_entry(self, version: str) -> bool:
        """
        Delete the row for version. Used only by rollback.

        Returns:
            True if a row was deleted
        """
        p = self.session.placeholder
        with self._guard("write"):
            deleted = self.session.execute(
                f"DELETE FROM {self.table} WHERE version = {p}", (version,)
            )
        return deleted > 0

"""
Database backends for ledger-migrate.

A backend knows how to open a connection to one kind of database and hands
out Session objects. Everything above this module (ledger, prober, executor)
talks to a Session and never imports a driver directly.

Two backends are provided:

- PostgresBackend: production target, driven by psycopg 3. Connections run in
  autocommit mode; transactions are opened explicitly with
  `connection.transaction()`, and the apply lock is a PostgreSQL advisory lock.
- SqliteBackend: local development and the test suite, driven by the standard
  library sqlite3 module with `isolation_level=None` so that BEGIN/COMMIT are
  issued explicitly, exactly like the PostgreSQL path. SQLite has
  transactional DDL, so atomicity of a failed migration is observable for real.

Sessions expose a deliberately small surface:

    query(sql, params)        -> list of row tuples
    execute(sql, params)      -> affected row count
    execute_script(script)    -> run a multi-statement migration body
    column_names(table)       -> columns of an existing table
    transaction(lock_key)     -> atomic scope, optionally holding the apply lock
    session_lock(lock_key)    -> apply lock held outside a runner transaction
    recover()                 -> roll back whatever a failed script left open

Driver exceptions are not translated here; callers catch `session.errors`
and raise the domain exception that fits their context.
"""

import logging
import re
import sqlite3
from abc import ABC, abstractmethod
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

import psycopg
from psycopg import errors as pg_errors
from psycopg import pq

from ledger_migrate.config.schema import DatabaseSettings

logger = logging.getLogger(__name__)


class Session(ABC):
    """
    One open database connection.

    Attributes:
        dialect: "postgresql" or "sqlite"
        placeholder: Parameter marker for the driver ("%s" or "?")
        errors: Driver exception classes raised by this session
    """

    dialect: str
    placeholder: str
    errors: tuple[type[Exception], ...]

    @abstractmethod
    def query(self, sql: str, params: Sequence[Any] = ()) -> list[tuple]:
        """Run a single statement and return all rows."""

    @abstractmethod
    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run a single statement and return the affected row count."""

    @abstractmethod
    def execute_script(self, script: str) -> None:
        """Run a multi-statement script as written, without parameters."""

    @abstractmethod
    def column_names(self, table: str) -> list[str]:
        """Return the column names of an existing table."""

    @abstractmethod
    def transaction(self, lock_key: int | None = None):
        """Context manager: commit on success, roll back on any exception."""

    @abstractmethod
    def session_lock(self, lock_key: int):
        """Context manager holding the apply lock for the enclosed block."""

    @property
    @abstractmethod
    def in_transaction(self) -> bool:
        """True if the connection has an open (or aborted) transaction."""

    @abstractmethod
    def recover(self) -> None:
        """Roll back a transaction left open or aborted by a failed script."""

    @abstractmethod
    def is_duplicate_object(self, exc: BaseException) -> bool:
        """True if exc reports that a table/column/type already exists."""

    @abstractmethod
    def timestamp_param(self, value: datetime) -> Any:
        """Convert an aware datetime into the driver's parameter value."""

    @abstractmethod
    def close(self) -> None:
        """Close the underlying connection."""


class DatabaseBackend(ABC):
    """
    Factory for sessions against one configured database.

    Attributes:
        settings: Connection parameters
        errors: Every exception class the driver raises
        transient_errors: Exceptions the readiness prober should retry on
    """

    errors: tuple[type[Exception], ...] = ()
    transient_errors: tuple[type[Exception], ...] = ()

    def __init__(self, settings: DatabaseSettings):
        self.settings = settings

    @abstractmethod
    def connect(self) -> Session:
        """Open a new Session. Raises driver errors on failure."""

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Open a Session and close it when the block exits."""
        session = self.connect()
        try:
            yield session
        finally:
            session.close()

    def ping(self) -> None:
        """
        Connect and run `SELECT 1`.

        Raises:
            Any driver error; the prober decides which ones are retryable.
        """
        with self.session() as session:
            session.query("SELECT 1")

    def describe(self) -> str:
        """Target description safe to print and log."""
        return self.settings.describe()


# ============================================================================
# PostgreSQL (psycopg 3)
# ============================================================================


class PostgresSession(Session):
    """Session over an autocommit psycopg connection."""

    dialect = "postgresql"
    placeholder = "%s"
    errors = (psycopg.Error,)

    def __init__(self, conn: psycopg.Connection):
        self._conn = conn

    def query(self, sql: str, params: Sequence[Any] = ()) -> list[tuple]:
        with self._conn.cursor() as cur:
            cur.execute(sql, params or None)
            return cur.fetchall()

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        with self._conn.cursor() as cur:
            cur.execute(sql, params or None)
            return cur.rowcount

    def execute_script(self, script: str) -> None:
        # Without parameters psycopg sends the text as one simple-protocol
        # request, so multi-statement bodies and their own BEGIN/COMMIT work.
        with self._conn.cursor() as cur:
            cur.execute(script)

    def column_names(self, table: str) -> list[str]:
        with self._conn.cursor() as cur:
            cur.execute(f"SELECT * FROM {table} WHERE 1 = 0")
            return [column.name for column in cur.description or []]

    @contextmanager
    def transaction(self, lock_key: int | None = None) -> Iterator["PostgresSession"]:
        with self._conn.transaction():
            if lock_key is not None:
                self._conn.execute("SELECT pg_advisory_xact_lock(%s)", (lock_key,))
            yield self

    @contextmanager
    def session_lock(self, lock_key: int) -> Iterator["PostgresSession"]:
        self._conn.execute("SELECT pg_advisory_lock(%s)", (lock_key,))
        try:
            yield self
        finally:
            self.recover()
            self._conn.execute("SELECT pg_advisory_unlock(%s)", (lock_key,))

    @property
    def in_transaction(self) -> bool:
        return self._conn.info.transaction_status != pq.TransactionStatus.IDLE

    def recover(self) -> None:
        if self.in_transaction:
            logger.debug("Rolling back transaction left open by script")
            self._conn.execute("ROLLBACK")

    def is_duplicate_object(self, exc: BaseException) -> bool:
        # Concurrent CREATE TABLE IF NOT EXISTS can also collide on pg_type
        return isinstance(
            exc,
            (
                pg_errors.DuplicateTable,
                pg_errors.DuplicateObject,
                pg_errors.DuplicateColumn,
                pg_errors.UniqueViolation,
            ),
        )

    def timestamp_param(self, value: datetime) -> Any:
        return value

    def close(self) -> None:
        self._conn.close()


class PostgresBackend(DatabaseBackend):
    """PostgreSQL backend using psycopg 3."""

    errors = (psycopg.Error,)
    transient_errors = (psycopg.OperationalError,)

    def connect(self) -> PostgresSession:
        s = self.settings
        conn = psycopg.connect(
            host=s.host,
            port=s.port,
            dbname=s.name,
            user=s.user,
            password=s.password,
            connect_timeout=s.connect_timeout,
            autocommit=True,
            application_name="ledger-migrate",
        )
        return PostgresSession(conn)


# ============================================================================
# SQLite (standard library)
# ============================================================================


def split_sqlite_statements(script: str) -> list[str]:
    """
    Split a script into complete SQLite statements.

    Uses sqlite3.complete_statement, so semicolons inside string literals,
    comments and CREATE TRIGGER ... BEGIN ... END blocks do not split.
    Trailing text that holds only comments is dropped.

    Args:
        script: Multi-statement SQL text

    Returns:
        Statements in order, each including its terminating semicolon
    """
    statements: list[str] = []
    buffer = ""
    for part in re.split(r"(?<=;)", script):
        buffer += part
        if sqlite3.complete_statement(buffer):
            statements.append(buffer.strip())
            buffer = ""

    leftover = "\n".join(
        line for line in buffer.splitlines() if not line.strip().startswith("--")
    ).strip()
    if leftover:
        statements.append(leftover)
    return statements


class SqliteSession(Session):
    """
    Session over a sqlite3 connection with isolation_level=None.

    Scripts are executed one statement at a time rather than through
    executescript(), which would implicitly COMMIT an open transaction.
    """

    dialect = "sqlite"
    placeholder = "?"
    errors = (sqlite3.Error,)

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    def query(self, sql: str, params: Sequence[Any] = ()) -> list[tuple]:
        return self._conn.execute(sql, tuple(params)).fetchall()

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        return self._conn.execute(sql, tuple(params)).rowcount

    def execute_script(self, script: str) -> None:
        cur = self._conn.cursor()
        try:
            for statement in split_sqlite_statements(script):
                cur.execute(statement)
        finally:
            cur.close()

    def column_names(self, table: str) -> list[str]:
        cur = self._conn.execute(f"SELECT * FROM {table} WHERE 1 = 0")
        return [column[0] for column in cur.description or []]

    @contextmanager
    def transaction(self, lock_key: int | None = None) -> Iterator["SqliteSession"]:
        # BEGIN IMMEDIATE takes the database write lock up front, which is
        # SQLite's equivalent of the PostgreSQL advisory apply lock.
        self._conn.execute("BEGIN IMMEDIATE" if lock_key is not None else "BEGIN")
        try:
            yield self
        except BaseException:
            if self._conn.in_transaction:
                self._conn.execute("ROLLBACK")
            raise
        else:
            self._conn.execute("COMMIT")

    @contextmanager
    def session_lock(self, lock_key: int) -> Iterator["SqliteSession"]:
        # No session-level lock in SQLite. Wrapped units are serialized by
        # BEGIN IMMEDIATE, but two runners can both pass the ledger check for
        # a file-managed unit and both run its body.
        try:
            yield self
        finally:
            self.recover()

    @property
    def in_transaction(self) -> bool:
        return self._conn.in_transaction

    def recover(self) -> None:
        if self._conn.in_transaction:
            logger.debug("Rolling back transaction left open by script")
            self._conn.execute("ROLLBACK")

    def is_duplicate_object(self, exc: BaseException) -> bool:
        if not isinstance(exc, sqlite3.OperationalError):
            return False
        message = str(exc).lower()
        return "already exists" in message or "duplicate column" in message

    def timestamp_param(self, value: datetime) -> Any:
        return value.strftime("%Y-%m-%dT%H:%M:%SZ")

    def close(self) -> None:
        self._conn.close()


class SqliteBackend(DatabaseBackend):
    """SQLite backend; `settings.name` is the database file path."""

    errors = (sqlite3.Error,)
    transient_errors = (sqlite3.OperationalError,)

    def connect(self) -> SqliteSession:
        path = self.settings.name
        if path != ":memory:" and not Path(path).parent.exists():
            raise sqlite3.OperationalError(f"unable to open database file: {path}")
        conn = sqlite3.connect(
            path, timeout=self.settings.connect_timeout, isolation_level=None
        )
        return SqliteSession(conn)


def create_backend(settings: DatabaseSettings) -> DatabaseBackend:
    """
    Build the backend for the configured driver.

    Args:
        settings: Database settings from RunnerConfig

    Returns:
        PostgresBackend or SqliteBackend

    Example:
        >>> backend = create_backend(DatabaseSettings(driver="sqlite", name="dev.db"))
        >>> backend.ping()
    """
    if settings.driver == "sqlite":
        return SqliteBackend(settings)
    return PostgresBackend(settings)

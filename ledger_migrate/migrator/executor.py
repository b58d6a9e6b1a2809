"""
Migration executor: apply (or revert) exactly one unit atomically.

The ledger row and the body's effects commit together or not at all. Two
transaction conventions exist in practice, and the executor supports both:

Runner-wrapped
    The body holds plain DDL/DML. The executor opens a transaction, takes the
    apply lock, re-checks the ledger, runs the body, writes the ledger row
    and commits.

File-managed
    The body brackets itself with BEGIN; ... COMMIT; and inserts its own
    ledger row with ON CONFLICT (version) DO NOTHING, which is how the
    existing migrations in docker/postgres/migrations are written. The body
    is sent as written, so its own transaction is the atomic scope. The
    executor then records the row itself (a no-op when the file already did)
    and backfills the checksum and timing.

`transaction_mode` chooses between them: "auto" inspects the body for
transaction-control statements, "wrap" forces the runner-wrapped convention
and rejects bodies that carry their own, "file" forces the file-managed one.

Nothing here retries. A failed body is rolled back and surfaces as
ExecutionError.
"""

import logging
import re
from collections.abc import Callable
from contextlib import nullcontext
from dataclasses import dataclass
from enum import Enum

from ledger_migrate.exceptions import ExecutionError, LedgerError
from ledger_migrate.storage.ledger import Ledger
from ledger_migrate.storage.repository import MigrationUnit
from ledger_migrate.utils.time import Stopwatch, utc_now

logger = logging.getLogger(__name__)

# Stripped before looking for transaction-control statements. PL/pgSQL bodies
# ($$ ... BEGIN ... END; $$) and trigger bodies must not count as markers.
# Scanned in one left-to-right pass: whichever construct opens first wins.
_NON_CODE = re.compile(
    r"(?P<dollar>\$(?P<tag>[A-Za-z_]*)\$.*?\$(?P=tag)\$)"
    r"|(?P<block>/\*.*?\*/)"
    r"|(?P<line>--[^\n]*)"
    r"|(?P<string>'(?:[^']|'')*')",
    re.DOTALL,
)

_TRANSACTION_CONTROL = re.compile(
    r"^\s*(?:"
    r"BEGIN(?:\s+(?:DEFERRED|IMMEDIATE|EXCLUSIVE|WORK|TRANSACTION))*"
    r"|START\s+TRANSACTION[^;]*"
    r"|COMMIT(?:\s+(?:WORK|TRANSACTION))?"
    r"|END\s+(?:WORK|TRANSACTION)"
    r"|ROLLBACK(?:\s+(?:WORK|TRANSACTION))?"
    r")\s*;",
    re.IGNORECASE | re.MULTILINE,
)


class ExecutionStatus(str, Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    ROLLED_BACK = "rolled_back"


@dataclass(frozen=True)
class ExecutionOutcome:
    """
    Result of one executor call.

    Attributes:
        version: Migration version
        name: Migration name
        status: applied, skipped (a concurrent runner got there first) or
            rolled_back
        duration_ms: Wall time of the body (0 when skipped)
        mode: "wrap" or "file", the convention actually used
    """

    version: str
    name: str
    status: ExecutionStatus
    duration_ms: int
    mode: str

    @property
    def full_name(self) -> str:
        return f"{self.version}_{self.name}"


def has_transaction_control(body: str) -> bool:
    """
    True if body contains top-level BEGIN/START TRANSACTION/COMMIT/END/ROLLBACK.

    Dollar-quoted function bodies, comments and string literals are ignored.
    A bare `END;` closes trigger and PL/pgSQL blocks, so only
    `END WORK;` / `END TRANSACTION;` are treated as transaction control.

    Examples:
        >>> has_transaction_control("BEGIN;\\nCREATE TABLE t (id INT);\\nCOMMIT;")
        True
        >>> has_transaction_control("CREATE TABLE t (id INT);")
        False
    """
    text = _NON_CODE.sub(lambda m: "''" if m.group("string") else " ", body)
    return bool(_TRANSACTION_CONTROL.search(text))


class MigrationExecutor:
    """
    Applies single migration units against one session.

    Args:
        ledger: Ledger bound to the session the executor should use
        transaction_mode: "auto", "wrap" or "file"
        lock: Take the apply lock and re-check the ledger before running a body
        clock: Source of applied_at timestamps (defaults to utc_now)
    """

    def __init__(
        self,
        ledger: Ledger,
        transaction_mode: str = "auto",
        lock: bool = True,
        clock: Callable = utc_now,
    ):
        if transaction_mode not in ("auto", "wrap", "file"):
            raise ValueError(f"Invalid transaction_mode: {transaction_mode}")
        self.ledger = ledger
        self.session = ledger.session
        self.transaction_mode = transaction_mode
        self.lock = lock
        self._clock = clock

    def resolve_mode(self, body: str, version: str, name: str) -> str:
        """
        Decide the transaction convention for a body.

        Raises:
            ExecutionError: In "wrap" mode, if the body manages its own
                transaction (its COMMIT would end the runner's transaction
                early and break atomicity)
        """
        managed = has_transaction_control(body)
        if self.transaction_mode == "file":
            return "file"
        if self.transaction_mode == "wrap":
            if managed:
                raise ExecutionError(
                    f"Migration {version}_{name} contains transaction-control "
                    f"statements, which transaction_mode 'wrap' does not allow",
                    version=version,
                    name=name,
                )
            return "wrap"
        return "file" if managed else "wrap"

    def apply(self, unit: MigrationUnit) -> ExecutionOutcome:
        """
        Apply unit and record it in the ledger atomically.

        Args:
            unit: Migration to apply

        Returns:
            ExecutionOutcome (status applied, or skipped if another runner
            recorded the version after planning)

        Raises:
            ExecutionError: The body or the ledger write failed; everything
                the unit did has been rolled back
        """
        mode = self.resolve_mode(unit.body, unit.version, unit.name)
        logger.debug(
            f"Applying {unit.full_name}",
            extra={"context": {"version": unit.version, "mode": mode}},
        )

        try:
            if mode == "wrap":
                outcome = self._apply_wrapped(unit)
            else:
                outcome = self._apply_file_managed(unit)
        except ExecutionError:
            raise
        except (LedgerError, *self.session.errors) as e:
            raise ExecutionError(
                f"Migration {unit.full_name} failed: {_first_line(e)}",
                version=unit.version,
                name=unit.name,
                cause=e.__cause__ or e,
            ) from e

        if outcome.status == ExecutionStatus.SKIPPED:
            logger.info(
                f"Migration {unit.full_name} was applied by another runner; skipping",
                extra={"context": {"version": unit.version}},
            )
        else:
            logger.info(
                f"Applied migration {unit.full_name}",
                extra={
                    "context": {
                        "version": unit.version,
                        "name": unit.name,
                        "duration_ms": outcome.duration_ms,
                        "mode": mode,
                    }
                },
            )
        return outcome

    def _apply_wrapped(self, unit: MigrationUnit) -> ExecutionOutcome:
        lock_key = self.ledger.lock_key if self.lock else None
        with self.session.transaction(lock_key=lock_key):
            if self.lock and self.ledger.is_applied(unit.version):
                return ExecutionOutcome(
                    unit.version, unit.name, ExecutionStatus.SKIPPED, 0, "wrap"
                )

            watch = Stopwatch()
            self.session.execute_script(unit.body)
            duration_ms = watch.elapsed_ms()

            self.ledger.record_applied(
                unit.version,
                unit.name,
                applied_at=self._clock(),
                checksum=unit.checksum,
                execution_time_ms=duration_ms,
            )

        return ExecutionOutcome(
            unit.version, unit.name, ExecutionStatus.APPLIED, duration_ms, "wrap"
        )

    def _apply_file_managed(self, unit: MigrationUnit) -> ExecutionOutcome:
        lock = self.session.session_lock(self.ledger.lock_key) if self.lock else nullcontext()
        with lock:
            if self.lock and self.ledger.is_applied(unit.version):
                return ExecutionOutcome(
                    unit.version, unit.name, ExecutionStatus.SKIPPED, 0, "file"
                )

            watch = Stopwatch()
            self._run_file_script(unit.body, unit.version, unit.name)
            duration_ms = watch.elapsed_ms()

            inserted = self.ledger.record_applied(
                unit.version,
                unit.name,
                applied_at=self._clock(),
                checksum=unit.checksum,
                execution_time_ms=duration_ms,
            )
            if inserted:
                logger.warning(
                    f"Migration {unit.full_name} did not record itself in "
                    f"{self.ledger.table}; recorded after its transaction committed",
                    extra={"context": {"version": unit.version}},
                )
            else:
                self.ledger.backfill_checksum(unit.version, unit.checksum, duration_ms)

        return ExecutionOutcome(
            unit.version, unit.name, ExecutionStatus.APPLIED, duration_ms, "file"
        )

    def _run_file_script(self, script: str, version: str, name: str) -> None:
        """Run a self-managed script; roll back anything it leaves open."""
        try:
            self.session.execute_script(script)
        except self.session.errors:
            self.session.recover()
            raise

        if self.session.in_transaction:
            self.session.recover()
            raise ExecutionError(
                f"Migration {version}_{name} left a transaction open "
                f"(BEGIN without COMMIT); its changes were rolled back",
                version=version,
                name=name,
            )

    def revert(self, entry_version: str, entry_name: str, script: str) -> ExecutionOutcome:
        """
        Run a rollback script and delete the ledger row in one transaction.

        Rollback scripts follow the same two conventions as migrations; a
        file-managed script usually deletes its own row, in which case the
        executor's delete is a no-op.

        Args:
            entry_version: Version being rolled back
            entry_name: Its name (for reporting)
            script: Body of rollback/<version>_down.sql

        Raises:
            ExecutionError: The script failed and was rolled back
        """
        mode = self.resolve_mode(script, entry_version, entry_name)
        watch = Stopwatch()
        try:
            if mode == "wrap":
                lock_key = self.ledger.lock_key if self.lock else None
                with self.session.transaction(lock_key=lock_key):
                    self.session.execute_script(script)
                    self.ledger.remove_entry(entry_version)
            else:
                lock = (
                    self.session.session_lock(self.ledger.lock_key)
                    if self.lock
                    else nullcontext()
                )
                with lock:
                    self._run_file_script(script, entry_version, entry_name)
                    self.ledger.remove_entry(entry_version)
        except ExecutionError:
            raise
        except (LedgerError, *self.session.errors) as e:
            raise ExecutionError(
                f"Rollback of {entry_version}_{entry_name} failed: {_first_line(e)}",
                version=entry_version,
                name=entry_name,
                cause=e.__cause__ or e,
            ) from e

        duration_ms = watch.elapsed_ms()
        logger.info(
            f"Rolled back migration {entry_version}_{entry_name}",
            extra={"context": {"version": entry_version, "duration_ms": duration_ms}},
        )
        return ExecutionOutcome(
            entry_version, entry_name, ExecutionStatus.ROLLED_BACK, duration_ms, mode
        )


def _first_line(exc: BaseException) -> str:
    """Driver messages carry LINE/HINT detail on following lines."""
    text = str(exc).strip()
    return text.splitlines()[0] if text else type(exc).__name__

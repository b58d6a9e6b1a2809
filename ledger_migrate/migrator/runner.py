"""
Migration runner: the probe -> plan -> execute -> report state machine.

States:

    IDLE -> PROBING -> PLANNING -> EXECUTING -> REPORTING -> SUCCESS
               |           |           |
               +-----------+-----------+-------------------> FAILED

- PROBING fails only on prober timeout; nothing is attempted.
- PLANNING ensures the ledger exists, loads the repository and the applied
  set, checks drift, and computes the pending list in version order. With
  nothing pending the runner goes straight to REPORTING.
- EXECUTING applies pending units one at a time and stops at the first
  failure; later units are reported as not attempted.
- REPORTING ends in SUCCESS if no unit failed, FAILED otherwise.

Every LedgerMigrateError raised below the runner is caught at the top of
run() and turned into a FAILED RunResult, so the CLI can map it to an exit
code without its own try/except per stage.
"""

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from ledger_migrate.config.schema import RunnerConfig
from ledger_migrate.exceptions import (
    ChecksumMismatchError,
    ConfigurationError,
    ConnectivityError,
    ExecutionError,
    LedgerError,
    LedgerMigrateError,
    RepositoryError,
)
from ledger_migrate.migrator.executor import ExecutionStatus, MigrationExecutor
from ledger_migrate.migrator.prober import ConnectivityProber
from ledger_migrate.storage.backends import DatabaseBackend, create_backend
from ledger_migrate.storage.ledger import Ledger, LedgerEntry
from ledger_migrate.storage.repository import MigrationRepository, MigrationUnit
from ledger_migrate.utils.logging import log_with_context

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_CONFIG_ERROR = 1
EXIT_CONNECTIVITY_ERROR = 2
EXIT_REPOSITORY_ERROR = 3
EXIT_LEDGER_ERROR = 4
EXIT_EXECUTION_ERROR = 5


def exit_code_for(error: BaseException | None) -> int:
    """
    Map an error to the process exit code.

    Args:
        error: The fatal error of a run, or None

    Returns:
        0 for None, otherwise the code of the error's family (5 for anything
        unrecognized, since it happened while changing the database)
    """
    if error is None:
        return EXIT_SUCCESS
    if isinstance(error, ConfigurationError):
        return EXIT_CONFIG_ERROR
    if isinstance(error, ConnectivityError):
        return EXIT_CONNECTIVITY_ERROR
    if isinstance(error, RepositoryError):
        return EXIT_REPOSITORY_ERROR
    if isinstance(error, LedgerError):
        return EXIT_LEDGER_ERROR
    return EXIT_EXECUTION_ERROR


class RunState(str, Enum):
    IDLE = "idle"
    PROBING = "probing"
    PLANNING = "planning"
    EXECUTING = "executing"
    REPORTING = "reporting"
    SUCCESS = "success"
    FAILED = "failed"


_TRANSITIONS: dict[RunState, set[RunState]] = {
    RunState.IDLE: {RunState.PROBING},
    RunState.PROBING: {RunState.PLANNING, RunState.FAILED},
    RunState.PLANNING: {RunState.EXECUTING, RunState.REPORTING, RunState.FAILED},
    RunState.EXECUTING: {RunState.REPORTING, RunState.FAILED},
    RunState.REPORTING: {RunState.SUCCESS, RunState.FAILED},
    RunState.SUCCESS: set(),
    RunState.FAILED: set(),
}


class OutcomeStatus(str, Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"
    PENDING = "pending"
    NOT_ATTEMPTED = "not_attempted"
    ROLLED_BACK = "rolled_back"


@dataclass
class UnitOutcome:
    """Per-migration line of a run report."""

    version: str
    name: str
    status: OutcomeStatus
    duration_ms: int | None = None
    error: str | None = None

    @property
    def full_name(self) -> str:
        return f"{self.version}_{self.name}"


@dataclass
class MigrationPlan:
    """
    What a run would do, computed during PLANNING.

    Attributes:
        units: Every unit in the repository, ascending
        entries: Every ledger row, ascending
        pending: Units to apply this run (respecting target_version)
        drifted: Applied versions whose file checksum differs from the ledger
        orphaned: Ledger versions with no file in the repository
    """

    units: list[MigrationUnit]
    entries: list[LedgerEntry]
    pending: list[MigrationUnit]
    drifted: list[str] = field(default_factory=list)
    orphaned: list[str] = field(default_factory=list)

    @property
    def applied_versions(self) -> set[str]:
        return {entry.version for entry in self.entries}

    @property
    def beyond_target(self) -> list[MigrationUnit]:
        """Unapplied units excluded from this run by target_version."""
        selected = {unit.version for unit in self.pending}
        applied = self.applied_versions
        return [
            unit
            for unit in self.units
            if unit.version not in applied and unit.version not in selected
        ]


@dataclass
class RunResult:
    """
    Outcome of one runner invocation. Not persisted.

    Attributes:
        outcomes: One entry per repository unit, in version order
        failure: The unit that failed, if any
        error: The fatal error (ExecutionError for a unit failure, or the
            probe/planning error that stopped the run)
        final_state: SUCCESS or FAILED
        transitions: Every state entered, in order
        dry_run: Nothing was executed
        held_back: Unapplied units above target_version, reported as pending
    """

    run_id: str
    outcomes: list[UnitOutcome] = field(default_factory=list)
    failure: UnitOutcome | None = None
    error: LedgerMigrateError | None = None
    final_state: RunState = RunState.IDLE
    transitions: list[RunState] = field(default_factory=lambda: [RunState.IDLE])
    dry_run: bool = False
    drifted: list[str] = field(default_factory=list)
    orphaned: list[str] = field(default_factory=list)
    held_back: list[str] = field(default_factory=list)

    def _count(self, status: OutcomeStatus) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == status)

    @property
    def applied(self) -> int:
        return self._count(OutcomeStatus.APPLIED)

    @property
    def skipped(self) -> int:
        return self._count(OutcomeStatus.SKIPPED)

    @property
    def failed(self) -> int:
        return self._count(OutcomeStatus.FAILED)

    @property
    def pending(self) -> int:
        return self._count(OutcomeStatus.PENDING)

    @property
    def would_apply(self) -> int:
        """Pending units this run selected (dry-run count, excluding held_back)."""
        return self.pending - len(self.held_back)

    @property
    def not_attempted(self) -> list[str]:
        return [
            o.full_name for o in self.outcomes if o.status == OutcomeStatus.NOT_ATTEMPTED
        ]

    @property
    def ok(self) -> bool:
        return self.final_state == RunState.SUCCESS

    @property
    def exit_code(self) -> int:
        return EXIT_SUCCESS if self.ok else exit_code_for(self.error)


class MigrationRunner:
    """
    Drives one migration run against the configured database.

    Args:
        config: Validated RunnerConfig
        backend: Backend override (defaults to create_backend(config.database))
        prober: Prober override (tests inject one with a no-op sleep)

    Example:
        >>> runner = MigrationRunner(load_config())
        >>> result = runner.run()
        >>> result.applied, result.skipped, result.failed
        (2, 38, 0)
    """

    def __init__(
        self,
        config: RunnerConfig,
        backend: DatabaseBackend | None = None,
        prober: ConnectivityProber | None = None,
        on_outcome: Callable[[UnitOutcome], None] | None = None,
    ):
        self.config = config
        self.backend = backend or create_backend(config.database)
        self.prober = prober or ConnectivityProber(self.backend, config.probe)
        self.repository = MigrationRepository(config.repository.migrations_dir)
        self._on_outcome = on_outcome
        self._result: RunResult | None = None

    # ------------------------------------------------------------------
    # State handling
    # ------------------------------------------------------------------

    def _enter(self, state: RunState) -> None:
        result = self._result
        current = result.transitions[-1]
        if state not in _TRANSITIONS[current]:
            raise RuntimeError(f"Illegal run state transition {current.value} -> {state.value}")
        result.transitions.append(state)
        result.final_state = state
        log_with_context(
            logger,
            logging.DEBUG,
            f"Run state {current.value} -> {state.value}",
            context={"state": state.value},
            run_id=result.run_id,
        )

    def _emit(self, outcome: UnitOutcome) -> None:
        self._result.outcomes.append(outcome)
        if self._on_outcome is not None:
            self._on_outcome(outcome)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self, target_version: str | None = None, dry_run: bool = False) -> RunResult:
        """
        Probe, plan, apply pending migrations, and report.

        Args:
            target_version: Apply up to and including this version only
            dry_run: Plan and report pending units without executing them

        Returns:
            RunResult in state SUCCESS or FAILED. Never raises a
            LedgerMigrateError; the error is stored on the result instead.
        """
        self._result = RunResult(run_id=uuid.uuid4().hex[:12], dry_run=dry_run)
        result = self._result
        log_with_context(
            logger,
            logging.INFO,
            "Migration run started",
            context={
                "target": self.backend.describe(),
                "migrations_dir": str(self.repository.migrations_dir),
                "target_version": target_version,
                "dry_run": dry_run,
            },
            run_id=result.run_id,
        )

        try:
            self._enter(RunState.PROBING)
            self.prober.wait_until_ready()

            self._enter(RunState.PLANNING)
            with self.backend.session() as session:
                ledger = Ledger(session, self.config.ledger.table)
                plan = self._plan(ledger, target_version)
                result.drifted = plan.drifted
                result.orphaned = plan.orphaned

                for unit in plan.units:
                    if unit.version in plan.applied_versions:
                        self._emit(UnitOutcome(unit.version, unit.name, OutcomeStatus.SKIPPED))

                if not plan.pending:
                    logger.info("Database is up to date; nothing to apply")
                elif dry_run:
                    for unit in plan.pending:
                        self._emit(UnitOutcome(unit.version, unit.name, OutcomeStatus.PENDING))
                else:
                    self._enter(RunState.EXECUTING)
                    self._execute(ledger, plan.pending)

                # Units above target_version stay pending
                for unit in plan.beyond_target:
                    result.held_back.append(unit.full_name)
                    self._emit(UnitOutcome(unit.version, unit.name, OutcomeStatus.PENDING))

            self._enter(RunState.REPORTING)
            self._enter(RunState.FAILED if result.failure else RunState.SUCCESS)

        except LedgerMigrateError as e:
            result.error = e
            logger.error(
                f"Migration run failed during {result.final_state.value}: {e}",
                extra={"run_id": result.run_id},
            )
            self._enter(RunState.FAILED)
        except self.backend.errors as e:
            # Connection lost between probe and planning, or on session close
            error = LedgerError(f"Lost database connection: {e}")
            error.__cause__ = e
            result.error = error
            logger.error(
                f"Migration run failed during {result.final_state.value}: {error}",
                extra={"run_id": result.run_id},
            )
            self._enter(RunState.FAILED)

        result.outcomes.sort(key=lambda outcome: outcome.version)
        log_with_context(
            logger,
            logging.INFO if result.ok else logging.ERROR,
            "Migration run finished",
            context={
                "state": result.final_state.value,
                "applied": result.applied,
                "skipped": result.skipped,
                "failed": result.failed,
                "not_attempted": len(result.not_attempted),
            },
            run_id=result.run_id,
        )
        return result

    def plan(
        self, target_version: str | None = None, checksum_policy: str | None = None
    ) -> MigrationPlan:
        """
        Compute the migration plan without probing or executing.

        Used by the status and verify commands. The ledger table is created
        if it does not exist yet.

        Args:
            target_version: Limit pending units to this version and below
            checksum_policy: Overrides config.execution.checksum_policy

        Raises:
            RepositoryError: Malformed repository or strict drift
            LedgerError: Ledger unreadable
        """
        with self.backend.session() as session:
            ledger = Ledger(session, self.config.ledger.table)
            return self._plan(ledger, target_version, checksum_policy)

    def rollback(self, steps: int = 1) -> list[UnitOutcome]:
        """
        Revert the most recently applied migrations, newest first.

        Each version's rollback/<version>_down.sql runs in the same
        transaction as the deletion of its ledger row. Stops at the first
        failure.

        Args:
            steps: How many applied versions to revert

        Returns:
            Outcomes of the reverted units (status "rolled_back")

        Raises:
            RepositoryError: A rollback script is missing
            ExecutionError: A rollback script failed. Earlier reverts stand
                and are listed in the error's ``completed`` attribute.
            LedgerError: Ledger unreadable
        """
        if steps < 1:
            raise ValueError(f"steps must be at least 1, got: {steps}")

        self.prober.wait_until_ready()
        outcomes: list[UnitOutcome] = []
        with self.backend.session() as session:
            ledger = Ledger(session, self.config.ledger.table)
            ledger.ensure_ledger_exists()
            entries = sorted(ledger.list_entries(), key=lambda e: e.version, reverse=True)
            targets = entries[:steps]

            # Resolve every script before touching the database
            scripts = {
                entry.version: self.repository.rollback_script(entry.version)
                for entry in targets
            }

            executor = self._executor(ledger)
            for entry in targets:
                try:
                    outcome = executor.revert(entry.version, entry.name, scripts[entry.version])
                except ExecutionError as e:
                    e.completed = list(outcomes)
                    raise
                outcomes.append(
                    UnitOutcome(
                        entry.version,
                        entry.name,
                        OutcomeStatus.ROLLED_BACK,
                        duration_ms=outcome.duration_ms,
                    )
                )
        return outcomes

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _executor(self, ledger: Ledger) -> MigrationExecutor:
        execution = self.config.execution
        return MigrationExecutor(
            ledger,
            transaction_mode=execution.transaction_mode,
            lock=execution.lock,
        )

    def _plan(
        self,
        ledger: Ledger,
        target_version: str | None,
        checksum_policy: str | None = None,
    ) -> MigrationPlan:
        ledger.ensure_ledger_exists()
        units = self.repository.list_units()
        entries = ledger.list_entries()
        applied = {entry.version: entry for entry in entries}
        known = {unit.version for unit in units}

        if target_version is not None and target_version not in known:
            raise RepositoryError(
                f"Target version {target_version} is not in {self.repository.migrations_dir}"
            )

        policy = checksum_policy or self.config.execution.checksum_policy
        drifted = self._check_drift(units, applied, policy)
        orphaned = sorted(version for version in applied if version not in known)
        for version in orphaned:
            logger.warning(
                f"Ledger version {version} ({applied[version].name}) has no migration file",
                extra={"context": {"version": version}},
            )

        pending = [
            unit
            for unit in units
            if unit.version not in applied
            and (target_version is None or unit.version <= target_version)
        ]
        logger.info(
            f"Planned {len(pending)} pending migration(s)",
            extra={
                "context": {
                    "total": len(units),
                    "applied": len(applied),
                    "pending": [unit.full_name for unit in pending],
                }
            },
        )
        return MigrationPlan(
            units=units,
            entries=entries,
            pending=pending,
            drifted=drifted,
            orphaned=orphaned,
        )

    def _check_drift(
        self, units: list[MigrationUnit], applied: dict[str, LedgerEntry], policy: str
    ) -> list[str]:
        if policy == "off":
            return []

        drifted = []
        for unit in units:
            entry = applied.get(unit.version)
            if entry is None or entry.checksum is None or entry.checksum == unit.checksum:
                continue
            drifted.append(unit.version)
            if policy == "strict":
                raise ChecksumMismatchError(
                    f"Migration {unit.full_name} was modified after it was applied "
                    f"(ledger {entry.checksum[:12]}, file {unit.checksum[:12]})",
                    version=unit.version,
                    expected=entry.checksum,
                    actual=unit.checksum,
                )
            logger.warning(
                f"Migration {unit.full_name} was modified after it was applied",
                extra={
                    "context": {
                        "version": unit.version,
                        "expected": entry.checksum,
                        "actual": unit.checksum,
                    }
                },
            )
        return drifted

    def _execute(self, ledger: Ledger, pending: list[MigrationUnit]) -> None:
        executor = self._executor(ledger)
        result = self._result

        for index, unit in enumerate(pending):
            try:
                outcome = executor.apply(unit)
            except ExecutionError as e:
                failure = UnitOutcome(unit.version, unit.name, OutcomeStatus.FAILED, error=str(e))
                result.failure = failure
                result.error = e
                self._emit(failure)
                logger.error(
                    f"Migration {unit.full_name} failed; stopping",
                    extra={"context": {"version": unit.version, "error": str(e.cause or e)}},
                )
                for remaining in pending[index + 1 :]:
                    self._emit(
                        UnitOutcome(remaining.version, remaining.name, OutcomeStatus.NOT_ATTEMPTED)
                    )
                return

            status = (
                OutcomeStatus.SKIPPED
                if outcome.status == ExecutionStatus.SKIPPED
                else OutcomeStatus.APPLIED
            )
            self._emit(
                UnitOutcome(unit.version, unit.name, status, duration_ms=outcome.duration_ms)
            )

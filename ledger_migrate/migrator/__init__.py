"""
Migrator module for ledger-migrate.

This module provides the run machinery on top of the storage layer:
- ConnectivityProber (wait for the database to accept queries)
- MigrationExecutor (apply one unit atomically with its ledger row)
- MigrationRunner (probe -> plan -> execute -> report state machine)

Example:
    >>> from ledger_migrate.config.loader import load_config
    >>> from ledger_migrate.migrator import MigrationRunner
    >>>
    >>> runner = MigrationRunner(load_config())
    >>> result = runner.run()
    >>> result.final_state
    <RunState.SUCCESS: 'success'>
    >>> result.exit_code
    0
"""

from .executor import (
    ExecutionOutcome,
    ExecutionStatus,
    MigrationExecutor,
    has_transaction_control,
)
from .prober import ConnectivityProber
from .runner import (
    MigrationPlan,
    MigrationRunner,
    OutcomeStatus,
    RunResult,
    RunState,
    UnitOutcome,
    exit_code_for,
)

__all__ = [
    "ConnectivityProber",
    "ExecutionOutcome",
    "ExecutionStatus",
    "MigrationExecutor",
    "MigrationPlan",
    "MigrationRunner",
    "OutcomeStatus",
    "RunResult",
    "RunState",
    "UnitOutcome",
    "exit_code_for",
    "has_transaction_control",
]

"""
CLI entrypoint for ledger-migrate.

Provides a dual-mode command-line interface with:
- Human-friendly output: Rich spinner, colored per-migration lines, summary panel
- Agent-friendly output: One structured JSON document for deploy pipelines
- Quiet mode: Tab-separated minimal output for shell scripts

Commands:
    migrate: Wait for the database, then apply pending migrations in order
    status: Show every migration as applied, pending, drifted or orphaned
    verify: Check applied migrations for modified files and orphaned versions
    wait: Only wait until the database accepts connections
    new: Scaffold the next NNN_name.sql from the repository template
    rollback: Revert the most recent migrations using rollback/NNN_down.sql

Exit codes:
    0: Success (or nothing pending)
    1: Configuration error (invalid YAML, bad DB_PORT, unknown option value)
    2: Connectivity error (database not ready before the probe timeout)
    3: Repository error (duplicate version, malformed filename, strict drift)
    4: Ledger error (cannot read or write schema_migrations)
    5: Execution error (a migration failed and was rolled back)

Examples:
    # Deploy pipeline: connection settings from DB_* environment variables
    ledger-migrate migrate --migrations-dir /migrations

    # Agent-friendly JSON output
    ledger-migrate migrate --format json

    # What would run?
    ledger-migrate migrate --dry-run

Security:
    - DB_PASSWORD is read from the environment and never printed or logged
    - Error messages name the target as user@host:port/name only
"""

from importlib.metadata import PackageNotFoundError, version as package_version
from pathlib import Path
from typing import Optional

import typer
from rich.traceback import install as install_rich_traceback

from ledger_migrate.config.loader import load_config
from ledger_migrate.config.schema import RunnerConfig
from ledger_migrate.exceptions import (
    ConfigurationError,
    ConnectivityError,
    ExecutionError,
    LedgerMigrateError,
)
from ledger_migrate.migrator.prober import ConnectivityProber
from ledger_migrate.migrator.runner import (
    EXIT_CONFIG_ERROR,
    EXIT_CONNECTIVITY_ERROR,
    EXIT_EXECUTION_ERROR,
    EXIT_LEDGER_ERROR,
    EXIT_REPOSITORY_ERROR,
    EXIT_SUCCESS,
    MigrationRunner,
    UnitOutcome,
    exit_code_for,
)
from ledger_migrate.storage.backends import create_backend
from ledger_migrate.storage.repository import MigrationRepository
from ledger_migrate.utils.console import (
    error,
    info,
    output_mode,
    print_banner,
    print_run_summary,
    print_status_table,
    print_unit_line,
    spinner,
    success,
    warning,
)
from ledger_migrate.utils.logging import setup_logging

# Install Rich tracebacks for better error messages
install_rich_traceback(show_locals=False)

__all__ = [
    "EXIT_CONFIG_ERROR",
    "EXIT_CONNECTIVITY_ERROR",
    "EXIT_EXECUTION_ERROR",
    "EXIT_LEDGER_ERROR",
    "EXIT_REPOSITORY_ERROR",
    "EXIT_SUCCESS",
    "app",
]

# Create Typer app
app = typer.Typer(
    name="ledger-migrate",
    help="Apply versioned SQL migrations and track them in schema_migrations",
    add_completion=False,
)


# ============================================================================
# Shared option definitions
# ============================================================================

CONFIG_OPTION = typer.Option(
    None,
    "--config",
    "-c",
    help="Optional YAML configuration file (secrets stay in DB_PASSWORD)",
)
MIGRATIONS_DIR_OPTION = typer.Option(
    None,
    "--migrations-dir",
    "-m",
    help="Directory of NNN_name.sql files (default: $MIGRATIONS_DIR, /migrations or ./migrations)",
)
FORMAT_OPTION = typer.Option(
    "text",
    "--format",
    "-f",
    help="Output format: 'text' (human-friendly) or 'json' (machine-readable)",
)
QUIET_OPTION = typer.Option(
    False,
    "--quiet",
    "-q",
    help="Minimal output (tab-separated values)",
)
VERBOSE_OPTION = typer.Option(
    False,
    "--verbose",
    "-v",
    help="Enable debug logging",
)


def _configure_output(format: str, quiet: bool, verbose: bool) -> None:
    """Set the global output mode and logging level from CLI flags."""
    if format not in ("text", "json"):
        error(f"Invalid format: {format}. Must be 'text' or 'json'")
        raise typer.Exit(EXIT_CONFIG_ERROR)

    output_mode.format = format
    output_mode.quiet = quiet

    # JSON logs would interleave with the Rich report in human mode
    setup_logging(verbose=verbose, quiet_logs=output_mode.is_human())


def _load(
    config: Optional[Path],
    migrations_dir: Optional[Path] = None,
    probe: dict | None = None,
    execution: dict | None = None,
) -> RunnerConfig:
    """Load configuration or exit with EXIT_CONFIG_ERROR."""
    overrides = {
        "repository": {"migrations_dir": migrations_dir},
        "probe": probe or {},
        "execution": execution or {},
    }
    try:
        return load_config(config, overrides=overrides)
    except ConfigurationError as e:
        _fail(e)


def _fail(e: LedgerMigrateError) -> None:
    """Report a fatal error and exit with its code."""
    error(str(e))
    output_mode.flush_json()
    raise typer.Exit(exit_code_for(e))


def _print_outcome(outcome: UnitOutcome) -> None:
    print_unit_line(
        outcome.status.value,
        outcome.full_name,
        duration_ms=outcome.duration_ms,
        detail=outcome.error,
    )


# ============================================================================
# Commands
# ============================================================================


@app.command()
def migrate(
    config: Optional[Path] = CONFIG_OPTION,
    migrations_dir: Optional[Path] = MIGRATIONS_DIR_OPTION,
    target: Optional[str] = typer.Option(
        None,
        "--target",
        "-t",
        help="Apply migrations up to and including this version",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Show pending migrations without applying them",
    ),
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout",
        help="Seconds to wait for the database (default: 60)",
    ),
    poll_interval: Optional[float] = typer.Option(
        None,
        "--poll-interval",
        help="Seconds between connection attempts (default: 2)",
    ),
    checksum_policy: Optional[str] = typer.Option(
        None,
        "--checksum-policy",
        help="Modified applied migrations: 'warn', 'strict' or 'off'",
    ),
    transaction_mode: Optional[str] = typer.Option(
        None,
        "--transaction-mode",
        help="'auto', 'wrap' (runner transaction) or 'file' (file's own BEGIN/COMMIT)",
    ),
    format: str = FORMAT_OPTION,
    quiet: bool = QUIET_OPTION,
    verbose: bool = VERBOSE_OPTION,
):
    """
    Apply pending migrations in version order.

    This command will:
    1. Wait until the database accepts connections
    2. Create the schema_migrations ledger if it does not exist
    3. Compute pending migrations (files not yet in the ledger)
    4. Apply each one in its own transaction, stopping at the first failure
    5. Print one line per migration and a summary

    Running it again on an up-to-date database changes nothing.

    Exit codes:
      0: All pending migrations applied (or nothing pending)
      1: Configuration error
      2: Database not reachable
      3: Migration repository error
      4: Ledger error
      5: A migration failed (rolled back; later ones not attempted)

    Examples:
      ledger-migrate migrate -m docker/postgres/migrations
      ledger-migrate migrate --target 023 --dry-run
      DB_HOST=db DB_PASSWORD=... ledger-migrate migrate --format json
    """
    _configure_output(format, quiet, verbose)
    runner_config = _load(
        config,
        migrations_dir,
        probe={"timeout": timeout, "poll_interval": poll_interval},
        execution={
            "checksum_policy": checksum_policy,
            "transaction_mode": transaction_mode,
        },
    )

    print_banner(
        _read_version(),
        runner_config.database.describe(),
        str(runner_config.repository.migrations_dir),
    )

    runner = MigrationRunner(runner_config, on_outcome=_print_outcome)
    with spinner("Running migrations..."):
        result = runner.run(target_version=target, dry_run=dry_run)

    for version in result.drifted:
        warning(f"Applied migration {version} has been modified since it ran")
    for version in result.orphaned:
        warning(f"Ledger version {version} has no migration file")

    if result.error is not None:
        error(str(result.error))

    print_run_summary(
        applied=result.applied if not dry_run else result.would_apply,
        skipped=result.skipped,
        failed=result.failed,
        not_attempted=len(result.not_attempted),
        ok=result.ok,
        dry_run=dry_run,
        extra={
            "run_id": result.run_id,
            "final_state": result.final_state.value,
            "not_attempted_versions": result.not_attempted,
            "held_back_versions": result.held_back,
            "exit_code": result.exit_code,
        },
    )
    raise typer.Exit(result.exit_code)


@app.command()
def status(
    config: Optional[Path] = CONFIG_OPTION,
    migrations_dir: Optional[Path] = MIGRATIONS_DIR_OPTION,
    format: str = FORMAT_OPTION,
    quiet: bool = QUIET_OPTION,
    verbose: bool = VERBOSE_OPTION,
):
    """
    Show every migration and whether it has been applied.

    Statuses: applied, pending, drifted (file changed after it was applied),
    orphaned (in the ledger but no file on disk).

    Examples:
      ledger-migrate status
      ledger-migrate status --format json
    """
    _configure_output(format, quiet, verbose)
    runner_config = _load(config, migrations_dir)
    runner = MigrationRunner(runner_config)

    try:
        with spinner("Reading migration status..."):
            plan = runner.plan(checksum_policy="warn")
    except LedgerMigrateError as e:
        _fail(e)
    except runner.backend.errors as e:
        _fail(ConnectivityError(f"Cannot connect to {runner.backend.describe()}: {e}", last_error=e))

    entries = {entry.version: entry for entry in plan.entries}
    rows = []
    for unit in plan.units:
        entry = entries.get(unit.version)
        if entry is None:
            row_status = "pending"
        elif unit.version in plan.drifted:
            row_status = "drifted"
        else:
            row_status = "applied"
        rows.append(
            {
                "migration": unit.full_name,
                "status": row_status,
                "applied_at": entry.applied_at.strftime("%Y-%m-%dT%H:%M:%SZ") if entry else None,
                "checksum": entry.checksum if entry else unit.checksum,
            }
        )
    for version in plan.orphaned:
        entry = entries[version]
        rows.append(
            {
                "migration": entry.full_name,
                "status": "orphaned",
                "applied_at": entry.applied_at.strftime("%Y-%m-%dT%H:%M:%SZ"),
                "checksum": entry.checksum,
            }
        )
    rows.sort(key=lambda row: row["migration"])

    print_status_table(rows)
    if output_mode.is_agent():
        output_mode.add_json("pending", len(plan.pending))
        output_mode.add_json("applied", len(plan.entries))
        output_mode.flush_json()
    else:
        info(f"{len(plan.entries)} applied, {len(plan.pending)} pending")
    raise typer.Exit(EXIT_SUCCESS)


@app.command()
def verify(
    config: Optional[Path] = CONFIG_OPTION,
    migrations_dir: Optional[Path] = MIGRATIONS_DIR_OPTION,
    format: str = FORMAT_OPTION,
    quiet: bool = QUIET_OPTION,
    verbose: bool = VERBOSE_OPTION,
):
    """
    Check applied migrations against the files on disk.

    Fails (exit 3) if any applied migration file was modified after it ran,
    or if the repository itself is malformed. Orphaned ledger versions are
    reported as warnings.

    Examples:
      ledger-migrate verify -m docker/postgres/migrations
    """
    _configure_output(format, quiet, verbose)
    runner_config = _load(config, migrations_dir)
    runner = MigrationRunner(runner_config)

    try:
        with spinner("Verifying migrations..."):
            plan = runner.plan(checksum_policy="warn")
    except LedgerMigrateError as e:
        _fail(e)
    except runner.backend.errors as e:
        _fail(ConnectivityError(f"Cannot connect to {runner.backend.describe()}: {e}", last_error=e))

    units = {unit.version: unit for unit in plan.units}
    for version in plan.drifted:
        print_unit_line("drifted", units[version].full_name, detail="modified after it was applied")
    for version in plan.orphaned:
        warning(f"Ledger version {version} has no migration file")

    ok = not plan.drifted
    if output_mode.is_agent():
        output_mode.add_json("drifted", plan.drifted)
        output_mode.add_json("orphaned", plan.orphaned)
        output_mode.add_json("success", ok)
        output_mode.flush_json()
    elif output_mode.quiet:
        print(f"drifted={len(plan.drifted)}\torphaned={len(plan.orphaned)}")
    elif ok:
        success(f"{len(plan.entries)} applied migration(s) match their files")
    else:
        error(f"{len(plan.drifted)} applied migration(s) were modified")

    raise typer.Exit(EXIT_SUCCESS if ok else EXIT_REPOSITORY_ERROR)


@app.command()
def wait(
    config: Optional[Path] = CONFIG_OPTION,
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout",
        help="Seconds to wait for the database (default: 60)",
    ),
    poll_interval: Optional[float] = typer.Option(
        None,
        "--poll-interval",
        help="Seconds between connection attempts (default: 2)",
    ),
    format: str = FORMAT_OPTION,
    quiet: bool = QUIET_OPTION,
    verbose: bool = VERBOSE_OPTION,
):
    """
    Wait until the database accepts connections, then exit.

    Examples:
      ledger-migrate wait --timeout 120 && ./start-api.sh
    """
    _configure_output(format, quiet, verbose)
    runner_config = _load(
        config, probe={"timeout": timeout, "poll_interval": poll_interval}
    )
    backend = create_backend(runner_config.database)
    prober = ConnectivityProber(backend, runner_config.probe)

    try:
        with spinner(f"Waiting for {backend.describe()}..."):
            attempts = prober.wait_until_ready()
    except ConnectivityError as e:
        _fail(e)

    success(f"Database {backend.describe()} is ready ({attempts} attempt(s))")
    if output_mode.is_agent():
        output_mode.add_json("attempts", attempts)
        output_mode.flush_json()
    raise typer.Exit(EXIT_SUCCESS)


@app.command()
def new(
    name: str = typer.Argument(..., help="Descriptive name, e.g. add_rewards_table"),
    config: Optional[Path] = CONFIG_OPTION,
    migrations_dir: Optional[Path] = MIGRATIONS_DIR_OPTION,
    format: str = FORMAT_OPTION,
    quiet: bool = QUIET_OPTION,
    verbose: bool = VERBOSE_OPTION,
):
    """
    Create the next migration file from the repository template.

    Examples:
      ledger-migrate new add_rewards_table -m docker/postgres/migrations
    """
    _configure_output(format, quiet, verbose)
    runner_config = _load(config, migrations_dir)
    repository = MigrationRepository(runner_config.repository.migrations_dir)

    try:
        path = repository.create_unit(name, ledger_table=runner_config.ledger.table)
    except LedgerMigrateError as e:
        _fail(e)

    if output_mode.quiet and output_mode.is_human():
        print(path)
    success(f"Created {path}")
    if output_mode.is_agent():
        output_mode.add_json("path", str(path))
        output_mode.flush_json()
    raise typer.Exit(EXIT_SUCCESS)


@app.command()
def rollback(
    steps: int = typer.Option(
        1,
        "--steps",
        "-n",
        min=1,
        help="Number of most recent migrations to revert",
    ),
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Skip the confirmation prompt (for automation)",
    ),
    config: Optional[Path] = CONFIG_OPTION,
    migrations_dir: Optional[Path] = MIGRATIONS_DIR_OPTION,
    format: str = FORMAT_OPTION,
    quiet: bool = QUIET_OPTION,
    verbose: bool = VERBOSE_OPTION,
):
    """
    Revert the most recently applied migrations.

    Runs rollback/<version>_down.sql for each version, newest first, and
    deletes its ledger row in the same transaction.

    Examples:
      ledger-migrate rollback --steps 2 --yes
    """
    _configure_output(format, quiet, verbose)
    runner_config = _load(config, migrations_dir)

    if not yes and not typer.confirm(
        f"Revert the last {steps} migration(s) on {runner_config.database.describe()}?"
    ):
        info("Rollback cancelled")
        raise typer.Exit(EXIT_SUCCESS)

    runner = MigrationRunner(runner_config)
    try:
        with spinner("Rolling back..."):
            outcomes = runner.rollback(steps=steps)
    except ExecutionError as e:
        for outcome in e.completed:
            _print_outcome(outcome)
        if e.completed:
            warning(f"{len(e.completed)} migration(s) were rolled back before the failure")
        _fail(e)
    except LedgerMigrateError as e:
        _fail(e)
    except runner.backend.errors as e:
        _fail(ConnectivityError(f"Cannot connect to {runner.backend.describe()}: {e}", last_error=e))

    for outcome in outcomes:
        _print_outcome(outcome)

    if not outcomes:
        warning("Ledger is empty; nothing to roll back")
    success(f"Rolled back {len(outcomes)} migration(s)")
    output_mode.flush_json()
    raise typer.Exit(EXIT_SUCCESS)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show version and exit",
    ),
):
    """
    ledger-migrate - versioned SQL migrations with a schema_migrations ledger.

    Connection settings come from DB_HOST, DB_PORT, DB_NAME, DB_USER and
    DB_PASSWORD (and optionally a YAML file via --config).

    Exit codes:
      0: Success
      1: Configuration error
      2: Connectivity error
      3: Repository error
      4: Ledger error
      5: Execution error
    """
    if version:
        from rich.console import Console

        console = Console()
        console.print(f"[bold cyan]ledger-migrate[/bold cyan] version {_read_version()}")
        raise typer.Exit(EXIT_SUCCESS)

    if ctx.invoked_subcommand is None:
        from rich.console import Console

        console = Console()
        console.print("[yellow]Use --help to see available commands[/yellow]")
        console.print()
        console.print("Quick start:")
        console.print("  ledger-migrate migrate --migrations-dir docker/postgres/migrations")


def _read_version() -> str:
    """
    Read version from package metadata (pyproject.toml).

    Returns:
        Version string (e.g., "0.1.0")
    """
    try:
        return package_version("ledger-migrate")
    except PackageNotFoundError:
        return "0.1.0"


if __name__ == "__main__":
    app()

"""
Rich console utilities for dual-mode CLI output.

Provides readable terminal output for operators and structured JSON for
deploy pipelines. All output functions adapt to the global output_mode.

This module provides:
- OutputMode: Class to manage output format (text/json) and quiet flag
- Context manager: spinner()
- Message functions: success(), error(), warning(), info()
- Report functions: print_banner(), print_unit_line(), print_run_summary(),
  print_status_table()

Human Mode (--format text):
    - Rich spinner while probing the database
    - One colored line per migration, final summary panel

Agent Mode (--format json):
    - A single JSON document on stdout when the command finishes
    - No ANSI codes or spinners

Quiet Mode (--quiet):
    - Tab-separated `<status>\\t<version_name>` lines and a summary line
    - No decorations

Examples:
    >>> from ledger_migrate.utils.console import output_mode, print_unit_line
    >>> output_mode.format = "text"
    >>> print_unit_line("applied", "001_create_users", duration_ms=12)

    >>> output_mode.format = "json"
    >>> print_unit_line("applied", "001_create_users")  # Buffered
    >>> output_mode.flush_json()                         # Emitted
"""

from __future__ import annotations

import json
import sys
from contextlib import contextmanager
from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table


class OutputMode:
    """
    Output mode configuration for dual-mode CLI.

    Attributes:
        format: Output format - "text" (human) or "json" (agent)
        quiet: If True, emit minimal tab-separated output in text mode
        _json_buffer: Internal buffer for JSON output in agent mode

    Examples:
        >>> mode = OutputMode()
        >>> mode.is_human()
        True
        >>> mode.format = "json"
        >>> mode.is_agent()
        True
    """

    def __init__(self, format_type: str = "text", quiet: bool = False):
        """
        Initialize output mode.

        Args:
            format_type: Output format - "text" for human, "json" for agent
            quiet: If True, suppress decorations

        Raises:
            ValueError: If format_type is not "text" or "json"
        """
        if format_type not in ["text", "json"]:
            raise ValueError(f"Invalid format: {format_type}. Must be 'text' or 'json'")

        self.format = format_type
        self.quiet = quiet
        self._json_buffer: dict[str, Any] = {}

    def is_human(self) -> bool:
        """True if format is "text"."""
        return self.format == "text"

    def is_agent(self) -> bool:
        """True if format is "json"."""
        return self.format == "json"

    def add_json(self, key: str, value: Any) -> None:
        """
        Add key-value pair to JSON buffer.

        Args:
            key: JSON key
            value: JSON-serializable value
        """
        self._json_buffer[key] = value

    def append_json(self, key: str, value: Any) -> None:
        """
        Append value to a list stored under key in the JSON buffer.

        Used for the per-migration lines, which arrive one at a time.

        Args:
            key: JSON key holding a list
            value: JSON-serializable value to append
        """
        self._json_buffer.setdefault(key, []).append(value)

    def flush_json(self) -> None:
        """
        Output buffered JSON to stdout and clear buffer.

        Only outputs in agent mode. In human mode, this is a no-op.
        """
        if self.is_agent() and self._json_buffer:
            json.dump(self._json_buffer, sys.stdout, indent=2, default=str)
            sys.stdout.write("\n")
            sys.stdout.flush()
            self._json_buffer.clear()


# Global output mode instance (set by CLI flags)
output_mode = OutputMode()

# Global Rich console instances for human mode
console = Console()  # stdout
console_err = Console(stderr=True)  # stderr

STATUS_STYLES = {
    "applied": "green",
    "skipped": "yellow",
    "failed": "red",
    "pending": "cyan",
    "not_attempted": "dim",
    "orphaned": "magenta",
    "drifted": "red",
    "rolled_back": "blue",
}

STATUS_SYMBOLS = {
    "applied": "✓",
    "skipped": "→",
    "failed": "✗",
    "pending": "…",
    "not_attempted": "-",
    "orphaned": "?",
    "drifted": "!",
    "rolled_back": "↩",
}


@contextmanager
def spinner(message: str):
    """
    Context manager for showing a spinner during blocking operations.

    Displays a Rich spinner with message in human mode.
    Silent in agent and quiet modes.

    Args:
        message: Status message to display

    Yields:
        Status context in human mode, None otherwise
    """
    if output_mode.is_human() and not output_mode.quiet:
        with console.status(f"[bold blue]{message}", spinner="dots") as status:
            yield status
    else:
        yield None


def success(message: str) -> None:
    """
    Print a success message.

    Human mode: Green checkmark with message
    Agent mode: Buffer to JSON
    Quiet mode: Silent

    Args:
        message: Success message to display
    """
    if output_mode.is_human():
        if not output_mode.quiet:
            console.print(f"[green]✓[/green] {message}")
    elif output_mode.is_agent():
        output_mode.add_json("status", "success")
        output_mode.add_json("message", message)


def error(message: str) -> None:
    """
    Print an error message.

    Human mode: Red X with message to stderr (also in quiet mode)
    Agent mode: Buffer to JSON

    Args:
        message: Error message to display
    """
    if output_mode.is_human():
        console_err.print(f"[red]✗[/red] {message}", style="red", highlight=False)
    elif output_mode.is_agent():
        output_mode.add_json("status", "error")
        output_mode.add_json("error", message)


def warning(message: str) -> None:
    """
    Print a warning message.

    Human mode: Yellow warning symbol with message
    Agent mode: Buffer to JSON list of warnings
    Quiet mode: Silent

    Args:
        message: Warning message to display
    """
    if output_mode.is_human():
        if not output_mode.quiet:
            console.print(f"[yellow]⚠[/yellow] {message}", style="yellow")
    elif output_mode.is_agent():
        output_mode.append_json("warnings", message)


def info(message: str) -> None:
    """
    Print an info message.

    Human mode: Blue info symbol with message
    Agent/Quiet mode: Silent

    Args:
        message: Info message to display
    """
    if output_mode.is_human() and not output_mode.quiet:
        console.print(f"[blue]ℹ[/blue] {message}")


def print_banner(version: str, target: str, migrations_dir: str) -> None:
    """
    Print the startup banner naming the target database.

    Human mode only; the password is never part of `target`.

    Args:
        version: ledger-migrate version string
        target: Redacted database description (e.g. "st44@localhost:5432")
        migrations_dir: Migration repository location
    """
    if not output_mode.is_human() or output_mode.quiet:
        return

    console.print(f"[bold cyan]ledger-migrate v{version}[/bold cyan]")
    console.print(f"  Database:   {target}")
    console.print(f"  Migrations: {migrations_dir}")
    console.print()


def print_unit_line(
    status: str,
    full_name: str,
    duration_ms: int | None = None,
    detail: str | None = None,
) -> None:
    """
    Print one report line for a migration unit.

    Human mode: `  ✓ 001_create_users  applied (12ms)`
    Agent mode: Append {"migration", "status", ...} to the "migrations" list
    Quiet mode: `applied\\t001_create_users`

    Args:
        status: applied, skipped, failed, pending, not_attempted, rolled_back
        full_name: Migration identifier (version_name)
        duration_ms: Execution time, when the unit was executed
        detail: Error text or other annotation
    """
    if output_mode.is_agent():
        entry: dict[str, Any] = {"migration": full_name, "status": status}
        if duration_ms is not None:
            entry["duration_ms"] = duration_ms
        if detail:
            entry["detail"] = detail
        output_mode.append_json("migrations", entry)
        return

    if output_mode.quiet:
        print(f"{status}\t{full_name}")
        return

    style = STATUS_STYLES.get(status, "white")
    symbol = STATUS_SYMBOLS.get(status, "*")
    timing = f" ({duration_ms}ms)" if duration_ms is not None else ""
    label = status.replace("_", " ")
    console.print(
        f"  [{style}]{symbol}[/{style}] {full_name}  [{style}]{label}[/{style}]{timing}",
        highlight=False,
    )
    if detail:
        console.print(f"      [{style}]{detail}[/{style}]", highlight=False)


def print_run_summary(
    applied: int,
    skipped: int,
    failed: int,
    not_attempted: int = 0,
    ok: bool = True,
    dry_run: bool = False,
    extra: dict[str, Any] | None = None,
) -> None:
    """
    Print the final summary with migration counts.

    Human mode: Rich panel (green on success, red on failure)
    Agent mode: Add counts to the JSON buffer and flush everything
    Quiet mode: `applied=N\\tskipped=N\\tfailed=N`

    Args:
        applied: Units applied by this invocation (or that would be, in dry-run)
        skipped: Units already present in the ledger
        failed: Units that failed (0 or 1)
        not_attempted: Pending units left untouched after a failure
        ok: Whether the run finished in the SUCCESS state
        dry_run: Whether nothing was executed
        extra: Additional JSON fields for agent mode (e.g. final_state)
    """
    if output_mode.is_agent():
        output_mode.add_json("applied", applied)
        output_mode.add_json("skipped", skipped)
        output_mode.add_json("failed", failed)
        output_mode.add_json("not_attempted", not_attempted)
        output_mode.add_json("success", ok)
        output_mode.add_json("dry_run", dry_run)
        for key, value in (extra or {}).items():
            output_mode.add_json(key, value)
        output_mode.flush_json()
        return

    if output_mode.quiet:
        print(f"applied={applied}\tskipped={skipped}\tfailed={failed}")
        return

    applied_label = "Would apply" if dry_run else "Applied"
    lines = [
        f"[bold]{applied_label}:[/bold] [green]{applied}[/green]",
        f"[bold]Skipped:[/bold] [yellow]{skipped}[/yellow]",
        f"[bold]Failed:[/bold]  [red]{failed}[/red]",
    ]
    if not_attempted:
        lines.append(f"[bold]Not attempted:[/bold] {not_attempted}")

    if not ok:
        border_style = "red"
        title = "[bold red]✗ Migration Failed[/bold red]"
    elif dry_run:
        border_style = "cyan"
        title = "[bold cyan]Dry Run[/bold cyan]"
    elif applied == 0:
        border_style = "green"
        title = "[bold green]✓ Database is up to date[/bold green]"
    else:
        border_style = "green"
        title = f"[bold green]✓ Applied {applied} migration(s)[/bold green]"

    console.print()
    console.print(
        Panel("\n".join(lines), title=title, border_style=border_style, box=box.ROUNDED)
    )


def print_status_table(rows: list[dict]) -> None:
    """
    Print the migration status table.

    Expected dict keys in rows:
    - migration (str): version_name
    - status (str): applied, pending, orphaned, drifted
    - applied_at (str | None): ISO timestamp of the ledger row
    - checksum (str | None): short checksum

    Human mode: Rich table with colored status
    Agent mode: Buffer rows under "migrations"
    Quiet mode: Tab-separated rows

    Args:
        rows: Status rows in version order
    """
    if output_mode.is_agent():
        output_mode.add_json("migrations", rows)
        return

    if output_mode.quiet:
        for row in rows:
            print(f"{row['status']}\t{row['migration']}\t{row.get('applied_at') or ''}")
        return

    table = Table(title="Migration Status", box=box.ROUNDED)
    table.add_column("Migration", style="cyan", no_wrap=True)
    table.add_column("Status", justify="center")
    table.add_column("Applied At")
    table.add_column("Checksum", style="dim")

    for row in rows:
        status = row["status"]
        style = STATUS_STYLES.get(status, "white")
        table.add_row(
            row["migration"],
            f"[{style}]{status}[/{style}]",
            row.get("applied_at") or "",
            (row.get("checksum") or "")[:12],
        )

    console.print(table)

"""
Entry point for running ledger-migrate as a module.

Enables execution via:
    python -m ledger_migrate [command] [options]

This is equivalent to running the installed CLI:
    ledger-migrate [command] [options]

Examples:
    python -m ledger_migrate migrate --migrations-dir docker/postgres/migrations
    python -m ledger_migrate status --format json
    python -m ledger_migrate wait --timeout 120
"""

from ledger_migrate.cli import app

if __name__ == "__main__":
    app()

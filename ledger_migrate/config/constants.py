"""
Configuration constants for ledger-migrate.

This module contains defaults and environment variable names used across the
application to avoid tight coupling between modules.
"""

# Connection defaults match the deployment pipeline's PostgreSQL service
DEFAULT_DB_DRIVER = "postgres"
DEFAULT_DB_HOST = "localhost"
DEFAULT_DB_PORT = 5432
DEFAULT_DB_NAME = "st44"
DEFAULT_DB_USER = "postgres"

# Per-attempt connect timeout (seconds); the prober bounds the total wait
DEFAULT_CONNECT_TIMEOUT = 5

# Readiness probe: 30 attempts x 2s between attempts
DEFAULT_PROBE_TIMEOUT = 60.0
DEFAULT_POLL_INTERVAL = 2.0
DEFAULT_MAX_POLL_INTERVAL = 10.0

# Ledger table, shared with the API's /health/database check
DEFAULT_LEDGER_TABLE = "schema_migrations"

# Migration repository location inside the migrations container image
CONTAINER_MIGRATIONS_DIR = "/migrations"
DEFAULT_MIGRATIONS_DIR = "migrations"

# Files in the repository root that are never migration units
IGNORED_FILENAMES = frozenset({"TEMPLATE.sql"})

# Subdirectory holding <version>_down.sql scripts
ROLLBACK_DIRNAME = "rollback"

# Width used when the repository is empty and `new` picks the first version
DEFAULT_VERSION_WIDTH = 3

# Environment variable -> (config section, field)
ENV_VARS: dict[str, tuple[str, str]] = {
    "DB_DRIVER": ("database", "driver"),
    "DB_HOST": ("database", "host"),
    "DB_PORT": ("database", "port"),
    "DB_NAME": ("database", "name"),
    "DB_USER": ("database", "user"),
    "DB_PASSWORD": ("database", "password"),
    "DB_CONNECT_TIMEOUT": ("database", "connect_timeout"),
    "MIGRATIONS_DIR": ("repository", "migrations_dir"),
    "LEDGER_TABLE": ("ledger", "table"),
    "MIGRATE_PROBE_TIMEOUT": ("probe", "timeout"),
    "MIGRATE_POLL_INTERVAL": ("probe", "poll_interval"),
    "MIGRATE_CHECKSUM_POLICY": ("execution", "checksum_policy"),
    "MIGRATE_TRANSACTION_MODE": ("execution", "transaction_mode"),
}

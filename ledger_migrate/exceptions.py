"""
Custom exceptions for ledger-migrate.

This module provides a hierarchy of exceptions that enable type-safe error
handling throughout the migration runner. All exceptions inherit from the base
LedgerMigrateError for consistent catching, and each top-level family maps to
exactly one CLI exit code.

Exception Hierarchy:
    LedgerMigrateError (base)
    ├── ConfigurationError                      -> exit 1
    │   ├── ConfigFileNotFoundError
    │   └── ConfigValidationError
    ├── ConnectivityError                       -> exit 2
    ├── RepositoryError                         -> exit 3
    │   ├── DuplicateVersionError
    │   └── ChecksumMismatchError
    ├── LedgerError                             -> exit 4
    └── ExecutionError                          -> exit 5

Propagation policy:
    Nothing below the runner recovers from these errors locally. The runner
    converts whichever one escapes into a failed RunResult, and the CLI turns
    that into a non-zero exit code. Only the connectivity prober retries.

Usage:
    from ledger_migrate.exceptions import ExecutionError

    try:
        executor.apply(unit)
    except ExecutionError as e:
        logger.error(f"Migration {e.version}_{e.name} failed: {e.cause}")
        sys.exit(5)
"""


class LedgerMigrateError(Exception):
    """
    Base exception for all ledger-migrate errors.

    All custom exceptions in this application should inherit from this class.
    This enables catching all application-specific errors with a single except clause.

    Example:
        try:
            runner.run()
        except LedgerMigrateError as e:
            logger.error(f"Migration run aborted: {e}")
    """

    pass


# ============================================================================
# Configuration Errors
# ============================================================================


class ConfigurationError(LedgerMigrateError):
    """
    Base class for configuration-related errors.

    Raised when configuration loading, parsing, or validation fails.
    Should be caught and result in exit code 1 (configuration error).
    """

    pass


class ConfigFileNotFoundError(ConfigurationError):
    """
    Configuration file does not exist at the specified path.

    Example:
        raise ConfigFileNotFoundError("/path/to/migrate.yaml")
    """

    pass


class ConfigValidationError(ConfigurationError):
    """
    Configuration is invalid (schema validation failed).

    Covers both the optional YAML file and values read from environment
    variables such as DB_PORT.

    Example:
        raise ConfigValidationError("database.port: Input should be a valid integer")
    """

    pass


# ============================================================================
# Connectivity Errors
# ============================================================================


class ConnectivityError(LedgerMigrateError):
    """
    Database did not become reachable within the probe timeout.

    Fatal: no migration is attempted. Retried only by re-invoking the whole
    process (redeploy or manual retry).

    Attributes:
        last_error: The last underlying driver exception seen by the prober
        attempts: Number of connection attempts made before giving up

    Example:
        raise ConnectivityError(
            "Database not ready after 30 attempts (60.0s)",
            last_error=exc,
            attempts=30,
        )
    """

    def __init__(
        self,
        message: str,
        last_error: BaseException | None = None,
        attempts: int | None = None,
    ):
        super().__init__(message)
        self.last_error = last_error
        self.attempts = attempts


# ============================================================================
# Repository Errors
# ============================================================================


class RepositoryError(LedgerMigrateError):
    """
    The migration set on disk is malformed or ambiguous.

    Raised for unreadable or empty files, filenames that do not encode a
    version, and version schemes whose string order differs from their
    numeric order. Fatal; requires a code fix, not a retry.

    Example:
        raise RepositoryError("Cannot read migration 014_create_tasks_table.sql")
    """

    pass


class DuplicateVersionError(RepositoryError):
    """
    Two migration files share the same version.

    Attributes:
        version: The duplicated version string
        paths: The conflicting file paths

    Example:
        raise DuplicateVersionError(
            "Duplicate migration version 040",
            version="040",
            paths=["040_add_single_task_type.sql", "040_add_user_name_fields.sql"],
        )
    """

    def __init__(self, message: str, version: str, paths: list[str] | None = None):
        super().__init__(message)
        self.version = version
        self.paths = paths or []


class ChecksumMismatchError(RepositoryError):
    """
    An already-applied migration file has been modified since it ran.

    Only raised when the checksum policy is "strict"; the default policy
    logs the drift and continues.

    Attributes:
        version: Version whose file content changed
        expected: Checksum recorded in the ledger
        actual: Checksum of the file currently on disk
    """

    def __init__(self, message: str, version: str, expected: str, actual: str):
        super().__init__(message)
        self.version = version
        self.expected = expected
        self.actual = actual


# ============================================================================
# Ledger Errors
# ============================================================================


class LedgerError(LedgerMigrateError):
    """
    The applied-version ledger cannot be read or written.

    Covers permission failures and connectivity lost mid-run. Treated like a
    failed migration at whatever point it occurs.

    Example:
        raise LedgerError("Cannot read schema_migrations: permission denied")
    """

    pass


# ============================================================================
# Execution Errors
# ============================================================================


class ExecutionError(LedgerMigrateError):
    """
    A specific migration's body failed and was rolled back.

    Halts the run. Earlier, already-ledgered migrations are untouched.

    Attributes:
        version: Version of the failing migration
        name: Descriptive name of the failing migration
        cause: Underlying driver exception (or None for contract violations)
        completed: Outcomes committed before the failure; a partial rollback
            fills this with the versions it already reverted

    Example:
        raise ExecutionError(
            "Migration 002_create_households failed: syntax error at or near \\"TABLEE\\"",
            version="002",
            name="create_households",
            cause=exc,
        )
    """

    def __init__(
        self,
        message: str,
        version: str,
        name: str,
        cause: BaseException | None = None,
        completed: list | None = None,
    ):
        super().__init__(message)
        self.version = version
        self.name = name
        self.cause = cause
        self.completed = completed or []

    @property
    def full_name(self) -> str:
        """Migration identifier as it appears in the filename (version_name)."""
        return f"{self.version}_{self.name}"

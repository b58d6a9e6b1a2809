"""
Configuration schema models for ledger-migrate.

This module defines Pydantic models for the runner configuration. The
configuration is assembled from an optional YAML file, DB_* environment
variables and CLI flags (see config.loader) and then passed explicitly to the
prober, ledger, executor and runner constructors. There is no process-wide
connection singleton, so several runners (one per test, for instance) can
coexist without interfering.

Models:
    DatabaseSettings: Driver and connection parameters
    ProbeSettings: Readiness probe timeout and backoff
    RepositorySettings: Migration repository location
    LedgerSettings: Ledger table name
    ExecutionSettings: Transaction convention, drift policy, apply lock
    RunnerConfig: Root configuration model
"""

import re
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .constants import (
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_DB_DRIVER,
    DEFAULT_DB_HOST,
    DEFAULT_DB_NAME,
    DEFAULT_DB_PORT,
    DEFAULT_DB_USER,
    DEFAULT_LEDGER_TABLE,
    DEFAULT_MAX_POLL_INTERVAL,
    DEFAULT_MIGRATIONS_DIR,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_PROBE_TIMEOUT,
)

# Plain or schema-qualified SQL identifier; interpolated into DDL, never quoted
_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}(\.[A-Za-z_][A-Za-z0-9_]{0,62})?$")


class DatabaseSettings(BaseModel):
    """
    Target database connection parameters.

    Attributes:
        driver: "postgres" (psycopg) or "sqlite" (file database; `name` is the path)
        host: Server hostname (postgres only)
        port: Server port (postgres only)
        name: Database name, or SQLite file path
        user: Role to connect as (postgres only)
        password: Role password; excluded from repr and never logged
        connect_timeout: Seconds allowed for a single connection attempt
    """

    model_config = ConfigDict(extra="forbid")

    driver: Literal["postgres", "sqlite"] = DEFAULT_DB_DRIVER
    host: str = DEFAULT_DB_HOST
    port: int = DEFAULT_DB_PORT
    name: str = DEFAULT_DB_NAME
    user: str = DEFAULT_DB_USER
    password: str | None = Field(default=None, repr=False)
    connect_timeout: int = DEFAULT_CONNECT_TIMEOUT

    @field_validator("host", "name", "user")
    @classmethod
    def validate_non_empty(cls, v: str) -> str:
        """Validate connection strings are non-empty."""
        if not v or v.isspace():
            raise ValueError("value cannot be empty")
        return v.strip()

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate port is a usable TCP port."""
        if not 1 <= v <= 65535:
            raise ValueError(f"port must be between 1 and 65535, got: {v}")
        return v

    @field_validator("connect_timeout")
    @classmethod
    def validate_connect_timeout(cls, v: int) -> int:
        """Validate connect_timeout is positive."""
        if v <= 0:
            raise ValueError(f"connect_timeout must be positive, got: {v}")
        return v

    def describe(self) -> str:
        """
        Human-readable target description without the password.

        Returns:
            "user@host:port/name" for postgres, "sqlite:///path" for sqlite
        """
        if self.driver == "sqlite":
            return f"sqlite:///{self.name}"
        return f"{self.user}@{self.host}:{self.port}/{self.name}"


class ProbeSettings(BaseModel):
    """
    Readiness probe configuration.

    Attributes:
        timeout: Total seconds to wait for the database before giving up
        poll_interval: Seconds between attempts (initial wait when exponential)
        backoff: "fixed" (constant polling) or "exponential"
        max_interval: Upper bound on the wait between attempts (exponential only)
        max_attempts: Optional cap on attempts in addition to the timeout
    """

    model_config = ConfigDict(extra="forbid")

    timeout: float = DEFAULT_PROBE_TIMEOUT
    poll_interval: float = DEFAULT_POLL_INTERVAL
    backoff: Literal["fixed", "exponential"] = "fixed"
    max_interval: float = DEFAULT_MAX_POLL_INTERVAL
    max_attempts: int | None = None

    @field_validator("timeout", "poll_interval", "max_interval")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        """Validate durations are positive."""
        if v <= 0:
            raise ValueError(f"must be positive, got: {v}")
        return v

    @field_validator("max_attempts")
    @classmethod
    def validate_max_attempts(cls, v: int | None) -> int | None:
        """Validate max_attempts is at least 1 if specified."""
        if v is not None and v < 1:
            raise ValueError(f"max_attempts must be at least 1, got: {v}")
        return v

    @model_validator(mode="after")
    def validate_interval_bounds(self) -> "ProbeSettings":
        """Validate the exponential cap is not below the initial interval."""
        if self.backoff == "exponential" and self.max_interval < self.poll_interval:
            raise ValueError(
                f"max_interval ({self.max_interval}) must be >= "
                f"poll_interval ({self.poll_interval})"
            )
        return self


class RepositorySettings(BaseModel):
    """Migration repository location."""

    model_config = ConfigDict(extra="forbid")

    migrations_dir: Path = Path(DEFAULT_MIGRATIONS_DIR)


class LedgerSettings(BaseModel):
    """
    Applied-version ledger settings.

    Attributes:
        table: Ledger table name, optionally schema-qualified ("meta.schema_migrations")
    """

    model_config = ConfigDict(extra="forbid")

    table: str = DEFAULT_LEDGER_TABLE

    @field_validator("table")
    @classmethod
    def validate_table(cls, v: str) -> str:
        """Validate table is a plain SQL identifier (it is interpolated into DDL)."""
        if not _IDENTIFIER.match(v):
            raise ValueError(
                f"table must be a plain SQL identifier (letters, digits, underscore), got: {v!r}"
            )
        return v


class ExecutionSettings(BaseModel):
    """
    Executor behaviour.

    Attributes:
        transaction_mode: "auto" detects author-written BEGIN/COMMIT markers;
            "wrap" always wraps the body in a runner transaction (bodies with
            markers are rejected); "file" always sends the body as written.
        checksum_policy: "warn" logs drift of applied files, "strict" fails
            planning on drift, "off" skips the comparison.
        lock: Take a storage-level apply lock and re-check the ledger before
            each unit so concurrent runners cannot both apply it.
    """

    model_config = ConfigDict(extra="forbid")

    transaction_mode: Literal["auto", "wrap", "file"] = "auto"
    checksum_policy: Literal["warn", "strict", "off"] = "warn"
    lock: bool = True


class RunnerConfig(BaseModel):
    """
    Root configuration for one runner invocation.

    Example:
        >>> config = RunnerConfig(
        ...     database=DatabaseSettings(driver="sqlite", name="/tmp/dev.db"),
        ...     repository=RepositorySettings(migrations_dir="docker/postgres/migrations"),
        ... )
        >>> config.ledger.table
        'schema_migrations'
    """

    model_config = ConfigDict(extra="forbid")

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    probe: ProbeSettings = Field(default_factory=ProbeSettings)
    repository: RepositorySettings = Field(default_factory=RepositorySettings)
    ledger: LedgerSettings = Field(default_factory=LedgerSettings)
    execution: ExecutionSettings = Field(default_factory=ExecutionSettings)

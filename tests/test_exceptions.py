"""
Tests for the exception hierarchy.

The CLI maps each top-level family to one exit code, so the inheritance
relationships are part of the contract.
"""

import sqlite3

import pytest

from ledger_migrate.exceptions import (
    ChecksumMismatchError,
    ConfigFileNotFoundError,
    ConfigurationError,
    ConfigValidationError,
    ConnectivityError,
    DuplicateVersionError,
    ExecutionError,
    LedgerError,
    LedgerMigrateError,
    RepositoryError,
)


@pytest.mark.parametrize(
    ("exc_class", "parent"),
    [
        (ConfigurationError, LedgerMigrateError),
        (ConfigFileNotFoundError, ConfigurationError),
        (ConfigValidationError, ConfigurationError),
        (ConnectivityError, LedgerMigrateError),
        (RepositoryError, LedgerMigrateError),
        (DuplicateVersionError, RepositoryError),
        (ChecksumMismatchError, RepositoryError),
        (LedgerError, LedgerMigrateError),
        (ExecutionError, LedgerMigrateError),
    ],
)
def test_hierarchy(exc_class, parent):
    assert issubclass(exc_class, parent)


def test_connectivity_error_carries_last_error():
    cause = sqlite3.OperationalError("unable to open database file")

    error = ConnectivityError("Database not ready after 30 attempt(s)", last_error=cause, attempts=30)

    assert error.last_error is cause
    assert error.attempts == 30
    assert str(error) == "Database not ready after 30 attempt(s)"


def test_duplicate_version_error_defaults_paths():
    error = DuplicateVersionError("Duplicate migration version 040", version="040")

    assert error.version == "040"
    assert error.paths == []


def test_checksum_mismatch_fields():
    error = ChecksumMismatchError("modified", version="001", expected="aaa", actual="bbb")

    assert (error.version, error.expected, error.actual) == ("001", "aaa", "bbb")


def test_execution_error_full_name():
    cause = sqlite3.OperationalError('near "TABLEE": syntax error')

    error = ExecutionError(
        "Migration 002_create_households failed", version="002", name="create_households", cause=cause
    )

    assert error.full_name == "002_create_households"
    assert error.cause is cause


def test_execution_error_without_cause():
    error = ExecutionError("left a transaction open", version="004", name="half_done")

    assert error.cause is None

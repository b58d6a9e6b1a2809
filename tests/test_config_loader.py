"""
Tests for config.loader and config.schema modules.

This module tests configuration loading and validation:
- YAML loading and parsing
- Environment variable layer (DB_HOST, DB_PORT, ..., empty values ignored)
- CLI override layer (None values ignored)
- Pydantic schema validation (all validators)
- Error handling for missing files, invalid YAML, bad values
- Password never appears in repr or describe()
"""

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from ledger_migrate.config.loader import config_from_environ, load_config
from ledger_migrate.config.schema import (
    DatabaseSettings,
    LedgerSettings,
    ProbeSettings,
    RunnerConfig,
)
from ledger_migrate.exceptions import (
    ConfigFileNotFoundError,
    ConfigurationError,
    ConfigValidationError,
)

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def config_yaml(tmp_path):
    """Write a YAML config file and return a factory for its path."""

    def _write(data, name="migrate.config.yaml"):
        path = tmp_path / name
        with path.open("w", encoding="utf-8") as f:
            yaml.dump(data, f)
        return path

    return _write


# ============================================================================
# Defaults and environment
# ============================================================================


def test_defaults_match_deployment_pipeline(tmp_path):
    config = load_config(environ={}, overrides={"repository": {"migrations_dir": tmp_path}})

    assert config.database.driver == "postgres"
    assert config.database.host == "localhost"
    assert config.database.port == 5432
    assert config.database.name == "st44"
    assert config.database.user == "postgres"
    assert config.database.password is None
    assert config.probe.timeout == 60.0
    assert config.probe.poll_interval == 2.0
    assert config.ledger.table == "schema_migrations"
    assert config.execution.transaction_mode == "auto"
    assert config.execution.checksum_policy == "warn"


def test_environment_variables_override_defaults():
    environ = {
        "DB_HOST": "db",
        "DB_PORT": "6543",
        "DB_NAME": "chores",
        "DB_USER": "migrator",
        "DB_PASSWORD": "hunter2",
        "MIGRATIONS_DIR": "/srv/migrations",
        "LEDGER_TABLE": "meta.schema_migrations",
    }

    config = load_config(environ=environ)

    assert config.database.host == "db"
    assert config.database.port == 6543
    assert config.database.name == "chores"
    assert config.database.user == "migrator"
    assert config.database.password == "hunter2"
    assert config.repository.migrations_dir == Path("/srv/migrations")
    assert config.ledger.table == "meta.schema_migrations"


def test_empty_environment_values_are_ignored():
    config = load_config(environ={"DB_HOST": "", "DB_PORT": "", "MIGRATIONS_DIR": "m"})

    assert config.database.host == "localhost"
    assert config.database.port == 5432


def test_config_from_environ_ignores_unknown_variables():
    result = config_from_environ({"DB_HOST": "db", "HOME": "/root", "MIGRATE_POLL_INTERVAL": "0.5"})

    assert result == {"database": {"host": "db"}, "probe": {"poll_interval": "0.5"}}


def test_invalid_port_from_environment_raises():
    with pytest.raises(ConfigValidationError, match="database.port"):
        load_config(environ={"DB_PORT": "not-a-port", "MIGRATIONS_DIR": "m"})


def test_sqlite_driver_from_environment(tmp_path):
    db_path = tmp_path / "dev.db"
    config = load_config(
        environ={"DB_DRIVER": "sqlite", "DB_NAME": str(db_path), "MIGRATIONS_DIR": "m"}
    )

    assert config.database.driver == "sqlite"
    assert config.database.describe() == f"sqlite:///{db_path}"


def test_default_migrations_dir_without_container_path(monkeypatch):
    monkeypatch.setattr("ledger_migrate.config.loader.CONTAINER_MIGRATIONS_DIR", "/nonexistent-dir")

    config = load_config(environ={})

    assert config.repository.migrations_dir == Path("migrations")


# ============================================================================
# YAML layer and precedence
# ============================================================================


def test_yaml_file_loaded(config_yaml):
    path = config_yaml(
        {
            "database": {"host": "yaml-host", "port": 5433},
            "repository": {"migrations_dir": "docker/postgres/migrations"},
            "execution": {"checksum_policy": "strict"},
        }
    )

    config = load_config(path, environ={})

    assert config.database.host == "yaml-host"
    assert config.database.port == 5433
    assert config.execution.checksum_policy == "strict"


def test_precedence_yaml_then_env_then_overrides(config_yaml):
    path = config_yaml(
        {
            "database": {"host": "yaml-host"},
            "probe": {"timeout": 10},
            "repository": {"migrations_dir": "m"},
        }
    )

    config = load_config(
        path,
        environ={"DB_HOST": "env-host", "MIGRATE_PROBE_TIMEOUT": "20"},
        overrides={"probe": {"timeout": 30.0, "poll_interval": None}},
    )

    assert config.database.host == "env-host"
    assert config.probe.timeout == 30.0
    assert config.probe.poll_interval == 2.0


def test_password_in_yaml_logs_warning(config_yaml, caplog):
    path = config_yaml(
        {"database": {"password": "secret"}, "repository": {"migrations_dir": "m"}}
    )

    with caplog.at_level("WARNING"):
        load_config(path, environ={})

    assert "DB_PASSWORD" in caplog.text


def test_missing_config_file_raises(tmp_path):
    with pytest.raises(ConfigFileNotFoundError, match="not found"):
        load_config(tmp_path / "missing.yaml", environ={})


def test_invalid_yaml_raises(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("database: [unclosed\n", encoding="utf-8")

    with pytest.raises(ConfigValidationError, match="Invalid YAML"):
        load_config(path, environ={})


def test_empty_yaml_raises(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("", encoding="utf-8")

    with pytest.raises(ConfigValidationError, match="empty"):
        load_config(path, environ={})


def test_non_mapping_section_raises(config_yaml):
    path = config_yaml({"database": "localhost"})

    with pytest.raises(ConfigValidationError, match="must be a mapping"):
        load_config(path, environ={})


def test_unknown_key_rejected(config_yaml):
    path = config_yaml({"database": {"hostname": "db"}, "repository": {"migrations_dir": "m"}})

    with pytest.raises(ConfigValidationError, match="database.hostname"):
        load_config(path, environ={})


def test_configuration_errors_share_base_class(tmp_path):
    with pytest.raises(ConfigurationError):
        load_config(tmp_path / "missing.yaml", environ={})


# ============================================================================
# Schema validators
# ============================================================================


class TestDatabaseSettings:
    def test_empty_host_rejected(self):
        with pytest.raises(ValidationError, match="cannot be empty"):
            DatabaseSettings(host="   ")

    def test_port_out_of_range_rejected(self):
        with pytest.raises(ValidationError, match="between 1 and 65535"):
            DatabaseSettings(port=70000)

    def test_non_positive_connect_timeout_rejected(self):
        with pytest.raises(ValidationError, match="connect_timeout must be positive"):
            DatabaseSettings(connect_timeout=0)

    def test_password_not_in_repr(self):
        settings = DatabaseSettings(password="hunter2")
        assert "hunter2" not in repr(settings)
        assert "hunter2" not in settings.describe()

    def test_describe_postgres(self):
        settings = DatabaseSettings(host="db", port=5432, name="st44", user="postgres")
        assert settings.describe() == "postgres@db:5432/st44"


class TestProbeSettings:
    def test_non_positive_timeout_rejected(self):
        with pytest.raises(ValidationError, match="must be positive"):
            ProbeSettings(timeout=0)

    def test_max_attempts_must_be_at_least_one(self):
        with pytest.raises(ValidationError, match="max_attempts"):
            ProbeSettings(max_attempts=0)

    def test_exponential_requires_max_interval_above_poll_interval(self):
        with pytest.raises(ValidationError, match="max_interval"):
            ProbeSettings(backoff="exponential", poll_interval=5, max_interval=1)

    def test_fixed_backoff_ignores_max_interval(self):
        settings = ProbeSettings(backoff="fixed", poll_interval=5, max_interval=1)
        assert settings.poll_interval == 5


class TestLedgerSettings:
    @pytest.mark.parametrize("table", ["schema_migrations", "meta.schema_migrations", "_ledger"])
    def test_valid_identifiers(self, table):
        assert LedgerSettings(table=table).table == table

    @pytest.mark.parametrize(
        "table", ["schema migrations", "x; DROP TABLE users", "1table", "a.b.c", ""]
    )
    def test_unsafe_identifiers_rejected(self, table):
        with pytest.raises(ValidationError, match="plain SQL identifier"):
            LedgerSettings(table=table)


def test_runner_config_invalid_policy_rejected():
    with pytest.raises(ValidationError):
        RunnerConfig.model_validate({"execution": {"checksum_policy": "sometimes"}})

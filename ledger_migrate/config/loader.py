"""
Configuration loader for ledger-migrate.

This module builds a validated RunnerConfig from three layers, later layers
winning:

1. An optional YAML file (non-secret settings checked into the repo)
2. Environment variables (DB_HOST, DB_PORT, DB_NAME, DB_USER, DB_PASSWORD,
   MIGRATIONS_DIR, ...) passed in by the deployment pipeline
3. Explicit overrides from CLI flags

Secrets are expected in the environment only; a password found in the YAML
file is accepted but logged as a warning.

Functions:
    load_config: Main entrypoint returning a RunnerConfig
    config_from_environ: Translate an environment mapping to a nested dict
"""

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from ledger_migrate.exceptions import ConfigFileNotFoundError, ConfigValidationError

from .constants import CONTAINER_MIGRATIONS_DIR, DEFAULT_MIGRATIONS_DIR, ENV_VARS
from .schema import RunnerConfig

logger = logging.getLogger(__name__)


def load_config(
    config_path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
    overrides: Mapping[str, Mapping[str, Any]] | None = None,
) -> RunnerConfig:
    """
    Load the runner configuration.

    Args:
        config_path: Optional path to a YAML file with sections database,
            probe, repository, ledger and execution
        environ: Environment mapping (defaults to os.environ)
        overrides: Nested {section: {field: value}} from CLI flags; None
            values are ignored so unset flags do not mask other layers

    Returns:
        Validated RunnerConfig

    Raises:
        ConfigFileNotFoundError: If config_path is given but does not exist
        ConfigValidationError: If YAML is invalid or any value fails validation

    Example:
        >>> config = load_config(environ={"DB_HOST": "db", "DB_PASSWORD": "secret"})
        >>> config.database.host
        'db'
    """
    raw: dict[str, dict[str, Any]] = {}

    if config_path is not None:
        raw = _load_yaml(Path(config_path))
        if raw.get("database", {}).get("password"):
            logger.warning(
                "Database password found in configuration file; "
                "prefer the DB_PASSWORD environment variable"
            )

    env = os.environ if environ is None else environ
    _merge(raw, config_from_environ(env))

    if overrides:
        _merge(
            raw,
            {
                section: {k: v for k, v in values.items() if v is not None}
                for section, values in overrides.items()
            },
        )

    if not raw.get("repository", {}).get("migrations_dir"):
        raw.setdefault("repository", {})["migrations_dir"] = _default_migrations_dir()

    try:
        config = RunnerConfig.model_validate(raw)
    except ValidationError as e:
        error_messages = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            error_messages.append(f"  - {loc}: {msg}")

        source = f" in {config_path}" if config_path is not None else ""
        raise ConfigValidationError(
            f"Configuration validation failed{source}:\n" + "\n".join(error_messages)
        ) from e

    logger.debug(
        "Configuration loaded",
        extra={
            "context": {
                "target": config.database.describe(),
                "migrations_dir": str(config.repository.migrations_dir),
                "ledger_table": config.ledger.table,
            }
        },
    )
    return config


def config_from_environ(environ: Mapping[str, str]) -> dict[str, dict[str, Any]]:
    """
    Translate known environment variables into a nested config dict.

    Empty values are treated as unset, matching `${DB_HOST:-localhost}`
    semantics in shell deploy scripts.

    Args:
        environ: Environment mapping

    Returns:
        Nested {section: {field: value}} dict containing only variables that are set
    """
    result: dict[str, dict[str, Any]] = {}
    for var, (section, field) in ENV_VARS.items():
        value = environ.get(var)
        if value is None or value == "":
            continue
        result.setdefault(section, {})[field] = value
    return result


def _load_yaml(config_path: Path) -> dict[str, dict[str, Any]]:
    """Read and shape-check the YAML configuration file."""
    if not config_path.exists():
        raise ConfigFileNotFoundError(f"Configuration file not found: {config_path}")

    try:
        with config_path.open(encoding="utf-8") as f:
            raw_config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigValidationError(f"Invalid YAML syntax in {config_path}: {e}") from e
    except OSError as e:
        raise ConfigValidationError(
            f"Failed to read configuration file {config_path}: {e}"
        ) from e

    if raw_config is None:
        raise ConfigValidationError(f"Configuration file is empty: {config_path}")

    if not isinstance(raw_config, dict):
        raise ConfigValidationError(
            f"Configuration file must contain a mapping at the top level: {config_path}"
        )

    for section, values in raw_config.items():
        if not isinstance(values, dict):
            raise ConfigValidationError(
                f"Section '{section}' in {config_path} must be a mapping"
            )

    return raw_config


def _merge(base: dict[str, dict[str, Any]], layer: Mapping[str, Mapping[str, Any]]) -> None:
    """Merge a {section: {field: value}} layer into base in place."""
    for section, values in layer.items():
        base.setdefault(section, {}).update(values)


def _default_migrations_dir() -> str:
    """Use /migrations when running inside the migrations image, else ./migrations."""
    if Path(CONTAINER_MIGRATIONS_DIR).is_dir():
        return CONTAINER_MIGRATIONS_DIR
    return DEFAULT_MIGRATIONS_DIR

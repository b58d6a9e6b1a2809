"""
Structured JSON logging for ledger-migrate.

Provides standardized logging with:
- JSON formatted output to stderr
- UTC timestamps with timezone info
- Structured context fields (version, name, duration_ms, ...)
- Secret redaction (database passwords never reach the log stream)
- Component-based logger creation

All logs use Python's standard logging module with custom formatting.
stdout is reserved for the per-migration report lines, so a deploy pipeline
can capture the report and the diagnostic stream separately.

Examples:
    >>> from ledger_migrate.utils.logging import setup_logging, get_logger
    >>> setup_logging(verbose=True)
    >>> logger = get_logger("migrator.runner")
    >>> logger.info("Planning complete", extra={"context": {"pending": 3}})

Security:
    - NEVER log DB_PASSWORD or a DSN containing it
    - The redacting filter is a safety net, not a license to log secrets
"""

import json
import logging
import re
import sys
from typing import Any

from ledger_migrate.utils.time import utc_timestamp


class JSONFormatter(logging.Formatter):
    """
    Custom formatter that outputs logs as JSON with structured fields.

    Each log record is formatted as a JSON object with:
    - timestamp: ISO 8601 UTC timestamp
    - level: Log level (INFO, WARNING, ERROR, DEBUG)
    - component: Module/component name (from logger name)
    - message: Human-readable log message
    - context: Additional structured data (from 'context' in extra)
    - run_id: Current runner invocation identifier (from 'run_id' in extra)
    """

    def format(self, record: logging.LogRecord) -> str:
        """
        Format log record as JSON string.

        Args:
            record: LogRecord instance from Python logging

        Returns:
            JSON string representing the log entry
        """
        log_entry = {
            "timestamp": utc_timestamp(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }

        if hasattr(record, "context") and isinstance(record.context, dict):
            log_entry["context"] = record.context

        if hasattr(record, "run_id"):
            log_entry["run_id"] = record.run_id

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


class SecretRedactingFilter(logging.Filter):
    """
    Logging filter that redacts database credentials from log records.

    Driver error messages and connection strings are the usual leak path:
    "postgresql://postgres:hunter2@db:5432/st44" or
    "host=db user=postgres password=hunter2". Both forms are rewritten so
    only the last 2 characters of the secret survive:

    "postgresql://postgres:hunter2@db" -> "postgresql://postgres:***r2@db"
    "password=hunter2"                 -> "password=***r2"
    """

    SECRET_PATTERNS = [
        # userinfo section of a URL-style DSN
        re.compile(r"(?P<prefix>://[^:/@\s]+:)(?P<secret>[^@\s]+)(?P<suffix>@)"),
        # key=value conninfo and env-style assignments
        re.compile(
            r"(?P<prefix>\b(?:password|passwd|pwd|DB_PASSWORD|PGPASSWORD)\s*[=:]\s*)"
            r"(?P<secret>'[^']*'|\"[^\"]*\"|[^\s,;]+)(?P<suffix>)",
            re.IGNORECASE,
        ),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        """
        Redact secrets from log record message, args and context.

        Args:
            record: LogRecord to filter

        Returns:
            True (always allow record, but with redacted content)
        """
        record.msg = self._redact_secrets(str(record.msg))

        if record.args:
            if isinstance(record.args, dict):
                record.args = {
                    k: self._redact_secrets(str(v)) for k, v in record.args.items()
                }
            elif isinstance(record.args, tuple):
                record.args = tuple(
                    self._redact_secrets(str(arg)) for arg in record.args
                )

        if hasattr(record, "context") and isinstance(record.context, dict):
            record.context = self._redact_dict(record.context)

        return True

    def _redact_secrets(self, text: str) -> str:
        """
        Redact secrets in text, keeping only the last 2 characters.

        Args:
            text: Input string potentially containing secrets

        Returns:
            String with secrets replaced by redacted versions
        """
        for pattern in self.SECRET_PATTERNS:

            def redact_match(match: re.Match) -> str:
                secret = match.group("secret").strip("'\"")
                tail = secret[-2:] if len(secret) > 6 else ""
                return f"{match.group('prefix')}***{tail}{match.group('suffix')}"

            text = pattern.sub(redact_match, text)

        return text

    def _redact_dict(self, data: dict[str, Any]) -> dict[str, Any]:
        """
        Recursively redact secrets in dictionary values.

        Keys that name a password are blanked entirely regardless of value.

        Args:
            data: Dictionary potentially containing secrets

        Returns:
            Dictionary with secrets redacted in all string values
        """
        result = {}
        for key, value in data.items():
            if "password" in str(key).lower():
                result[key] = "***"
            elif isinstance(value, str):
                result[key] = self._redact_secrets(value)
            elif isinstance(value, dict):
                result[key] = self._redact_dict(value)
            elif isinstance(value, list):
                result[key] = [
                    self._redact_secrets(v) if isinstance(v, str) else v for v in value
                ]
            else:
                result[key] = value
        return result


def setup_logging(verbose: bool = False, quiet_logs: bool = False) -> None:
    """
    Configure structured JSON logging for the application.

    Sets up:
    - JSON formatter for structured output
    - Secret redaction filter
    - stderr output (stdout reserved for the migration report)
    - Log level: DEBUG if verbose, WARNING if quiet_logs, INFO otherwise

    Args:
        verbose: If True, set log level to DEBUG.
        quiet_logs: If True (and not verbose), only WARNING and above are
            emitted. Used in human output mode where the Rich report already
            covers the INFO-level narrative.

    Example:
        >>> setup_logging(verbose=True)
        >>> get_logger("storage.ledger").debug("Ledger ready")
    """
    if verbose:
        level = logging.DEBUG
    elif quiet_logs:
        level = logging.WARNING
    else:
        level = logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Remove any existing handlers (prevents duplicate logs)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter())
    handler.addFilter(SecretRedactingFilter())

    root_logger.addHandler(handler)

    # psycopg is chatty at DEBUG about pool/connection internals
    logging.getLogger("psycopg").setLevel(max(level, logging.INFO))


def get_logger(component: str) -> logging.Logger:
    """
    Get a logger instance for a specific component.

    Args:
        component: Component name (e.g., "storage.ledger", "migrator.executor")

    Returns:
        Logger instance configured for JSON output
    """
    return logging.getLogger(component)


def log_with_context(
    logger: logging.Logger,
    level: int,
    message: str,
    context: dict[str, Any] | None = None,
    run_id: str | None = None,
) -> None:
    """
    Log a message with structured context and optional run_id.

    Equivalent to logger.log(level, message, extra={'context': {...}, 'run_id': '...'})

    Args:
        logger: Logger instance (from get_logger)
        level: Log level (logging.INFO, logging.WARNING, etc.)
        message: Human-readable log message
        context: Optional dict with additional structured data
        run_id: Optional runner invocation identifier

    Example:
        >>> log_with_context(
        ...     logger,
        ...     logging.INFO,
        ...     "Migration applied",
        ...     context={"version": "001", "duration_ms": 42},
        ... )
    """
    extra = {}

    if context is not None:
        extra["context"] = context

    if run_id is not None:
        extra["run_id"] = run_id

    logger.log(level, message, extra=extra if extra else None)

"""
Connectivity prober: wait until the target database accepts queries.

The only retrying component in ledger-migrate. A deploy starts the migrations
container alongside PostgreSQL, so the first connection attempts routinely
fail while the server is still starting. The prober connects and runs
`SELECT 1` until it succeeds or the timeout elapses.

Retry policy is built with tenacity:
- stop_before_delay(timeout), so no sleep runs past the deadline, optionally
  combined with stop_after_attempt
- wait_fixed(poll_interval), or wait_exponential capped at max_interval
- retry only on the backend's transient errors (connection refused,
  server starting up, database locked); anything else fails immediately

Defaults (2 s interval, 60 s timeout) reproduce the 30-attempt loop of the
deployment shell script this tool replaced.
"""

import logging
import time
from collections.abc import Callable

from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    stop_before_delay,
    wait_exponential,
    wait_fixed,
)

from ledger_migrate.config.schema import ProbeSettings
from ledger_migrate.exceptions import ConnectivityError
from ledger_migrate.storage.backends import DatabaseBackend

logger = logging.getLogger(__name__)


class ConnectivityProber:
    """
    Polls a backend until it is ready.

    Args:
        backend: Backend to ping
        settings: Probe timeout and backoff (defaults from ProbeSettings)
        sleep: Sleep function, injectable for tests (defaults to time.sleep)

    Example:
        >>> prober = ConnectivityProber(create_backend(config.database), config.probe)
        >>> prober.wait_until_ready()
        3
    """

    def __init__(
        self,
        backend: DatabaseBackend,
        settings: ProbeSettings | None = None,
        sleep: Callable[[float], None] | None = None,
    ):
        self.backend = backend
        self.settings = settings or ProbeSettings()
        self._sleep = sleep or time.sleep

    def _log_attempt(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.info(
            f"Database not ready (attempt {retry_state.attempt_number}): {exc}",
            extra={
                "context": {
                    "target": self.backend.describe(),
                    "attempt": retry_state.attempt_number,
                    "next_wait_s": retry_state.upcoming_sleep,
                }
            },
        )

    def wait_until_ready(
        self, timeout: float | None = None, poll_interval: float | None = None
    ) -> int:
        """
        Block until the database answers `SELECT 1`.

        Args:
            timeout: Overrides settings.timeout (seconds)
            poll_interval: Overrides settings.poll_interval (seconds)

        Returns:
            Number of attempts it took

        Raises:
            ConnectivityError: If the database is still unreachable when the
                timeout (or max_attempts) is exhausted; carries the last
                underlying error and the attempt count
        """
        timeout = self.settings.timeout if timeout is None else timeout
        interval = self.settings.poll_interval if poll_interval is None else poll_interval

        stop = stop_before_delay(timeout)
        if self.settings.max_attempts is not None:
            stop = stop | stop_after_attempt(self.settings.max_attempts)

        if self.settings.backoff == "exponential":
            wait = wait_exponential(
                multiplier=interval, min=interval, max=self.settings.max_interval
            )
        else:
            wait = wait_fixed(interval)

        retrying = Retrying(
            stop=stop,
            wait=wait,
            retry=retry_if_exception_type(self.backend.transient_errors),
            sleep=self._sleep,
            before_sleep=self._log_attempt,
        )

        target = self.backend.describe()
        try:
            retrying(self.backend.ping)
        except RetryError as e:
            attempts = e.last_attempt.attempt_number
            last_error = e.last_attempt.exception()
            raise ConnectivityError(
                f"Database {target} not ready after {attempts} attempt(s) "
                f"({timeout:g}s timeout): {last_error}",
                last_error=last_error,
                attempts=attempts,
            ) from last_error
        except Exception as e:
            raise ConnectivityError(
                f"Cannot connect to database {target}: {e}",
                last_error=e,
                attempts=retrying.statistics.get("attempt_number", 1),
            ) from e

        attempts = retrying.statistics.get("attempt_number", 1)
        logger.info(
            "Database is ready",
            extra={"context": {"target": target, "attempts": attempts}},
        )
        return attempts

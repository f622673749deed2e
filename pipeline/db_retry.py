"""
Retry of job store transactions on transient database errors.

A claim or progress write that loses a lock race should not fail an otherwise
healthy transcode, so every JobStore transaction runs through
execute_with_retry. Only contention-type errors are retried: SQLite busy/locked
states and PostgreSQL deadlocks (40P01), serialization failures (40001), lock
timeouts and dropped connections. Anything else propagates on the first attempt.
"""

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

from config import DB_RETRY_ATTEMPTS, DB_RETRY_BASE_DELAY, DB_RETRY_MAX_DELAY
from pipeline.errors import PersistenceFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Lower-cased message fragment -> short reason used in log lines
_TRANSIENT_MESSAGES = {
    "database is locked": "sqlite locked",
    "database table is locked": "sqlite locked",
    "sqlite_busy": "sqlite busy",
    "sqlite_locked": "sqlite locked",
    "deadlock detected": "deadlock",
    "could not serialize access": "serialization failure",
    "could not obtain lock": "lock contention",
    "lock timeout": "lock timeout",
    "connection refused": "connection lost",
    "connection reset": "connection lost",
    "server closed the connection unexpectedly": "connection lost",
}

_TRANSIENT_SQLSTATES = {"40P01": "deadlock", "40001": "serialization failure"}


class DatabaseRetryableError(PersistenceFailure):
    """A transient database error outlasted every retry."""

    pass


def transient_reason(exc: BaseException) -> Optional[str]:
    """
    Classify exc as a transient database error.

    Returns a short reason ("deadlock", "sqlite locked", ...) or None when the
    error will not go away on retry. The cause chain is followed because
    the databases library re-raises driver errors.
    """
    # asyncpg and psycopg2 both expose the SQLSTATE code
    reason = _TRANSIENT_SQLSTATES.get(getattr(exc, "sqlstate", None) or "")
    if reason:
        return reason

    message = str(exc).lower()
    for fragment, reason in _TRANSIENT_MESSAGES.items():
        if fragment in message:
            return reason

    if exc.__cause__ is not None:
        return transient_reason(exc.__cause__)
    return None


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Exponential delay for a zero-based attempt, capped, with +/-25% jitter."""
    delay = min(base_delay * (2**attempt), max_delay)
    return max(0.01, delay * random.uniform(0.75, 1.25))


async def execute_with_retry(
    func: Callable[..., Awaitable[T]],
    *args,
    operation: str = "database operation",
    max_retries: int = DB_RETRY_ATTEMPTS,
    base_delay: float = DB_RETRY_BASE_DELAY,
    max_delay: float = DB_RETRY_MAX_DELAY,
    **kwargs,
) -> T:
    """
    Await func(*args, **kwargs), retrying transient database errors.

    Args:
        func: Coroutine function running one complete transaction
        operation: Name used in log lines and the final error
        max_retries: Retries after the first attempt
        base_delay: Delay before the first retry (seconds)
        max_delay: Upper bound on any single delay (seconds)

    Raises:
        DatabaseRetryableError: The error was still transient after max_retries
    """
    attempts = max_retries + 1
    attempt = 0
    while True:
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            reason = transient_reason(e)
            if reason is None:
                raise
            attempt += 1
            if attempt >= attempts:
                logger.error(f"{operation}: {reason} persisted through {attempts} attempts: {e}")
                raise DatabaseRetryableError(f"{operation} failed after {attempts} attempts ({reason}): {e}") from e

            delay = backoff_delay(attempt - 1, base_delay, max_delay)
            logger.warning(f"{operation}: {reason} on attempt {attempt}/{attempts}, retrying in {delay:.2f}s")
            await asyncio.sleep(delay)

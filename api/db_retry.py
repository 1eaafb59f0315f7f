"""
Retries for transient database failures.

The queue, the reclaimer and every API request share one database, so
writers contend. Lock and serialization errors are retried with capped
exponential backoff; anything else propagates on the first attempt.

Retried on SQLite: busy/locked database or table.
Retried on PostgreSQL: deadlocks (40P01), serialization failures (40001),
lock timeouts and dropped connections.
"""

import asyncio
import logging
import random
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

from databases import Database

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_RETRIES = 5
BASE_DELAY = 0.1
MAX_DELAY = 2.0
SLOW_QUERY_SECONDS = 1.0

TRANSIENT_MESSAGES = (
    # SQLite
    "database is locked",
    "database table is locked",
    "sqlite_busy",
    "sqlite_locked",
    # PostgreSQL
    "deadlock detected",
    "could not serialize access",
    "could not obtain lock",
    "lock timeout",
    "canceling statement due to lock timeout",
    "connection refused",
    "connection reset",
    "server closed the connection unexpectedly",
)

TRANSIENT_SQLSTATES = ("40P01", "40001")


class DatabaseRetryableError(Exception):
    """A transient database error outlasted every retry."""


def is_retryable_database_error(exc: BaseException) -> bool:
    """True for lock, serialization and connection errors on either backend."""
    message = str(exc).lower()
    if any(fragment in message for fragment in TRANSIENT_MESSAGES):
        return True
    if getattr(exc, "sqlstate", "") in TRANSIENT_SQLSTATES:
        return True
    # databases re-raises driver errors with the original as __cause__
    cause = exc.__cause__
    return cause is not None and cause is not exc and is_retryable_database_error(cause)


def backoff_delay(attempt: int, base_delay: float = BASE_DELAY, max_delay: float = MAX_DELAY) -> float:
    """Delay before retry ``attempt`` (0-based), with +/-25% jitter."""
    delay = min(base_delay * (2**attempt), max_delay)
    return max(0.01, delay * random.uniform(0.75, 1.25))


async def execute_with_retry(
    func: Callable[..., Awaitable[T]],
    *args,
    max_retries: int = MAX_RETRIES,
    base_delay: float = BASE_DELAY,
    max_delay: float = MAX_DELAY,
    **kwargs,
) -> T:
    """
    Await ``func(*args, **kwargs)``, retrying transient database errors.

    Raises:
        DatabaseRetryableError: the error was still transient after ``max_retries`` retries
    """
    attempts = max_retries + 1
    last_error: Optional[BaseException] = None

    for attempt in range(attempts):
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if not is_retryable_database_error(e):
                raise
            last_error = e
            if attempt == attempts - 1:
                logger.error(f"Giving up on database operation after {attempts} attempts: {e}")
                break
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning(f"Transient database error ({attempt + 1}/{attempts}), retry in {delay:.2f}s: {e}")
            await asyncio.sleep(delay)

    raise DatabaseRetryableError(f"Database operation failed after {attempts} attempts: {last_error}")


async def _timed(method: Callable, query, *args) -> Any:
    started = time.monotonic()
    result = await method(query, *args)
    elapsed = time.monotonic() - started
    if elapsed >= SLOW_QUERY_SECONDS:
        logger.warning(f"Slow query ({elapsed:.2f}s): {str(query)[:500]}")
    return result


async def fetch_one_with_retry(database: Database, query):
    return await execute_with_retry(_timed, database.fetch_one, query)


async def fetch_all_with_retry(database: Database, query):
    return await execute_with_retry(_timed, database.fetch_all, query)


async def fetch_val_with_retry(database: Database, query):
    return await execute_with_retry(_timed, database.fetch_val, query)


async def db_execute_with_retry(database: Database, query, values=None):
    """Run a write with retries. ``values`` binds parameters of a raw SQL string."""
    if values is not None:
        return await execute_with_retry(_timed, database.execute, query, values)
    return await execute_with_retry(_timed, database.execute, query)

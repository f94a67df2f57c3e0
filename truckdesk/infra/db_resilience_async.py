# truckdesk/infra/db_resilience_async.py
"""
Async database resilience utilities.

Transient errors are retried with exponential backoff when *acquiring* a
connection. Statements run inside ``safe_db_conn`` are never re-executed:
a failure after the connection was handed out propagates to the caller.
"""
from __future__ import annotations
import asyncio
from typing import AsyncIterator, Callable, TypeVar
from contextlib import asynccontextmanager
from functools import wraps

import asyncpg
from truckdesk.infra.db_async import get_pool
from truckdesk.infra.logging_config import get_logger
from truckdesk.infra.metrics import AppMetrics

logger = get_logger(__name__)

T = TypeVar('T')


def is_transient_error(exc: Exception) -> bool:
    """
    Check if database error is transient (should retry).

    Transient errors:
    - Connection errors
    - Server closed connection
    - Too many connections
    - Deadlock
    """
    if isinstance(exc, (
        asyncpg.PostgresConnectionError,
        asyncpg.TooManyConnectionsError,
        asyncpg.DeadlockDetectedError,
        ConnectionError,
        asyncio.TimeoutError,
    )):
        return True

    # Constraint and syntax errors are never transient, whatever their text says
    if isinstance(exc, (asyncpg.IntegrityConstraintViolationError, asyncpg.PostgresSyntaxError)):
        return False

    error_message = str(exc).lower()
    transient_patterns = [
        "connection",
        "timeout",
        "closed",
        "network",
        "deadlock",
        "too many connections",
        "server closed",
        "connection reset",
    ]
    return any(pattern in error_message for pattern in transient_patterns)


def retry_on_transient_error(
    max_retries: int = 3,
    initial_delay: float = 0.1,
    backoff_factor: float = 2.0,
    max_delay: float = 5.0
):
    """
    Decorator to retry async function on transient database errors.

    Only wrap operations that are safe to repeat (reads, connection setup).

    Args:
        max_retries: Maximum number of retry attempts
        initial_delay: Initial delay between retries (seconds)
        backoff_factor: Multiplier for delay after each retry
        max_delay: Maximum delay between retries (seconds)
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            delay = initial_delay

            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except Exception as exc:
                    if not is_transient_error(exc):
                        raise

                    if attempt >= max_retries:
                        logger.error(
                            f"Max retries ({max_retries}) exceeded in {func.__name__}: {exc}"
                        )
                        AppMetrics.database_error(func.__name__)
                        raise

                    logger.warning(
                        f"Transient error in {func.__name__} (attempt {attempt + 1}/{max_retries}): {exc}. "
                        f"Retrying in {delay:.2f}s..."
                    )
                    await asyncio.sleep(delay)
                    delay = min(delay * backoff_factor, max_delay)

        return wrapper
    return decorator


@retry_on_transient_error(max_retries=3)
async def _acquire() -> asyncpg.Connection:
    return await get_pool().acquire()


@asynccontextmanager
async def safe_db_conn(autocommit: bool = True) -> AsyncIterator[asyncpg.Connection]:
    """
    Database connection with retry on transient acquire errors.

    Usage:
        async with safe_db_conn() as conn:
            rows = await conn.fetch("SELECT * FROM assignments WHERE truck_id = $1", truck_id)
    """
    conn = await _acquire()
    try:
        if autocommit:
            yield conn
        else:
            async with conn.transaction():
                yield conn
    finally:
        await get_pool().release(conn)

# truckdesk/infra/db_async.py
"""
Async database connection pool (asyncpg).
"""
from __future__ import annotations
from typing import AsyncIterator
from contextlib import asynccontextmanager

import asyncpg
from truckdesk.config import settings
from truckdesk.infra.logging_config import get_logger

logger = get_logger(__name__)

# Global connection pool
_pool: asyncpg.Pool | None = None


async def init_pool() -> None:
    """Initialize connection pool on startup"""
    global _pool

    if _pool is not None:
        return

    logger.info("Initializing asyncpg connection pool")

    _pool = await asyncpg.create_pool(
        dsn=settings.database_dsn,
        min_size=settings.pg_pool_min,
        max_size=settings.pg_pool_max,
        timeout=settings.pg_connect_timeout,
        command_timeout=settings.pg_command_timeout,
        server_settings=settings.server_settings,
    )

    logger.info(f"Connection pool created: min={settings.pg_pool_min}, max={settings.pg_pool_max}")


async def close_pool() -> None:
    """Close connection pool on shutdown"""
    global _pool

    if _pool is None:
        return

    logger.info("Closing connection pool")
    await _pool.close()
    _pool = None
    logger.info("Connection pool closed")


def get_pool() -> asyncpg.Pool:
    """Get the connection pool directly (for advanced usage)"""
    if _pool is None:
        raise RuntimeError("Connection pool not initialized. Call init_pool() first.")
    return _pool


@asynccontextmanager
async def db_conn(autocommit: bool = True) -> AsyncIterator[asyncpg.Connection]:
    """
    Get database connection from pool.

    Usage:
        async with db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM jobs WHERE id = $1", job_id)

    Args:
        autocommit: If False, the block runs inside one transaction that
            commits on success and rolls back on error.
    """
    pool = get_pool()
    conn = await pool.acquire()

    try:
        if autocommit:
            yield conn
        else:
            async with conn.transaction():
                yield conn
    finally:
        await pool.release(conn)

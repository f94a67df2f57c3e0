# truckdesk/infra/migrations_async.py
"""
Async database migrations runner (asyncpg).
"""
from __future__ import annotations
from pathlib import Path

from truckdesk.infra.db_async import db_conn
from truckdesk.infra.logging_config import get_logger

logger = get_logger(__name__)


def sql_dir() -> Path:
    """SQL migrations live next to this file: truckdesk/infra/sql"""
    return Path(__file__).resolve().parent / "sql"


def migration_files() -> list[Path]:
    return sorted(p for p in sql_dir().glob("*.sql") if p.is_file())


async def apply_migrations() -> dict:
    """
    Apply pending SQL migrations in filename order inside one transaction.

    Applied versions are tracked in ``schema_migrations``.

    Returns:
        {"ok": bool, "applied": [filenames applied now], "count": int}
    """
    files = migration_files()

    async with db_conn(autocommit=False) as conn:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations(
              version text PRIMARY KEY,
              applied_at timestamptz NOT NULL DEFAULT now()
            )
            """
        )

        rows = await conn.fetch("SELECT version FROM schema_migrations")
        applied = {row['version'] for row in rows}

        applied_now = []
        for p in files:
            version = p.name
            if version in applied:
                logger.debug(f"Migration {version} already applied, skipping")
                continue

            logger.info(f"Applying migration: {version}")
            await conn.execute(p.read_text(encoding="utf-8"))
            await conn.execute(
                "INSERT INTO schema_migrations(version) VALUES ($1)",
                version
            )
            applied_now.append(version)

    logger.info(f"Migrations complete: {len(applied_now)} applied")
    return {"ok": True, "applied": applied_now, "count": len(applied_now)}

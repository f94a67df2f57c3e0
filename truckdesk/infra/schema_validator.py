# truckdesk/infra/schema_validator.py
"""
Schema version check at API startup.

The API never runs migrations. It refuses to start when the newest applied
migration is not ``settings.expected_schema_version``.
"""
from __future__ import annotations
from truckdesk.config import settings
from truckdesk.infra.db_async import db_conn
from truckdesk.infra.logging_config import get_logger

logger = get_logger(__name__)

_MIGRATE_HINT = "Run migrations first: python -m truckdesk.infra.migrate"

_TABLE_EXISTS_SQL = """
    SELECT EXISTS (
        SELECT FROM information_schema.tables
        WHERE table_schema = 'public'
        AND table_name = 'schema_migrations'
    )
"""


async def validate_schema_version() -> dict:
    """
    Raises:
        RuntimeError: schema missing, empty or at the wrong version
    """
    async with db_conn() as conn:
        if not await conn.fetchval(_TABLE_EXISTS_SQL):
            error = f"Schema migrations table not found. {_MIGRATE_HINT}"
            logger.critical(error)
            raise RuntimeError(error)

        # Filenames sort in apply order; applied_at ties inside one run
        latest = await conn.fetchrow(
            "SELECT version, applied_at FROM schema_migrations ORDER BY version DESC LIMIT 1"
        )
        if not latest:
            error = f"No migrations have been applied. {_MIGRATE_HINT}"
            logger.critical(error)
            raise RuntimeError(error)

        current_version = latest['version']
        if current_version != settings.expected_schema_version:
            error = (
                f"Schema version mismatch! "
                f"Expected: {settings.expected_schema_version}, "
                f"Found: {current_version}. {_MIGRATE_HINT}"
            )
            logger.critical(error)
            raise RuntimeError(error)

        logger.info(f"Schema version validated: {current_version}")
        return {
            "ok": True,
            "current_version": current_version,
            "expected_version": settings.expected_schema_version,
        }


async def get_schema_info() -> dict:
    """Schema state for the health endpoint."""
    async with db_conn() as conn:
        if not await conn.fetchval(_TABLE_EXISTS_SQL):
            return {"initialized": False, "migrations_applied": 0, "latest_version": None}

        rows = await conn.fetch("SELECT version FROM schema_migrations ORDER BY version")
        latest = rows[-1]['version'] if rows else None
        return {
            "initialized": True,
            "migrations_applied": len(rows),
            "latest_version": latest,
            "expected_version": settings.expected_schema_version,
            "is_compatible": latest == settings.expected_schema_version,
        }

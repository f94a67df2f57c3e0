#!/usr/bin/env python3
# truckdesk/infra/migrate.py
"""
Standalone migration runner.

    python -m truckdesk.infra.migrate

Run it in CI/CD or a one-off container before starting the API. The API
validates the schema version at startup but never migrates by itself.
"""
import asyncio
import sys

from truckdesk.config import settings
from truckdesk.infra.db_async import close_pool, init_pool
from truckdesk.infra.logging_config import get_logger, setup_logging
from truckdesk.infra.migrations_async import apply_migrations

logger = get_logger(__name__)


async def main() -> int:
    setup_logging(level=settings.log_level, use_json=settings.is_production)

    logger.info(f"Migration runner: env={settings.app_env}, db={settings.pghost}:{settings.pgport}/{settings.pgdatabase}")

    try:
        await init_pool()
        result = await apply_migrations()
    except Exception as exc:
        logger.critical(f"MIGRATION FAILED: {exc}", exc_info=True)
        return 1
    finally:
        await close_pool()

    if result["applied"]:
        for migration in result["applied"]:
            logger.info(f"  applied {migration}")
    else:
        logger.info("No new migrations to apply")

    return 0 if result["ok"] else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))

# truckdesk/infra/pg_notification_repo_async.py
"""
In-app notifications, written once per (batch, user) through ``dedupe_key``.
"""
from __future__ import annotations

import json

from truckdesk.core.dispatch.domain import Notification
from truckdesk.infra.db_resilience_async import safe_db_conn


class AsyncPostgresNotificationSink:

    async def create(self, notification: Notification) -> bool:
        """Returns False when a notification with the same dedupe key already exists."""
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO notifications
                    (user_id, job_id, title, message, type, is_read, context, dedupe_key)
                VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8)
                ON CONFLICT (dedupe_key) WHERE dedupe_key IS NOT NULL DO NOTHING
                RETURNING id
                """,
                notification.user_id,
                notification.job_id,
                notification.title,
                notification.message,
                notification.type,
                notification.is_read,
                json.dumps(notification.context) if notification.context is not None else None,
                notification.dedupe_key,
            )
        return row is not None

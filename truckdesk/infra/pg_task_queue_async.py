# truckdesk/infra/pg_task_queue_async.py
"""
Async PostgreSQL task queue (asyncpg).

DB-backed background tasks with claim/complete/fail semantics.
Uses FOR UPDATE SKIP LOCKED for safe concurrent claiming, and a unique
``idempotency_key`` so the same piece of work is never enqueued twice.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from truckdesk.infra.db_resilience_async import safe_db_conn
from truckdesk.infra.logging_config import get_logger
from truckdesk.infra.metrics import inc_counter

logger = get_logger(__name__)


@dataclass
class Task:
    """A background task from the dispatch_tasks table."""

    id: str
    task_type: str
    payload: dict[str, Any]
    status: str
    priority: int
    attempts: int
    max_attempts: int
    error_message: str | None
    scheduled_at: datetime
    created_at: datetime
    idempotency_key: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


def _row_to_task(row) -> Task:
    payload = row["payload"]
    if isinstance(payload, str):
        payload = json.loads(payload)
    return Task(
        id=str(row["id"]),
        task_type=row["task_type"],
        payload=payload,
        status=row["status"],
        priority=row["priority"],
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        error_message=row["error_message"],
        scheduled_at=row["scheduled_at"],
        created_at=row["created_at"],
        idempotency_key=row.get("idempotency_key"),
        started_at=row.get("started_at"),
        completed_at=row.get("completed_at"),
    )


def _affected(status: str | None) -> int:
    """Row count from an asyncpg command tag such as 'DELETE 3'."""
    return int(status.split()[-1]) if status else 0


class AsyncPostgresTaskQueue:
    """DB-backed task queue with claim/complete/fail semantics."""

    async def enqueue(
        self,
        task_type: str,
        payload: dict[str, Any],
        *,
        idempotency_key: str | None = None,
        priority: int = 0,
        max_attempts: int = 5,
        delay_seconds: float = 0,
    ) -> str | None:
        """
        Insert a new pending task.

        Args:
            task_type: Handler name (e.g. 'fan_out_notifications')
            payload: JSON-serializable task data
            idempotency_key: A second enqueue with the same key is ignored
            priority: Lower = higher priority (default 0, use -1 for high priority)
            max_attempts: Max attempts before marking as failed
            delay_seconds: Delay before first execution (0 = immediate)

        Returns:
            Task ID, or None when a task with the same idempotency key exists
        """
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO dispatch_tasks
                    (task_type, payload, idempotency_key, priority, max_attempts, scheduled_at)
                VALUES ($1, $2::jsonb, $3, $4, $5, now() + make_interval(secs => $6))
                ON CONFLICT (idempotency_key) WHERE idempotency_key IS NOT NULL DO NOTHING
                RETURNING id
                """,
                task_type,
                json.dumps(payload, default=str),
                idempotency_key,
                priority,
                max_attempts,
                float(delay_seconds),
            )

        if row is None:
            inc_counter("tasks_enqueue_duplicate", task_type=task_type)
            logger.debug(f"Task already enqueued: type={task_type}, key={idempotency_key}")
            return None

        task_id = str(row["id"])
        inc_counter("tasks_enqueued", task_type=task_type)
        logger.debug(
            f"Task enqueued: id={task_id[:8]}, type={task_type}, priority={priority}",
            extra={"task_id": task_id},
        )
        return task_id

    async def claim_batch(self, batch_size: int = 5) -> list[Task]:
        """
        Atomically claim up to batch_size pending tasks that are due.

        Returns:
            Claimed tasks (status changed to 'running')
        """
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                WITH claimed AS (
                    SELECT id FROM dispatch_tasks
                    WHERE status = 'pending'
                      AND scheduled_at <= now()
                    ORDER BY priority, created_at
                    LIMIT $1
                    FOR UPDATE SKIP LOCKED
                )
                UPDATE dispatch_tasks
                SET status = 'running', started_at = now()
                WHERE id IN (SELECT id FROM claimed)
                RETURNING *
                """,
                batch_size,
            )
            return [_row_to_task(row) for row in rows]

    async def complete(self, task_id: str) -> None:
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                UPDATE dispatch_tasks
                SET status = 'completed', completed_at = now()
                WHERE id = $1
                """,
                task_id,
            )

    async def fail(
        self,
        task_id: str,
        error_message: str,
        *,
        base_delay: float = 5.0,
    ) -> None:
        """
        Record a task failure.

        Reschedules with backoff ``base_delay * 2^attempts`` while attempts
        remain, otherwise marks the task 'failed' for good.
        """
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                UPDATE dispatch_tasks
                SET
                  attempts = attempts + 1,
                  error_message = $2,
                  status = CASE
                    WHEN attempts + 1 < max_attempts THEN 'pending'
                    ELSE 'failed'
                  END,
                  scheduled_at = CASE
                    WHEN attempts + 1 < max_attempts
                      THEN now() + make_interval(secs => $3 * power(2, attempts))
                    ELSE scheduled_at
                  END,
                  completed_at = CASE
                    WHEN attempts + 1 >= max_attempts THEN now()
                    ELSE NULL
                  END
                WHERE id = $1
                """,
                task_id,
                error_message[:2000],
                base_delay,
            )

    async def count_by_status(self) -> dict[str, int]:
        """Return {status: count} for the task status route."""
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                "SELECT status, count(*)::int AS cnt FROM dispatch_tasks GROUP BY status",
            )
            return {row["status"]: row["cnt"] for row in rows}

    async def cleanup(self, status: str, ttl_days: int) -> int:
        """Delete 'completed' or 'failed' tasks older than TTL. Returns count deleted."""
        if status not in ("completed", "failed"):
            raise ValueError(f"Only finished tasks can be cleaned up, got status={status}")

        async with safe_db_conn() as conn:
            result = await conn.execute(
                """
                DELETE FROM dispatch_tasks
                WHERE status = $1
                  AND completed_at < now() - make_interval(days => $2)
                """,
                status,
                ttl_days,
            )
        count = _affected(result)
        if count > 0:
            logger.info(f"Cleaned up {count} {status} tasks older than {ttl_days} days")
        return count

    async def reset_stale_running(self, timeout_seconds: int = 300) -> int:
        """
        Put tasks stuck in 'running' longer than timeout back to 'pending'.

        Covers a worker that crashed between claim and complete/fail.
        """
        async with safe_db_conn() as conn:
            result = await conn.execute(
                """
                UPDATE dispatch_tasks
                SET status = 'pending', scheduled_at = now()
                WHERE status = 'running'
                  AND started_at < now() - make_interval(secs => $1)
                """,
                timeout_seconds,
            )
        count = _affected(result)
        if count > 0:
            logger.warning(f"Reset {count} stale running tasks (stuck > {timeout_seconds}s)")
            inc_counter("tasks_stale_reset")
        return count


# Global singleton
_task_queue: AsyncPostgresTaskQueue | None = None


def get_task_queue() -> AsyncPostgresTaskQueue:
    global _task_queue
    if _task_queue is None:
        _task_queue = AsyncPostgresTaskQueue()
    return _task_queue

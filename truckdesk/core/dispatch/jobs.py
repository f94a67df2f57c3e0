# truckdesk/core/dispatch/jobs.py
"""
Dispatch task handlers, executed by the task worker.
"""
from __future__ import annotations

from typing import Awaitable, Callable

from truckdesk.core.dispatch.notifications import NotificationBatch, deliver_batch
from truckdesk.core.dispatch.ports import AsyncNotificationSink, AsyncUserDirectory
from truckdesk.infra.pg_task_queue_async import Task


def make_fan_out_handler(
    users: AsyncUserDirectory,
    sink: AsyncNotificationSink,
) -> Callable[[Task], Awaitable[None]]:
    """
    Build the ``fan_out_notifications`` handler.

    Raising makes the worker reschedule the task; users already notified
    are skipped on retry through their dedupe keys.
    """

    async def handle_fan_out_notifications(task: Task) -> None:
        batch = NotificationBatch.from_payload(task.payload)
        report = await deliver_batch(batch, users, sink)
        if report.failed:
            raise RuntimeError(
                f"Notification fan-out incomplete for job {batch.job_id}: "
                f"{report.failed}/{report.recipients} recipients failed"
            )

    return handle_fan_out_notifications

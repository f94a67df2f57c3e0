# truckdesk/core/dispatch/notifications.py
"""
Notification fan-out for dispatch events.

A state change produces one or more ``NotificationBatch`` objects: a title,
message and audience ("dispatchers" or the users linked to a customer).
Publishing a batch is decoupled from the job mutation that produced it:

- ``DirectNotificationPublisher`` resolves recipients and writes the
  notifications in-process, right away.
- ``QueuedNotificationPublisher`` enqueues a durable
  ``fan_out_notifications`` task; the task worker delivers it and retries
  on failure.

Both are best-effort towards the caller: ``publish`` never raises. Every
notification carries ``dedupe_key = <batch key>:<user id>`` so re-delivery
of a batch (task retry, repeated request) never notifies a user twice.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from truckdesk.core.dispatch.domain import (
    Actor,
    DirectoryUser,
    DriverStatus,
    Job,
    Notification,
)
from truckdesk.core.dispatch.ports import AsyncNotificationSink, AsyncUserDirectory
from truckdesk.infra.logging_config import get_logger
from truckdesk.infra.metrics import AppMetrics

logger = get_logger(__name__)

AUDIENCE_DISPATCHERS = "dispatchers"
AUDIENCE_CUSTOMER = "customer"

TYPE_JOB_STATUS_UPDATE = "job_status_update"
TASK_FAN_OUT_NOTIFICATIONS = "fan_out_notifications"

DRIVER_STATUS_PHRASES: dict[str, str] = {
    DriverStatus.EN_ROUTE.value: "is en route to",
    DriverStatus.ARRIVED.value: "has arrived at",
    DriverStatus.UNLOADING.value: "is unloading at",
    DriverStatus.COMPLETED.value: "has completed delivery at",
    DriverStatus.PROBLEM.value: "has reported a problem at",
}
GENERIC_STATUS_PHRASE = "updated status for"


@dataclass(frozen=True)
class NotificationBatch:
    audience: str
    title: str
    message: str
    idempotency_key: str
    type: str = TYPE_JOB_STATUS_UPDATE
    job_id: Optional[str] = None
    customer_id: Optional[str] = None
    context: Optional[dict[str, Any]] = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "audience": self.audience,
            "title": self.title,
            "message": self.message,
            "idempotency_key": self.idempotency_key,
            "type": self.type,
            "job_id": self.job_id,
            "customer_id": self.customer_id,
            "context": self.context,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "NotificationBatch":
        return cls(
            audience=payload["audience"],
            title=payload["title"],
            message=payload["message"],
            idempotency_key=payload["idempotency_key"],
            type=payload.get("type", TYPE_JOB_STATUS_UPDATE),
            job_id=payload.get("job_id"),
            customer_id=payload.get("customer_id"),
            context=payload.get("context"),
        )


# ---------------------------------------------------------------------------
# Batch builders
# ---------------------------------------------------------------------------

def driver_status_phrase(driver_status: str) -> str:
    return DRIVER_STATUS_PHRASES.get(driver_status, GENERIC_STATUS_PHRASE)


def _status_context(job: Job, old_status: str, new_status: str) -> dict[str, Any]:
    return {
        "oldStatus": old_status,
        "newStatus": new_status,
        "customerName": job.customer_name,
        "deliveryLocation": job.delivery_location,
    }


def driver_status_batch(job: Job, old_status: DriverStatus, new_status: DriverStatus, actor: Actor) -> NotificationBatch:
    return NotificationBatch(
        audience=AUDIENCE_DISPATCHERS,
        title="Job Status Update",
        message=f"{actor.name} {driver_status_phrase(new_status.value)} {job.customer_name}",
        idempotency_key=f"{job.id}:driver_status:{new_status.value}:v{job.version}",
        job_id=job.id,
        context=_status_context(job, old_status.value, new_status.value),
    )


def pod_submitted_batch(job: Job, old_status: DriverStatus, actor: Actor, submission_id: str) -> NotificationBatch:
    return NotificationBatch(
        audience=AUDIENCE_DISPATCHERS,
        title="POD Submitted",
        message=f"{actor.name} submitted proof of delivery for {job.customer_name}",
        idempotency_key=f"{job.id}:pod:{submission_id}",
        job_id=job.id,
        context=_status_context(job, old_status.value, DriverStatus.COMPLETED.value),
    )


def delivery_completed_batch(job: Job) -> NotificationBatch:
    # Keyed per job: a customer hears about completion once, however many PODs arrive.
    return NotificationBatch(
        audience=AUDIENCE_CUSTOMER,
        title="Delivery Completed",
        message=f"Your delivery to {job.delivery_location} has been completed",
        idempotency_key=f"{job.id}:delivery_completed",
        job_id=job.id,
        customer_id=job.customer_id,
    )


def delivery_returned_batches(job: Job, actor: Actor) -> list[NotificationBatch]:
    reason = job.return_reason or "Not specified"
    return [
        NotificationBatch(
            audience=AUDIENCE_DISPATCHERS,
            title="Job Returned",
            message=f"{actor.name} returned the delivery for {job.customer_name}: {reason}",
            idempotency_key=f"{job.id}:returned:dispatchers",
            job_id=job.id,
            context={"returnReason": reason, "deliveryLocation": job.delivery_location},
        ),
        NotificationBatch(
            audience=AUDIENCE_CUSTOMER,
            title="Delivery Returned",
            message=(
                f"Your delivery to {job.delivery_location} could not be completed "
                f"and has been returned to the supplier"
            ),
            idempotency_key=f"{job.id}:returned:customer",
            job_id=job.id,
            customer_id=job.customer_id,
            context={"returnReason": reason},
        ),
    ]


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------

def select_recipients(batch: NotificationBatch, users: list[DirectoryUser]) -> list[DirectoryUser]:
    if batch.audience == AUDIENCE_DISPATCHERS:
        return [u for u in users if u.is_dispatcher]
    if batch.audience == AUDIENCE_CUSTOMER:
        if not batch.customer_id:
            return []
        return [u for u in users if u.is_linked_to_customer(batch.customer_id)]
    logger.warning(f"Unknown notification audience: {batch.audience}")
    return []


@dataclass
class DeliveryReport:
    recipients: int = 0
    sent: int = 0
    duplicates: int = 0
    failed_user_ids: list[str] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.failed_user_ids)


async def deliver_batch(
    batch: NotificationBatch,
    users: AsyncUserDirectory,
    sink: AsyncNotificationSink,
) -> DeliveryReport:
    """
    Write one notification per recipient, in parallel.

    A failure for one recipient is logged and reported, never raised.
    """
    recipients = select_recipients(batch, await users.list_users())
    report = DeliveryReport(recipients=len(recipients))

    async def _one(user: DirectoryUser) -> bool:
        return await sink.create(
            Notification(
                user_id=user.id,
                job_id=batch.job_id,
                title=batch.title,
                message=batch.message,
                type=batch.type,
                is_read=False,
                context=batch.context,
                dedupe_key=f"{batch.idempotency_key}:{user.id}",
            )
        )

    results = await asyncio.gather(*(_one(u) for u in recipients), return_exceptions=True)

    for user, result in zip(recipients, results):
        if isinstance(result, BaseException):
            report.failed_user_ids.append(user.id)
            AppMetrics.notification_failed(batch.type)
            logger.error(
                f"Notification to user {user.id} failed: {result.__class__.__name__}: {result}",
                extra={"job_id": batch.job_id},
            )
        elif result:
            report.sent += 1
            AppMetrics.notification_sent(batch.type)
        else:
            report.duplicates += 1

    logger.info(
        f"Notification batch '{batch.title}' ({batch.audience}): "
        f"recipients={report.recipients} sent={report.sent} "
        f"duplicates={report.duplicates} failed={report.failed}",
        extra={"job_id": batch.job_id},
    )
    return report


class NotificationPublisher(Protocol):
    async def publish(self, batch: NotificationBatch) -> bool: ...


class DirectNotificationPublisher:
    """Deliver batches in-process, immediately after the job write."""

    def __init__(self, users: AsyncUserDirectory, sink: AsyncNotificationSink) -> None:
        self._users = users
        self._sink = sink

    async def publish(self, batch: NotificationBatch) -> bool:
        try:
            report = await deliver_batch(batch, self._users, self._sink)
        except Exception:
            logger.error(
                f"Notification batch '{batch.title}' could not be delivered",
                extra={"job_id": batch.job_id},
                exc_info=True,
            )
            AppMetrics.notification_failed(batch.type)
            return False
        return report.failed == 0


class TaskQueue(Protocol):
    async def enqueue(
        self,
        task_type: str,
        payload: dict[str, Any],
        *,
        idempotency_key: str | None = None,
        priority: int = 0,
        max_attempts: int = 5,
        delay_seconds: float = 0,
    ) -> str | None: ...


class QueuedNotificationPublisher:
    """Enqueue batches as durable fan-out tasks for the task worker."""

    def __init__(self, queue: TaskQueue, *, max_attempts: int = 5) -> None:
        self._queue = queue
        self._max_attempts = max_attempts

    async def publish(self, batch: NotificationBatch) -> bool:
        try:
            task_id = await self._queue.enqueue(
                TASK_FAN_OUT_NOTIFICATIONS,
                batch.to_payload(),
                idempotency_key=batch.idempotency_key,
                priority=-1 if batch.audience == AUDIENCE_DISPATCHERS else 0,
                max_attempts=self._max_attempts,
            )
        except Exception:
            logger.error(
                f"Failed to enqueue notification batch '{batch.title}'",
                extra={"job_id": batch.job_id},
                exc_info=True,
            )
            AppMetrics.notification_failed(batch.type)
            return False

        if task_id is None:
            logger.debug(
                f"Notification batch already queued: {batch.idempotency_key}",
                extra={"job_id": batch.job_id},
            )
        return True

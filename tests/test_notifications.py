# tests/test_notifications.py
"""Tests for notification batches, recipient selection and fan-out delivery."""
from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from truckdesk.core.dispatch.domain import Actor, DirectoryUser, DriverStatus, Job, JobStatus
from truckdesk.core.dispatch.jobs import make_fan_out_handler
from truckdesk.core.dispatch.notifications import (
    AUDIENCE_CUSTOMER,
    AUDIENCE_DISPATCHERS,
    TASK_FAN_OUT_NOTIFICATIONS,
    DirectNotificationPublisher,
    NotificationBatch,
    QueuedNotificationPublisher,
    deliver_batch,
    delivery_completed_batch,
    delivery_returned_batches,
    driver_status_batch,
    select_recipients,
)
from truckdesk.infra.memory_store import MemoryDirectory, MemoryNotificationSink
from truckdesk.infra.pg_task_queue_async import Task

DRIVER = Actor(id="driver-1", name="Sam Driver")


def _job(**overrides) -> Job:
    fields = dict(
        id="job-1",
        customer_id="cust-1",
        job_reference_number="241001",
        customer_name="Acme Builders",
        delivery_location="12 Quarry Rd",
        status=JobStatus.IN_TRANSIT,
        version=4,
    )
    fields.update(overrides)
    return Job(**fields)


def _dispatcher_batch(key: str = "job-1:test") -> NotificationBatch:
    return NotificationBatch(
        audience=AUDIENCE_DISPATCHERS,
        title="Job Status Update",
        message="Sam Driver has arrived at Acme Builders",
        idempotency_key=key,
        job_id="job-1",
    )


def _task(payload: dict) -> Task:
    now = datetime.now(timezone.utc)
    return Task(
        id="task-1",
        task_type=TASK_FAN_OUT_NOTIFICATIONS,
        payload=payload,
        status="running",
        priority=0,
        attempts=0,
        max_attempts=5,
        error_message=None,
        scheduled_at=now,
        created_at=now,
    )


# ============================================================================
# Batch builders
# ============================================================================

class TestBatchBuilders:
    def test_driver_status_message(self):
        batch = driver_status_batch(_job(), DriverStatus.EN_ROUTE, DriverStatus.ARRIVED, DRIVER)

        assert batch.audience == AUDIENCE_DISPATCHERS
        assert batch.title == "Job Status Update"
        assert batch.message == "Sam Driver has arrived at Acme Builders"
        assert batch.idempotency_key == "job-1:driver_status:ARRIVED:v4"
        assert batch.context["oldStatus"] == "EN_ROUTE"

    def test_driver_status_generic_phrase(self):
        batch = driver_status_batch(_job(), DriverStatus.NOT_STARTED, DriverStatus.NOT_STARTED, DRIVER)
        assert batch.message == "Sam Driver updated status for Acme Builders"

    def test_delivery_completed_targets_customer(self):
        batch = delivery_completed_batch(_job())

        assert batch.audience == AUDIENCE_CUSTOMER
        assert batch.customer_id == "cust-1"
        assert batch.message == "Your delivery to 12 Quarry Rd has been completed"

    def test_returned_batches(self):
        dispatchers, customer = delivery_returned_batches(_job(return_reason=None), DRIVER)

        assert dispatchers.title == "Job Returned"
        assert dispatchers.context["returnReason"] == "Not specified"
        assert customer.title == "Delivery Returned"
        assert customer.idempotency_key != dispatchers.idempotency_key

    def test_payload_round_trip(self):
        batch = delivery_completed_batch(_job())
        assert NotificationBatch.from_payload(batch.to_payload()) == batch


# ============================================================================
# Recipients and delivery
# ============================================================================

class TestSelectRecipients:
    def test_dispatchers(self, store):
        users = list(store.users.values())
        ids = {u.id for u in select_recipients(_dispatcher_batch(), users)}
        assert ids == {"disp-1", "admin-1"}

    def test_tenant_admin_is_dispatcher(self):
        users = [DirectoryUser(id="ta", app_role="tenantAdmin"), DirectoryUser(id="u")]
        assert [u.id for u in select_recipients(_dispatcher_batch(), users)] == ["ta"]

    def test_customer_linked_users(self, store):
        users = list(store.users.values())
        ids = {u.id for u in select_recipients(delivery_completed_batch(_job()), users)}
        assert ids == {"cust-user-1", "cust-user-2"}

    def test_customer_batch_without_customer(self, store):
        batch = NotificationBatch(audience=AUDIENCE_CUSTOMER, title="t", message="m", idempotency_key="k")
        assert select_recipients(batch, list(store.users.values())) == []


class TestDeliverBatch:
    @pytest.mark.asyncio
    async def test_one_notification_per_recipient(self, store):
        report = await deliver_batch(_dispatcher_batch("k1"), MemoryDirectory(store), MemoryNotificationSink(store))

        assert (report.recipients, report.sent, report.duplicates, report.failed) == (2, 2, 0, 0)
        keys = sorted(n.dedupe_key for n in store.notifications)
        assert keys == ["k1:admin-1", "k1:disp-1"]
        assert all(n.is_read is False for n in store.notifications)

    @pytest.mark.asyncio
    async def test_redelivery_is_deduplicated(self, store):
        directory, sink = MemoryDirectory(store), MemoryNotificationSink(store)
        await deliver_batch(_dispatcher_batch("k1"), directory, sink)

        report = await deliver_batch(_dispatcher_batch("k1"), directory, sink)

        assert report.sent == 0
        assert report.duplicates == 2
        assert len(store.notifications) == 2
        assert store.dedupe_keys == {"k1:admin-1", "k1:disp-1"}

    @pytest.mark.asyncio
    async def test_one_failing_recipient_does_not_stop_others(self, store):
        real_sink = MemoryNotificationSink(store)

        async def flaky_create(notification):
            if notification.user_id == "admin-1":
                raise ConnectionError("connection reset")
            return await real_sink.create(notification)

        sink = AsyncMock()
        sink.create = AsyncMock(side_effect=flaky_create)

        report = await deliver_batch(_dispatcher_batch(), MemoryDirectory(store), sink)

        assert report.sent == 1
        assert report.failed_user_ids == ["admin-1"]
        assert [n.user_id for n in store.notifications] == ["disp-1"]


# ============================================================================
# Publishers
# ============================================================================

class TestDirectPublisher:
    @pytest.mark.asyncio
    async def test_publish_delivers(self, store):
        publisher = DirectNotificationPublisher(MemoryDirectory(store), MemoryNotificationSink(store))

        assert await publisher.publish(_dispatcher_batch()) is True
        assert len(store.notifications) == 2

    @pytest.mark.asyncio
    async def test_directory_failure_is_swallowed(self, store):
        users = AsyncMock()
        users.list_users = AsyncMock(side_effect=ConnectionError("db down"))
        publisher = DirectNotificationPublisher(users, MemoryNotificationSink(store))

        assert await publisher.publish(_dispatcher_batch()) is False


class TestQueuedPublisher:
    @pytest.mark.asyncio
    async def test_enqueues_fan_out_task(self):
        queue = AsyncMock()
        queue.enqueue = AsyncMock(return_value="task-1")
        publisher = QueuedNotificationPublisher(queue, max_attempts=7)
        batch = _dispatcher_batch("job-1:pod:s1")

        assert await publisher.publish(batch) is True

        queue.enqueue.assert_awaited_once_with(
            TASK_FAN_OUT_NOTIFICATIONS,
            batch.to_payload(),
            idempotency_key="job-1:pod:s1",
            priority=-1,
            max_attempts=7,
        )

    @pytest.mark.asyncio
    async def test_customer_batches_normal_priority(self):
        queue = AsyncMock()
        queue.enqueue = AsyncMock(return_value="task-2")

        await QueuedNotificationPublisher(queue).publish(delivery_completed_batch(_job()))

        assert queue.enqueue.call_args.kwargs["priority"] == 0

    @pytest.mark.asyncio
    async def test_already_queued_counts_as_published(self):
        queue = AsyncMock()
        queue.enqueue = AsyncMock(return_value=None)
        assert await QueuedNotificationPublisher(queue).publish(_dispatcher_batch()) is True

    @pytest.mark.asyncio
    async def test_enqueue_failure_is_swallowed(self):
        queue = AsyncMock()
        queue.enqueue = AsyncMock(side_effect=ConnectionError("pool exhausted"))
        assert await QueuedNotificationPublisher(queue).publish(_dispatcher_batch()) is False


class TestFanOutHandler:
    @pytest.mark.asyncio
    async def test_delivers_batch_from_task_payload(self, store):
        handler = make_fan_out_handler(MemoryDirectory(store), MemoryNotificationSink(store))

        await handler(_task(_dispatcher_batch("k9").to_payload()))

        assert sorted(n.user_id for n in store.notifications) == ["admin-1", "disp-1"]

    @pytest.mark.asyncio
    async def test_partial_failure_raises_for_retry(self, store):
        sink = AsyncMock()
        sink.create = AsyncMock(side_effect=ConnectionError("connection reset"))
        handler = make_fan_out_handler(MemoryDirectory(store), sink)

        with pytest.raises(RuntimeError, match="2/2 recipients failed"):
            await handler(_task(_dispatcher_batch().to_payload()))

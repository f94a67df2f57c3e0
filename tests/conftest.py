# tests/conftest.py
"""Pytest configuration and fixtures"""
from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

from truckdesk.core.dispatch.assignments import AssignmentService
from truckdesk.core.dispatch.capacity import CapacityPlanner
from truckdesk.core.dispatch.domain import (
    Actor,
    Customer,
    DirectoryUser,
    Job,
    JobStatus,
    NewJob,
    Truck,
)
from truckdesk.core.dispatch.notifications import DirectNotificationPublisher
from truckdesk.core.dispatch.reference import ReferenceAllocator
from truckdesk.core.dispatch.state_machine import DispatchStateMachine
from truckdesk.infra.memory_store import (
    MemoryAssignmentStore,
    MemoryCounterStore,
    MemoryDirectory,
    MemoryJobRepository,
    MemoryNotificationSink,
    MemoryStore,
)
from truckdesk.infra.metrics import get_metrics_collector

FIXED_NOW = datetime(2024, 5, 14, 9, 30, tzinfo=timezone.utc)
TODAY = date(2024, 5, 14)

DISPATCHER = Actor(id="disp-1", name="Dana Dispatcher")
DRIVER = Actor(id="driver-1", name="Sam Driver")


class FakeClock:
    """Callable clock that tests can move forward."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


class DispatchHarness:
    """Dispatch core wired on the memory backend with a controllable clock."""

    def __init__(self, store: MemoryStore, *, jobs=None, publisher=None, max_update_attempts: int = 3):
        self.store = store
        self.clock = FakeClock()
        directory = MemoryDirectory(store)
        self.directory = directory
        self.sink = MemoryNotificationSink(store)
        self.jobs = jobs or MemoryJobRepository(store)
        self.allocator = ReferenceAllocator(directory, MemoryCounterStore(store), clock=self.clock)
        self.planner = CapacityPlanner()
        self.assignments = AssignmentService(
            MemoryAssignmentStore(store), self.jobs, directory, self.planner, clock=self.clock
        )
        self.publisher = publisher or DirectNotificationPublisher(directory, self.sink)
        self.machine = DispatchStateMachine(
            self.jobs,
            self.allocator,
            self.assignments,
            self.publisher,
            max_update_attempts=max_update_attempts,
            clock=self.clock,
        )

    async def new_job(self, customer_id: str = "cust-1", weight_kg: float | None = 1000.0, **fields) -> Job:
        fields.setdefault("customer_name", "Acme Builders")
        fields.setdefault("delivery_location", "12 Quarry Rd")
        return await self.machine.create_job(
            NewJob(customer_id=customer_id, weight_kg=weight_kg, **fields), DISPATCHER
        )

    async def job_in(
        self,
        status: JobStatus,
        *,
        weight_kg: float | None = 1000.0,
        truck_id: str = "truck-1",
        on_date: date = TODAY,
        slot: str = "first-am",
    ) -> Job:
        """Create a job and walk it through the lifecycle up to ``status``."""
        job = await self.new_job(weight_kg=weight_kg)
        if status == JobStatus.PENDING_APPROVAL:
            return job
        if status == JobStatus.CANCELLED:
            return await self.machine.set_status(job.id, JobStatus.CANCELLED, DISPATCHER)

        job = await self.machine.approve_job(job.id, DISPATCHER)
        if status == JobStatus.APPROVED:
            return job

        job = (await self.machine.schedule_job(job.id, truck_id, on_date, slot, DISPATCHER)).job
        if status == JobStatus.SCHEDULED:
            return job

        job = await self.machine.set_status(job.id, JobStatus.IN_TRANSIT, DISPATCHER)
        if status == JobStatus.IN_TRANSIT:
            return job
        if status == JobStatus.RETURNED:
            return await self.machine.confirm_return(job.id, "Site closed", None, DRIVER)
        return await self.machine.set_status(job.id, status, DISPATCHER)


@pytest.fixture(autouse=True)
def reset_metrics():
    get_metrics_collector().reset()
    yield


@pytest.fixture
def store() -> MemoryStore:
    """Memory store seeded with customers, trucks and users."""
    s = MemoryStore()
    s.add_customer(Customer(id="cust-1", customer_name="Acme Builders", customer_docket_id=1))
    s.add_customer(Customer(id="cust-2", customer_name="Other Co", customer_docket_id=1))
    s.add_customer(Customer(id="cust-nodocket", customer_name="New Co", customer_docket_id=None))
    s.add_truck(Truck(id="truck-1", name="Truck 1", capacity=10))
    s.add_truck(Truck(id="truck-2", name="Truck 2", capacity=8))
    s.add_truck(Truck(id="truck-zero", name="Ute", capacity=0))
    s.add_user(DirectoryUser(id="disp-1", full_name="Dana Dispatcher", app_role="dispatcher"))
    s.add_user(DirectoryUser(id="admin-1", full_name="Alex Admin", role="admin"))
    s.add_user(DirectoryUser(id="driver-1", full_name="Sam Driver", app_role="driver"))
    s.add_user(DirectoryUser(id="cust-user-1", full_name="Casey", app_role="customer", customer_id="cust-1"))
    s.add_user(
        DirectoryUser(
            id="cust-user-2",
            full_name="Jordan",
            app_role="customer",
            customer_id="cust-2",
            additional_customer_ids=("cust-1",),
        )
    )
    s.add_user(DirectoryUser(id="cust-user-3", full_name="Robin", app_role="customer", customer_id="cust-2"))
    return s


@pytest.fixture
def harness(store) -> DispatchHarness:
    return DispatchHarness(store)

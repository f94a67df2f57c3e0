from __future__ import annotations

from datetime import date
from typing import Optional, Protocol, Sequence

from truckdesk.core.dispatch.domain import (
    Assignment,
    Customer,
    CustomerJobCounter,
    DirectoryUser,
    Job,
    Notification,
    Truck,
)


# ============================================================================
# COLLABORATOR DIRECTORIES (read-only)
# ============================================================================

class AsyncCustomerDirectory(Protocol):
    async def get_customer(self, customer_id: str) -> Optional[Customer]: ...


class AsyncTruckDirectory(Protocol):
    async def get_truck(self, truck_id: str) -> Optional[Truck]: ...


class AsyncUserDirectory(Protocol):
    async def list_users(self) -> list[DirectoryUser]: ...


# ============================================================================
# DISPATCH-OWNED STORES
# ============================================================================

class AsyncCounterStore(Protocol):
    async def increment(self, customer_id: str, customer_docket_id: int) -> CustomerJobCounter:
        """
        Atomically advance the customer's counter by one (mod 1000),
        creating it at 1 when it does not exist yet.

        Two concurrent calls for the same customer never observe the same
        resulting ``last_sequence``.
        """
        ...


class AsyncJobRepository(Protocol):
    async def get(self, job_id: str) -> Optional[Job]: ...

    async def get_many(self, job_ids: Sequence[str]) -> dict[str, Job]: ...

    async def create(self, job: Job) -> Job: ...

    async def update(self, job: Job, expected_version: int) -> Job:
        """
        Persist ``job`` only if the stored version still equals
        ``expected_version``; the returned job carries the new version.

        Raises ``StaleJobVersion`` when another writer got there first.
        """
        ...


class AsyncAssignmentStore(Protocol):
    async def get(self, job_id: str) -> Optional[Assignment]: ...

    async def upsert(self, assignment: Assignment) -> tuple[Assignment, bool]:
        """Insert or update in place. Returns (assignment, created)."""
        ...

    async def delete(self, job_id: str) -> bool: ...

    async def list_for_bucket(self, truck_id: str, on_date: date, time_slot_id: str) -> list[Assignment]: ...

    async def list_for_truck(
        self, truck_id: str, date_from: date, date_to: Optional[date] = None
    ) -> list[Assignment]: ...


class AsyncNotificationSink(Protocol):
    async def create(self, notification: Notification) -> bool:
        """Write one notification. Returns False when ``dedupe_key`` was already written."""
        ...


class StaleJobVersion(Exception):
    """Raised by job repositories when a compare-and-swap update loses the race."""

    def __init__(self, job_id: str, expected_version: int):
        self.job_id = job_id
        self.expected_version = expected_version
        super().__init__(f"Job {job_id} is no longer at version {expected_version}")

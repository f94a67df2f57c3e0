# truckdesk/infra/memory_store.py
"""
In-memory implementations of every dispatch port.

Used by the ``memory`` storage backend (local development) and by tests.
State lives in one ``MemoryStore`` so the adapters see each other's writes.
"""
from __future__ import annotations

import asyncio
import copy
from collections import defaultdict
from dataclasses import replace
from datetime import date
from typing import Optional, Sequence

from truckdesk.core.dispatch.domain import (
    Assignment,
    Customer,
    CustomerJobCounter,
    DirectoryUser,
    Job,
    Notification,
    Truck,
    utc_now,
)
from truckdesk.core.dispatch.ports import StaleJobVersion
from truckdesk.core.dispatch.reference import next_sequence


class MemoryStore:
    """Shared state plus sync seeding helpers."""

    def __init__(self) -> None:
        self.customers: dict[str, Customer] = {}
        self.trucks: dict[str, Truck] = {}
        self.users: dict[str, DirectoryUser] = {}
        self.counters: dict[str, CustomerJobCounter] = {}
        self.jobs: dict[str, Job] = {}
        self.assignments: dict[str, Assignment] = {}
        self.notifications: list[Notification] = []
        self.dedupe_keys: set[str] = set()
        self._counter_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def add_customer(self, customer: Customer) -> Customer:
        self.customers[customer.id] = customer
        return customer

    def add_truck(self, truck: Truck) -> Truck:
        self.trucks[truck.id] = truck
        return truck

    def add_user(self, user: DirectoryUser) -> DirectoryUser:
        self.users[user.id] = user
        return user

    def counter_lock(self, customer_id: str) -> asyncio.Lock:
        """The lock serializing counter increments for one customer."""
        return self._counter_locks[customer_id]

    def notifications_for(self, user_id: str) -> list[Notification]:
        return [n for n in self.notifications if n.user_id == user_id]


class MemoryDirectory:
    def __init__(self, store: MemoryStore) -> None:
        self._store = store

    async def get_customer(self, customer_id: str) -> Optional[Customer]:
        return self._store.customers.get(customer_id)

    async def get_truck(self, truck_id: str) -> Optional[Truck]:
        return self._store.trucks.get(truck_id)

    async def list_users(self) -> list[DirectoryUser]:
        return list(self._store.users.values())


class MemoryCounterStore:
    """Single writer per customer through a per-key asyncio.Lock."""

    def __init__(self, store: MemoryStore) -> None:
        self._store = store

    async def increment(self, customer_id: str, customer_docket_id: int) -> CustomerJobCounter:
        async with self._store.counter_lock(customer_id):
            current = self._store.counters.get(customer_id)
            last = current.last_sequence if current else 0
            await asyncio.sleep(0)  # other writers queue on the lock here
            counter = CustomerJobCounter(
                customer_id=customer_id,
                customer_docket_id=customer_docket_id,
                last_sequence=next_sequence(last),
            )
            self._store.counters[customer_id] = counter
            return replace(counter)


class MemoryJobRepository:
    """Hands out deep copies so callers never mutate stored state."""

    def __init__(self, store: MemoryStore) -> None:
        self._store = store

    async def get(self, job_id: str) -> Optional[Job]:
        job = self._store.jobs.get(job_id)
        return copy.deepcopy(job) if job else None

    async def get_many(self, job_ids: Sequence[str]) -> dict[str, Job]:
        return {
            job_id: copy.deepcopy(self._store.jobs[job_id])
            for job_id in job_ids
            if job_id in self._store.jobs
        }

    async def create(self, job: Job) -> Job:
        stored = copy.deepcopy(job)
        stored.version = 0
        stored.created_at = stored.created_at or utc_now()
        stored.updated_at = stored.updated_at or stored.created_at
        self._store.jobs[job.id] = stored
        return copy.deepcopy(stored)

    async def update(self, job: Job, expected_version: int) -> Job:
        current = self._store.jobs.get(job.id)
        if current is None or current.version != expected_version:
            raise StaleJobVersion(job.id, expected_version)
        stored = copy.deepcopy(job)
        stored.version = expected_version + 1
        self._store.jobs[job.id] = stored
        return copy.deepcopy(stored)


class MemoryAssignmentStore:
    def __init__(self, store: MemoryStore) -> None:
        self._store = store

    async def get(self, job_id: str) -> Optional[Assignment]:
        found = self._store.assignments.get(job_id)
        return replace(found) if found else None

    async def upsert(self, assignment: Assignment) -> tuple[Assignment, bool]:
        now = utc_now()
        existing = self._store.assignments.get(assignment.job_id)
        stored = replace(
            assignment,
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        self._store.assignments[assignment.job_id] = stored
        return replace(stored), existing is None

    async def delete(self, job_id: str) -> bool:
        return self._store.assignments.pop(job_id, None) is not None

    async def list_for_bucket(self, truck_id: str, on_date: date, time_slot_id: str) -> list[Assignment]:
        return [
            replace(a) for a in self._store.assignments.values()
            if a.truck_id == truck_id and a.date == on_date and a.time_slot_id == time_slot_id
        ]

    async def list_for_truck(
        self, truck_id: str, date_from: date, date_to: Optional[date] = None
    ) -> list[Assignment]:
        return [
            replace(a) for a in self._store.assignments.values()
            if a.truck_id == truck_id
            and a.date >= date_from
            and (date_to is None or a.date <= date_to)
        ]


class MemoryNotificationSink:
    def __init__(self, store: MemoryStore) -> None:
        self._store = store

    async def create(self, notification: Notification) -> bool:
        key = notification.dedupe_key
        if key is not None:
            if key in self._store.dedupe_keys:
                return False
            self._store.dedupe_keys.add(key)
        stored = replace(
            notification,
            id=notification.id or f"ntf-{len(self._store.notifications) + 1}",
            created_at=notification.created_at or utc_now(),
        )
        self._store.notifications.append(stored)
        return True

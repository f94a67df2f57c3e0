# truckdesk/core/dispatch/assignments.py
"""
Assignment service: the truck ↔ job ↔ date ↔ slot mapping.

One active assignment per job; re-assigning updates it in place. Every
assignment returns the capacity report of its bucket so the scheduling
board can surface overbooking.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from truckdesk.core.dispatch.capacity import CapacityPlanner, CapacityReport, sort_run_list
from truckdesk.core.dispatch.domain import Assignment, Job, utc_now
from truckdesk.core.dispatch.errors import JobNotFound, TruckNotFound
from truckdesk.core.dispatch.ports import AsyncAssignmentStore, AsyncJobRepository, AsyncTruckDirectory
from truckdesk.infra.logging_config import get_logger
from truckdesk.infra.metrics import AppMetrics

logger = get_logger(__name__)


@dataclass(frozen=True)
class AssignmentResult:
    assignment: Assignment
    capacity: CapacityReport
    created: bool


@dataclass(frozen=True)
class RunListEntry:
    job: Job
    assignment: Assignment


class AssignmentService:
    def __init__(
        self,
        store: AsyncAssignmentStore,
        jobs: AsyncJobRepository,
        trucks: AsyncTruckDirectory,
        planner: CapacityPlanner,
        *,
        timezone: str = "UTC",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._jobs = jobs
        self._trucks = trucks
        self._planner = planner
        self._tz = ZoneInfo(timezone)
        self._clock = clock

    def today(self) -> date:
        """Current date in the dispatch timezone."""
        return self._clock().astimezone(self._tz).date()

    async def get_assignment(self, job_id: str) -> Optional[Assignment]:
        return await self._store.get(job_id)

    async def assign(
        self,
        job_id: str,
        truck_id: str,
        on_date: date,
        time_slot_id: str,
        slot_position: int = 1,
    ) -> AssignmentResult:
        """
        Place ``job_id`` in the (truck, date, slot) bucket.

        Raises:
            JobNotFound, TruckNotFound
        """
        if await self._jobs.get(job_id) is None:
            raise JobNotFound(job_id)
        truck = await self._trucks.get_truck(truck_id)
        if truck is None:
            raise TruckNotFound(truck_id)

        assignment, created = await self._store.upsert(
            Assignment(
                job_id=job_id,
                truck_id=truck_id,
                date=on_date,
                time_slot_id=time_slot_id,
                slot_position=max(int(slot_position or 1), 1),
            )
        )
        report = await self._report(truck, on_date, time_slot_id)

        logger.info(
            f"Job {'assigned' if created else 'reassigned'}: {on_date.isoformat()} {time_slot_id} "
            f"utilization={report.utilization:.2f} level={report.level}",
            extra={"job_id": job_id, "truck_id": truck_id},
        )
        if report.level != "ok":
            logger.warning(
                f"Capacity warning on {truck_id} {on_date.isoformat()} {time_slot_id}: "
                f"{'; '.join(report.warnings)}",
                extra={"job_id": job_id, "truck_id": truck_id},
            )
        return AssignmentResult(assignment=assignment, capacity=report, created=created)

    async def unassign(self, job_id: str) -> bool:
        removed = await self._store.delete(job_id)
        if removed:
            logger.info("Assignment removed", extra={"job_id": job_id})
        return removed

    async def capacity_for(self, truck_id: str, on_date: date, time_slot_id: str) -> CapacityReport:
        truck = await self._trucks.get_truck(truck_id)
        if truck is None:
            raise TruckNotFound(truck_id)
        return await self._report(truck, on_date, time_slot_id)

    async def run_list(
        self,
        truck_id: str,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> list[RunListEntry]:
        """
        The truck's jobs from ``date_from`` (default: today) onwards, ordered
        by date and delivery window.
        """
        if date_from is None:
            date_from = self.today()

        assignments = await self._store.list_for_truck(truck_id, date_from, date_to)
        jobs = await self._jobs.get_many([a.job_id for a in assignments])

        entries = [
            RunListEntry(job=jobs[a.job_id], assignment=a)
            for a in assignments
            if a.job_id in jobs
        ]
        return sort_run_list(entries, key=lambda entry: entry.assignment)

    async def _report(self, truck, on_date: date, time_slot_id: str) -> CapacityReport:
        bucket = await self._store.list_for_bucket(truck.id, on_date, time_slot_id)
        jobs = await self._jobs.get_many([a.job_id for a in bucket])
        report = self._planner.evaluate(truck, on_date, time_slot_id, list(jobs.values()))
        AppMetrics.capacity_evaluated(report.level, report.utilization)
        return report

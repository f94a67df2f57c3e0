# truckdesk/core/dispatch/capacity.py
"""
Truck / time-slot capacity accounting.

Pure functions over assignment state: nothing here touches storage, and
nothing here ever rejects an assignment. Over-capacity is reported as a
warning for the dispatcher to act on.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, Sequence, TypeVar

from truckdesk.core.dispatch.domain import Assignment, Job, JobStatus, Truck

DEFAULT_WARNING_THRESHOLD = 0.8

# Delivery windows shown on the scheduling board plus the legacy ids still
# found on older assignments.
SLOT_PRIORITY: dict[str, int] = {
    "first-am": 1,
    "second-am": 2,
    "lunch": 3,
    "afternoon": 4,
    "first-pm": 4,
    "second-pm": 5,
    # legacy
    "early-morning": 1,
    "morning-1": 2,
    "morning-2": 3,
    "afternoon-1": 4,
    "afternoon-2": 5,
}
UNKNOWN_SLOT_PRIORITY = 999

_UNCOUNTED_STATUSES = frozenset({JobStatus.CANCELLED, JobStatus.RETURNED})


def slot_priority(time_slot_id: str | None) -> int:
    if not time_slot_id:
        return UNKNOWN_SLOT_PRIORITY
    return SLOT_PRIORITY.get(time_slot_id, UNKNOWN_SLOT_PRIORITY)


def run_order_key(assignment: Assignment) -> tuple[date, int, int]:
    return (assignment.date, slot_priority(assignment.time_slot_id), assignment.slot_position)


T = TypeVar("T")


def sort_run_list(items: Iterable[T], key=lambda item: item) -> list[T]:
    """
    Order a driver's run list by date, then slot priority, then slot position.

    ``key`` maps each item to its ``Assignment``.
    """
    return sorted(items, key=lambda item: run_order_key(key(item)))


def utilization(total_weight_kg: float, capacity_tonnes: float) -> float:
    """Σ weight_kg ÷ (capacity_tonnes × 1000)."""
    if capacity_tonnes <= 0:
        return math.inf if total_weight_kg > 0 else 0.0
    return total_weight_kg / (capacity_tonnes * 1000)


@dataclass(frozen=True)
class CapacityReport:
    truck_id: str
    date: date
    time_slot_id: str
    capacity_tonnes: float
    total_weight_kg: float
    job_count: int
    utilization: float
    warning_threshold: float = DEFAULT_WARNING_THRESHOLD
    warnings: tuple[str, ...] = field(default_factory=tuple)

    @property
    def over_capacity(self) -> bool:
        return self.utilization > 1.0

    @property
    def near_capacity(self) -> bool:
        return self.warning_threshold < self.utilization <= 1.0

    @property
    def level(self) -> str:
        if self.over_capacity:
            return "over"
        if self.near_capacity:
            return "warning"
        return "ok"

    @property
    def utilization_percent(self) -> float:
        return self.utilization * 100


class CapacityPlanner:
    """Computes bucket utilization reports."""

    def __init__(self, warning_threshold: float = DEFAULT_WARNING_THRESHOLD) -> None:
        self.warning_threshold = warning_threshold

    def evaluate(
        self,
        truck: Truck,
        on_date: date,
        time_slot_id: str,
        jobs: Sequence[Job],
    ) -> CapacityReport:
        """
        Report on the (truck, date, slot) bucket holding ``jobs``.

        Jobs without a weight count as zero; cancelled and returned jobs are
        not counted.
        """
        counted = [job for job in jobs if job.status not in _UNCOUNTED_STATUSES]
        total_weight = float(sum(job.weight_kg or 0 for job in counted))
        ratio = utilization(total_weight, truck.capacity)

        warnings: list[str] = []
        if not truck.is_active:
            warnings.append(f"Truck {truck.name or truck.id} is not active")
        if ratio > 1.0:
            warnings.append(
                f"Over capacity: {total_weight / 1000:.1f}t / {truck.capacity}t"
            )
        elif ratio > self.warning_threshold:
            warnings.append(
                f"Near capacity: {total_weight / 1000:.1f}t / {truck.capacity}t"
            )

        return CapacityReport(
            truck_id=truck.id,
            date=on_date,
            time_slot_id=time_slot_id,
            capacity_tonnes=truck.capacity,
            total_weight_kg=total_weight,
            job_count=len(counted),
            utilization=ratio,
            warning_threshold=self.warning_threshold,
            warnings=tuple(warnings),
        )

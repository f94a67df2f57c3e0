# tests/test_capacity.py
"""Tests for truck/slot capacity accounting and run-list ordering."""
from __future__ import annotations

import math
from datetime import date

import pytest

from truckdesk.core.dispatch.capacity import (
    UNKNOWN_SLOT_PRIORITY,
    CapacityPlanner,
    slot_priority,
    sort_run_list,
    utilization,
)
from truckdesk.core.dispatch.domain import Assignment, Job, JobStatus, Truck

DAY = date(2024, 5, 14)


def _job(job_id: str, weight_kg: float | None, status: JobStatus = JobStatus.SCHEDULED) -> Job:
    return Job(id=job_id, customer_id="cust-1", job_reference_number="241001", weight_kg=weight_kg, status=status)


TRUCK = Truck(id="truck-1", name="Truck 1", capacity=10)


class TestUtilization:
    def test_ratio_of_kg_to_tonnes(self):
        assert utilization(5000, 10) == pytest.approx(0.5)

    def test_zero_capacity_with_weight_is_infinite(self):
        assert math.isinf(utilization(100, 0))

    def test_zero_capacity_without_weight_is_zero(self):
        assert utilization(0, 0) == 0.0


class TestCapacityPlanner:
    def test_overbooked_bucket_is_reported_not_refused(self):
        report = CapacityPlanner().evaluate(TRUCK, DAY, "first-am", [_job("a", 6000), _job("b", 5000)])

        assert report.total_weight_kg == 11000
        assert report.utilization == pytest.approx(1.1)
        assert report.over_capacity is True
        assert report.near_capacity is False
        assert report.level == "over"
        assert report.warnings == ("Over capacity: 11.0t / 10t",)

    def test_near_capacity(self):
        report = CapacityPlanner().evaluate(TRUCK, DAY, "first-am", [_job("a", 8500)])

        assert report.near_capacity is True
        assert report.over_capacity is False
        assert report.level == "warning"
        assert report.warnings[0].startswith("Near capacity")

    def test_threshold_is_exclusive(self):
        report = CapacityPlanner(warning_threshold=0.8).evaluate(TRUCK, DAY, "first-am", [_job("a", 8000)])

        assert report.level == "ok"
        assert report.warnings == ()

    def test_exactly_full_is_not_over(self):
        report = CapacityPlanner().evaluate(TRUCK, DAY, "first-am", [_job("a", 10000)])

        assert report.over_capacity is False
        assert report.level == "warning"

    def test_missing_weight_counts_as_zero(self):
        report = CapacityPlanner().evaluate(TRUCK, DAY, "lunch", [_job("a", None), _job("b", 2000)])

        assert report.total_weight_kg == 2000
        assert report.job_count == 2

    def test_cancelled_and_returned_jobs_not_counted(self):
        jobs = [
            _job("a", 4000),
            _job("b", 9000, JobStatus.CANCELLED),
            _job("c", 9000, JobStatus.RETURNED),
        ]
        report = CapacityPlanner().evaluate(TRUCK, DAY, "first-am", jobs)

        assert report.job_count == 1
        assert report.utilization == pytest.approx(0.4)

    def test_zero_capacity_truck(self):
        ute = Truck(id="ute", capacity=0)
        report = CapacityPlanner().evaluate(ute, DAY, "first-am", [_job("a", 100)])

        assert math.isinf(report.utilization)
        assert report.over_capacity is True

    def test_inactive_truck_warning(self):
        parked = Truck(id="t9", name="Old Truck", capacity=10, is_active=False)
        report = CapacityPlanner().evaluate(parked, DAY, "first-am", [])

        assert report.level == "ok"
        assert report.warnings == ("Truck Old Truck is not active",)

    def test_utilization_percent(self):
        report = CapacityPlanner().evaluate(TRUCK, DAY, "first-am", [_job("a", 2500)])
        assert report.utilization_percent == pytest.approx(25.0)


class TestRunListOrdering:
    def test_slot_priority(self):
        assert slot_priority("first-am") < slot_priority("second-am") < slot_priority("lunch")
        assert slot_priority("lunch") < slot_priority("afternoon")
        assert slot_priority("afternoon-2") == 5
        assert slot_priority("mystery") == UNKNOWN_SLOT_PRIORITY
        assert slot_priority(None) == UNKNOWN_SLOT_PRIORITY

    def test_sort_by_date_then_slot_then_position(self):
        def a(job_id, day, slot, position=1):
            return Assignment(job_id=job_id, truck_id="truck-1", date=date(2024, 5, day), time_slot_id=slot,
                              slot_position=position)

        items = [
            a("late-day", 15, "first-am"),
            a("unknown-slot", 14, "whenever"),
            a("lunch", 14, "lunch"),
            a("first-am-2", 14, "first-am", 2),
            a("first-am-1", 14, "first-am", 1),
        ]

        ordered = [x.job_id for x in sort_run_list(items)]
        assert ordered == ["first-am-1", "first-am-2", "lunch", "unknown-slot", "late-day"]

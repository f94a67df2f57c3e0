# tests/test_assignments.py
"""Tests for the assignment service (truck / date / slot buckets)."""
from __future__ import annotations

from datetime import date

import pytest

from truckdesk.core.dispatch.errors import JobNotFound, TruckNotFound

from conftest import TODAY


class TestAssign:
    @pytest.mark.asyncio
    async def test_assign_creates_assignment_with_capacity(self, harness):
        job = await harness.new_job(weight_kg=2500)

        result = await harness.assignments.assign(job.id, "truck-1", TODAY, "first-am")

        assert result.created is True
        assert result.assignment.truck_id == "truck-1"
        assert result.assignment.slot_position == 1
        assert result.capacity.job_count == 1
        assert result.capacity.utilization == pytest.approx(0.25)
        assert job.id in harness.store.assignments

    @pytest.mark.asyncio
    async def test_reassign_updates_in_place(self, harness):
        job = await harness.new_job()
        await harness.assignments.assign(job.id, "truck-1", TODAY, "first-am")

        result = await harness.assignments.assign(job.id, "truck-2", date(2024, 5, 15), "lunch", 3)

        assert result.created is False
        assert len(harness.store.assignments) == 1
        stored = harness.store.assignments[job.id]
        assert (stored.truck_id, stored.date, stored.time_slot_id, stored.slot_position) == (
            "truck-2", date(2024, 5, 15), "lunch", 3,
        )
        old_bucket = await harness.assignments.capacity_for("truck-1", TODAY, "first-am")
        assert old_bucket.job_count == 0

    @pytest.mark.asyncio
    async def test_overbooking_is_allowed_and_flagged(self, harness):
        first = await harness.new_job(weight_kg=6000)
        second = await harness.new_job(weight_kg=5000)

        await harness.assignments.assign(first.id, "truck-1", TODAY, "first-am")
        result = await harness.assignments.assign(second.id, "truck-1", TODAY, "first-am")

        assert result.capacity.utilization == pytest.approx(1.1)
        assert result.capacity.over_capacity is True
        assert len(harness.store.assignments) == 2

    @pytest.mark.asyncio
    async def test_slot_position_floor(self, harness):
        job = await harness.new_job()
        result = await harness.assignments.assign(job.id, "truck-1", TODAY, "first-am", 0)
        assert result.assignment.slot_position == 1

    @pytest.mark.asyncio
    async def test_unknown_truck(self, harness):
        job = await harness.new_job()
        with pytest.raises(TruckNotFound):
            await harness.assignments.assign(job.id, "truck-404", TODAY, "first-am")
        assert harness.store.assignments == {}

    @pytest.mark.asyncio
    async def test_unknown_job(self, harness):
        with pytest.raises(JobNotFound):
            await harness.assignments.assign("job-404", "truck-1", TODAY, "first-am")


class TestUnassign:
    @pytest.mark.asyncio
    async def test_unassign(self, harness):
        job = await harness.new_job()
        await harness.assignments.assign(job.id, "truck-1", TODAY, "first-am")

        assert await harness.assignments.unassign(job.id) is True
        assert await harness.assignments.unassign(job.id) is False
        assert await harness.assignments.get_assignment(job.id) is None


class TestCapacityFor:
    @pytest.mark.asyncio
    async def test_empty_bucket(self, harness):
        report = await harness.assignments.capacity_for("truck-1", TODAY, "lunch")
        assert report.job_count == 0
        assert report.level == "ok"

    @pytest.mark.asyncio
    async def test_unknown_truck(self, harness):
        with pytest.raises(TruckNotFound):
            await harness.assignments.capacity_for("truck-404", TODAY, "lunch")


class TestRunList:
    @pytest.mark.asyncio
    async def test_ordered_by_date_slot_position(self, harness):
        plan = [
            ("tomorrow", date(2024, 5, 15), "first-am", 1),
            ("lunch", TODAY, "lunch", 1),
            ("am-2", TODAY, "first-am", 2),
            ("am-1", TODAY, "first-am", 1),
        ]
        ids = {}
        for label, day, slot, position in plan:
            job = await harness.new_job()
            ids[job.id] = label
            await harness.assignments.assign(job.id, "truck-1", day, slot, position)

        entries = await harness.assignments.run_list("truck-1", TODAY)

        assert [ids[e.job.id] for e in entries] == ["am-1", "am-2", "lunch", "tomorrow"]

    @pytest.mark.asyncio
    async def test_defaults_to_today_and_respects_upper_bound(self, harness):
        labels = {}
        for label, day in [("yesterday", date(2024, 5, 13)), ("today", TODAY), ("later", date(2024, 5, 20))]:
            job = await harness.new_job()
            labels[job.id] = label
            await harness.assignments.assign(job.id, "truck-1", day, "first-am")

        assert [labels[e.job.id] for e in await harness.assignments.run_list("truck-1")] == ["today", "later"]

        bounded = await harness.assignments.run_list("truck-1", TODAY, date(2024, 5, 15))
        assert [labels[e.job.id] for e in bounded] == ["today"]

    @pytest.mark.asyncio
    async def test_other_trucks_excluded(self, harness):
        job = await harness.new_job()
        await harness.assignments.assign(job.id, "truck-2", TODAY, "first-am")

        assert await harness.assignments.run_list("truck-1", TODAY) == []

    def test_today_uses_clock(self, harness):
        assert harness.assignments.today() == TODAY

# truckdesk/transport/schemas.py
"""
Request and response bodies. Field names are camelCase on the wire.
"""
from __future__ import annotations

import math
from datetime import date, datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from truckdesk.core.dispatch.assignments import RunListEntry
from truckdesk.core.dispatch.capacity import CapacityReport
from truckdesk.core.dispatch.domain import (
    Actor,
    Assignment,
    BulkResult,
    DriverStatus,
    Job,
    JobStatus,
    NewJob,
)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# REQUESTS
# ============================================================================

class ActorIn(CamelModel):
    id: str = Field(min_length=1, max_length=128)
    name: str = Field(min_length=1, max_length=200)

    def to_domain(self) -> Actor:
        return Actor(id=self.id, name=self.name)


class JobCreateIn(CamelModel):
    customer_id: str = Field(min_length=1, max_length=128)
    customer_name: str = Field(default="", max_length=200)
    delivery_location: str = Field(default="", max_length=500)
    weight_kg: Optional[float] = Field(default=None, ge=0)
    sqm: Optional[float] = Field(default=None, ge=0)
    total_units: Optional[int] = Field(default=None, ge=0)
    requested_date: Optional[date] = None
    extra: dict[str, Any] = Field(default_factory=dict)
    actor: ActorIn

    def to_domain(self) -> NewJob:
        return NewJob(
            customer_id=self.customer_id,
            customer_name=self.customer_name,
            delivery_location=self.delivery_location,
            weight_kg=self.weight_kg,
            sqm=self.sqm,
            total_units=self.total_units,
            requested_date=self.requested_date,
            extra=self.extra,
        )


class ActorOnlyIn(CamelModel):
    actor: ActorIn


class ScheduleIn(CamelModel):
    truck_id: str = Field(min_length=1, max_length=128)
    date: date
    time_slot_id: str = Field(min_length=1, max_length=64)
    slot_position: int = Field(default=1, ge=1)
    actor: ActorIn


class StatusIn(CamelModel):
    status: JobStatus
    actor: ActorIn


class ReturnIn(CamelModel):
    reason: Optional[str] = Field(default=None, max_length=500)
    notes: Optional[str] = Field(default=None, max_length=2000)
    actor: ActorIn


class BulkStatusIn(CamelModel):
    job_ids: list[str] = Field(min_length=1, max_length=500)
    action: str = Field(min_length=1, max_length=64)
    actor: ActorIn


class DriverStatusIn(CamelModel):
    driver_status: DriverStatus
    actor: ActorIn


class ProofOfDeliveryIn(CamelModel):
    photos: list[str] = Field(default_factory=list, max_length=50)
    signature: Optional[str] = None
    notes: Optional[str] = Field(default=None, max_length=2000)
    submission_id: Optional[str] = Field(default=None, max_length=128)
    actor: ActorIn


# ============================================================================
# RESPONSES
# ============================================================================

class JobPhotoOut(CamelModel):
    url: str
    caption: str
    timestamp: datetime
    uploaded_by: str


class JobOut(CamelModel):
    id: str
    customer_id: str
    job_reference_number: str
    customer_name: str
    status: JobStatus
    driver_status: DriverStatus
    delivery_location: str
    weight_kg: Optional[float] = None
    sqm: Optional[float] = None
    total_units: Optional[int] = None
    requested_date: Optional[date] = None
    truck_id: Optional[str] = None
    time_slot_id: Optional[str] = None
    pod_files: list[str] = Field(default_factory=list)
    job_photos: list[JobPhotoOut] = Field(default_factory=list)
    pod_notes: Optional[str] = None
    return_reason: Optional[str] = None
    return_notes: Optional[str] = None
    returned_by: Optional[str] = None
    returned_at: Optional[datetime] = None
    actual_arrival_time: Optional[datetime] = None
    actual_completion_time: Optional[datetime] = None
    driver_status_updated_at: Optional[datetime] = None
    driver_status_updated_by: Optional[str] = None
    extra: dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int

    @classmethod
    def from_domain(cls, job: Job) -> "JobOut":
        return cls(
            id=job.id,
            customer_id=job.customer_id,
            job_reference_number=job.job_reference_number,
            customer_name=job.customer_name,
            status=job.status,
            driver_status=job.driver_status,
            delivery_location=job.delivery_location,
            weight_kg=job.weight_kg,
            sqm=job.sqm,
            total_units=job.total_units,
            requested_date=job.requested_date,
            truck_id=job.truck_id,
            time_slot_id=job.time_slot_id,
            pod_files=list(job.pod_files),
            job_photos=[
                JobPhotoOut(url=p.url, caption=p.caption, timestamp=p.timestamp, uploaded_by=p.uploaded_by)
                for p in job.job_photos
            ],
            pod_notes=job.pod_notes,
            return_reason=job.return_reason,
            return_notes=job.return_notes,
            returned_by=job.returned_by,
            returned_at=job.returned_at,
            actual_arrival_time=job.actual_arrival_time,
            actual_completion_time=job.actual_completion_time,
            driver_status_updated_at=job.driver_status_updated_at,
            driver_status_updated_by=job.driver_status_updated_by,
            extra=dict(job.extra),
            created_at=job.created_at,
            updated_at=job.updated_at,
            version=job.version,
        )


class AssignmentOut(CamelModel):
    job_id: str
    truck_id: str
    date: date
    time_slot_id: str
    slot_position: int

    @classmethod
    def from_domain(cls, assignment: Assignment) -> "AssignmentOut":
        return cls(
            job_id=assignment.job_id,
            truck_id=assignment.truck_id,
            date=assignment.date,
            time_slot_id=assignment.time_slot_id,
            slot_position=assignment.slot_position,
        )


class CapacityOut(CamelModel):
    truck_id: str
    date: date
    time_slot_id: str
    capacity_tonnes: float
    total_weight_kg: float
    job_count: int
    # None when the truck has no capacity but carries weight
    utilization: Optional[float]
    utilization_percent: Optional[float]
    over_capacity: bool
    near_capacity: bool
    level: str
    warnings: list[str]

    @classmethod
    def from_domain(cls, report: CapacityReport) -> "CapacityOut":
        finite = math.isfinite(report.utilization)
        return cls(
            truck_id=report.truck_id,
            date=report.date,
            time_slot_id=report.time_slot_id,
            capacity_tonnes=report.capacity_tonnes,
            total_weight_kg=report.total_weight_kg,
            job_count=report.job_count,
            utilization=round(report.utilization, 4) if finite else None,
            utilization_percent=round(report.utilization_percent, 1) if finite else None,
            over_capacity=report.over_capacity,
            near_capacity=report.near_capacity,
            level=report.level,
            warnings=list(report.warnings),
        )


class ScheduleOut(CamelModel):
    job: JobOut
    assignment: AssignmentOut
    capacity: CapacityOut


class ProofOfDeliveryOut(CamelModel):
    job: JobOut
    submission_id: str
    duplicate: bool


class BulkResultOut(CamelModel):
    job_id: str
    success: bool
    error: Optional[str] = None

    @classmethod
    def from_domain(cls, result: BulkResult) -> "BulkResultOut":
        return cls(job_id=result.job_id, success=result.success, error=result.error)


class BulkStatusOut(CamelModel):
    action: str
    succeeded: int
    failed: int
    results: list[BulkResultOut]


class UnassignOut(CamelModel):
    job_id: str
    removed: bool


class RunListItemOut(CamelModel):
    job: JobOut
    assignment: AssignmentOut

    @classmethod
    def from_domain(cls, entry: RunListEntry) -> "RunListItemOut":
        return cls(job=JobOut.from_domain(entry.job), assignment=AssignmentOut.from_domain(entry.assignment))


class RunListOut(CamelModel):
    truck_id: str
    date_from: date
    date_to: Optional[date] = None
    items: list[RunListItemOut]

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# STATUS ENUMS
# ============================================================================

class JobStatus(str, Enum):
    """Coarse lifecycle of a delivery job (dispatcher-facing)."""
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    SCHEDULED = "SCHEDULED"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"
    RETURNED = "RETURNED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.DELIVERED, JobStatus.RETURNED, JobStatus.CANCELLED})


class DriverStatus(str, Enum):
    """Fine-grained progress of an in-transit job, reported by the driver app."""
    NOT_STARTED = "NOT_STARTED"
    EN_ROUTE = "EN_ROUTE"
    ARRIVED = "ARRIVED"
    UNLOADING = "UNLOADING"
    COMPLETED = "COMPLETED"
    PROBLEM = "PROBLEM"


# ============================================================================
# COLLABORATOR RECORDS (read-only inputs)
# ============================================================================

@dataclass(frozen=True)
class Customer:
    id: str
    customer_name: str = ""
    customer_docket_id: Optional[int] = None  # single digit 0-9


@dataclass(frozen=True)
class Truck:
    id: str
    name: str = ""
    capacity: float = 0.0  # tonnes
    is_active: bool = True


DISPATCHER_APP_ROLES = frozenset({"dispatcher", "tenantAdmin"})


@dataclass(frozen=True)
class DirectoryUser:
    """A user from the portal's user directory, as far as notification targeting needs it."""
    id: str
    full_name: str = ""
    email: Optional[str] = None
    role: str = "user"  # "admin" | "user"
    app_role: Optional[str] = None  # "dispatcher" | "tenantAdmin" | "driver" | "customer" ...
    customer_id: Optional[str] = None
    additional_customer_ids: tuple[str, ...] = ()

    @property
    def is_dispatcher(self) -> bool:
        return self.role == "admin" or self.app_role in DISPATCHER_APP_ROLES

    def is_linked_to_customer(self, customer_id: str) -> bool:
        return self.customer_id == customer_id or customer_id in self.additional_customer_ids


@dataclass(frozen=True)
class Actor:
    """Who is performing an operation (driver on mobile, dispatcher on the board)."""
    id: str
    name: str


# ============================================================================
# DISPATCH-OWNED RECORDS
# ============================================================================

@dataclass
class CustomerJobCounter:
    customer_id: str
    customer_docket_id: int
    last_sequence: int = 0  # 0-999, wraps


@dataclass(frozen=True)
class JobPhoto:
    url: str
    caption: str
    timestamp: datetime
    uploaded_by: str


@dataclass
class NewJob:
    """Job intake payload (what the portal sends before a reference exists)."""
    customer_id: str
    customer_name: str = ""
    delivery_location: str = ""
    weight_kg: Optional[float] = None
    sqm: Optional[float] = None
    total_units: Optional[int] = None
    requested_date: Optional[date] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Job:
    id: str
    customer_id: str
    job_reference_number: str
    customer_name: str = ""
    status: JobStatus = JobStatus.PENDING_APPROVAL
    driver_status: DriverStatus = DriverStatus.NOT_STARTED
    delivery_location: str = ""
    weight_kg: Optional[float] = None
    sqm: Optional[float] = None
    total_units: Optional[int] = None
    requested_date: Optional[date] = None
    truck_id: Optional[str] = None
    time_slot_id: Optional[str] = None

    # Proof of delivery
    pod_files: List[str] = field(default_factory=list)
    job_photos: List[JobPhoto] = field(default_factory=list)
    pod_notes: Optional[str] = None
    pod_submission_ids: List[str] = field(default_factory=list)

    # Returns
    return_reason: Optional[str] = None
    return_notes: Optional[str] = None
    returned_by: Optional[str] = None
    returned_at: Optional[datetime] = None

    # Driver progress
    actual_arrival_time: Optional[datetime] = None
    actual_completion_time: Optional[datetime] = None
    driver_status_updated_at: Optional[datetime] = None
    driver_status_updated_by: Optional[str] = None

    extra: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int = 0  # optimistic concurrency stamp


@dataclass
class Assignment:
    job_id: str
    truck_id: str
    date: date
    time_slot_id: str
    slot_position: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class Notification:
    user_id: str
    title: str
    message: str
    type: str
    job_id: Optional[str] = None
    is_read: bool = False
    context: Optional[Dict[str, Any]] = None
    dedupe_key: Optional[str] = None
    id: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class BulkResult:
    job_id: str
    success: bool
    error: Optional[str] = None

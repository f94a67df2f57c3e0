"""
Typed domain errors for the dispatch core.

Each error maps to a specific HTTP status code.  The transport layer
renders any ``DispatchError`` as ``{"error": ..., "details": {...}}``
without embedding business logic in the route handlers.
"""
from __future__ import annotations

from typing import Any


class DispatchError(Exception):
    """Base class for all dispatch domain errors."""

    status_code: int = 500

    def __init__(self, detail: str = "Internal error", **details: Any):
        self.detail = detail
        self.details = details
        super().__init__(detail)

    @property
    def code(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.detail, "details": {"code": self.code, **self.details}}


class ValidationError(DispatchError):
    """Invalid request payload (400)."""

    status_code = 400


class NotFoundError(DispatchError):
    """Resource not found (404)."""

    status_code = 404


class ConflictError(DispatchError):
    """Request conflicts with the current state of the resource (409)."""

    status_code = 409


# ---------------------------------------------------------------------------
# Reference allocation
# ---------------------------------------------------------------------------

class CustomerNotFound(NotFoundError):
    def __init__(self, customer_id: str):
        super().__init__("Customer not found", customer_id=customer_id)


class MissingDocketId(ValidationError):
    def __init__(self, customer_id: str):
        super().__init__(
            "Customer does not have a docket ID assigned. "
            "Please assign a customerDocketId (0-9) to this customer first.",
            customer_id=customer_id,
        )


class InvalidDocketId(ValidationError):
    def __init__(self, customer_id: str, docket_id: Any):
        super().__init__(
            "Customer docket ID must be a single digit (0-9)",
            customer_id=customer_id,
            docket_id=docket_id,
        )


# ---------------------------------------------------------------------------
# Jobs, trucks, transitions
# ---------------------------------------------------------------------------

class JobNotFound(NotFoundError):
    def __init__(self, job_id: str):
        super().__init__("Job not found", job_id=job_id)


class TruckNotFound(NotFoundError):
    def __init__(self, truck_id: str):
        super().__init__("Truck not found", truck_id=truck_id)


class InvalidTransition(ConflictError):
    def __init__(self, job_id: str, current: str, requested: str, field: str = "status"):
        super().__init__(
            f"Cannot change {field} from {current} to {requested}",
            job_id=job_id,
            field=field,
            current=current,
            requested=requested,
        )


class ConcurrencyConflict(ConflictError):
    def __init__(self, job_id: str, attempts: int):
        super().__init__(
            "Job was modified concurrently, please retry",
            job_id=job_id,
            attempts=attempts,
        )


class InvalidBulkAction(ValidationError):
    def __init__(self, action: str, allowed: list[str]):
        super().__init__(
            f"Unsupported bulk action: {action}",
            action=action,
            allowed=allowed,
        )


class EmptyProofOfDelivery(ValidationError):
    def __init__(self, job_id: str):
        super().__init__(
            "Proof of delivery needs at least one photo or a signature",
            job_id=job_id,
        )

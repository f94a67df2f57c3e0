# truckdesk/infra/pg_delivery_job_repo_async.py
"""
Async Postgres repository for delivery jobs.

Every update is a compare-and-swap on ``version``; the caller re-reads and
re-applies on ``StaleJobVersion``.
"""
from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Sequence

from truckdesk.core.dispatch.domain import DriverStatus, Job, JobPhoto, JobStatus
from truckdesk.core.dispatch.ports import StaleJobVersion
from truckdesk.infra.db_resilience_async import safe_db_conn
from truckdesk.infra.logging_config import get_logger

logger = get_logger(__name__)

_JSONB_COLUMNS = frozenset({"pod_files", "job_photos", "pod_submission_ids", "extra"})

# Columns a job write may change, in parameter order.
_MUTABLE_COLUMNS = (
    "customer_name",
    "status",
    "driver_status",
    "delivery_location",
    "weight_kg",
    "sqm",
    "total_units",
    "requested_date",
    "truck_id",
    "time_slot_id",
    "pod_files",
    "job_photos",
    "pod_notes",
    "pod_submission_ids",
    "return_reason",
    "return_notes",
    "returned_by",
    "returned_at",
    "actual_arrival_time",
    "actual_completion_time",
    "driver_status_updated_at",
    "driver_status_updated_by",
    "extra",
    "updated_at",
)


def _placeholder(column: str, index: int) -> str:
    return f"${index}::jsonb" if column in _JSONB_COLUMNS else f"${index}"


def _parse_jsonb(raw: Any, default: Any) -> Any:
    if raw is None:
        return default
    if isinstance(raw, str):
        return json.loads(raw)
    return raw


def _float_or_none(value: Any) -> float | None:
    return float(value) if value is not None else None


def _photo_to_dict(photo: JobPhoto) -> dict[str, Any]:
    return {
        "url": photo.url,
        "caption": photo.caption,
        "timestamp": photo.timestamp.isoformat(),
        "uploaded_by": photo.uploaded_by,
    }


def _photo_from_dict(data: dict[str, Any]) -> JobPhoto:
    return JobPhoto(
        url=data["url"],
        caption=data.get("caption", ""),
        timestamp=datetime.fromisoformat(data["timestamp"]),
        uploaded_by=data.get("uploaded_by", ""),
    )


def _column_value(job: Job, column: str) -> Any:
    value = getattr(job, column)
    if column == "job_photos":
        return json.dumps([_photo_to_dict(p) for p in value])
    if column in _JSONB_COLUMNS:
        return json.dumps(value, default=str)
    if column in ("status", "driver_status"):
        return value.value
    return value


def row_to_job(row) -> Job:
    return Job(
        id=row["id"],
        customer_id=row["customer_id"],
        job_reference_number=row["job_reference_number"],
        customer_name=row["customer_name"] or "",
        status=JobStatus(row["status"]),
        driver_status=DriverStatus(row["driver_status"]),
        delivery_location=row["delivery_location"] or "",
        weight_kg=_float_or_none(row["weight_kg"]),
        sqm=_float_or_none(row["sqm"]),
        total_units=row["total_units"],
        requested_date=row["requested_date"],
        truck_id=row["truck_id"],
        time_slot_id=row["time_slot_id"],
        pod_files=list(_parse_jsonb(row["pod_files"], [])),
        job_photos=[_photo_from_dict(p) for p in _parse_jsonb(row["job_photos"], [])],
        pod_notes=row["pod_notes"],
        pod_submission_ids=list(_parse_jsonb(row["pod_submission_ids"], [])),
        return_reason=row["return_reason"],
        return_notes=row["return_notes"],
        returned_by=row["returned_by"],
        returned_at=row["returned_at"],
        actual_arrival_time=row["actual_arrival_time"],
        actual_completion_time=row["actual_completion_time"],
        driver_status_updated_at=row["driver_status_updated_at"],
        driver_status_updated_by=row["driver_status_updated_by"],
        extra=dict(_parse_jsonb(row["extra"], {})),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        version=row["version"],
    )


_INSERT_COLUMNS = ("id", "customer_id", "job_reference_number", "created_at") + _MUTABLE_COLUMNS

_INSERT_SQL = (
    f"INSERT INTO delivery_jobs ({', '.join(_INSERT_COLUMNS)}) "
    f"VALUES ({', '.join(_placeholder(c, i) for i, c in enumerate(_INSERT_COLUMNS, start=1))}) "
    f"RETURNING *"
)

# $1 = id, $2 = expected version, then the mutable columns
_UPDATE_SQL = (
    "UPDATE delivery_jobs SET "
    + ", ".join(f"{c} = {_placeholder(c, i)}" for i, c in enumerate(_MUTABLE_COLUMNS, start=3))
    + ", version = version + 1 "
    + "WHERE id = $1 AND version = $2 RETURNING *"
)


class AsyncPostgresDeliveryJobRepository:

    async def get(self, job_id: str) -> Job | None:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM delivery_jobs WHERE id = $1", job_id)
        return row_to_job(row) if row else None

    async def get_many(self, job_ids: Sequence[str]) -> dict[str, Job]:
        if not job_ids:
            return {}
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                "SELECT * FROM delivery_jobs WHERE id = ANY($1::text[])",
                list(job_ids),
            )
        return {row["id"]: row_to_job(row) for row in rows}

    async def create(self, job: Job) -> Job:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                _INSERT_SQL,
                *(_column_value(job, c) for c in _INSERT_COLUMNS),
            )
        return row_to_job(row)

    async def update(self, job: Job, expected_version: int) -> Job:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                _UPDATE_SQL,
                job.id,
                expected_version,
                *(_column_value(job, c) for c in _MUTABLE_COLUMNS),
            )
        if row is None:
            logger.debug(
                f"Stale write rejected at version {expected_version}",
                extra={"job_id": job.id},
            )
            raise StaleJobVersion(job.id, expected_version)
        return row_to_job(row)

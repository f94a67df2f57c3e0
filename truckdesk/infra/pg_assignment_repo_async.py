# truckdesk/infra/pg_assignment_repo_async.py
"""
Truck ↔ job ↔ date ↔ slot assignments. One row per job.
"""
from __future__ import annotations

from datetime import date

from truckdesk.core.dispatch.domain import Assignment
from truckdesk.infra.db_resilience_async import safe_db_conn

_COLUMNS = "job_id, truck_id, date, time_slot_id, slot_position, created_at, updated_at"


def _row_to_assignment(row) -> Assignment:
    return Assignment(
        job_id=row["job_id"],
        truck_id=row["truck_id"],
        date=row["date"],
        time_slot_id=row["time_slot_id"],
        slot_position=row["slot_position"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class AsyncPostgresAssignmentStore:

    async def get(self, job_id: str) -> Assignment | None:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(f"SELECT {_COLUMNS} FROM assignments WHERE job_id = $1", job_id)
        return _row_to_assignment(row) if row else None

    async def upsert(self, assignment: Assignment) -> tuple[Assignment, bool]:
        """Insert, or move the job's existing assignment in place (created_at kept)."""
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO assignments (job_id, truck_id, date, time_slot_id, slot_position)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (job_id) DO UPDATE
                SET truck_id = EXCLUDED.truck_id,
                    date = EXCLUDED.date,
                    time_slot_id = EXCLUDED.time_slot_id,
                    slot_position = EXCLUDED.slot_position,
                    updated_at = now()
                RETURNING {_COLUMNS}, (xmax = 0) AS inserted
                """,
                assignment.job_id,
                assignment.truck_id,
                assignment.date,
                assignment.time_slot_id,
                assignment.slot_position,
            )
        return _row_to_assignment(row), bool(row["inserted"])

    async def delete(self, job_id: str) -> bool:
        async with safe_db_conn() as conn:
            result = await conn.execute("DELETE FROM assignments WHERE job_id = $1", job_id)
        return result == "DELETE 1"

    async def list_for_bucket(self, truck_id: str, on_date: date, time_slot_id: str) -> list[Assignment]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_COLUMNS} FROM assignments
                WHERE truck_id = $1 AND date = $2 AND time_slot_id = $3
                ORDER BY slot_position, created_at
                """,
                truck_id,
                on_date,
                time_slot_id,
            )
        return [_row_to_assignment(row) for row in rows]

    async def list_for_truck(
        self, truck_id: str, date_from: date, date_to: date | None = None
    ) -> list[Assignment]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_COLUMNS} FROM assignments
                WHERE truck_id = $1
                  AND date >= $2
                  AND ($3::date IS NULL OR date <= $3::date)
                ORDER BY date, slot_position
                """,
                truck_id,
                date_from,
                date_to,
            )
        return [_row_to_assignment(row) for row in rows]

# truckdesk/infra/pg_directory_repo_async.py
"""
Read-only access to the portal's customers, trucks and users tables.

The dispatch core never writes these; they are managed by the portal.
"""
from __future__ import annotations

from truckdesk.core.dispatch.domain import Customer, DirectoryUser, Truck
from truckdesk.infra.db_resilience_async import retry_on_transient_error, safe_db_conn


def _row_to_user(row) -> DirectoryUser:
    return DirectoryUser(
        id=row["id"],
        full_name=row["full_name"] or "",
        email=row["email"],
        role=row["role"] or "user",
        app_role=row["app_role"],
        customer_id=row["customer_id"],
        additional_customer_ids=tuple(row["additional_customer_ids"] or ()),
    )


class AsyncPostgresDirectory:
    """Customers, trucks and users. Reads only, so retried on transient errors."""

    @retry_on_transient_error(max_retries=2)
    async def get_customer(self, customer_id: str) -> Customer | None:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                "SELECT id, customer_name, customer_docket_id FROM customers WHERE id = $1",
                customer_id,
            )
        if row is None:
            return None
        return Customer(
            id=row["id"],
            customer_name=row["customer_name"] or "",
            customer_docket_id=row["customer_docket_id"],
        )

    @retry_on_transient_error(max_retries=2)
    async def get_truck(self, truck_id: str) -> Truck | None:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                "SELECT id, name, capacity, is_active FROM trucks WHERE id = $1",
                truck_id,
            )
        if row is None:
            return None
        return Truck(
            id=row["id"],
            name=row["name"] or "",
            capacity=float(row["capacity"] or 0),
            is_active=row["is_active"],
        )

    @retry_on_transient_error(max_retries=2)
    async def list_users(self) -> list[DirectoryUser]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT id, full_name, email, role, app_role, customer_id, additional_customer_ids
                FROM users
                ORDER BY id
                """
            )
        return [_row_to_user(row) for row in rows]

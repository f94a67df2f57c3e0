# truckdesk/infra/pg_counter_repo_async.py
"""
Per-customer job reference counters.
"""
from __future__ import annotations

from truckdesk.core.dispatch.domain import CustomerJobCounter
from truckdesk.core.dispatch.reference import SEQUENCE_MODULUS
from truckdesk.infra.db_resilience_async import safe_db_conn


class AsyncPostgresCounterStore:

    async def increment(self, customer_id: str, customer_docket_id: int) -> CustomerJobCounter:
        """
        Advance the counter in a single statement.

        The row lock taken by ON CONFLICT DO UPDATE serializes concurrent
        callers for the same customer, so every caller gets its own value.
        A new counter starts at 1.
        """
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO customer_job_counters (customer_id, customer_docket_id, last_sequence)
                VALUES ($1, $2, 1)
                ON CONFLICT (customer_id) DO UPDATE
                SET last_sequence = (customer_job_counters.last_sequence + 1) % $3,
                    customer_docket_id = EXCLUDED.customer_docket_id,
                    updated_at = now()
                RETURNING customer_id, customer_docket_id, last_sequence
                """,
                customer_id,
                customer_docket_id,
                SEQUENCE_MODULUS,
            )
        return CustomerJobCounter(
            customer_id=row["customer_id"],
            customer_docket_id=row["customer_docket_id"],
            last_sequence=row["last_sequence"],
        )

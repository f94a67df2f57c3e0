# truckdesk/core/dispatch/reference.py
"""
Job reference numbers.

Format ``YYDNNN``: two-digit year, the customer's single-digit docket id,
and a three-digit zero-padded per-customer sequence that wraps at 1000.
``"241023"`` is year 2024, docket 1, sequence 23.

References are unique per customer only; two customers sharing a docket
digit can produce the same reference in the same year.
"""
from __future__ import annotations

from datetime import datetime
from typing import Callable
from zoneinfo import ZoneInfo

from truckdesk.core.dispatch.domain import utc_now
from truckdesk.core.dispatch.errors import CustomerNotFound, InvalidDocketId, MissingDocketId
from truckdesk.core.dispatch.ports import AsyncCounterStore, AsyncCustomerDirectory
from truckdesk.infra.logging_config import get_logger
from truckdesk.infra.metrics import AppMetrics

logger = get_logger(__name__)

SEQUENCE_MODULUS = 1000


def format_reference(year: int, docket_id: int, sequence: int) -> str:
    """Compose ``YYDNNN`` from its parts."""
    return f"{year % 100:02d}{docket_id}{sequence % SEQUENCE_MODULUS:03d}"


def next_sequence(last_sequence: int) -> int:
    return (last_sequence + 1) % SEQUENCE_MODULUS


class ReferenceAllocator:
    """Turns a customer id into the next job reference for that customer."""

    def __init__(
        self,
        customers: AsyncCustomerDirectory,
        counters: AsyncCounterStore,
        *,
        timezone: str = "UTC",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._customers = customers
        self._counters = counters
        self._tz = ZoneInfo(timezone)
        self._clock = clock

    async def allocate(self, customer_id: str) -> str:
        """
        Allocate the next reference number for ``customer_id``.

        Raises:
            CustomerNotFound: unknown customer
            MissingDocketId: customer has no docket id
            InvalidDocketId: docket id is not a single digit
        """
        customer = await self._customers.get_customer(customer_id)
        if customer is None:
            raise CustomerNotFound(customer_id)

        docket_id = customer.customer_docket_id
        if docket_id is None:
            raise MissingDocketId(customer_id)
        if isinstance(docket_id, bool) or not isinstance(docket_id, int) or not 0 <= docket_id <= 9:
            raise InvalidDocketId(customer_id, docket_id)

        counter = await self._counters.increment(customer_id, docket_id)

        year = self._clock().astimezone(self._tz).year
        reference = format_reference(year, docket_id, counter.last_sequence)

        AppMetrics.reference_allocated(docket_id)
        logger.info(
            f"Reference allocated: {reference} (sequence={counter.last_sequence})",
            extra={"customer_id": customer_id},
        )
        return reference

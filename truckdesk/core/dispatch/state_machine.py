# truckdesk/core/dispatch/state_machine.py
"""
Job and driver status lifecycle.

All job writes go through ``DispatchStateMachine._mutate``: read the job,
apply a mutation to a copy, and persist it with a compare-and-swap on
``version``. A lost race re-reads and re-applies, so concurrent POD appends
are never dropped. Notification batches are published after the write
succeeds and never fail the operation.
"""
from __future__ import annotations

import asyncio
import copy
import hashlib
import uuid
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Callable, Optional, Sequence

from truckdesk.core.dispatch import notifications as batches
from truckdesk.core.dispatch.assignments import AssignmentService
from truckdesk.core.dispatch.capacity import CapacityReport
from truckdesk.core.dispatch.domain import (
    Actor,
    Assignment,
    BulkResult,
    DriverStatus,
    Job,
    JobPhoto,
    JobStatus,
    NewJob,
    utc_now,
)
from truckdesk.core.dispatch.errors import (
    ConcurrencyConflict,
    DispatchError,
    EmptyProofOfDelivery,
    InvalidBulkAction,
    InvalidTransition,
    JobNotFound,
)
from truckdesk.core.dispatch.notifications import NotificationBatch, NotificationPublisher
from truckdesk.core.dispatch.ports import AsyncJobRepository, StaleJobVersion
from truckdesk.core.dispatch.reference import ReferenceAllocator
from truckdesk.infra.logging_config import LogContext, get_logger
from truckdesk.infra.metrics import AppMetrics

logger = get_logger(__name__)


# ============================================================================
# TRANSITION TABLES
# ============================================================================

class JobEvent(str, Enum):
    APPROVE = "APPROVE"
    SCHEDULE = "SCHEDULE"
    DISPATCH = "DISPATCH"
    DELIVER = "DELIVER"
    RETURN = "RETURN"
    CANCEL = "CANCEL"
    UNSCHEDULE = "UNSCHEDULE"


_TRANSITIONS: dict[tuple[JobStatus, JobEvent], JobStatus] = {
    (JobStatus.PENDING_APPROVAL, JobEvent.APPROVE): JobStatus.APPROVED,
    (JobStatus.PENDING_APPROVAL, JobEvent.CANCEL): JobStatus.CANCELLED,
    (JobStatus.APPROVED, JobEvent.SCHEDULE): JobStatus.SCHEDULED,
    (JobStatus.APPROVED, JobEvent.CANCEL): JobStatus.CANCELLED,
    (JobStatus.SCHEDULED, JobEvent.DISPATCH): JobStatus.IN_TRANSIT,
    (JobStatus.SCHEDULED, JobEvent.CANCEL): JobStatus.CANCELLED,
    (JobStatus.SCHEDULED, JobEvent.UNSCHEDULE): JobStatus.APPROVED,
    (JobStatus.IN_TRANSIT, JobEvent.DELIVER): JobStatus.DELIVERED,
    (JobStatus.IN_TRANSIT, JobEvent.RETURN): JobStatus.RETURNED,
    (JobStatus.IN_TRANSIT, JobEvent.CANCEL): JobStatus.CANCELLED,
}

EVENT_FOR_STATUS: dict[JobStatus, JobEvent] = {
    JobStatus.APPROVED: JobEvent.APPROVE,
    JobStatus.SCHEDULED: JobEvent.SCHEDULE,
    JobStatus.IN_TRANSIT: JobEvent.DISPATCH,
    JobStatus.DELIVERED: JobEvent.DELIVER,
    JobStatus.RETURNED: JobEvent.RETURN,
    JobStatus.CANCELLED: JobEvent.CANCEL,
}

_DRIVER_ORDER: dict[DriverStatus, int] = {
    DriverStatus.NOT_STARTED: 0,
    DriverStatus.EN_ROUTE: 1,
    DriverStatus.ARRIVED: 2,
    DriverStatus.UNLOADING: 3,
    DriverStatus.COMPLETED: 4,
}

# Job statuses in which the driver app may report progress.
DRIVER_ACTIVE_STATUSES = frozenset({JobStatus.SCHEDULED, JobStatus.IN_TRANSIT})
POD_ALLOWED_STATUSES = frozenset({JobStatus.SCHEDULED, JobStatus.IN_TRANSIT, JobStatus.DELIVERED})

BULK_ACTIONS: dict[str, JobStatus] = {
    "SCHEDULED": JobStatus.SCHEDULED,
    "IN_TRANSIT": JobStatus.IN_TRANSIT,
    "DELIVERED": JobStatus.DELIVERED,
    "CANCELLED": JobStatus.CANCELLED,
    "mark_scheduled": JobStatus.SCHEDULED,
    "mark_in_transit": JobStatus.IN_TRANSIT,
    "mark_delivered": JobStatus.DELIVERED,
    "mark_cancelled": JobStatus.CANCELLED,
}

POD_PHOTO_CAPTION = "Proof of Delivery"
SIGNATURE_CAPTION = "Customer Signature"


def resolve_transition(current: JobStatus, event: JobEvent) -> Optional[JobStatus]:
    """Next status for ``event`` from ``current``, or None when not allowed."""
    return _TRANSITIONS.get((current, event))


def is_valid_driver_transition(current: DriverStatus, target: DriverStatus) -> bool:
    if current == target:
        return True
    if current == DriverStatus.COMPLETED:
        return False
    if target == DriverStatus.PROBLEM:
        return True
    if target == DriverStatus.NOT_STARTED:
        return False
    if current == DriverStatus.PROBLEM:
        return True
    return _DRIVER_ORDER[target] > _DRIVER_ORDER[current]


def resolve_bulk_action(action: str) -> JobStatus:
    target = BULK_ACTIONS.get(action)
    if target is None:
        raise InvalidBulkAction(action, sorted(BULK_ACTIONS))
    return target


def derive_submission_id(job_id: str, photos: Sequence[str], signature: Optional[str]) -> str:
    """Content hash used as the POD idempotency key when the client sends none."""
    digest = hashlib.sha256()
    digest.update(job_id.encode("utf-8"))
    for url in photos:
        digest.update(b"\x00photo:" + url.encode("utf-8"))
    if signature:
        digest.update(b"\x00signature:" + signature.encode("utf-8"))
    return digest.hexdigest()


def _clear_placement(job: Job) -> None:
    """Drop the truck/slot a job no longer holds an assignment for."""
    job.truck_id = None
    job.time_slot_id = None


# ============================================================================
# RESULTS
# ============================================================================

@dataclass(frozen=True)
class ScheduleResult:
    job: Job
    assignment: Assignment
    capacity: CapacityReport


@dataclass(frozen=True)
class ProofOfDeliveryResult:
    job: Job
    submission_id: str
    duplicate: bool


@dataclass(frozen=True)
class _Mutation:
    before: Job
    after: Job
    changed: bool


# ============================================================================
# STATE MACHINE
# ============================================================================

class DispatchStateMachine:
    def __init__(
        self,
        jobs: AsyncJobRepository,
        allocator: ReferenceAllocator,
        assignments: AssignmentService,
        publisher: NotificationPublisher,
        *,
        max_update_attempts: int = 3,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._jobs = jobs
        self._allocator = allocator
        self._assignments = assignments
        self._publisher = publisher
        self._max_attempts = max(1, max_update_attempts)
        self._clock = clock

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_job(self, job_id: str) -> Job:
        job = await self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    # ------------------------------------------------------------------
    # Dispatcher operations
    # ------------------------------------------------------------------

    async def create_job(self, new_job: NewJob, actor: Actor) -> Job:
        """
        Allocate a reference number and persist the job as PENDING_APPROVAL.

        The counter is advanced before the job is stored; a failed insert
        leaves a gap in the customer's sequence.
        """
        with AppMetrics.track_operation("create_job"):
            reference = await self._allocator.allocate(new_job.customer_id)
            now = self._clock()
            job = await self._jobs.create(
                Job(
                    id=str(uuid.uuid4()),
                    customer_id=new_job.customer_id,
                    job_reference_number=reference,
                    customer_name=new_job.customer_name,
                    status=JobStatus.PENDING_APPROVAL,
                    driver_status=DriverStatus.NOT_STARTED,
                    delivery_location=new_job.delivery_location,
                    weight_kg=new_job.weight_kg,
                    sqm=new_job.sqm,
                    total_units=new_job.total_units,
                    requested_date=new_job.requested_date,
                    extra=dict(new_job.extra),
                    created_at=now,
                    updated_at=now,
                )
            )

        AppMetrics.job_created()
        LogContext(logger, job_id=job.id, customer_id=job.customer_id).info(
            f"Job created: ref={reference} by={actor.name}"
        )
        return job

    async def approve_job(self, job_id: str, actor: Actor) -> Job:
        return await self.set_status(job_id, JobStatus.APPROVED, actor)

    async def schedule_job(
        self,
        job_id: str,
        truck_id: str,
        on_date: date,
        time_slot_id: str,
        actor: Actor,
        slot_position: int = 1,
    ) -> ScheduleResult:
        """
        Put an approved job on a truck/date/slot, or move a scheduled one.

        Returns the job, its assignment and the capacity report of the
        target bucket. Overbooking is reported, never refused.
        """
        current = await self.get_job(job_id)
        self._check_schedulable(current)

        previous = await self._assignments.get_assignment(job_id)
        result = await self._assignments.assign(job_id, truck_id, on_date, time_slot_id, slot_position)

        def apply(job: Job) -> bool:
            self._check_schedulable(job)
            job.status = JobStatus.SCHEDULED
            job.truck_id = truck_id
            job.time_slot_id = time_slot_id
            return True

        try:
            mutation = await self._mutate(job_id, apply)
        except DispatchError:
            await self._restore_assignment(job_id, previous)
            raise

        AppMetrics.transition_applied("status", JobStatus.SCHEDULED.value)
        LogContext(logger, job_id=job_id, truck_id=truck_id).info(
            f"Job {'rescheduled' if mutation.before.status == JobStatus.SCHEDULED else 'scheduled'}: "
            f"{on_date.isoformat()} {time_slot_id} by={actor.name}"
        )
        return ScheduleResult(job=mutation.after, assignment=result.assignment, capacity=result.capacity)

    async def unschedule(self, job_id: str, actor: Actor) -> bool:
        """
        Take a scheduled job off its truck and back to APPROVED.

        An approved job is already unscheduled, so repeating the call only
        reports ``False``. Any other status is an invalid transition.
        """

        def apply(job: Job) -> bool:
            if job.status == JobStatus.APPROVED:
                return False
            next_status = resolve_transition(job.status, JobEvent.UNSCHEDULE)
            if next_status is None:
                AppMetrics.transition_rejected("status", JobStatus.APPROVED.value)
                raise InvalidTransition(job.id, job.status.value, JobStatus.APPROVED.value)
            job.status = next_status
            _clear_placement(job)
            return True

        mutation = await self._mutate(job_id, apply)
        removed = await self._assignments.unassign(job_id)
        if mutation.changed:
            AppMetrics.transition_applied("status", JobStatus.APPROVED.value)
            LogContext(logger, job_id=job_id).info(f"Job unscheduled by={actor.name}")
        return removed

    async def set_status(self, job_id: str, target: JobStatus | str, actor: Actor) -> Job:
        """
        Dispatcher-driven transition through the status table.

        Requesting the current status is a no-op. CANCELLED also removes the
        job's assignment; DELIVERED stamps the completion time once.
        """
        target = JobStatus(target)

        def apply(job: Job) -> bool:
            if job.status == target:
                return False
            next_status = resolve_transition(job.status, EVENT_FOR_STATUS.get(target))
            if next_status is None:
                AppMetrics.transition_rejected("status", target.value)
                raise InvalidTransition(job.id, job.status.value, target.value)
            job.status = next_status
            if next_status == JobStatus.CANCELLED:
                _clear_placement(job)
            if next_status == JobStatus.DELIVERED and job.actual_completion_time is None:
                job.actual_completion_time = self._clock()
            return True

        mutation = await self._mutate(job_id, apply)
        if not mutation.changed:
            return mutation.after

        if target == JobStatus.CANCELLED:
            await self._assignments.unassign(job_id)

        AppMetrics.transition_applied("status", target.value)
        LogContext(logger, job_id=job_id).info(
            f"Status changed: {mutation.before.status.value} -> {target.value} by={actor.name}"
        )
        return mutation.after

    async def confirm_return(
        self,
        job_id: str,
        reason: Optional[str],
        notes: Optional[str],
        actor: Actor,
    ) -> Job:
        """Mark an in-transit job as returned to the supplier and notify."""

        def apply(job: Job) -> bool:
            if job.status == JobStatus.RETURNED:
                return False
            if resolve_transition(job.status, JobEvent.RETURN) is None:
                AppMetrics.transition_rejected("status", JobStatus.RETURNED.value)
                raise InvalidTransition(job.id, job.status.value, JobStatus.RETURNED.value)
            job.status = JobStatus.RETURNED
            job.return_reason = reason
            job.return_notes = notes
            job.returned_by = actor.name
            job.returned_at = self._clock()
            _clear_placement(job)
            return True

        mutation = await self._mutate(job_id, apply)
        if not mutation.changed:
            return mutation.after

        await self._assignments.unassign(job_id)
        AppMetrics.transition_applied("status", JobStatus.RETURNED.value)
        LogContext(logger, job_id=job_id).info(f"Job returned: reason={reason!r} by={actor.name}")

        await self._publish(batches.delivery_returned_batches(mutation.after, actor))
        return mutation.after

    async def bulk_apply_status(self, job_ids: Sequence[str], action: str, actor: Actor) -> list[BulkResult]:
        """
        Apply one status to many jobs, each independently.

        An unknown action is rejected before any job is touched. Results
        come back in input order.
        """
        target = resolve_bulk_action(action)

        async def _one(job_id: str) -> BulkResult:
            try:
                await self.set_status(job_id, target, actor)
            except DispatchError as e:
                return BulkResult(job_id=job_id, success=False, error=e.detail)
            return BulkResult(job_id=job_id, success=True)

        outcomes = await asyncio.gather(*(_one(job_id) for job_id in job_ids), return_exceptions=True)

        results: list[BulkResult] = []
        for job_id, outcome in zip(job_ids, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(
                    f"Bulk {target.value} failed unexpectedly: {outcome.__class__.__name__}: {outcome}",
                    extra={"job_id": job_id},
                )
                outcome = BulkResult(job_id=job_id, success=False, error="Internal error")
            AppMetrics.bulk_result(target.value, outcome.success)
            results.append(outcome)

        succeeded = sum(1 for r in results if r.success)
        logger.info(f"Bulk {action}: {succeeded}/{len(results)} jobs updated by={actor.name}")
        return results

    # ------------------------------------------------------------------
    # Driver operations
    # ------------------------------------------------------------------

    async def apply_driver_status(self, job_id: str, new_status: DriverStatus | str, actor: Actor) -> Job:
        """
        Record driver progress reported from the mobile app.

        A SCHEDULED job moves to IN_TRANSIT on the first progress update;
        COMPLETED delivers the job. Repeating the current status only
        refreshes the updated-at/by stamps.
        """
        new_status = DriverStatus(new_status)

        def apply(job: Job) -> bool:
            repeat_completed = job.status == JobStatus.DELIVERED and new_status == DriverStatus.COMPLETED
            if job.status not in DRIVER_ACTIVE_STATUSES and not repeat_completed:
                AppMetrics.transition_rejected("driver", new_status.value)
                raise InvalidTransition(job.id, job.status.value, new_status.value, field="driver_status")
            if not is_valid_driver_transition(job.driver_status, new_status):
                AppMetrics.transition_rejected("driver", new_status.value)
                raise InvalidTransition(
                    job.id, job.driver_status.value, new_status.value, field="driver_status"
                )

            now = self._clock()
            job.driver_status = new_status
            job.driver_status_updated_at = now
            job.driver_status_updated_by = actor.name

            if job.status == JobStatus.SCHEDULED and new_status != DriverStatus.NOT_STARTED:
                job.status = JobStatus.IN_TRANSIT
            if new_status == DriverStatus.ARRIVED and job.actual_arrival_time is None:
                job.actual_arrival_time = now
            if new_status == DriverStatus.COMPLETED:
                job.status = JobStatus.DELIVERED
                if job.actual_completion_time is None:
                    job.actual_completion_time = now
            return True

        mutation = await self._mutate(job_id, apply)
        before, after = mutation.before, mutation.after

        AppMetrics.transition_applied("driver", new_status.value)
        LogContext(logger, job_id=job_id).info(
            f"Driver status: {before.driver_status.value} -> {new_status.value} "
            f"(job {before.status.value} -> {after.status.value}) by={actor.name}"
        )

        await self._publish([batches.driver_status_batch(after, before.driver_status, new_status, actor)])
        return after

    async def submit_proof_of_delivery(
        self,
        job_id: str,
        photos: Sequence[str],
        signature: Optional[str],
        notes: Optional[str],
        actor: Actor,
        submission_id: Optional[str] = None,
    ) -> ProofOfDeliveryResult:
        """
        Attach photos and/or a signature and complete the delivery.

        ``submission_id`` (or a hash of the payload when absent) makes the
        call idempotent: a repeated submission changes nothing and notifies
        nobody.

        Raises:
            EmptyProofOfDelivery: neither photos nor a signature
            JobNotFound, InvalidTransition, ConcurrencyConflict
        """
        photos = [p for p in photos if p]
        if not photos and not signature:
            raise EmptyProofOfDelivery(job_id)
        submission_id = submission_id or derive_submission_id(job_id, photos, signature)

        def apply(job: Job) -> bool:
            if submission_id in job.pod_submission_ids:
                return False
            if job.status not in POD_ALLOWED_STATUSES:
                AppMetrics.transition_rejected("pod", JobStatus.DELIVERED.value)
                raise InvalidTransition(job.id, job.status.value, JobStatus.DELIVERED.value)

            now = self._clock()
            job.pod_files.extend(photos)
            job.job_photos.extend(
                JobPhoto(url=url, caption=POD_PHOTO_CAPTION, timestamp=now, uploaded_by=actor.name)
                for url in photos
            )
            if signature:
                job.pod_files.append(signature)
                job.job_photos.append(
                    JobPhoto(url=signature, caption=SIGNATURE_CAPTION, timestamp=now, uploaded_by=actor.name)
                )
            job.pod_notes = notes or job.pod_notes
            job.pod_submission_ids.append(submission_id)

            job.status = JobStatus.DELIVERED
            job.driver_status = DriverStatus.COMPLETED
            job.driver_status_updated_at = now
            job.driver_status_updated_by = actor.name
            if job.actual_completion_time is None:
                job.actual_completion_time = now
            return True

        mutation = await self._mutate(job_id, apply)
        log = LogContext(logger, job_id=job_id)

        if not mutation.changed:
            AppMetrics.pod_duplicate()
            log.info(f"Duplicate POD submission ignored: {submission_id}")
            return ProofOfDeliveryResult(job=mutation.after, submission_id=submission_id, duplicate=True)

        AppMetrics.transition_applied("pod", JobStatus.DELIVERED.value)
        log.info(
            f"POD submitted: photos={len(photos)} signature={bool(signature)} by={actor.name}"
        )

        await self._publish([
            batches.pod_submitted_batch(mutation.after, mutation.before.driver_status, actor, submission_id),
            batches.delivery_completed_batch(mutation.after),
        ])
        return ProofOfDeliveryResult(job=mutation.after, submission_id=submission_id, duplicate=False)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _check_schedulable(self, job: Job) -> None:
        if job.status not in (JobStatus.APPROVED, JobStatus.SCHEDULED):
            AppMetrics.transition_rejected("status", JobStatus.SCHEDULED.value)
            raise InvalidTransition(job.id, job.status.value, JobStatus.SCHEDULED.value)

    async def _restore_assignment(self, job_id: str, previous: Optional[Assignment]) -> None:
        """Put the job's assignment back the way it was before a failed schedule."""
        if previous is None:
            await self._assignments.unassign(job_id)
            return
        await self._assignments.assign(
            job_id, previous.truck_id, previous.date, previous.time_slot_id, previous.slot_position
        )
        LogContext(logger, job_id=job_id, truck_id=previous.truck_id).warning(
            f"Schedule failed, assignment restored: {previous.date.isoformat()} {previous.time_slot_id}"
        )

    async def _mutate(self, job_id: str, apply: Callable[[Job], bool]) -> _Mutation:
        """
        Read-modify-write with a version check.

        ``apply`` edits a copy of the job in place and returns False when
        there is nothing to write. It may raise a ``DispatchError``.
        """
        for attempt in range(1, self._max_attempts + 1):
            current = await self._jobs.get(job_id)
            if current is None:
                raise JobNotFound(job_id)

            draft = copy.deepcopy(current)
            if not apply(draft):
                return _Mutation(before=current, after=current, changed=False)
            draft.updated_at = self._clock()

            try:
                saved = await self._jobs.update(draft, expected_version=current.version)
            except StaleJobVersion:
                AppMetrics.version_conflict()
                logger.warning(
                    f"Version conflict on attempt {attempt}/{self._max_attempts}",
                    extra={"job_id": job_id},
                )
                continue
            return _Mutation(before=current, after=saved, changed=True)

        raise ConcurrencyConflict(job_id, self._max_attempts)

    async def _publish(self, pending: list[NotificationBatch]) -> None:
        outcomes = await asyncio.gather(
            *(self._publisher.publish(batch) for batch in pending),
            return_exceptions=True,
        )
        for batch, outcome in zip(pending, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(
                    f"Notification publish failed for '{batch.title}': {outcome}",
                    extra={"job_id": batch.job_id},
                )

# truckdesk/infra/container.py
"""
Object graph for the dispatch core, for either storage backend.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from truckdesk.config import Settings
from truckdesk.core.dispatch.assignments import AssignmentService
from truckdesk.core.dispatch.capacity import CapacityPlanner
from truckdesk.core.dispatch.jobs import make_fan_out_handler
from truckdesk.core.dispatch.notifications import (
    TASK_FAN_OUT_NOTIFICATIONS,
    DirectNotificationPublisher,
    NotificationPublisher,
    QueuedNotificationPublisher,
)
from truckdesk.core.dispatch.ports import AsyncNotificationSink, AsyncUserDirectory
from truckdesk.core.dispatch.reference import ReferenceAllocator
from truckdesk.core.dispatch.state_machine import DispatchStateMachine
from truckdesk.infra.logging_config import get_logger
from truckdesk.infra.memory_store import (
    MemoryAssignmentStore,
    MemoryCounterStore,
    MemoryDirectory,
    MemoryJobRepository,
    MemoryNotificationSink,
    MemoryStore,
)
from truckdesk.infra.pg_task_queue_async import AsyncPostgresTaskQueue
from truckdesk.infra.task_worker import TaskWorker

logger = get_logger(__name__)


@dataclass
class DispatchContainer:
    backend: str
    allocator: ReferenceAllocator
    planner: CapacityPlanner
    assignments: AssignmentService
    publisher: NotificationPublisher
    state_machine: DispatchStateMachine
    users: AsyncUserDirectory
    notification_sink: AsyncNotificationSink
    task_queue: Optional[AsyncPostgresTaskQueue] = None
    memory: Optional[MemoryStore] = None

    def build_task_worker(self, s: Settings) -> TaskWorker:
        if self.task_queue is None:
            raise RuntimeError("Task worker needs the postgres task queue")
        worker = TaskWorker(
            self.task_queue,
            poll_interval=s.task_worker_poll_interval,
            batch_size=s.task_worker_batch_size,
            base_retry_delay=s.task_worker_base_retry_delay,
            stale_timeout=s.task_worker_stale_timeout,
            completed_ttl_days=s.task_cleanup_completed_ttl_days,
            failed_ttl_days=s.task_cleanup_failed_ttl_days,
        )
        worker.register(
            TASK_FAN_OUT_NOTIFICATIONS,
            make_fan_out_handler(self.users, self.notification_sink),
        )
        return worker


def _assemble(
    s: Settings,
    *,
    backend: str,
    customers,
    trucks,
    users,
    counters,
    jobs,
    assignment_store,
    sink,
    publisher: NotificationPublisher,
    task_queue: Optional[AsyncPostgresTaskQueue] = None,
    memory: Optional[MemoryStore] = None,
) -> DispatchContainer:
    allocator = ReferenceAllocator(customers, counters, timezone=s.dispatch_timezone)
    planner = CapacityPlanner(warning_threshold=s.capacity_warning_threshold)
    assignments = AssignmentService(
        assignment_store, jobs, trucks, planner, timezone=s.dispatch_timezone
    )
    state_machine = DispatchStateMachine(
        jobs,
        allocator,
        assignments,
        publisher,
        max_update_attempts=s.job_update_max_attempts,
    )
    return DispatchContainer(
        backend=backend,
        allocator=allocator,
        planner=planner,
        assignments=assignments,
        publisher=publisher,
        state_machine=state_machine,
        users=users,
        notification_sink=sink,
        task_queue=task_queue,
        memory=memory,
    )


def build_memory_container(s: Settings, store: Optional[MemoryStore] = None) -> DispatchContainer:
    """In-process backend. Notifications are always delivered directly."""
    store = store or MemoryStore()
    directory = MemoryDirectory(store)
    sink = MemoryNotificationSink(store)
    return _assemble(
        s,
        backend="memory",
        customers=directory,
        trucks=directory,
        users=directory,
        counters=MemoryCounterStore(store),
        jobs=MemoryJobRepository(store),
        assignment_store=MemoryAssignmentStore(store),
        sink=sink,
        publisher=DirectNotificationPublisher(directory, sink),
        memory=store,
    )


def build_postgres_container(s: Settings) -> DispatchContainer:
    from truckdesk.infra.pg_assignment_repo_async import AsyncPostgresAssignmentStore
    from truckdesk.infra.pg_counter_repo_async import AsyncPostgresCounterStore
    from truckdesk.infra.pg_delivery_job_repo_async import AsyncPostgresDeliveryJobRepository
    from truckdesk.infra.pg_directory_repo_async import AsyncPostgresDirectory
    from truckdesk.infra.pg_notification_repo_async import AsyncPostgresNotificationSink
    from truckdesk.infra.pg_task_queue_async import get_task_queue

    directory = AsyncPostgresDirectory()
    sink = AsyncPostgresNotificationSink()
    queue = get_task_queue()

    publisher: NotificationPublisher
    if s.notification_delivery == "queued":
        publisher = QueuedNotificationPublisher(queue)
    else:
        publisher = DirectNotificationPublisher(directory, sink)

    return _assemble(
        s,
        backend="postgres",
        customers=directory,
        trucks=directory,
        users=directory,
        counters=AsyncPostgresCounterStore(),
        jobs=AsyncPostgresDeliveryJobRepository(),
        assignment_store=AsyncPostgresAssignmentStore(),
        sink=sink,
        publisher=publisher,
        task_queue=queue,
    )


def build_container(s: Settings) -> DispatchContainer:
    if s.storage_backend == "memory":
        if s.notification_delivery == "queued":
            logger.info("Memory backend: notifications delivered directly")
        return build_memory_container(s)
    return build_postgres_container(s)

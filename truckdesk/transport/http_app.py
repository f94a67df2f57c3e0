# truckdesk/transport/http_app.py
"""
Dispatch HTTP API.

Security layers:
1. Public: /health only
2. Protected: every other route requires the API bearer token when configured
3. No information leakage in production (sanitized 500s, no docs)

Run:
    uvicorn truckdesk.transport.http_app:app
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from truckdesk.config import settings
from truckdesk.core.dispatch.domain import Actor
from truckdesk.core.dispatch.errors import DispatchError
from truckdesk.infra.container import DispatchContainer, build_container
from truckdesk.infra.logging_config import get_logger, setup_logging
from truckdesk.infra.metrics import get_metrics_collector
from truckdesk.transport.middleware import (
    ErrorHandlingMiddleware,
    RequestIDMiddleware,
    RequestLoggingMiddleware,
    SecurityHeadersMiddleware,
)
from truckdesk.transport.schemas import (
    ActorOnlyIn,
    AssignmentOut,
    BulkResultOut,
    BulkStatusIn,
    BulkStatusOut,
    CapacityOut,
    DriverStatusIn,
    JobCreateIn,
    JobOut,
    ProofOfDeliveryIn,
    ProofOfDeliveryOut,
    ReturnIn,
    RunListItemOut,
    RunListOut,
    ScheduleIn,
    ScheduleOut,
    StatusIn,
    UnassignOut,
)
from truckdesk.transport.security import (
    check_configured_token,
    require_api_token,
    sanitize_error_message,
)

logger = get_logger(__name__)


def get_container(request: Request) -> DispatchContainer:
    return request.app.state.container


# ============================================================================
# LIFECYCLE
# ============================================================================

@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    """Startup: pool, schema check, optional task worker. Shutdown in reverse."""
    container: DispatchContainer = fastapi_app.state.container
    logger.info(f"Starting dispatch API: env={settings.app_env}, backend={container.backend}")

    check_configured_token(fastapi_app.state.api_token)

    worker = None
    if container.backend == "postgres":
        from truckdesk.infra.db_async import close_pool, init_pool
        from truckdesk.infra.schema_validator import validate_schema_version

        await init_pool()
        try:
            # Does NOT run migrations: python -m truckdesk.infra.migrate
            await validate_schema_version()
        except Exception:
            await close_pool()
            raise

        if settings.task_worker_enabled:
            worker = container.build_task_worker(settings)
            fastapi_app.state.task_worker = worker
            await worker.start()
        else:
            logger.info("Task worker skipped (task_worker_enabled=false)")

    yield

    logger.info("Shutting down dispatch API")
    if worker is not None:
        await worker.stop()
    if container.backend == "postgres":
        from truckdesk.infra.db_async import close_pool
        await close_pool()


# ============================================================================
# ROUTES
# ============================================================================

public = APIRouter()
router = APIRouter(dependencies=[Depends(require_api_token)])


@public.get("/health")
def health(request: Request):
    """Liveness probe. Minimal information, no authentication."""
    return {"status": "healthy", "backend": request.app.state.container.backend}


@router.get("/metrics")
def metrics():
    if not settings.enable_metrics:
        raise HTTPException(status_code=404, detail="Not found")
    return get_metrics_collector().get_metrics()


@router.get("/tasks")
async def tasks_status(request: Request, c: DispatchContainer = Depends(get_container)):
    """Background worker state and notification task counts by status."""
    worker = request.app.state.task_worker
    counts = await c.task_queue.count_by_status() if c.task_queue is not None else {}
    return {
        "backend": c.backend,
        "workerRunning": worker is not None and worker.running,
        "handlers": worker.list_handlers() if worker is not None else [],
        "counts": counts,
    }


# --- Dispatcher ---------------------------------------------------------------

@router.post("/jobs", response_model=JobOut, status_code=201)
async def create_job(body: JobCreateIn, c: DispatchContainer = Depends(get_container)):
    job = await c.state_machine.create_job(body.to_domain(), body.actor.to_domain())
    return JobOut.from_domain(job)


@router.post("/jobs/bulk-status", response_model=BulkStatusOut)
async def bulk_status(body: BulkStatusIn, c: DispatchContainer = Depends(get_container)):
    results = await c.state_machine.bulk_apply_status(body.job_ids, body.action, body.actor.to_domain())
    succeeded = sum(1 for r in results if r.success)
    return BulkStatusOut(
        action=body.action,
        succeeded=succeeded,
        failed=len(results) - succeeded,
        results=[BulkResultOut.from_domain(r) for r in results],
    )


@router.get("/jobs/{job_id}", response_model=JobOut)
async def get_job(job_id: str, c: DispatchContainer = Depends(get_container)):
    return JobOut.from_domain(await c.state_machine.get_job(job_id))


@router.post("/jobs/{job_id}/approve", response_model=JobOut)
async def approve_job(job_id: str, body: ActorOnlyIn, c: DispatchContainer = Depends(get_container)):
    job = await c.state_machine.approve_job(job_id, body.actor.to_domain())
    return JobOut.from_domain(job)


@router.post("/jobs/{job_id}/schedule", response_model=ScheduleOut)
async def schedule_job(job_id: str, body: ScheduleIn, c: DispatchContainer = Depends(get_container)):
    result = await c.state_machine.schedule_job(
        job_id,
        body.truck_id,
        body.date,
        body.time_slot_id,
        body.actor.to_domain(),
        slot_position=body.slot_position,
    )
    return ScheduleOut(
        job=JobOut.from_domain(result.job),
        assignment=AssignmentOut.from_domain(result.assignment),
        capacity=CapacityOut.from_domain(result.capacity),
    )


@router.delete("/jobs/{job_id}/assignment", response_model=UnassignOut)
async def unassign_job(
    job_id: str,
    actor_id: str = Query("dispatcher", alias="actorId"),
    actor_name: str = Query("Dispatcher", alias="actorName"),
    c: DispatchContainer = Depends(get_container),
):
    removed = await c.state_machine.unschedule(job_id, Actor(id=actor_id, name=actor_name))
    return UnassignOut(job_id=job_id, removed=removed)


@router.post("/jobs/{job_id}/status", response_model=JobOut)
async def set_status(job_id: str, body: StatusIn, c: DispatchContainer = Depends(get_container)):
    job = await c.state_machine.set_status(job_id, body.status, body.actor.to_domain())
    return JobOut.from_domain(job)


@router.post("/jobs/{job_id}/return", response_model=JobOut)
async def confirm_return(job_id: str, body: ReturnIn, c: DispatchContainer = Depends(get_container)):
    job = await c.state_machine.confirm_return(job_id, body.reason, body.notes, body.actor.to_domain())
    return JobOut.from_domain(job)


@router.get("/trucks/{truck_id}/capacity", response_model=CapacityOut)
async def truck_capacity(
    truck_id: str,
    on_date: date = Query(..., alias="date"),
    slot: str = Query(..., min_length=1),
    c: DispatchContainer = Depends(get_container),
):
    report = await c.assignments.capacity_for(truck_id, on_date, slot)
    return CapacityOut.from_domain(report)


# --- Driver mobile app --------------------------------------------------------

@router.post("/mobile/jobs/{job_id}/driver-status", response_model=JobOut)
async def driver_status(job_id: str, body: DriverStatusIn, c: DispatchContainer = Depends(get_container)):
    job = await c.state_machine.apply_driver_status(job_id, body.driver_status, body.actor.to_domain())
    return JobOut.from_domain(job)


@router.post("/mobile/jobs/{job_id}/pod", response_model=ProofOfDeliveryOut)
async def submit_pod(job_id: str, body: ProofOfDeliveryIn, c: DispatchContainer = Depends(get_container)):
    result = await c.state_machine.submit_proof_of_delivery(
        job_id,
        body.photos,
        body.signature,
        body.notes,
        body.actor.to_domain(),
        submission_id=body.submission_id,
    )
    return ProofOfDeliveryOut(
        job=JobOut.from_domain(result.job),
        submission_id=result.submission_id,
        duplicate=result.duplicate,
    )


@router.get("/mobile/trucks/{truck_id}/runs", response_model=RunListOut)
async def truck_runs(
    truck_id: str,
    date_from: Optional[date] = Query(None, alias="from"),
    date_to: Optional[date] = Query(None, alias="to"),
    c: DispatchContainer = Depends(get_container),
):
    date_from = date_from or c.assignments.today()
    entries = await c.assignments.run_list(truck_id, date_from, date_to)
    return RunListOut(
        truck_id=truck_id,
        date_from=date_from,
        date_to=date_to,
        items=[RunListItemOut.from_domain(e) for e in entries],
    )


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

async def dispatch_error_handler(request: Request, exc: DispatchError):
    if exc.status_code >= 500:
        logger.error(f"Dispatch error: {exc.detail}", exc_info=True)
    else:
        logger.info(f"{exc.code}: {exc.detail}", extra={"request_id": getattr(request.state, "request_id", None)})
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={"error": "Invalid request", "details": {"errors": jsonable_encoder(exc.errors())}},
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code >= 500:
        logger.error(f"Server error: {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail, "details": {}},
        headers=exc.headers,
    )


async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc.__class__.__name__}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "details": {"message": sanitize_error_message(exc, settings.is_production)},
        },
    )


# ============================================================================
# CREATE APP
# ============================================================================

def create_app(
    container: DispatchContainer | None = None,
    *,
    api_token: str | None = None,
) -> FastAPI:
    """
    Build the API around ``container`` (default: from settings).

    ``api_token`` defaults to ``settings.api_token``.
    """
    fastapi_app = FastAPI(
        title="Truckdesk Dispatch",
        description="Job references, status lifecycle and truck capacity for delivery dispatch",
        version="1.0.0",
        lifespan=lifespan,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None if settings.is_production else "/redoc",
        openapi_url=None if settings.is_production else "/openapi.json",
    )
    fastapi_app.state.container = container or build_container(settings)
    fastapi_app.state.api_token = api_token if api_token is not None else settings.api_token
    fastapi_app.state.task_worker = None

    if settings.is_production or settings.is_staging:
        fastapi_app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.allowed_origins if settings.allowed_origins != ["*"] else [],
            allow_credentials=False,
            allow_methods=["GET", "POST", "DELETE"],
            allow_headers=["Content-Type", "Authorization"],
        )
    else:
        fastapi_app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=False,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    fastapi_app.add_middleware(SecurityHeadersMiddleware)
    fastapi_app.add_middleware(ErrorHandlingMiddleware)
    fastapi_app.add_middleware(RequestLoggingMiddleware, enabled=settings.enable_request_logging)
    fastapi_app.add_middleware(RequestIDMiddleware)

    fastapi_app.add_exception_handler(DispatchError, dispatch_error_handler)
    fastapi_app.add_exception_handler(RequestValidationError, validation_error_handler)
    fastapi_app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    fastapi_app.add_exception_handler(Exception, general_exception_handler)

    fastapi_app.include_router(public)
    fastapi_app.include_router(router)
    return fastapi_app


setup_logging(level=settings.log_level, use_json=settings.is_production)
app = create_app()

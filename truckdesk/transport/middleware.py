# truckdesk/transport/middleware.py
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from truckdesk.infra.logging_config import LogContext, get_logger
from truckdesk.infra.metrics import inc_counter, observe_histogram
from truckdesk.transport.security import SecurityHeaders

logger = get_logger(__name__)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Add unique request ID to each request for tracing"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log requests and record latency per route"""

    def __init__(self, app: ASGIApp, enabled: bool = True):
        super().__init__(app)
        self.enabled = enabled

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not self.enabled:
            return await call_next(request)

        request_id = getattr(request.state, "request_id", "unknown")
        start_time = time.time()
        log_ctx = LogContext(logger, request_id=request_id)

        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = (time.time() - start_time) * 1000
            log_ctx.error(
                f"Request failed: {request.method} {request.url.path} "
                f"error={exc.__class__.__name__} duration={duration_ms:.2f}ms",
                exc_info=True,
            )
            raise

        duration_ms = (time.time() - start_time) * 1000
        log_ctx.info(
            f"{request.method} {request.url.path} "
            f"status={response.status_code} duration={duration_ms:.2f}ms"
        )
        inc_counter("http_requests_total", method=request.method, status=response.status_code)
        observe_histogram("http_request_duration_ms", duration_ms, method=request.method)
        return response


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Last-resort JSON 500 for exceptions that escape the exception handlers"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            request_id = getattr(request.state, "request_id", "unknown")
            logger.error(
                f"Unhandled exception: {exc.__class__.__name__}: {exc}",
                extra={"request_id": request_id},
                exc_info=True,
            )
            return JSONResponse(
                status_code=500,
                content={
                    "error": "Internal server error",
                    "details": {"request_id": request_id},
                },
            )


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        return SecurityHeaders.add_security_headers(response)

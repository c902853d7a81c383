"""HTTP middleware: request correlation, timing and unhandled-error logging."""

import time
import uuid
from typing import Any, Callable, Dict

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from expert_booking.utils.logging import get_logger, log_error, log_request, set_request_id

logger = get_logger("middleware")

# Path parameters copied onto request log lines so a booking can be traced
BOOKING_PATH_PARAMS = ("expert_id", "appointment_id", "client_id")

SLOW_REQUEST_MS = 1000.0


def _booking_context(request: Request) -> Dict[str, Any]:
    # Routing fills path_params on the shared scope once the route matched
    params = request.scope.get("path_params") or {}
    return {key: params[key] for key in BOOKING_PATH_PARAMS if key in params}


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Propagate X-Request-ID, generating one when the caller sent none."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        set_request_id(request_id)

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class TimingMiddleware(BaseHTTPMiddleware):
    """Log each request with its duration and booking identifiers."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - started) * 1000

        context = _booking_context(request)
        log_request(
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=duration_ms,
            client_ip=request.client.host if request.client else None,
            **context,
        )
        if duration_ms > SLOW_REQUEST_MS:
            logger.warning(
                f"Slow request {request.method} {request.url.path}: {duration_ms:.0f}ms",
                extra={"extra_fields": context},
            )

        response.headers["X-Process-Time"] = f"{duration_ms:.2f}ms"
        return response


class ErrorLoggingMiddleware(BaseHTTPMiddleware):
    """Log exceptions that escaped every exception handler, then re-raise."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as e:
            log_error(
                e,
                context={
                    "method": request.method,
                    "path": request.url.path,
                    **_booking_context(request),
                },
            )
            raise


def setup_middleware(app: ASGIApp) -> None:
    """Register middleware; the last one added runs first."""
    app.add_middleware(ErrorLoggingMiddleware)
    app.add_middleware(TimingMiddleware)
    app.add_middleware(RequestIDMiddleware)

    logger.info("Middleware configured: RequestID, Timing, ErrorLogging")

"""FastAPI application entry point.

This module creates and configures the FastAPI application instance with:
- Application metadata and OpenAPI documentation
- Middleware (RequestID, Timing, ErrorLogging)
- Exception handlers (APIException, HTTPException, ValidationError, general)
- API routers (v1)
- Health check endpoint (/health)
- Startup/shutdown lifecycle management (database)
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from expert_booking.config import get_settings
from expert_booking.database import close_db, init_db
from expert_booking.exceptions import APIException
from expert_booking.middleware import setup_middleware
from expert_booking.utils.logging import get_logger, log_error, setup_logging

# Set up logging first
setup_logging()
logger = get_logger("main")

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the database pool on startup and close it on shutdown."""
    logger.info("Starting expert booking service...")
    try:
        await init_db()
        if not settings.stripe.is_configured:
            logger.warning("Stripe is not configured - reservations will fail to open payments")
        if not settings.google.is_configured:
            logger.info("Google Calendar is not configured - calendar overlays stay disconnected")
        logger.info("Expert booking service started successfully")
        yield
    except Exception as e:
        logger.error(f"Failed to start expert booking service: {e}", exc_info=True)
        raise
    finally:
        logger.info("Shutting down expert booking service...")
        await close_db()
        logger.info("Expert booking service shut down successfully")


app = FastAPI(
    title="Expert Booking API",
    description=(
        "Expert availability and paid consultation booking. Computes bookable slots "
        "across timezones, reserves them without double-booking, and confirms them "
        "against card payments."
    ),
    version="0.1.0",
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    openapi_url="/openapi.json" if settings.debug else None,
    debug=settings.debug,
    lifespan=lifespan,
    openapi_tags=[
        {"name": "availability", "description": "Weekly windows, blocked time and bookable slots"},
        {"name": "bookings", "description": "Reservations, payments, cancellations and no-shows"},
        {"name": "payouts", "description": "Expert Stripe Connect payout accounts"},
        {"name": "timezones", "description": "Timezone picker data"},
        {"name": "v1", "description": "API v1 information and metadata"},
    ],
)

setup_middleware(app)

from expert_booking.api.v1.router import router as v1_router  # noqa: E402

app.include_router(v1_router)


@app.exception_handler(APIException)
async def api_exception_handler(request: Request, exc: APIException) -> JSONResponse:
    """Handle custom API exceptions."""
    context = {
        "method": request.method,
        "path": request.url.path,
        "status_code": exc.status_code,
        "code": exc.code,
    }
    if exc.status_code >= 500:
        log_error(exc, context=context)
    else:
        logger.warning(f"{exc.code}: {exc.message}", extra={"extra_fields": context})
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    """Handle HTTP exceptions (404, etc.)."""
    if exc.status_code == 404:
        logger.warning(f"404 Not Found: {request.method} {request.url.path}")
    else:
        log_error(
            exc,
            context={
                "method": request.method,
                "path": request.url.path,
                "status_code": exc.status_code,
            },
        )

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "message": exc.detail,
                "code": "HTTP_ERROR",
                "status_code": exc.status_code,
                "details": {},
            }
        },
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle request validation errors."""
    errors = []
    for error in exc.errors():
        errors.append(
            {
                "field": ".".join(str(loc) for loc in error.get("loc", [])),
                "message": error.get("msg"),
                "type": error.get("type"),
            }
        )

    logger.warning(f"Validation error: {request.method} {request.url.path}")

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": {
                "message": "Validation failed",
                "code": "VALIDATION_ERROR",
                "status_code": 422,
                "details": {
                    "validation_errors": errors,
                },
            }
        },
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle all other unhandled exceptions."""
    log_error(
        exc,
        context={
            "method": request.method,
            "path": request.url.path,
            "unhandled": True,
        },
    )

    # Don't expose internal error details in production
    message = "An internal server error occurred" if settings.is_production else str(exc)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": {
                "message": message,
                "code": "INTERNAL_SERVER_ERROR",
                "status_code": 500,
                "details": {} if settings.is_production else {"exception_type": type(exc).__name__},
            }
        },
    )


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "app_name": settings.app_name,
        "environment": settings.environment.value,
        "integrations": {
            "stripe": settings.stripe.is_configured,
            "google_calendar": settings.google.is_configured,
            "sendgrid": settings.sendgrid.is_configured,
            "twilio": settings.twilio.is_configured,
        },
    }

"""
FastAPI API Service Entry Point
"""

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from api.routes import appointments, maintenance, policy
from scheduling.errors import (
    ApplyAborted,
    GuardViolation,
    NotAuthorized,
    NotFound,
    PolicyValidationError,
    ResourceBusy,
    SchedulingError,
    StaleVersion,
)
from shared.config import get_settings
from shared.logging_config import configure_logging

# Configure structured JSON logging on startup
configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Clinica Scheduling API",
    version="1.0.0",
)

# Load settings for CORS configuration
settings = get_settings()
origins = settings.CORS_ORIGINS.split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(maintenance.router)
app.include_router(policy.router)
app.include_router(appointments.router)


# Scheduling error -> HTTP status. Checked in order, so subclasses first.
ERROR_STATUS_CODES: list[tuple[type[SchedulingError], int]] = [
    (PolicyValidationError, 422),
    (GuardViolation, 409),
    (StaleVersion, 409),
    (ApplyAborted, 409),
    (ResourceBusy, 423),
    (NotFound, 404),
    (NotAuthorized, 403),
]


def status_code_for(exc: SchedulingError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            return status_code
    return 400


@app.exception_handler(SchedulingError)
async def scheduling_exception_handler(request: Request, exc: SchedulingError) -> JSONResponse:
    """Return the error's code, detail and fields with the mapped status."""
    status_code = status_code_for(exc)
    logger.info(
        f"{request.method} {request.url.path} -> {status_code} {exc.code}: {exc.message}",
        extra={"request_path": request.url.path},
    )
    return JSONResponse(status_code=status_code, content=exc.to_dict())


# Exception handler for validation errors
@app.exception_handler(ValidationError)
async def validation_exception_handler(request: Request, exc: ValidationError) -> JSONResponse:
    """Return 400 with validation error details."""
    return JSONResponse(
        status_code=400,
        content={"error": "Validation error", "details": exc.errors()},
    )


@app.on_event("shutdown")
async def close_connections() -> None:
    if settings.LOCK_BACKEND == "redis":
        from shared.redis_client import close_redis_client

        await close_redis_client()


@app.get("/health")
async def health_check() -> JSONResponse:
    """
    Health check endpoint for Docker health checks and monitoring.

    Checks:
    - Redis connectivity (PING command), when Redis locks are in use
    - PostgreSQL connectivity (SELECT 1 query)

    Returns:
        200 OK if all systems healthy
        503 Service Unavailable if degraded
    """
    from sqlalchemy import text

    from database.connection import get_async_session

    health_status = {
        "status": "healthy",
        "redis": "unused",
        "database": "unknown",
    }
    status_code = 200

    if settings.LOCK_BACKEND == "redis":
        from shared.redis_client import get_redis_client

        try:
            redis_client = get_redis_client()
            await redis_client.ping()
            health_status["redis"] = "connected"
        except Exception:
            health_status["redis"] = "disconnected"
            health_status["status"] = "degraded"
            status_code = 503

    try:
        async with get_async_session() as session:
            await session.execute(text("SELECT 1"))
            health_status["database"] = "connected"
    except Exception:
        health_status["database"] = "disconnected"
        health_status["status"] = "degraded"
        status_code = 503

    return JSONResponse(status_code=status_code, content=health_status)

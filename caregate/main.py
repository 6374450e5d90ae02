"""caregate FastAPI application."""

from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded

from caregate import __version__
from caregate.config import settings, validate_secret_key
from caregate.core.errors import AccessControlError, access_control_error_handler
from caregate.database import close_database
from caregate.logging_config import get_logger, setup_logging
from caregate.middleware import CORRELATION_ID_HEADER, CorrelationIdMiddleware
from caregate.middleware.rate_limit import limiter, rate_limit_exceeded_handler
from caregate.routers import (
    access,
    access_links,
    audit,
    auth,
    family_access,
    health,
    privacy,
    provider_access,
)
from caregate.services.scheduler import start_scheduler, stop_scheduler

setup_logging(
    log_format=settings.log_format,
    log_level=settings.log_level,
    service_name=settings.service_name,
)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Migrations are applied by `alembic upgrade head` before the server starts
    validate_secret_key()
    if not settings.testing:
        start_scheduler()
    logger.info("caregate API started")

    yield

    logger.info("Shutting down caregate API...")
    stop_scheduler()
    await close_database()
    logger.info("caregate API shutdown complete")


app = FastAPI(
    title="caregate API",
    description="Privacy and capability-based access control for family medical records",
    version=__version__,
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
app.add_exception_handler(AccessControlError, access_control_error_handler)

# Middleware (order matters: first added = last executed)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=[CORRELATION_ID_HEADER],
)
app.add_middleware(CorrelationIdMiddleware)

app.include_router(health.router)
app.include_router(auth.router)
app.include_router(access.router)
app.include_router(provider_access.router)
app.include_router(access_links.router)
app.include_router(privacy.router)
app.include_router(family_access.router)
app.include_router(audit.router)


@app.get("/")
async def root() -> dict[str, Any]:
    """Root endpoint."""
    return {
        "name": "caregate API",
        "version": __version__,
        "docs": "/docs",
    }

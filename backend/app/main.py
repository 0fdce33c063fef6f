"""
FastAPI Application Entry Point.

This is the main application file for the Clean Green Pickup Backend.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from backend.app.core.config import settings
from backend.app.core.observability import ObservabilityMiddleware, configure_logging
from backend.app.api.v1.router import router as api_v1_router
from backend.app.db.session import engine, Base
from backend.app.core.exceptions import (
    AppException,
    app_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    generic_exception_handler
)
from backend.app.core.redis_client import ping_redis
from backend.app.services.notification_fanout import fanout
from backend.app.services.offer_sweeper import start_sweeper, stop_sweeper

# Import models to ensure they are registered with Base
from backend.app.models.user import User
from backend.app.models.agent_availability import AgentAvailability
from backend.app.models.pickup import Pickup
from backend.app.models.pickup_timeline import PickupTimelineEntry
from backend.app.models.pickup_offer import PickupOffer
from backend.app.models.reward import Reward
from backend.app.models.notification import Notification
from backend.app.models.audit_log import AuditLog

configure_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for application startup/shutdown.

    1. Creates database tables on startup.
    2. Runs the offer sweeper in the background while the app is up.
    3. Flushes queued notification pushes on shutdown.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    sweeper = start_sweeper() if settings.offer_sweeper_enabled else None
    yield
    await stop_sweeper(sweeper)
    await fanout.drain()


# Initialize FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.api_version,
    debug=settings.debug,
    description="Waste pickup marketplace: admin review, agent dispatch and rewards",
    lifespan=lifespan,
)

app.add_middleware(ObservabilityMiddleware)

# Register global exception handlers
app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check endpoint.

    Returns:
        dict: Status and application information
    """
    return {
        "status": "healthy",
        "app_name": settings.app_name,
        "version": settings.api_version,
        "notification_transport": "up" if await ping_redis() else "down",
    }


# Include API v1 router
app.include_router(api_v1_router, prefix=f"/{settings.api_version}")


@app.get("/", tags=["Root"])
async def root():
    """
    Root endpoint.

    Returns:
        dict: Welcome message and API documentation links
    """
    return {
        "message": "Welcome to Clean Green Pickup Backend API",
        "docs": "/docs",
        "health": "/health",
    }

"""
FastAPI Application Entry Point.

Guardian Mode backend: trip tracking for travelers and overdue alerts for
their trusted contacts.
"""

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Depends, HTTPException, status
from backend.app.core.config import settings
from backend.app.api.v1.router import router as api_v1_router
from backend.app.core.dependencies import get_current_traveler_id
from backend.app.core.exceptions import register_exception_handlers
from backend.app.core.jwt import create_access_token
from backend.app.core.observability import ObservabilityMiddleware, configure_logging
from backend.app.core.redis_client import lease_client, ping_redis
from backend.app.db.session import engine, Base
from backend.app.services.scheduler import OverdueScanScheduler
from backend.app.services.trip_engine import get_trip_engine

# Models must be imported before create_all
from backend.app.models.trip import Trip  # noqa: F401
from backend.app.models.trip_contact import TripContact  # noqa: F401
from backend.app.models.trip_location import TripLocation  # noqa: F401
from backend.app.models.trusted_contact import TrustedContact  # noqa: F401
from backend.app.models.notification import TripNotification  # noqa: F401
from backend.app.models.dlq import DeadLetterQueue  # noqa: F401

configure_logging(settings.log_level)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Create tables, then run the overdue scan scheduler for the lifetime
    of the process. Shutdown lets a running scan finish.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    scheduler = None
    if settings.scheduler_enabled:
        scheduler = OverdueScanScheduler(
            get_trip_engine(),
            interval_seconds=settings.scan_interval_seconds,
            redis=lease_client(),
        )
        scheduler.start()
    else:
        logger.warning("Overdue scan scheduler disabled; trips will not be marked overdue")
    app.state.scan_scheduler = scheduler

    yield

    if scheduler is not None:
        await scheduler.stop()
    await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    version=settings.api_version,
    debug=settings.debug,
    description="Guardian Mode trip tracking and overdue alerts for campus safety",
    lifespan=lifespan,
)

app.add_middleware(ObservabilityMiddleware)
register_exception_handlers(app)

app.include_router(api_v1_router, prefix=f"/{settings.api_version}")


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check endpoint.

    Reports whether the overdue scan is running in this process and, when
    instances share a scan lease, whether Redis answers.
    """
    scheduler = getattr(app.state, "scan_scheduler", None)
    return {
        "status": "healthy",
        "app_name": settings.app_name,
        "version": settings.api_version,
        "scheduler_running": bool(scheduler and scheduler.running),
        "redis": await ping_redis() if settings.scan_lease_enabled else None,
    }


@app.get("/", tags=["Root"])
async def root():
    return {
        "message": "Welcome to the Guardian Mode Backend API",
        "docs": "/docs",
        "health": "/health",
    }


# Development tokens only; production tokens come from the identity service
@app.post("/auth/test-token", tags=["Authentication"])
async def generate_test_token(user_id: int = 1, username: str = "test_user"):
    if not settings.debug:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")
    return {
        "access_token": create_access_token(data={"sub": username, "user_id": user_id}),
        "token_type": "bearer",
        "expires_in": settings.access_token_expire_minutes * 60,
    }


@app.get("/auth/me", tags=["Authentication"])
async def whoami(traveler_id: int = Depends(get_current_traveler_id)):
    """The traveler id the bearer token resolves to; 401 if the token is invalid."""
    return {"traveler_id": traveler_id}

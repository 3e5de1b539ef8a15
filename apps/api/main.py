"""
Community Pulse - FastAPI Backend
Main application entry point with health check, API routing and the scheduler tick.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import (
    health,
    ingestion,
    categorization,
    notifications,
    metrics,
    posts,
    preferences,
    tenant_config,
)
from services.scheduler import dispatch_due_schedules, recover_stalled_runs

logger = logging.getLogger(__name__)


async def _periodic_scheduler_tick() -> None:
    interval_seconds = max(int(settings.SCHEDULER_TICK_SECONDS), 0)
    if interval_seconds <= 0:
        return
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            result = await dispatch_due_schedules()
            dispatched = int(result.get("dispatched", 0) or 0)
            skipped = int(result.get("skipped", 0) or 0)
            failed = int(result.get("failed", 0) or 0)
            recovered = int(result.get("recovered", 0) or 0)
            if dispatched or skipped or failed or recovered:
                print(
                    f"⏱️ Scheduler tick: dispatched={dispatched} "
                    f"skipped={skipped} failed={failed} recovered={recovered}"
                )
        except Exception as exc:
            logger.exception("Scheduler tick failed: %s", exc)
            print(f"⚠️ Scheduler tick failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Community Pulse API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    try:
        recovered = await recover_stalled_runs()
        if recovered["retried"] or recovered["failed"]:
            print(
                f"♻️ Recovered stalled job runs after startup "
                f"(retried={recovered['retried']} failed={recovered['failed']})."
            )
    except Exception as exc:
        print(f"⚠️ Stalled job run recovery skipped: {exc}")
    scheduler_task = None
    if settings.SCHEDULER_ENABLED and int(settings.SCHEDULER_TICK_SECONDS) > 0:
        scheduler_task = asyncio.create_task(_periodic_scheduler_tick())
        print(f"📅 Scheduler loop enabled (every {int(settings.SCHEDULER_TICK_SECONDS)} s).")
    yield
    # Shutdown
    if scheduler_task is not None:
        scheduler_task.cancel()
        try:
            await scheduler_task
        except asyncio.CancelledError:
            pass
    print("👋 Shutting down API...")


app = FastAPI(
    title="Community Pulse API",
    description="Collect, classify and alert on community feedback per tenant",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(ingestion.router, prefix="/ingestion", tags=["Ingestion"])
app.include_router(categorization.router, prefix="/categorization", tags=["Categorization"])
app.include_router(notifications.router, prefix="/notifications", tags=["Notifications"])
app.include_router(metrics.router, prefix="/metrics", tags=["Metrics"])
app.include_router(posts.router, prefix="/posts", tags=["Posts"])
app.include_router(preferences.router, prefix="/preferences", tags=["Preferences"])
app.include_router(tenant_config.router, prefix="/config", tags=["Configuration"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Community Pulse API",
        "version": "0.1.0",
        "status": "running"
    }

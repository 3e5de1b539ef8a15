"""
Health check endpoints.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
import redis.asyncio as redis
from sqlalchemy import func, text
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import reddit_credentials_configured, settings
from database import get_db
from models.job_run import JobRun
from models.job_schedule import JobSchedule
from services.job_queue import ACTIVE_STATUSES, JOB_CLASSES, LIVE_STATUSES, get_queue

router = APIRouter()


def scheduler_loop_enabled() -> bool:
    return bool(settings.SCHEDULER_ENABLED) and int(settings.SCHEDULER_TICK_SECONDS) > 0


async def _check_database(db: AsyncSession) -> str:
    try:
        await db.execute(text("SELECT 1"))
    except Exception as e:
        return f"down: {str(e)}"
    return "up"


async def _check_redis() -> str:
    try:
        r = redis.from_url(settings.REDIS_URL)
        await r.ping()
        await r.aclose()
    except Exception as e:
        return f"down: {str(e)}"
    return "up"


def _queue_count(job_class: str) -> int:
    return int(get_queue(job_class).count)


async def _queue_depths() -> Dict[str, Any]:
    """Jobs waiting in each RQ queue; ``None`` when the queue cannot be read."""
    depths: Dict[str, Any] = {}
    for job_class in JOB_CLASSES:
        try:
            depths[job_class] = await asyncio.to_thread(_queue_count, job_class)
        except Exception:
            depths[job_class] = None
    return depths


async def _pipeline_state(db: AsyncSession) -> Dict[str, Any]:
    now = datetime.now(timezone.utc)
    stalled_cutoff = now - timedelta(minutes=max(int(settings.STALLED_JOB_RUN_MINUTES), 1))
    # a schedule two ticks overdue means nothing is dispatching
    overdue_cutoff = now - timedelta(seconds=2 * max(int(settings.SCHEDULER_TICK_SECONDS), 1))

    live = await db.execute(
        select(JobRun.status, func.count()).where(JobRun.status.in_(LIVE_STATUSES)).group_by(JobRun.status)
    )
    runs = {status: 0 for status in LIVE_STATUSES}
    runs.update({status: int(count) for status, count in live.all()})
    stalled = await db.execute(
        select(func.count())
        .select_from(JobRun)
        .where(JobRun.status.in_(ACTIVE_STATUSES), JobRun.started_at < stalled_cutoff)
    )
    overdue = await db.execute(
        select(func.count())
        .select_from(JobSchedule)
        .where(JobSchedule.is_active.is_(True), JobSchedule.next_run_at < overdue_cutoff)
    )
    return {
        "scheduler_enabled": scheduler_loop_enabled(),
        "tick_seconds": int(settings.SCHEDULER_TICK_SECONDS),
        "queues": await _queue_depths(),
        "runs": runs,
        "stalled_runs": int(stalled.scalar_one()),
        "overdue_schedules": int(overdue.scalar_one()),
    }


@router.get("/health")
async def health_check(db: AsyncSession = Depends(get_db)):
    """
    Health check endpoint.
    Reports database, Redis, adapter configuration and pipeline backlog.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": await _check_database(db),
        "redis": await _check_redis(),
        "reddit_api": "oauth" if reddit_credentials_configured() else "public",
        "classifier": "configured" if settings.OPENAI_API_KEY else "local",
        "email": "configured" if settings.RESEND_API_KEY else "missing",
        "pipeline": None,
    }
    if health_status["database"] != "up" or health_status["redis"] != "up":
        health_status["status"] = "degraded"

    if health_status["database"] == "up":
        pipeline = await _pipeline_state(db)
        health_status["pipeline"] = pipeline
        if pipeline["stalled_runs"] or (pipeline["scheduler_enabled"] and pipeline["overdue_schedules"]):
            health_status["status"] = "degraded"

    return health_status


@router.get("/health/ready")
async def readiness_check(db: AsyncSession = Depends(get_db)):
    """Ready when storage, the queue backend and the scheduler loop are all usable."""
    missing = []
    if not settings.RESEND_API_KEY:
        missing.append("RESEND_API_KEY")

    failing = []
    if await _check_database(db) != "up":
        failing.append("database")
    if await _check_redis() != "up":
        failing.append("redis")
    if not scheduler_loop_enabled():
        failing.append("scheduler")

    if missing or failing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing, "failing": failing},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness check."""
    return {"alive": True}

"""
Job scheduler and lifecycle manager.

Schedules live in ``job_schedules`` (one per JobKey); every execution is a
``job_runs`` row driven through waiting/delayed -> active -> terminal. The
API process ticks ``dispatch_due_schedules``; RQ workers execute runs via
``process_job_run``.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from apscheduler.triggers.cron import CronTrigger
from fastapi import HTTPException
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.job_run import JobRun
from models.job_schedule import JobSchedule
from models.preferences import Preferences
from services.alerting import run_notification_check
from services.categorization import reset_pending_priorities, run_categorization
from services.ingestion_runner import run_ingestion
from services.job_queue import (
    ACTIVE_STATUSES,
    CATEGORIZATION,
    INGESTION,
    JOB_CLASSES,
    LIVE_STATUSES,
    NOTIFICATION,
    PENDING_STATUSES,
    RETRY_POLICIES,
    JobKey,
    cancel_queue_job,
    enqueue_job_run,
    stop_queue_job,
)
from services.tenancy import TenantKey, as_utc
from services.tenant_store import serialize_preferences, update_preferences_service, upsert_preferences

logger = logging.getLogger(__name__)

STOPPED_BY_USER = "Stopped by user"
STALLED_RUN_MESSAGE = "Job execution was interrupted before it finished."


class JobStoppedError(Exception):
    """Raised at a checkpoint when the run was stopped or cancelled externally."""


def parse_cron(expression: str) -> CronTrigger:
    try:
        return CronTrigger.from_crontab(str(expression or "").strip(), timezone=timezone.utc)
    except (ValueError, TypeError) as exc:
        raise ValueError(f"Invalid cron expression {expression!r}: {exc}") from exc


def next_fire_time(
    *,
    cron: Optional[str] = None,
    interval_minutes: Optional[int] = None,
    after: Optional[datetime] = None,
) -> datetime:
    after = as_utc(after) or datetime.now(timezone.utc)
    if cron:
        fire = parse_cron(cron).get_next_fire_time(None, after + timedelta(seconds=1))
        return as_utc(fire)
    if interval_minutes and int(interval_minutes) > 0:
        return after + timedelta(minutes=int(interval_minutes))
    raise ValueError("A schedule needs a cron expression or a positive interval.")


async def register_schedule(
    db: AsyncSession,
    key: JobKey,
    *,
    cron: Optional[str] = None,
    interval_minutes: Optional[int] = None,
    run_immediately: bool = False,
    now: Optional[datetime] = None,
) -> JobSchedule:
    """Replace the schedule for a key (remove then add). Caller commits."""
    now = as_utc(now) or datetime.now(timezone.utc)
    next_run_at = now if run_immediately else next_fire_time(cron=cron, interval_minutes=interval_minutes, after=now)
    await remove_schedule(db, key)
    schedule = JobSchedule(
        job_class=key.job_class,
        tenant_kind=key.tenant_kind,
        tenant_id=key.tenant_id,
        cron=cron,
        interval_minutes=interval_minutes,
        is_active=True,
        next_run_at=next_run_at,
    )
    db.add(schedule)
    await db.flush()
    logger.info("Registered %s schedule (cron=%s interval=%s) next at %s", key, cron, interval_minutes, next_run_at)
    return schedule


async def remove_schedule(db: AsyncSession, key: JobKey) -> bool:
    result = await db.execute(select(JobSchedule).where(key.matches(JobSchedule)))
    rows = result.scalars().all()
    for row in rows:
        await db.delete(row)
    if rows:
        await db.flush()
    return bool(rows)


async def _live_run(db: AsyncSession, key: JobKey) -> Optional[JobRun]:
    result = await db.execute(
        select(JobRun).where(key.matches(JobRun), JobRun.status.in_(LIVE_STATUSES)).limit(1)
    )
    return result.scalar_one_or_none()


async def submit_job_run(db: AsyncSession, key: JobKey, *, trigger: str = "manual") -> Optional[JobRun]:
    """Create and enqueue a run unless the key already has a live one. Commits."""
    existing = await _live_run(db, key)
    if existing is not None:
        logger.info("Skipping %s run for %s: run %s is %s", trigger, key, existing.id, existing.status)
        return None
    policy = RETRY_POLICIES[key.job_class]
    run = JobRun(
        job_class=key.job_class,
        tenant_kind=key.tenant_kind,
        tenant_id=key.tenant_id,
        trigger=trigger,
        status="waiting",
        attempts=0,
        max_attempts=policy.max_attempts,
        scheduled_for=datetime.now(timezone.utc),
    )
    db.add(run)
    await db.commit()
    try:
        queue_job = enqueue_job_run(run.id, key.job_class, attempt=1)
        run.queue_job_id = queue_job.id
    except Exception as exc:
        run.status = "failed"
        run.error_message = f"Queue unavailable: {exc}"[:1000]
        run.completed_at = datetime.now(timezone.utc)
        logger.error("Could not enqueue %s run %s: %s", key, run.id, exc)
    await db.commit()
    return run


async def recover_stalled_runs(
    now: Optional[datetime] = None,
    max_age_minutes: Optional[int] = None,
) -> Dict[str, int]:
    """Settle active runs whose worker died mid-run.

    A run still ``active`` after ``STALLED_JOB_RUN_MINUTES`` counts as a failed
    attempt: it is re-enqueued while its retry policy allows, otherwise it is
    marked failed and the job class failure handler runs.
    """
    now = as_utc(now) or datetime.now(timezone.utc)
    cutoff = now - timedelta(minutes=max(int(max_age_minutes or settings.STALLED_JOB_RUN_MINUTES), 1))
    retried = 0
    exhausted: List[JobKey] = []
    async with async_session_maker() as db:
        result = await db.execute(
            select(JobRun).where(JobRun.status.in_(ACTIVE_STATUSES), JobRun.started_at < cutoff)
        )
        runs = result.scalars().all()
        for run in runs:
            key = JobKey.from_row(run)
            attempt = max(int(run.attempts or 0), 1)
            policy = RETRY_POLICIES[key.job_class]
            run.error_message = STALLED_RUN_MESSAGE
            if policy.can_retry(attempt):
                try:
                    queue_job = enqueue_job_run(
                        run.id,
                        key.job_class,
                        attempt=attempt + 1,
                        delay_seconds=policy.delay_for(attempt),
                    )
                except Exception as exc:
                    logger.error("Could not re-enqueue stalled run %s: %s", run.id, exc)
                else:
                    run.status = "delayed"
                    run.queue_job_id = queue_job.id
                    retried += 1
                    continue
            run.status = "failed"
            run.completed_at = now
            exhausted.append(key)
        if runs:
            await db.commit()

    for key in exhausted:
        logger.warning("Stalled run for %s failed permanently", key)
        await _run_failure_handler(key.job_class, key.tenant, STALLED_RUN_MESSAGE)
    return {"retried": retried, "failed": len(exhausted)}


async def dispatch_due_schedules(now: Optional[datetime] = None) -> Dict[str, Any]:
    """Periodic tick: settle stalled runs, then submit runs for due schedules."""
    now = as_utc(now) or datetime.now(timezone.utc)
    recovered = await recover_stalled_runs(now)
    dispatched = 0
    skipped = 0
    failed = 0
    async with async_session_maker() as db:
        result = await db.execute(
            select(JobSchedule)
            .where(JobSchedule.is_active.is_(True), JobSchedule.next_run_at.is_not(None))
            .order_by(JobSchedule.next_run_at.asc())
        )
        due = [row for row in result.scalars().all() if as_utc(row.next_run_at) <= now]
        for schedule in due[: max(int(settings.SCHEDULER_MAX_DISPATCH_PER_TICK), 1)]:
            key = JobKey.from_row(schedule)
            try:
                schedule.next_run_at = next_fire_time(
                    cron=schedule.cron,
                    interval_minutes=schedule.interval_minutes,
                    after=now,
                )
            except ValueError as exc:
                logger.error("Deactivating %s schedule: %s", key, exc)
                schedule.is_active = False
                failed += 1
                continue
            schedule.last_run_at = now
            run = await submit_job_run(db, key, trigger="schedule")
            if run is None:
                skipped += 1
            elif run.status == "failed":
                failed += 1
            else:
                dispatched += 1
        await db.commit()
    return {
        "due_count": len(due),
        "dispatched": dispatched,
        "skipped": skipped,
        "failed": failed,
        "recovered": recovered["retried"] + recovered["failed"],
    }


async def _run_failure_handler(job_class: str, tenant: TenantKey, reason: str) -> None:
    handler = FAILURE_HANDLERS.get(job_class)
    if handler is None:
        return
    try:
        await handler(tenant, reason)
    except Exception as exc:
        logger.exception("Failure handler for %s %s raised: %s", job_class, tenant, exc)


async def _on_ingestion_failed(tenant: TenantKey, reason: str) -> None:
    async with async_session_maker() as db:
        await upsert_preferences(db, tenant, ingestion_active=False)
        await db.execute(
            update(JobSchedule)
            .where(JobKey.for_tenant(INGESTION, tenant).matches(JobSchedule))
            .values(is_active=False)
        )
        await db.commit()
    logger.warning("Ingestion disabled for %s: %s", tenant, reason)


async def _on_categorization_failed(tenant: TenantKey, reason: str) -> None:
    async with async_session_maker() as db:
        await upsert_preferences(db, tenant, trigger_categorization=False)
        await db.execute(
            update(JobSchedule)
            .where(JobKey.for_tenant(CATEGORIZATION, tenant).matches(JobSchedule))
            .values(is_active=False)
        )
        await db.commit()
    logger.warning("Categorization disabled for %s: %s", tenant, reason)


async def _on_notification_failed(tenant: TenantKey, reason: str) -> None:
    logger.error("Notification check for %s failed: %s", tenant, reason)


FAILURE_HANDLERS: Dict[str, Callable[[TenantKey, str], Awaitable[None]]] = {
    INGESTION: _on_ingestion_failed,
    CATEGORIZATION: _on_categorization_failed,
    NOTIFICATION: _on_notification_failed,
}


async def _update_run(run_id: str, **fields: Any) -> Optional[JobRun]:
    async with async_session_maker() as db:
        result = await db.execute(select(JobRun).where(JobRun.id == run_id))
        run = result.scalar_one_or_none()
        if not run:
            return None
        for key, value in fields.items():
            if key == "error_message" and value is not None:
                value = str(value)[:1000]
            setattr(run, key, value)
        await db.commit()
        return run


def _checkpoint_for(run_id: str) -> Callable[[], Awaitable[None]]:
    async def _checkpoint() -> None:
        async with async_session_maker() as db:
            result = await db.execute(select(JobRun.status).where(JobRun.id == run_id))
            status = result.scalar_one_or_none()
        if status in ("stopped", "cancelled"):
            raise JobStoppedError(f"Run {run_id} was {status}")

    return _checkpoint


def _job_runners() -> Dict[str, Callable[..., Awaitable[Dict[str, Any]]]]:
    return {
        INGESTION: run_ingestion,
        CATEGORIZATION: run_categorization,
        NOTIFICATION: run_notification_check,
    }


async def process_job_run_async(run_id: str) -> None:
    """Execute one attempt of a job run and apply its retry policy."""
    async with async_session_maker() as db:
        result = await db.execute(select(JobRun).where(JobRun.id == run_id))
        run = result.scalar_one_or_none()
        if run is None:
            logger.warning("Job run %s not found", run_id)
            return
        if run.status not in PENDING_STATUSES:
            logger.info("Job run %s is %s; not executing", run_id, run.status)
            return
        key = JobKey.from_row(run)
        attempt = int(run.attempts or 0) + 1
        run.status = "active"
        run.attempts = attempt
        run.started_at = datetime.now(timezone.utc)
        run.error_message = None
        await db.commit()

    tenant = key.tenant
    policy = RETRY_POLICIES[key.job_class]
    runner = _job_runners()[key.job_class]
    logger.info("Starting %s run %s (attempt %s/%s)", key, run_id, attempt, policy.max_attempts)
    try:
        summary = await runner(tenant, checkpoint=_checkpoint_for(run_id))
    except JobStoppedError as exc:
        logger.info("Run %s for %s stopped: %s", run_id, key, exc)
        return
    except Exception as exc:
        current = await _update_run(run_id)
        if current is not None and current.status in ("stopped", "cancelled"):
            return
        if policy.can_retry(attempt):
            delay = policy.delay_for(attempt)
            logger.warning("Run %s for %s failed (attempt %s); retrying in %ss: %s", run_id, key, attempt, delay, exc)
            try:
                queue_job = enqueue_job_run(run_id, key.job_class, attempt=attempt + 1, delay_seconds=delay)
            except Exception as enqueue_exc:
                logger.error("Could not schedule retry for run %s: %s", run_id, enqueue_exc)
            else:
                await _update_run(run_id, status="delayed", error_message=str(exc), queue_job_id=queue_job.id)
                return
        logger.error("Run %s for %s failed permanently: %s", run_id, key, exc)
        await _update_run(
            run_id,
            status="failed",
            error_message=str(exc),
            completed_at=datetime.now(timezone.utc),
        )
        await _run_failure_handler(key.job_class, tenant, str(exc))
        return

    # A stop that lands after the last checkpoint keeps its status.
    async with async_session_maker() as db:
        result = await db.execute(
            update(JobRun)
            .where(JobRun.id == run_id, JobRun.status.in_(ACTIVE_STATUSES))
            .values(
                status="completed",
                completed_at=datetime.now(timezone.utc),
                result_summary=str(summary)[:2000] if summary is not None else None,
            )
        )
        await db.commit()
    if not result.rowcount:
        logger.info("Run %s for %s was stopped before it finished; not marking completed", run_id, key)
        return
    logger.info("Run %s for %s completed: %s", run_id, key, summary)


def process_job_run(run_id: str) -> None:
    """RQ worker entrypoint for pipeline job runs."""
    asyncio.run(process_job_run_async(run_id))


async def sweep_runs(
    db: AsyncSession,
    *,
    key: Optional[JobKey] = None,
    job_class: Optional[str] = None,
    reason: str = STOPPED_BY_USER,
) -> Dict[str, int]:
    """Cancel pending runs and stop active ones for a key, a class, or everything."""
    query = select(JobRun).where(JobRun.status.in_(LIVE_STATUSES))
    if key is not None:
        query = query.where(key.matches(JobRun))
    elif job_class is not None:
        query = query.where(JobRun.job_class == job_class)
    runs = (await db.execute(query)).scalars().all()

    now = datetime.now(timezone.utc)
    cancelled = 0
    stopped: List[JobRun] = []
    for run in runs:
        if run.status in PENDING_STATUSES:
            try:
                cancel_queue_job(run.queue_job_id)
            except Exception as exc:
                logger.warning("Could not remove queue job %s: %s", run.queue_job_id, exc)
            run.status = "cancelled"
            run.error_message = reason
            run.completed_at = now
            cancelled += 1
        else:
            stop_queue_job(run.queue_job_id)
            run.status = "stopped"
            run.error_message = reason
            run.completed_at = now
            stopped.append(run)
    await db.commit()

    for run in stopped:
        await _run_failure_handler(run.job_class, JobKey.from_row(run).tenant, reason)
    return {"cancelled": cancelled, "stopped": len(stopped)}


async def start_ingestion_service(*, tenant: TenantKey, schedule: Optional[str], db: AsyncSession) -> Dict[str, Any]:
    cron = str(schedule or settings.DEFAULT_INGESTION_SCHEDULE).strip()
    try:
        parse_cron(cron)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    key = JobKey.for_tenant(INGESTION, tenant)
    prefs = await upsert_preferences(db, tenant, ingestion_schedule=cron, ingestion_active=True)
    schedule_row = await register_schedule(db, key, cron=cron)
    await db.commit()
    await db.refresh(prefs)
    return {
        "status": "started",
        "schedule": cron,
        "next_run_at": as_utc(schedule_row.next_run_at).isoformat(),
        "preferences": serialize_preferences(prefs, tenant),
    }


async def stop_ingestion_service(*, tenant: TenantKey, db: AsyncSession) -> Dict[str, Any]:
    key = JobKey.for_tenant(INGESTION, tenant)
    removed = await remove_schedule(db, key)
    await upsert_preferences(db, tenant, ingestion_active=False)
    await db.commit()
    swept = await sweep_runs(db, key=key)
    logger.info("Ingestion stopped for %s (schedule_removed=%s %s)", tenant, removed, swept)
    return {"status": "stopped", "schedule_removed": removed, **swept}


async def ingestion_status_service(*, tenant: TenantKey, db: AsyncSession) -> Dict[str, Any]:
    key = JobKey.for_tenant(INGESTION, tenant)
    prefs = (await db.execute(select(Preferences).where(tenant.scope(Preferences)))).scalar_one_or_none()
    schedule = (await db.execute(select(JobSchedule).where(key.matches(JobSchedule)))).scalar_one_or_none()
    live = (
        await db.execute(select(JobRun).where(key.matches(JobRun), JobRun.status.in_(LIVE_STATUSES)))
    ).scalars().all()
    last_run = (
        await db.execute(select(JobRun).where(key.matches(JobRun)).order_by(JobRun.created_at.desc()).limit(1))
    ).scalar_one_or_none()
    return {
        "is_active": bool(prefs.ingestion_active) if prefs else False,
        "schedule": prefs.ingestion_schedule if prefs else None,
        "next_run_at": as_utc(schedule.next_run_at).isoformat() if schedule and schedule.next_run_at else None,
        "active_jobs": len(live),
        "last_run_status": last_run.status if last_run else None,
        "last_error": last_run.error_message if last_run else None,
        "updated_at": (
            as_utc(prefs.updated_at or prefs.created_at).isoformat()
            if prefs and (prefs.updated_at or prefs.created_at)
            else None
        ),
    }


async def start_categorization_service(*, tenant: TenantKey, db: AsyncSession) -> Dict[str, Any]:
    key = JobKey.for_tenant(CATEGORIZATION, tenant)
    await upsert_preferences(db, tenant, trigger_categorization=True)
    await register_schedule(
        db,
        key,
        interval_minutes=max(int(settings.CATEGORIZATION_INTERVAL_MINUTES), 1),
        run_immediately=True,
    )
    await db.commit()
    return {"status": "started", "interval_minutes": int(settings.CATEGORIZATION_INTERVAL_MINUTES)}


async def stop_categorization_service(*, tenant: TenantKey, db: AsyncSession) -> Dict[str, Any]:
    key = JobKey.for_tenant(CATEGORIZATION, tenant)
    removed = await remove_schedule(db, key)
    await upsert_preferences(db, tenant, trigger_categorization=False)
    await db.commit()
    swept = await sweep_runs(db, key=key)
    reset = await reset_pending_priorities(tenant)
    return {"status": "stopped", "schedule_removed": removed, "priorities_reset": reset, **swept}


async def start_notifications_service(*, tenant: TenantKey, payload: Dict[str, Any], db: AsyncSession) -> Dict[str, Any]:
    fields = {k: v for k, v in payload.items() if v is not None}
    if not fields.get("emails"):
        raise HTTPException(status_code=422, detail="At least one recipient email is required.")
    fields["enabled"] = True
    prefs = await upsert_preferences(db, tenant, **fields)
    await register_schedule(
        db,
        JobKey.for_tenant(NOTIFICATION, tenant),
        interval_minutes=max(int(settings.NOTIFICATION_CHECK_INTERVAL_MINUTES), 1),
        run_immediately=True,
    )
    await db.commit()
    await db.refresh(prefs)
    return {"status": "started", "preferences": serialize_preferences(prefs, tenant)}


async def stop_notifications_service(*, tenant: TenantKey, db: AsyncSession) -> Dict[str, Any]:
    key = JobKey.for_tenant(NOTIFICATION, tenant)
    removed = await remove_schedule(db, key)
    prefs = await upsert_preferences(db, tenant, enabled=False)
    await db.commit()
    await db.refresh(prefs)
    swept = await sweep_runs(db, key=key)
    return {"status": "stopped", "schedule_removed": removed, "preferences": serialize_preferences(prefs, tenant), **swept}


async def update_preferences_and_alerts_service(
    *, tenant: TenantKey, payload: Dict[str, Any], db: AsyncSession
) -> Dict[str, Any]:
    """Update preferences and keep the notification schedule in step with ``enabled``."""
    result = await update_preferences_service(tenant=tenant, payload=payload, db=db)
    key = JobKey.for_tenant(NOTIFICATION, tenant)
    schedule = (await db.execute(select(JobSchedule).where(key.matches(JobSchedule)))).scalar_one_or_none()
    if result["enabled"] and (schedule is None or not schedule.is_active):
        await register_schedule(
            db,
            key,
            interval_minutes=max(int(settings.NOTIFICATION_CHECK_INTERVAL_MINUTES), 1),
            run_immediately=True,
        )
        await db.commit()
        logger.info("Notification checks scheduled for %s after a preferences update", tenant)
    elif not result["enabled"] and schedule is not None:
        await remove_schedule(db, key)
        await db.commit()
        swept = await sweep_runs(db, key=key)
        logger.info("Notification checks unscheduled for %s after a preferences update (%s)", tenant, swept)
    return result


async def kill_all_service(*, db: AsyncSession, job_class: Optional[str] = None) -> Dict[str, Any]:
    """Remove every schedule and stop every run (optionally for one job class)."""
    if job_class is not None and job_class not in JOB_CLASSES:
        raise HTTPException(status_code=422, detail=f"Unknown job class: {job_class}")
    schedules = select(JobSchedule)
    if job_class is not None:
        schedules = schedules.where(JobSchedule.job_class == job_class)
    rows = (await db.execute(schedules)).scalars().all()
    for row in rows:
        await db.delete(row)

    flags: Dict[str, Any] = {}
    if job_class in (None, INGESTION):
        flags["ingestion_active"] = False
    if job_class in (None, CATEGORIZATION):
        flags["trigger_categorization"] = False
    if flags:
        await db.execute(update(Preferences).values(**flags))
    await db.commit()

    swept = await sweep_runs(db, job_class=job_class, reason="Stopped by master kill switch")
    logger.warning("Kill-all (%s): removed %s schedule(s), %s", job_class or "all", len(rows), swept)
    return {"status": "killed", "job_class": job_class or "all", "schedules_removed": len(rows), **swept}

"""Durable pipeline job queue helpers (Redis/RQ)."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Iterator, Optional

from redis import Redis
from rq import Queue
from rq.command import send_stop_job_command
from rq.exceptions import NoSuchJobError
from rq.job import Job

from config import settings
from services.tenancy import TenantKey

logger = logging.getLogger(__name__)

INGESTION = "ingestion"
CATEGORIZATION = "categorization"
NOTIFICATION = "notification"
JOB_CLASSES = (INGESTION, CATEGORIZATION, NOTIFICATION)

QUEUE_NAMES = {
    INGESTION: "ingestion_jobs",
    CATEGORIZATION: "categorization_jobs",
    NOTIFICATION: "notification_jobs",
}

PENDING_STATUSES = ("waiting", "delayed")
ACTIVE_STATUSES = ("active",)
LIVE_STATUSES = PENDING_STATUSES + ACTIVE_STATUSES
TERMINAL_STATUSES = ("completed", "failed", "stopped", "cancelled")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget for a job class, interpreted by the scheduler."""

    max_attempts: int = 1
    backoff_base: float = 0.0
    backoff_kind: str = "none"

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait before running ``attempt + 1`` after ``attempt`` failed."""
        if self.backoff_kind == "exponential":
            return float(self.backoff_base) * (2 ** max(int(attempt) - 1, 0))
        if self.backoff_kind == "fixed":
            return float(self.backoff_base)
        return 0.0

    def can_retry(self, attempts: int) -> bool:
        return int(attempts) < int(self.max_attempts)


RETRY_POLICIES = {
    INGESTION: RetryPolicy(max_attempts=1),
    CATEGORIZATION: RetryPolicy(max_attempts=3, backoff_base=60, backoff_kind="exponential"),
    NOTIFICATION: RetryPolicy(max_attempts=3, backoff_base=60, backoff_kind="exponential"),
}


@dataclass(frozen=True)
class JobKey:
    """Registry key: at most one schedule and one live run per key."""

    job_class: str
    tenant_kind: str
    tenant_id: str

    def __post_init__(self):
        if self.job_class not in JOB_CLASSES:
            raise ValueError(f"Unknown job class: {self.job_class!r}")

    @classmethod
    def for_tenant(cls, job_class: str, tenant: TenantKey) -> "JobKey":
        return cls(job_class=job_class, tenant_kind=tenant.kind, tenant_id=tenant.id)

    @classmethod
    def from_row(cls, row) -> "JobKey":
        return cls(job_class=row.job_class, tenant_kind=row.tenant_kind, tenant_id=row.tenant_id)

    @property
    def tenant(self) -> TenantKey:
        return TenantKey(kind=self.tenant_kind, id=self.tenant_id)

    def matches(self, model):
        return (
            (model.job_class == self.job_class)
            & (model.tenant_kind == self.tenant_kind)
            & (model.tenant_id == self.tenant_id)
        )

    def __str__(self) -> str:
        return f"{self.job_class}:{self.tenant_kind}:{self.tenant_id}"


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_queue(job_class: str) -> Queue:
    """Return the configured queue for a job class."""
    return Queue(
        name=QUEUE_NAMES[job_class],
        connection=get_redis_connection(),
        default_timeout=settings.JOB_TIMEOUT_SECONDS,
    )


def enqueue_job_run(run_id: str, job_class: str, attempt: int = 1, delay_seconds: float = 0) -> Job:
    """Enqueue a job run; delayed runs rely on the worker's RQ scheduler."""
    queue = get_queue(job_class)
    kwargs = dict(
        job_id=f"run:{run_id}:{attempt}",
        job_timeout=settings.JOB_TIMEOUT_SECONDS,
        result_ttl=86400,
        failure_ttl=86400,
    )
    if delay_seconds and delay_seconds > 0:
        return queue.enqueue_in(
            timedelta(seconds=delay_seconds),
            "services.scheduler.process_job_run",
            run_id,
            **kwargs,
        )
    return queue.enqueue("services.scheduler.process_job_run", run_id, **kwargs)


def cancel_queue_job(queue_job_id: Optional[str]) -> bool:
    """Remove a waiting or delayed queue job. Returns False when it no longer exists."""
    if not queue_job_id:
        return False
    connection = get_redis_connection()
    try:
        job = Job.fetch(queue_job_id, connection=connection)
    except NoSuchJobError:
        return False
    job.cancel()
    job.delete()
    return True


def stop_queue_job(queue_job_id: Optional[str]) -> bool:
    """Ask the worker executing a job to stop it."""
    if not queue_job_id:
        return False
    try:
        send_stop_job_command(get_redis_connection(), queue_job_id)
    except Exception as exc:
        logger.warning("Stop command for queue job %s not delivered: %s", queue_job_id, exc)
        return False
    return True


@contextmanager
def tenant_lease(job_class: str, tenant: TenantKey, ttl_seconds: Optional[int] = None) -> Iterator[bool]:
    """Non-blocking per-tenant lease; yields False when another run holds it."""
    lock = get_redis_connection().lock(
        f"pulse:lease:{job_class}:{tenant}",
        timeout=int(ttl_seconds or settings.CLASSIFICATION_LEASE_SECONDS),
        blocking=False,
    )
    acquired = lock.acquire(blocking=False)
    try:
        yield bool(acquired)
    finally:
        if acquired:
            try:
                lock.release()
            except Exception as exc:
                logger.warning("Lease release failed for %s %s: %s", job_class, tenant, exc)

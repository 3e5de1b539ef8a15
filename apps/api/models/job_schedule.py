"""Recurring schedule registry, one row per job key."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.sql import func

from database import Base


class JobSchedule(Base):
    """Cron or fixed-interval recurrence for a (job class, tenant) pair."""

    __tablename__ = "job_schedules"
    __table_args__ = (
        UniqueConstraint("job_class", "tenant_kind", "tenant_id", name="uq_job_schedules_key"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    job_class = Column(String, nullable=False, index=True)
    tenant_kind = Column(String, nullable=False)
    tenant_id = Column(String, nullable=False, index=True)
    cron = Column(String, nullable=True)
    interval_minutes = Column(Integer, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    last_run_at = Column(DateTime(timezone=True), nullable=True)
    next_run_at = Column(DateTime(timezone=True), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

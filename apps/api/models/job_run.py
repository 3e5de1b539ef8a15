"""Durable record of one job execution."""

import uuid

from sqlalchemy import Column, DateTime, Integer, String, Text
from sqlalchemy.sql import func

from database import Base


class JobRun(Base):
    __tablename__ = "job_runs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    job_class = Column(String, nullable=False, index=True)
    tenant_kind = Column(String, nullable=False)
    tenant_id = Column(String, nullable=False, index=True)
    trigger = Column(String, nullable=False, default="schedule")
    status = Column(String, nullable=False, default="waiting", index=True)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=1)
    queue_job_id = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)
    result_summary = Column(Text, nullable=True)
    scheduled_for = Column(DateTime(timezone=True), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

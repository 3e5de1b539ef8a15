"""Per-tenant pipeline preferences (schedules, alert thresholds, recipients)."""

import uuid

from sqlalchemy import JSON, Boolean, CheckConstraint, Column, DateTime, Float, Integer, String
from sqlalchemy.sql import func

from database import Base


class Preferences(Base):
    """One row per tenant; owned by exactly one of user_id / org_id."""

    __tablename__ = "preferences"
    __table_args__ = (
        CheckConstraint(
            "(user_id IS NOT NULL AND org_id IS NULL) OR (user_id IS NULL AND org_id IS NOT NULL)",
            name="ck_preferences_single_tenant",
        ),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=True, unique=True, index=True)
    org_id = Column(String, nullable=True, unique=True, index=True)

    ingestion_schedule = Column(String, nullable=True)
    ingestion_active = Column(Boolean, nullable=False, default=False)
    trigger_categorization = Column(Boolean, nullable=False, default=False)

    emails = Column(JSON, nullable=False, default=list)
    enabled = Column(Boolean, nullable=False, default=False)
    issue_threshold = Column(Integer, nullable=False, default=3)
    volume_threshold_multiplier = Column(Float, nullable=False, default=1.5)
    sentiment_threshold = Column(Float, nullable=False, default=0.0)
    comment_growth_threshold = Column(Float, nullable=False, default=2.0)
    time_window = Column(Integer, nullable=False, default=24)
    last_notified = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

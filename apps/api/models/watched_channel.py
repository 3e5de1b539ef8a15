"""Subreddit watched by a tenant."""

import uuid

from sqlalchemy import JSON, Boolean, CheckConstraint, Column, DateTime, String, UniqueConstraint
from sqlalchemy.sql import func

from database import Base


class WatchedChannel(Base):
    """Source channel with optional keyword filter."""

    __tablename__ = "watched_channels"
    __table_args__ = (
        CheckConstraint(
            "(user_id IS NOT NULL AND org_id IS NULL) OR (user_id IS NULL AND org_id IS NOT NULL)",
            name="ck_watched_channels_single_tenant",
        ),
        UniqueConstraint("user_id", "name", name="uq_watched_channels_user_name"),
        UniqueConstraint("org_id", "name", name="uq_watched_channels_org_name"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=True, index=True)
    org_id = Column(String, nullable=True, index=True)
    name = Column(String, nullable=False, index=True)
    keywords = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    last_ingested = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

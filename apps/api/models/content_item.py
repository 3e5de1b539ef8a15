"""Ingested top-level post and its classification state."""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.sql import func

from database import Base


class ContentItem(Base):
    """Post keyed by its external (source) id."""

    __tablename__ = "content_items"
    __table_args__ = (
        CheckConstraint(
            "(user_id IS NOT NULL AND org_id IS NULL) OR (user_id IS NULL AND org_id IS NOT NULL)",
            name="ck_content_items_single_tenant",
        ),
        Index("ix_content_items_pending", "needs_processing", "processing_priority", "created_utc"),
    )

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=True, index=True)
    org_id = Column(String, nullable=True, index=True)

    # origin fields, written once
    channel = Column(String, nullable=False, index=True)
    title = Column(Text, nullable=False, default="")
    body = Column(Text, nullable=False, default="")
    author = Column(String, nullable=False, default="[deleted]")
    url = Column(String, nullable=True)
    permalink = Column(String, nullable=True)
    thumbnail = Column(String, nullable=True)
    image_url = Column(String, nullable=True)
    created_utc = Column(DateTime(timezone=True), nullable=False, index=True)

    # mutable on refresh
    score = Column(Integer, nullable=False, default=0)
    num_comments = Column(Integer, nullable=False, default=0)
    last_updated = Column(DateTime(timezone=True), nullable=True)

    needs_processing = Column(Boolean, nullable=False, default=True)
    processing_priority = Column(Integer, nullable=False, default=0)

    # classifier outputs
    category = Column(String, nullable=True, index=True)
    product = Column(String, nullable=True, index=True)
    sentiment_score = Column(Float, nullable=True)
    sentiment_category = Column(String, nullable=True, index=True)
    same_issues_count = Column(Integer, nullable=False, default=0)
    same_device_count = Column(Integer, nullable=False, default=0)
    solutions_count = Column(Integer, nullable=False, default=0)
    update_issue_mention = Column(Boolean, nullable=False, default=False)
    update_resolved_mention = Column(Boolean, nullable=False, default=False)
    added_to_bucket_by_ai = Column(Boolean, nullable=False, default=False)
    classified_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

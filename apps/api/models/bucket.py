"""Feedback buckets and their item memberships."""

import uuid

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.sql import func

from database import Base


class Bucket(Base):
    """Named grouping of content items, filled manually or by the classifier."""

    __tablename__ = "buckets"
    __table_args__ = (
        CheckConstraint(
            "(user_id IS NOT NULL AND org_id IS NULL) OR (user_id IS NULL AND org_id IS NOT NULL)",
            name="ck_buckets_single_tenant",
        ),
        UniqueConstraint("user_id", "name", name="uq_buckets_user_name"),
        UniqueConstraint("org_id", "name", name="uq_buckets_org_name"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=True, index=True)
    org_id = Column(String, nullable=True, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    priority = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class BucketMembership(Base):
    """Many-to-many link between buckets and content items."""

    __tablename__ = "bucket_items"

    bucket_id = Column(String, ForeignKey("buckets.id", ondelete="CASCADE"), primary_key=True)
    content_item_id = Column(String, ForeignKey("content_items.id", ondelete="CASCADE"), primary_key=True)
    confidence = Column(Float, nullable=True)
    added_by_ai = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

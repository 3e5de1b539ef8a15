"""Append-only rollup of one metrics aggregation run."""

import uuid

from sqlalchemy import JSON, CheckConstraint, Column, DateTime, Float, Integer, String
from sqlalchemy.sql import func

from database import Base


class WindowMetricsSnapshot(Base):
    __tablename__ = "window_metrics_snapshots"
    __table_args__ = (
        CheckConstraint(
            "(user_id IS NOT NULL AND org_id IS NULL) OR (user_id IS NULL AND org_id IS NOT NULL)",
            name="ck_window_metrics_snapshots_single_tenant",
        ),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=True, index=True)
    org_id = Column(String, nullable=True, index=True)
    window_label = Column(String, nullable=False)
    window_start = Column(DateTime(timezone=True), nullable=False)
    window_end = Column(DateTime(timezone=True), nullable=False)
    total_posts = Column(Integer, nullable=False, default=0)
    total_comments = Column(Integer, nullable=False, default=0)
    total_upvotes = Column(Integer, nullable=False, default=0)
    engagement_score = Column(Float, nullable=False, default=0.0)
    sentiment_distribution = Column(JSON, nullable=False, default=dict)
    category_trends = Column(JSON, nullable=False, default=list)
    top_trending_posts = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

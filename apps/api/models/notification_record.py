"""Audit row for every alert or bucket summary sent to a tenant."""

import uuid

from sqlalchemy import JSON, Boolean, CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


class NotificationRecord(Base):
    __tablename__ = "notification_records"
    __table_args__ = (
        CheckConstraint(
            "(user_id IS NOT NULL AND org_id IS NULL) OR (user_id IS NULL AND org_id IS NOT NULL)",
            name="ck_notification_records_single_tenant",
        ),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=True, index=True)
    org_id = Column(String, nullable=True, index=True)
    kind = Column(String, nullable=False, default="alert")
    subject = Column(String, nullable=False)
    categories = Column(JSON, nullable=False, default=list)
    content_item_ids = Column(JSON, nullable=False, default=list)
    issue_count = Column(Integer, nullable=False, default=0)
    recipients = Column(JSON, nullable=False, default=list)
    delivered = Column(Boolean, nullable=False, default=False)
    sent_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

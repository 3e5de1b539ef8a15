"""Comment in a post's reply tree."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.sql import func

from database import Base


class Reply(Base):
    __tablename__ = "replies"

    id = Column(String, primary_key=True)
    content_item_id = Column(String, ForeignKey("content_items.id", ondelete="CASCADE"), nullable=False, index=True)
    parent_reply_id = Column(String, ForeignKey("replies.id", ondelete="CASCADE"), nullable=True, index=True)
    author = Column(String, nullable=False, default="[deleted]")
    body = Column(Text, nullable=False, default="")
    created_utc = Column(DateTime(timezone=True), nullable=False)
    score = Column(Integer, nullable=False, default=0)
    last_updated = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

"""Tenant-defined product category used by the classifier."""

import uuid

from sqlalchemy import JSON, CheckConstraint, Column, DateTime, String, Text, UniqueConstraint
from sqlalchemy.sql import func

from database import Base


class ProductCategory(Base):
    __tablename__ = "product_categories"
    __table_args__ = (
        CheckConstraint(
            "(user_id IS NOT NULL AND org_id IS NULL) OR (user_id IS NULL AND org_id IS NOT NULL)",
            name="ck_product_categories_single_tenant",
        ),
        UniqueConstraint("user_id", "name", name="uq_product_categories_user_name"),
        UniqueConstraint("org_id", "name", name="uq_product_categories_org_name"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=True, index=True)
    org_id = Column(String, nullable=True, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    keywords = Column(JSON, nullable=False, default=list)
    versions = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

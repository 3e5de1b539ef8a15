"""Tenant identity and typed content filters."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Sequence

from sqlalchemy import Select, select

from models.content_item import ContentItem


TENANT_KINDS = ("user", "org")
NOISE_CATEGORY = "Noise"
SORT_FIELDS = {
    "created_utc": ContentItem.created_utc,
    "num_comments": ContentItem.num_comments,
    "score": ContentItem.score,
}


class TenantScopeError(ValueError):
    """Raised when a tenant reference is missing or ambiguous."""


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class TenantKey:
    """Exactly one of a user or an organization."""

    kind: str
    id: str

    def __post_init__(self):
        if self.kind not in TENANT_KINDS:
            raise TenantScopeError(f"Unknown tenant kind: {self.kind!r}")
        if not str(self.id or "").strip():
            raise TenantScopeError("Tenant id is required.")

    @classmethod
    def from_ids(cls, user_id: Optional[str] = None, org_id: Optional[str] = None) -> "TenantKey":
        user_id = str(user_id or "").strip() or None
        org_id = str(org_id or "").strip() or None
        if bool(user_id) == bool(org_id):
            raise TenantScopeError("Exactly one of user_id or org_id must be provided.")
        if org_id:
            return cls(kind="org", id=org_id)
        return cls(kind="user", id=user_id)

    @classmethod
    def from_row(cls, row: Any) -> "TenantKey":
        return cls.from_ids(user_id=getattr(row, "user_id", None), org_id=getattr(row, "org_id", None))

    @property
    def is_org(self) -> bool:
        return self.kind == "org"

    def column_values(self) -> Dict[str, Optional[str]]:
        if self.is_org:
            return {"user_id": None, "org_id": self.id}
        return {"user_id": self.id, "org_id": None}

    def scope(self, model):
        """SQL criterion restricting a tenant-owned model to this tenant."""
        if self.is_org:
            return model.org_id == self.id
        return model.user_id == self.id

    def __str__(self) -> str:
        return f"{self.kind}:{self.id}"


@dataclass
class ContentFilter:
    """Typed filter over a tenant's content items.

    ``created_from`` is inclusive, ``created_to`` is inclusive and
    ``created_before`` is exclusive; any combination may be set.
    ``search`` matches title or body case-insensitively. ``sort_by`` names
    one of ``SORT_FIELDS``; ties break on id so pages stay stable.
    """

    tenant: TenantKey
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None
    created_before: Optional[datetime] = None
    product: Optional[str] = None
    sentiment_category: Optional[str] = None
    categories: Optional[Sequence[str]] = None
    exclude_categories: Sequence[str] = field(default_factory=tuple)
    needs_processing: Optional[bool] = None
    search: Optional[str] = None
    sort_by: Optional[str] = None
    sort_order: str = "desc"


def build_content_query(content_filter: ContentFilter) -> Select:
    query = select(ContentItem).where(content_filter.tenant.scope(ContentItem))
    if content_filter.created_from is not None:
        query = query.where(ContentItem.created_utc >= content_filter.created_from)
    if content_filter.created_to is not None:
        query = query.where(ContentItem.created_utc <= content_filter.created_to)
    if content_filter.created_before is not None:
        query = query.where(ContentItem.created_utc < content_filter.created_before)
    if content_filter.product:
        query = query.where(ContentItem.product == content_filter.product)
    if content_filter.sentiment_category:
        query = query.where(ContentItem.sentiment_category == content_filter.sentiment_category)
    if content_filter.categories is not None:
        query = query.where(ContentItem.category.in_(list(content_filter.categories)))
    if content_filter.exclude_categories:
        query = query.where(
            (ContentItem.category.is_(None)) | (ContentItem.category.not_in(list(content_filter.exclude_categories)))
        )
    if content_filter.needs_processing is not None:
        query = query.where(ContentItem.needs_processing.is_(content_filter.needs_processing))
    term = (content_filter.search or "").strip()
    if term:
        query = query.where(
            ContentItem.title.icontains(term, autoescape=True) | ContentItem.body.icontains(term, autoescape=True)
        )
    if content_filter.sort_by:
        if content_filter.sort_by not in SORT_FIELDS:
            raise ValueError(f"Unknown sort field: {content_filter.sort_by!r}")
        if content_filter.sort_order not in ("asc", "desc"):
            raise ValueError(f"Unknown sort order: {content_filter.sort_order!r}")
        column = SORT_FIELDS[content_filter.sort_by]
        if content_filter.sort_order == "asc":
            query = query.order_by(column.asc(), ContentItem.id.asc())
        else:
            query = query.order_by(column.desc(), ContentItem.id.desc())
    return query

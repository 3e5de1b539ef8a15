"""Tenant configuration store: preferences, channels, categories, buckets."""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional, Sequence

from fastapi import HTTPException
from sqlalchemy import delete, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.bucket import Bucket, BucketMembership
from models.content_item import ContentItem
from models.feedback_category import FeedbackCategory
from models.notification_record import NotificationRecord
from models.preferences import Preferences
from models.product_category import ProductCategory
from models.watched_channel import WatchedChannel
from services.tenancy import TenantKey, as_utc
from services.window_metrics import serialize_item

CHANNEL_NAME_RE = re.compile(r"^[A-Za-z0-9_]{2,21}$")
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
CATEGORY_MODELS = {"feedback": FeedbackCategory, "product": ProductCategory}

PREFERENCE_FIELDS = (
    "emails",
    "enabled",
    "issue_threshold",
    "volume_threshold_multiplier",
    "sentiment_threshold",
    "comment_growth_threshold",
    "time_window",
    "ingestion_schedule",
    "ingestion_active",
    "trigger_categorization",
)


def _normalize_text(value: Any) -> str:
    return str(value or "").strip()


def _iso(value) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


def _clean_keywords(values: Optional[Sequence[Any]]) -> List[str]:
    seen: List[str] = []
    for value in values or []:
        text = _normalize_text(value)
        if text and text.lower() not in {s.lower() for s in seen}:
            seen.append(text)
    return seen


def normalize_emails(values: Optional[Sequence[Any]]) -> List[str]:
    emails: List[str] = []
    for value in values or []:
        email = _normalize_text(value).lower()
        if not email:
            continue
        if not EMAIL_RE.match(email):
            raise HTTPException(status_code=422, detail=f"Invalid email address: {email}")
        if email not in emails:
            emails.append(email)
    return emails


def normalize_channel_name(value: Any) -> str:
    name = _normalize_text(value)
    for prefix in ("/r/", "r/"):
        if name.lower().startswith(prefix):
            name = name[len(prefix):]
    if not CHANNEL_NAME_RE.match(name):
        raise HTTPException(status_code=422, detail=f"Invalid subreddit name: {value!r}")
    return name.lower()


def serialize_preferences(prefs: Optional[Preferences], tenant: TenantKey) -> Dict[str, Any]:
    defaults = Preferences()
    source = prefs or defaults
    return {
        "tenant": str(tenant),
        "emails": list(source.emails or []),
        "enabled": bool(source.enabled) if prefs else False,
        "issue_threshold": int(source.issue_threshold if source.issue_threshold is not None else 3),
        "volume_threshold_multiplier": float(
            source.volume_threshold_multiplier if source.volume_threshold_multiplier is not None else 1.5
        ),
        "sentiment_threshold": float(source.sentiment_threshold if source.sentiment_threshold is not None else 0.0),
        "comment_growth_threshold": float(
            source.comment_growth_threshold if source.comment_growth_threshold is not None else 2.0
        ),
        "time_window": int(source.time_window if source.time_window is not None else 24),
        "last_notified": _iso(source.last_notified),
        "ingestion_schedule": source.ingestion_schedule,
        "ingestion_active": bool(source.ingestion_active) if prefs else False,
        "trigger_categorization": bool(source.trigger_categorization) if prefs else False,
        "updated_at": _iso(source.updated_at or source.created_at) if prefs else None,
    }


async def get_preferences(db: AsyncSession, tenant: TenantKey) -> Optional[Preferences]:
    result = await db.execute(select(Preferences).where(tenant.scope(Preferences)))
    return result.scalar_one_or_none()


async def upsert_preferences(db: AsyncSession, tenant: TenantKey, **fields: Any) -> Preferences:
    """Create or update the tenant's preferences row (caller commits).

    Writing ``emails`` also sets ``enabled`` to whether any recipient
    remains, unless the same write disables notifications explicitly.
    """
    unknown = set(fields) - set(PREFERENCE_FIELDS)
    if unknown:
        raise ValueError(f"Unknown preference fields: {sorted(unknown)}")

    prefs = await get_preferences(db, tenant)
    if prefs is None:
        prefs = Preferences(
            **tenant.column_values(),
            emails=[],
            enabled=False,
            issue_threshold=3,
            volume_threshold_multiplier=1.5,
            sentiment_threshold=0.0,
            comment_growth_threshold=2.0,
            time_window=24,
            ingestion_active=False,
            trigger_categorization=False,
        )
        db.add(prefs)

    if "emails" in fields:
        fields["emails"] = normalize_emails(fields["emails"])
        if fields.get("enabled") is not False:
            fields["enabled"] = bool(fields["emails"])
    if fields.get("enabled") and not (fields.get("emails", prefs.emails) or []):
        raise HTTPException(status_code=422, detail="Notifications cannot be enabled without recipient emails.")

    for key, value in fields.items():
        setattr(prefs, key, value)
    await db.flush()
    return prefs


def _validate_threshold_payload(payload: Dict[str, Any]) -> None:
    if "issue_threshold" in payload and int(payload["issue_threshold"]) < 1:
        raise HTTPException(status_code=422, detail="issue_threshold must be >= 1")
    if "time_window" in payload and not 1 <= int(payload["time_window"]) <= 24 * 365:
        raise HTTPException(status_code=422, detail="time_window must be between 1 and 8760 hours")
    if "volume_threshold_multiplier" in payload and float(payload["volume_threshold_multiplier"]) <= 0:
        raise HTTPException(status_code=422, detail="volume_threshold_multiplier must be positive")
    if "sentiment_threshold" in payload and not 0 <= float(payload["sentiment_threshold"]) <= 5:
        raise HTTPException(status_code=422, detail="sentiment_threshold must be between 0 and 5")
    if "comment_growth_threshold" in payload and float(payload["comment_growth_threshold"]) < 0:
        raise HTTPException(status_code=422, detail="comment_growth_threshold must be >= 0")


async def get_preferences_service(*, tenant: TenantKey, db: AsyncSession) -> Dict[str, Any]:
    return serialize_preferences(await get_preferences(db, tenant), tenant)


async def update_preferences_service(*, tenant: TenantKey, payload: Dict[str, Any], db: AsyncSession) -> Dict[str, Any]:
    """Update alert settings; schedule and lifecycle flags go through the scheduler."""
    editable = {
        key: value
        for key, value in payload.items()
        if value is not None and key in PREFERENCE_FIELDS
        and key not in {"ingestion_schedule", "ingestion_active", "trigger_categorization"}
    }
    _validate_threshold_payload(editable)
    prefs = await upsert_preferences(db, tenant, **editable)
    await db.commit()
    await db.refresh(prefs)
    return serialize_preferences(prefs, tenant)


def _serialize_channel(row: WatchedChannel) -> Dict[str, Any]:
    return {
        "id": row.id,
        "name": row.name,
        "keywords": list(row.keywords or []),
        "is_active": bool(row.is_active),
        "last_ingested": _iso(row.last_ingested),
        "created_at": _iso(row.created_at),
    }


async def _get_owned(db: AsyncSession, model, tenant: TenantKey, row_id: str, label: str):
    result = await db.execute(select(model).where(model.id == row_id, tenant.scope(model)))
    row = result.scalar_one_or_none()
    if row is None:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return row


async def _commit_unique(db: AsyncSession, label: str) -> None:
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise HTTPException(status_code=409, detail=f"{label} already exists") from exc


async def list_channels_service(*, tenant: TenantKey, db: AsyncSession) -> Dict[str, Any]:
    result = await db.execute(
        select(WatchedChannel).where(tenant.scope(WatchedChannel)).order_by(WatchedChannel.name.asc())
    )
    return {"channels": [_serialize_channel(row) for row in result.scalars().all()]}


async def create_channel_service(*, tenant: TenantKey, payload: Dict[str, Any], db: AsyncSession) -> Dict[str, Any]:
    row = WatchedChannel(
        **tenant.column_values(),
        name=normalize_channel_name(payload.get("name")),
        keywords=_clean_keywords(payload.get("keywords")),
        is_active=bool(payload.get("is_active", True)),
    )
    db.add(row)
    await _commit_unique(db, "Channel")
    await db.refresh(row)
    return _serialize_channel(row)


async def update_channel_service(
    *,
    tenant: TenantKey,
    channel_id: str,
    payload: Dict[str, Any],
    db: AsyncSession,
) -> Dict[str, Any]:
    row = await _get_owned(db, WatchedChannel, tenant, channel_id, "Channel")
    if payload.get("keywords") is not None:
        row.keywords = _clean_keywords(payload["keywords"])
    if payload.get("is_active") is not None:
        row.is_active = bool(payload["is_active"])
    await db.commit()
    await db.refresh(row)
    return _serialize_channel(row)


async def delete_channel_service(*, tenant: TenantKey, channel_id: str, db: AsyncSession) -> Dict[str, Any]:
    row = await _get_owned(db, WatchedChannel, tenant, channel_id, "Channel")
    await db.delete(row)
    await db.commit()
    return {"deleted": True, "id": channel_id}


def _serialize_category(row, kind: str) -> Dict[str, Any]:
    payload = {
        "id": row.id,
        "kind": kind,
        "name": row.name,
        "description": row.description,
        "keywords": list(row.keywords or []),
    }
    if kind == "product":
        payload["versions"] = list(row.versions or [])
    return payload


def _category_model(kind: str):
    model = CATEGORY_MODELS.get(kind)
    if model is None:
        raise HTTPException(status_code=404, detail=f"Unknown category kind: {kind}")
    return model


async def list_categories_service(*, tenant: TenantKey, kind: str, db: AsyncSession) -> Dict[str, Any]:
    model = _category_model(kind)
    result = await db.execute(select(model).where(tenant.scope(model)).order_by(model.name.asc()))
    return {"categories": [_serialize_category(row, kind) for row in result.scalars().all()]}


async def create_category_service(
    *,
    tenant: TenantKey,
    kind: str,
    payload: Dict[str, Any],
    db: AsyncSession,
) -> Dict[str, Any]:
    model = _category_model(kind)
    name = _normalize_text(payload.get("name"))
    if not name:
        raise HTTPException(status_code=422, detail="Category name is required")
    if name.lower() == "noise":
        raise HTTPException(status_code=422, detail="'Noise' is reserved")
    fields = dict(
        name=name,
        description=_normalize_text(payload.get("description")) or None,
        keywords=_clean_keywords(payload.get("keywords")),
    )
    if kind == "product":
        fields["versions"] = _clean_keywords(payload.get("versions"))
    row = model(**tenant.column_values(), **fields)
    db.add(row)
    await _commit_unique(db, "Category")
    await db.refresh(row)
    return _serialize_category(row, kind)


async def update_category_service(
    *,
    tenant: TenantKey,
    kind: str,
    category_id: str,
    payload: Dict[str, Any],
    db: AsyncSession,
) -> Dict[str, Any]:
    model = _category_model(kind)
    row = await _get_owned(db, model, tenant, category_id, "Category")
    if payload.get("description") is not None:
        row.description = _normalize_text(payload["description"]) or None
    if payload.get("keywords") is not None:
        row.keywords = _clean_keywords(payload["keywords"])
    if kind == "product" and payload.get("versions") is not None:
        row.versions = _clean_keywords(payload["versions"])
    await db.commit()
    await db.refresh(row)
    return _serialize_category(row, kind)


async def delete_category_service(*, tenant: TenantKey, kind: str, category_id: str, db: AsyncSession) -> Dict[str, Any]:
    model = _category_model(kind)
    row = await _get_owned(db, model, tenant, category_id, "Category")
    await db.delete(row)
    await db.commit()
    return {"deleted": True, "id": category_id}


async def _bucket_counts(db: AsyncSession, bucket_ids: List[str]) -> Dict[str, int]:
    if not bucket_ids:
        return {}
    result = await db.execute(
        select(BucketMembership.bucket_id, func.count())
        .where(BucketMembership.bucket_id.in_(bucket_ids))
        .group_by(BucketMembership.bucket_id)
    )
    return {bucket_id: int(count) for bucket_id, count in result.all()}


def _serialize_bucket(row: Bucket, item_count: int = 0) -> Dict[str, Any]:
    return {
        "id": row.id,
        "name": row.name,
        "description": row.description,
        "is_active": bool(row.is_active),
        "priority": int(row.priority or 0),
        "item_count": item_count,
        "created_at": _iso(row.created_at),
    }


async def list_buckets_service(*, tenant: TenantKey, db: AsyncSession) -> Dict[str, Any]:
    result = await db.execute(
        select(Bucket).where(tenant.scope(Bucket)).order_by(Bucket.priority.desc(), Bucket.name.asc())
    )
    rows = result.scalars().all()
    counts = await _bucket_counts(db, [row.id for row in rows])
    return {"buckets": [_serialize_bucket(row, counts.get(row.id, 0)) for row in rows]}


async def create_bucket_service(*, tenant: TenantKey, payload: Dict[str, Any], db: AsyncSession) -> Dict[str, Any]:
    name = _normalize_text(payload.get("name"))
    if not name:
        raise HTTPException(status_code=422, detail="Bucket name is required")
    row = Bucket(
        **tenant.column_values(),
        name=name,
        description=_normalize_text(payload.get("description")) or None,
        is_active=bool(payload.get("is_active", True)),
        priority=int(payload.get("priority") or 0),
    )
    db.add(row)
    await _commit_unique(db, "Bucket")
    await db.refresh(row)
    return _serialize_bucket(row)


async def update_bucket_service(
    *,
    tenant: TenantKey,
    bucket_id: str,
    payload: Dict[str, Any],
    db: AsyncSession,
) -> Dict[str, Any]:
    row = await _get_owned(db, Bucket, tenant, bucket_id, "Bucket")
    if payload.get("name") is not None:
        name = _normalize_text(payload["name"])
        if not name:
            raise HTTPException(status_code=422, detail="Bucket name is required")
        row.name = name
    if payload.get("description") is not None:
        row.description = _normalize_text(payload["description"]) or None
    if payload.get("is_active") is not None:
        row.is_active = bool(payload["is_active"])
    if payload.get("priority") is not None:
        row.priority = int(payload["priority"])
    await _commit_unique(db, "Bucket")
    await db.refresh(row)
    counts = await _bucket_counts(db, [row.id])
    return _serialize_bucket(row, counts.get(row.id, 0))


async def delete_bucket_service(*, tenant: TenantKey, bucket_id: str, db: AsyncSession) -> Dict[str, Any]:
    row = await _get_owned(db, Bucket, tenant, bucket_id, "Bucket")
    await db.execute(delete(BucketMembership).where(BucketMembership.bucket_id == bucket_id))
    await db.delete(row)
    await db.commit()
    return {"deleted": True, "id": bucket_id}


async def list_bucket_items_service(*, tenant: TenantKey, bucket_id: str, db: AsyncSession) -> Dict[str, Any]:
    await _get_owned(db, Bucket, tenant, bucket_id, "Bucket")
    result = await db.execute(
        select(ContentItem, BucketMembership)
        .join(BucketMembership, BucketMembership.content_item_id == ContentItem.id)
        .where(BucketMembership.bucket_id == bucket_id)
        .order_by(ContentItem.created_utc.desc())
    )
    items = []
    for item, membership in result.all():
        payload = serialize_item(item)
        payload["added_by_ai"] = bool(membership.added_by_ai)
        payload["confidence"] = membership.confidence
        items.append(payload)
    return {"bucket_id": bucket_id, "items": items}


async def add_bucket_items_service(
    *,
    tenant: TenantKey,
    bucket_id: str,
    content_item_ids: Sequence[str],
    db: AsyncSession,
) -> Dict[str, Any]:
    await _get_owned(db, Bucket, tenant, bucket_id, "Bucket")
    wanted = [i for i in dict.fromkeys(_normalize_text(v) for v in content_item_ids) if i]
    if not wanted:
        raise HTTPException(status_code=422, detail="content_item_ids must not be empty")
    owned = {
        row_id
        for (row_id,) in (
            await db.execute(select(ContentItem.id).where(ContentItem.id.in_(wanted), tenant.scope(ContentItem)))
        ).all()
    }
    missing = [i for i in wanted if i not in owned]
    if missing:
        raise HTTPException(status_code=404, detail=f"Content items not found: {missing}")
    existing = {
        row_id
        for (row_id,) in (
            await db.execute(
                select(BucketMembership.content_item_id).where(
                    BucketMembership.bucket_id == bucket_id,
                    BucketMembership.content_item_id.in_(wanted),
                )
            )
        ).all()
    }
    added = 0
    for item_id in wanted:
        if item_id in existing:
            continue
        db.add(BucketMembership(bucket_id=bucket_id, content_item_id=item_id, added_by_ai=False))
        added += 1
    await db.commit()
    return {"bucket_id": bucket_id, "added": added, "already_present": len(existing)}


async def remove_bucket_item_service(
    *,
    tenant: TenantKey,
    bucket_id: str,
    content_item_id: str,
    db: AsyncSession,
) -> Dict[str, Any]:
    await _get_owned(db, Bucket, tenant, bucket_id, "Bucket")
    result = await db.execute(
        delete(BucketMembership).where(
            BucketMembership.bucket_id == bucket_id,
            BucketMembership.content_item_id == content_item_id,
        )
    )
    await db.commit()
    if not result.rowcount:
        raise HTTPException(status_code=404, detail="Item is not in this bucket")
    return {"removed": True, "bucket_id": bucket_id, "content_item_id": content_item_id}


def _serialize_record(row: NotificationRecord) -> Dict[str, Any]:
    return {
        "id": row.id,
        "kind": row.kind,
        "subject": row.subject,
        "categories": list(row.categories or []),
        "content_item_ids": list(row.content_item_ids or []),
        "issue_count": int(row.issue_count or 0),
        "recipients": list(row.recipients or []),
        "delivered": bool(row.delivered),
        "sent_at": _iso(row.sent_at),
    }


async def get_notification_history_service(*, tenant: TenantKey, limit: int, db: AsyncSession) -> Dict[str, Any]:
    limit = max(1, min(int(limit or 10), 100))
    result = await db.execute(
        select(NotificationRecord)
        .where(tenant.scope(NotificationRecord))
        .order_by(NotificationRecord.sent_at.desc())
        .limit(limit)
    )
    return {"history": [_serialize_record(row) for row in result.scalars().all()]}

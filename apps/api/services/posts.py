"""Paginated listing of a tenant's posts with their reply trees."""

from __future__ import annotations

import math
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from fastapi import HTTPException
from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.content_item import ContentItem
from models.reply import Reply
from services.tenancy import NOISE_CATEGORY, ContentFilter, TenantKey, as_utc, build_content_query
from services.window_metrics import serialize_item

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


def build_reply_trees(replies: Sequence[Reply]) -> Dict[str, List[Dict[str, Any]]]:
    """Nest replies under their parents, highest score first at every level."""
    children: Dict[Tuple[str, Optional[str]], List[Reply]] = defaultdict(list)
    known = {reply.id for reply in replies}
    for reply in replies:
        # orphans whose parent was never stored hang off the post
        parent = reply.parent_reply_id if reply.parent_reply_id in known else None
        children[(reply.content_item_id, parent)].append(reply)

    def _nest(item_id: str, parent: Optional[str]) -> List[Dict[str, Any]]:
        ordered = sorted(children.get((item_id, parent), []), key=lambda r: (-int(r.score or 0), r.id))
        return [
            {
                "id": reply.id,
                "author": reply.author,
                "body": reply.body,
                "score": int(reply.score or 0),
                "created_utc": _iso(reply.created_utc),
                "replies": _nest(item_id, reply.id),
            }
            for reply in ordered
        ]

    item_ids = {reply.content_item_id for reply in replies}
    return {item_id: _nest(item_id, None) for item_id in item_ids}


def serialize_post(item: ContentItem, replies: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        **serialize_item(item),
        "body": item.body,
        "author": item.author,
        "url": item.url,
        "thumbnail": item.thumbnail,
        "image_url": item.image_url,
        "needs_processing": bool(item.needs_processing),
        "last_updated": _iso(item.last_updated),
        "replies": replies,
    }


async def list_posts_service(
    *,
    tenant: TenantKey,
    db: AsyncSession,
    page: int = 1,
    page_size: int = DEFAULT_PAGE_SIZE,
    category: Optional[str] = None,
    product: Optional[str] = None,
    sentiment_category: Optional[str] = None,
    window_hours: Optional[int] = None,
    search: Optional[str] = None,
    sort_by: str = "created_utc",
    sort_order: str = "desc",
    hide_noise: bool = False,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    if int(page) < 1:
        raise HTTPException(status_code=422, detail="page must be >= 1")
    if not 1 <= int(page_size) <= MAX_PAGE_SIZE:
        raise HTTPException(status_code=422, detail=f"page_size must be between 1 and {MAX_PAGE_SIZE}")
    if window_hours is not None and int(window_hours) <= 0:
        raise HTTPException(status_code=422, detail="window must be a positive number of hours")

    now = as_utc(now) or datetime.now(timezone.utc)
    content_filter = ContentFilter(
        tenant=tenant,
        created_from=now - timedelta(hours=int(window_hours)) if window_hours else None,
        product=product,
        sentiment_category=sentiment_category,
        categories=[category] if category else None,
        exclude_categories=(NOISE_CATEGORY,) if hide_noise else (),
        search=search,
        sort_by=sort_by or "created_utc",
        sort_order=sort_order or "desc",
    )
    try:
        query = build_content_query(content_filter)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    total = (
        await db.execute(select(func.count()).select_from(query.order_by(None).subquery()))
    ).scalar_one()
    rows = (
        await db.execute(query.offset((int(page) - 1) * int(page_size)).limit(int(page_size)))
    ).scalars().all()

    trees: Dict[str, List[Dict[str, Any]]] = {}
    if rows:
        replies = (
            await db.execute(select(Reply).where(Reply.content_item_id.in_([row.id for row in rows])))
        ).scalars().all()
        trees = build_reply_trees(replies)

    return {
        "posts": [serialize_post(row, trees.get(row.id, [])) for row in rows],
        "pagination": {
            "total": int(total),
            "page": int(page),
            "page_size": int(page_size),
            "total_pages": math.ceil(int(total) / int(page_size)),
        },
    }

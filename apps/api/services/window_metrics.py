"""Windowed feedback metrics: current vs previous period rollups."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from dateutil.relativedelta import relativedelta
from fastapi import HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.content_item import ContentItem
from models.window_metrics_snapshot import WindowMetricsSnapshot
from services.tenancy import NOISE_CATEGORY, ContentFilter, TenantKey, as_utc, build_content_query

logger = logging.getLogger(__name__)

SENTIMENT_BUCKETS = ("Positive", "Neutral", "Negative")
WINDOW_PRESETS = ("last_3_months", "last_6_months", "last_year", "ytd", "all_time")
_PRESET_SPANS = {
    "last_3_months": relativedelta(months=3),
    "last_6_months": relativedelta(months=6),
    "last_year": relativedelta(years=1),
    "all_time": relativedelta(years=20),
}


@dataclass(frozen=True)
class WindowBounds:
    label: str
    current_start: datetime
    current_end: datetime
    previous_start: datetime
    previous_end: datetime


def resolve_window(window: Union[int, str], now: Optional[datetime] = None) -> WindowBounds:
    """Resolve an hour count or a named preset to current and previous bounds."""
    now = as_utc(now) or datetime.now(timezone.utc)
    if isinstance(window, str) and window.strip().isdigit():
        window = int(window.strip())
    if isinstance(window, int):
        if window <= 0:
            raise ValueError("Window hours must be positive.")
        span = timedelta(hours=window)
        return WindowBounds(
            label=f"{window}h",
            current_start=now - span,
            current_end=now,
            previous_start=now - 2 * span,
            previous_end=now - span,
        )

    preset = str(window or "").strip().lower()
    if preset == "ytd":
        start = datetime(now.year, 1, 1, tzinfo=timezone.utc)
        year_ago = now - relativedelta(years=1)
        return WindowBounds(
            label=preset,
            current_start=start,
            current_end=now,
            previous_start=datetime(now.year - 1, 1, 1, tzinfo=timezone.utc),
            previous_end=year_ago,
        )
    if preset in _PRESET_SPANS:
        span = _PRESET_SPANS[preset]
        start = now - span
        return WindowBounds(
            label=preset,
            current_start=start,
            current_end=now,
            previous_start=start - span,
            previous_end=start,
        )
    raise ValueError(f"Unknown window: {window!r}")


def custom_window(date_from: datetime, date_to: datetime) -> WindowBounds:
    """Explicit range; the previous period is the equally long span before it."""
    start = as_utc(date_from)
    end = as_utc(date_to)
    if end <= start:
        raise ValueError("date_to must be after date_from.")
    span = end - start
    return WindowBounds(
        label="custom",
        current_start=start,
        current_end=end,
        previous_start=start - span,
        previous_end=start,
    )


def percentage_change(current: int, previous: int) -> float:
    if previous == 0:
        return 100.0 if current > 0 else 0.0
    return round((current - previous) / previous * 100.0, 2)


def engagement_score(items: Sequence[Any]) -> float:
    """``(upvotes * 0.5 + comments) / posts``; 0 when there are no posts."""
    if not items:
        return 0.0
    upvotes = sum(int(getattr(i, "score", 0) or 0) for i in items)
    comments = sum(int(getattr(i, "num_comments", 0) or 0) for i in items)
    return round((upvotes * 0.5 + comments) / len(items), 4)


def sentiment_distribution(items: Iterable[Any]) -> Dict[str, int]:
    distribution = {bucket: 0 for bucket in SENTIMENT_BUCKETS}
    for item in items:
        label = getattr(item, "sentiment_category", None)
        if label in distribution:
            distribution[label] += 1
    return distribution


def _popularity(item: Any) -> int:
    return int(getattr(item, "score", 0) or 0) + int(getattr(item, "num_comments", 0) or 0)


def serialize_item(item: Any) -> Dict[str, Any]:
    created = as_utc(getattr(item, "created_utc", None))
    return {
        "id": item.id,
        "title": item.title,
        "permalink": getattr(item, "permalink", None),
        "channel": getattr(item, "channel", None),
        "category": getattr(item, "category", None),
        "product": getattr(item, "product", None),
        "score": int(getattr(item, "score", 0) or 0),
        "num_comments": int(getattr(item, "num_comments", 0) or 0),
        "sentiment_score": getattr(item, "sentiment_score", None),
        "sentiment_category": getattr(item, "sentiment_category", None),
        "created_utc": created.isoformat() if created else None,
    }


def top_items(items: Iterable[Any], limit: int) -> List[Dict[str, Any]]:
    ranked = sorted(items, key=lambda i: (_popularity(i), as_utc(i.created_utc)), reverse=True)
    return [serialize_item(i) for i in ranked[: max(int(limit), 0)]]


def _daily_trend(items: Iterable[Any]) -> List[Dict[str, Any]]:
    grid: Dict[date, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
    for item in items:
        if not item.category or item.category == NOISE_CATEGORY:
            continue
        grid[as_utc(item.created_utc).date()][item.category] += 1
    return [{"date": day.isoformat(), "counts": dict(grid[day])} for day in sorted(grid)]


def aggregate_window(
    current_items: Sequence[Any],
    previous_items: Sequence[Any],
    *,
    top_n: Optional[int] = None,
    baseline: Optional[Any] = None,
) -> Dict[str, Any]:
    """Pure rollup of two item sets; does not touch the items.

    With a stored ``baseline`` snapshot the previous totals and per-category
    counts come from it and ``previous_items`` is ignored.
    """
    top_n = settings.METRICS_TOP_ITEMS if top_n is None else top_n
    total_posts = len(current_items)
    total_comments = sum(int(i.num_comments or 0) for i in current_items)
    total_upvotes = sum(int(i.score or 0) for i in current_items)

    current_by_category: Dict[str, List[Any]] = defaultdict(list)
    for item in current_items:
        if item.category and item.category != NOISE_CATEGORY:
            current_by_category[item.category].append(item)
    previous_counts: Dict[str, int] = defaultdict(int)
    if baseline is not None:
        for row in baseline.category_trends or []:
            if row.get("category") and row["category"] != NOISE_CATEGORY and int(row.get("count") or 0) > 0:
                previous_counts[row["category"]] = int(row["count"])
        previous_total_posts = int(baseline.total_posts or 0)
    else:
        for item in previous_items:
            if item.category and item.category != NOISE_CATEGORY:
                previous_counts[item.category] += 1
        previous_total_posts = len(previous_items)

    trends = []
    for category in set(current_by_category) | set(previous_counts):
        members = current_by_category.get(category, [])
        count = len(members)
        previous = previous_counts.get(category, 0)
        trends.append(
            {
                "category": category,
                "count": count,
                "previous_count": previous,
                "percentage_change": percentage_change(count, previous),
                "percentage_of_total": round(count / total_posts * 100.0, 2) if total_posts else 0.0,
                "comments": sum(int(i.num_comments or 0) for i in members),
                "top_items": top_items(members, top_n),
            }
        )
    trends.sort(key=lambda row: (-row["count"], row["category"]))

    return {
        "total_posts": total_posts,
        "total_comments": total_comments,
        "total_upvotes": total_upvotes,
        "previous_total_posts": previous_total_posts,
        "engagement_score": engagement_score(current_items),
        "sentiment_distribution": sentiment_distribution(current_items),
        "category_trends": trends,
        "top_trending_posts": top_items(current_items, top_n),
        "daily_trend": _daily_trend(current_items),
    }


async def load_window_items(
    db: AsyncSession,
    tenant: TenantKey,
    bounds: WindowBounds,
    *,
    product: Optional[str] = None,
    sentiment_category: Optional[str] = None,
    include_previous: bool = True,
):
    current_query = build_content_query(
        ContentFilter(
            tenant=tenant,
            created_from=bounds.current_start,
            created_to=bounds.current_end,
            product=product,
            sentiment_category=sentiment_category,
        )
    )
    previous_query = build_content_query(
        ContentFilter(
            tenant=tenant,
            created_from=bounds.previous_start,
            created_before=bounds.previous_end,
            product=product,
            sentiment_category=sentiment_category,
        )
    )
    current = (await db.execute(current_query)).scalars().all()
    previous = (await db.execute(previous_query)).scalars().all() if include_previous else []
    return current, previous


async def find_baseline_snapshot(
    db: AsyncSession,
    tenant: TenantKey,
    bounds: WindowBounds,
    tolerance_minutes: Optional[int] = None,
) -> Optional[WindowMetricsSnapshot]:
    """Latest stored snapshot whose window lines up with ``bounds``' previous period."""
    tolerance = timedelta(minutes=max(int(
        settings.SNAPSHOT_BASELINE_TOLERANCE_MINUTES if tolerance_minutes is None else tolerance_minutes
    ), 0))
    result = await db.execute(
        select(WindowMetricsSnapshot)
        .where(
            tenant.scope(WindowMetricsSnapshot),
            WindowMetricsSnapshot.window_start >= bounds.previous_start - tolerance,
            WindowMetricsSnapshot.window_start <= bounds.previous_start + tolerance,
            WindowMetricsSnapshot.window_end >= bounds.previous_end - tolerance,
            WindowMetricsSnapshot.window_end <= bounds.previous_end + tolerance,
        )
        .order_by(WindowMetricsSnapshot.window_end.desc(), WindowMetricsSnapshot.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def compute_window_metrics(
    *,
    tenant: TenantKey,
    window: Union[int, str],
    db: AsyncSession,
    now: Optional[datetime] = None,
    bounds: Optional[WindowBounds] = None,
    product: Optional[str] = None,
    sentiment_category: Optional[str] = None,
    persist: bool = False,
) -> Dict[str, Any]:
    """Aggregate a tenant's window and optionally append a snapshot row.

    Unfiltered rollups compare against the stored snapshot covering the
    previous period when one exists, and against raw content otherwise.
    Snapshots only hold unfiltered rollups.
    """
    filtered = bool(product or sentiment_category)
    if persist and filtered:
        raise ValueError("Snapshots are only stored for unfiltered rollups.")
    bounds = bounds or resolve_window(window, now)
    baseline = None if filtered else await find_baseline_snapshot(db, tenant, bounds)
    current, previous = await load_window_items(
        db,
        tenant,
        bounds,
        product=product,
        sentiment_category=sentiment_category,
        include_previous=baseline is None,
    )
    report = aggregate_window(current, previous, baseline=baseline)
    report.update(
        {
            "window": bounds.label,
            "current_period": {"start": bounds.current_start.isoformat(), "end": bounds.current_end.isoformat()},
            "previous_period": {"start": bounds.previous_start.isoformat(), "end": bounds.previous_end.isoformat()},
            "baseline": (
                {"source": "snapshot", "snapshot_id": baseline.id}
                if baseline is not None
                else {"source": "content", "snapshot_id": None}
            ),
        }
    )
    if persist:
        snapshot = WindowMetricsSnapshot(
            **tenant.column_values(),
            window_label=bounds.label,
            window_start=bounds.current_start,
            window_end=bounds.current_end,
            total_posts=report["total_posts"],
            total_comments=report["total_comments"],
            total_upvotes=report["total_upvotes"],
            engagement_score=report["engagement_score"],
            sentiment_distribution=report["sentiment_distribution"],
            category_trends=[{k: v for k, v in row.items() if k != "top_items"} for row in report["category_trends"]],
            top_trending_posts=report["top_trending_posts"],
        )
        db.add(snapshot)
        await db.commit()
        report["snapshot_id"] = snapshot.id
        logger.info("Stored %s metrics snapshot for %s (%s posts)", bounds.label, tenant, report["total_posts"])
    return report


async def get_window_metrics_service(
    *,
    tenant: TenantKey,
    window: str,
    db: AsyncSession,
    product: Optional[str] = None,
    sentiment_category: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
) -> Dict[str, Any]:
    try:
        bounds = custom_window(date_from, date_to) if date_from and date_to else resolve_window(window)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return await compute_window_metrics(
        tenant=tenant,
        window=window,
        db=db,
        bounds=bounds,
        product=product,
        sentiment_category=sentiment_category,
    )

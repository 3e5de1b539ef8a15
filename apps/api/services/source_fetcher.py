"""Per-channel fetch with failure isolation and defensive normalization."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

from config import settings

logger = logging.getLogger(__name__)

DELETED_AUTHOR = "[deleted]"


@dataclass
class ChannelSpec:
    name: str
    keywords: Sequence[str] = ()


@dataclass
class FetchedItem:
    id: str
    channel: str
    title: str
    body: str
    author: str
    created_utc: datetime
    score: int = 0
    num_comments: int = 0
    url: Optional[str] = None
    permalink: Optional[str] = None
    thumbnail: Optional[str] = None
    image_url: Optional[str] = None


@dataclass
class FetchedReply:
    id: str
    parent_id: Optional[str]
    author: str
    body: str
    created_utc: datetime
    score: int = 0


def _safe_int(value: Any, default: int = 0) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def _normalize_text(value: Any) -> str:
    return str(value or "").strip()


def _timestamp(value: Any) -> datetime:
    try:
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return datetime.now(timezone.utc)


def _image_url(raw: Dict[str, Any]) -> Optional[str]:
    preview = raw.get("preview")
    if isinstance(preview, dict):
        images = preview.get("images") or []
        if images and isinstance(images[0], dict):
            source = images[0].get("source") or {}
            url = _normalize_text(source.get("url"))
            if url:
                return url.replace("&amp;", "&")
    url = _normalize_text(raw.get("url"))
    if url.lower().endswith((".jpg", ".jpeg", ".png", ".gif", ".webp")):
        return url
    return None


def normalize_post(raw: Any, channel: str) -> Optional[FetchedItem]:
    """Map a raw listing entry to a FetchedItem; None when it has no id."""
    if not isinstance(raw, dict):
        return None
    item_id = _normalize_text(raw.get("id"))
    if not item_id:
        return None
    thumbnail = _normalize_text(raw.get("thumbnail"))
    permalink = _normalize_text(raw.get("permalink"))
    return FetchedItem(
        id=item_id,
        channel=_normalize_text(raw.get("subreddit")) or channel,
        title=_normalize_text(raw.get("title")),
        body=_normalize_text(raw.get("selftext")),
        author=_normalize_text(raw.get("author")) or DELETED_AUTHOR,
        created_utc=_timestamp(raw.get("created_utc")),
        score=_safe_int(raw.get("score")),
        num_comments=_safe_int(raw.get("num_comments")),
        url=_normalize_text(raw.get("url")) or None,
        permalink=f"https://www.reddit.com{permalink}" if permalink.startswith("/") else (permalink or None),
        thumbnail=thumbnail if thumbnail.startswith("http") else None,
        image_url=_image_url(raw),
    )


def normalize_reply(raw: Any) -> Optional[FetchedReply]:
    """Map a raw comment; only ``t1_`` parents are kept as reply parents."""
    if not isinstance(raw, dict):
        return None
    reply_id = _normalize_text(raw.get("id"))
    if not reply_id:
        return None
    parent = _normalize_text(raw.get("parent_id"))
    parent_id = parent[3:] if parent.startswith("t1_") else None
    return FetchedReply(
        id=reply_id,
        parent_id=parent_id or None,
        author=_normalize_text(raw.get("author")) or DELETED_AUTHOR,
        body=_normalize_text(raw.get("body")),
        created_utc=_timestamp(raw.get("created_utc")),
        score=_safe_int(raw.get("score")),
    )


def build_search_query(keywords: Iterable[str]) -> str:
    return " OR ".join(keyword for keyword in (_normalize_text(k) for k in keywords) if keyword)


async def fetch_channel(client, channel: ChannelSpec, limit: Optional[int] = None) -> List[FetchedItem]:
    """Fetch one channel. Errors are logged and yield an empty list."""
    limit = int(limit or settings.SOURCE_FETCH_LIMIT)
    query = build_search_query(channel.keywords or ())
    try:
        if query:
            raw_items = await client.search(channel.name, query, sort="new", limit=limit, time_filter="day")
        else:
            raw_items = await client.fetch_new(channel.name, limit=limit)
    except Exception as exc:
        logger.warning("Fetch failed for r/%s: %s", channel.name, exc)
        return []

    items: List[FetchedItem] = []
    skipped = 0
    for raw in raw_items or []:
        item = normalize_post(raw, channel.name)
        if item is None:
            skipped += 1
            continue
        items.append(item)
    if skipped:
        logger.info("Skipped %s malformed items from r/%s", skipped, channel.name)
    return items


async def fetch_channels(
    client,
    channels: Sequence[ChannelSpec],
    *,
    limit: Optional[int] = None,
    delay_seconds: Optional[float] = None,
) -> Dict[str, List[FetchedItem]]:
    """Fetch channels sequentially in the given order with a fixed pause between them."""
    delay = settings.CHANNEL_FETCH_DELAY_SECONDS if delay_seconds is None else delay_seconds
    results: Dict[str, List[FetchedItem]] = {}
    for index, channel in enumerate(channels):
        if index > 0 and delay > 0:
            await asyncio.sleep(delay)
        results[channel.name] = await fetch_channel(client, channel, limit=limit)
        logger.info("Fetched %s items from r/%s", len(results[channel.name]), channel.name)
    return results

"""Ingestion job body: fetch watched channels then upsert posts and reply trees."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from ingestion.reddit import RedditClient
from models.watched_channel import WatchedChannel
from services.content_upsert import upsert_content_item, upsert_reply_tree
from services.source_fetcher import ChannelSpec, fetch_channels, normalize_reply
from services.tenancy import TenantKey

logger = logging.getLogger(__name__)

Checkpoint = Optional[Callable[[], Awaitable[None]]]


class IngestionError(Exception):
    """One or more posts could not be persisted during an ingestion run."""

    def __init__(self, tenant: TenantKey, failed_item_ids: List[str]):
        self.tenant = tenant
        self.failed_item_ids = failed_item_ids
        super().__init__(f"Ingestion for {tenant} failed for {len(failed_item_ids)} item(s)")


async def _load_channels(tenant: TenantKey) -> List[ChannelSpec]:
    async with async_session_maker() as db:
        result = await db.execute(
            select(WatchedChannel)
            .where(tenant.scope(WatchedChannel), WatchedChannel.is_active.is_(True))
            .order_by(WatchedChannel.created_at.asc(), WatchedChannel.name.asc())
        )
        return [
            ChannelSpec(name=row.name, keywords=[str(k) for k in (row.keywords or []) if str(k).strip()])
            for row in result.scalars().all()
        ]


async def _stamp_channel(tenant: TenantKey, channel_name: str, when: datetime) -> None:
    async with async_session_maker() as db:
        result = await db.execute(
            select(WatchedChannel).where(tenant.scope(WatchedChannel), WatchedChannel.name == channel_name)
        )
        row = result.scalar_one_or_none()
        if row is not None:
            row.last_ingested = when
            await db.commit()


async def run_ingestion(tenant: TenantKey, *, client=None, checkpoint: Checkpoint = None) -> Dict[str, Any]:
    """Fetch every active channel of a tenant and persist what came back.

    A post that fails to persist is rolled back on its own and the run
    continues; the run raises IngestionError at the end if any post failed.
    """
    channels = await _load_channels(tenant)
    if not channels:
        logger.info("No active channels for %s; nothing to ingest", tenant)
        return {"channels": 0, "created": 0, "updated": 0, "replies": 0, "failed": 0}

    owns_client = client is None
    client = client or RedditClient()
    created = 0
    updated = 0
    replies_written = 0
    failed_ids: List[str] = []
    try:
        fetched = await fetch_channels(client, channels)
        first_post = True
        for channel_name, items in fetched.items():
            for item in items:
                if checkpoint is not None:
                    await checkpoint()
                if not first_post and settings.REPLY_TREE_DELAY_SECONDS > 0:
                    await asyncio.sleep(settings.REPLY_TREE_DELAY_SECONDS)
                first_post = False

                now = datetime.now(timezone.utc)
                async with async_session_maker() as db:
                    try:
                        _, was_created = await upsert_content_item(db, tenant, item, now=now)
                        await db.flush()
                        raw_replies = await client.fetch_reply_tree(item.id)
                        replies = [reply for reply in (normalize_reply(raw) for raw in raw_replies) if reply]
                        counts = await upsert_reply_tree(db, item.id, replies, now=now)
                        await db.commit()
                    except Exception as exc:
                        await db.rollback()
                        failed_ids.append(item.id)
                        logger.exception("Failed to persist item %s for %s: %s", item.id, tenant, exc)
                        continue
                if was_created:
                    created += 1
                else:
                    updated += 1
                replies_written += counts["created"] + counts["updated"]
            if items:
                await _stamp_channel(tenant, channel_name, datetime.now(timezone.utc))
    finally:
        if owns_client:
            await client.close()

    logger.info(
        "Ingestion for %s: channels=%s created=%s updated=%s replies=%s failed=%s",
        tenant,
        len(channels),
        created,
        updated,
        replies_written,
        len(failed_ids),
    )
    if failed_ids:
        raise IngestionError(tenant, failed_ids)
    return {
        "channels": len(channels),
        "created": created,
        "updated": updated,
        "replies": replies_written,
        "failed": 0,
    }

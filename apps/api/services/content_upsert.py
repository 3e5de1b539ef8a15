"""Idempotent persistence of posts and their reply trees."""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.content_item import ContentItem
from models.reply import Reply
from services.source_fetcher import FetchedItem, FetchedReply
from services.tenancy import TenantKey

logger = logging.getLogger(__name__)


class OrphanReplyError(Exception):
    """A reply references a parent that is neither fetched nor stored."""

    def __init__(self, reply_ids: Iterable[str]):
        self.reply_ids = sorted(reply_ids)
        super().__init__(f"Replies with unknown parents: {', '.join(self.reply_ids)}")


class ReplyArena:
    """Flat store of a reply tree keyed by external id.

    ``children`` indexes reply ids by parent id (``None`` for top-level
    replies) so the tree can be walked without nested objects.
    """

    def __init__(self, replies: Iterable[FetchedReply]):
        self.nodes: Dict[str, FetchedReply] = {}
        self.children: Dict[Optional[str], List[str]] = {}
        for reply in replies:
            if reply.id in self.nodes:
                continue
            self.nodes[reply.id] = reply
            self.children.setdefault(reply.parent_id, []).append(reply.id)

    def __len__(self) -> int:
        return len(self.nodes)

    def ordered(self, persisted_ids: Optional[Set[str]] = None) -> List[FetchedReply]:
        """Replies in parent-before-child order.

        Roots are top-level replies and replies whose parent is already in
        ``persisted_ids``. Anything unreachable from a root raises
        OrphanReplyError.
        """
        persisted_ids = persisted_ids or set()
        queue = deque(self.children.get(None, []))
        for parent_id, child_ids in self.children.items():
            if parent_id is not None and parent_id not in self.nodes and parent_id in persisted_ids:
                queue.extend(child_ids)

        ordered: List[FetchedReply] = []
        seen: Set[str] = set()
        while queue:
            reply_id = queue.popleft()
            if reply_id in seen:
                continue
            seen.add(reply_id)
            ordered.append(self.nodes[reply_id])
            queue.extend(self.children.get(reply_id, []))

        orphans = set(self.nodes) - seen
        if orphans:
            raise OrphanReplyError(orphans)
        return ordered


async def upsert_content_item(
    db: AsyncSession,
    tenant: TenantKey,
    item: FetchedItem,
    now: Optional[datetime] = None,
) -> Tuple[ContentItem, bool]:
    """Create or refresh one content item. Returns (row, created)."""
    now = now or datetime.now(timezone.utc)
    result = await db.execute(select(ContentItem).where(ContentItem.id == item.id))
    existing = result.scalar_one_or_none()
    if existing is not None:
        if TenantKey.from_row(existing) != tenant:
            logger.info("Content item %s already owned by %s; refreshing counters only", item.id, TenantKey.from_row(existing))
        existing.score = item.score
        existing.num_comments = item.num_comments
        existing.last_updated = now
        return existing, False

    row = ContentItem(
        id=item.id,
        **tenant.column_values(),
        channel=item.channel,
        title=item.title,
        body=item.body,
        author=item.author,
        url=item.url,
        permalink=item.permalink,
        thumbnail=item.thumbnail,
        image_url=item.image_url,
        created_utc=item.created_utc,
        score=item.score,
        num_comments=item.num_comments,
        last_updated=now,
        needs_processing=True,
        processing_priority=0,
    )
    db.add(row)
    return row, True


async def upsert_reply_tree(
    db: AsyncSession,
    content_item_id: str,
    replies: Iterable[FetchedReply],
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    """Persist a reply tree parent-before-child; existing replies refresh score only."""
    now = now or datetime.now(timezone.utc)
    arena = ReplyArena(replies)
    if not len(arena):
        return {"created": 0, "updated": 0}

    result = await db.execute(select(Reply).where(Reply.content_item_id == content_item_id))
    stored = {row.id: row for row in result.scalars().all()}
    ordered = arena.ordered(persisted_ids=set(stored))

    created = 0
    updated = 0
    for reply in ordered:
        row = stored.get(reply.id)
        if row is not None:
            row.score = reply.score
            row.last_updated = now
            updated += 1
            continue
        db.add(
            Reply(
                id=reply.id,
                content_item_id=content_item_id,
                parent_reply_id=reply.parent_id,
                author=reply.author,
                body=reply.body,
                created_utc=reply.created_utc,
                score=reply.score,
                last_updated=now,
            )
        )
        # parent rows must exist before children under FK enforcement
        await db.flush()
        created += 1
    return {"created": created, "updated": updated}

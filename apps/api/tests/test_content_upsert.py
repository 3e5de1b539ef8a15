from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.future import select

from models.content_item import ContentItem
from models.reply import Reply
from services.content_upsert import OrphanReplyError, ReplyArena, upsert_content_item, upsert_reply_tree
from services.source_fetcher import FetchedItem, FetchedReply
from services.tenancy import TenantKey

TENANT = TenantKey(kind="user", id="user-1")
CREATED = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


def _item(**overrides) -> FetchedItem:
    payload = dict(
        id="p1",
        channel="widgets",
        title="Battery drains overnight",
        body="Since the update my battery is gone by morning",
        author="alice",
        created_utc=CREATED,
        score=5,
        num_comments=2,
        permalink="https://www.reddit.com/r/widgets/comments/p1/",
    )
    payload.update(overrides)
    return FetchedItem(**payload)


def _reply(reply_id, parent_id=None, score=1) -> FetchedReply:
    return FetchedReply(
        id=reply_id,
        parent_id=parent_id,
        author="bob",
        body=f"reply {reply_id}",
        created_utc=CREATED + timedelta(minutes=5),
        score=score,
    )


def test_arena_orders_parents_before_children():
    arena = ReplyArena([_reply("c3", "c2"), _reply("c2", "c1"), _reply("c1"), _reply("c4")])
    ordered = [reply.id for reply in arena.ordered()]
    assert ordered.index("c1") < ordered.index("c2") < ordered.index("c3")
    assert set(ordered) == {"c1", "c2", "c3", "c4"}


def test_arena_accepts_parent_already_persisted():
    arena = ReplyArena([_reply("c9", "c1")])
    assert [reply.id for reply in arena.ordered(persisted_ids={"c1"})] == ["c9"]


def test_arena_rejects_unknown_parent():
    arena = ReplyArena([_reply("c1"), _reply("c5", "missing")])
    with pytest.raises(OrphanReplyError) as exc_info:
        arena.ordered()
    assert exc_info.value.reply_ids == ["c5"]


@pytest.mark.asyncio
async def test_upsert_twice_is_idempotent_and_keeps_classification(session_maker):
    async with session_maker() as db:
        row, created = await upsert_content_item(db, TENANT, _item())
        assert created is True
        assert row.needs_processing is True
        assert row.processing_priority == 0
        await db.commit()

    async with session_maker() as db:
        row = (await db.execute(select(ContentItem).where(ContentItem.id == "p1"))).scalar_one()
        row.category = "Battery"
        row.needs_processing = False
        row.processing_priority = 2
        await db.commit()

    async with session_maker() as db:
        _, created = await upsert_content_item(
            db,
            TENANT,
            _item(title="edited title", author="someone-else", score=40, num_comments=9),
        )
        assert created is False
        await db.commit()

    async with session_maker() as db:
        rows = (await db.execute(select(ContentItem))).scalars().all()
        assert len(rows) == 1
        row = rows[0]
        assert row.score == 40
        assert row.num_comments == 9
        assert row.title == "Battery drains overnight"
        assert row.author == "alice"
        assert row.category == "Battery"
        assert row.needs_processing is False
        assert row.processing_priority == 2
        assert row.user_id == "user-1"
        assert row.org_id is None


@pytest.mark.asyncio
async def test_reply_tree_upsert_refreshes_score_only(session_maker):
    async with session_maker() as db:
        await upsert_content_item(db, TENANT, _item())
        await db.flush()
        counts = await upsert_reply_tree(db, "p1", [_reply("c2", "c1"), _reply("c1")])
        await db.commit()
    assert counts == {"created": 2, "updated": 0}

    async with session_maker() as db:
        changed = _reply("c2", "c1", score=30)
        changed.body = "rewritten"
        counts = await upsert_reply_tree(db, "p1", [_reply("c1"), changed, _reply("c3", "c2")])
        await db.commit()
    assert counts == {"created": 1, "updated": 2}

    async with session_maker() as db:
        replies = {r.id: r for r in (await db.execute(select(Reply))).scalars().all()}
    assert replies["c2"].score == 30
    assert replies["c2"].body == "reply c2"
    assert replies["c2"].parent_reply_id == "c1"
    assert replies["c3"].parent_reply_id == "c2"
    assert replies["c1"].parent_reply_id is None


@pytest.mark.asyncio
async def test_reply_tree_with_orphan_writes_nothing(session_maker):
    async with session_maker() as db:
        await upsert_content_item(db, TENANT, _item())
        await db.commit()

    async with session_maker() as db:
        with pytest.raises(OrphanReplyError):
            await upsert_reply_tree(db, "p1", [_reply("c1"), _reply("c7", "ghost")])
        await db.rollback()

    async with session_maker() as db:
        assert (await db.execute(select(Reply))).scalars().all() == []

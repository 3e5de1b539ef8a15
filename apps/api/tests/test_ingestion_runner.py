from unittest.mock import AsyncMock

import pytest
from sqlalchemy.future import select

from models.content_item import ContentItem
from models.reply import Reply
from models.watched_channel import WatchedChannel
from services.ingestion_runner import IngestionError, run_ingestion
from services.tenancy import TenantKey

TENANT = TenantKey(kind="org", id="org-1")


async def _add_channels(session_maker, *names):
    async with session_maker() as db:
        for name in names:
            db.add(WatchedChannel(org_id=TENANT.id, name=name, keywords=[], is_active=True))
        await db.commit()


def _fake_client(posts_by_channel, replies_by_post=None, failing_posts=()):
    client = AsyncMock()
    replies_by_post = replies_by_post or {}

    async def _fetch_new(channel, limit):
        return posts_by_channel.get(channel, [])

    async def _fetch_reply_tree(item_id):
        if item_id in failing_posts:
            raise RuntimeError(f"comments unavailable for {item_id}")
        return replies_by_post.get(item_id, [])

    client.fetch_new.side_effect = _fetch_new
    client.fetch_reply_tree.side_effect = _fetch_reply_tree
    return client


@pytest.mark.asyncio
async def test_ingestion_persists_posts_and_reply_trees(session_maker):
    await _add_channels(session_maker, "widgets")
    client = _fake_client(
        {"widgets": [{"id": "p1", "title": "Crash", "created_utc": 1760000000}, {"id": "p2"}]},
        {"p1": [{"id": "c1", "parent_id": "t3_p1"}, {"id": "c2", "parent_id": "t1_c1"}]},
    )

    summary = await run_ingestion(TENANT, client=client)

    assert summary["created"] == 2
    assert summary["replies"] == 2
    async with session_maker() as db:
        items = (await db.execute(select(ContentItem))).scalars().all()
        replies = (await db.execute(select(Reply))).scalars().all()
        channel = (await db.execute(select(WatchedChannel))).scalar_one()
    assert {i.id for i in items} == {"p1", "p2"}
    assert all(i.org_id == "org-1" and i.needs_processing for i in items)
    assert {r.id: r.parent_reply_id for r in replies} == {"c1": None, "c2": "c1"}
    assert channel.last_ingested is not None


@pytest.mark.asyncio
async def test_second_run_refreshes_counters_only(session_maker):
    await _add_channels(session_maker, "widgets")
    await run_ingestion(TENANT, client=_fake_client({"widgets": [{"id": "p1", "title": "Old", "score": 1}]}))
    summary = await run_ingestion(
        TENANT,
        client=_fake_client({"widgets": [{"id": "p1", "title": "New", "score": 50, "num_comments": 7}]}),
    )

    assert summary["created"] == 0
    assert summary["updated"] == 1
    async with session_maker() as db:
        item = (await db.execute(select(ContentItem))).scalar_one()
    assert item.title == "Old"
    assert item.score == 50
    assert item.num_comments == 7


@pytest.mark.asyncio
async def test_failed_post_is_isolated_but_fails_the_run(session_maker):
    await _add_channels(session_maker, "widgets")
    client = _fake_client(
        {"widgets": [{"id": "p1"}, {"id": "bad"}, {"id": "p3"}]},
        failing_posts={"bad"},
    )

    with pytest.raises(IngestionError) as exc_info:
        await run_ingestion(TENANT, client=client)

    assert exc_info.value.failed_item_ids == ["bad"]
    async with session_maker() as db:
        ids = {i.id for i in (await db.execute(select(ContentItem))).scalars().all()}
    assert ids == {"p1", "p3"}


@pytest.mark.asyncio
async def test_no_channels_is_a_noop(session_maker):
    client = _fake_client({})
    summary = await run_ingestion(TENANT, client=client)
    assert summary["channels"] == 0
    client.fetch_new.assert_not_awaited()

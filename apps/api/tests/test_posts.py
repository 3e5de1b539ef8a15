from datetime import datetime, timedelta, timezone

import pytest
from fastapi import HTTPException

from models.content_item import ContentItem
from models.reply import Reply
from services.posts import list_posts_service
from services.tenancy import TenantKey

TENANT = TenantKey(kind="org", id="org-1")
NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


async def _seed(session_maker):
    async with session_maker() as db:
        db.add_all(
            [
                ContentItem(id="a", org_id="org-1", channel="w", title="App crashes on launch", body="",
                            category="Crash", product="Phone", score=10, num_comments=4,
                            created_utc=NOW - timedelta(hours=1)),
                ContentItem(id="b", org_id="org-1", channel="w", title="Battery", body="drains after the CRASH fix",
                            category="Battery", product="Phone", score=50, num_comments=1,
                            created_utc=NOW - timedelta(hours=5)),
                ContentItem(id="c", org_id="org-1", channel="w", title="hello", body="",
                            category="Noise", product="Noise", score=1, num_comments=0,
                            created_utc=NOW - timedelta(hours=48)),
                ContentItem(id="d", org_id="org-1", channel="w", title="100% broken", body="",
                            score=3, num_comments=9, created_utc=NOW - timedelta(hours=2)),
                ContentItem(id="x", org_id="org-2", channel="w", title="crash elsewhere", body="",
                            category="Crash", created_utc=NOW - timedelta(hours=1)),
            ]
        )
        await db.flush()
        db.add_all(
            [
                Reply(id="r1", content_item_id="a", body="same here", score=2, created_utc=NOW),
                Reply(id="r2", content_item_id="a", body="fixed by reinstall", score=9, created_utc=NOW),
                Reply(id="r3", content_item_id="a", parent_reply_id="r2", body="thanks", score=1, created_utc=NOW),
            ]
        )
        await db.commit()


@pytest.mark.asyncio
async def test_posts_default_to_newest_first_within_the_tenant(session_maker):
    await _seed(session_maker)
    async with session_maker() as db:
        listing = await list_posts_service(tenant=TENANT, db=db, now=NOW)

    assert [post["id"] for post in listing["posts"]] == ["a", "d", "b", "c"]
    assert listing["pagination"] == {"total": 4, "page": 1, "page_size": 10, "total_pages": 1}


@pytest.mark.asyncio
async def test_replies_nest_under_parents_by_score(session_maker):
    await _seed(session_maker)
    async with session_maker() as db:
        listing = await list_posts_service(tenant=TENANT, db=db, now=NOW, category="Crash")

    (post,) = listing["posts"]
    assert [reply["id"] for reply in post["replies"]] == ["r2", "r1"]
    assert [reply["id"] for reply in post["replies"][0]["replies"]] == ["r3"]
    assert post["replies"][1]["replies"] == []


@pytest.mark.asyncio
async def test_search_matches_title_or_body_case_insensitively(session_maker):
    await _seed(session_maker)
    async with session_maker() as db:
        crash = await list_posts_service(tenant=TENANT, db=db, now=NOW, search="crash")
        percent = await list_posts_service(tenant=TENANT, db=db, now=NOW, search="%")

    assert {post["id"] for post in crash["posts"]} == {"a", "b"}
    assert [post["id"] for post in percent["posts"]] == ["d"]


@pytest.mark.asyncio
async def test_sort_window_and_noise_filters(session_maker):
    await _seed(session_maker)
    async with session_maker() as db:
        by_score = await list_posts_service(
            tenant=TENANT, db=db, now=NOW, sort_by="score", sort_order="asc", hide_noise=True
        )
        recent = await list_posts_service(tenant=TENANT, db=db, now=NOW, window_hours=3, sort_by="num_comments")

    assert [post["id"] for post in by_score["posts"]] == ["d", "a", "b"]
    assert [post["id"] for post in recent["posts"]] == ["d", "a"]


@pytest.mark.asyncio
async def test_pagination_splits_pages(session_maker):
    await _seed(session_maker)
    async with session_maker() as db:
        second = await list_posts_service(tenant=TENANT, db=db, now=NOW, page=2, page_size=3)
        beyond = await list_posts_service(tenant=TENANT, db=db, now=NOW, page=5, page_size=3)

    assert [post["id"] for post in second["posts"]] == ["c"]
    assert second["pagination"]["total_pages"] == 2
    assert beyond["posts"] == []
    assert beyond["pagination"]["total"] == 4


@pytest.mark.asyncio
async def test_unknown_sort_field_is_rejected(session_maker):
    async with session_maker() as db:
        with pytest.raises(HTTPException) as exc_info:
            await list_posts_service(tenant=TENANT, db=db, sort_by="title")
    assert exc_info.value.status_code == 422

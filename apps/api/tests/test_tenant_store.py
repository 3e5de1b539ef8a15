from datetime import datetime, timezone

import pytest
from fastapi import HTTPException

from models.content_item import ContentItem
from services.tenancy import TenantKey, TenantScopeError
from services.tenant_store import (
    add_bucket_items_service,
    create_bucket_service,
    create_category_service,
    create_channel_service,
    list_bucket_items_service,
    list_buckets_service,
    list_channels_service,
    normalize_channel_name,
    remove_bucket_item_service,
    update_preferences_service,
    upsert_preferences,
)

USER = TenantKey(kind="user", id="user-1")
ORG = TenantKey(kind="org", id="org-1")


def test_tenant_key_requires_exactly_one_owner():
    assert TenantKey.from_ids(user_id="u", org_id=None) == TenantKey(kind="user", id="u")
    assert TenantKey.from_ids(user_id=None, org_id="o").is_org
    with pytest.raises(TenantScopeError):
        TenantKey.from_ids(user_id="u", org_id="o")
    with pytest.raises(TenantScopeError):
        TenantKey.from_ids(user_id=None, org_id=None)


@pytest.mark.parametrize("raw, expected", [("r/Android", "android"), ("/r/pixel_phones", "pixel_phones"), ("iOS", "ios")])
def test_channel_names_are_normalized(raw, expected):
    assert normalize_channel_name(raw) == expected


def test_invalid_channel_name_is_rejected():
    with pytest.raises(HTTPException) as exc_info:
        normalize_channel_name("not a subreddit!")
    assert exc_info.value.status_code == 422


@pytest.mark.asyncio
async def test_enabled_tracks_whether_emails_remain(session_maker):
    async with session_maker() as db:
        prefs = await upsert_preferences(db, USER, emails=["A@Example.com", "a@example.com"])
        assert prefs.emails == ["a@example.com"]
        assert prefs.enabled is True

        prefs = await upsert_preferences(db, USER, emails=[])
        assert prefs.enabled is False

        prefs = await upsert_preferences(db, USER, emails=["ops@example.com"], enabled=False)
        assert prefs.enabled is False

        with pytest.raises(HTTPException):
            await upsert_preferences(db, ORG, enabled=True)


@pytest.mark.asyncio
async def test_unknown_preference_field_is_a_programming_error(session_maker):
    async with session_maker() as db:
        with pytest.raises(ValueError):
            await upsert_preferences(db, USER, favourite_colour="blue")


@pytest.mark.asyncio
async def test_update_preferences_ignores_lifecycle_flags(session_maker):
    async with session_maker() as db:
        result = await update_preferences_service(
            tenant=USER,
            payload={"issue_threshold": 5, "ingestion_active": True, "emails": ["ops@example.com"]},
            db=db,
        )

    assert result["issue_threshold"] == 5
    assert result["enabled"] is True
    assert result["ingestion_active"] is False


@pytest.mark.asyncio
async def test_channels_are_unique_per_tenant(session_maker):
    async with session_maker() as db:
        await create_channel_service(tenant=USER, payload={"name": "r/Android", "keywords": ["battery", "Battery"]}, db=db)
        with pytest.raises(HTTPException) as exc_info:
            await create_channel_service(tenant=USER, payload={"name": "android"}, db=db)
        await create_channel_service(tenant=ORG, payload={"name": "android"}, db=db)

        mine = await list_channels_service(tenant=USER, db=db)

    assert exc_info.value.status_code == 409
    assert [(c["name"], c["keywords"]) for c in mine["channels"]] == [("android", ["battery"])]


@pytest.mark.asyncio
async def test_noise_is_a_reserved_category_name(session_maker):
    async with session_maker() as db:
        with pytest.raises(HTTPException) as exc_info:
            await create_category_service(tenant=USER, kind="feedback", payload={"name": "noise"}, db=db)
    assert exc_info.value.status_code == 422


@pytest.mark.asyncio
async def test_bucket_items_are_limited_to_the_tenant(session_maker):
    async with session_maker() as db:
        db.add(ContentItem(id="mine", user_id=USER.id, channel="a", created_utc=datetime.now(timezone.utc)))
        db.add(ContentItem(id="theirs", org_id=ORG.id, channel="a", created_utc=datetime.now(timezone.utc)))
        await db.commit()

        bucket = await create_bucket_service(tenant=USER, payload={"name": "Crashes"}, db=db)
        with pytest.raises(HTTPException) as exc_info:
            await add_bucket_items_service(tenant=USER, bucket_id=bucket["id"], content_item_ids=["theirs"], db=db)
        assert exc_info.value.status_code == 404

        added = await add_bucket_items_service(tenant=USER, bucket_id=bucket["id"], content_item_ids=["mine", "mine"], db=db)
        assert added["added"] == 1

        items = await list_bucket_items_service(tenant=USER, bucket_id=bucket["id"], db=db)
        assert [(i["id"], i["added_by_ai"]) for i in items["items"]] == [("mine", False)]
        listed = await list_buckets_service(tenant=USER, db=db)
        assert listed["buckets"][0]["item_count"] == 1

        await remove_bucket_item_service(tenant=USER, bucket_id=bucket["id"], content_item_id="mine", db=db)
        with pytest.raises(HTTPException):
            await remove_bucket_item_service(tenant=USER, bucket_id=bucket["id"], content_item_id="mine", db=db)

import base64
from unittest.mock import patch

import pytest

from services.session_token import create_session_token


def _bearer(user_id="user-1", org_id=None, org_role=None):
    token = create_session_token(user_id, org_id=org_id, org_role=org_role)["token"]
    return {"Authorization": f"Bearer {token}"}


def _basic(username, password):
    encoded = base64.b64encode(f"{username}:{password}".encode()).decode()
    return {"Authorization": f"Basic {encoded}"}


@pytest.mark.asyncio
async def test_requests_without_session_are_rejected(client):
    response = await client.get("/ingestion/status")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_org_members_cannot_start_jobs(client):
    response = await client.post(
        "/ingestion/start",
        json={"schedule": "0 * * * *"},
        headers=_bearer(org_id="org-1", org_role="org:member"),
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_org_admin_starts_ingestion_and_sees_status(client):
    headers = _bearer(org_id="org-1", org_role="org:admin")

    started = await client.post("/ingestion/start", json={"schedule": "0 */6 * * *"}, headers=headers)
    assert started.status_code == 200
    assert started.json()["preferences"]["tenant"] == "org:org-1"

    status = await client.get("/ingestion/status", headers=_bearer(user_id="someone-else", org_id="org-1"))
    body = status.json()
    assert body["is_active"] is True
    assert body["schedule"] == "0 */6 * * *"
    assert body["next_run_at"] is not None
    assert body["active_jobs"] == 0


@pytest.mark.asyncio
async def test_personal_tenant_is_separate_from_org(client):
    await client.post("/config/channels", json={"name": "android"}, headers=_bearer(org_id="org-1", org_role="org:admin"))

    personal = await client.get("/config/channels", headers=_bearer())
    org = await client.get("/config/channels", headers=_bearer(org_id="org-1"))

    assert personal.json()["channels"] == []
    assert [c["name"] for c in org.json()["channels"]] == ["android"]


@pytest.mark.asyncio
async def test_invalid_cron_returns_422(client):
    response = await client.post("/ingestion/start", json={"schedule": "whenever"}, headers=_bearer())
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_notifications_require_recipients(client):
    response = await client.post("/notifications/start", json={"emails": []}, headers=_bearer())
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_notifications_start_then_history(client):
    started = await client.post(
        "/notifications/start",
        json={"emails": ["ops@example.com"], "issue_threshold": 5},
        headers=_bearer(),
    )
    assert started.status_code == 200
    prefs = started.json()["preferences"]
    assert prefs["enabled"] is True
    assert prefs["issue_threshold"] == 5

    history = await client.get("/notifications/history", headers=_bearer())
    assert history.json() == {"history": []}


@pytest.mark.asyncio
async def test_metrics_window_validation(client):
    ok = await client.get("/metrics/?window=last_3_months", headers=_bearer())
    assert ok.status_code == 200
    assert ok.json()["total_posts"] == 0

    bad = await client.get("/metrics/?window=fortnight", headers=_bearer())
    assert bad.status_code == 422


@pytest.mark.asyncio
async def test_posts_listing_paginates_and_validates_sorting(client):
    listed = await client.get("/posts/", params={"search": "crash", "hide_noise": "true"}, headers=_bearer())
    assert listed.status_code == 200
    assert listed.json() == {"posts": [], "pagination": {"total": 0, "page": 1, "page_size": 10, "total_pages": 0}}

    bad_sort = await client.get("/posts/", params={"sort_by": "title"}, headers=_bearer())
    assert bad_sort.status_code == 422
    too_large = await client.get("/posts/", params={"page_size": 500}, headers=_bearer())
    assert too_large.status_code == 422


@pytest.mark.asyncio
async def test_preferences_round_trip(client):
    empty = await client.get("/preferences/", headers=_bearer())
    assert empty.json()["enabled"] is False

    updated = await client.put("/preferences/", json={"time_window": 48}, headers=_bearer())
    assert updated.status_code == 200
    assert updated.json()["time_window"] == 48


@pytest.mark.asyncio
async def test_master_kill_switch_requires_basic_auth(client):
    with patch("routers.auth_scope.settings.MASTER_AUTH_PASSWORD", "a-very-long-master-password"):
        denied = await client.post("/categorization/master/kill-all", headers=_basic("master", "wrong"))
        allowed = await client.post(
            "/categorization/master/kill-all",
            headers=_basic("master", "a-very-long-master-password"),
        )

    assert denied.status_code == 401
    assert allowed.status_code == 200
    assert allowed.json()["job_class"] == "categorization"


from types import SimpleNamespace
from unittest.mock import patch

import pytest
from fastapi import HTTPException
from starlette.requests import Request

from routers.rate_limit import _quota_subject, rate_limit
from services.session_token import create_session_token


def _request(headers=None, client=("10.0.0.1", 1234)):
    app = SimpleNamespace(state=SimpleNamespace(disable_rate_limits=False))
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
        "app": app,
    }
    return Request(scope)


def _bearer(user_id, org_id=None):
    return {"Authorization": f"Bearer {create_session_token(user_id, org_id=org_id)['token']}"}


def test_quota_subject_prefers_the_session_tenant():
    assert _quota_subject(_request(_bearer("user-1"))) == "user:user-1"
    assert _quota_subject(_request(_bearer("user-1", org_id="org-9"))) == "org:org-9"
    assert _quota_subject(_request({"Authorization": "Bearer garbage"})) == "ip:10.0.0.1"
    assert _quota_subject(_request({"X-Forwarded-For": "203.0.113.5, 10.0.0.1"})) == "ip:203.0.113.5"


@pytest.mark.asyncio
async def test_local_fallback_enforces_quota_per_tenant():
    dependency = rate_limit("unit", limit=2, window_seconds=60)
    with patch("routers.rate_limit._consume_redis_quota", side_effect=ConnectionError("no redis")):
        await dependency(_request(_bearer("busy")))
        await dependency(_request(_bearer("busy")))
        with pytest.raises(HTTPException) as exc_info:
            await dependency(_request(_bearer("busy")))
        await dependency(_request(_bearer("quiet")))

    assert exc_info.value.status_code == 429
    assert int(exc_info.value.headers["Retry-After"]) >= 1

import httpx
import pytest

from ingestion.reddit import RedditClient, SourceError


def _listing(*ids):
    return {"data": {"children": [{"kind": "t3", "data": {"id": i, "title": f"post {i}"}} for i in ids]}}


def _public_client(handler) -> RedditClient:
    return RedditClient(
        client_id="",
        client_secret="",
        username="",
        password="",
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_search_sends_restricted_query_params():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["params"] = dict(request.url.params)
        return httpx.Response(200, json=_listing("a1", "a2"))

    async with _public_client(handler) as client:
        items = await client.search("widgets", "battery OR heat", sort="new", limit=100, time_filter="day")

    assert [i["id"] for i in items] == ["a1", "a2"]
    assert seen["path"] == "/r/widgets/search.json"
    assert seen["params"]["q"] == "battery OR heat"
    assert seen["params"]["restrict_sr"] == "1"
    assert seen["params"]["t"] == "day"
    assert seen["params"]["sort"] == "new"


@pytest.mark.asyncio
async def test_reply_tree_is_flattened_depth_first():
    comments = {
        "data": {
            "children": [
                {
                    "kind": "t1",
                    "data": {
                        "id": "c1",
                        "parent_id": "t3_p1",
                        "replies": {
                            "data": {
                                "children": [
                                    {"kind": "t1", "data": {"id": "c2", "parent_id": "t1_c1", "replies": ""}},
                                    {"kind": "more", "data": {"children": ["zz"]}},
                                ]
                            }
                        },
                    },
                },
                {"kind": "t1", "data": {"id": "c3", "parent_id": "t3_p1", "replies": ""}},
            ]
        }
    }

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/comments/p1.json"
        return httpx.Response(200, json=[_listing("p1"), comments])

    async with _public_client(handler) as client:
        replies = await client.fetch_reply_tree("p1")

    assert [r["id"] for r in replies] == ["c1", "c2", "c3"]
    assert all("replies" not in r for r in replies)


@pytest.mark.asyncio
async def test_transient_error_is_retried():
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] == 1:
            return httpx.Response(503)
        return httpx.Response(200, json=_listing("n1"))

    async with _public_client(handler) as client:
        items = await client.fetch_new("widgets", limit=10)

    assert calls["count"] == 2
    assert [i["id"] for i in items] == ["n1"]


@pytest.mark.asyncio
async def test_client_error_is_not_retried():
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(404)

    async with _public_client(handler) as client:
        with pytest.raises(SourceError):
            await client.fetch_new("missing")
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_oauth_token_is_fetched_once_and_used():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.url.host, request.url.path, request.headers.get("authorization")))
        if request.url.path == "/api/v1/access_token":
            return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
        return httpx.Response(200, json=_listing("o1"))

    client = RedditClient(
        client_id="id",
        client_secret="secret",
        username="",
        password="",
        transport=httpx.MockTransport(handler),
    )
    async with client:
        await client.fetch_new("widgets")
        await client.fetch_new("gadgets")

    token_calls = [s for s in seen if s[1] == "/api/v1/access_token"]
    api_calls = [s for s in seen if s[0] == "oauth.reddit.com"]
    assert len(token_calls) == 1
    assert [s[1] for s in api_calls] == ["/r/widgets/new", "/r/gadgets/new"]
    assert all(s[2] == "Bearer tok" for s in api_calls)

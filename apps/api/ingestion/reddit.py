"""
Reddit API client.
Thin async adapter over the listing, search and comment endpoints.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from config import settings, reddit_credentials_configured

logger = logging.getLogger(__name__)

PUBLIC_BASE_URL = "https://www.reddit.com"
OAUTH_BASE_URL = "https://oauth.reddit.com"
TOKEN_URL = "https://www.reddit.com/api/v1/access_token"


class SourceError(Exception):
    """Non-retryable failure talking to the content source."""


class TransientSourceError(SourceError):
    """Rate limit, timeout or 5xx from the content source."""


class RedditClient:
    """Async client for the three read operations the pipeline needs."""

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        user_agent: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None,
    ):
        self.client_id = client_id if client_id is not None else settings.REDDIT_CLIENT_ID
        self.client_secret = client_secret if client_secret is not None else settings.REDDIT_CLIENT_SECRET
        self.username = username if username is not None else settings.REDDIT_USERNAME
        self.password = password if password is not None else settings.REDDIT_PASSWORD
        self.user_agent = user_agent or settings.REDDIT_USER_AGENT
        self._transport = transport
        self._timeout = timeout or settings.REDDIT_TIMEOUT_SECONDS
        self._client: Optional[httpx.AsyncClient] = None
        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0

    @property
    def uses_oauth(self) -> bool:
        if self.client_id is None or self.client_secret is None:
            return reddit_credentials_configured()
        return bool(self.client_id and self.client_secret)

    async def __aenter__(self) -> "RedditClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                headers={"User-Agent": self.user_agent},
                transport=self._transport,
                follow_redirects=True,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _ensure_token(self) -> Optional[str]:
        if not self.uses_oauth:
            return None
        if self._access_token and time.time() < self._token_expires_at - 60:
            return self._access_token

        if self.username and self.password:
            data = {"grant_type": "password", "username": self.username, "password": self.password}
        else:
            data = {"grant_type": "client_credentials"}
        response = await self._get_client().post(
            TOKEN_URL,
            data=data,
            auth=(self.client_id, self.client_secret),
        )
        if response.status_code >= 500 or response.status_code == 429:
            raise TransientSourceError(f"Token endpoint returned {response.status_code}")
        if response.status_code != 200:
            raise SourceError(f"Reddit authentication failed ({response.status_code})")
        payload = response.json()
        token = payload.get("access_token")
        if not token:
            raise SourceError("Reddit authentication response missing access_token")
        self._access_token = token
        self._token_expires_at = time.time() + float(payload.get("expires_in") or 3600)
        return token

    @retry(
        wait=wait_random_exponential(multiplier=0.5, max=20),
        stop=stop_after_attempt(3),
        retry=retry_if_exception_type(TransientSourceError),
        reraise=True,
    )
    async def _get(self, path: str, params: Dict[str, Any]) -> Any:
        token = await self._ensure_token()
        headers = {}
        if token:
            base_url = OAUTH_BASE_URL
            headers["Authorization"] = f"Bearer {token}"
        else:
            base_url = PUBLIC_BASE_URL
            path = f"{path}.json"

        try:
            response = await self._get_client().get(f"{base_url}{path}", params=params, headers=headers)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise TransientSourceError(f"Request to {path} failed: {exc}") from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientSourceError(f"{path} returned {response.status_code}")
        if response.status_code == 401 and token:
            # token revoked or expired early; force refresh on the retry
            self._access_token = None
            raise TransientSourceError(f"{path} returned 401")
        if response.status_code != 200:
            raise SourceError(f"{path} returned {response.status_code}")
        return response.json()

    @staticmethod
    def _listing_children(payload: Any) -> List[Dict[str, Any]]:
        if not isinstance(payload, dict):
            return []
        data = payload.get("data") or {}
        children = data.get("children") or []
        return [child.get("data") or {} for child in children if isinstance(child, dict) and child.get("kind") == "t3"]

    async def fetch_new(self, channel: str, limit: int = 100) -> List[Dict[str, Any]]:
        """Newest posts of a subreddit."""
        payload = await self._get(f"/r/{channel}/new", {"limit": max(1, min(int(limit), 100))})
        return self._listing_children(payload)

    async def search(
        self,
        channel: str,
        query: str,
        sort: str = "new",
        limit: int = 100,
        time_filter: str = "day",
    ) -> List[Dict[str, Any]]:
        """Keyword search restricted to one subreddit."""
        params = {
            "q": query,
            "restrict_sr": "1",
            "sort": sort,
            "t": time_filter,
            "limit": max(1, min(int(limit), 100)),
        }
        payload = await self._get(f"/r/{channel}/search", params)
        return self._listing_children(payload)

    async def fetch_reply_tree(self, item_id: str) -> List[Dict[str, Any]]:
        """Flattened comments for a post, each still carrying its ``parent_id``."""
        payload = await self._get(f"/comments/{item_id}", {"limit": 500, "sort": "new"})
        if not isinstance(payload, list) or len(payload) < 2:
            return []

        flattened: List[Dict[str, Any]] = []
        stack = list(reversed((payload[1].get("data") or {}).get("children") or []))
        while stack:
            node = stack.pop()
            if not isinstance(node, dict) or node.get("kind") != "t1":
                continue
            data = dict(node.get("data") or {})
            replies = data.pop("replies", None)
            flattened.append(data)
            if isinstance(replies, dict):
                children = (replies.get("data") or {}).get("children") or []
                stack.extend(reversed(children))
        return flattened

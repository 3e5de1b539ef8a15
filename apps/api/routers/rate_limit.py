"""Per-tenant request quotas for pipeline control endpoints."""

from __future__ import annotations

import asyncio
import math
import time
from typing import Callable, Dict, Tuple

from fastapi import HTTPException, Request
import redis.asyncio as redis

from config import settings
from services.session_token import decode_session_token, tenant_from_claims


_local_counters: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()


def _quota_subject(request: Request) -> str:
    """Tenant from the Bearer session when it decodes, else the client address."""
    authorization = request.headers.get("authorization", "")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() == "bearer" and token:
        try:
            return str(tenant_from_claims(decode_session_token(token.strip())))
        except ValueError:
            pass
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return f"ip:{forwarded.split(',')[0].strip()}"
    if request.client and request.client.host:
        return f"ip:{request.client.host}"
    return "ip:unknown"


async def _consume_local_quota(key: str, limit: int, window_seconds: int) -> Tuple[bool, int]:
    now = time.time()
    async with _local_lock:
        count, reset_at = _local_counters.get(key, (0, now + window_seconds))
        if now >= reset_at:
            count = 0
            reset_at = now + window_seconds
        count += 1
        _local_counters[key] = (count, reset_at)
        return count <= limit, max(int(math.ceil(reset_at - now)), 1)


async def _consume_redis_quota(key: str, limit: int, window_seconds: int) -> Tuple[bool, int]:
    client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        async with client.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.ttl(key)
            current, ttl = await pipe.execute()
        if int(ttl) < 0:
            await client.expire(key, window_seconds)
            ttl = window_seconds
    finally:
        await client.aclose()
    return int(current) <= limit, max(int(ttl or window_seconds), 1)


def rate_limit(prefix: str, limit: int, window_seconds: int) -> Callable[[Request], None]:
    """FastAPI dependency limiting ``prefix`` calls per tenant per window.

    Redis holds the counters; when Redis is unreachable the quota falls back
    to an in-process counter so a single API instance still enforces it.
    """

    async def _dependency(request: Request):
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        key = f"pulse:rate:{prefix}:{_quota_subject(request)}"
        try:
            allowed, retry_after = await _consume_redis_quota(key, limit, window_seconds)
        except Exception:
            allowed, retry_after = await _consume_local_quota(key, limit, window_seconds)

        if not allowed:
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded for {prefix}. Try again later.",
                headers={"Retry-After": str(retry_after)},
            )

    return _dependency

"""Post listing router."""

from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.posts import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, list_posts_service

router = APIRouter()


@router.get("/")
async def list_posts(
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    category: Optional[str] = None,
    product: Optional[str] = None,
    sentiment_category: Optional[Literal["Positive", "Neutral", "Negative"]] = None,
    window: Optional[int] = Query(default=None, ge=1, description="Only posts from the last N hours"),
    search: Optional[str] = Query(default=None, max_length=200),
    sort_by: Literal["created_utc", "num_comments", "score"] = "created_utc",
    sort_order: Literal["asc", "desc"] = "desc",
    hide_noise: bool = False,
    _rate_limit: None = Depends(rate_limit("posts", limit=120, window_seconds=60)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Page through the caller's posts, newest first unless sorted otherwise."""
    return await list_posts_service(
        tenant=auth.tenant,
        db=db,
        page=page,
        page_size=page_size,
        category=category,
        product=product,
        sentiment_category=sentiment_category,
        window_hours=window,
        search=search,
        sort_by=sort_by,
        sort_order=sort_order,
        hide_noise=hide_noise,
    )

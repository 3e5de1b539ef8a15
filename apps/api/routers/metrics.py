"""Window metrics router."""

from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.window_metrics import get_window_metrics_service

router = APIRouter()


@router.get("/")
async def window_metrics(
    window: str = Query(default="24", description="Hours, or last_3_months|last_6_months|last_year|ytd|all_time"),
    product: Optional[str] = None,
    sentiment_category: Optional[Literal["Positive", "Neutral", "Negative"]] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    _rate_limit: None = Depends(rate_limit("metrics", limit=120, window_seconds=60)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Current vs previous window report for the caller's tenant."""
    return await get_window_metrics_service(
        tenant=auth.tenant,
        window=window,
        db=db,
        product=product,
        sentiment_category=sentiment_category,
        date_from=date_from,
        date_to=date_to,
    )

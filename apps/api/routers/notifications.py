"""Alert notification router."""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context, require_tenant_admin
from services.scheduler import start_notifications_service, stop_notifications_service
from services.tenant_store import get_notification_history_service

router = APIRouter()


class StartNotificationsRequest(BaseModel):
    emails: List[str] = Field(min_length=1, max_length=50)
    time_window: int = Field(default=24, ge=1, le=24 * 365)
    issue_threshold: int = Field(default=3, ge=1)
    volume_threshold_multiplier: float = Field(default=1.5, gt=0)
    sentiment_threshold: float = Field(default=0.0, ge=0, le=5)
    comment_growth_threshold: float = Field(default=2.0, ge=0)


@router.post("/start")
async def start_notifications(
    request: StartNotificationsRequest,
    auth: AuthContext = Depends(require_tenant_admin),
    db: AsyncSession = Depends(get_db),
):
    """Store alert settings, enable alerts and schedule the periodic check."""
    return await start_notifications_service(tenant=auth.tenant, payload=request.model_dump(), db=db)


@router.post("/stop")
async def stop_notifications(
    auth: AuthContext = Depends(require_tenant_admin),
    db: AsyncSession = Depends(get_db),
):
    return await stop_notifications_service(tenant=auth.tenant, db=db)


@router.get("/history")
async def notification_history(
    limit: Optional[int] = Query(default=10, ge=1, le=100),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await get_notification_history_service(tenant=auth.tenant, limit=limit or 10, db=db)

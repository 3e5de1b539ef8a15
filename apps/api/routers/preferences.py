"""Tenant preferences router."""

from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context, require_tenant_admin
from services.scheduler import update_preferences_and_alerts_service
from services.tenant_store import get_preferences_service

router = APIRouter()


class UpdatePreferencesRequest(BaseModel):
    emails: Optional[List[str]] = Field(default=None, max_length=50)
    enabled: Optional[bool] = None
    issue_threshold: Optional[int] = Field(default=None, ge=1)
    volume_threshold_multiplier: Optional[float] = Field(default=None, gt=0)
    sentiment_threshold: Optional[float] = Field(default=None, ge=0, le=5)
    comment_growth_threshold: Optional[float] = Field(default=None, ge=0)
    time_window: Optional[int] = Field(default=None, ge=1, le=24 * 365)


@router.get("/")
async def get_preferences(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await get_preferences_service(tenant=auth.tenant, db=db)


@router.put("/")
async def update_preferences(
    request: UpdatePreferencesRequest,
    auth: AuthContext = Depends(require_tenant_admin),
    db: AsyncSession = Depends(get_db),
):
    return await update_preferences_and_alerts_service(
        tenant=auth.tenant,
        payload=request.model_dump(exclude_none=True),
        db=db,
    )

"""Ingestion lifecycle router."""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context, require_master, require_tenant_admin
from routers.rate_limit import rate_limit
from services.job_queue import INGESTION
from services.scheduler import (
    ingestion_status_service,
    kill_all_service,
    start_ingestion_service,
    stop_ingestion_service,
)

router = APIRouter()


class StartIngestionRequest(BaseModel):
    schedule: Optional[str] = Field(default=None, max_length=120, description="Five-field cron expression")


@router.post("/start")
async def start_ingestion(
    request: StartIngestionRequest,
    _rate_limit: None = Depends(rate_limit("ingestion_start", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(require_tenant_admin),
    db: AsyncSession = Depends(get_db),
):
    """Enable recurring ingestion for the caller's tenant."""
    return await start_ingestion_service(tenant=auth.tenant, schedule=request.schedule, db=db)


@router.post("/stop")
async def stop_ingestion(
    auth: AuthContext = Depends(require_tenant_admin),
    db: AsyncSession = Depends(get_db),
):
    """Remove the schedule and stop any queued or running ingestion."""
    return await stop_ingestion_service(tenant=auth.tenant, db=db)


@router.get("/status")
async def ingestion_status(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await ingestion_status_service(tenant=auth.tenant, db=db)


@router.post("/master/kill-all")
async def kill_all_ingestion(
    _master: None = Depends(require_master),
    db: AsyncSession = Depends(get_db),
):
    """Stop ingestion for every tenant."""
    return await kill_all_service(db=db, job_class=INGESTION)

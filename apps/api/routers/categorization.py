"""Categorization lifecycle router."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, require_master, require_tenant_admin
from services.job_queue import CATEGORIZATION
from services.scheduler import kill_all_service, start_categorization_service, stop_categorization_service

router = APIRouter()


@router.post("/start")
async def start_categorization(
    auth: AuthContext = Depends(require_tenant_admin),
    db: AsyncSession = Depends(get_db),
):
    return await start_categorization_service(tenant=auth.tenant, db=db)


@router.post("/stop")
async def stop_categorization(
    auth: AuthContext = Depends(require_tenant_admin),
    db: AsyncSession = Depends(get_db),
):
    return await stop_categorization_service(tenant=auth.tenant, db=db)


@router.post("/master/kill-all")
async def kill_all_categorization(
    _master: None = Depends(require_master),
    db: AsyncSession = Depends(get_db),
):
    return await kill_all_service(db=db, job_class=CATEGORIZATION)

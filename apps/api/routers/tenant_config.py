"""Tenant configuration router: channels, categories and buckets."""

from typing import List, Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context, require_tenant_admin
from routers.rate_limit import rate_limit
from services.tenant_store import (
    add_bucket_items_service,
    create_bucket_service,
    create_category_service,
    create_channel_service,
    delete_bucket_service,
    delete_category_service,
    delete_channel_service,
    list_bucket_items_service,
    list_buckets_service,
    list_categories_service,
    list_channels_service,
    remove_bucket_item_service,
    update_bucket_service,
    update_category_service,
    update_channel_service,
)

router = APIRouter()

CategoryKind = Literal["feedback", "product"]


class ChannelRequest(BaseModel):
    name: str = Field(min_length=2, max_length=64)
    keywords: List[str] = Field(default_factory=list, max_length=50)
    is_active: bool = True


class ChannelUpdateRequest(BaseModel):
    keywords: Optional[List[str]] = Field(default=None, max_length=50)
    is_active: Optional[bool] = None


class CategoryRequest(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    description: Optional[str] = Field(default=None, max_length=2000)
    keywords: List[str] = Field(default_factory=list, max_length=100)
    versions: List[str] = Field(default_factory=list, max_length=100)


class CategoryUpdateRequest(BaseModel):
    description: Optional[str] = Field(default=None, max_length=2000)
    keywords: Optional[List[str]] = Field(default=None, max_length=100)
    versions: Optional[List[str]] = Field(default=None, max_length=100)


class BucketRequest(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    description: Optional[str] = Field(default=None, max_length=2000)
    is_active: bool = True
    priority: int = 0


class BucketUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    description: Optional[str] = Field(default=None, max_length=2000)
    is_active: Optional[bool] = None
    priority: Optional[int] = None


class BucketItemsRequest(BaseModel):
    content_item_ids: List[str] = Field(min_length=1, max_length=500)


@router.get("/channels")
async def list_channels(auth: AuthContext = Depends(get_auth_context), db: AsyncSession = Depends(get_db)):
    return await list_channels_service(tenant=auth.tenant, db=db)


@router.post("/channels")
async def create_channel(
    request: ChannelRequest,
    _rate_limit: None = Depends(rate_limit("channel_create", limit=60, window_seconds=3600)),
    auth: AuthContext = Depends(require_tenant_admin),
    db: AsyncSession = Depends(get_db),
):
    return await create_channel_service(tenant=auth.tenant, payload=request.model_dump(), db=db)


@router.patch("/channels/{channel_id}")
async def update_channel(
    channel_id: str,
    request: ChannelUpdateRequest,
    auth: AuthContext = Depends(require_tenant_admin),
    db: AsyncSession = Depends(get_db),
):
    return await update_channel_service(tenant=auth.tenant, channel_id=channel_id, payload=request.model_dump(), db=db)


@router.delete("/channels/{channel_id}")
async def delete_channel(
    channel_id: str,
    auth: AuthContext = Depends(require_tenant_admin),
    db: AsyncSession = Depends(get_db),
):
    return await delete_channel_service(tenant=auth.tenant, channel_id=channel_id, db=db)


@router.get("/categories/{kind}")
async def list_categories(
    kind: CategoryKind,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await list_categories_service(tenant=auth.tenant, kind=kind, db=db)


@router.post("/categories/{kind}")
async def create_category(
    kind: CategoryKind,
    request: CategoryRequest,
    auth: AuthContext = Depends(require_tenant_admin),
    db: AsyncSession = Depends(get_db),
):
    return await create_category_service(tenant=auth.tenant, kind=kind, payload=request.model_dump(), db=db)


@router.patch("/categories/{kind}/{category_id}")
async def update_category(
    kind: CategoryKind,
    category_id: str,
    request: CategoryUpdateRequest,
    auth: AuthContext = Depends(require_tenant_admin),
    db: AsyncSession = Depends(get_db),
):
    return await update_category_service(
        tenant=auth.tenant,
        kind=kind,
        category_id=category_id,
        payload=request.model_dump(),
        db=db,
    )


@router.delete("/categories/{kind}/{category_id}")
async def delete_category(
    kind: CategoryKind,
    category_id: str,
    auth: AuthContext = Depends(require_tenant_admin),
    db: AsyncSession = Depends(get_db),
):
    return await delete_category_service(tenant=auth.tenant, kind=kind, category_id=category_id, db=db)


@router.get("/buckets")
async def list_buckets(auth: AuthContext = Depends(get_auth_context), db: AsyncSession = Depends(get_db)):
    return await list_buckets_service(tenant=auth.tenant, db=db)


@router.post("/buckets")
async def create_bucket(
    request: BucketRequest,
    auth: AuthContext = Depends(require_tenant_admin),
    db: AsyncSession = Depends(get_db),
):
    return await create_bucket_service(tenant=auth.tenant, payload=request.model_dump(), db=db)


@router.patch("/buckets/{bucket_id}")
async def update_bucket(
    bucket_id: str,
    request: BucketUpdateRequest,
    auth: AuthContext = Depends(require_tenant_admin),
    db: AsyncSession = Depends(get_db),
):
    return await update_bucket_service(tenant=auth.tenant, bucket_id=bucket_id, payload=request.model_dump(), db=db)


@router.delete("/buckets/{bucket_id}")
async def delete_bucket(
    bucket_id: str,
    auth: AuthContext = Depends(require_tenant_admin),
    db: AsyncSession = Depends(get_db),
):
    return await delete_bucket_service(tenant=auth.tenant, bucket_id=bucket_id, db=db)


@router.get("/buckets/{bucket_id}/items")
async def list_bucket_items(
    bucket_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await list_bucket_items_service(tenant=auth.tenant, bucket_id=bucket_id, db=db)


@router.post("/buckets/{bucket_id}/items")
async def add_bucket_items(
    bucket_id: str,
    request: BucketItemsRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await add_bucket_items_service(
        tenant=auth.tenant,
        bucket_id=bucket_id,
        content_item_ids=request.content_item_ids,
        db=db,
    )


@router.delete("/buckets/{bucket_id}/items/{content_item_id}")
async def remove_bucket_item(
    bucket_id: str,
    content_item_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await remove_bucket_item_service(
        tenant=auth.tenant,
        bucket_id=bucket_id,
        content_item_id=content_item_id,
        db=db,
    )

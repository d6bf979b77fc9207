# giftfinder/routers/cache.py
from __future__ import annotations

from typing import Any, Dict, List

from fastapi import APIRouter, Query, Request
from pydantic import BaseModel, Field

from giftfinder.routers.search import get_services
from giftfinder.services.query_cache import CacheStatsSnapshot

router = APIRouter(prefix="/cache", tags=["cache"])


class InvalidateRequest(BaseModel):
    product_id: str = Field(..., min_length=1, max_length=128)


class InvalidateResponse(BaseModel):
    deleted: int


@router.post("/invalidate", response_model=InvalidateResponse)
async def post_invalidate(body: InvalidateRequest, request: Request) -> InvalidateResponse:
    """Call after a product is updated or deleted."""
    deleted = await get_services(request).cache.invalidate_by_product_id(body.product_id)
    return InvalidateResponse(deleted=deleted)


@router.delete("", response_model=InvalidateResponse)
async def delete_all(request: Request) -> InvalidateResponse:
    deleted = await get_services(request).cache.invalidate_all()
    return InvalidateResponse(deleted=deleted)


@router.get("/stats", response_model=CacheStatsSnapshot)
async def get_stats(request: Request) -> CacheStatsSnapshot:
    return await get_services(request).cache.stats()


@router.get("/top")
async def get_top(request: Request, limit: int = Query(20, ge=1, le=500)) -> List[Dict[str, Any]]:
    return await get_services(request).cache.get_top_queries(limit)

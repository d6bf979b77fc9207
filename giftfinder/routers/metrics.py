# =============================================
# File: giftfinder/routers/metrics.py
# Purpose: Expose metrics, vector health & component stats as JSON
# =============================================
from __future__ import annotations
from typing import Any, Dict

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse

from giftfinder.routers.search import get_services
from giftfinder.utils.metrics import snapshot

router = APIRouter(tags=["metrics"])


@router.get("/metrics")
def get_metrics():
    """Return in-process metrics (JSON)."""
    return snapshot()


@router.get("/monitoring/health")
async def get_vector_health(request: Request):
    """503 when any alert is critical."""
    health = await get_services(request).monitoring.health()
    code = 503 if health.status == "unhealthy" else 200
    return JSONResponse(status_code=code, content=health.model_dump())


@router.get("/monitoring/stats")
async def get_stats(request: Request) -> Dict[str, Any]:
    return await get_services(request).monitoring.stats()


@router.put("/monitoring/thresholds")
async def put_thresholds(request: Request, changes: Dict[str, float]) -> Dict[str, float]:
    try:
        return get_services(request).monitoring.update_thresholds(**changes)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

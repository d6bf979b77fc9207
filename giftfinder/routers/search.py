# giftfinder/routers/search.py
from __future__ import annotations

import time
from typing import List

from fastapi import APIRouter, HTTPException, Query, Request
from loguru import logger
from pydantic import BaseModel, Field, field_validator

from giftfinder.services.container import Services
from giftfinder.services.schemas import HybridOptions, SearchResult, SimilarityOptions
from giftfinder.utils import slog
from giftfinder.utils.errors import EmbeddingError, PoolExhaustedRetries, PoolNotInitialized

router = APIRouter(prefix="/search", tags=["search"])


# --------- Schemas ---------

class _QueryMixin(BaseModel):
    query: str = Field(..., min_length=1, max_length=500)

    @field_validator("query")
    @classmethod
    def _trim_query(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("query must not be empty")
        return v


class SimilarSearchRequest(SimilarityOptions, _QueryMixin):
    pass


class HybridSearchRequest(HybridOptions, _QueryMixin):
    pass


class SearchResponse(BaseModel):
    results: List[SearchResult]
    total: int
    degraded: bool = False
    latency_ms: int


def get_services(request: Request) -> Services:
    return request.app.state.services


async def _run(request: Request, kind: str, query: str, call) -> SearchResponse:
    """
    Store outages (pool down or retries spent) degrade to an empty result
    list; embedding failures surface as 503.
    """
    t0 = time.perf_counter()
    degraded = False
    try:
        results = await call()
    except (PoolNotInitialized, PoolExhaustedRetries) as e:
        logger.warning(f"[search] {kind} degraded: {e}")
        results, degraded = [], True
    except EmbeddingError as e:
        request.state.log_context = slog.search_context(query, kind, 0, degraded=True)
        raise HTTPException(status_code=503, detail=f"Embedding unavailable: {e}")
    request.state.log_context = slog.search_context(query, kind, len(results), degraded)
    return SearchResponse(
        results=results,
        total=len(results),
        degraded=degraded,
        latency_ms=int((time.perf_counter() - t0) * 1000),
    )


# --------- Endpoints ---------

@router.post("/similar", response_model=SearchResponse)
async def post_similar(body: SimilarSearchRequest, request: Request) -> SearchResponse:
    svc = get_services(request)
    opts = SimilarityOptions(**body.model_dump(exclude={"query"}))
    return await _run(request, "similar", body.query, lambda: svc.search.search(body.query, opts))


@router.post("/hybrid", response_model=SearchResponse)
async def post_hybrid(body: HybridSearchRequest, request: Request) -> SearchResponse:
    svc = get_services(request)
    opts = HybridOptions(**body.model_dump(exclude={"query"}))
    return await _run(request, "hybrid", body.query, lambda: svc.search.hybrid(body.query, opts))


@router.get("/similar-to/{product_id}", response_model=SearchResponse)
async def get_similar_to(
    product_id: str,
    request: Request,
    match_count: int = Query(10, ge=1, le=100),
    match_threshold: float = Query(0.7, ge=0.0, le=1.0),
) -> SearchResponse:
    svc = get_services(request)
    opts = SimilarityOptions(match_count=match_count, match_threshold=match_threshold)
    return await _run(
        request, "similar_to", product_id, lambda: svc.search.find_similar_to_product(product_id, opts)
    )

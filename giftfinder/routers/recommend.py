# giftfinder/routers/recommend.py
from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Body, HTTPException, Request
from pydantic import ValidationError

from giftfinder.routers.search import get_services
from giftfinder.services.schemas import GiftRequest, GiftSearchResponse
from giftfinder.utils.errors import GenerationFailed, RateLimitExceeded

router = APIRouter(tags=["recommendations"])

# client key (lowercased) -> GiftRequest field
_ALIASES: Dict[str, str] = {
    "occasion": "occasion",
    "relationship": "relationship",
    "agerange": "age_range",
    "age_range": "age_range",
    "age": "age_range",
    "gender": "gender",
    "budgetmin": "budget_min",
    "budget_min": "budget_min",
    "minprice": "budget_min",
    "budgetmax": "budget_max",
    "budget_max": "budget_max",
    "maxprice": "budget_max",
    "interests": "interests",
    "recipientname": "recipient_name",
    "recipient_name": "recipient_name",
    "name": "recipient_name",
    "excludeproducts": "exclude_products",
    "exclude_products": "exclude_products",
    "previousrecommendations": "exclude_products",
    "previous_recommendations": "exclude_products",
}


def _coerce_payload(raw: Dict[str, Any]) -> GiftRequest:
    """
    Accept snake_case or camelCase form payloads, plus a nested
    {"budget": {"min": .., "max": ..}}. Raises HTTPException(422).
    """
    data: Dict[str, Any] = {}
    for k, v in (raw or {}).items():
        key = str(k).lower()
        if key == "budget" and isinstance(v, dict):
            data.setdefault("budget_min", v.get("min"))
            data.setdefault("budget_max", v.get("max"))
            continue
        field = _ALIASES.get(key)
        if field and field not in data:
            data[field] = v
    if isinstance(data.get("interests"), str):
        data["interests"] = [s for s in data["interests"].split(",")]
    try:
        return GiftRequest(**data)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))


@router.post("/recommendations", response_model=GiftSearchResponse)
async def post_recommendations(request: Request, payload: Dict[str, Any] = Body(...)) -> GiftSearchResponse:
    """
    Gift recommendations for a recipient profile.
    429 (with Retry-After) when rate limited, 502 when every model failed.
    """
    gift_request = _coerce_payload(payload)
    svc = get_services(request)
    try:
        resp = await svc.recommender.generate(gift_request)
    except RateLimitExceeded as e:
        request.state.log_context = {"rate_limited": True}
        raise HTTPException(status_code=429, detail=str(e), headers={"Retry-After": str(e.retry_after)})
    except GenerationFailed as e:
        request.state.log_context = {"models_tried": e.models_tried}
        raise HTTPException(status_code=502, detail=str(e))

    request.state.log_context = {
        "model": resp.model_used,
        "fallback_used": resp.fallback_used,
        "results": resp.total_results,
        "cost_usd": resp.cost.cost_usd,
    }
    return resp

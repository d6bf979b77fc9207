# =============================================
# File: giftfinder/services/recommender.py
# Purpose: LLM gift recommendations with model fallback + post-processing
# =============================================
from __future__ import annotations
import asyncio
import json
import re
import time
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from loguru import logger

from ..utils import metrics
from ..utils.errors import GenerationFailed, RateLimitExceeded
from ..utils.prompting import build_gift_prompts
from ..utils.ratelimit import FixedWindowRateLimiter
from ..utils.retry import retry_after_of, status_code_of
from ..utils.settings import RecommendationSettings
from .generation import ChatModelClient, Completion, calculate_generation_cost, complete_with_retry
from .schemas import GiftRequest, GiftSearchResponse, Recommendation

QUALITY_KEYWORDS = ("premium", "quality", "artisan", "handmade", "unique")

BASE_SCORE = 50.0
INTEREST_POINTS = 10.0
PRICE_POINTS = 20.0
QUALITY_POINTS = 10.0

_LIST_KEYS = ("recommendations", "gifts", "items", "products")
_NAME_KEYS = ("productName", "product_name", "name", "title")
_REASON_KEYS = ("matchReason", "match_reason", "reason", "why")
_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")


# ---------- Parsing ----------

def _extract_json(text: str) -> Any:
    """Tolerant to prose or code fences around the JSON payload."""
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        pass
    for open_ch, close_ch in (("{", "}"), ("[", "]")):
        start, end = text.find(open_ch), text.rfind(close_ch)
        if start != -1 and end > start:
            try:
                return json.loads(text[start:end + 1])
            except ValueError:
                continue
    return None


def _items_from(data: Any) -> List[Any]:
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for k in _LIST_KEYS:
            if isinstance(data.get(k), list):
                return data[k]
        if any(k in data for k in _NAME_KEYS):
            return [data]
    return []


def _first(d: Dict[str, Any], keys: Iterable[str]) -> Any:
    for k in keys:
        v = d.get(k)
        if v not in (None, ""):
            return v
    return None


def _parse_price(v: Any) -> float:
    if isinstance(v, bool):
        return 0.0
    if isinstance(v, (int, float)):
        return float(v)
    if isinstance(v, str):
        m = _NUMBER_RE.search(v.replace(",", ""))
        if m:
            return float(m.group(0))
    return 0.0


def _parse_tags(v: Any) -> List[str]:
    if isinstance(v, str):
        raw = v.split(",")
    elif isinstance(v, (list, tuple)):
        raw = v
    else:
        return []
    out: List[str] = []
    for t in raw:
        s = str(t).strip()
        if s and s not in out:
            out.append(s)
    return out


def parse_recommendations(text: str) -> List[Recommendation]:
    recs: List[Recommendation] = []
    for item in _items_from(_extract_json(text)):
        if not isinstance(item, dict):
            continue
        recs.append(
            Recommendation(
                product_name=str(_first(item, _NAME_KEYS) or "").strip() or "Unknown Product",
                description=str(item.get("description") or "").strip(),
                price=_parse_price(item.get("price")),
                currency=str(item.get("currency") or "USD"),
                category=str(item.get("category") or "").strip() or "Other",
                tags=_parse_tags(item.get("tags")),
                match_reason=str(_first(item, _REASON_KEYS) or "").strip(),
            )
        )
    return recs


# ---------- Post-processing ----------

def filter_by_budget(recs: Sequence[Recommendation], budget_min: float, budget_max: float) -> List[Recommendation]:
    return [r for r in recs if budget_min <= r.price <= budget_max]


def ensure_diversity(recs: Sequence[Recommendation], max_per_category: int = 3) -> List[Recommendation]:
    counts: Dict[str, int] = {}
    out: List[Recommendation] = []
    for r in recs:
        key = r.category.strip().lower()
        if counts.get(key, 0) >= max_per_category:
            continue
        counts[key] = counts.get(key, 0) + 1
        out.append(r)
    return out


def relevance_score(rec: Recommendation, request: GiftRequest) -> float:
    score = BASE_SCORE

    fields = [rec.description.lower(), rec.category.lower()] + [t.lower() for t in rec.tags]
    for interest in request.interests:
        needle = interest.lower()
        if needle and any(needle in f for f in fields):
            score += INTEREST_POINTS

    mid = (request.budget_min + request.budget_max) / 2.0
    half_range = (request.budget_max - request.budget_min) / 2.0
    if half_range > 0:
        score += max(0.0, PRICE_POINTS * (1.0 - abs(rec.price - mid) / half_range))
    elif rec.price == mid:
        score += PRICE_POINTS

    desc = rec.description.lower()
    if any(k in desc for k in QUALITY_KEYWORDS):
        score += QUALITY_POINTS

    return max(0.0, min(100.0, score))


def post_process(recs: Sequence[Recommendation], request: GiftRequest, max_per_category: int = 3) -> List[Recommendation]:
    """budget filter -> diversity cap -> scoring -> stable sort by score desc"""
    kept = ensure_diversity(filter_by_budget(recs, request.budget_min, request.budget_max), max_per_category)
    scored = [r.model_copy(update={"relevance_score": round(relevance_score(r, request), 2)}) for r in kept]
    scored.sort(key=lambda r: r.relevance_score, reverse=True)
    return scored


# ---------- Generator ----------

class RecommendationGenerator:
    def __init__(
        self,
        client: Optional[ChatModelClient],
        settings: Optional[RecommendationSettings] = None,
        rate_limiter: Optional[FixedWindowRateLimiter] = None,
        sleep=asyncio.sleep,
    ):
        self.settings = settings or RecommendationSettings.from_env()
        self.client = client
        self.rate_limiter = rate_limiter or FixedWindowRateLimiter(self.settings.max_requests_per_minute, 60.0)
        self._sleep = sleep

    def _models(self) -> List[str]:
        s = self.settings
        models = [s.primary_model]
        if s.fallback_model and s.fallback_model != s.primary_model:
            models.append(s.fallback_model)
        return models

    async def _attempt(self, model: str, system_prompt: str, user_prompt: str) -> Tuple[List[Recommendation], Completion]:
        s = self.settings
        completion = await complete_with_retry(
            self.client,
            model,
            system_prompt,
            user_prompt,
            temperature=s.temperature,
            max_tokens=s.max_tokens,
            max_attempts=s.max_retries,
            initial_delay_s=s.initial_delay_s,
            max_delay_s=s.max_delay_s,
            sleep=self._sleep,
        )
        recs = parse_recommendations(completion.text)
        if not recs:
            raise GenerationFailed(f"No recommendations in {model} response", [model])
        return recs, completion

    async def generate(self, request: GiftRequest, rate_key: str = "global") -> GiftSearchResponse:
        t0 = time.perf_counter()
        if self.settings.rate_limit_enabled:
            try:
                self.rate_limiter.check(rate_key)
            except RateLimitExceeded as e:
                metrics.record_rate_limit_hit()
                logger.warning(f"[recommend] rate limited; retry after {e.retry_after}s")
                raise

        if self.client is None:
            metrics.record_generation_failure()
            raise GenerationFailed("No generation provider configured")

        system_prompt, user_prompt = build_gift_prompts(
            occasion=request.occasion,
            relationship=request.relationship,
            age_range=request.age_range,
            budget_min=request.budget_min,
            budget_max=request.budget_max,
            interests=request.interests,
            gender=request.gender,
            recipient_name=request.recipient_name,
            exclude_products=request.exclude_products,
            max_per_category=self.settings.max_per_category,
        )

        models = self._models()
        last_err: Optional[BaseException] = None
        for idx, model in enumerate(models):
            try:
                recs, completion = await self._attempt(model, system_prompt, user_prompt)
            except Exception as e:
                last_err = e
                logger.warning(f"[recommend] {model} failed: {e!r}")
                continue

            results = post_process(recs, request, self.settings.max_per_category)
            cost = calculate_generation_cost(model, completion.prompt_tokens, completion.completion_tokens)
            metrics.record_generation(model, cost.total_tokens, cost.cost_usd, fallback=idx > 0)
            latency_ms = int((time.perf_counter() - t0) * 1000)
            logger.info(
                f"[recommend] model={model} parsed={len(recs)} kept={len(results)} "
                f"cost=${cost.cost_usd:.4f} latency={latency_ms}ms"
            )
            return GiftSearchResponse(
                recommendations=results,
                model_used=model,
                fallback_used=idx > 0,
                cost=cost,
                latency_ms=latency_ms,
                total_results=len(results),
            )

        metrics.record_generation_failure()
        if last_err is not None and status_code_of(last_err) == 429:
            raise RateLimitExceeded(
                retry_after=retry_after_of(last_err) or 60,
                message="Model provider rate limit exceeded",
            ) from last_err
        raise GenerationFailed(f"All models failed: {last_err}", models) from last_err

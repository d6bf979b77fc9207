# =============================================
# File: giftfinder/services/embedding.py
# Purpose: Embedding generation with cost accounting + cache-aside
# =============================================
from __future__ import annotations
import asyncio
import hashlib
import math
import os
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from loguru import logger
from openai import AsyncOpenAI
from pydantic import BaseModel, Field

from ..utils import metrics
from ..utils.caching import TTLCache
from ..utils.errors import EmbeddingError
from ..utils.retry import exponential_backoff, is_transient_error, with_retry
from ..utils.settings import EmbeddingSettings

# USD per 1K tokens
PRICE_PER_1K_TOKENS: Dict[str, float] = {
    "text-embedding-3-small": 0.00002,
    "text-embedding-3-large": 0.00013,
    "text-embedding-ada-002": 0.0001,
}

PRODUCT_DESCRIPTION_CHARS = 500
PRODUCT_MAX_TAGS = 10


class EmbeddingCost(BaseModel):
    tokens_used: int = 0
    cost_usd: float = 0.0
    model: str = ""


class BatchEmbeddingResult(BaseModel):
    # Index-aligned with the input; None where the item was skipped
    embeddings: List[Optional[List[float]]] = Field(default_factory=list)
    cost: EmbeddingCost = Field(default_factory=EmbeddingCost)
    succeeded: int = 0
    failed: int = 0
    failed_indices: List[int] = Field(default_factory=list)


class EmbeddingProvider(Protocol):
    model: str

    async def embed(self, texts: List[str]) -> Tuple[List[List[float]], int]:
        """Return one vector per input text plus the total token count."""
        ...


def normalize_text(text: str) -> str:
    return " ".join((text or "").strip().lower().split())


def build_product_text(
    title: str,
    description: Optional[str] = None,
    category: Optional[str] = None,
    tags: Optional[Sequence[str]] = None,
) -> str:
    parts = [(title or "").strip()]
    if description:
        parts.append(description.strip()[:PRODUCT_DESCRIPTION_CHARS])
    if category:
        parts.append(f"Category: {category}")
    if tags:
        parts.append(f"Tags: {', '.join(list(tags)[:PRODUCT_MAX_TAGS])}")
    return ". ".join(p for p in parts if p)


def calculate_cost(tokens: int, model: str) -> EmbeddingCost:
    price = PRICE_PER_1K_TOKENS.get(model, 0.0)
    return EmbeddingCost(tokens_used=int(tokens), cost_usd=(tokens / 1000.0) * price, model=model)


def validate_embedding(vec: Any, dimensions: int) -> bool:
    if not isinstance(vec, (list, tuple)) or len(vec) != dimensions:
        return False
    try:
        return all(math.isfinite(float(x)) for x in vec)
    except (TypeError, ValueError):
        return False


class OpenAIEmbeddingProvider:
    def __init__(
        self,
        model: str = "text-embedding-3-small",
        dimensions: int = 1536,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        max_retries: int = 3,
        client: Any = None,
        sleep=asyncio.sleep,
    ):
        self.model = model
        self.dimensions = dimensions
        self.max_retries = max_retries
        self._sleep = sleep
        # SDK retries off: the retry policy lives here
        self._client = client or AsyncOpenAI(api_key=api_key, base_url=base_url, max_retries=0)

    async def embed(self, texts: List[str]) -> Tuple[List[List[float]], int]:
        kwargs: Dict[str, Any] = {"model": self.model, "input": texts}
        if self.model.startswith("text-embedding-3"):
            kwargs["dimensions"] = self.dimensions

        resp = await with_retry(
            lambda: self._client.embeddings.create(**kwargs),
            max_attempts=self.max_retries,
            backoff=exponential_backoff(0.5, cap=8.0),
            should_retry=is_transient_error,
            sleep=self._sleep,
            label=f"embeddings.create[{self.model}]",
        )
        data = sorted(resp.data, key=lambda d: d.index)
        usage = getattr(resp, "usage", None)
        tokens = int(getattr(usage, "total_tokens", 0) or 0)
        return [list(d.embedding) for d in data], tokens


class LocalEmbeddingProvider:
    """sentence-transformers on CPU; free, so its cost is always zero."""

    def __init__(self, model_name: Optional[str] = None):
        self._model_name = model_name
        self.model = f"local:{model_name or 'default'}"

    async def embed(self, texts: List[str]) -> Tuple[List[List[float]], int]:
        # Lazy import so the API process does not load torch unless asked to
        from ..utils.embeddings import embed_texts, rough_token_count

        vectors = await asyncio.to_thread(embed_texts, texts, self._model_name)
        return vectors, sum(rough_token_count(t) for t in texts)


def build_provider(settings: EmbeddingSettings) -> Optional[EmbeddingProvider]:
    if settings.provider == "local":
        return LocalEmbeddingProvider(os.getenv("LOCAL_EMBEDDING_MODEL") or None)
    if not settings.api_key:
        logger.warning("[embedding] OPENAI_API_KEY not set; embedding provider disabled")
        return None
    return OpenAIEmbeddingProvider(
        model=settings.model,
        dimensions=settings.dimensions,
        api_key=settings.api_key,
        base_url=settings.base_url,
        max_retries=settings.max_retries,
    )


class EmbeddingGenerator:
    def __init__(
        self,
        provider: Optional[EmbeddingProvider],
        settings: Optional[EmbeddingSettings] = None,
        cache: Optional[TTLCache] = None,
    ):
        self.settings = settings or EmbeddingSettings.from_env()
        self.provider = provider
        self._cache = cache or TTLCache(self.settings.cache_ttl_s, self.settings.cache_max_entries)
        self._calls = 0
        self._hits = 0
        self._misses = 0
        self._tokens = 0
        self._cost = 0.0

    @property
    def model(self) -> str:
        return getattr(self.provider, "model", None) or self.settings.model

    def _key(self, text: str) -> str:
        return hashlib.sha256(f"{self.model}:{text}".encode("utf-8")).hexdigest()

    def calculate_cost(self, tokens: int) -> EmbeddingCost:
        return calculate_cost(tokens, self.model)

    def validate(self, vec: Any) -> bool:
        return validate_embedding(vec, self.settings.dimensions)

    async def _provider_embed(self, texts: List[str]) -> Tuple[List[List[float]], int]:
        if self.provider is None:
            raise EmbeddingError("No embedding provider configured")
        try:
            vectors, tokens = await self.provider.embed(texts)
        except EmbeddingError:
            raise
        except Exception as e:
            raise EmbeddingError(f"Embedding request failed: {e}") from e
        if len(vectors) != len(texts):
            raise EmbeddingError(f"Provider returned {len(vectors)} vectors for {len(texts)} inputs")
        return vectors, tokens

    def _account(self, tokens: int, cost: EmbeddingCost, cached: bool) -> None:
        self._calls += 1
        if cached:
            self._hits += 1
        else:
            self._misses += 1
            self._tokens += tokens
            self._cost += cost.cost_usd
        metrics.record_embedding(tokens=tokens, cost_usd=cost.cost_usd, cached=cached)

    async def _embed_one(self, text: str) -> Tuple[List[float], EmbeddingCost]:
        if not text:
            raise EmbeddingError("Cannot embed empty text")
        key = self._key(text)
        cached = self._cache.get(key)
        if cached is not None:
            cost = EmbeddingCost(tokens_used=0, cost_usd=0.0, model=self.model)
            self._account(0, cost, cached=True)
            return list(cached), cost

        vectors, tokens = await self._provider_embed([text])
        vec = vectors[0]
        if not self.validate(vec):
            raise EmbeddingError(f"Invalid embedding (expected {self.settings.dimensions} finite values)")
        self._cache.set(key, list(vec))
        cost = self.calculate_cost(tokens)
        self._account(tokens, cost, cached=False)
        return list(vec), cost

    async def embed_query(self, text: str) -> Tuple[List[float], EmbeddingCost]:
        """Queries are normalized so "Gift Ideas " and "gift ideas" share a cache entry."""
        return await self._embed_one(normalize_text(text))

    async def embed_text(self, text: str) -> Tuple[List[float], EmbeddingCost]:
        return await self._embed_one((text or "").strip())

    async def embed_product(
        self,
        title: str,
        description: Optional[str] = None,
        category: Optional[str] = None,
        tags: Optional[Sequence[str]] = None,
    ) -> Tuple[List[float], EmbeddingCost]:
        return await self._embed_one(build_product_text(title, description, category, tags))

    async def embed_batch(self, texts: Sequence[str], batch_size: Optional[int] = None) -> BatchEmbeddingResult:
        """
        One provider call per chunk for the uncached items. A failing chunk is
        retried item by item; items that still fail are skipped and reported.
        """
        size = max(1, int(batch_size or self.settings.batch_size))
        prepared = [(t or "").strip() for t in texts]
        out: List[Optional[List[float]]] = [None] * len(prepared)
        failed: List[int] = []
        tokens_total = 0

        for start in range(0, len(prepared), size):
            misses: List[int] = []
            for i in range(start, min(start + size, len(prepared))):
                text = prepared[i]
                if not text:
                    failed.append(i)
                    continue
                hit = self._cache.get(self._key(text))
                if hit is not None:
                    out[i] = list(hit)
                    self._account(0, EmbeddingCost(model=self.model), cached=True)
                else:
                    misses.append(i)
            if not misses:
                continue

            try:
                vectors, tokens = await self._provider_embed([prepared[i] for i in misses])
            except EmbeddingError as e:
                logger.warning(f"[embedding] batch of {len(misses)} failed ({e}); retrying items individually")
                for i in misses:
                    try:
                        vec, cost = await self._embed_one(prepared[i])
                    except EmbeddingError as item_err:
                        logger.warning(f"[embedding] skipping item {i}: {item_err}")
                        failed.append(i)
                        continue
                    out[i] = vec
                    tokens_total += cost.tokens_used
                continue

            tokens_total += tokens
            chunk_cost = self.calculate_cost(tokens)
            self._calls += 1
            self._misses += len(misses)
            self._tokens += tokens
            self._cost += chunk_cost.cost_usd
            metrics.record_embedding(tokens=tokens, cost_usd=chunk_cost.cost_usd, cached=False)
            for i, vec in zip(misses, vectors):
                if not self.validate(vec):
                    logger.warning(f"[embedding] skipping item {i}: invalid vector from provider")
                    failed.append(i)
                    continue
                out[i] = list(vec)
                self._cache.set(self._key(prepared[i]), list(vec))

        failed.sort()
        succeeded = sum(1 for v in out if v is not None)
        if failed:
            logger.info(f"[embedding] batch finished: {succeeded} ok, {len(failed)} skipped")
        return BatchEmbeddingResult(
            embeddings=out,
            cost=self.calculate_cost(tokens_total),
            succeeded=succeeded,
            failed=len(failed),
            failed_indices=failed,
        )

    def stats(self) -> Dict[str, Any]:
        total = self._hits + self._misses
        return {
            "model": self.model,
            "provider_configured": self.provider is not None,
            "calls": self._calls,
            "cache_hits": self._hits,
            "cache_misses": self._misses,
            "cache_hit_rate": (self._hits / total * 100.0) if total else 0.0,
            "cached_entries": len(self._cache),
            "tokens_used": self._tokens,
            "cost_usd": round(self._cost, 8),
        }

# =============================================
# File: giftfinder/services/search.py
# Purpose: pgvector similarity + hybrid (keyword/semantic) product search
# =============================================
from __future__ import annotations
import asyncio
import math
from typing import Any, Dict, List, Mapping, Optional, Sequence

from loguru import logger

from ..utils.errors import EmbeddingError
from .embedding import EmbeddingGenerator
from .pool import VectorPool
from .query_cache import QueryResultCache
from .schemas import HybridOptions, SearchResult, SimilarityOptions

_TSV = "to_tsvector('english', COALESCE(p.title, '') || ' ' || COALESCE(p.description, ''))"

_SQL_SIMILAR = """
SELECT p.id::text AS id, p.title, p.description, p.price::float AS price, p.category,
       (1 - (p.embedding <=> $1::vector))::float AS similarity
FROM products p
WHERE p.embedding IS NOT NULL
  AND p.is_active = true
  AND (1 - (p.embedding <=> $1::vector)) > $2
  AND ($3::text IS NULL OR p.category = $3)
  AND ($4::float8 IS NULL OR p.price >= $4)
  AND ($5::float8 IS NULL OR p.price <= $5)
ORDER BY p.embedding <=> $1::vector
LIMIT $6
"""

_SQL_HYBRID = f"""
WITH keyword_matches AS (
    SELECT p.id, ts_rank({_TSV}, plainto_tsquery('english', $1))::float AS keyword_rank
    FROM products p
    WHERE p.is_active = true
      AND {_TSV} @@ plainto_tsquery('english', $1)
),
semantic_matches AS (
    SELECT p.id, (1 - (p.embedding <=> $2::vector))::float AS semantic_rank
    FROM products p
    WHERE p.is_active = true AND p.embedding IS NOT NULL
    ORDER BY p.embedding <=> $2::vector
    LIMIT $5 * 4
)
SELECT p.id::text AS id, p.title, p.description, p.price::float AS price, p.category,
       COALESCE(s.semantic_rank, 0)::float AS similarity,
       COALESCE(k.keyword_rank, 0)::float AS keyword_score,
       ($3 * COALESCE(k.keyword_rank, 0) + $4 * COALESCE(s.semantic_rank, 0))::float AS combined_score
FROM keyword_matches k
FULL OUTER JOIN semantic_matches s ON k.id = s.id
JOIN products p ON p.id = COALESCE(k.id, s.id)
ORDER BY combined_score DESC, similarity DESC, p.id::text
LIMIT $5
"""

_SQL_KEYWORD = f"""
SELECT p.id::text AS id, p.title, p.description, p.price::float AS price, p.category,
       ts_rank({_TSV}, plainto_tsquery('english', $1))::float AS keyword_score
FROM products p
WHERE p.is_active = true
  AND {_TSV} @@ plainto_tsquery('english', $1)
ORDER BY keyword_score DESC
LIMIT $2
"""

_SQL_PRODUCT_VECTOR = """
SELECT embedding FROM products WHERE id::text = $1 AND embedding IS NOT NULL
"""

_SQL_HYDRATE = """
SELECT p.id::text AS id, p.title, p.description, p.price::float AS price, p.category
FROM products p
WHERE p.id::text = ANY($1::text[])
"""


def _opt_float(v: Any) -> Optional[float]:
    return None if v is None else float(v)


def _to_result(row: Mapping[str, Any]) -> SearchResult:
    return SearchResult(
        id=str(row["id"]),
        title=row.get("title") or "",
        description=row.get("description"),
        price=float(row.get("price") or 0.0),
        category=row.get("category"),
        similarity=float(row.get("similarity") or 0.0),
        keyword_score=_opt_float(row.get("keyword_score")),
        combined_score=_opt_float(row.get("combined_score")),
    )


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if len(a) != len(b):
        raise ValueError("Embeddings must have same dimensions")
    dot = sum(x * y for x, y in zip(a, b))
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(y * y for y in b))
    if na == 0 or nb == 0:
        return 0.0
    return dot / (na * nb)


def reciprocal_rank_fusion(rankings: Sequence[Sequence[SearchResult]], k: int = 60) -> List[SearchResult]:
    """
    score(d) = sum over lists of 1 / (k + rank_d), rank 1-based.
    Ties keep the order in which ids were first seen across the lists.
    """
    scores: Dict[str, float] = {}
    merged: Dict[str, SearchResult] = {}
    for ranking in rankings:
        for rank, r in enumerate(ranking, start=1):
            scores[r.id] = scores.get(r.id, 0.0) + 1.0 / (k + rank)
            seen = merged.get(r.id)
            if seen is None:
                merged[r.id] = r.model_copy()
                continue
            seen.similarity = max(seen.similarity, r.similarity)
            if r.keyword_score is not None:
                seen.keyword_score = max(seen.keyword_score or 0.0, r.keyword_score)
    fused = []
    for doc_id, r in merged.items():
        r.combined_score = scores[doc_id]
        fused.append(r)
    fused.sort(key=lambda r: r.combined_score, reverse=True)
    return fused


class SearchEngine:
    def __init__(
        self,
        pool: VectorPool,
        embedder: EmbeddingGenerator,
        cache: Optional[QueryResultCache] = None,
        max_retries: int = 3,
    ):
        self.pool = pool
        self.embedder = embedder
        self.cache = cache
        self.max_retries = max_retries

    async def _fetch(self, sql: str, *params: Any) -> List[Dict[str, Any]]:
        async def _op(conn):
            return await conn.fetch(sql, *params)

        rows = await self.pool.execute_with_retry(_op, max_retries=self.max_retries)
        return [dict(r) for r in rows]

    async def _embed(self, query: str) -> List[float]:
        vec, _ = await self.embedder.embed_query(query)
        if not self.embedder.validate(vec):
            raise EmbeddingError("Invalid embedding provided")
        return vec

    async def similarity_search_by_vector(
        self, embedding: List[float], options: Optional[SimilarityOptions] = None
    ) -> List[SearchResult]:
        opts = options or SimilarityOptions()
        rows = await self._fetch(
            _SQL_SIMILAR,
            embedding,
            opts.match_threshold,
            opts.category,
            opts.min_price,
            opts.max_price,
            opts.match_count,
        )
        results = [_to_result(r) for r in rows]
        # Re-assert the contract on whatever the store returned
        results = [r for r in results if r.similarity > opts.match_threshold]
        results.sort(key=lambda r: r.similarity, reverse=True)
        return results[: opts.match_count]

    async def similarity_search(self, query: str, options: Optional[SimilarityOptions] = None) -> List[SearchResult]:
        vec = await self._embed(query)
        results = await self.similarity_search_by_vector(vec, options)
        logger.info(f"[search] similarity: {len(results)} results")
        return results

    async def hybrid_search(self, query: str, options: Optional[HybridOptions] = None) -> List[SearchResult]:
        opts = options or HybridOptions()
        vec = await self._embed(query)

        if opts.mode == "rrf":
            depth = opts.match_count * 2
            kw_rows, sem_rows = await asyncio.gather(
                self._fetch(_SQL_KEYWORD, query, depth),
                self._fetch(_SQL_SIMILAR, vec, 0.0, None, None, None, depth),
            )
            keyword = sorted((_to_result(r) for r in kw_rows), key=lambda r: r.keyword_score or 0.0, reverse=True)
            semantic = sorted((_to_result(r) for r in sem_rows), key=lambda r: r.similarity, reverse=True)
            results = reciprocal_rank_fusion([keyword, semantic], k=opts.rrf_k)[: opts.match_count]
        else:
            rows = await self._fetch(_SQL_HYBRID, query, vec, opts.keyword_weight, opts.semantic_weight, opts.match_count)
            results = [_to_result(r) for r in rows]
            # equal scores: semantic match first, then id
            results.sort(key=lambda r: (-(r.combined_score or 0.0), -r.similarity, r.id))
            results = results[: opts.match_count]

        logger.info(f"[search] hybrid ({opts.mode}): {len(results)} results")
        return results

    async def search(self, query: str, options: Optional[SimilarityOptions] = None) -> List[SearchResult]:
        """similarity_search behind the two-tier cache."""
        opts = options or SimilarityOptions()
        if self.cache is None:
            return await self.similarity_search(query, opts)
        return await self.cache.get_or_execute(
            query,
            {"kind": "similar", **opts.model_dump()},
            lambda: self.similarity_search(query, opts),
            hydrate=self.hydrate,
        )

    async def hybrid(self, query: str, options: Optional[HybridOptions] = None) -> List[SearchResult]:
        opts = options or HybridOptions()
        if self.cache is None:
            return await self.hybrid_search(query, opts)
        return await self.cache.get_or_execute(
            query,
            {"kind": "hybrid", **opts.model_dump()},
            lambda: self.hybrid_search(query, opts),
            hydrate=self.hydrate,
        )

    async def find_similar_to_product(
        self, product_id: str, options: Optional[SimilarityOptions] = None
    ) -> List[SearchResult]:
        opts = options or SimilarityOptions()
        rows = await self._fetch(_SQL_PRODUCT_VECTOR, str(product_id))
        if not rows or rows[0].get("embedding") is None:
            logger.info(f"[search] product {product_id} has no embedding")
            return []
        vec = [float(x) for x in rows[0]["embedding"]]
        widened = opts.model_copy(update={"match_count": opts.match_count + 1})
        results = await self.similarity_search_by_vector(vec, widened)
        return [r for r in results if r.id != str(product_id)][: opts.match_count]

    async def hydrate(self, results: List[SearchResult]) -> List[SearchResult]:
        """Fill product columns for results rebuilt from ids + scores."""
        if not results:
            return results
        rows = await self._fetch(_SQL_HYDRATE, [r.id for r in results])
        by_id = {str(row["id"]): row for row in rows}
        out = []
        for r in results:
            row = by_id.get(r.id)
            if row is None:
                out.append(r)
                continue
            out.append(
                r.model_copy(
                    update={
                        "title": row.get("title") or "",
                        "description": row.get("description"),
                        "price": float(row.get("price") or 0.0),
                        "category": row.get("category"),
                    }
                )
            )
        return out

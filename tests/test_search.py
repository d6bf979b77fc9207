# =============================================
# File: tests/test_search.py
# Purpose: Similarity / hybrid search contracts over a stubbed pgvector store
# =============================================
import sys, os
sys.path.append(os.path.dirname(os.path.dirname(__file__)))
sys.path.append(os.path.dirname(__file__))

import pytest

from fakes import FakeEmbeddingProvider, embedding_settings, make_pool
from giftfinder.services.embedding import EmbeddingGenerator
from giftfinder.services.query_cache import QueryResultCache
from giftfinder.services.schemas import HybridOptions, SearchResult, SimilarityOptions
from giftfinder.services.search import SearchEngine, cosine_similarity, reciprocal_rank_fusion
from giftfinder.utils.errors import EmbeddingError
from giftfinder.utils.settings import CacheSettings


def _row(pid, similarity=0.0, **extra):
    row = {"id": pid, "title": f"Product {pid}", "description": None, "price": 25.0, "category": "Home",
           "similarity": similarity}
    row.update(extra)
    return row


class Catalog:
    """Answers each search statement with canned rows and records its params."""

    def __init__(self, similar=(), hybrid=(), keyword=(), vectors=None):
        self.similar = list(similar)
        self.hybrid = list(hybrid)
        self.keyword = list(keyword)
        self.vectors = vectors or {}
        self.seen = []

    def __call__(self, sql, params):
        if "keyword_matches" in sql:
            self.seen.append(("hybrid", params))
            return [dict(r) for r in self.hybrid]
        if "SELECT embedding FROM products" in sql:
            self.seen.append(("vector", params))
            vec = self.vectors.get(params[0])
            return [{"embedding": vec}] if vec is not None else []
        if "ANY($1::text[])" in sql:
            self.seen.append(("hydrate", params))
            return [_row(pid) for pid in params[0]]
        if "<=>" in sql:
            self.seen.append(("similar", params))
            return [dict(r) for r in self.similar]
        if "plainto_tsquery" in sql:
            self.seen.append(("keyword", params))
            return [dict(r) for r in self.keyword]
        return [{"?column?": 1}]

    def count(self, kind):
        return sum(1 for k, _ in self.seen if k == kind)


async def _engine(catalog, cache=None, provider=None):
    pool, _ = await make_pool(handler=catalog)
    embedder = EmbeddingGenerator(provider or FakeEmbeddingProvider(), embedding_settings())
    return SearchEngine(pool, embedder, cache), embedder


def test_cosine_similarity():
    assert cosine_similarity([1, 0], [1, 0]) == pytest.approx(1.0)
    assert cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)
    assert cosine_similarity([0, 0], [1, 1]) == 0.0
    with pytest.raises(ValueError):
        cosine_similarity([1, 2, 3], [1, 2])


def test_rrf_ties_keep_first_seen_order():
    a, b = SearchResult(id="a"), SearchResult(id="b")
    fused = reciprocal_rank_fusion([[a], [b]], k=60)
    assert [r.id for r in fused] == ["a", "b"]
    assert fused[0].combined_score == pytest.approx(1 / 61)


def test_rrf_rewards_items_in_both_lists():
    a, b, c = SearchResult(id="a"), SearchResult(id="b"), SearchResult(id="c")
    fused = reciprocal_rank_fusion([[a, b], [b, c]], k=60)
    assert [r.id for r in fused] == ["b", "a", "c"]
    assert fused[0].combined_score == pytest.approx(1 / 62 + 1 / 61)


@pytest.mark.asyncio
async def test_threshold_excludes_weak_matches():
    catalog = Catalog(similar=[_row("A", 0.82), _row("B", 0.3)])
    engine, _ = await _engine(catalog)

    results = await engine.similarity_search("cozy reading gifts", SimilarityOptions(match_threshold=0.7))
    assert [r.id for r in results] == ["A"]
    assert results[0].similarity == pytest.approx(0.82)


@pytest.mark.asyncio
async def test_results_sorted_and_truncated():
    catalog = Catalog(similar=[_row("x", 0.75), _row("y", 0.95), _row("z", 0.85)])
    engine, _ = await _engine(catalog)

    results = await engine.similarity_search("mug", SimilarityOptions(match_count=2, match_threshold=0.5))
    assert [r.id for r in results] == ["y", "z"]


@pytest.mark.asyncio
async def test_filters_are_bound_as_parameters():
    catalog = Catalog()
    engine, _ = await _engine(catalog)
    opts = SimilarityOptions(match_count=5, match_threshold=0.6, category="Books", min_price=10, max_price=50)
    await engine.similarity_search("novel", opts)

    _, params = [s for s in catalog.seen if s[0] == "similar"][0]
    assert list(params[1:]) == [0.6, "Books", 10.0, 50.0, 5]
    assert len(params[0]) == 8


@pytest.mark.asyncio
async def test_embedding_failure_surfaces_as_embedding_error():
    catalog = Catalog()
    engine, _ = await _engine(catalog, provider=FakeEmbeddingProvider(fail_on={"mug"}))
    with pytest.raises(EmbeddingError):
        await engine.similarity_search("mug")
    assert catalog.count("similar") == 0


@pytest.mark.asyncio
async def test_hybrid_weighted_orders_by_combined_score():
    catalog = Catalog(hybrid=[
        _row("k", 0.2, keyword_score=0.9, combined_score=0.41),
        _row("s", 0.9, keyword_score=0.0, combined_score=0.63),
    ])
    engine, _ = await _engine(catalog)

    results = await engine.hybrid_search("wool scarf", HybridOptions())
    assert [r.id for r in results] == ["s", "k"]
    _, params = catalog.seen[-1]
    assert params[0] == "wool scarf"
    assert list(params[2:]) == [0.3, 0.7, 20]


@pytest.mark.asyncio
async def test_hybrid_weighted_ties_break_on_similarity_then_id():
    catalog = Catalog(hybrid=[
        _row("m", 0.4, keyword_score=0.5, combined_score=0.43),
        _row("z", 0.6, keyword_score=0.1, combined_score=0.43),
        _row("b", 0.4, keyword_score=0.5, combined_score=0.43),
        _row("top", 0.9, keyword_score=0.0, combined_score=0.63),
    ])
    engine, _ = await _engine(catalog)

    results = await engine.hybrid_search("wool scarf", HybridOptions())
    assert [r.id for r in results] == ["top", "z", "b", "m"]


@pytest.mark.asyncio
async def test_hybrid_rrf_fuses_keyword_and_semantic_lists():
    catalog = Catalog(
        keyword=[_row("a", keyword_score=0.8), _row("b", keyword_score=0.5)],
        similar=[_row("b", 0.9), _row("c", 0.7)],
    )
    engine, _ = await _engine(catalog)

    results = await engine.hybrid_search("scarf", HybridOptions(mode="rrf", match_count=2))
    assert [r.id for r in results] == ["b", "a"]
    assert catalog.count("keyword") == 1 and catalog.count("similar") == 1


@pytest.mark.asyncio
async def test_cached_search_hits_store_once():
    catalog = Catalog(similar=[_row("A", 0.82)])
    cache = QueryResultCache(None, CacheSettings())
    provider = FakeEmbeddingProvider()
    engine, _ = await _engine(catalog, cache=cache, provider=provider)

    first = await engine.search("Cozy Gifts")
    second = await engine.search("cozy gifts ")

    assert [r.id for r in first] == [r.id for r in second] == ["A"]
    assert catalog.count("similar") == 1
    assert len(provider.calls) == 1


@pytest.mark.asyncio
async def test_find_similar_to_product_excludes_itself():
    catalog = Catalog(
        similar=[_row("p1", 1.0), _row("p2", 0.9), _row("p3", 0.8)],
        vectors={"p1": [0.1] * 8},
    )
    engine, _ = await _engine(catalog)

    results = await engine.find_similar_to_product("p1", SimilarityOptions(match_count=2))
    assert [r.id for r in results] == ["p2", "p3"]
    _, params = [s for s in catalog.seen if s[0] == "similar"][0]
    assert params[-1] == 3


@pytest.mark.asyncio
async def test_find_similar_to_product_without_embedding_is_empty():
    catalog = Catalog(similar=[_row("p2", 0.9)])
    engine, _ = await _engine(catalog)
    assert await engine.find_similar_to_product("missing") == []
    assert catalog.count("similar") == 0


@pytest.mark.asyncio
async def test_hydrate_fills_product_columns():
    catalog = Catalog()
    engine, _ = await _engine(catalog)
    out = await engine.hydrate([SearchResult(id="9", similarity=0.8)])
    assert out[0].title == "Product 9"
    assert out[0].price == 25.0
    assert out[0].similarity == pytest.approx(0.8)

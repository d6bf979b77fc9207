# =============================================
# File: giftfinder/services/container.py
# Purpose: Wire pool, caches, search, recommender & monitoring for one process
# =============================================
from __future__ import annotations
from dataclasses import dataclass
from typing import Optional

from loguru import logger

from ..utils.ratelimit import FixedWindowRateLimiter
from ..utils.settings import Settings
from .embedding import EmbeddingGenerator, EmbeddingProvider, build_provider
from .generation import ChatModelClient, OpenAIChatClient
from .monitoring import MonitoringService
from .pool import VectorPool
from .query_cache import CacheStats, CacheSweeper, PostgresCacheStore, QueryResultCache
from .recommender import RecommendationGenerator
from .search import SearchEngine


@dataclass
class Services:
    settings: Settings
    pool: VectorPool
    embedder: EmbeddingGenerator
    cache: QueryResultCache
    search: SearchEngine
    recommender: RecommendationGenerator
    monitoring: MonitoringService
    sweeper: CacheSweeper

    async def start(self) -> None:
        if not await self.pool.initialize():
            logger.warning("[startup] running without vector store; search will return degraded results")
        self.sweeper.start()

    async def stop(self) -> None:
        await self.sweeper.stop()
        await self.cache.flush_pending()
        await self.pool.close()


def build_services(
    settings: Optional[Settings] = None,
    pool: Optional[VectorPool] = None,
    embedding_provider: Optional[EmbeddingProvider] = None,
    chat_client: Optional[ChatModelClient] = None,
    build_clients: bool = True,
) -> Services:
    """
    Explicit collaborators win; otherwise (build_clients=True) real OpenAI
    clients are created when OPENAI_API_KEY is present.
    """
    s = settings or Settings.from_env()
    pool = pool or VectorPool(s.pool, slow_query_ms=s.monitoring.slow_query_ms)

    if embedding_provider is None and build_clients:
        embedding_provider = build_provider(s.embedding)
    if chat_client is None and build_clients:
        rs = s.recommendation
        if rs.api_key:
            chat_client = OpenAIChatClient(api_key=rs.api_key, base_url=rs.base_url, timeout_s=rs.timeout_s)
        else:
            logger.warning("[startup] OPENAI_API_KEY not set; recommendations disabled")

    embedder = EmbeddingGenerator(embedding_provider, s.embedding)
    cache = QueryResultCache(PostgresCacheStore(pool), s.cache, stats=CacheStats())
    limiter = FixedWindowRateLimiter(s.recommendation.max_requests_per_minute, 60.0)
    return Services(
        settings=s,
        pool=pool,
        embedder=embedder,
        cache=cache,
        search=SearchEngine(pool, embedder, cache),
        recommender=RecommendationGenerator(chat_client, s.recommendation, rate_limiter=limiter),
        monitoring=MonitoringService(pool, cache, embedder, rate_limiter=limiter, settings=s.monitoring),
        sweeper=CacheSweeper(cache, s.cache.sweep_interval_s),
    )

# =============================================
# File: giftfinder/services/monitoring.py
# Purpose: Health status + threshold alerts over pool/cache/embedding stats
# =============================================
from __future__ import annotations
import time
from dataclasses import asdict, fields
from typing import Any, Dict, List, Literal, Optional

from loguru import logger
from pydantic import BaseModel, Field

from ..utils import metrics
from ..utils.ratelimit import FixedWindowRateLimiter
from ..utils.settings import MonitoringSettings
from .embedding import EmbeddingGenerator
from .pool import VectorPool
from .query_cache import QueryResultCache

_SQL_COVERAGE = """
SELECT COUNT(*)::int AS total, COUNT(embedding)::int AS with_embedding
FROM products
WHERE is_active = true
"""


class Alert(BaseModel):
    type: str
    severity: Literal["warning", "critical"]
    message: str


class HealthChecks(BaseModel):
    database: bool = False
    cache: bool = False
    pool: bool = False
    index: bool = False


class HealthMetrics(BaseModel):
    embedding_coverage: Optional[float] = None   # percent
    cache_hit_rate: float = 0.0                  # percent
    pool_utilization: float = 0.0                # percent


class VectorHealth(BaseModel):
    status: Literal["healthy", "degraded", "unhealthy"]
    checks: HealthChecks
    metrics: HealthMetrics
    alerts: List[Alert] = Field(default_factory=list)
    timestamp: float


def overall_status(alerts: List[Alert]) -> str:
    if any(a.severity == "critical" for a in alerts):
        return "unhealthy"
    if alerts:
        return "degraded"
    return "healthy"


class MonitoringService:
    def __init__(
        self,
        pool: VectorPool,
        cache: QueryResultCache,
        embedder: Optional[EmbeddingGenerator] = None,
        rate_limiter: Optional[FixedWindowRateLimiter] = None,
        settings: Optional[MonitoringSettings] = None,
    ):
        self.pool = pool
        self.cache = cache
        self.embedder = embedder
        self.rate_limiter = rate_limiter
        self.settings = settings or MonitoringSettings.from_env()

    @property
    def thresholds(self) -> Dict[str, float]:
        return asdict(self.settings)

    def update_thresholds(self, **changes: float) -> Dict[str, float]:
        known = {f.name for f in fields(self.settings)}
        for k, v in changes.items():
            if k not in known:
                raise ValueError(f"Unknown threshold: {k}")
            setattr(self.settings, k, float(v))
        logger.info(f"[monitor] thresholds updated: {changes}")
        return self.thresholds

    async def embedding_coverage(self) -> Optional[float]:
        """Percent of active products that have an embedding; None if unknown."""
        try:
            res = await self.pool.execute(_SQL_COVERAGE)
        except Exception as e:
            logger.warning(f"[monitor] embedding coverage unavailable: {e!r}")
            return None
        row = res.rows[0] if res.rows else {}
        total = int(row.get("total") or 0)
        with_emb = int(row.get("with_embedding") or 0)
        return (with_emb / total * 100.0) if total else 0.0

    def _alerts(self, pool_healthy: bool, coverage: Optional[float], hit_rate: float, lookups: int, util: float) -> List[Alert]:
        t = self.settings
        alerts: List[Alert] = []
        if coverage is not None and coverage < t.embedding_coverage_min:
            alerts.append(Alert(
                type="low_embedding_coverage",
                severity="critical" if coverage < t.embedding_coverage_critical else "warning",
                message=f"Only {coverage:.1f}% of products have embeddings",
            ))
        # no lookups yet: a cold cache is not an alert
        if lookups > 0 and hit_rate < t.cache_hit_rate_min:
            alerts.append(Alert(
                type="low_cache_hit_rate",
                severity="warning",
                message=f"Cache hit rate is {hit_rate:.1f}%",
            ))
        if util > t.pool_utilization_max:
            alerts.append(Alert(
                type="high_pool_utilization",
                severity="critical" if util > t.pool_utilization_critical else "warning",
                message=f"Pool utilization is {util:.1f}%",
            ))
        if not pool_healthy:
            alerts.append(Alert(
                type="pool_unhealthy",
                severity="critical",
                message="Connection pool is unhealthy",
            ))
        return alerts

    async def health(self) -> VectorHealth:
        pool_health = await self.pool.health_check()
        util = self.pool.utilization() * 100.0
        self.pool.optimize()

        cache_ok = True
        hit_rate, lookups = 0.0, 0
        try:
            cstats = await self.cache.stats()
            hit_rate = cstats.hit_rate
            lookups = cstats.hit_count + cstats.miss_count
        except Exception as e:
            cache_ok = False
            logger.warning(f"[monitor] cache stats unavailable: {e!r}")

        coverage = await self.embedding_coverage()
        alerts = self._alerts(pool_health.healthy, coverage, hit_rate, lookups, util)

        metrics.set_gauge("vector_cache_hit_rate", hit_rate / 100.0)
        metrics.set_gauge("vector_pool_utilization_ratio", util / 100.0)
        if coverage is not None:
            metrics.set_gauge("vector_embedding_coverage_ratio", coverage / 100.0)

        status = overall_status(alerts)
        if status != "healthy":
            logger.warning(f"[monitor] status={status} alerts={[a.type for a in alerts]}")
        return VectorHealth(
            status=status,
            checks=HealthChecks(
                database=pool_health.healthy,
                cache=cache_ok,
                pool=pool_health.healthy and util <= self.settings.pool_utilization_critical,
                index=bool(coverage),
            ),
            metrics=HealthMetrics(embedding_coverage=coverage, cache_hit_rate=hit_rate, pool_utilization=util),
            alerts=alerts,
            timestamp=time.time(),
        )

    async def stats(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"pool": self.pool.stats().model_dump()}
        try:
            out["cache"] = (await self.cache.stats()).model_dump()
        except Exception as e:
            logger.warning(f"[monitor] cache stats unavailable: {e!r}")
            out["cache"] = None
        out["embedding"] = self.embedder.stats() if self.embedder is not None else None
        if self.rate_limiter is not None:
            out["rate_limit"] = {
                "max_requests_per_window": self.rate_limiter.max_requests,
                "window_seconds": self.rate_limiter.window_s,
                "remaining": self.rate_limiter.remaining(),
            }
        out["costs_usd"] = metrics.snapshot()["costs_usd"]
        return out

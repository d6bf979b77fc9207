# =============================================
# File: tests/test_monitoring.py
# Purpose: Health status rules, alerts and published gauges
# =============================================
import sys, os
sys.path.append(os.path.dirname(os.path.dirname(__file__)))
sys.path.append(os.path.dirname(__file__))

import pytest

from fakes import FakeEmbeddingProvider, embedding_settings, make_pool
from giftfinder.services.embedding import EmbeddingGenerator
from giftfinder.services.monitoring import Alert, MonitoringService, overall_status
from giftfinder.services.pool import VectorPool
from giftfinder.services.query_cache import QueryResultCache
from giftfinder.utils import metrics
from giftfinder.utils.ratelimit import FixedWindowRateLimiter
from giftfinder.utils.settings import CacheSettings, MonitoringSettings, PoolSettings


def _coverage(total, with_embedding):
    def handler(sql, params):
        if "with_embedding" in sql:
            return [{"total": total, "with_embedding": with_embedding}]
        return [{"?column?": 1}]
    return handler


async def _service(total=100, with_embedding=95, **kw):
    metrics.reset()
    pool, _ = await make_pool(handler=_coverage(total, with_embedding))
    cache = QueryResultCache(None, CacheSettings())
    return MonitoringService(pool, cache, settings=MonitoringSettings(), **kw), cache


def test_overall_status_rules():
    warn = Alert(type="x", severity="warning", message="")
    crit = Alert(type="y", severity="critical", message="")
    assert overall_status([]) == "healthy"
    assert overall_status([warn]) == "degraded"
    assert overall_status([warn, crit]) == "unhealthy"


@pytest.mark.asyncio
async def test_healthy_system_has_no_alerts():
    svc, _ = await _service()
    health = await svc.health()
    assert health.status == "healthy"
    assert health.alerts == []
    assert health.checks.database and health.checks.pool and health.checks.index
    assert health.metrics.embedding_coverage == pytest.approx(95.0)


@pytest.mark.asyncio
async def test_low_coverage_warning_then_critical():
    svc, _ = await _service(100, 70)
    health = await svc.health()
    assert health.status == "degraded"
    assert [(a.type, a.severity) for a in health.alerts] == [("low_embedding_coverage", "warning")]

    svc, _ = await _service(100, 40)
    health = await svc.health()
    assert health.status == "unhealthy"
    assert health.alerts[0].severity == "critical"


@pytest.mark.asyncio
async def test_no_products_counts_as_zero_coverage():
    svc, _ = await _service(0, 0)
    assert await svc.embedding_coverage() == 0.0


@pytest.mark.asyncio
async def test_cold_cache_is_not_an_alert_but_misses_are():
    svc, cache = await _service()
    assert (await svc.health()).status == "healthy"

    async def run():
        return []

    await cache.get_or_execute("a", None, run)
    await cache.get_or_execute("b", None, run)
    health = await svc.health()
    assert health.status == "degraded"
    assert health.alerts[0].type == "low_cache_hit_rate"


@pytest.mark.asyncio
async def test_uninitialized_pool_is_unhealthy():
    metrics.reset()
    svc = MonitoringService(VectorPool(PoolSettings(dsn=None)), QueryResultCache(None, CacheSettings()),
                            settings=MonitoringSettings())
    health = await svc.health()
    assert health.status == "unhealthy"
    assert health.checks.database is False
    assert health.metrics.embedding_coverage is None
    assert "pool_unhealthy" in [a.type for a in health.alerts]


def test_pool_utilization_alerts():
    svc = MonitoringService(None, None, settings=MonitoringSettings())
    warn = svc._alerts(True, 95.0, 0.0, 0, 85.0)
    crit = svc._alerts(True, 95.0, 0.0, 0, 97.0)
    assert [(a.type, a.severity) for a in warn] == [("high_pool_utilization", "warning")]
    assert [(a.type, a.severity) for a in crit] == [("high_pool_utilization", "critical")]


@pytest.mark.asyncio
async def test_health_publishes_gauges():
    svc, _ = await _service(100, 90)
    await svc.health()
    gauges = metrics.snapshot()["gauges"]
    assert gauges["vector_embedding_coverage_ratio"] == pytest.approx(0.9)
    assert gauges["vector_pool_utilization_ratio"] == 0.0
    assert gauges["vector_cache_hit_rate"] == 0.0


def test_update_thresholds():
    svc = MonitoringService(None, None, settings=MonitoringSettings())
    out = svc.update_thresholds(cache_hit_rate_min=30)
    assert out["cache_hit_rate_min"] == 30.0
    # every exposed threshold drives a check
    assert set(out) == {
        "slow_query_ms",
        "cache_hit_rate_min",
        "pool_utilization_max",
        "pool_utilization_critical",
        "embedding_coverage_min",
        "embedding_coverage_critical",
    }
    with pytest.raises(ValueError):
        svc.update_thresholds(not_a_threshold=1)


@pytest.mark.asyncio
async def test_stats_collects_components():
    embedder = EmbeddingGenerator(FakeEmbeddingProvider(), embedding_settings())
    svc, _ = await _service(embedder=embedder, rate_limiter=FixedWindowRateLimiter(60, 60))
    out = await svc.stats()
    assert out["pool"]["max"] == 10
    assert out["cache"]["hit_count"] == 0
    assert out["embedding"]["provider_configured"] is True
    assert out["rate_limit"]["remaining"] == 60
    assert set(out["costs_usd"]) == {"embedding_cost_usd", "generation_cost_usd"}

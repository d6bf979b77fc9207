# =============================================
# File: tests/test_metrics.py
# =============================================
import sys, os
sys.path.append(os.path.dirname(os.path.dirname(__file__)))

import pytest

from giftfinder.utils import metrics
from giftfinder.utils.metrics import reset as metrics_reset


def test_request_histogram_matches_request_count():
    metrics_reset()
    for ms in (10, 120, 700, 20000):
        metrics.record_request(ms, model="gpt-4-turbo")
    m = metrics.snapshot()
    assert m["counters"]["requests_total"] == 4
    assert sum(m["latency_ms"]["counts"]) == 4
    # last bucket is +Inf
    assert m["latency_ms"]["counts"][-1] == 1
    assert m["model_usage"] == {"gpt-4-turbo": 4}


def test_costs_and_fallbacks_accumulate():
    metrics_reset()
    metrics.record_embedding(tokens=1000, cost_usd=0.00002, cached=False)
    metrics.record_embedding(tokens=0, cost_usd=0.0, cached=True)
    metrics.record_generation("gpt-3.5-turbo", tokens=1500, cost_usd=0.00125, fallback=True)
    metrics.record_generation_failure()

    m = metrics.snapshot()
    assert m["counters"]["embedding_requests_total"] == 2
    assert m["counters"]["embedding_cache_hits_total"] == 1
    assert m["counters"]["generation_fallbacks_total"] == 1
    assert m["counters"]["generation_failures_total"] == 1
    assert m["costs_usd"]["embedding_cost_usd"] == pytest.approx(0.00002)
    assert m["costs_usd"]["generation_cost_usd"] == pytest.approx(0.00125)


def test_cache_and_db_counters():
    metrics_reset()
    metrics.record_cache_lookup("l1")
    metrics.record_cache_lookup("l2")
    metrics.record_cache_lookup(None)
    metrics.record_cache_error()
    metrics.record_db_query(12.0, ok=True)
    metrics.record_db_query(900.0, ok=False, slow=True)

    c = metrics.snapshot()["counters"]
    assert (c["cache_l1_hits_total"], c["cache_l2_hits_total"], c["cache_misses_total"]) == (1, 1, 1)
    assert c["cache_backend_errors_total"] == 1
    assert (c["db_queries_total"], c["db_query_errors_total"], c["db_slow_queries_total"]) == (2, 1, 1)


def test_endpoint_performance_summary():
    metrics_reset()
    for ms in range(1, 21):
        metrics.record_endpoint("post", "/search/similar", float(ms))
    eps = metrics.snapshot()["performance"]["endpoints"]
    v = eps["POST /search/similar"]
    assert v["count"] == 20
    assert v["avg_latency_ms"] == pytest.approx(10.5)
    assert v["p95_latency_ms"] == 19.0


def test_gauges_and_reset():
    metrics.set_gauge("vector_cache_hit_rate", 0.5)
    assert metrics.snapshot()["gauges"]["vector_cache_hit_rate"] == 0.5
    metrics_reset()
    snap = metrics.snapshot()
    assert snap["gauges"] == {}
    assert all(v == 0 for v in snap["counters"].values())

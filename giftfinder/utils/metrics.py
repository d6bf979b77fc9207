# =============================================
# File: giftfinder/utils/metrics.py
# Purpose: In-process counters, gauges & histograms for /metrics
# =============================================
from __future__ import annotations
from bisect import bisect_left
from collections import deque
from typing import Any, Deque, Dict, List
import threading
import time

_lock = threading.Lock()

_COUNTER_NAMES = (
    "requests_total",
    "rate_limit_hits_total",
    "cache_l1_hits_total",
    "cache_l2_hits_total",
    "cache_misses_total",
    "cache_backend_errors_total",
    "embedding_requests_total",
    "embedding_cache_hits_total",
    "embedding_tokens_total",
    "generation_requests_total",
    "generation_fallbacks_total",
    "generation_failures_total",
    "generation_tokens_total",
    "db_queries_total",
    "db_query_errors_total",
    "db_slow_queries_total",
)

_counters: Dict[str, int] = {name: 0 for name in _COUNTER_NAMES}

# USD totals kept apart from integer counters
_costs: Dict[str, float] = {"embedding_cost_usd": 0.0, "generation_cost_usd": 0.0}

# Last observed value wins
_gauges: Dict[str, float] = {}

# per-model call counts from recommendation traffic
_model_usage: Dict[str, int] = {}

# upper bounds in ms; one extra slot for +Inf
_LATENCY_BOUNDS: List[int] = [50, 100, 200, 500, 1000, 2000, 5000, 10000]
_latency_counts: List[int] = [0] * (len(_LATENCY_BOUNDS) + 1)

_ENDPOINT_WINDOW = 1000
_endpoints: Dict[str, Deque[float]] = {}
_endpoint_counts: Dict[str, int] = {}


def _summarize(samples: Deque[float], count: int) -> Dict[str, float]:
    if not samples:
        return {"count": count, "avg_latency_ms": 0.0, "p95_latency_ms": 0.0}
    ordered = sorted(samples)
    return {
        "count": count,
        "avg_latency_ms": sum(ordered) / len(ordered),
        "p95_latency_ms": ordered[int(0.95 * (len(ordered) - 1))],
    }


def _bump_model(model: str | None) -> None:
    if model:
        _model_usage[model] = _model_usage.get(model, 0) + 1


def incr(name: str, value: int = 1) -> None:
    with _lock:
        _counters[name] = _counters.get(name, 0) + int(value)


def set_gauge(name: str, value: float) -> None:
    with _lock:
        _gauges[name] = float(value)


def record_request(latency_ms: int, model: str | None = None) -> None:
    slot = bisect_left(_LATENCY_BOUNDS, int(latency_ms))
    with _lock:
        _counters["requests_total"] += 1
        _latency_counts[slot] += 1
        _bump_model(model)


def record_rate_limit_hit() -> None:
    incr("rate_limit_hits_total")


def record_cache_lookup(tier: str | None) -> None:
    """tier: "l1", "l2" or None for a full miss."""
    if tier == "l1":
        incr("cache_l1_hits_total")
    elif tier == "l2":
        incr("cache_l2_hits_total")
    else:
        incr("cache_misses_total")


def record_cache_error() -> None:
    incr("cache_backend_errors_total")


def record_embedding(tokens: int, cost_usd: float, cached: bool) -> None:
    with _lock:
        _counters["embedding_requests_total"] += 1
        if cached:
            _counters["embedding_cache_hits_total"] += 1
        _counters["embedding_tokens_total"] += int(tokens)
        _costs["embedding_cost_usd"] += float(cost_usd)


def record_generation(model: str | None, tokens: int, cost_usd: float, fallback: bool) -> None:
    with _lock:
        _counters["generation_requests_total"] += 1
        _counters["generation_tokens_total"] += int(tokens)
        _costs["generation_cost_usd"] += float(cost_usd)
        if fallback:
            _counters["generation_fallbacks_total"] += 1
        _bump_model(model)


def record_generation_failure() -> None:
    incr("generation_failures_total")


def record_db_query(duration_ms: float, ok: bool, slow: bool = False) -> None:
    with _lock:
        _counters["db_queries_total"] += 1
        if not ok:
            _counters["db_query_errors_total"] += 1
        if slow:
            _counters["db_slow_queries_total"] += 1


def record_endpoint(method: str, path: str, latency_ms: float) -> None:
    """Keeps the last _ENDPOINT_WINDOW latencies per "METHOD /path"."""
    key = f"{method.upper()} {path}"
    with _lock:
        _endpoint_counts[key] = _endpoint_counts.get(key, 0) + 1
        _endpoints.setdefault(key, deque(maxlen=_ENDPOINT_WINDOW)).append(float(latency_ms))


def snapshot() -> Dict[str, Any]:
    with _lock:
        endpoints = {
            key: _summarize(samples, _endpoint_counts.get(key, 0))
            for key, samples in _endpoints.items()
        }
        return {
            "counters": dict(_counters),
            "costs_usd": {k: round(v, 6) for k, v in _costs.items()},
            "gauges": dict(_gauges),
            "model_usage": dict(_model_usage),
            "latency_ms": {
                "buckets": [*_LATENCY_BOUNDS, "+Inf"],
                "counts": list(_latency_counts),
            },
            "performance": {"endpoints": endpoints, "generated_at": time.time()},
        }


def reset() -> None:
    with _lock:
        _counters.update({k: 0 for k in _counters})
        _costs.update({k: 0.0 for k in _costs})
        _latency_counts[:] = [0] * len(_latency_counts)
        for registry in (_gauges, _model_usage, _endpoints, _endpoint_counts):
            registry.clear()

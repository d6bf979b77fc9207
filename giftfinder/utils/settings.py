# =============================================
# File: giftfinder/utils/settings.py
# Purpose: Env-driven configuration, read at call time
# =============================================
from __future__ import annotations
import os
from dataclasses import dataclass, field
from typing import Optional


def _int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


def _bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class PoolSettings:
    dsn: Optional[str] = None
    max_size: int = 10
    min_size: int = 2
    idle_timeout_s: float = 30.0
    connect_timeout_s: float = 10.0
    statement_timeout_s: float = 30.0
    ef_search: int = 60
    application_name: str = "giftfinder-vector-search"
    target_utilization: float = 0.7

    @classmethod
    def from_env(cls) -> "PoolSettings":
        return cls(
            dsn=os.getenv("DATABASE_URL") or None,
            max_size=_int("VECTOR_POOL_MAX", 10),
            min_size=_int("VECTOR_POOL_MIN", 2),
            idle_timeout_s=_float("VECTOR_POOL_IDLE_TIMEOUT", 30.0),
            connect_timeout_s=_float("VECTOR_POOL_CONNECT_TIMEOUT", 10.0),
            statement_timeout_s=_float("VECTOR_POOL_STATEMENT_TIMEOUT", 30.0),
            ef_search=_int("HNSW_EF_SEARCH", 60),
        )


@dataclass
class CacheSettings:
    l1_ttl_s: int = 300
    l1_max_entries: int = 1000
    l2_ttl_s: int = 3600
    sweep_interval_s: int = 300
    single_flight: bool = True

    @classmethod
    def from_env(cls) -> "CacheSettings":
        return cls(
            l1_ttl_s=_int("CACHE_L1_TTL_SECONDS", 300),
            l1_max_entries=_int("CACHE_L1_MAX_ENTRIES", 1000),
            l2_ttl_s=_int("CACHE_L2_TTL_SECONDS", 3600),
            sweep_interval_s=_int("CACHE_SWEEP_INTERVAL_SECONDS", 300),
            single_flight=_bool("CACHE_SINGLE_FLIGHT", True),
        )


@dataclass
class EmbeddingSettings:
    provider: str = "openai"
    model: str = "text-embedding-3-small"
    dimensions: int = 1536
    batch_size: int = 50
    cache_ttl_s: int = 3600
    cache_max_entries: int = 5000
    max_retries: int = 3
    api_key: Optional[str] = None
    base_url: Optional[str] = None

    @classmethod
    def from_env(cls) -> "EmbeddingSettings":
        return cls(
            provider=os.getenv("EMBEDDING_PROVIDER", "openai").strip().lower(),
            model=os.getenv("EMBEDDING_MODEL", "text-embedding-3-small"),
            dimensions=_int("EMBEDDING_DIMENSIONS", 1536),
            batch_size=_int("EMBEDDING_BATCH_SIZE", 50),
            cache_ttl_s=_int("EMBEDDING_CACHE_TTL_SECONDS", 3600),
            cache_max_entries=_int("EMBEDDING_CACHE_MAX_ENTRIES", 5000),
            max_retries=_int("EMBEDDING_MAX_RETRIES", 3),
            api_key=os.getenv("OPENAI_API_KEY") or None,
            base_url=os.getenv("OPENAI_BASE_URL") or None,
        )


@dataclass
class RecommendationSettings:
    primary_model: str = "gpt-4-turbo"
    fallback_model: str = "gpt-3.5-turbo"
    temperature: float = 0.7
    max_tokens: int = 2000
    timeout_s: float = 30.0
    max_retries: int = 3
    initial_delay_s: float = 1.0
    max_delay_s: float = 10.0
    max_requests_per_minute: int = 60
    rate_limit_enabled: bool = True
    max_per_category: int = 3
    api_key: Optional[str] = None
    base_url: Optional[str] = None

    @classmethod
    def from_env(cls) -> "RecommendationSettings":
        return cls(
            primary_model=os.getenv("RECO_PRIMARY_MODEL", "gpt-4-turbo"),
            fallback_model=os.getenv("RECO_FALLBACK_MODEL", "gpt-3.5-turbo"),
            temperature=_float("RECO_TEMPERATURE", 0.7),
            max_tokens=_int("RECO_MAX_TOKENS", 2000),
            timeout_s=_float("RECO_TIMEOUT_SECONDS", 30.0),
            max_retries=_int("RECO_MAX_RETRIES", 3),
            max_requests_per_minute=_int("RECO_MAX_REQUESTS_PER_MINUTE", 60),
            rate_limit_enabled=_bool("RECO_RATE_LIMIT_ENABLED", True),
            max_per_category=_int("RECO_MAX_PER_CATEGORY", 3),
            api_key=os.getenv("OPENAI_API_KEY") or None,
            base_url=os.getenv("OPENAI_BASE_URL") or None,
        )


@dataclass
class MonitoringSettings:
    slow_query_ms: float = 500.0
    cache_hit_rate_min: float = 50.0
    pool_utilization_max: float = 80.0
    pool_utilization_critical: float = 95.0
    embedding_coverage_min: float = 80.0
    embedding_coverage_critical: float = 50.0

    @classmethod
    def from_env(cls) -> "MonitoringSettings":
        return cls(
            cache_hit_rate_min=_float("MONITOR_CACHE_HIT_RATE_MIN", 50.0),
            pool_utilization_max=_float("MONITOR_POOL_UTILIZATION_MAX", 80.0),
            embedding_coverage_min=_float("MONITOR_EMBEDDING_COVERAGE_MIN", 80.0),
        )


@dataclass
class Settings:
    pool: PoolSettings = field(default_factory=PoolSettings)
    cache: CacheSettings = field(default_factory=CacheSettings)
    embedding: EmbeddingSettings = field(default_factory=EmbeddingSettings)
    recommendation: RecommendationSettings = field(default_factory=RecommendationSettings)
    monitoring: MonitoringSettings = field(default_factory=MonitoringSettings)

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            pool=PoolSettings.from_env(),
            cache=CacheSettings.from_env(),
            embedding=EmbeddingSettings.from_env(),
            recommendation=RecommendationSettings.from_env(),
            monitoring=MonitoringSettings.from_env(),
        )

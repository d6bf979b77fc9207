# =============================================
# File: giftfinder/services/query_cache.py
# Purpose: Two-tier search result cache (in-process L1 + Postgres L2)
# =============================================
from __future__ import annotations
import asyncio
import hashlib
import json
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Set, Tuple

from loguru import logger
from pydantic import BaseModel

from ..utils import metrics
from ..utils.caching import TTLCache
from ..utils.errors import CacheBackendError
from ..utils.settings import CacheSettings
from .schemas import SearchResult

CACHE_KEY_PREFIX = "qcache:"

Executor = Callable[[], Awaitable[Sequence[SearchResult]]]
Hydrator = Callable[[List[SearchResult]], Awaitable[List[SearchResult]]]


def normalize_query(query: str) -> str:
    return " ".join((query or "").strip().lower().split())


def fingerprint(query: str, options: Optional[Mapping[str, Any]] = None) -> str:
    """
    Stable key for (query, options): case/whitespace-insensitive on the query,
    order-insensitive on the options. None-valued options are ignored.
    """
    opts = {k: v for k, v in (options or {}).items() if v is not None}
    payload = json.dumps(opts, sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.sha256(f"{normalize_query(query)}:{payload}".encode("utf-8")).hexdigest()
    return CACHE_KEY_PREFIX + digest[:16]


def score_of(result: SearchResult) -> float:
    return result.combined_score if result.combined_score is not None else result.similarity


@dataclass
class CacheEntry:
    fingerprint: str
    query_text: str
    result_ids: List[str]
    result_scores: List[float]
    created_at: float
    expires_at: float
    hit_count: int = 1
    # Per-component scores of fused (hybrid) result lists; None for plain similarity
    result_similarities: Optional[List[float]] = None
    result_keyword_scores: Optional[List[Optional[float]]] = None
    # Full rows; only present on tier-1 entries
    results: Optional[List[SearchResult]] = None

    def __post_init__(self) -> None:
        if len(self.result_ids) != len(self.result_scores):
            raise ValueError("result_ids and result_scores must have the same length")
        for extra in (self.result_similarities, self.result_keyword_scores):
            if extra is not None and len(extra) != len(self.result_ids):
                raise ValueError("per-result score lists must match result_ids")
        if self.expires_at <= self.created_at:
            raise ValueError("expires_at must be after created_at")
        if self.hit_count < 0:
            raise ValueError("hit_count must be non-negative")

    @classmethod
    def from_results(
        cls,
        fp: str,
        query: str,
        results: Sequence[SearchResult],
        ttl_s: float,
        now: float,
        keep_rows: bool = True,
    ) -> "CacheEntry":
        fused = any(r.combined_score is not None for r in results)
        return cls(
            fingerprint=fp,
            query_text=query,
            result_ids=[r.id for r in results],
            result_scores=[score_of(r) for r in results],
            created_at=now,
            expires_at=now + max(float(ttl_s), 0.001),
            result_similarities=[r.similarity for r in results] if fused else None,
            result_keyword_scores=[r.keyword_score for r in results] if fused else None,
            results=[r.model_copy() for r in results] if keep_rows else None,
        )

    def touch(self) -> None:
        self.hit_count += 1

    def is_expired(self, now: float) -> bool:
        return self.expires_at <= now

    def to_results(self) -> List[SearchResult]:
        if self.results is not None:
            return [r.model_copy() for r in self.results]
        # Tier-2 keeps ids and scores only
        if self.result_similarities is None:
            return [SearchResult(id=i, similarity=s) for i, s in zip(self.result_ids, self.result_scores)]
        keyword = self.result_keyword_scores or [None] * len(self.result_ids)
        return [
            SearchResult(id=i, similarity=sim, keyword_score=kw, combined_score=s)
            for i, s, sim, kw in zip(self.result_ids, self.result_scores, self.result_similarities, keyword)
        ]


class CacheStats:
    """Hit/miss counters for one cache instance. Safe to share across threads."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.l1_hits = 0
        self.l2_hits = 0
        self.backend_errors = 0

    def record_hit(self, tier: str) -> None:
        with self._lock:
            self.hits += 1
            if tier == "l1":
                self.l1_hits += 1
            else:
                self.l2_hits += 1

    def record_miss(self) -> None:
        with self._lock:
            self.misses += 1

    def record_error(self) -> None:
        with self._lock:
            self.backend_errors += 1

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return (self.hits / total * 100.0) if total else 0.0

    def reset(self) -> None:
        with self._lock:
            self.hits = self.misses = self.l1_hits = self.l2_hits = self.backend_errors = 0


class CacheStatsSnapshot(BaseModel):
    hit_count: int = 0
    miss_count: int = 0
    hit_rate: float = 0.0
    total_entries: int = 0
    avg_hits_per_query: float = 0.0
    l1_entries: int = 0
    l1_hits: int = 0
    l2_hits: int = 0
    backend_errors: int = 0


class CacheStore(Protocol):
    """Tier-2 contract. Implementations may raise; the cache treats that as a miss."""

    async def get(self, fp: str) -> Optional[CacheEntry]: ...

    async def upsert(self, entry: CacheEntry, ttl_s: float, embedding: Optional[List[float]] = None) -> None: ...

    async def delete_by_product(self, product_id: str) -> int: ...

    async def delete_all(self) -> int: ...

    async def cleanup_expired(self) -> int: ...

    async def stats(self) -> Dict[str, float]: ...

    async def top_queries(self, limit: int) -> List[Dict[str, Any]]: ...


_SQL_GET = """
UPDATE query_cache
SET hit_count = hit_count + 1, last_hit_at = NOW()
WHERE cache_key = $1 AND expires_at > NOW()
RETURNING cache_key, query_text, result_ids, result_scores, result_similarities,
          result_keyword_scores, hit_count, created_at, expires_at
"""

_SQL_UPSERT = """
INSERT INTO query_cache (
    cache_key, query_text, query_embedding, result_ids, result_scores,
    result_similarities, result_keyword_scores,
    hit_count, created_at, last_hit_at, expires_at
)
VALUES ($1, $2, $3::vector, $4::text[], $5::float8[], $7::float8[], $8::float8[],
        1, NOW(), NOW(), NOW() + make_interval(secs => $6))
ON CONFLICT (cache_key) DO UPDATE SET
    result_ids = EXCLUDED.result_ids,
    result_scores = EXCLUDED.result_scores,
    result_similarities = EXCLUDED.result_similarities,
    result_keyword_scores = EXCLUDED.result_keyword_scores,
    query_embedding = COALESCE(EXCLUDED.query_embedding, query_cache.query_embedding),
    hit_count = query_cache.hit_count + 1,
    last_hit_at = NOW(),
    expires_at = EXCLUDED.expires_at
"""

_SQL_DELETE_BY_PRODUCT = """
WITH deleted AS (
    DELETE FROM query_cache WHERE $1 = ANY(result_ids) RETURNING 1
)
SELECT COUNT(*)::int AS deleted FROM deleted
"""

_SQL_DELETE_ALL = """
WITH deleted AS (
    DELETE FROM query_cache RETURNING 1
)
SELECT COUNT(*)::int AS deleted FROM deleted
"""

_SQL_CLEANUP = "SELECT cleanup_expired_cache() AS deleted"

_SQL_STATS = """
SELECT COUNT(*)::int AS total_entries,
       COALESCE(AVG(hit_count), 0)::float AS avg_hits
FROM query_cache
WHERE expires_at > NOW()
"""

_SQL_TOP = """
SELECT query_text, hit_count, last_hit_at
FROM query_cache
WHERE expires_at > NOW()
ORDER BY hit_count DESC, last_hit_at DESC
LIMIT $1
"""


def _opt_floats(values: Any) -> Optional[List[Optional[float]]]:
    if values is None:
        return None
    return [None if v is None else float(v) for v in values]


def _as_epoch(value: Any) -> float:
    if isinstance(value, datetime):
        return value.timestamp()
    return float(value)


class PostgresCacheStore:
    """Tier-2 on the `query_cache` table, through the shared VectorPool."""

    def __init__(self, pool):
        self.pool = pool

    async def _run(self, sql: str, *params: Any):
        try:
            return await self.pool.execute(sql, *params)
        except Exception as e:
            raise CacheBackendError(f"query_cache: {e}") from e

    async def get(self, fp: str) -> Optional[CacheEntry]:
        res = await self._run(_SQL_GET, fp)
        if not res.rows:
            return None
        row = res.rows[0]
        return CacheEntry(
            fingerprint=row["cache_key"],
            query_text=row.get("query_text") or "",
            result_ids=[str(x) for x in (row.get("result_ids") or [])],
            result_scores=[float(x) for x in (row.get("result_scores") or [])],
            result_similarities=_opt_floats(row.get("result_similarities")),
            result_keyword_scores=_opt_floats(row.get("result_keyword_scores")),
            created_at=_as_epoch(row["created_at"]),
            expires_at=_as_epoch(row["expires_at"]),
            hit_count=int(row.get("hit_count") or 0),
        )

    async def upsert(self, entry: CacheEntry, ttl_s: float, embedding: Optional[List[float]] = None) -> None:
        await self._run(
            _SQL_UPSERT,
            entry.fingerprint,
            entry.query_text,
            embedding,
            list(entry.result_ids),
            [float(s) for s in entry.result_scores],
            float(ttl_s),
            entry.result_similarities,
            entry.result_keyword_scores,
        )

    async def _count(self, sql: str, *params: Any) -> int:
        res = await self._run(sql, *params)
        if not res.rows:
            return 0
        return int(res.rows[0].get("deleted") or 0)

    async def delete_by_product(self, product_id: str) -> int:
        return await self._count(_SQL_DELETE_BY_PRODUCT, product_id)

    async def delete_all(self) -> int:
        return await self._count(_SQL_DELETE_ALL)

    async def cleanup_expired(self) -> int:
        return await self._count(_SQL_CLEANUP)

    async def stats(self) -> Dict[str, float]:
        res = await self._run(_SQL_STATS)
        row = res.rows[0] if res.rows else {}
        return {
            "total_entries": int(row.get("total_entries") or 0),
            "avg_hits": float(row.get("avg_hits") or 0.0),
        }

    async def top_queries(self, limit: int) -> List[Dict[str, Any]]:
        res = await self._run(_SQL_TOP, int(limit))
        return [
            {"query_text": r.get("query_text") or "", "hit_count": int(r.get("hit_count") or 0)}
            for r in res.rows
        ]


class QueryResultCache:
    """
    Lookup order per request: tier-1, then tier-2, then the executor.
    Tier-2 failures are logged and treated as misses; a tier-2 hit is promoted
    into tier-1; a full miss is written to tier-1 right away and to tier-2 in
    the background.
    """

    def __init__(
        self,
        store: Optional[CacheStore] = None,
        settings: Optional[CacheSettings] = None,
        stats: Optional[CacheStats] = None,
        l1: Optional[TTLCache] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or CacheSettings.from_env()
        self.store = store
        self.counters = stats or CacheStats()
        self._clock = clock
        self._l1 = l1 or TTLCache(self.settings.l1_ttl_s, self.settings.l1_max_entries, clock=clock)
        self._pending: Set[asyncio.Task] = set()
        self._inflight: Dict[str, asyncio.Future] = {}

    # ---- helpers ----

    def _backend_error(self, op: str, err: BaseException) -> None:
        self.counters.record_error()
        metrics.record_cache_error()
        logger.warning(f"[cache] tier-2 {op} failed: {err!r}")

    def _schedule(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write_l2(self, entry: CacheEntry, embedding: Optional[List[float]]) -> None:
        try:
            await self.store.upsert(entry, self.settings.l2_ttl_s, embedding)
        except Exception as e:
            self._backend_error("write", e)

    async def _read_l2(self, fp: str) -> Optional[CacheEntry]:
        if self.store is None:
            return None
        try:
            entry = await self.store.get(fp)
        except Exception as e:
            self._backend_error("read", e)
            return None
        if entry is not None and entry.is_expired(self._clock()):
            return None
        return entry

    def _promote(self, entry: CacheEntry, results: List[SearchResult]) -> None:
        now = self._clock()
        ttl = min(float(self.settings.l1_ttl_s), entry.expires_at - now)
        if ttl <= 0:
            return
        promoted = CacheEntry(
            fingerprint=entry.fingerprint,
            query_text=entry.query_text,
            result_ids=list(entry.result_ids),
            result_scores=list(entry.result_scores),
            created_at=now,
            expires_at=now + ttl,
            hit_count=entry.hit_count,
            result_similarities=entry.result_similarities,
            result_keyword_scores=entry.result_keyword_scores,
            results=[r.model_copy() for r in results],
        )
        self._l1.set(entry.fingerprint, promoted, ttl=ttl)

    async def _run_and_store(
        self, fp: str, query: str, executor: Executor, embedding: Optional[List[float]]
    ) -> List[SearchResult]:
        results = list(await executor())
        now = self._clock()
        self._l1.set(fp, CacheEntry.from_results(fp, query, results, self.settings.l1_ttl_s, now))
        if self.store is not None:
            l2_entry = CacheEntry.from_results(fp, query, results, self.settings.l2_ttl_s, now, keep_rows=False)
            self._schedule(self._write_l2(l2_entry, embedding))
        return results

    async def _execute(
        self, fp: str, query: str, executor: Executor, embedding: Optional[List[float]]
    ) -> List[SearchResult]:
        if not self.settings.single_flight:
            return await self._run_and_store(fp, query, executor, embedding)

        shared = self._inflight.get(fp)
        if shared is not None:
            try:
                results = await asyncio.shield(shared)
            except asyncio.CancelledError:
                if not shared.cancelled():
                    raise
                # the leader went away; the first follower to resume takes over
                logger.debug(f"[cache] leader for {fp} cancelled, re-running")
                entry = self._l1.get(fp)
                if entry is not None:
                    return entry.to_results()
                return await self._execute(fp, query, executor, embedding)
            return [r.model_copy() for r in results]

        fut = asyncio.get_running_loop().create_future()
        self._inflight[fp] = fut
        try:
            results = await self._run_and_store(fp, query, executor, embedding)
        except asyncio.CancelledError:
            fut.cancel()
            raise
        except Exception as e:
            fut.set_exception(e)
            fut.exception()  # followers re-raise it; mark retrieved for the leader
            raise
        else:
            fut.set_result(results)
            return results
        finally:
            self._inflight.pop(fp, None)

    # ---- public API ----

    async def get_or_execute(
        self,
        query: str,
        options: Optional[Mapping[str, Any]],
        executor: Executor,
        embedding: Optional[List[float]] = None,
        hydrate: Optional[Hydrator] = None,
    ) -> List[SearchResult]:
        fp = fingerprint(query, options)

        entry = self._l1.get(fp)
        if entry is not None:
            entry.touch()
            self.counters.record_hit("l1")
            metrics.record_cache_lookup("l1")
            logger.debug(f"[cache] L1 hit {fp}")
            return entry.to_results()

        entry = await self._read_l2(fp)
        if entry is not None:
            self.counters.record_hit("l2")
            metrics.record_cache_lookup("l2")
            logger.debug(f"[cache] L2 hit {fp} (hits={entry.hit_count})")
            results = entry.to_results()
            if hydrate is not None and results:
                try:
                    results = await hydrate(results)
                except Exception as e:
                    # bare id+score rows are served once, never promoted
                    logger.warning(f"[cache] hydrate after L2 hit failed: {e!r}")
                    return results
            self._promote(entry, results)
            return results

        self.counters.record_miss()
        metrics.record_cache_lookup(None)
        return await self._execute(fp, query, executor, embedding)

    async def invalidate_by_product_id(self, product_id: str) -> int:
        """
        Drop every cached result list containing `product_id`. Returns the
        number of tier-2 rows deleted (tier-1 count when there is no tier-2).
        """
        stale = [k for k, e in self._l1.items() if product_id in e.result_ids]
        for k in stale:
            self._l1.pop(k)
        if self.store is None:
            deleted = len(stale)
        else:
            try:
                deleted = await self.store.delete_by_product(product_id)
            except Exception as e:
                self._backend_error("invalidate", e)
                deleted = 0
        logger.info(f"[cache] invalidated {deleted} entries for product {product_id}")
        return deleted

    async def invalidate_all(self) -> int:
        dropped = len(self._l1)
        self._l1.clear()
        deleted = dropped
        if self.store is not None:
            try:
                deleted = await self.store.delete_all()
            except Exception as e:
                self._backend_error("invalidate_all", e)
                deleted = 0
        self.counters.reset()
        logger.info(f"[cache] cleared all entries ({deleted} in store)")
        return deleted

    async def cleanup_expired(self) -> int:
        removed = self._l1.prune()
        if self.store is not None:
            try:
                removed += await self.store.cleanup_expired()
            except Exception as e:
                self._backend_error("cleanup", e)
        if removed:
            logger.info(f"[cache] swept {removed} expired entries")
        return removed

    async def stats(self) -> CacheStatsSnapshot:
        c = self.counters
        total_entries = len(self._l1)
        avg_hits = 0.0
        if total_entries:
            avg_hits = sum(e.hit_count for _, e in self._l1.items()) / total_entries
        if self.store is not None:
            try:
                s = await self.store.stats()
                total_entries = int(s.get("total_entries", 0))
                avg_hits = float(s.get("avg_hits", 0.0))
            except Exception as e:
                self._backend_error("stats", e)
        return CacheStatsSnapshot(
            hit_count=c.hits,
            miss_count=c.misses,
            hit_rate=c.hit_rate,
            total_entries=total_entries,
            avg_hits_per_query=avg_hits,
            l1_entries=len(self._l1),
            l1_hits=c.l1_hits,
            l2_hits=c.l2_hits,
            backend_errors=c.backend_errors,
        )

    async def get_top_queries(self, limit: int = 100) -> List[Dict[str, Any]]:
        if self.store is not None:
            try:
                return await self.store.top_queries(limit)
            except Exception as e:
                self._backend_error("top_queries", e)
        ranked = sorted(self._l1.items(), key=lambda kv: kv[1].hit_count, reverse=True)
        return [{"query_text": e.query_text, "hit_count": e.hit_count} for _, e in ranked[:limit]]

    async def warm(
        self,
        queries: Sequence[Tuple[str, Mapping[str, Any]]],
        run: Callable[[str, Mapping[str, Any]], Awaitable[Sequence[SearchResult]]],
    ) -> int:
        """Pre-populate both tiers; failing queries are logged and skipped."""
        warmed = 0
        for query, opts in queries:
            try:
                await self.get_or_execute(query, opts, lambda q=query, o=opts: run(q, o))
                warmed += 1
            except Exception as e:
                logger.warning(f"[cache] warm-up failed for query hash {fingerprint(query, opts)}: {e!r}")
        logger.info(f"[cache] warmed {warmed}/{len(queries)} queries")
        return warmed

    async def flush_pending(self) -> None:
        """Wait for background tier-2 writes (shutdown, tests)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


class CacheSweeper:
    """Background task calling cache.cleanup_expired() on a fixed interval."""

    def __init__(self, cache: QueryResultCache, interval_s: float = 300.0):
        self.cache = cache
        self.interval_s = float(interval_s)
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._loop())

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_s)
            try:
                await self.cache.cleanup_expired()
            except Exception as e:
                logger.error(f"[cache] sweep failed: {e!r}")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

# =============================================
# File: giftfinder/services/pool.py
# Purpose: Dedicated asyncpg pool for vector queries (retry + health)
# =============================================
from __future__ import annotations
import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, TypeVar

import asyncpg
from loguru import logger
from pgvector.asyncpg import register_vector
from pydantic import BaseModel

from ..utils import metrics
from ..utils.errors import PoolExhaustedRetries, PoolNotInitialized
from ..utils.retry import exponential_backoff, with_retry
from ..utils.settings import PoolSettings

T = TypeVar("T")

# Retry delay between attempts: 0.2s, 0.4s, 0.8s ... capped at 2s
RETRY_BASE_DELAY_S = 0.1
RETRY_MAX_DELAY_S = 2.0


@dataclass
class QueryResult:
    rows: List[Dict[str, Any]] = field(default_factory=list)
    row_count: int = 0
    duration_ms: float = 0.0


class PoolStats(BaseModel):
    total: int = 0
    idle: int = 0
    waiting: int = 0
    max: int = 0
    acquired: int = 0


class PoolHealth(BaseModel):
    healthy: bool
    message: str


class VectorPool:
    """
    Owns every physical connection used for vector search and cache tier-2.
    Without a DSN (or when creation fails) the pool stays uninitialized and
    callers get PoolNotInitialized instead of a crash.
    """

    def __init__(
        self,
        settings: Optional[PoolSettings] = None,
        pool_factory: Optional[Callable[..., Awaitable[Any]]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        slow_query_ms: float = 500.0,
    ):
        self.settings = settings or PoolSettings.from_env()
        self._pool_factory = pool_factory or asyncpg.create_pool
        self._sleep = sleep
        self._pool: Any = None
        self._acquired = 0
        self._waiting = 0
        self.slow_query_ms = slow_query_ms

    @property
    def initialized(self) -> bool:
        return self._pool is not None

    async def _init_connection(self, conn) -> None:
        try:
            await register_vector(conn)
        except (ValueError, asyncpg.PostgresError) as e:
            logger.warning(f"[pool] pgvector codec not registered: {e}")
        try:
            await conn.execute(f"SET hnsw.ef_search = {int(self.settings.ef_search)}")
        except asyncpg.PostgresError as e:
            # pgvector without HNSW support; keep the connection
            logger.debug(f"[pool] could not set hnsw.ef_search: {e}")

    async def initialize(self) -> bool:
        if self._pool is not None:
            return True
        s = self.settings
        if not s.dsn:
            logger.warning("[pool] DATABASE_URL not configured; vector pool disabled")
            return False
        try:
            pool = await self._pool_factory(
                dsn=s.dsn,
                min_size=s.min_size,
                max_size=s.max_size,
                max_inactive_connection_lifetime=s.idle_timeout_s,
                timeout=s.connect_timeout_s,
                command_timeout=s.statement_timeout_s,
                server_settings={
                    "application_name": s.application_name,
                    "statement_timeout": str(int(s.statement_timeout_s * 1000)),
                },
                init=self._init_connection,
            )
            conn = await pool.acquire()
            try:
                await conn.fetchval("SELECT 1")
            finally:
                await pool.release(conn)
        except Exception as e:
            logger.error(f"[pool] failed to initialize vector pool: {e!r}")
            return False
        self._pool = pool
        logger.info(f"[pool] vector pool ready (min={s.min_size}, max={s.max_size})")
        return True

    async def acquire(self):
        if self._pool is None:
            raise PoolNotInitialized()
        self._waiting += 1
        try:
            conn = await self._pool.acquire()
        finally:
            self._waiting -= 1
        self._acquired += 1
        return conn

    async def release(self, conn) -> None:
        if self._pool is None:
            return
        try:
            await self._pool.release(conn)
        finally:
            self._acquired = max(0, self._acquired - 1)

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[Any]:
        conn = await self.acquire()
        try:
            yield conn
        finally:
            await self.release(conn)

    async def execute(self, query: str, *params: Any) -> QueryResult:
        async with self.connection() as conn:
            t0 = time.perf_counter()
            ok = False
            try:
                rows = await conn.fetch(query, *params)
                ok = True
            finally:
                duration_ms = (time.perf_counter() - t0) * 1000.0
                slow = duration_ms > self.slow_query_ms
                metrics.record_db_query(duration_ms, ok=ok, slow=slow)
                if slow:
                    head = " ".join(query.split()[:4])
                    logger.warning(f"[pool] slow query ({duration_ms:.0f} ms): {head} ...")
        out = [dict(r) for r in rows]
        return QueryResult(rows=out, row_count=len(out), duration_ms=duration_ms)

    async def _run_once(self, operation: Callable[[Any], Awaitable[T]]) -> T:
        async with self.connection() as conn:
            return await operation(conn)

    async def execute_with_retry(
        self,
        operation: Callable[[Any], Awaitable[T]],
        max_retries: int = 3,
    ) -> T:
        """
        Each attempt checks out its own connection and always returns it.
        PoolNotInitialized is raised at once; any other failure is retried
        and finally surfaces as PoolExhaustedRetries.
        """
        if self._pool is None:
            raise PoolNotInitialized()
        attempts = max(1, int(max_retries))
        try:
            return await with_retry(
                lambda: self._run_once(operation),
                max_attempts=attempts,
                backoff=exponential_backoff(RETRY_BASE_DELAY_S, cap=RETRY_MAX_DELAY_S),
                should_retry=lambda e: not isinstance(e, PoolNotInitialized),
                sleep=self._sleep,
                label="pool.execute",
            )
        except PoolNotInitialized:
            raise
        except Exception as e:
            logger.error(f"[pool] operation failed after {attempts} attempts: {e!r}")
            raise PoolExhaustedRetries(attempts, e) from e

    def stats(self) -> PoolStats:
        if self._pool is None:
            return PoolStats()
        return PoolStats(
            total=int(self._pool.get_size()),
            idle=int(self._pool.get_idle_size()),
            waiting=self._waiting,
            max=self.settings.max_size,
            acquired=self._acquired,
        )

    def utilization(self) -> float:
        if self._pool is None or self.settings.max_size <= 0:
            return 0.0
        return self._acquired / self.settings.max_size

    def optimize(self) -> None:
        """Warn when the pool runs hot and callers are queueing."""
        util = self.utilization()
        if util > self.settings.target_utilization and self._waiting > 0:
            logger.warning(
                f"[pool] high utilization {util:.0%} with {self._waiting} waiting; "
                f"consider raising VECTOR_POOL_MAX (now {self.settings.max_size})"
            )

    async def health_check(self) -> PoolHealth:
        if self._pool is None:
            return PoolHealth(healthy=False, message="Pool not initialized")
        try:
            await self.execute("SELECT 1")
        except Exception as e:
            return PoolHealth(healthy=False, message=f"Health check failed: {e}")
        return PoolHealth(healthy=True, message="Pool is healthy")

    async def close(self) -> None:
        if self._pool is None:
            return
        pool, self._pool = self._pool, None
        await pool.close()
        logger.info("[pool] vector pool closed")

# =============================================
# File: tests/test_pool.py
# Purpose: VectorPool lifecycle, retry/release discipline and bounded concurrency
# =============================================
import sys, os
sys.path.append(os.path.dirname(os.path.dirname(__file__)))
sys.path.append(os.path.dirname(__file__))

import asyncio
import pytest

from fakes import SleepRecorder, make_pool
from giftfinder.services.pool import VectorPool
from giftfinder.utils.errors import PoolExhaustedRetries, PoolNotInitialized
from giftfinder.utils.settings import PoolSettings


@pytest.mark.asyncio
async def test_uninitialized_pool_rejects_work_and_reports_zero_stats():
    pool = VectorPool(PoolSettings(dsn=None))
    assert await pool.initialize() is False

    async def op(conn):
        return 1

    with pytest.raises(PoolNotInitialized):
        await pool.execute_with_retry(op)

    stats = pool.stats()
    assert (stats.total, stats.idle, stats.waiting, stats.acquired) == (0, 0, 0, 0)
    health = await pool.health_check()
    assert health.healthy is False
    assert health.message == "Pool not initialized"


@pytest.mark.asyncio
async def test_initialize_failure_is_reported_not_raised():
    async def broken_factory(**kwargs):
        raise OSError("connection refused")

    pool = VectorPool(PoolSettings(dsn="postgresql://nowhere/db"), pool_factory=broken_factory)
    assert await pool.initialize() is False
    assert pool.initialized is False


@pytest.mark.asyncio
async def test_initialize_passes_pool_configuration():
    pool, fake = await make_pool(max_size=7)
    assert fake.kwargs["max_size"] == 7
    assert fake.kwargs["server_settings"]["statement_timeout"] == "30000"
    assert fake.kwargs["init"] is not None
    assert (await pool.health_check()).message == "Pool is healthy"


@pytest.mark.asyncio
async def test_every_attempt_releases_its_connection():
    sleep = SleepRecorder()
    pool, fake = await make_pool(sleep=sleep)
    calls = {"n": 0}

    async def op(conn):
        calls["n"] += 1
        raise RuntimeError("relation does not exist")

    with pytest.raises(PoolExhaustedRetries) as ei:
        await pool.execute_with_retry(op, max_retries=3)

    assert calls["n"] == 3
    assert ei.value.attempts == 3
    assert isinstance(ei.value.last_error, RuntimeError)
    assert fake.acquired_total == fake.released_total
    assert fake.in_use == 0
    assert sleep.delays == [0.2, 0.4]
    assert pool.stats().acquired == 0


@pytest.mark.asyncio
async def test_retry_recovers_on_second_attempt():
    pool, fake = await make_pool()
    calls = {"n": 0}

    async def op(conn):
        calls["n"] += 1
        if calls["n"] == 1:
            raise ConnectionResetError("server closed the connection")
        return "rows"

    assert await pool.execute_with_retry(op) == "rows"
    assert fake.in_use == 0


@pytest.mark.asyncio
async def test_concurrent_operations_never_exceed_max_size():
    pool, fake = await make_pool(max_size=3)
    active = {"now": 0, "peak": 0}

    async def op(conn):
        active["now"] += 1
        active["peak"] = max(active["peak"], active["now"])
        await asyncio.sleep(0.01)
        active["now"] -= 1
        return 1

    results = await asyncio.gather(*(pool.execute_with_retry(op) for _ in range(20)))
    assert sum(results) == 20
    assert active["peak"] <= 3
    assert fake.peak <= 3
    assert fake.in_use == 0


@pytest.mark.asyncio
async def test_execute_returns_rows_as_dicts():
    pool, _ = await make_pool(handler=lambda sql, params: [{"id": "1", "n": 2}])
    res = await pool.execute("SELECT id, n FROM t")
    assert res.rows == [{"id": "1", "n": 2}]
    assert res.row_count == 1
    assert res.duration_ms >= 0


@pytest.mark.asyncio
async def test_close_returns_pool_to_uninitialized():
    pool, fake = await make_pool()
    await pool.close()
    assert fake.closed
    with pytest.raises(PoolNotInitialized):
        await pool.acquire()

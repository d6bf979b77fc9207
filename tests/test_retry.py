# =============================================
# File: tests/test_retry.py
# Purpose: Backoff schedule, retry predicate and error classification
# =============================================
import sys, os
sys.path.append(os.path.dirname(os.path.dirname(__file__)))
sys.path.append(os.path.dirname(__file__))

import asyncio
import pytest

from fakes import ProviderError, SleepRecorder
from giftfinder.utils.retry import (
    exponential_backoff,
    is_transient_error,
    retry_after_of,
    status_code_of,
    with_retry,
)


def test_exponential_backoff_doubles_and_caps():
    d = exponential_backoff(0.5, cap=3.0)
    assert [d(1), d(2), d(3), d(4)] == [1.0, 2.0, 3.0, 3.0]


@pytest.mark.asyncio
async def test_with_retry_succeeds_after_transient_failures():
    calls = {"n": 0}
    sleep = SleepRecorder()

    async def op():
        calls["n"] += 1
        if calls["n"] < 3:
            raise ProviderError(503)
        return "ok"

    out = await with_retry(op, max_attempts=3, backoff=exponential_backoff(0.5), sleep=sleep)
    assert out == "ok"
    assert calls["n"] == 3
    assert sleep.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_with_retry_reraises_last_error_unchanged():
    async def op():
        raise ProviderError(500, "boom")

    with pytest.raises(ProviderError) as ei:
        await with_retry(op, max_attempts=2, sleep=SleepRecorder())
    assert ei.value.status_code == 500


@pytest.mark.asyncio
async def test_with_retry_does_not_retry_rejected_errors():
    calls = {"n": 0}

    async def op():
        calls["n"] += 1
        raise ProviderError(400)

    with pytest.raises(ProviderError):
        await with_retry(op, max_attempts=5, should_retry=is_transient_error, sleep=SleepRecorder())
    assert calls["n"] == 1


def test_error_classification():
    assert is_transient_error(ProviderError(429))
    assert is_transient_error(ProviderError(502))
    assert is_transient_error(asyncio.TimeoutError())
    assert is_transient_error(ConnectionResetError())
    assert not is_transient_error(ProviderError(401))
    assert not is_transient_error(ValueError("bad json"))


def test_status_and_retry_after_helpers():
    err = ProviderError(429, headers={"retry-after": "12"})
    assert status_code_of(err) == 429
    assert retry_after_of(err) == 12
    assert retry_after_of(ProviderError(429)) is None
    assert status_code_of(ValueError()) is None

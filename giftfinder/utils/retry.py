# =============================================
# File: giftfinder/utils/retry.py
# Purpose: Bounded async retry with deterministic exponential backoff
# =============================================
from __future__ import annotations
import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

import openai
from loguru import logger

T = TypeVar("T")

Backoff = Callable[[int], float]
SleepFn = Callable[[float], Awaitable[None]]


def exponential_backoff(base: float, factor: float = 2.0, cap: Optional[float] = None) -> Backoff:
    """
    delay(attempt) = base * factor**attempt, optionally capped.
    `attempt` is 1-based: the delay after the first failure uses attempt=1.
    """
    def _delay(attempt: int) -> float:
        d = base * (factor ** attempt)
        if cap is not None:
            d = min(d, cap)
        return d
    return _delay


def _always(_: BaseException) -> bool:
    return True


def status_code_of(err: BaseException) -> Optional[int]:
    code = getattr(err, "status_code", None)
    if code is None:
        code = getattr(err, "status", None)
    try:
        return int(code) if code is not None else None
    except (TypeError, ValueError):
        return None


def retry_after_of(err: BaseException) -> Optional[int]:
    """Seconds from a provider's Retry-After header, when it sent one."""
    headers = getattr(getattr(err, "response", None), "headers", None)
    if not headers:
        return None
    raw = headers.get("retry-after")
    try:
        return max(0, int(float(raw))) if raw is not None else None
    except (TypeError, ValueError):
        return None


def is_transient_error(err: BaseException) -> bool:
    """429, 5xx, timeouts and dropped connections."""
    if isinstance(err, (openai.APITimeoutError, openai.APIConnectionError, asyncio.TimeoutError, ConnectionError)):
        return True
    code = status_code_of(err)
    return code is not None and (code == 429 or code >= 500)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    backoff: Backoff = exponential_backoff(0.1),
    should_retry: Callable[[BaseException], bool] = _always,
    sleep: SleepFn = asyncio.sleep,
    label: str = "op",
) -> T:
    """
    Run `operation` up to `max_attempts` times.
    Errors rejected by `should_retry` propagate immediately; once attempts are
    spent the last error is re-raised unchanged.
    """
    attempts = max(1, int(max_attempts))
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except Exception as e:
            if attempt >= attempts or not should_retry(e):
                raise
            delay = backoff(attempt)
            logger.warning(f"[retry] {label} attempt {attempt}/{attempts} failed: {e!r}; retrying in {delay:.2f}s")
            await sleep(delay)
    raise RuntimeError("unreachable")  # pragma: no cover

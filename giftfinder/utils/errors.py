# =============================================
# File: giftfinder/utils/errors.py
# Purpose: Typed failures raised by the search/recommendation core
# =============================================
from __future__ import annotations
from typing import Sequence


class GiftFinderError(Exception):
    """Base class for every error the core raises on purpose."""


class PoolNotInitialized(GiftFinderError):
    def __init__(self, message: str = "Vector pool not initialized"):
        super().__init__(message)


class PoolExhaustedRetries(GiftFinderError):
    def __init__(self, attempts: int, last_error: BaseException | None = None):
        self.attempts = attempts
        self.last_error = last_error
        detail = f": {last_error}" if last_error else ""
        super().__init__(f"Pool operation failed after {attempts} attempts{detail}")


class EmbeddingError(GiftFinderError):
    pass


class RateLimitExceeded(GiftFinderError):
    def __init__(self, retry_after: int, message: str = "Rate limit exceeded"):
        self.retry_after = max(0, int(retry_after))
        super().__init__(f"{message}. Retry after {self.retry_after} seconds")


class GenerationFailed(GiftFinderError):
    def __init__(self, message: str, models_tried: Sequence[str] = ()):
        self.models_tried = list(models_tried)
        super().__init__(message)


class CacheBackendError(GiftFinderError):
    pass

"""
Error taxonomy for Member Search.

Only DataStoreError, RateLimitExceeded and ValidationError ever reach the
user as failures. The rest are caught at degradation boundaries and turn
into lower confidence or a skipped optimization.
"""

from typing import Optional


class MemberSearchError(Exception):
    """Base class for all member search errors."""

    code: str = "member_search_error"
    retryable: bool = False

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }


class ValidationError(MemberSearchError):
    """Empty or oversized input."""

    code = "validation_error"


class ExtractionDegraded(MemberSearchError):
    """Slow-path extraction failed; the fast-path result is used instead."""

    code = "extraction_degraded"


class ProviderError(MemberSearchError):
    """Base class for outbound provider failures."""

    code = "provider_error"
    retryable = True

    def __init__(self, message: str, provider: str = "", cause: Optional[BaseException] = None):
        super().__init__(message, cause=cause)
        self.provider = provider


class ProviderTimeoutError(ProviderError):
    """A provider call exceeded its per-attempt timeout."""

    code = "provider_timeout"


class ProviderUnavailableError(ProviderError):
    """Every provider in a chain has been exhausted."""

    code = "provider_unavailable"


class RateLimitExceeded(MemberSearchError):
    """A per-user rate window is full."""

    code = "rate_limit_exceeded"
    retryable = True

    def __init__(
        self,
        message: str,
        category: str,
        current: int,
        limit: int,
        retry_after: int,
        window_seconds: float = 3600,
    ):
        super().__init__(message)
        self.category = category
        self.current = current
        self.limit = limit
        self.retry_after = retry_after
        self.window_seconds = window_seconds

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update({
            "category": self.category,
            "limit": self.limit,
            "window_seconds": self.window_seconds,
            "retry_after": self.retry_after,
        })
        return data


class CacheUnavailable(MemberSearchError):
    """Cache backend could not be reached; callers bypass the cache."""

    code = "cache_unavailable"
    retryable = True


class DataStoreError(MemberSearchError):
    """Tenant data store round trip failed. Fatal for the request, retryable."""

    code = "data_store_error"
    retryable = True


class SessionUnavailable(DataStoreError):
    """The session and rate-limit store could not be reached."""

    code = "session_unavailable"

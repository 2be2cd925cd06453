"""
Provider error taxonomy.

Every embedding and LLM provider failure is surfaced as a
``ProviderError`` carrying a ``ProviderErrorCode`` so pipeline code can
react generically: retry transient and rate-limited failures, surface
auth and invalid-request failures immediately, and treat cancellation as
a cooperative stop.
"""

from __future__ import annotations

from collections.abc import Mapping
from enum import Enum


class ProviderErrorCode(str, Enum):
    """Discriminant for provider failures."""

    AUTH_ERROR = "auth_error"
    RATE_LIMITED = "rate_limited"
    INVALID_REQUEST = "invalid_request"
    TRANSIENT = "transient"
    CANCELED = "canceled"
    UNKNOWN = "unknown"


RETRYABLE_CODES = frozenset(
    {
        ProviderErrorCode.RATE_LIMITED,
        ProviderErrorCode.TRANSIENT,
        ProviderErrorCode.UNKNOWN,
    }
)


class ProviderError(Exception):
    """
    Failure raised by an embedding or LLM provider.

    Attributes:
        code: Failure category
        status: HTTP status code when the failure came from an HTTP response
        retry_after_ms: Server-provided wait hint (rate limiting only)
    """

    def __init__(
        self,
        message: str,
        code: ProviderErrorCode = ProviderErrorCode.UNKNOWN,
        status: int | None = None,
        retry_after_ms: float | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.status = status
        self.retry_after_ms = retry_after_ms

    @property
    def retryable(self) -> bool:
        """Whether retrying the same request may succeed."""
        return self.code in RETRYABLE_CODES

    def __repr__(self) -> str:
        return f"ProviderError(code={self.code.value!r}, status={self.status!r}, message={str(self)!r})"


def retry_after_ms_from_headers(headers: Mapping[str, str] | None) -> float | None:
    """
    Parse a ``Retry-After`` header given in seconds.

    Returns:
        Delay in milliseconds, or None when absent or not numeric
    """
    if not headers:
        return None
    raw = headers.get("retry-after") or headers.get("Retry-After")
    if not raw:
        return None
    try:
        seconds = float(raw)
    except ValueError:
        return None
    return max(0.0, seconds * 1000)

"""
Retry and pacing policy for provider calls.

Provider calls are retried with exponential backoff
(``base_delay * 2 ** attempt`` after the attempt-th failure) through
tenacity. Only retryable provider failures are retried; auth and
invalid-request failures, cancellations and the final failure are
re-raised untouched.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
)

from neuron.analysis.cancellation import JobCancelledError
from neuron.providers.errors import ProviderError, ProviderErrorCode

T = TypeVar("T")


def is_retryable(error: BaseException) -> bool:
    """Whether a failed provider call should be attempted again."""
    if isinstance(error, ProviderError):
        return error.retryable
    if isinstance(error, JobCancelledError):
        return False
    return isinstance(error, Exception)


def backoff_wait(base_delay: float) -> Callable[[RetryCallState], float]:
    """
    Build a tenacity wait strategy.

    Rate-limited failures wait at least the server's retry-after hint.
    """

    def wait(state: RetryCallState) -> float:
        delay = base_delay * (2**state.attempt_number)
        error = state.outcome.exception() if state.outcome else None
        if (
            isinstance(error, ProviderError)
            and error.code == ProviderErrorCode.RATE_LIMITED
            and error.retry_after_ms
        ):
            delay = max(delay, error.retry_after_ms / 1000)
        return delay

    return wait


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    base_delay: float = 0.5,
) -> T:
    """
    Await ``fn()`` with retries.

    Args:
        fn: Zero-argument coroutine factory (called once per attempt)
        max_retries: Retries after the first attempt
        base_delay: Backoff base in seconds

    Returns:
        The first successful result

    Raises:
        Exception: The last failure, unchanged
    """
    retrying = AsyncRetrying(
        reraise=True,
        stop=stop_after_attempt(max(0, max_retries) + 1),
        wait=backoff_wait(base_delay),
        retry=retry_if_exception(is_retryable),
    )
    return await retrying(fn)


def rate_limit_delay(requests_per_minute: int) -> float:
    """Fixed pause (seconds) between provider calls for a requests-per-minute limit."""
    if requests_per_minute <= 0:
        return 0.0
    return 60.0 / requests_per_minute


async def pause_for_rate_limit(requests_per_minute: int) -> None:
    delay = rate_limit_delay(requests_per_minute)
    if delay > 0:
        await asyncio.sleep(delay)

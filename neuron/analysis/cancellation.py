"""
Cooperative cancellation for analysis jobs.

A ``CancellationToken`` is handed down to every stage; stages check it at
chunk/pair boundaries and raise ``JobCancelledError``. The ``JobRegistry``
maps active job ids to their tokens and is the only state shared between
concurrently running jobs.
"""

from __future__ import annotations

import asyncio
import logging

logger = logging.getLogger(__name__)


class JobCancelledError(Exception):
    """Raised when a job observes that its cancellation token was signalled."""


class CancellationToken:
    """One-shot cancellation signal."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Cancelled by user") -> None:
        """Signal cancellation (idempotent; the first reason wins)."""
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        """
        Raise if cancellation was signalled.

        Raises:
            JobCancelledError: If ``cancel()`` has been called
        """
        if self._event.is_set():
            raise JobCancelledError(self.reason or "Job cancelled")

    async def wait(self) -> None:
        """Block until cancellation is signalled."""
        await self._event.wait()


class JobRegistry:
    """
    Lock-guarded map of active job id -> cancellation token.

    Jobs register on start and are removed on any terminal transition.
    """

    def __init__(self) -> None:
        self._tokens: dict[str, CancellationToken] = {}
        self._lock = asyncio.Lock()

    async def register(self, job_id: str) -> CancellationToken:
        """
        Register a job and return its token.

        Raises:
            ValueError: If the job id is already active
        """
        async with self._lock:
            if job_id in self._tokens:
                raise ValueError(f"Job already active: {job_id}")
            token = CancellationToken()
            self._tokens[job_id] = token
            return token

    async def get(self, job_id: str) -> CancellationToken | None:
        async with self._lock:
            return self._tokens.get(job_id)

    async def cancel(self, job_id: str, reason: str = "Cancelled by user") -> bool:
        """Signal a job's token. Returns False if the job is not active."""
        async with self._lock:
            token = self._tokens.get(job_id)
        if token is None:
            return False
        token.cancel(reason)
        logger.info(f"Cancellation requested for job: {job_id}")
        return True

    async def remove(self, job_id: str) -> None:
        async with self._lock:
            self._tokens.pop(job_id, None)

    async def active_ids(self) -> list[str]:
        async with self._lock:
            return list(self._tokens)

    async def is_active(self, job_id: str) -> bool:
        async with self._lock:
            return job_id in self._tokens

"""Progress polling client for consumers of the payroll run API.

Polls ``GET /api/v1/payroll-runs/{id}/progress`` with bounded retries and
exponential backoff. The last good response is kept and served while a
refresh fails (stale-while-revalidate), so a dashboard keeps showing the
previous state through a transient outage instead of going blank.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any
from uuid import UUID

import httpx

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = {"completed", "failed"}


class ProgressUnavailableError(Exception):
    """No fresh or cached progress could be obtained."""


@dataclass
class CachedProgress:
    data: dict[str, Any]
    fetched_at: float

    @property
    def age(self) -> float:
        return time.monotonic() - self.fetched_at


class ProgressPoller:
    """Client for polling payroll run progress."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        tenant_id: UUID,
        max_attempts: int = 4,
        base_delay: float = 0.5,
        max_delay: float = 8.0,
        max_stale_seconds: float = 60.0,
    ):
        """Initialize the poller.

        Args:
            client: Configured ``httpx.AsyncClient`` (base URL, auth, timeout).
            tenant_id: Sent as ``X-Tenant-ID`` on every request.
            max_attempts: Requests per refresh before giving up.
            base_delay: First backoff delay in seconds, doubled per attempt.
            max_delay: Upper bound of one backoff delay.
            max_stale_seconds: How long a cached response may be served
                after refreshes start failing.
        """
        self.client = client
        self.tenant_id = tenant_id
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_stale_seconds = max_stale_seconds
        self._cache: dict[UUID, CachedProgress] = {}

    def backoff(self, attempt: int) -> float:
        return min(self.base_delay * (2**attempt), self.max_delay)

    async def fetch(self, run_id: UUID) -> dict[str, Any]:
        """Fetch progress, falling back to a recent cached value.

        Raises:
            ProgressUnavailableError: Every attempt failed and the cache is
                empty or too old.
            httpx.HTTPStatusError: The server answered with a 4xx status.
        """
        last_error: Exception | None = None
        for attempt in range(self.max_attempts):
            try:
                response = await self.client.get(
                    f"/api/v1/payroll-runs/{run_id}/progress",
                    headers={"X-Tenant-ID": str(self.tenant_id)},
                )
                response.raise_for_status()
                data = response.json()
                self._cache[run_id] = CachedProgress(data, time.monotonic())
                return data
            except httpx.HTTPStatusError as exc:
                # Client errors do not get better by retrying
                if exc.response.status_code < 500:
                    raise
                last_error = exc
            except httpx.TransportError as exc:
                last_error = exc

            delay = self.backoff(attempt)
            logger.warning(
                "progress_poll_retry",
                extra={"payroll_run_id": str(run_id), "attempt": attempt + 1, "delay": delay},
            )
            if attempt + 1 < self.max_attempts:
                await asyncio.sleep(delay)

        cached = self._cache.get(run_id)
        if cached is not None and cached.age <= self.max_stale_seconds:
            logger.info(
                "progress_poll_serving_stale",
                extra={"payroll_run_id": str(run_id), "age_seconds": round(cached.age, 1)},
            )
            return {**cached.data, "stale": True}
        raise ProgressUnavailableError(f"Progress of run {run_id} unavailable") from last_error

    async def wait_until_done(
        self, run_id: UUID, interval: float = 2.0, timeout: float | None = None
    ) -> dict[str, Any]:
        """Poll until the run reaches a terminal progress status."""
        started = time.monotonic()
        while True:
            data = await self.fetch(run_id)
            if data.get("status") in TERMINAL_STATUSES:
                return data
            if timeout is not None and time.monotonic() - started >= timeout:
                raise TimeoutError(f"Run {run_id} still {data.get('status')} after {timeout}s")
            await asyncio.sleep(interval)

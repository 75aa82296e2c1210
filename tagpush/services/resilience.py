from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, TypeVar

from tagpush.core.errors import AllBatchesFailedError, TransientGatewayError
from tagpush.services.telemetry import set_gauge


logger = logging.getLogger(__name__)

T = TypeVar("T")

# Only whole-job failures go back on the queue; malformed jobs and anything unexpected are terminal.
RETRYABLE_JOB_ERRORS: tuple[type[Exception], ...] = (AllBatchesFailedError,)


@dataclass
class LimiterLease:
    # Track lease ownership to avoid double-releasing.
    limiter: "SendLimiter"
    released: bool = False

    def release(self) -> None:
        if self.released:
            return
        self.limiter._release()
        self.released = True


class SendLimiter:
    """Counting semaphore bounding concurrent gateway calls process-wide.

    One instance is shared by every in-flight job, so the bound holds across
    jobs rather than per job.
    """

    def __init__(self, name: str, limit: int) -> None:
        self._name = name
        self._limit = max(1, int(limit))
        self._sem = asyncio.Semaphore(self._limit)
        self._in_flight = 0
        self._peak = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def peak(self) -> int:
        # Highest concurrent occupancy observed since construction.
        return self._peak

    async def acquire(self) -> LimiterLease:
        # Wait for a free slot; callers queue fairly behind the semaphore.
        await self._sem.acquire()
        self._in_flight += 1
        self._peak = max(self._peak, self._in_flight)
        set_gauge(f"limiter_in_flight.{self._name}", float(self._in_flight))
        return LimiterLease(self)

    def _release(self) -> None:
        self._in_flight -= 1
        set_gauge(f"limiter_in_flight.{self._name}", float(self._in_flight))
        self._sem.release()

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[LimiterLease]:
        lease = await self.acquire()
        try:
            yield lease
        finally:
            lease.release()


def job_backoff_ms(*, attempt: int, base_ms: int) -> int:
    # Exponential backoff for whole-job retries: base, 2*base, 4*base, ...
    return int(base_ms) * (2 ** max(0, attempt - 1))


def job_token_capacity(*, job_timeout_s: int, gateway_timeout_ms: int, send_concurrency: int, batch_size: int) -> int:
    """Tokens one job can always finish within job_timeout_s.

    Assumes every gateway call runs to its own timeout and that the job holds
    every limiter slot. Jobs sharing the limiter get less.
    """
    rounds = (int(job_timeout_s) * 1000) // max(1, int(gateway_timeout_ms))
    return rounds * max(1, int(send_concurrency)) * max(1, int(batch_size))


def should_retry_job(exc: BaseException, *, attempt: int, max_attempts: int) -> bool:
    if not isinstance(exc, RETRYABLE_JOB_ERRORS):
        return False
    return attempt < max(1, max_attempts)


async def call_with_timeout(awaitable: Awaitable[T], *, timeout_ms: int, integration: str) -> T:
    # A gateway call that overruns its budget is a transient failure, never an invalid token.
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_ms / 1000.0)
    except asyncio.TimeoutError as exc:
        raise TransientGatewayError(f"{integration} call timed out after {timeout_ms}ms") from exc

from __future__ import annotations

import asyncio
import logging
from typing import Any, Sequence

from pydantic import ValidationError as PydanticValidationError

from tagpush.core.config import Settings, get_settings
from tagpush.core.errors import AllBatchesFailedError, MalformedJobError
from tagpush.core.logging import token_preview
from tagpush.domain.types import BatchResult, JobSummary, PushContent
from tagpush.providers.push.base import PushGateway
from tagpush.services.queue import PushJobPayload, QueuedJob
from tagpush.services.reconciler import InvalidTokenReconciler
from tagpush.services.resilience import SendLimiter, call_with_timeout
from tagpush.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def partition(tokens: Sequence[str], size: int) -> list[list[str]]:
    # Fixed-size slices in input order; the last one may be short.
    step = max(1, int(size))
    return [list(tokens[index : index + step]) for index in range(0, len(tokens), step)]


def parse_job(data: Any) -> PushJobPayload:
    # Structural defects are fatal for the job: retrying cannot repair the data.
    if not isinstance(data, dict):
        raise MalformedJobError("Job data must be an object")
    try:
        payload = PushJobPayload.model_validate(data)
    except PydanticValidationError as exc:
        raise MalformedJobError(f"Job data failed validation: {exc.error_count()} error(s)") from exc
    if not payload.tokens:
        raise MalformedJobError("Job data must contain a non-empty tokens array")
    if not payload.payload.title.strip() or not payload.payload.text.strip():
        raise MalformedJobError("Job data must contain payload with title and text")
    return payload


class BatchDispatcher:
    """Sends one push job through the gateway in bounded batches.

    Batches of a job fan out together, but every gateway call first takes a
    slot from the shared SendLimiter, so the process-wide number of in-flight
    calls never exceeds its limit no matter how many jobs run at once. A failed
    batch is counted and skipped; only a job whose every batch failed raises.
    """

    def __init__(
        self,
        gateway: PushGateway,
        reconciler: InvalidTokenReconciler,
        limiter: SendLimiter,
        *,
        batch_size: int = 100,
        gateway_timeout_ms: int = 10000,
    ) -> None:
        self._gateway = gateway
        self._reconciler = reconciler
        self._limiter = limiter
        self._batch_size = max(1, int(batch_size))
        self._gateway_timeout_ms = gateway_timeout_ms

    @classmethod
    def from_settings(
        cls,
        gateway: PushGateway,
        reconciler: InvalidTokenReconciler,
        limiter: SendLimiter,
        settings: Settings | None = None,
    ) -> "BatchDispatcher":
        settings = settings or get_settings()
        return cls(
            gateway,
            reconciler,
            limiter,
            batch_size=settings.push_batch_size,
            gateway_timeout_ms=settings.push_gateway_timeout_ms,
        )

    async def _send(self, batch: list[str], content: PushContent) -> BatchResult:
        async with self._limiter.slot():
            return await call_with_timeout(
                self._gateway.send_batch(batch, content),
                timeout_ms=self._gateway_timeout_ms,
                integration="push.gateway",
            )

    async def _run_batch(
        self,
        index: int,
        total: int,
        batch: list[str],
        content: PushContent,
        job_id: str,
        rejected: list[str],
    ) -> BatchResult | None:
        try:
            result = await self._send(batch, content)
        except Exception as exc:  # noqa: BLE001 - one batch never aborts its siblings
            increment_counter("batches_failed_total")
            logger.warning("job %s batch %d/%d failed: %s", job_id, index, total, exc)
            return None
        rejected.extend(sorted(result.invalid_tokens))
        increment_counter("batches_sent_total")
        logger.debug(
            "job %s batch %d/%d completed - %d invalid tokens found",
            job_id,
            index,
            total,
            len(result.invalid_tokens),
        )
        return result

    async def process(self, job: PushJobPayload, *, job_id: str) -> JobSummary:
        content = PushContent(
            title=job.payload.title,
            text=job.payload.text,
            metadata=job.payload.metadata,
        )
        batches = partition(job.tokens, self._batch_size)
        logger.info(
            "processing job %s: %d tokens in %d batches (locale=%s, first=%s)",
            job_id,
            len(job.tokens),
            len(batches),
            job.locale,
            token_preview(job.tokens[0]),
        )
        # Filled as each batch finishes, so a cancelled job still prunes what it already learned.
        rejected: list[str] = []
        try:
            outcomes = await asyncio.gather(
                *(
                    self._run_batch(index, len(batches), batch, content, job_id, rejected)
                    for index, batch in enumerate(batches, start=1)
                )
            )
        finally:
            # Cleanup never raises and must outlive a job timeout or shutdown cancel.
            await asyncio.shield(self._reconciler.remove_tokens(list(rejected)))
            increment_counter("invalid_tokens_total", len(rejected))

        summary = JobSummary(total_tokens=len(job.tokens))
        for outcome in outcomes:
            if outcome is None:
                summary.failed_batches += 1
                continue
            summary.successful_batches += 1
            summary.invalid_tokens.extend(sorted(outcome.invalid_tokens))
            # Each token that failed in transport counts as its own failed sub-batch.
            summary.failed_batches += len(outcome.failed_tokens)

        if summary.all_batches_failed:
            raise AllBatchesFailedError(summary.failed_batches)
        logger.info("job %s completed: %s", job_id, summary.to_dict())
        return summary

    async def handle(self, job: QueuedJob) -> dict[str, int]:
        # Queue-facing entry point; errors propagate so the queue records job state.
        payload = parse_job(job.data)
        summary = await self.process(payload, job_id=job.id)
        return summary.to_dict()

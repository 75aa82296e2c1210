from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from signal import Signals
from typing import Any, Awaitable, Callable, Deque, Protocol
from uuid import uuid4

from arq import Retry, create_pool
from arq.connections import ArqRedis, RedisSettings
from arq.worker import Worker, func
from pydantic import BaseModel
from redis.exceptions import RedisError

from tagpush.core.config import Settings, get_settings
from tagpush.core.errors import JobCancelledError, QueueUnavailableError
from tagpush.services.resilience import job_backoff_ms, should_retry_job
from tagpush.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


class PushJobContent(BaseModel):
    title: str
    text: str
    metadata: dict[str, Any] | None = None


class PushJobPayload(BaseModel):
    # Published job schema for the dispatch-to-worker handoff.
    tokens: list[str]
    payload: PushJobContent
    locale: str | None = None
    dispatch_id: str | None = None


@dataclass(frozen=True)
class EnqueueOptions:
    job_id: str | None = None
    defer_ms: int = 0


@dataclass(frozen=True)
class QueuedJob:
    # What a consumer handler sees; attempt starts at 1.
    id: str
    name: str
    data: dict[str, Any]
    attempt: int


@dataclass(frozen=True)
class QueueCounts:
    waiting: int
    active: int
    completed: int
    failed: int

    def to_dict(self) -> dict[str, int]:
        return {
            "waiting": self.waiting,
            "active": self.active,
            "completed": self.completed,
            "failed": self.failed,
        }


JobHandler = Callable[[QueuedJob], Awaitable[Any]]


class JobQueue(Protocol):
    async def enqueue(
        self,
        job_name: str,
        job_data: dict[str, Any],
        options: EnqueueOptions | None = None,
    ) -> str:
        ...

    async def consume(self, job_name: str, handler: JobHandler, *, concurrency: int) -> None:
        ...

    async def counts(self) -> QueueCounts:
        ...

    async def ping(self) -> None:
        ...

    async def close(self) -> None:
        ...


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _outcome_record(job: QueuedJob, *, status: str, result: Any = None, error: BaseException | None = None) -> dict[str, Any]:
    # Outcomes omit token lists; they can be large and are sensitive. arq keeps
    # no results of its own (keep_result=0), so job args leave Redis with the job.
    record: dict[str, Any] = {
        "job_id": job.id,
        "job_name": job.name,
        "status": status,
        "attempt": job.attempt,
        "finished_at": _utc_now().isoformat(),
    }
    if result is not None:
        record["result"] = result
    if error is not None:
        record["error"] = f"{type(error).__name__}: {error}"
    return record


class ArqJobQueue:
    """Durable job queue backed by arq on Redis.

    arq owns claiming and at-least-once redelivery; this wrapper adds the
    whole-job retry policy, bounded retention of completed and dead-lettered
    outcomes, and the counts reported by the health route.

    A job cut off by arq's job timeout is terminal in arq, so it is
    dead-lettered here. A job cancelled by worker shutdown is put back by arq
    and only dead-lettered when it was on its last attempt.
    """

    def __init__(self, settings: Settings | None = None, *, redis: ArqRedis | None = None) -> None:
        self._settings = settings or get_settings()
        self._redis = redis
        self._lock = asyncio.Lock()
        self._worker_id = uuid4().hex[:12]
        self._stopping = False

    @property
    def queue_name(self) -> str:
        return self._settings.push_queue_name

    def _key(self, suffix: str) -> str:
        return f"{self.queue_name}:{suffix}"

    @property
    def _active_key(self) -> str:
        # One key per consumer; a worker that dies without cleanup stops counting once it expires.
        return self._key(f"active:{self._worker_id}")

    @property
    def _active_ttl_s(self) -> int:
        return self._settings.queue_job_timeout_s + self._settings.worker_shutdown_grace_s + 60

    async def connect(self) -> ArqRedis:
        async with self._lock:
            if self._redis is None:
                self._redis = await create_pool(
                    RedisSettings.from_dsn(self._settings.redis_url),
                    default_queue_name=self.queue_name,
                )
        return self._redis

    async def ping(self) -> None:
        redis = await self.connect()
        await redis.ping()

    async def enqueue(
        self,
        job_name: str,
        job_data: dict[str, Any],
        options: EnqueueOptions | None = None,
    ) -> str:
        options = options or EnqueueOptions()
        job_id = options.job_id or uuid4().hex
        try:
            redis = await self.connect()
            job = await redis.enqueue_job(
                job_name,
                job_data,
                _job_id=job_id,
                _queue_name=self.queue_name,
                _defer_by=timedelta(milliseconds=options.defer_ms) if options.defer_ms else None,
            )
        except (RedisError, OSError) as exc:
            raise QueueUnavailableError("Push queue is unavailable") from exc
        # When a job id already exists, arq returns None; keep tracing with the same id.
        return job.job_id if job else job_id

    def _on_worker_stop(self, signum: Signals) -> None:
        # arq calls this right after cancelling in-flight jobs, before they see the cancel.
        self._stopping = True
        logger.info("push worker on queue=%s received %s", self.queue_name, getattr(signum, "name", signum))

    async def consume(self, job_name: str, handler: JobHandler, *, concurrency: int) -> None:
        # Runs until SIGTERM/SIGINT; in-flight jobs get the configured grace period.
        settings = self._settings
        redis = await self.connect()
        self._stopping = False

        async def _entry(ctx: dict[str, Any], job_data: dict[str, Any]) -> Any:
            job = QueuedJob(
                id=str(ctx.get("job_id") or uuid4().hex),
                name=job_name,
                data=job_data,
                attempt=int(ctx.get("job_try") or 1),
            )
            return await self._run_handler(handler, job)

        worker = Worker(
            functions=[func(_entry, name=job_name, max_tries=settings.queue_max_attempts, keep_result=0)],
            redis_pool=redis,
            queue_name=self.queue_name,
            max_jobs=max(1, int(concurrency)),
            job_timeout=settings.queue_job_timeout_s,
            max_tries=settings.queue_max_attempts,
            keep_result=0,
            job_completion_wait=settings.worker_shutdown_grace_s,
            handle_signals=True,
        )
        worker.on_stop = self._on_worker_stop
        logger.info(
            "push worker consuming queue=%s concurrency=%d max_attempts=%d job_timeout=%ds",
            self.queue_name,
            concurrency,
            settings.queue_max_attempts,
            settings.queue_job_timeout_s,
        )
        try:
            await worker.async_run()
        except asyncio.CancelledError:
            # arq cancels its main task once the shutdown grace period ends.
            logger.info("push worker on queue=%s stopped by signal", self.queue_name)
        finally:
            # arq closes the shared pool along with the worker.
            self._stopping = True
            await worker.close()
            self._redis = None

    async def _adjust_active(self, redis: ArqRedis, delta: int) -> None:
        await redis.incrby(self._active_key, delta)
        await redis.expire(self._active_key, self._active_ttl_s)

    async def _run_handler(self, handler: JobHandler, job: QueuedJob) -> Any:
        redis = await self.connect()
        await self._adjust_active(redis, 1)
        started = time.monotonic()
        try:
            result = await handler(job)
        except asyncio.CancelledError:
            await asyncio.shield(self._record_cancelled(job, elapsed_s=time.monotonic() - started))
            raise
        except Exception as exc:
            if should_retry_job(exc, attempt=job.attempt, max_attempts=self._settings.queue_max_attempts):
                defer_ms = job_backoff_ms(attempt=job.attempt, base_ms=self._settings.queue_backoff_base_ms)
                increment_counter("jobs_retried_total")
                logger.warning(
                    "job %s attempt %d failed (%s); retrying in %dms",
                    job.id,
                    job.attempt,
                    exc,
                    defer_ms,
                )
                raise Retry(defer=timedelta(milliseconds=defer_ms)) from exc
            await self._retain("dead_letter", _outcome_record(job, status="failed", error=exc))
            increment_counter("jobs_failed_total")
            logger.error("job %s failed after %d attempt(s): %s", job.id, job.attempt, exc)
            raise
        else:
            await self._retain("completed", _outcome_record(job, status="completed", result=result))
            increment_counter("jobs_completed_total")
            return result
        finally:
            await asyncio.shield(self._adjust_active(redis, -1))

    async def _record_cancelled(self, job: QueuedJob, *, elapsed_s: float) -> None:
        if self._stopping and job.attempt < self._settings.queue_max_attempts:
            # arq requeues jobs cancelled by shutdown; the next worker runs the next attempt.
            logger.warning("job %s attempt %d interrupted by shutdown; arq will requeue it", job.id, job.attempt)
            return
        if self._stopping:
            # arq fails a requeued job past max_tries without calling the handler again.
            error = JobCancelledError(f"interrupted by shutdown on final attempt after {elapsed_s:.1f}s")
        else:
            error = JobCancelledError(
                f"cancelled after {elapsed_s:.1f}s (job timeout {self._settings.queue_job_timeout_s}s)"
            )
        await self._retain("dead_letter", _outcome_record(job, status="failed", error=error))
        increment_counter("jobs_failed_total")
        logger.error("job %s attempt %d %s", job.id, job.attempt, error)

    async def _retain(self, bucket: str, record: dict[str, Any]) -> None:
        limit = (
            self._settings.queue_retain_completed
            if bucket == "completed"
            else self._settings.queue_retain_failed
        )
        if limit <= 0:
            return
        redis = await self.connect()
        key = self._key(bucket)
        await redis.lpush(key, json.dumps(record, default=str))
        await redis.ltrim(key, 0, limit - 1)

    async def counts(self) -> QueueCounts:
        redis = await self.connect()
        waiting = await redis.zcard(self.queue_name)
        active = 0
        async for key in redis.scan_iter(match=self._key("active:*")):
            # An expired key reads as None; a decrement after expiry can leave -1.
            active += max(0, int(await redis.get(key) or 0))
        completed = await redis.llen(self._key("completed"))
        failed = await redis.llen(self._key("dead_letter"))
        return QueueCounts(
            waiting=int(waiting or 0),
            active=active,
            completed=int(completed or 0),
            failed=int(failed or 0),
        )

    async def dead_letters(self, limit: int = 50) -> list[dict[str, Any]]:
        redis = await self.connect()
        raw = await redis.lrange(self._key("dead_letter"), 0, max(0, limit - 1))
        return [json.loads(item) for item in raw]

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


class InlineJobQueue:
    """Runs jobs in-process at enqueue time with the same retry policy.

    Meant for local development and tests where Redis is not available.
    consume() only registers the handler.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._handlers: dict[str, JobHandler] = {}
        self._active = 0
        self._completed: Deque[dict[str, Any]] = deque(maxlen=max(1, self._settings.queue_retain_completed))
        self._failed: Deque[dict[str, Any]] = deque(maxlen=max(1, self._settings.queue_retain_failed))

    async def enqueue(
        self,
        job_name: str,
        job_data: dict[str, Any],
        options: EnqueueOptions | None = None,
    ) -> str:
        options = options or EnqueueOptions()
        handler = self._handlers.get(job_name)
        if handler is None:
            raise QueueUnavailableError(f"No consumer registered for {job_name}")
        job_id = options.job_id or uuid4().hex
        await self._run_inline(handler, job_id=job_id, job_name=job_name, job_data=job_data)
        return job_id

    async def _run_inline(self, handler: JobHandler, *, job_id: str, job_name: str, job_data: dict[str, Any]) -> None:
        # Failures are recorded rather than raised; the enqueuing caller never sees job errors.
        attempt = 1
        while True:
            job = QueuedJob(id=job_id, name=job_name, data=job_data, attempt=attempt)
            self._active += 1
            try:
                result = await handler(job)
            except Exception as exc:  # noqa: BLE001 - job errors become job state
                if should_retry_job(exc, attempt=attempt, max_attempts=self._settings.queue_max_attempts):
                    increment_counter("jobs_retried_total")
                    delay_ms = job_backoff_ms(attempt=attempt, base_ms=self._settings.queue_backoff_base_ms)
                    await asyncio.sleep(delay_ms / 1000.0)
                    attempt += 1
                    continue
                increment_counter("jobs_failed_total")
                logger.error("inline job %s failed after %d attempt(s): %s", job_id, attempt, exc)
                self._failed.appendleft(_outcome_record(job, status="failed", error=exc))
                return
            finally:
                self._active -= 1
            increment_counter("jobs_completed_total")
            self._completed.appendleft(_outcome_record(job, status="completed", result=result))
            return

    def register(self, job_name: str, handler: JobHandler) -> None:
        self._handlers[job_name] = handler

    async def consume(self, job_name: str, handler: JobHandler, *, concurrency: int) -> None:
        _ = concurrency
        self.register(job_name, handler)

    async def counts(self) -> QueueCounts:
        return QueueCounts(
            waiting=0,
            active=self._active,
            completed=len(self._completed) if self._settings.queue_retain_completed else 0,
            failed=len(self._failed) if self._settings.queue_retain_failed else 0,
        )

    async def dead_letters(self, limit: int = 50) -> list[dict[str, Any]]:
        return list(self._failed)[:limit]

    async def ping(self) -> None:
        return None

    async def close(self) -> None:
        self._handlers.clear()


def build_job_queue(settings: Settings | None = None) -> ArqJobQueue | InlineJobQueue:
    settings = settings or get_settings()
    if settings.queue_execution_mode == "inline":
        return InlineJobQueue(settings)
    return ArqJobQueue(settings)

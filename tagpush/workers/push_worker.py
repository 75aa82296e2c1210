from __future__ import annotations

import logging
from dataclasses import dataclass

from tagpush.core.config import Settings, get_settings
from tagpush.persistence.db import Database
from tagpush.providers.push.base import PushGateway
from tagpush.providers.push.factory import get_push_gateway
from tagpush.services.batch_dispatcher import BatchDispatcher
from tagpush.services.queue import ArqJobQueue, JobQueue
from tagpush.services.reconciler import InvalidTokenReconciler
from tagpush.services.registry import SqlDeviceRegistry
from tagpush.services.resilience import SendLimiter, job_token_capacity


logger = logging.getLogger(__name__)


@dataclass
class WorkerResources:
    # Handles created once per worker process and closed on shutdown.
    database: Database
    gateway: PushGateway
    limiter: SendLimiter
    dispatcher: BatchDispatcher

    async def aclose(self) -> None:
        await self.gateway.aclose()
        await self.database.dispose()


def build_worker_resources(
    settings: Settings | None = None,
    *,
    database: Database | None = None,
    gateway: PushGateway | None = None,
) -> WorkerResources:
    settings = settings or get_settings()
    database = database or Database(settings=settings)
    gateway = gateway or get_push_gateway(settings)
    # One limiter per process: every job's batches draw from the same slots.
    limiter = SendLimiter("push.gateway", settings.push_send_concurrency)
    reconciler = InvalidTokenReconciler(SqlDeviceRegistry(database))
    dispatcher = BatchDispatcher.from_settings(gateway, reconciler, limiter, settings)
    return WorkerResources(database=database, gateway=gateway, limiter=limiter, dispatcher=dispatcher)


async def register_push_consumer(queue: JobQueue, resources: WorkerResources, settings: Settings) -> None:
    # For the arq queue this blocks until shutdown; the inline queue only records the handler.
    await queue.consume(
        settings.push_job_name,
        resources.dispatcher.handle,
        concurrency=settings.worker_concurrency,
    )


async def run_push_worker(settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    if settings.queue_execution_mode == "inline":
        raise RuntimeError("QUEUE_EXECUTION_MODE=inline runs jobs inside the API; no worker is needed")
    resources = build_worker_resources(settings)
    queue = ArqJobQueue(settings)
    logger.info(
        "starting push worker: concurrency=%d batch_size=%d send_concurrency=%d",
        settings.worker_concurrency,
        settings.push_batch_size,
        settings.push_send_concurrency,
    )
    logger.info(
        "job timeout %ds covers about %d tokens per job when every gateway call hits its %dms timeout",
        settings.queue_job_timeout_s,
        job_token_capacity(
            job_timeout_s=settings.queue_job_timeout_s,
            gateway_timeout_ms=settings.push_gateway_timeout_ms,
            send_concurrency=settings.push_send_concurrency,
            batch_size=settings.push_batch_size,
        ),
        settings.push_gateway_timeout_ms,
    )
    try:
        await register_push_consumer(queue, resources, settings)
    finally:
        await queue.close()
        await resources.aclose()
        logger.info("push worker stopped")

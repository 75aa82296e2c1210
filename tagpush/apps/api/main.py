from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from tagpush.apps.api.errors import (
    http_exception_handler,
    queue_unavailable_handler,
    request_validation_error_handler,
    unhandled_exception_handler,
    validation_error_handler,
)
from tagpush.apps.api.routes.health import router as health_router
from tagpush.apps.api.routes.push import router as push_router
from tagpush.apps.api.routes.tokens import router as tokens_router
from tagpush.core.config import Settings, get_settings
from tagpush.core.errors import QueueUnavailableError, ValidationError
from tagpush.core.logging import configure_logging
from tagpush.persistence.db import Database
from tagpush.providers.push.base import PushGateway
from tagpush.services.dispatch.orchestrator import DispatchOrchestrator
from tagpush.services.queue import InlineJobQueue, JobQueue, build_job_queue
from tagpush.services.registry import SqlDeviceRegistry
from tagpush.services.telemetry import increment_counter
from tagpush.workers.push_worker import build_worker_resources


logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    *,
    database: Database | None = None,
    queue: JobQueue | None = None,
    gateway: PushGateway | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    # Handles are built once here and passed by reference; only the ones created here are closed.
    closers: list[Callable[[], Awaitable[None]]] = []
    if database is None:
        database = Database(settings=settings)
        closers.append(database.dispose)
    if queue is None:
        queue = build_job_queue(settings)
        closers.append(queue.close)
    if isinstance(queue, InlineJobQueue):
        # Inline mode runs the batch dispatcher inside the API process.
        resources = build_worker_resources(settings, database=database, gateway=gateway)
        queue.register(settings.push_job_name, resources.dispatcher.handle)
        if gateway is None:
            closers.append(resources.gateway.aclose)

    registry = SqlDeviceRegistry(database)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if database.url.startswith("sqlite"):
            await database.create_all()
        logger.info("tagpush api started (queue mode=%s)", settings.queue_execution_mode)
        try:
            yield
        finally:
            for close in reversed(closers):
                await close()
            logger.info("tagpush api stopped")

    app = FastAPI(title="tagpush API", lifespan=lifespan)
    app.state.settings = settings
    app.state.database = database
    app.state.queue = queue
    app.state.registry = registry
    app.state.orchestrator = DispatchOrchestrator.from_settings(registry, queue, settings)
    app.state.started_at = time.monotonic()

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        increment_counter(f"http_responses_{response.status_code // 100}xx_total")
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(ValidationError, validation_error_handler)
    app.add_exception_handler(QueueUnavailableError, queue_unavailable_handler)
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router)
    app.include_router(tokens_router)
    app.include_router(push_router)
    return app

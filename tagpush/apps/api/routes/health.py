from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from tagpush.apps.api.deps import get_database, get_queue
from tagpush.persistence.db import Database
from tagpush.services.queue import JobQueue
from tagpush.services.telemetry import counters_snapshot, gateway_stats, gauges_snapshot


logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


def _elapsed_ms(start: float) -> float:
    return round((time.monotonic() - start) * 1000.0, 2)


async def _check_database(database: Database) -> dict[str, Any]:
    start = time.monotonic()
    try:
        await database.ping()
    except Exception as exc:  # noqa: BLE001 - a failed probe is reported, not raised
        logger.warning("database health probe failed: %s", exc)
        return {"status": "unhealthy", "latency": None}
    return {"status": "healthy", "latency": _elapsed_ms(start)}


async def _check_queue(queue: JobQueue) -> tuple[dict[str, Any], dict[str, Any]]:
    start = time.monotonic()
    try:
        await queue.ping()
        redis = {"status": "healthy", "latency": _elapsed_ms(start)}
        counts = await queue.counts()
    except Exception as exc:  # noqa: BLE001 - a failed probe is reported, not raised
        logger.warning("queue health probe failed: %s", exc)
        return {"status": "unhealthy", "latency": None}, {"status": "unhealthy", "jobs": None}
    return redis, {"status": "healthy", "jobs": counts.to_dict()}


@router.get("/health")
async def health(
    request: Request,
    database: Database = Depends(get_database),
    queue: JobQueue = Depends(get_queue),
) -> JSONResponse:
    database_status = await _check_database(database)
    redis_status, queue_status = await _check_queue(queue)
    healthy = database_status["status"] == "healthy" and redis_status["status"] == "healthy"
    body = {
        "status": "healthy" if healthy else "unhealthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": round(time.monotonic() - request.app.state.started_at, 3),
        "services": {
            "database": database_status,
            "redis": redis_status,
            "queue": queue_status,
        },
        "counters": counters_snapshot(),
        "gauges": gauges_snapshot(),
        "gateways": gateway_stats(window_s=300),
    }
    return JSONResponse(content=body, status_code=200 if healthy else 503)

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from entitysync.apps.api.deps import get_db
from entitysync.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from entitysync.apps.api.response import Envelope, envelope
from entitysync.core.config import get_settings
from entitysync.persistence.db import pool_stats
from entitysync.persistence.repos import sync_jobs as sync_jobs_repo
from entitysync.services.sync.queue import get_queue_depth, get_worker_heartbeat, is_inline_mode
from entitysync.services.telemetry import (
    counters_snapshot,
    external_latency_by_integration,
    stage_latency,
)


router = APIRouter(prefix="/ops", tags=["ops"], responses=DEFAULT_ERROR_RESPONSES)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _db_error(message: str) -> HTTPException:
    # Keep ops errors explicit without leaking stack traces.
    return HTTPException(status_code=500, detail={"code": "DB_ERROR", "message": message})


async def _check_db_health(db: AsyncSession) -> bool:
    try:
        await db.execute(select(1))
        return True
    except SQLAlchemyError:
        return False


async def _queue_health(queue_name: str, now: datetime) -> dict[str, Any]:
    settings = get_settings()
    depth = await get_queue_depth(queue_name)
    heartbeat = await get_worker_heartbeat(queue_name) if depth is not None else None
    heartbeat_age_s = (now - heartbeat).total_seconds() if heartbeat else None
    if is_inline_mode():
        # Inline mode runs work in-process; there is no worker to go stale.
        stale = False
    else:
        stale = heartbeat_age_s is None or heartbeat_age_s > settings.worker_heartbeat_stale_after_s
    return {
        "name": queue_name,
        "depth": depth,
        "redis": "ok" if depth is not None else "degraded",
        "worker_heartbeat_age_s": heartbeat_age_s,
        "worker_stale": stale,
    }


@router.get("/sync", response_model=Envelope[dict[str, Any]])
async def ops_sync(
    request: Request,
    window_s: int = Query(default=900, ge=60, le=86400),
    db: AsyncSession = Depends(get_db),
) -> dict:
    settings = get_settings()
    now = _utc_now()
    db_ok = await _check_db_health(db)
    queues = [
        await _queue_health(settings.sync_queue_name, now),
        await _queue_health(settings.analysis_queue_name, now),
    ]
    try:
        job_counts = await sync_jobs_repo.count_by_status(db) if db_ok else {}
    except SQLAlchemyError as exc:
        raise _db_error("Database error while counting sync jobs") from exc

    degraded = not db_ok or any(queue["redis"] != "ok" or queue["worker_stale"] for queue in queues)
    payload = {
        "status": "degraded" if degraded else "ok",
        "execution_mode": settings.execution_mode,
        "db": "ok" if db_ok else "degraded",
        "db_pool": pool_stats(),
        "queues": queues,
        "jobs_by_status": job_counts,
        "counters": counters_snapshot(),
        "stage_latency_ms": stage_latency(window_s),
        "external_latency_ms": external_latency_by_integration(window_s),
        "timestamp": now.isoformat(),
    }
    return envelope(request, payload)

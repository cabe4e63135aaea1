from __future__ import annotations

import asyncio
import logging

from arq.connections import RedisSettings

from entitysync.core.config import get_settings
from entitysync.core.logging import configure_logging
from entitysync.domain.types import SyncScope
from entitysync.services.analysis.orchestrator import AnalysisOrchestrator
from entitysync.services.registry import get_registry
from entitysync.services.sync.pipeline import AnalysisJobPayload
from entitysync.services.sync.queue import set_worker_heartbeat


logger = logging.getLogger(__name__)


async def run_analysis(ctx, payload: dict) -> dict:
    # Parse and validate payloads in the worker to enforce schema contracts.
    job_payload = AnalysisJobPayload.model_validate(payload)
    scope = SyncScope(
        tenant_id=job_payload.tenant_id,
        integration_id=job_payload.integration_id,
        connection_id=job_payload.connection_id,
    )
    logger.info(
        "analysis_started job_id=%s tenant_id=%s integration_id=%s sync_id=%s",
        ctx.get("job_id"),
        scope.tenant_id,
        scope.integration_id,
        job_payload.sync_id,
    )
    orchestrator = AnalysisOrchestrator(get_registry().get_analyzers)
    try:
        summary = await orchestrator.analyze(scope, sync_id=job_payload.sync_id)
    except Exception:
        logger.exception(
            "analysis_failed job_id=%s tenant_id=%s integration_id=%s sync_id=%s",
            ctx.get("job_id"),
            scope.tenant_id,
            scope.integration_id,
            job_payload.sync_id,
        )
        raise
    return summary.as_dict()


async def _heartbeat_loop() -> None:
    settings = get_settings()
    while True:
        try:
            await set_worker_heartbeat(settings.analysis_queue_name)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - a missed heartbeat shows up as stale
            logger.warning("worker_heartbeat_failed queue=%s", settings.analysis_queue_name, exc_info=exc)
        await asyncio.sleep(settings.worker_heartbeat_interval_s)


async def _startup(ctx) -> None:
    configure_logging()
    get_registry()
    ctx["heartbeat_task"] = asyncio.create_task(_heartbeat_loop())


async def _shutdown(ctx) -> None:
    task = ctx.get("heartbeat_task")
    if task:
        task.cancel()


class WorkerSettings:
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.analysis_queue_name
    # Analysis is not retried; the next cycle re-derives the same result.
    max_tries = 1
    max_jobs = settings.analysis_worker_concurrency
    functions = [run_analysis]
    on_startup = _startup
    on_shutdown = _shutdown

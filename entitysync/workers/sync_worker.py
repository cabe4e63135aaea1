from __future__ import annotations

import asyncio
import logging

from arq import Retry
from arq.connections import RedisSettings

from entitysync.core.config import get_settings
from entitysync.core.errors import WorkUnitNotFoundError
from entitysync.core.logging import configure_logging
from entitysync.services.registry import get_registry
from entitysync.services.sync.completion import get_completion_tracker
from entitysync.services.sync.pipeline import SyncPipeline
from entitysync.services.sync.queue import get_work_queue, set_worker_heartbeat
from entitysync.services.sync.reconciler import JobReconciler, run_reconciler_loop
from entitysync.services.sync.scheduler import JobScheduler, run_scheduler_loop


logger = logging.getLogger(__name__)


def retry_delay_s(job_try: int) -> float:
    # Exponential backoff: base, 2x base, 4x base, ...
    return get_settings().sync_retry_backoff_s * (2 ** max(0, job_try - 1))


async def run_sync_job(ctx, job_id: str) -> dict | None:
    settings = get_settings()
    attempt = ctx.get("job_try", 1)
    pipeline = SyncPipeline(get_registry(), get_completion_tracker(), get_work_queue())
    try:
        outcome = await pipeline.run(job_id, attempt=attempt)
    except WorkUnitNotFoundError:
        # The row is gone; nothing to retry.
        logger.warning("sync_job_missing job_id=%s", job_id)
        return None
    except Exception as exc:
        if attempt < settings.sync_max_tries:
            defer = retry_delay_s(attempt)
            logger.info("sync_job_retry job_id=%s attempt=%s defer_s=%s", job_id, attempt, defer)
            raise Retry(defer=defer) from exc
        logger.error("sync_job_retries_exhausted job_id=%s attempt=%s", job_id, attempt)
        raise
    return outcome.as_dict() if outcome else None


async def _heartbeat_loop() -> None:
    # Emit heartbeats on a fixed interval for ops health reporting.
    settings = get_settings()
    while True:
        try:
            await set_worker_heartbeat(settings.sync_queue_name)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - a missed heartbeat shows up as stale
            logger.warning("worker_heartbeat_failed queue=%s", settings.sync_queue_name, exc_info=exc)
        await asyncio.sleep(settings.worker_heartbeat_interval_s)


async def _startup(ctx) -> None:
    # Recover, seed, then start polling; recovery must precede the first poll.
    configure_logging()
    registry = get_registry()
    scheduler = JobScheduler(registry)
    reconciler = JobReconciler()
    await scheduler.recover_stuck_jobs()
    await reconciler.reconcile()
    ctx["background_tasks"] = [
        asyncio.create_task(run_scheduler_loop(scheduler)),
        asyncio.create_task(run_reconciler_loop(reconciler)),
        asyncio.create_task(_heartbeat_loop()),
    ]
    logger.info("sync_worker_started queue=%s", get_settings().sync_queue_name)


async def _shutdown(ctx) -> None:
    # Cancel background loops to avoid dangling coroutines on exit.
    for task in ctx.get("background_tasks", []):
        task.cancel()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.sync_queue_name
    max_tries = settings.sync_max_tries
    max_jobs = settings.sync_worker_concurrency
    functions = [run_sync_job]
    on_startup = _startup
    on_shutdown = _shutdown

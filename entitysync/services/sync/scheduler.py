from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from entitysync.core.config import get_settings
from entitysync.core.errors import ConfigurationError
from entitysync.core.integrations import get_integration
from entitysync.domain.models import SyncJob
from entitysync.domain.types import WorkUnit
from entitysync.persistence.db import SessionLocal
from entitysync.persistence.repos import integrations as integrations_repo
from entitysync.persistence.repos import sync_jobs as sync_jobs_repo
from entitysync.services.registry import IntegrationRegistry
from entitysync.services.sync.queue import SYNC_FUNCTION, WorkQueue, get_work_queue
from entitysync.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

# Manual triggers jump ahead of every scheduled unit.
MANUAL_PRIORITY = 0


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class JobScheduler:
    """Polls due work units and hands them to the durable queue.

    The unit id is the queue idempotency key and the pending -> queued
    conditional update is the status gate, so the same unit is never
    dispatched twice concurrently.
    """

    def __init__(
        self,
        registry: IntegrationRegistry,
        *,
        work_queue: WorkQueue | None = None,
        session_factory=SessionLocal,
        batch_size: int | None = None,
    ) -> None:
        settings = get_settings()
        self._registry = registry
        self._work_queue = work_queue
        self._session_factory = session_factory
        self._batch_size = batch_size or settings.scheduler_batch_size
        self._queue_name = settings.sync_queue_name
        self._polling = False

    @property
    def work_queue(self) -> WorkQueue:
        if self._work_queue is None:
            self._work_queue = get_work_queue()
        return self._work_queue

    async def poll(self) -> int:
        if self._polling:
            # Overlapping timer ticks skip instead of queueing up.
            logger.debug("scheduler_poll_skipped reason=in_progress")
            return 0
        self._polling = True
        try:
            return await self._poll()
        finally:
            self._polling = False

    async def _poll(self) -> int:
        async with self._session_factory() as session:
            jobs = await sync_jobs_repo.list_due_jobs(session, now=_utc_now(), limit=self._batch_size)
            units = [WorkUnit.from_row(job) for job in jobs]

        dispatched = 0
        for unit in units:
            if not self._dispatchable(unit):
                continue
            async with self._session_factory() as session:
                claimed = await sync_jobs_repo.transition_status(
                    session, unit.id, from_statuses=("pending",), to_status="queued"
                )
                await session.commit()
            if not claimed:
                continue
            try:
                accepted = await self.work_queue.enqueue(
                    SYNC_FUNCTION, unit.id, job_id=unit.id, queue_name=self._queue_name
                )
            except Exception as exc:  # noqa: BLE001 - unit goes back to pending for the next tick
                logger.warning("sync_job_enqueue_failed job_id=%s", unit.id, exc_info=exc)
                await self._release(unit.id)
                increment_counter("scheduler.enqueue_failed")
                continue
            if not accepted:
                # The queue still holds this id (in flight or a kept result). Release the claim so
                # the unit is offered again once that entry clears; a running worker moves it on.
                logger.info("sync_job_already_enqueued job_id=%s", unit.id)
                await self._release(unit.id)
                increment_counter("scheduler.enqueue_duplicate")
                continue
            dispatched += 1
            logger.info(
                "sync_job_dispatched job_id=%s integration_id=%s entity_type=%s site_id=%s queue=%s",
                unit.id,
                unit.integration_id,
                unit.entity_type,
                unit.site_id,
                self._queue_name,
            )
        if dispatched:
            increment_counter("scheduler.dispatched", dispatched)
        return dispatched

    async def _release(self, job_id: str) -> None:
        async with self._session_factory() as session:
            await sync_jobs_repo.transition_status(session, job_id, from_statuses=("queued",), to_status="pending")
            await session.commit()

    def _dispatchable(self, unit: WorkUnit) -> bool:
        integration = get_integration(unit.integration_id)
        if integration is None or integration.type_config(unit.entity_type) is None:
            logger.warning(
                "sync_job_unknown_kind job_id=%s integration_id=%s entity_type=%s",
                unit.id,
                unit.integration_id,
                unit.entity_type,
            )
            return False
        if not self._registry.has_adapter(unit.integration_id, unit.entity_type):
            # Left pending until an adapter for the kind is registered.
            logger.warning(
                "sync_job_missing_adapter job_id=%s integration_id=%s entity_type=%s",
                unit.id,
                unit.integration_id,
                unit.entity_type,
            )
            return False
        return True

    async def recover_stuck_jobs(self) -> int:
        # Sole crash-recovery path: runs once before the first poll.
        async with self._session_factory() as session:
            recovered = await sync_jobs_repo.reset_stuck_jobs(session)
            await session.commit()
        if recovered:
            logger.warning("sync_jobs_recovered count=%s", recovered)
        return recovered


async def schedule_next_sync(session: AsyncSession, unit: WorkUnit) -> SyncJob | None:
    """Re-arm a recurring kind for its next cycle after a successful run."""
    integration = get_integration(unit.integration_id)
    type_config = integration.type_config(unit.entity_type) if integration else None
    if type_config is None or type_config.fan_out:
        # Fan-out kinds are recreated by their parent's fan-out step.
        return None
    existing = await sync_jobs_repo.find_active_job(
        session,
        tenant_id=unit.tenant_id,
        integration_id=unit.integration_id,
        entity_type=unit.entity_type,
        connection_id=unit.connection_id,
    )
    if existing is not None:
        return None
    job = await sync_jobs_repo.create_sync_job(
        session,
        tenant_id=unit.tenant_id,
        integration_id=unit.integration_id,
        entity_type=unit.entity_type,
        priority=type_config.priority,
        trigger="scheduled",
        connection_id=unit.connection_id,
        scheduled_for=_utc_now() + timedelta(minutes=type_config.rate_minutes),
    )
    await session.commit()
    logger.info(
        "sync_job_rearmed job_id=%s integration_id=%s entity_type=%s in_minutes=%s",
        job.id,
        unit.integration_id,
        unit.entity_type,
        type_config.rate_minutes,
    )
    return job


async def trigger_manual_sync(
    session: AsyncSession,
    *,
    tenant_id: str,
    integration_id: str,
    entity_type: str,
    connection_id: str | None = None,
    site_id: str | None = None,
) -> SyncJob:
    # Insert a high-priority manual unit for immediate pickup.
    integration = get_integration(integration_id)
    if integration is None or integration.type_config(entity_type) is None:
        raise ConfigurationError(f"{integration_id} does not sync {entity_type}")
    tenant_integration = await integrations_repo.get_tenant_integration(session, tenant_id, integration_id)
    if tenant_integration is None or not tenant_integration.enabled:
        raise ConfigurationError(f"{integration_id} is not enabled for tenant {tenant_id}")
    job = await sync_jobs_repo.create_sync_job(
        session,
        tenant_id=tenant_id,
        integration_id=integration_id,
        entity_type=entity_type,
        priority=MANUAL_PRIORITY,
        trigger="manual",
        connection_id=connection_id,
        site_id=site_id,
    )
    await session.commit()
    logger.info(
        "sync_job_manual_trigger job_id=%s tenant_id=%s integration_id=%s entity_type=%s",
        job.id,
        tenant_id,
        integration_id,
        entity_type,
    )
    return job


async def run_scheduler_loop(scheduler: JobScheduler, *, interval_s: float | None = None) -> None:
    # Light periodic polling; errors are logged and the loop keeps going.
    interval = interval_s or get_settings().scheduler_poll_interval_s
    while True:
        try:
            await scheduler.poll()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("scheduler_poll_failed")
        await asyncio.sleep(interval)

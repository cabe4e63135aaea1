from __future__ import annotations

import asyncio
import logging

from entitysync.core.config import get_settings
from entitysync.core.integrations import get_integration
from entitysync.domain.models import new_id
from entitysync.persistence.db import SessionLocal
from entitysync.persistence.repos import integrations as integrations_repo
from entitysync.persistence.repos import sync_jobs as sync_jobs_repo
from entitysync.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


class JobReconciler:
    """Self-healing pass that seeds missing recurring work units.

    For every enabled tenant integration and each active connection (or once
    without a connection when it has none), every non-fan-out kind gets a
    pending unit unless a non-terminal one already exists.
    """

    def __init__(self, *, session_factory=SessionLocal) -> None:
        self._session_factory = session_factory

    async def reconcile(self) -> int:
        created = 0
        async with self._session_factory() as session:
            for tenant_integration in await integrations_repo.list_enabled_integrations(session):
                integration = get_integration(tenant_integration.integration_id)
                if integration is None:
                    logger.warning(
                        "job_reconcile_unknown_integration tenant_id=%s integration_id=%s",
                        tenant_integration.tenant_id,
                        tenant_integration.integration_id,
                    )
                    continue
                if not integration.scheduled_types:
                    continue
                connections = await integrations_repo.list_active_connections(
                    session, tenant_integration.tenant_id, integration.id
                )
                connection_ids: list[str | None] = [connection.id for connection in connections] or [None]
                for connection_id in connection_ids:
                    # Units seeded together for one scope share a cycle.
                    sync_id = new_id()
                    for type_config in integration.scheduled_types:
                        existing = await sync_jobs_repo.find_active_job(
                            session,
                            tenant_id=tenant_integration.tenant_id,
                            integration_id=integration.id,
                            entity_type=type_config.type,
                            connection_id=connection_id,
                        )
                        if existing is not None:
                            continue
                        await sync_jobs_repo.create_sync_job(
                            session,
                            tenant_id=tenant_integration.tenant_id,
                            integration_id=integration.id,
                            entity_type=type_config.type,
                            priority=type_config.priority,
                            connection_id=connection_id,
                            sync_id=sync_id,
                        )
                        created += 1
            await session.commit()
        if created:
            increment_counter("reconciler.created", created)
            logger.info("job_reconcile_created count=%s", created)
        return created


async def run_reconciler_loop(reconciler: JobReconciler, *, interval_s: float | None = None) -> None:
    # First pass happens at startup; the loop sleeps first.
    interval = interval_s or get_settings().reconciler_interval_s
    while True:
        await asyncio.sleep(interval)
        try:
            await reconciler.reconcile()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("job_reconcile_failed")

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from entitysync.core.errors import ConfigurationError
from entitysync.core.integrations import get_integration
from entitysync.domain.models import Entity
from entitysync.domain.types import WorkUnit
from entitysync.persistence.repos import entities as entities_repo
from entitysync.persistence.repos import integrations as integrations_repo
from entitysync.persistence.repos import sync_jobs as sync_jobs_repo
from entitysync.services.sync.completion import CompletionTracker
from entitysync.services.sync.metrics import PipelineTracker


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScopeProcessed:
    # Emitted once a unit's entities and relationships are reconciled.
    unit: WorkUnit
    entities: list[Entity]


@dataclass
class FanOutResult:
    units_created: int = 0
    units_adopted: int = 0
    expected: int | None = None
    mappings_removed: int = 0
    # The expected-count declaration itself can complete the cycle.
    all_done: bool = False


class FanOutPolicy(Protocol):
    async def handle(
        self,
        session: AsyncSession,
        event: ScopeProcessed,
        *,
        completion: CompletionTracker,
        tracker: PipelineTracker,
    ) -> FanOutResult: ...


class SiteFanOutPolicy:
    """After a parent-kind sync, create one child unit per mapped site.

    Mappings whose external id no longer matches a parent entity are removed
    first. The number of mapped sites is then declared to the completion
    tracker as the child kind's expected count.
    """

    def __init__(self, parent_kind: str = "company", child_kind: str = "endpoint") -> None:
        self.parent_kind = parent_kind
        self.child_kind = child_kind

    async def handle(
        self,
        session: AsyncSession,
        event: ScopeProcessed,
        *,
        completion: CompletionTracker,
        tracker: PipelineTracker,
    ) -> FanOutResult:
        unit = event.unit
        result = FanOutResult()
        if unit.entity_type != self.parent_kind:
            return result
        integration = get_integration(unit.integration_id)
        child_config = integration.type_config(self.child_kind) if integration else None
        if child_config is None:
            raise ConfigurationError(f"{unit.integration_id} has no {self.child_kind} kind to fan out")

        scope = unit.scope
        parents = await entities_repo.list_scope_entities(
            session, scope.for_type(self.parent_kind).without_site()
        )
        known = {entity.external_id for entity in parents}
        mappings = await integrations_repo.list_site_mappings(
            session,
            tenant_id=unit.tenant_id,
            integration_id=unit.integration_id,
            connection_id=unit.connection_id,
        )
        tracker.increment("db_queries", 2)
        stale = [mapping.id for mapping in mappings if mapping.external_id not in known]
        if stale:
            result.mappings_removed = await integrations_repo.delete_site_mappings(session, stale)
            await session.commit()
            logger.info(
                "site_mappings_removed tenant_id=%s integration_id=%s removed=%s",
                unit.tenant_id,
                unit.integration_id,
                result.mappings_removed,
            )

        site_ids = sorted({mapping.site_id for mapping in mappings if mapping.external_id in known})
        for site_id in site_ids:
            existing = await sync_jobs_repo.find_site_child(
                session,
                tenant_id=unit.tenant_id,
                integration_id=unit.integration_id,
                entity_type=self.child_kind,
                connection_id=unit.connection_id,
                site_id=site_id,
                sync_id=unit.sync_id,
            )
            tracker.increment("db_queries")
            if existing is not None:
                if existing.sync_id != unit.sync_id and existing.status in ("pending", "queued"):
                    # A child still waiting from an older cycle joins this one.
                    existing.sync_id = unit.sync_id
                    result.units_adopted += 1
                continue
            await sync_jobs_repo.create_sync_job(
                session,
                tenant_id=unit.tenant_id,
                integration_id=unit.integration_id,
                entity_type=self.child_kind,
                priority=child_config.priority,
                trigger=unit.trigger,
                site_id=site_id,
                connection_id=unit.connection_id,
                sync_id=unit.sync_id,
            )
            result.units_created += 1
        if result.units_created or result.units_adopted:
            await session.commit()
            tracker.increment("db_upserts", result.units_created)

        result.expected = len(site_ids)
        result.all_done = await completion.set_expected_count(scope, self.child_kind, result.expected)
        logger.info(
            "fan_out_completed tenant_id=%s integration_id=%s sync_id=%s sites=%s created=%s",
            unit.tenant_id,
            unit.integration_id,
            unit.sync_id,
            result.expected,
            result.units_created,
        )
        return result

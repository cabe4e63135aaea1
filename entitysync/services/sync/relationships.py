from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from entitysync.core.config import get_settings
from entitysync.domain.models import Entity, EntityRelationship, new_id
from entitysync.domain.types import DesiredEdge, ReconcileCounts, SyncScope
from entitysync.persistence.db import chunked, commit_chunk
from entitysync.persistence.repos import entities as entities_repo
from entitysync.persistence.repos import relationships as relationships_repo
from entitysync.services.sync.metrics import PipelineTracker


logger = logging.getLogger(__name__)

# Parent kind every site-scoped linking pass can attach children to.
PARENT_ENTITY_TYPE = "company"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def load_linking_entities(session: AsyncSession, scope: SyncScope) -> list[Entity]:
    # Site-scoped units link their own site's entities against every parent company.
    base = scope.for_type(None)
    if scope.site_id is None:
        return await entities_repo.list_scope_entities(session, base.without_site())
    site_entities = await entities_repo.list_scope_entities(session, base, include_site=True)
    parents = await entities_repo.list_scope_entities(
        session, base.without_site(), entity_type=PARENT_ENTITY_TYPE
    )
    seen = {entity.id for entity in site_entities}
    return site_entities + [entity for entity in parents if entity.id not in seen]


class RelationshipReconciler:
    """Diff desired edges against stored edges keyed on (parent, child, type)."""

    def __init__(self, session: AsyncSession, *, chunk_size: int | None = None) -> None:
        self._session = session
        self._chunk_size = chunk_size or get_settings().write_chunk_size

    async def reconcile(
        self,
        desired: list[DesiredEdge],
        scope: SyncScope,
        tracker: PipelineTracker,
        *,
        sync_id: str | None = None,
    ) -> ReconcileCounts:
        counts = ReconcileCounts()
        # Duplicate desired keys collapse; the last edge wins.
        desired_by_key: dict[tuple[str, str, str], DesiredEdge] = {}
        for edge in desired:
            desired_by_key[edge.key] = edge

        existing = await relationships_repo.list_scope_relationships(self._session, scope)
        tracker.increment("db_queries")
        existing_by_key = {
            (row.parent_entity_id, row.child_entity_id, row.relationship_type): row for row in existing
        }

        now = _utc_now()
        # Edges stored under another site follow their child when it moves here.
        rehomed: list[EntityRelationship] = []
        missing = [key for key in desired_by_key if key not in existing_by_key]
        if scope.site_id is not None and missing:
            for batch in chunked(sorted({key[1] for key in missing}), self._chunk_size):
                for row in await relationships_repo.list_by_child_ids(self._session, batch):
                    key = (row.parent_entity_id, row.child_entity_id, row.relationship_type)
                    if key in desired_by_key and key not in existing_by_key:
                        rehomed.append(row)
                        existing_by_key[key] = row
                tracker.increment("db_queries")
        for batch in chunked(rehomed, self._chunk_size):
            async with commit_chunk(self._session, "relationship rehome"):
                for row in batch:
                    row.site_id = scope.site_id
                    row.last_seen_at = now
                    row.sync_id = sync_id
            tracker.increment("db_upserts", len(batch))
        rehomed_ids = {row.id for row in rehomed}

        to_create = [
            EntityRelationship(
                id=new_id(),
                tenant_id=scope.tenant_id,
                integration_id=scope.integration_id,
                parent_entity_id=edge.parent_entity_id,
                child_entity_id=edge.child_entity_id,
                relationship_type=edge.relationship_type,
                metadata_json=edge.metadata,
                site_id=edge.site_id or scope.site_id,
                connection_id=scope.connection_id,
                last_seen_at=now,
                sync_id=sync_id,
            )
            for key, edge in desired_by_key.items()
            if key not in existing_by_key
        ]
        # A metadata-only change keeps the key, so it is a touch, not an update.
        to_touch = [
            row.id
            for key, row in existing_by_key.items()
            if key in desired_by_key and row.id not in rehomed_ids
        ]
        to_delete = [row.id for key, row in existing_by_key.items() if key not in desired_by_key]

        for batch in chunked(to_create, self._chunk_size):
            async with commit_chunk(self._session, "relationship create"):
                self._session.add_all(batch)
            tracker.increment("db_upserts", len(batch))
        for batch in chunked(to_touch, self._chunk_size):
            async with commit_chunk(self._session, "relationship touch"):
                await relationships_repo.touch_relationships(
                    self._session, batch, seen_at=now, sync_id=sync_id
                )
            tracker.increment("db_queries")
        for batch in chunked(to_delete, self._chunk_size):
            async with commit_chunk(self._session, "relationship delete"):
                await relationships_repo.delete_relationships(self._session, batch)
            tracker.increment("db_queries")

        counts.created = len(to_create)
        counts.updated = len(rehomed)
        counts.unchanged = len(to_touch)
        counts.deleted = len(to_delete)
        logger.info(
            "relationships_reconciled tenant_id=%s integration_id=%s site_id=%s created=%s unchanged=%s deleted=%s",
            scope.tenant_id,
            scope.integration_id,
            scope.site_id,
            counts.created,
            counts.unchanged,
            counts.deleted,
        )
        return counts

from __future__ import annotations

import hashlib
import json
import logging
from collections import Counter
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from entitysync.core.config import get_settings
from entitysync.core.errors import DuplicateExternalIdError
from entitysync.domain.models import Entity, new_id
from entitysync.domain.types import RawRecord, ReconcileCounts, SyncScope
from entitysync.persistence.db import chunked, commit_chunk
from entitysync.persistence.repos import entities as entities_repo
from entitysync.services.sync.metrics import PipelineTracker


logger = logging.getLogger(__name__)

# Payload keys tried in order when an adapter does not supply a display name.
DISPLAY_NAME_KEYS = (
    "displayName",
    "display_name",
    "name",
    "Name",
    "companyName",
    "hostname",
    "userPrincipalName",
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def compute_entity_hash(
    payload: dict[str, Any],
    display_name: str | None,
    site_id: str | None,
    connection_id: str | None,
) -> str:
    # Key-sorted compact JSON keeps the digest stable across dict ordering.
    canonical = json.dumps(
        {
            "payload": payload,
            "display_name": display_name,
            "site_id": site_id,
            "connection_id": connection_id,
        },
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def resolve_display_name(record: RawRecord) -> str | None:
    if record.display_name:
        return record.display_name
    for key in DISPLAY_NAME_KEYS:
        value = record.payload.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return None


class EntityReconciler:
    """Hash-based create / update / touch of raw records, plus stale pruning.

    Writes are chunked and committed per chunk. A failed chunk aborts the whole
    stage with BatchWriteError; earlier chunks stay applied and the next pass
    converges because every bucket is recomputed from the stored hashes.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        chunk_size: int | None = None,
        prune_page_size: int | None = None,
    ) -> None:
        settings = get_settings()
        self._session = session
        self._chunk_size = chunk_size or settings.write_chunk_size
        self._prune_page_size = prune_page_size or settings.prune_page_size
        self.last_counts = ReconcileCounts()

    async def process(
        self,
        records: list[RawRecord],
        scope: SyncScope,
        tracker: PipelineTracker,
        *,
        sync_id: str | None = None,
    ) -> list[Entity]:
        if scope.entity_type is None:
            raise ValueError("Entity reconciliation requires an entity type")
        self._reject_duplicates(records, scope.entity_type)
        counts = ReconcileCounts()
        self.last_counts = counts
        if not records:
            return []

        existing: dict[str, Entity] = {}
        for batch in chunked([record.external_id for record in records], self._chunk_size):
            rows = await entities_repo.get_by_external_ids(self._session, scope, batch)
            tracker.increment("db_queries")
            existing.update({row.external_id: row for row in rows})

        now = _utc_now()
        to_create: list[Entity] = []
        to_update: list[tuple[Entity, RawRecord, str | None, str | None, str]] = []
        to_touch: list[Entity] = []
        for record in records:
            display_name = resolve_display_name(record)
            site_id = record.site_id or scope.site_id
            data_hash = compute_entity_hash(record.payload, display_name, site_id, scope.connection_id)
            row = existing.get(record.external_id)
            if row is None:
                to_create.append(
                    Entity(
                        id=new_id(),
                        tenant_id=scope.tenant_id,
                        integration_id=scope.integration_id,
                        entity_type=scope.entity_type,
                        external_id=record.external_id,
                        display_name=display_name,
                        raw_data=record.payload,
                        data_hash=data_hash,
                        state="normal",
                        last_seen_at=now,
                        sync_id=sync_id,
                        site_id=site_id,
                        connection_id=scope.connection_id,
                    )
                )
            elif row.data_hash != data_hash:
                to_update.append((row, record, display_name, site_id, data_hash))
            else:
                to_touch.append(row)

        for batch in chunked(to_create, self._chunk_size):
            async with commit_chunk(self._session, f"entity create {scope.entity_type}"):
                self._session.add_all(batch)
            tracker.increment("db_upserts", len(batch))
        counts.created = len(to_create)

        for batch in chunked(to_update, self._chunk_size):
            async with commit_chunk(self._session, f"entity update {scope.entity_type}"):
                for row, record, display_name, site_id, data_hash in batch:
                    # Moving between sites is an in-place update; the surrogate id survives.
                    row.raw_data = record.payload
                    row.display_name = display_name
                    row.data_hash = data_hash
                    row.site_id = site_id
                    row.last_seen_at = now
                    row.sync_id = sync_id
            tracker.increment("db_upserts", len(batch))
        counts.updated = len(to_update)

        for batch in chunked(to_touch, self._chunk_size):
            async with commit_chunk(self._session, f"entity touch {scope.entity_type}"):
                await entities_repo.touch_entities(
                    self._session, [row.id for row in batch], seen_at=now, sync_id=sync_id
                )
            tracker.increment("db_queries")
        counts.unchanged = len(to_touch)

        tracker.increment("entities_created", counts.created)
        tracker.increment("entities_updated", counts.updated)
        tracker.increment("entities_unchanged", counts.unchanged)
        logger.info(
            "entities_reconciled tenant_id=%s integration_id=%s entity_type=%s created=%s updated=%s unchanged=%s",
            scope.tenant_id,
            scope.integration_id,
            scope.entity_type,
            counts.created,
            counts.updated,
            counts.unchanged,
        )
        return to_create + [item[0] for item in to_update] + to_touch

    async def prune_stale_entities(
        self,
        survivors: list[Entity] | set[str],
        scope: SyncScope,
        tracker: PipelineTracker,
    ) -> int:
        """Delete stored entities in the exact scope that were not seen this pass.

        Only call after a fully successful fetch and process; a partial fetch
        would otherwise delete entities the adapter simply failed to return.
        """
        if scope.entity_type is None:
            raise ValueError("Pruning requires an entity type")
        if isinstance(survivors, set):
            surviving_ids = survivors
        else:
            surviving_ids = {entity.external_id for entity in survivors}

        stale_ids = [
            entity_id
            for entity_id, external_id in await self._scope_keys(scope, tracker, include_site=True)
            if external_id not in surviving_ids
        ]
        return await self._delete(stale_ids, scope, tracker)

    async def prune_unseen_entities(self, scope: SyncScope, sync_id: str, tracker: PipelineTracker) -> int:
        """Delete entities of a fan-out kind that no unit of cycle `sync_id` wrote.

        Runs once at fan-in over the whole (tenant, integration, connection)
        scope. A per-site prune cannot tell a moved entity from a removed one
        until every site of the cycle has synced.
        """
        if scope.entity_type is None:
            raise ValueError("Pruning requires an entity type")
        keys = await self._scope_keys(scope.without_site(), tracker, include_site=False, not_seen_in=sync_id)
        return await self._delete([entity_id for entity_id, _external_id in keys], scope.without_site(), tracker)

    async def _scope_keys(
        self,
        scope: SyncScope,
        tracker: PipelineTracker,
        *,
        include_site: bool,
        not_seen_in: str | None = None,
    ) -> list[tuple[str, str]]:
        keys: list[tuple[str, str]] = []
        after_id: str | None = None
        while True:
            page = await entities_repo.list_entity_keys_page(
                self._session,
                scope,
                after_id=after_id,
                limit=self._prune_page_size,
                include_site=include_site,
                not_seen_in=not_seen_in,
            )
            tracker.increment("db_queries")
            if not page:
                break
            keys.extend(page)
            after_id = page[-1][0]
            if len(page) < self._prune_page_size:
                break
        return keys

    async def _delete(self, stale_ids: list[str], scope: SyncScope, tracker: PipelineTracker) -> int:
        deleted = 0
        for batch in chunked(stale_ids, self._chunk_size):
            async with commit_chunk(self._session, f"entity delete {scope.entity_type}"):
                deleted += await entities_repo.delete_entities(self._session, batch)
            tracker.increment("db_queries")
        self.last_counts.deleted = deleted
        tracker.increment("entities_deleted", deleted)
        if deleted:
            logger.info(
                "entities_pruned tenant_id=%s integration_id=%s entity_type=%s site_id=%s deleted=%s",
                scope.tenant_id,
                scope.integration_id,
                scope.entity_type,
                scope.site_id,
                deleted,
            )
        return deleted

    def _reject_duplicates(self, records: list[RawRecord], entity_type: str) -> None:
        # Silently picking one duplicate would corrupt the entity graph.
        counts = Counter(record.external_id for record in records)
        duplicates = sorted(external_id for external_id, count in counts.items() if count > 1)
        if duplicates:
            raise DuplicateExternalIdError(entity_type, duplicates)


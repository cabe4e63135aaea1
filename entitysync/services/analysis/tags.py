from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from entitysync.core.config import get_settings
from entitysync.domain.models import EntityTag, new_id
from entitysync.domain.types import TagAssignment
from entitysync.persistence.db import chunked, commit_chunk
from entitysync.persistence.repos import tags as tags_repo
from entitysync.services.sync.metrics import PipelineTracker


logger = logging.getLogger(__name__)


class TagApplier:
    """Per-source replace set: delete a source's tags, then insert the new ones."""

    def __init__(self, session: AsyncSession, *, chunk_size: int | None = None) -> None:
        self._session = session
        self._chunk_size = chunk_size or get_settings().write_chunk_size

    async def apply_tags(
        self,
        tags_by_entity: dict[str, list[TagAssignment]],
        *,
        tenant_id: str,
        entity_ids: list[str],
        sources: list[str],
        tracker: PipelineTracker | None = None,
    ) -> int:
        rows: list[EntityTag] = []
        seen: set[tuple[str, str, str]] = set()
        for entity_id, assignments in tags_by_entity.items():
            for assignment in assignments:
                tag = (assignment.tag or "").strip()
                if not tag:
                    continue
                key = (entity_id, tag, assignment.source)
                if key in seen:
                    continue
                seen.add(key)
                rows.append(
                    EntityTag(
                        id=new_id(),
                        entity_id=entity_id,
                        tenant_id=tenant_id,
                        tag=tag,
                        category=assignment.category,
                        source=assignment.source,
                    )
                )

        # Emitted sources are replaced too, even if no analyzer declared them.
        all_sources = sorted(set(sources) | {row.source for row in rows})
        target_ids = sorted(set(entity_ids) | set(tags_by_entity))
        for batch in chunked(target_ids, self._chunk_size):
            async with commit_chunk(self._session, "tag delete"):
                await tags_repo.delete_tags_by_source(self._session, batch, all_sources)
            if tracker is not None:
                tracker.increment("db_queries")
        for batch in chunked(rows, self._chunk_size):
            async with commit_chunk(self._session, "tag insert"):
                self._session.add_all(batch)
            if tracker is not None:
                tracker.increment("db_upserts", len(batch))

        logger.info(
            "tags_applied tenant_id=%s entities=%s sources=%s inserted=%s",
            tenant_id,
            len(target_ids),
            ",".join(all_sources),
            len(rows),
        )
        return len(rows)

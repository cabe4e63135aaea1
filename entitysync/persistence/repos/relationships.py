from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from entitysync.domain.models import EntityRelationship
from entitysync.domain.types import SyncScope
from entitysync.persistence.db import nullable_eq


async def list_scope_relationships(
    session: AsyncSession, scope: SyncScope, *, include_site: bool = True
) -> list[EntityRelationship]:
    # Site-scoped units only ever see their own site's edges.
    stmt = select(EntityRelationship).where(
        EntityRelationship.tenant_id == scope.tenant_id,
        EntityRelationship.integration_id == scope.integration_id,
        nullable_eq(EntityRelationship.connection_id, scope.connection_id),
    )
    if include_site and scope.site_id is not None:
        stmt = stmt.where(EntityRelationship.site_id == scope.site_id)
    result = await session.execute(stmt.order_by(EntityRelationship.id))
    return list(result.scalars().all())


async def touch_relationships(
    session: AsyncSession, relationship_ids: list[str], *, seen_at: datetime, sync_id: str | None
) -> int:
    if not relationship_ids:
        return 0
    result = await session.execute(
        update(EntityRelationship)
        .where(EntityRelationship.id.in_(relationship_ids))
        .values(last_seen_at=seen_at, sync_id=sync_id)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def delete_relationships(session: AsyncSession, relationship_ids: list[str]) -> int:
    if not relationship_ids:
        return 0
    result = await session.execute(
        delete(EntityRelationship)
        .where(EntityRelationship.id.in_(relationship_ids))
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def list_by_child_ids(
    session: AsyncSession, child_entity_ids: list[str]
) -> list[EntityRelationship]:
    if not child_entity_ids:
        return []
    result = await session.execute(
        select(EntityRelationship).where(EntityRelationship.child_entity_id.in_(child_entity_ids))
    )
    return list(result.scalars().all())

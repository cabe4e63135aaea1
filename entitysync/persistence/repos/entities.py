from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from entitysync.domain.models import Entity, EntityRelationship, EntityTag
from entitysync.domain.types import SyncScope
from entitysync.persistence.db import nullable_eq


def _scope_filters(scope: SyncScope, *, include_site: bool) -> list:
    filters = [
        Entity.tenant_id == scope.tenant_id,
        Entity.integration_id == scope.integration_id,
        nullable_eq(Entity.connection_id, scope.connection_id),
    ]
    if scope.entity_type is not None:
        filters.append(Entity.entity_type == scope.entity_type)
    if include_site and scope.site_id is not None:
        filters.append(Entity.site_id == scope.site_id)
    return filters


async def get_by_external_ids(
    session: AsyncSession, scope: SyncScope, external_ids: list[str]
) -> list[Entity]:
    # Identity lookup ignores the site so a moved entity keeps its surrogate id.
    if not external_ids:
        return []
    result = await session.execute(
        select(Entity).where(
            *_scope_filters(scope, include_site=False),
            Entity.external_id.in_(external_ids),
        )
    )
    return list(result.scalars().all())


async def touch_entities(
    session: AsyncSession, entity_ids: list[str], *, seen_at: datetime, sync_id: str | None
) -> int:
    if not entity_ids:
        return 0
    result = await session.execute(
        update(Entity)
        .where(Entity.id.in_(entity_ids))
        .values(last_seen_at=seen_at, sync_id=sync_id)
    )
    return int(result.rowcount or 0)


async def list_entity_keys_page(
    session: AsyncSession,
    scope: SyncScope,
    *,
    after_id: str | None,
    limit: int,
    include_site: bool = True,
    not_seen_in: str | None = None,
) -> list[tuple[str, str]]:
    # Keyset pagination over (id, external_id); `not_seen_in` keeps rows last written by another cycle.
    stmt = select(Entity.id, Entity.external_id).where(*_scope_filters(scope, include_site=include_site))
    if not_seen_in is not None:
        stmt = stmt.where(or_(Entity.sync_id.is_(None), Entity.sync_id != not_seen_in))
    if after_id is not None:
        stmt = stmt.where(Entity.id > after_id)
    result = await session.execute(stmt.order_by(Entity.id.asc()).limit(limit))
    return [(row[0], row[1]) for row in result.all()]


async def delete_entities(session: AsyncSession, entity_ids: list[str]) -> int:
    # Edges and tags go first; SQLite test databases do not enforce cascades.
    if not entity_ids:
        return 0
    await session.execute(
        delete(EntityRelationship)
        .where(
            or_(
                EntityRelationship.parent_entity_id.in_(entity_ids),
                EntityRelationship.child_entity_id.in_(entity_ids),
            )
        )
        .execution_options(synchronize_session=False)
    )
    await session.execute(
        delete(EntityTag)
        .where(EntityTag.entity_id.in_(entity_ids))
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(
        delete(Entity).where(Entity.id.in_(entity_ids)).execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def list_scope_entities(
    session: AsyncSession,
    scope: SyncScope,
    *,
    include_site: bool = False,
    entity_type: str | None = None,
) -> list[Entity]:
    stmt = select(Entity).where(*_scope_filters(scope, include_site=include_site))
    if entity_type is not None:
        stmt = stmt.where(Entity.entity_type == entity_type)
    result = await session.execute(stmt.order_by(Entity.entity_type, Entity.external_id))
    return list(result.scalars().all())


async def update_states(session: AsyncSession, entity_ids: list[str], state: str) -> int:
    if not entity_ids:
        return 0
    result = await session.execute(
        update(Entity)
        .where(Entity.id.in_(entity_ids))
        .values(state=state)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)

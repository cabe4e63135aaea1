from __future__ import annotations

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from entitysync.domain.models import EntityTag


async def delete_tags_by_source(
    session: AsyncSession, entity_ids: list[str], sources: list[str]
) -> int:
    if not entity_ids or not sources:
        return 0
    result = await session.execute(
        delete(EntityTag)
        .where(EntityTag.entity_id.in_(entity_ids), EntityTag.source.in_(sources))
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def list_entity_tags(session: AsyncSession, entity_id: str) -> list[EntityTag]:
    result = await session.execute(
        select(EntityTag).where(EntityTag.entity_id == entity_id).order_by(EntityTag.source, EntityTag.tag)
    )
    return list(result.scalars().all())

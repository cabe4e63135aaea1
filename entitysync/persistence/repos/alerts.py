from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from entitysync.domain.models import EntityAlert
from entitysync.persistence.db import nullable_eq


async def list_scope_alerts(
    session: AsyncSession,
    *,
    tenant_id: str,
    integration_id: str,
    connection_id: str | None,
    alert_types: list[str] | None = None,
) -> list[EntityAlert]:
    # Restricting by alert type keeps unrelated rule modules' alerts untouched.
    stmt = select(EntityAlert).where(
        EntityAlert.tenant_id == tenant_id,
        EntityAlert.integration_id == integration_id,
        nullable_eq(EntityAlert.connection_id, connection_id),
    )
    if alert_types is not None:
        if not alert_types:
            return []
        stmt = stmt.where(EntityAlert.alert_type.in_(alert_types))
    result = await session.execute(stmt.order_by(EntityAlert.id))
    return list(result.scalars().all())


async def get_alert(session: AsyncSession, alert_id: str) -> EntityAlert | None:
    result = await session.execute(select(EntityAlert).where(EntityAlert.id == alert_id))
    return result.scalar_one_or_none()


async def list_alerts(
    session: AsyncSession,
    *,
    tenant_id: str,
    status: str | None = None,
    limit: int = 100,
) -> list[EntityAlert]:
    stmt = select(EntityAlert).where(EntityAlert.tenant_id == tenant_id)
    if status:
        stmt = stmt.where(EntityAlert.status == status)
    result = await session.execute(stmt.order_by(EntityAlert.id).limit(limit))
    return list(result.scalars().all())

from __future__ import annotations

from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from entitysync.domain.models import IntegrationConnection, SiteMapping, TenantIntegration, new_id
from entitysync.persistence.db import nullable_eq


async def list_enabled_integrations(session: AsyncSession) -> list[TenantIntegration]:
    result = await session.execute(
        select(TenantIntegration)
        .where(TenantIntegration.enabled.is_(True))
        .order_by(TenantIntegration.tenant_id, TenantIntegration.integration_id)
    )
    return list(result.scalars().all())


async def get_tenant_integration(
    session: AsyncSession, tenant_id: str, integration_id: str
) -> TenantIntegration | None:
    result = await session.execute(
        select(TenantIntegration).where(
            TenantIntegration.tenant_id == tenant_id,
            TenantIntegration.integration_id == integration_id,
        )
    )
    return result.scalar_one_or_none()


async def upsert_tenant_integration(
    session: AsyncSession,
    *,
    tenant_id: str,
    integration_id: str,
    enabled: bool = True,
    config_json: dict[str, Any] | None = None,
) -> TenantIntegration:
    row = await get_tenant_integration(session, tenant_id, integration_id)
    if row is None:
        row = TenantIntegration(
            id=new_id(),
            tenant_id=tenant_id,
            integration_id=integration_id,
            enabled=enabled,
            config_json=config_json,
        )
        session.add(row)
        return row
    row.enabled = enabled
    if config_json is not None:
        row.config_json = config_json
    return row


async def list_active_connections(
    session: AsyncSession, tenant_id: str, integration_id: str
) -> list[IntegrationConnection]:
    result = await session.execute(
        select(IntegrationConnection)
        .where(
            IntegrationConnection.tenant_id == tenant_id,
            IntegrationConnection.integration_id == integration_id,
            IntegrationConnection.status == "active",
        )
        .order_by(IntegrationConnection.id)
    )
    return list(result.scalars().all())


async def create_connection(
    session: AsyncSession,
    *,
    tenant_id: str,
    integration_id: str,
    name: str | None = None,
    status: str = "active",
) -> IntegrationConnection:
    connection = IntegrationConnection(
        id=new_id(),
        tenant_id=tenant_id,
        integration_id=integration_id,
        name=name,
        status=status,
    )
    session.add(connection)
    return connection


async def list_site_mappings(
    session: AsyncSession,
    *,
    tenant_id: str,
    integration_id: str,
    connection_id: str | None,
) -> list[SiteMapping]:
    result = await session.execute(
        select(SiteMapping)
        .where(
            SiteMapping.tenant_id == tenant_id,
            SiteMapping.integration_id == integration_id,
            nullable_eq(SiteMapping.connection_id, connection_id),
        )
        .order_by(SiteMapping.site_id, SiteMapping.id)
    )
    return list(result.scalars().all())


async def create_site_mapping(
    session: AsyncSession,
    *,
    tenant_id: str,
    integration_id: str,
    site_id: str,
    external_id: str,
    connection_id: str | None = None,
) -> SiteMapping:
    mapping = SiteMapping(
        id=new_id(),
        tenant_id=tenant_id,
        integration_id=integration_id,
        connection_id=connection_id,
        site_id=site_id,
        external_id=external_id,
    )
    session.add(mapping)
    return mapping


async def delete_site_mappings(session: AsyncSession, mapping_ids: list[str]) -> int:
    if not mapping_ids:
        return 0
    result = await session.execute(
        delete(SiteMapping)
        .where(SiteMapping.id.in_(mapping_ids))
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from entitysync.domain.models import SyncJob, TenantIntegration, new_id
from entitysync.domain.types import NON_TERMINAL_STATUSES
from entitysync.persistence.db import nullable_eq


async def create_sync_job(
    session: AsyncSession,
    *,
    tenant_id: str,
    integration_id: str,
    entity_type: str,
    priority: int,
    trigger: str = "scheduled",
    site_id: str | None = None,
    connection_id: str | None = None,
    scheduled_for: datetime | None = None,
    sync_id: str | None = None,
) -> SyncJob:
    job = SyncJob(
        id=new_id(),
        tenant_id=tenant_id,
        integration_id=integration_id,
        entity_type=entity_type,
        site_id=site_id,
        connection_id=connection_id,
        status="pending",
        priority=priority,
        trigger=trigger,
        scheduled_for=scheduled_for,
        sync_id=sync_id or new_id(),
        attempts=0,
        started_at=None,
        completed_at=None,
        error=None,
        metrics_json=None,
    )
    session.add(job)
    return job


async def get_sync_job(session: AsyncSession, job_id: str) -> SyncJob | None:
    result = await session.execute(select(SyncJob).where(SyncJob.id == job_id))
    return result.scalar_one_or_none()


async def list_due_jobs(session: AsyncSession, *, now: datetime, limit: int) -> list[SyncJob]:
    # Only pending units whose tenant integration is still enabled are dispatchable.
    stmt = (
        select(SyncJob)
        .join(
            TenantIntegration,
            (TenantIntegration.tenant_id == SyncJob.tenant_id)
            & (TenantIntegration.integration_id == SyncJob.integration_id),
        )
        .where(
            SyncJob.status == "pending",
            TenantIntegration.enabled.is_(True),
            or_(SyncJob.scheduled_for.is_(None), SyncJob.scheduled_for <= now),
        )
        .order_by(SyncJob.priority.asc(), SyncJob.created_at.asc(), SyncJob.id.asc())
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def transition_status(
    session: AsyncSession,
    job_id: str,
    *,
    from_statuses: tuple[str, ...],
    to_status: str,
    values: dict[str, Any] | None = None,
) -> bool:
    # Conditional update is the status gate; rowcount tells the caller if it won.
    stmt = (
        update(SyncJob)
        .where(SyncJob.id == job_id, SyncJob.status.in_(from_statuses))
        .values(status=to_status, **(values or {}))
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return (result.rowcount or 0) > 0


async def mark_running(
    session: AsyncSession, job_id: str, *, started_at: datetime, allow_failed: bool = False
) -> bool:
    # Queue retries redeliver units the previous attempt marked failed.
    from_statuses: tuple[str, ...] = ("pending", "queued")
    if allow_failed:
        from_statuses = from_statuses + ("failed",)
    return await transition_status(
        session,
        job_id,
        from_statuses=from_statuses,
        to_status="running",
        values={
            "started_at": started_at,
            "completed_at": None,
            "error": None,
            "attempts": SyncJob.attempts + 1,
        },
    )


async def mark_completed(
    session: AsyncSession, job_id: str, *, completed_at: datetime, metrics: dict[str, Any]
) -> bool:
    return await transition_status(
        session,
        job_id,
        from_statuses=("running",),
        to_status="completed",
        values={"completed_at": completed_at, "metrics_json": metrics, "error": None},
    )


async def mark_failed(
    session: AsyncSession,
    job_id: str,
    *,
    completed_at: datetime,
    error: str,
    metrics: dict[str, Any],
) -> bool:
    return await transition_status(
        session,
        job_id,
        from_statuses=("pending", "queued", "running"),
        to_status="failed",
        values={"completed_at": completed_at, "metrics_json": metrics, "error": error},
    )


async def reset_stuck_jobs(session: AsyncSession) -> int:
    # Crash recovery: anything left queued or running goes back to pending.
    stmt = (
        update(SyncJob)
        .where(SyncJob.status.in_(("queued", "running")))
        .values(status="pending", started_at=None)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return int(result.rowcount or 0)


async def find_active_job(
    session: AsyncSession,
    *,
    tenant_id: str,
    integration_id: str,
    entity_type: str,
    connection_id: str | None,
) -> SyncJob | None:
    stmt = select(SyncJob).where(
        SyncJob.tenant_id == tenant_id,
        SyncJob.integration_id == integration_id,
        SyncJob.entity_type == entity_type,
        nullable_eq(SyncJob.connection_id, connection_id),
        SyncJob.status.in_(NON_TERMINAL_STATUSES),
    )
    result = await session.execute(stmt.limit(1))
    return result.scalars().first()


async def find_site_child(
    session: AsyncSession,
    *,
    tenant_id: str,
    integration_id: str,
    entity_type: str,
    connection_id: str | None,
    site_id: str,
    sync_id: str,
) -> SyncJob | None:
    # A child already created for this cycle counts whatever its status; a re-run parent must not add another.
    stmt = select(SyncJob).where(
        SyncJob.tenant_id == tenant_id,
        SyncJob.integration_id == integration_id,
        SyncJob.entity_type == entity_type,
        nullable_eq(SyncJob.connection_id, connection_id),
        SyncJob.site_id == site_id,
        or_(SyncJob.status.in_(NON_TERMINAL_STATUSES), SyncJob.sync_id == sync_id),
    )
    result = await session.execute(stmt.limit(1))
    return result.scalars().first()


async def list_sync_jobs(
    session: AsyncSession,
    *,
    tenant_id: str | None = None,
    status: str | None = None,
    limit: int = 100,
) -> list[SyncJob]:
    stmt = select(SyncJob)
    if tenant_id:
        stmt = stmt.where(SyncJob.tenant_id == tenant_id)
    if status:
        stmt = stmt.where(SyncJob.status == status)
    stmt = stmt.order_by(SyncJob.created_at.desc(), SyncJob.id.desc()).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def count_by_status(session: AsyncSession) -> dict[str, int]:
    result = await session.execute(
        select(SyncJob.status, func.count()).group_by(SyncJob.status)
    )
    return {status: int(count) for status, count in result.all()}

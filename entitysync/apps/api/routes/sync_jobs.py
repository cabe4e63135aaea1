from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from entitysync.apps.api.deps import get_db
from entitysync.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from entitysync.apps.api.response import Envelope, ItemList, envelope
from entitysync.core.errors import WorkUnitNotFoundError
from entitysync.persistence.repos import sync_jobs as sync_jobs_repo
from entitysync.services.sync.scheduler import trigger_manual_sync


router = APIRouter(prefix="/sync-jobs", tags=["sync-jobs"], responses=DEFAULT_ERROR_RESPONSES)


class SyncJobResponse(BaseModel):
    id: str
    tenant_id: str
    integration_id: str
    entity_type: str
    site_id: str | None
    connection_id: str | None
    status: str
    priority: int
    trigger: str
    sync_id: str
    attempts: int
    scheduled_for: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    metrics: dict[str, Any] | None = None


class ManualSyncRequest(BaseModel):
    tenant_id: str
    integration_id: str
    entity_type: str
    connection_id: str | None = None
    site_id: str | None = None


def _to_response(job) -> SyncJobResponse:
    # Only client-set columns; server-managed timestamps may be unloaded after a write.
    return SyncJobResponse(
        id=job.id,
        tenant_id=job.tenant_id,
        integration_id=job.integration_id,
        entity_type=job.entity_type,
        site_id=job.site_id,
        connection_id=job.connection_id,
        status=job.status,
        priority=job.priority,
        trigger=job.trigger,
        sync_id=job.sync_id,
        attempts=job.attempts,
        scheduled_for=job.scheduled_for,
        started_at=job.started_at,
        completed_at=job.completed_at,
        error=job.error,
        metrics=job.metrics_json,
    )


@router.get("", response_model=Envelope[ItemList[SyncJobResponse]])
async def list_sync_jobs(
    request: Request,
    tenant_id: str | None = Query(default=None),
    status: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
) -> dict:
    jobs = await sync_jobs_repo.list_sync_jobs(db, tenant_id=tenant_id, status=status, limit=limit)
    payload = ItemList.of([_to_response(job) for job in jobs])
    return envelope(request, payload)


@router.post(
    "",
    status_code=202,
    response_model=Envelope[SyncJobResponse],
)
async def create_manual_sync(
    request: Request,
    body: ManualSyncRequest,
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Picked up on the next scheduler poll ahead of scheduled work.
    job = await trigger_manual_sync(
        db,
        tenant_id=body.tenant_id,
        integration_id=body.integration_id,
        entity_type=body.entity_type,
        connection_id=body.connection_id,
        site_id=body.site_id,
    )
    return envelope(request, _to_response(job))


@router.get("/{job_id}", response_model=Envelope[SyncJobResponse])
async def get_sync_job(request: Request, job_id: str, db: AsyncSession = Depends(get_db)) -> dict:
    job = await sync_jobs_repo.get_sync_job(db, job_id)
    if job is None:
        raise WorkUnitNotFoundError(f"Sync job {job_id} not found")
    return envelope(request, _to_response(job))

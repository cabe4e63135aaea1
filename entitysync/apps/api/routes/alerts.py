from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from entitysync.apps.api.deps import get_db
from entitysync.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from entitysync.apps.api.response import Envelope, ItemList, envelope
from entitysync.persistence.repos import alerts as alerts_repo
from entitysync.services.analysis.alerts import suppress_alert, unsuppress_alert


router = APIRouter(prefix="/alerts", tags=["alerts"], responses=DEFAULT_ERROR_RESPONSES)


class AlertResponse(BaseModel):
    id: str
    tenant_id: str
    integration_id: str
    alert_type: str
    severity: str
    message: str
    fingerprint: str
    status: str
    entity_id: str | None = None
    site_id: str | None = None
    connection_id: str | None = None
    last_seen_at: datetime | None = None
    resolved_at: datetime | None = None
    metadata: dict[str, Any] | None = None


def _to_response(alert) -> AlertResponse:
    return AlertResponse(
        id=alert.id,
        tenant_id=alert.tenant_id,
        integration_id=alert.integration_id,
        alert_type=alert.alert_type,
        severity=alert.severity,
        message=alert.message,
        fingerprint=alert.fingerprint,
        status=alert.status,
        entity_id=alert.entity_id,
        site_id=alert.site_id,
        connection_id=alert.connection_id,
        last_seen_at=alert.last_seen_at,
        resolved_at=alert.resolved_at,
        metadata=alert.metadata_json,
    )


@router.get("", response_model=Envelope[ItemList[AlertResponse]])
async def list_alerts(
    request: Request,
    tenant_id: str = Query(...),
    status: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
) -> dict:
    alerts = await alerts_repo.list_alerts(db, tenant_id=tenant_id, status=status, limit=limit)
    payload = ItemList.of([_to_response(alert) for alert in alerts])
    return envelope(request, payload)


@router.post("/{alert_id}/suppress", response_model=Envelope[AlertResponse])
async def suppress(request: Request, alert_id: str, db: AsyncSession = Depends(get_db)) -> dict:
    # Suppressed alerts stay suppressed across analysis passes until unsuppressed.
    alert = await suppress_alert(db, alert_id)
    return envelope(request, _to_response(alert))


@router.post("/{alert_id}/unsuppress", response_model=Envelope[AlertResponse])
async def unsuppress(request: Request, alert_id: str, db: AsyncSession = Depends(get_db)) -> dict:
    alert = await unsuppress_alert(db, alert_id)
    return envelope(request, _to_response(alert))

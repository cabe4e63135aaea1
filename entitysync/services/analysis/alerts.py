from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from entitysync.core.config import get_settings
from entitysync.core.errors import AlertNotFoundError, InvalidAlertTargetError
from entitysync.domain.models import EntityAlert, new_id
from entitysync.domain.types import AlertCandidate, SyncScope
from entitysync.persistence.db import chunked, commit_chunk
from entitysync.persistence.repos import alerts as alerts_repo
from entitysync.services.sync.metrics import PipelineTracker


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AlertCounts:
    created: int = 0
    updated: int = 0
    resolved: int = 0

    def as_dict(self) -> dict[str, int]:
        return {"created": self.created, "updated": self.updated, "resolved": self.resolved}


class AlertDeduplicator:
    """Fingerprint diff of alert candidates against stored alerts.

    One row per fingerprint. Suppression is sticky: re-detection refreshes a
    suppressed alert's fields but never its status, and a missed pass never
    resolves it. Active alerts that are not re-derived resolve immediately.
    """

    def __init__(self, session: AsyncSession, *, chunk_size: int | None = None) -> None:
        self._session = session
        self._chunk_size = chunk_size or get_settings().write_chunk_size

    async def process_alerts(
        self,
        candidates: list[AlertCandidate],
        scope: SyncScope,
        alert_types: list[str] | None = None,
        *,
        sync_id: str | None = None,
        tracker: PipelineTracker | None = None,
    ) -> AlertCounts:
        counts = AlertCounts()
        # Same fingerprint twice in one pass collapses; the last candidate wins.
        by_fingerprint: dict[str, AlertCandidate] = {}
        for candidate in candidates:
            if not (candidate.entity_id or candidate.site_id or candidate.connection_id):
                raise InvalidAlertTargetError(f"Alert {candidate.alert_type} has no target")
            by_fingerprint[candidate.fingerprint] = candidate

        existing = await alerts_repo.list_scope_alerts(
            self._session,
            tenant_id=scope.tenant_id,
            integration_id=scope.integration_id,
            connection_id=scope.connection_id,
            alert_types=alert_types,
        )
        if tracker is not None:
            tracker.increment("db_queries")
        existing_by_fingerprint = {alert.fingerprint: alert for alert in existing}

        now = _utc_now()
        to_create: list[EntityAlert] = []
        to_update: list[tuple[EntityAlert, AlertCandidate]] = []
        for fingerprint, candidate in by_fingerprint.items():
            row = existing_by_fingerprint.get(fingerprint)
            if row is None:
                to_create.append(
                    EntityAlert(
                        id=new_id(),
                        tenant_id=scope.tenant_id,
                        integration_id=scope.integration_id,
                        entity_id=candidate.entity_id,
                        site_id=candidate.site_id,
                        connection_id=candidate.connection_id or scope.connection_id,
                        alert_type=candidate.alert_type,
                        severity=candidate.severity,
                        message=candidate.message,
                        fingerprint=fingerprint,
                        metadata_json=candidate.metadata,
                        status="active",
                        last_seen_at=now,
                        sync_id=sync_id,
                    )
                )
            else:
                to_update.append((row, candidate))
        to_resolve = [
            row
            for fingerprint, row in existing_by_fingerprint.items()
            if fingerprint not in by_fingerprint and row.status == "active"
        ]

        for batch in chunked(to_create, self._chunk_size):
            async with commit_chunk(self._session, "alert create"):
                self._session.add_all(batch)
            self._count_write(tracker, len(batch))
        for batch in chunked(to_update, self._chunk_size):
            async with commit_chunk(self._session, "alert update"):
                for row, candidate in batch:
                    row.severity = candidate.severity
                    row.message = candidate.message
                    row.metadata_json = candidate.metadata
                    row.last_seen_at = now
                    row.sync_id = sync_id
                    if row.status != "suppressed":
                        # A resolved alert that is detected again becomes active.
                        row.status = "active"
                        row.resolved_at = None
            self._count_write(tracker, len(batch))
        for batch in chunked(to_resolve, self._chunk_size):
            async with commit_chunk(self._session, "alert resolve"):
                for row in batch:
                    row.status = "resolved"
                    row.resolved_at = now
            self._count_write(tracker, len(batch))

        counts.created = len(to_create)
        counts.updated = len(to_update)
        counts.resolved = len(to_resolve)
        logger.info(
            "alerts_processed tenant_id=%s integration_id=%s created=%s updated=%s resolved=%s",
            scope.tenant_id,
            scope.integration_id,
            counts.created,
            counts.updated,
            counts.resolved,
        )
        return counts

    def _count_write(self, tracker: PipelineTracker | None, rows: int) -> None:
        if tracker is not None:
            tracker.increment("db_upserts", rows)


async def _set_alert_status(session: AsyncSession, alert_id: str, status: str) -> EntityAlert:
    alert = await alerts_repo.get_alert(session, alert_id)
    if alert is None:
        raise AlertNotFoundError(f"Alert {alert_id} not found")
    alert.status = status
    if status == "active":
        alert.resolved_at = None
    await session.commit()
    logger.info("alert_status_changed alert_id=%s status=%s", alert_id, status)
    return alert


async def suppress_alert(session: AsyncSession, alert_id: str) -> EntityAlert:
    # Manual suppression always wins over re-detection.
    return await _set_alert_status(session, alert_id, "suppressed")


async def unsuppress_alert(session: AsyncSession, alert_id: str) -> EntityAlert:
    # The next analysis pass resolves it if the condition is gone.
    return await _set_alert_status(session, alert_id, "active")

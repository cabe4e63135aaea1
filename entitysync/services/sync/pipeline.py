from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel

from entitysync.core.config import get_settings
from entitysync.core.errors import ConfigurationError, WorkUnitNotFoundError
from entitysync.core.integrations import get_integration
from entitysync.domain.types import RawRecord, WorkUnit
from entitysync.persistence.db import SessionLocal
from entitysync.persistence.repos import integrations as integrations_repo
from entitysync.persistence.repos import sync_jobs as sync_jobs_repo
from entitysync.services.registry import IntegrationRegistry
from entitysync.services.sync.completion import CompletionTracker
from entitysync.services.sync.entities import EntityReconciler
from entitysync.services.sync.fanout import ScopeProcessed
from entitysync.services.sync.metrics import PipelineTracker
from entitysync.services.sync.queue import ANALYSIS_FUNCTION, WorkQueue
from entitysync.services.sync.relationships import RelationshipReconciler, load_linking_entities
from entitysync.services.sync.scheduler import schedule_next_sync
from entitysync.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)


class SyncStage(str, Enum):
    FETCHING = "fetching"
    RECONCILING_ENTITIES = "reconciling_entities"
    PRUNING = "pruning"
    FAN_IN_PRUNING = "fan_in_pruning"
    RECONCILING_RELATIONSHIPS = "reconciling_relationships"
    TRACKING_COMPLETION = "tracking_completion"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    FAILED = "failed"


class AnalysisJobPayload(BaseModel):
    # Published job schema for the sync-to-analysis handoff.
    tenant_id: str
    integration_id: str
    connection_id: str | None = None
    sync_id: str
    trigger_job_id: str | None = None


def analysis_job_id(payload: AnalysisJobPayload) -> str:
    # One analysis per (tenant, integration, connection, cycle).
    parts = ["analysis", payload.tenant_id, payload.integration_id]
    if payload.connection_id:
        parts.append(payload.connection_id)
    parts.append(payload.sync_id)
    return ":".join(parts)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SyncOutcome:
    job_id: str
    stage: SyncStage
    counts: dict[str, Any] = field(default_factory=dict)
    all_done: bool = False
    # Set once this unit has reported to the completion tracker.
    completion_marked: bool = False
    analysis_enqueued: bool = False
    resumed: bool = False

    def completion_state(self) -> dict[str, bool]:
        # Persisted on the unit so a retry can resume at the analysis hand-off.
        return {"marked": self.completion_marked, "all_done": self.all_done}

    def as_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "stage": self.stage.value,
            "counts": self.counts,
            "all_done": self.all_done,
            "analysis_enqueued": self.analysis_enqueued,
            "resumed": self.resumed,
        }


class SyncPipeline:
    """Per-unit execution: fetch, reconcile, prune, link, track completion, and
    enqueue analysis when the cycle is complete.

    Stage errors are recorded on the unit, which is marked failed, and then
    re-raised; retry belongs to the queue. A retry of a unit that already
    reported completion skips straight to the fan-in and analysis hand-off.
    """

    def __init__(
        self,
        registry: IntegrationRegistry,
        completion: CompletionTracker,
        work_queue: WorkQueue,
        *,
        session_factory=SessionLocal,
    ) -> None:
        self._registry = registry
        self._completion = completion
        self._work_queue = work_queue
        self._session_factory = session_factory
        self.stage: SyncStage | None = None

    async def run(self, job_id: str, *, attempt: int = 1) -> SyncOutcome | None:
        started = await self._start(job_id, attempt=attempt)
        if started is None:
            return None
        unit, prior_completion = started
        tracker = PipelineTracker(job_id=job_id, retry_count=max(0, attempt - 1))
        outcome = SyncOutcome(job_id=job_id, stage=SyncStage.FETCHING)
        try:
            await self._execute(unit, tracker, outcome, prior_completion)
        except Exception as exc:
            failed_stage = self.stage
            self.stage = SyncStage.FAILED
            tracker.track_error(exc)
            await self._mark_failed(unit, tracker, outcome, exc, failed_stage)
            raise
        return outcome

    async def _start(self, job_id: str, *, attempt: int) -> tuple[WorkUnit, dict[str, Any]] | None:
        async with self._session_factory() as session:
            job = await sync_jobs_repo.get_sync_job(session, job_id)
            if job is None:
                raise WorkUnitNotFoundError(f"Sync job {job_id} not found")
            # Duplicate deliveries of a running or finished unit are dropped.
            allow_failed = attempt > 1
            if job.status in ("running", "completed") or (job.status == "failed" and not allow_failed):
                logger.info("sync_job_skipped job_id=%s status=%s attempt=%s", job_id, job.status, attempt)
                return None
            prior_completion: dict[str, Any] = {}
            if job.status == "failed" and job.metrics_json:
                prior_completion = dict(job.metrics_json.get("completion") or {})
            tenant_integration = await integrations_repo.get_tenant_integration(
                session, job.tenant_id, job.integration_id
            )
            unit = WorkUnit.from_row(job, config=tenant_integration.config_json if tenant_integration else None)
            claimed = await sync_jobs_repo.mark_running(
                session, job_id, started_at=_utc_now(), allow_failed=allow_failed
            )
            await session.commit()
        if not claimed:
            logger.info("sync_job_claim_lost job_id=%s", job_id)
            return None
        logger.info(
            "sync_job_started job_id=%s integration_id=%s entity_type=%s site_id=%s attempt=%s",
            job_id,
            unit.integration_id,
            unit.entity_type,
            unit.site_id,
            attempt,
        )
        return unit, prior_completion

    async def _execute(
        self,
        unit: WorkUnit,
        tracker: PipelineTracker,
        outcome: SyncOutcome,
        prior_completion: dict[str, Any],
    ) -> None:
        if prior_completion.get("marked"):
            # Entities were reconciled and reported by the earlier attempt. An all-done
            # report has already cleared the tracker state, so reporting again would open a new cycle.
            outcome.completion_marked = True
            outcome.all_done = bool(prior_completion.get("all_done"))
            outcome.resumed = True
            logger.info("sync_job_resumed job_id=%s all_done=%s", unit.id, outcome.all_done)
        else:
            await self._sync(unit, tracker, outcome)
            self.stage = SyncStage.TRACKING_COMPLETION
            async with tracker.span(SyncStage.TRACKING_COMPLETION.value):
                if await self._completion.mark_complete(unit.scope, unit.entity_type, unit.id):
                    outcome.all_done = True
                outcome.completion_marked = True

        if outcome.all_done:
            self.stage = SyncStage.FAN_IN_PRUNING
            async with tracker.span(SyncStage.FAN_IN_PRUNING.value):
                await self._prune_fan_in(unit, tracker, outcome)
            self.stage = SyncStage.ANALYZING
            async with tracker.span(SyncStage.ANALYZING.value):
                outcome.analysis_enqueued = await self._enqueue_analysis(unit)

        self.stage = SyncStage.COMPLETED
        outcome.stage = SyncStage.COMPLETED
        async with self._session_factory() as session:
            await sync_jobs_repo.mark_completed(
                session,
                unit.id,
                completed_at=_utc_now(),
                metrics={**tracker.to_dict(), "completion": outcome.completion_state()},
            )
            await session.commit()
            await schedule_next_sync(session, unit)
        increment_counter("sync.jobs_completed")
        logger.info(
            "sync_job_completed job_id=%s integration_id=%s entity_type=%s counts=%s all_done=%s",
            unit.id,
            unit.integration_id,
            unit.entity_type,
            outcome.counts,
            outcome.all_done,
        )

    async def _sync(self, unit: WorkUnit, tracker: PipelineTracker, outcome: SyncOutcome) -> None:
        scope = unit.scope
        adapter = self._registry.get_adapter(unit.integration_id, unit.entity_type)
        if adapter is None:
            raise ConfigurationError(f"No adapter for {unit.integration_id}/{unit.entity_type}")
        integration = get_integration(unit.integration_id)
        type_config = integration.type_config(unit.entity_type) if integration else None

        self.stage = SyncStage.FETCHING
        async with tracker.span(SyncStage.FETCHING.value):
            records = await self._fetch_all(adapter, unit, tracker)

        async with self._session_factory() as session:
            entity_reconciler = EntityReconciler(session)
            self.stage = SyncStage.RECONCILING_ENTITIES
            async with tracker.span(SyncStage.RECONCILING_ENTITIES.value):
                entities = await entity_reconciler.process(records, scope, tracker, sync_id=unit.sync_id)

            # Only reached after a complete fetch; a partial fetch raised above.
            if type_config is not None and type_config.fan_out:
                # Another site of this cycle may still claim these rows; fan-in prunes them.
                logger.debug("entity_prune_deferred job_id=%s site_id=%s", unit.id, unit.site_id)
            else:
                self.stage = SyncStage.PRUNING
                async with tracker.span(SyncStage.PRUNING.value):
                    await entity_reconciler.prune_stale_entities(
                        {record.external_id for record in records}, scope, tracker
                    )
            outcome.counts["entities"] = entity_reconciler.last_counts.as_dict()

            self.stage = SyncStage.RECONCILING_RELATIONSHIPS
            async with tracker.span(SyncStage.RECONCILING_RELATIONSHIPS.value):
                linker = self._registry.get_linker(unit.integration_id)
                if linker is not None:
                    linking = await load_linking_entities(session, scope)
                    tracker.increment("db_queries")
                    relationship_counts = await RelationshipReconciler(session).reconcile(
                        linker.link(linking), scope, tracker, sync_id=unit.sync_id
                    )
                    outcome.counts["relationships"] = relationship_counts.as_dict()

            async with tracker.span("fan_out"):
                event = ScopeProcessed(unit=unit, entities=entities)
                for policy in self._registry.get_fanout_policies(unit.integration_id):
                    result = await policy.handle(
                        session, event, completion=self._completion, tracker=tracker
                    )
                    outcome.all_done = outcome.all_done or result.all_done
                    if result.expected is not None:
                        outcome.counts["fan_out"] = {
                            "expected": result.expected,
                            "created": result.units_created,
                        }

    async def _prune_fan_in(self, unit: WorkUnit, tracker: PipelineTracker, outcome: SyncOutcome) -> None:
        # Every site of the cycle has synced: rows no unit of this cycle wrote are gone at the source.
        integration = get_integration(unit.integration_id)
        if integration is None:
            return
        scope = unit.scope.without_site()
        async with self._session_factory() as session:
            reconciler = EntityReconciler(session)
            for kind in integration.fan_out_types:
                deleted = await reconciler.prune_unseen_entities(scope.for_type(kind), unit.sync_id, tracker)
                outcome.counts.setdefault("fan_in_deleted", {})[kind] = deleted

    async def _fetch_all(self, adapter, unit: WorkUnit, tracker: PipelineTracker) -> list[RawRecord]:
        records: list[RawRecord] = []
        cursor: str | None = None
        while True:
            started = time.monotonic()
            try:
                page = await adapter.fetch_page(unit, cursor)
            except Exception:
                record_external_call(
                    integration=unit.integration_id,
                    latency_ms=(time.monotonic() - started) * 1000,
                    success=False,
                )
                raise
            record_external_call(
                integration=unit.integration_id,
                latency_ms=(time.monotonic() - started) * 1000,
                success=True,
            )
            tracker.increment("api_calls")
            records.extend(page.records)
            if not page.next_cursor:
                return records
            cursor = page.next_cursor

    async def _enqueue_analysis(self, unit: WorkUnit) -> bool:
        payload = AnalysisJobPayload(
            tenant_id=unit.tenant_id,
            integration_id=unit.integration_id,
            connection_id=unit.connection_id,
            sync_id=unit.sync_id,
            trigger_job_id=unit.id,
        )
        job_id = analysis_job_id(payload)
        accepted = await self._work_queue.enqueue(
            ANALYSIS_FUNCTION,
            payload.model_dump(),
            job_id=job_id,
            queue_name=get_settings().analysis_queue_name,
        )
        logger.info("analysis_enqueued job_id=%s accepted=%s", job_id, accepted)
        return accepted

    async def _mark_failed(
        self,
        unit: WorkUnit,
        tracker: PipelineTracker,
        outcome: SyncOutcome,
        exc: BaseException,
        stage: SyncStage | None,
    ) -> None:
        # Fresh session: the stage session may be mid-rollback.
        async with self._session_factory() as session:
            await sync_jobs_repo.mark_failed(
                session,
                unit.id,
                completed_at=_utc_now(),
                error=tracker.error_message or str(exc),
                metrics={
                    **tracker.to_dict(),
                    "failed_stage": stage.value if stage else None,
                    "completion": outcome.completion_state(),
                },
            )
            await session.commit()
        increment_counter("sync.jobs_failed")
        logger.warning(
            "sync_job_failed job_id=%s integration_id=%s entity_type=%s stage=%s",
            unit.id,
            unit.integration_id,
            unit.entity_type,
            stage.value if stage else None,
            exc_info=exc,
        )

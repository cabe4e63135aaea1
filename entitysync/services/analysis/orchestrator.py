from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable

from entitysync.core.config import get_settings
from entitysync.core.errors import AnalyzerError
from entitysync.domain.types import AnalyzerResult, SyncScope, TagAssignment, state_priority
from entitysync.persistence.db import SessionLocal, chunked, commit_chunk
from entitysync.persistence.repos import entities as entities_repo
from entitysync.services.analysis.alerts import AlertCounts, AlertDeduplicator
from entitysync.services.analysis.base import AnalysisContext, BaseAnalyzer
from entitysync.services.analysis.tags import TagApplier
from entitysync.services.sync.metrics import PipelineTracker


logger = logging.getLogger(__name__)


def merge_tags(results: list[AnalyzerResult]) -> dict[str, list[TagAssignment]]:
    # Union per entity, one assignment per tag text; the later analyzer wins.
    merged: dict[str, dict[str, TagAssignment]] = defaultdict(dict)
    for result in results:
        for entity_id, assignments in result.entity_tags.items():
            for assignment in assignments:
                merged[entity_id][assignment.tag] = assignment
    return {entity_id: list(tags.values()) for entity_id, tags in merged.items()}


def merge_states(results: list[AnalyzerResult]) -> dict[str, str]:
    # Highest priority wins; ties go to the later writer.
    merged: dict[str, str] = {}
    for result in results:
        for entity_id, state in result.entity_states.items():
            current = merged.get(entity_id)
            if current is None or state_priority(state) >= state_priority(current):
                merged[entity_id] = state
    return merged


def alert_type_filter(analyzers: list[BaseAnalyzer]) -> list[str] | None:
    # Any analyzer without declared types means the pass owns every alert type.
    if any(not analyzer.alert_types for analyzer in analyzers):
        return None
    return sorted({alert_type for analyzer in analyzers for alert_type in analyzer.alert_types})


@dataclass
class AnalysisSummary:
    analyzers: list[str] = field(default_factory=list)
    alerts: AlertCounts = field(default_factory=AlertCounts)
    tags_applied: int = 0
    states_updated: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "analyzers": list(self.analyzers),
            "alerts": self.alerts.as_dict(),
            "tags_applied": self.tags_applied,
            "states_updated": self.states_updated,
        }


class AnalysisOrchestrator:
    """Runs every analyzer of an integration over one loaded context and applies
    the merged output: tags, then entity states, then alerts.

    Any analyzer failure fails the whole pass before anything is written.
    """

    def __init__(
        self,
        analyzers_for: Callable[[str], list[BaseAnalyzer]],
        *,
        session_factory=SessionLocal,
        chunk_size: int | None = None,
    ) -> None:
        self._analyzers_for = analyzers_for
        self._session_factory = session_factory
        self._chunk_size = chunk_size or get_settings().write_chunk_size

    async def analyze(
        self,
        scope: SyncScope,
        sync_id: str | None = None,
        tracker: PipelineTracker | None = None,
    ) -> AnalysisSummary:
        tracker = tracker or PipelineTracker()
        analyzers = self._analyzers_for(scope.integration_id)
        summary = AnalysisSummary(analyzers=[analyzer.name for analyzer in analyzers])
        if not analyzers:
            logger.info("analysis_skipped_no_analyzers integration_id=%s", scope.integration_id)
            return summary

        async with self._session_factory() as session:
            async with tracker.span("analysis_load_context"):
                context = await AnalysisContext.load(session, scope, sync_id=sync_id)
            tracker.increment("db_queries", 2)

            async with tracker.span("analysis_run"):
                results = await asyncio.gather(
                    *(self._run_analyzer(analyzer, context) for analyzer in analyzers),
                    return_exceptions=True,
                )
            failures = [
                (analyzer, result)
                for analyzer, result in zip(analyzers, results)
                if isinstance(result, BaseException)
            ]
            if failures:
                analyzer, exc = failures[0]
                raise AnalyzerError(f"Analyzer {analyzer.name} failed: {exc}") from exc

            merged_tags = merge_tags(results)
            merged_states = merge_states(results)
            candidates = [alert for result in results for alert in result.alerts]

            async with tracker.span("analysis_apply_tags"):
                summary.tags_applied = await TagApplier(session, chunk_size=self._chunk_size).apply_tags(
                    merged_tags,
                    tenant_id=context.scope.tenant_id,
                    entity_ids=[entity.id for entity in context.entities],
                    sources=sorted({analyzer.tag_source for analyzer in analyzers}),
                    tracker=tracker,
                )
            async with tracker.span("analysis_apply_states"):
                summary.states_updated = await self._apply_states(session, context, merged_states, tracker)
            async with tracker.span("analysis_apply_alerts"):
                summary.alerts = await AlertDeduplicator(session, chunk_size=self._chunk_size).process_alerts(
                    candidates,
                    context.scope,
                    alert_type_filter(analyzers),
                    sync_id=sync_id,
                    tracker=tracker,
                )

        logger.info(
            "analysis_completed tenant_id=%s integration_id=%s connection_id=%s sync_id=%s alerts=%s tags=%s states=%s",
            scope.tenant_id,
            scope.integration_id,
            scope.connection_id,
            sync_id,
            summary.alerts.as_dict(),
            summary.tags_applied,
            summary.states_updated,
        )
        return summary

    async def _run_analyzer(self, analyzer: BaseAnalyzer, context: AnalysisContext) -> AnalyzerResult:
        try:
            return await analyzer.analyze(context)
        except Exception:
            logger.exception("analyzer_failed analyzer=%s integration_id=%s", analyzer.name, analyzer.integration_id)
            raise

    async def _apply_states(
        self,
        session,
        context: AnalysisContext,
        merged_states: dict[str, str],
        tracker: PipelineTracker,
    ) -> int:
        # Entities no analyzer flagged this pass fall back to normal.
        by_state: dict[str, list[str]] = defaultdict(list)
        for entity in context.entities:
            target = merged_states.get(entity.id, "normal")
            if entity.state != target:
                by_state[target].append(entity.id)
        updated = 0
        for state, entity_ids in sorted(by_state.items()):
            for batch in chunked(entity_ids, self._chunk_size):
                async with commit_chunk(session, f"entity state {state}"):
                    updated += await entities_repo.update_states(session, batch, state)
                tracker.increment("db_upserts", len(batch))
        return updated

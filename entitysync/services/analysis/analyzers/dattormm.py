from __future__ import annotations

from datetime import datetime, timedelta, timezone

from entitysync.domain.types import AnalyzerResult
from entitysync.services.analysis.analyzers.dates import parse_timestamp
from entitysync.services.analysis.base import AnalysisContext, BaseAnalyzer


OFFLINE_AFTER = timedelta(days=30)


class DattoRMMAnalyzer(BaseAnalyzer):
    name = "dattormm"
    integration_id = "dattormm"
    tag_source = "dattormm"
    alert_types = ("device-offline", "site-empty")

    def __init__(self, *, now=None) -> None:
        self._now = now or (lambda: datetime.now(timezone.utc))

    async def analyze(self, context: AnalysisContext) -> AnalyzerResult:
        result = AnalyzerResult()
        self._offline_devices(context, result)
        self._empty_sites(context, result)
        return result

    def _offline_devices(self, context: AnalysisContext, result: AnalyzerResult) -> None:
        now = self._now()
        for endpoint in context.get_entities("endpoint"):
            data = endpoint.raw_data or {}
            last_seen = parse_timestamp(data.get("lastSeen"))
            if last_seen is None or data.get("online"):
                continue
            offline_for = now - last_seen
            if offline_for <= OFFLINE_AFTER:
                continue
            self.create_alert(
                result,
                alert_type="device-offline",
                severity="medium",
                message=f'Device "{endpoint.display_name}" has been offline for {offline_for.days} days',
                entity=endpoint,
                metadata={"lastSeen": data.get("lastSeen")},
            )
            self.add_tags(result, endpoint.id, "offline", category="status")
            self.set_state(result, endpoint.id, "warn")

    def _empty_sites(self, context: AnalysisContext, result: AnalyzerResult) -> None:
        for site in context.get_entities("company"):
            if context.get_child_entities(site.id, "contains"):
                continue
            self.create_alert(
                result,
                alert_type="site-empty",
                severity="low",
                message=f'Site "{site.display_name}" has no devices',
                entity=site,
            )
            self.add_tags(result, site.id, "empty", category="status")
            self.set_state(result, site.id, "low")

from __future__ import annotations

from entitysync.domain.types import AnalyzerResult
from entitysync.services.analysis.base import AnalysisContext, BaseAnalyzer


class SophosTamperProtectionAnalyzer(BaseAnalyzer):
    name = "sophos-tamper-protection"
    integration_id = "sophos-partner"
    tag_source = "tamper-analyzer"
    alert_types = ("tamper-disabled",)

    async def analyze(self, context: AnalysisContext) -> AnalyzerResult:
        result = AnalyzerResult()
        for endpoint in context.get_entities("endpoint"):
            data = endpoint.raw_data or {}
            enabled = data.get("tamperProtectionEnabled")
            if enabled is None:
                enabled = (data.get("tamperProtection") or {}).get("enabled")
            # Only an explicit False counts; unknown is not a finding.
            if enabled is not False:
                self.set_state(result, endpoint.id, "normal")
                continue
            hostname = data.get("hostname") or endpoint.display_name or endpoint.external_id
            self.create_alert(
                result,
                alert_type="tamper-disabled",
                severity="high",
                message=f"Endpoint '{hostname}' has tamper protection disabled",
                entity=endpoint,
                metadata={
                    "hostname": hostname,
                    "os": (data.get("os") or {}).get("name"),
                    "health": (data.get("health") or {}).get("overall"),
                },
            )
            self.add_tags(result, endpoint.id, "Tamper Protection Disabled", category="security")
            self.set_state(result, endpoint.id, "warn")
        return result

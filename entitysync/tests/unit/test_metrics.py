from __future__ import annotations

import pytest

from entitysync.services.sync.metrics import PipelineTracker
from entitysync.services.telemetry import (
    counters_snapshot,
    external_latency_by_integration,
    record_external_call,
    stage_latency,
)


@pytest.mark.asyncio
async def test_tracker_records_spans_counters_and_errors() -> None:
    tracker = PipelineTracker(job_id="j1", retry_count=1)
    async with tracker.span("fetching"):
        tracker.increment("api_calls")
    tracker.increment("db_upserts", 5)
    tracker.increment("db_upserts", 0)

    try:
        raise RuntimeError("boom")
    except RuntimeError as exc:
        tracker.track_error(exc)

    payload = tracker.to_dict()
    assert [span["name"] for span in payload["spans"]] == ["fetching"]
    assert payload["spans"][0]["duration_ms"] is not None
    assert payload["counters"]["api_calls"] == 1
    assert payload["counters"]["db_upserts"] == 5
    assert payload["counters"]["entities_deleted"] == 0
    assert payload["retry_count"] == 1
    assert payload["error_message"] == "boom"
    assert "RuntimeError" in payload["error_stack"]

    # Tracker counters are mirrored into the process-wide snapshot.
    assert counters_snapshot()["sync.db_upserts"] == 5
    assert "fetching" in stage_latency(60)


def test_external_latency_is_aggregated_per_integration() -> None:
    for latency in (10.0, 20.0, 30.0):
        record_external_call(integration="dattormm", latency_ms=latency, success=True)
    record_external_call(integration="sophos-partner", latency_ms=5.0, success=False)
    summary = external_latency_by_integration(60)
    assert summary["dattormm"] == {"p95": 30.0, "max": 30.0}
    assert summary["sophos-partner"]["max"] == 5.0


def test_error_free_tracker_omits_error_keys() -> None:
    assert "error_message" not in PipelineTracker().to_dict()

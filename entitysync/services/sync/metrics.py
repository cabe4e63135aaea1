from __future__ import annotations

import time
import traceback
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from entitysync.services.telemetry import increment_counter, record_stage_duration


COUNTER_NAMES = (
    "db_queries",
    "db_upserts",
    "api_calls",
    "entities_created",
    "entities_updated",
    "entities_deleted",
    "entities_unchanged",
)


@dataclass
class SpanRecord:
    name: str
    # Offset from tracker start, in milliseconds.
    start_ms: float
    duration_ms: float | None = None


@dataclass
class PipelineTracker:
    """Per-run span timings, counters, and terminal error detail.

    `to_dict()` is what gets persisted into the work unit's metrics blob, so
    the keys here are part of the operator-facing contract.
    """

    job_id: str | None = None
    spans: list[SpanRecord] = field(default_factory=list)
    counters: dict[str, int] = field(default_factory=lambda: {name: 0 for name in COUNTER_NAMES})
    error_message: str | None = None
    error_stack: str | None = None
    retry_count: int = 0
    _started: float = field(default_factory=time.monotonic)

    @asynccontextmanager
    async def span(self, name: str) -> AsyncIterator[SpanRecord]:
        record = SpanRecord(name=name, start_ms=self._elapsed_ms())
        self.spans.append(record)
        begin = time.monotonic()
        try:
            yield record
        finally:
            record.duration_ms = round((time.monotonic() - begin) * 1000, 3)
            record_stage_duration(stage=name, duration_ms=record.duration_ms)

    def increment(self, name: str, value: int = 1) -> None:
        if value <= 0:
            return
        self.counters[name] = self.counters.get(name, 0) + value
        # Mirror into process-wide counters for the ops endpoint.
        increment_counter(f"sync.{name}", value)

    def track_error(self, exc: BaseException) -> None:
        self.error_message = str(exc) or exc.__class__.__name__
        self.error_stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))

    def _elapsed_ms(self) -> float:
        return round((time.monotonic() - self._started) * 1000, 3)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "duration_ms": self._elapsed_ms(),
            "spans": [
                {"name": span.name, "start_ms": span.start_ms, "duration_ms": span.duration_ms}
                for span in self.spans
            ],
            "counters": dict(self.counters),
            "retry_count": self.retry_count,
        }
        if self.error_message is not None:
            payload["error_message"] = self.error_message
            payload["error_stack"] = self.error_stack
        return payload

from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class ExternalCallSample:
    ts: float
    integration: str
    latency_ms: float
    success: bool


@dataclass(frozen=True)
class StageSample:
    ts: float
    stage: str
    duration_ms: float


_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
_stage_samples: Deque[StageSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # Capture adapter page fetch latency and outcome.
    _external_samples.append(
        ExternalCallSample(
            ts=time.time(),
            integration=integration,
            latency_ms=latency_ms,
            success=success,
        )
    )


def record_stage_duration(*, stage: str, duration_ms: float) -> None:
    _stage_samples.append(StageSample(ts=time.time(), stage=stage, duration_ms=duration_ms))


def increment_counter(name: str, value: int = 1) -> None:
    # Process-wide counters surfaced by the operator API.
    _counters[name] += value


def _p95(values: list[float]) -> float:
    values.sort()
    idx = max(0, math.ceil(0.95 * len(values)) - 1)
    return values[idx]


def external_latency_by_integration(window_s: int) -> dict[str, dict[str, float | None]]:
    # Aggregate adapter call latency per integration over the window.
    cutoff = time.time() - window_s
    by_integration: dict[str, list[float]] = defaultdict(list)
    for sample in _external_samples:
        if sample.ts < cutoff:
            continue
        by_integration[sample.integration].append(sample.latency_ms)
    return {
        integration: {"p95": _p95(latencies), "max": max(latencies)}
        for integration, latencies in by_integration.items()
    }


def stage_latency(window_s: int) -> dict[str, dict[str, float | None]]:
    cutoff = time.time() - window_s
    by_stage: dict[str, list[float]] = defaultdict(list)
    for sample in _stage_samples:
        if sample.ts >= cutoff:
            by_stage[sample.stage].append(sample.duration_ms)
    return {stage: {"p95": _p95(values), "max": max(values)} for stage, values in by_stage.items()}


def counters_snapshot() -> dict[str, int]:
    # Return a copy of all counters for metrics reporting.
    return dict(_counters)


def reset_telemetry() -> None:
    _external_samples.clear()
    _stage_samples.clear()
    _counters.clear()

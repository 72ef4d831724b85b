from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class TimingSample:
    ts: float
    name: str
    latency_ms: float
    success: bool


_timing_samples: Deque[TimingSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)


def increment_counter(name: str, value: int = 1) -> None:
    # Store counters for deletion dashboards and alerting.
    _counters[name] += value


def record_timing(name: str, *, latency_ms: float, success: bool = True) -> None:
    # Capture phase and collaborator latency with outcome.
    _timing_samples.append(
        TimingSample(
            ts=time.time(),
            name=name,
            latency_ms=latency_ms,
            success=success,
        )
    )


def timing_stats(window_s: int) -> dict[str, dict[str, float | int]]:
    # Aggregate p95/max/failure counts by timing name over the window.
    cutoff = time.time() - window_s
    grouped: dict[str, list[TimingSample]] = defaultdict(list)
    for sample in _timing_samples:
        if sample.ts < cutoff:
            continue
        grouped[sample.name].append(sample)
    result: dict[str, dict[str, float | int]] = {}
    for name, samples in grouped.items():
        latencies = sorted(sample.latency_ms for sample in samples)
        p95_idx = max(0, math.ceil(0.95 * len(latencies)) - 1)
        result[name] = {
            "count": len(samples),
            "failures": sum(1 for sample in samples if not sample.success),
            "p95": latencies[p95_idx],
            "max": latencies[-1],
        }
    return result


def counters_snapshot() -> dict[str, int]:
    # Return a copy of all counters for metrics reporting.
    return dict(_counters)


def reset_telemetry() -> None:
    # Tests start from empty counters.
    _counters.clear()
    _timing_samples.clear()

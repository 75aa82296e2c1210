from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class GatewayCallSample:
    recorded_at: float
    gateway: str
    latency_ms: float
    ok: bool


# Bounded so a long-running worker never grows without limit.
_gateway_samples: Deque[GatewayCallSample] = deque(maxlen=5000)
_counters: dict[str, int] = defaultdict(int)
_gauges: dict[str, float] = {}


def record_gateway_call(*, gateway: str, latency_ms: float, ok: bool) -> None:
    _gateway_samples.append(
        GatewayCallSample(recorded_at=time.time(), gateway=gateway, latency_ms=latency_ms, ok=ok)
    )


def increment_counter(name: str, value: int = 1) -> None:
    if value:
        _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = value


def gateway_stats(window_s: int) -> dict[str, dict[str, float | int]]:
    """Per-gateway call count, error count, p95 and max latency over the window."""
    cutoff = time.time() - window_s
    grouped: dict[str, list[GatewayCallSample]] = defaultdict(list)
    for sample in _gateway_samples:
        if sample.recorded_at >= cutoff:
            grouped[sample.gateway].append(sample)
    stats: dict[str, dict[str, float | int]] = {}
    for gateway, samples in grouped.items():
        latencies = sorted(sample.latency_ms for sample in samples)
        rank = max(0, math.ceil(0.95 * len(latencies)) - 1)
        stats[gateway] = {
            "calls": len(samples),
            "errors": sum(1 for sample in samples if not sample.ok),
            "p95_ms": round(latencies[rank], 2),
            "max_ms": round(latencies[-1], 2),
        }
    return stats


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


def reset_telemetry() -> None:
    # Tests assert on counters; start each from zero.
    _gateway_samples.clear()
    _counters.clear()
    _gauges.clear()

from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class RequestSample:
    ts: float
    path: str
    route_class: str
    status_code: int
    latency_ms: float


@dataclass(frozen=True)
class ExternalCallSample:
    ts: float
    integration: str
    latency_ms: float
    success: bool


_request_samples: Deque[RequestSample] = deque(maxlen=20000)
_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)


def record_request(*, path: str, route_class: str, status_code: int, latency_ms: float) -> None:
    _request_samples.append(
        RequestSample(
            ts=time.time(),
            path=path,
            route_class=route_class,
            status_code=status_code,
            latency_ms=latency_ms,
        )
    )


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # Capture OpenAI/Intercom latency and outcomes for the admin health view.
    _external_samples.append(
        ExternalCallSample(
            ts=time.time(),
            integration=integration,
            latency_ms=latency_ms,
            success=success,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def _window_samples(window_s: int) -> list[RequestSample]:
    cutoff = time.time() - window_s
    return [sample for sample in _request_samples if sample.ts >= cutoff]


def availability(window_s: int) -> float | None:
    # Calculate availability as % of non-5xx requests over the window.
    samples = _window_samples(window_s)
    if not samples:
        return None
    total = len(samples)
    failures = sum(1 for sample in samples if sample.status_code >= 500)
    return ((total - failures) / total) * 100.0


def p95_latency(window_s: int, *, path_prefix: str | None = None) -> float | None:
    samples = _window_samples(window_s)
    if path_prefix:
        samples = [sample for sample in samples if sample.path.startswith(path_prefix)]
    if not samples:
        return None
    latencies = sorted(sample.latency_ms for sample in samples)
    idx = max(0, math.ceil(0.95 * len(latencies)) - 1)
    return latencies[idx]


def external_call_summary(window_s: int) -> dict[str, dict[str, float | int | None]]:
    # Aggregate call counts, error rate and p95 per integration.
    cutoff = time.time() - window_s
    grouped: dict[str, list[ExternalCallSample]] = defaultdict(list)
    for sample in _external_samples:
        if sample.ts >= cutoff:
            grouped[sample.integration].append(sample)
    summary: dict[str, dict[str, float | int | None]] = {}
    for integration, samples in grouped.items():
        latencies = sorted(sample.latency_ms for sample in samples)
        failures = sum(1 for sample in samples if not sample.success)
        idx = max(0, math.ceil(0.95 * len(latencies)) - 1)
        summary[integration] = {
            "calls": len(samples),
            "error_rate": failures / len(samples),
            "p95_ms": latencies[idx] if latencies else None,
        }
    return summary


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def reset_telemetry() -> None:
    # Tests reset in-process samples to keep assertions isolated.
    _request_samples.clear()
    _external_samples.clear()
    _counters.clear()

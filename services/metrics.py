"""In-memory metrics for workflow steps, tool calls and delta streaming.

Kept per process; exposed through ``GET /api/metrics`` and used by tests to
assert retry counts and batching ratios.
"""

from __future__ import annotations

import math
import threading
from collections import defaultdict


def _percentile(values: list[float], p: float) -> float:
    if not values:
        return 0.0
    if len(values) == 1:
        return values[0]
    ordered = sorted(values)
    pos = (len(ordered) - 1) * p
    lo = math.floor(pos)
    hi = math.ceil(pos)
    if lo == hi:
        return ordered[lo]
    frac = pos - lo
    return ordered[lo] * (1 - frac) + ordered[hi] * frac


class MetricsCollector:
    """Thread-safe in-memory metrics collector."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._step_latencies: dict[str, list[float]] = defaultdict(list)
        self._step_status: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._tool_status: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._streams = {"streams": 0, "tokens_in": 0, "deltas_out": 0, "events_out": 0}

    def record_step(self, *, step: str, status: str, latency_ms: float) -> None:
        """``status`` is ``ok``, ``retry``, ``error`` or ``replayed``."""
        with self._lock:
            if status != "replayed":
                self._step_latencies[step].append(float(latency_ms))
            self._step_status[step][status] += 1

    def record_tool_call(self, *, tool_name: str, status: str) -> None:
        with self._lock:
            self._tool_status[tool_name][status] += 1

    def record_stream(self, *, tokens_in: int, deltas_out: int, events_out: int) -> None:
        with self._lock:
            self._streams["streams"] += 1
            self._streams["tokens_in"] += tokens_in
            self._streams["deltas_out"] += deltas_out
            self._streams["events_out"] += events_out

    def snapshot(self) -> dict:
        with self._lock:
            steps = {}
            for step, status_map in self._step_status.items():
                latencies = self._step_latencies.get(step, [])
                steps[step] = {
                    "status_breakdown": dict(status_map),
                    "latency_p50_ms": round(_percentile(latencies, 0.5), 2),
                    "latency_p95_ms": round(_percentile(latencies, 0.95), 2),
                }
            return {
                "steps": steps,
                "tools": {name: dict(s) for name, s in self._tool_status.items()},
                "streaming": dict(self._streams),
            }

    def reset(self) -> None:
        with self._lock:
            self._step_latencies.clear()
            self._step_status.clear()
            self._tool_status.clear()
            self._streams = {"streams": 0, "tokens_in": 0, "deltas_out": 0, "events_out": 0}


_metrics_collector = MetricsCollector()


def get_metrics_collector() -> MetricsCollector:
    return _metrics_collector

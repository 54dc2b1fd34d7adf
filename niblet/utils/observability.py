from __future__ import annotations

import time
from collections import defaultdict, deque
from contextlib import contextmanager
from threading import Lock
from typing import Deque, Dict, Iterator, List

MetricsSnapshot = Dict[str, Dict[str, float]]


_LATENCY_SLO_P95 = {
    "gating": 500.0,
    "delivery": 2000.0,
    "reply": 15000.0,
    "end_to_end": 20000.0,
}

# green/amber ceilings for the share of turns that fail
_TURN_FAILURE_THRESHOLDS = (0.02, 0.1)

_TURN_OUTCOMES = ("completed", "delivery_failed", "reply_failed", "transcription_failed", "cancelled")


class RequestMetrics:
    def __init__(self, percentile_window: int = 200) -> None:
        self._lock = Lock()
        self._percentile_window = percentile_window
        self._counts: Dict[str, int] = defaultdict(int)
        self._latency_sum: Dict[str, float] = defaultdict(float)
        self._latency_samples: Dict[str, Deque[float]] = defaultdict(self._new_window)
        self._phase_latency_sum: Dict[str, float] = defaultdict(float)
        self._phase_latency_samples: Dict[str, Deque[float]] = defaultdict(self._new_window)
        self._turn_outcomes: Dict[str, int] = defaultdict(int)
        self._counters: Dict[str, float] = defaultdict(float)

    def _new_window(self) -> Deque[float]:
        return deque(maxlen=self._percentile_window)

    def record(self, endpoint: str, duration_ms: float) -> None:
        with self._lock:
            self._counts[endpoint] += 1
            self._latency_sum[endpoint] += duration_ms
            self._latency_samples[endpoint].append(duration_ms)

    def record_phase(self, phase: str, duration_ms: float) -> None:
        with self._lock:
            self._phase_latency_sum[phase] += duration_ms
            self._phase_latency_samples[phase].append(duration_ms)

    def record_turn_outcome(self, outcome: str) -> None:
        with self._lock:
            self._turn_outcomes[outcome] += 1

    def increment_counter(self, name: str, amount: float = 1.0) -> None:
        with self._lock:
            self._counters[name] += amount

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            data: MetricsSnapshot = {}
            for endpoint, count in self._counts.items():
                data[endpoint] = _latency_block(list(self._latency_samples[endpoint]), self._latency_sum[endpoint], count)

            phase_block: Dict[str, Dict[str, float]] = {}
            for phase, samples in self._phase_latency_samples.items():
                phase_samples = list(samples)
                phase_block[phase] = _latency_block(phase_samples, self._phase_latency_sum[phase], len(phase_samples))
            if phase_block:
                data["phases"] = phase_block

            turns = {outcome: float(self._turn_outcomes.get(outcome, 0)) for outcome in _TURN_OUTCOMES}
            total_turns = sum(self._turn_outcomes.values())
            turns["total"] = float(total_turns)
            data["turns"] = turns

            data["status"] = _build_status_block(phase_block, self._turn_outcomes, total_turns)
            if self._counters:
                data["counters"] = dict(self._counters)
            return data

    def reset(self) -> None:
        with self._lock:
            self._counts.clear()
            self._latency_sum.clear()
            self._latency_samples.clear()
            self._phase_latency_sum.clear()
            self._phase_latency_samples.clear()
            self._turn_outcomes.clear()
            self._counters.clear()


@contextmanager
def time_phase(metrics: "RequestMetrics", phase: str) -> Iterator[None]:
    start = time.perf_counter()
    try:
        yield
    finally:
        metrics.record_phase(phase, (time.perf_counter() - start) * 1000)


def _latency_block(samples: List[float], total: float, count: int) -> Dict[str, float]:
    percentiles = _compute_percentiles(samples)
    return {
        "count": float(count),
        "avg_latency_ms": (total / count) if count else 0.0,
        "p50_latency_ms": percentiles.get(50, 0.0),
        "p95_latency_ms": percentiles.get(95, 0.0),
    }


def _compute_percentiles(samples: List[float]) -> Dict[int, float]:
    if not samples:
        return {}
    ordered = sorted(samples)
    results: Dict[int, float] = {}
    for percentile in (50, 95):
        index = int(round((percentile / 100) * (len(ordered) - 1)))
        index = min(max(index, 0), len(ordered) - 1)
        results[percentile] = ordered[index]
    return results


def _build_status_block(
    phases: Dict[str, Dict[str, float]],
    outcomes: Dict[str, int],
    total_turns: int,
) -> Dict[str, Dict[str, float | str]]:
    status: Dict[str, Dict[str, float | str]] = {}
    for phase, slo in _LATENCY_SLO_P95.items():
        values = phases.get(phase)
        if values is None:
            continue
        p95 = values.get("p95_latency_ms", 0.0)
        status[f"latency_{phase}"] = {
            "p95_latency_ms": p95,
            "slo_p95_ms": slo,
            "status": _classify_status(p95, slo),
        }

    failed = total_turns - outcomes.get("completed", 0) - outcomes.get("cancelled", 0)
    failure_rate = (failed / total_turns) if total_turns else 0.0
    status["turn_failure_rate"] = {
        "value": failure_rate,
        "status": _classify_rate(failure_rate, _TURN_FAILURE_THRESHOLDS),
    }
    return status


def _classify_status(value: float, slo: float) -> str:
    if value <= slo:
        return "green"
    if value <= slo * 1.25:
        return "amber"
    return "red"


def _classify_rate(value: float, thresholds: tuple[float, float]) -> str:
    green, amber = thresholds
    if value <= green:
        return "green"
    if value <= amber:
        return "amber"
    return "red"


_METRICS = RequestMetrics()


def get_metrics() -> RequestMetrics:
    return _METRICS

"""Lightweight in-process request metrics for FlowATS.

A fixed-capacity ring of recent request samples; summaries (status classes,
average and nearest-rank p50/p95 latency, top routes) are computed on demand
over a trailing time window. Capacity bounds memory, which also bounds how
far back a window can reach under heavy traffic.
"""

from __future__ import annotations

import math
from collections import defaultdict, deque
from dataclasses import dataclass
from numbers import Real
from threading import Lock
from typing import Iterable, Optional

from flowats.observability.logger import get_logger
from flowats.utils.time import Clock, iso_from_ms, system_clock

logger = get_logger("flowats.metrics")

DEFAULT_MAX_SAMPLES = 1000
DEFAULT_WINDOW_SECONDS = 300
TOP_ROUTES = 10
STATUS_CLASSES = ("2xx", "3xx", "4xx", "5xx")


@dataclass(frozen=True)
class RequestMetricSample:
    timestamp: float  # epoch ms
    duration_ms: float
    status_code: int
    method: str
    path: str


def percentile(sorted_values: list[float], p: float) -> float:
    """Nearest-rank percentile of an ascending list (0 when empty)."""
    n = len(sorted_values)
    if n == 0:
        return 0
    index = math.ceil(p * n / 100.0) - 1
    index = min(max(index, 0), n - 1)
    return sorted_values[index]


def summarize(samples: Iterable[RequestMetricSample]) -> dict:
    status = {bucket: 0 for bucket in STATUS_CLASSES}
    durations: list[float] = []
    for sample in samples:
        bucket = f"{sample.status_code // 100}xx"
        if bucket in status:
            status[bucket] += 1
        durations.append(sample.duration_ms)

    durations.sort()
    count = len(durations)
    return {
        "count": count,
        "status": status,
        "latency_ms": {
            "avg": round(sum(durations) / count) if count else 0,
            "p50": percentile(durations, 50),
            "p95": percentile(durations, 95),
        },
    }


class RequestMetricsBuffer:
    def __init__(self, max_samples: int = DEFAULT_MAX_SAMPLES, clock: Optional[Clock] = None) -> None:
        self.max_samples = max(1, int(max_samples))
        self.clock = clock or system_clock
        self._lock = Lock()
        self._samples: deque[RequestMetricSample] = deque(maxlen=self.max_samples)

    def __len__(self) -> int:
        return len(self._samples)

    def record_request(
        self,
        method: str,
        path: str,
        status_code: int,
        duration_ms: float,
        timestamp: Optional[float] = None,
    ) -> Optional[RequestMetricSample]:
        """Append one sample; malformed input is clamped or dropped, never raised."""
        if not isinstance(duration_ms, Real) or not isinstance(status_code, Real):
            logger.debug("metrics_sample_ignored", reason="non_numeric", path=path)
            return None
        if not math.isfinite(duration_ms) or not math.isfinite(status_code):
            logger.debug("metrics_sample_ignored", reason="non_finite", path=path)
            return None
        status_code = int(status_code)
        if not 100 <= status_code <= 599:
            logger.debug("metrics_sample_ignored", reason="status_out_of_range", status=status_code, path=path)
            return None

        sample = RequestMetricSample(
            timestamp=self.clock.now_ms() if timestamp is None else float(timestamp),
            duration_ms=max(0.0, float(duration_ms)),
            status_code=status_code,
            method=str(method or "GET").upper(),
            path=str(path or "/"),
        )
        with self._lock:
            # deque(maxlen) evicts the oldest sample on overflow.
            self._samples.append(sample)
        return sample

    def samples(self) -> list[RequestMetricSample]:
        with self._lock:
            return list(self._samples)

    def snapshot(self, window_seconds: float = DEFAULT_WINDOW_SECONDS) -> dict:
        now = self.clock.now_ms()
        cutoff = now - window_seconds * 1000
        with self._lock:
            current = len(self._samples)
            in_window = [s for s in self._samples if s.timestamp >= cutoff]

        by_key: dict[tuple[str, str], list[RequestMetricSample]] = defaultdict(list)
        for sample in in_window:
            by_key[(sample.method, sample.path)].append(sample)

        routes = []
        for (method, path), route_samples in by_key.items():
            routes.append({"method": method, "path": path, **summarize(route_samples)})
        routes.sort(key=lambda route: route["count"], reverse=True)

        return {
            "generated_at": iso_from_ms(now),
            "window_seconds": window_seconds,
            "totals": summarize(in_window),
            "by_route": routes[:TOP_ROUTES],
            "buffer": {
                "max_samples": self.max_samples,
                "current_samples": current,
            },
        }

    def reset(self) -> None:
        with self._lock:
            self._samples.clear()


metrics = RequestMetricsBuffer()


def record_request(method: str, path: str, status_code: int, duration_ms: float) -> None:
    metrics.record_request(method, path, status_code, duration_ms)


def get_metrics_snapshot(window_seconds: float = DEFAULT_WINDOW_SECONDS) -> dict:
    return metrics.snapshot(window_seconds)


def reset_metrics() -> None:
    metrics.reset()

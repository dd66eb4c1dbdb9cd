"""Per-application container for the observability and security components.

``create_app`` builds one ``AppRuntime`` and stores it on ``app.state`` so
tests can run isolated instances instead of sharing module-level state.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from threading import Lock
from typing import Optional

from fastapi import Request

from flowats.config import Settings
from flowats.observability.logger import RequestLogger, create_request_logger
from flowats.observability.metrics import RequestMetricsBuffer
from flowats.observability.resources import ResourceMonitor, ResourceMonitorTask
from flowats.security.limiter import InMemoryBucketStore, SlidingWindowLimiter
from flowats.security.policy import SecurityPolicy
from flowats.services.supabase_probe import SupabaseProbe
from flowats.utils.time import Clock, system_clock


@dataclass
class ServerCounters:
    requests_total: int = 0
    generate_total: int = 0
    generate_success: int = 0
    generate_fail: int = 0

    def __post_init__(self) -> None:
        self._lock = Lock()

    def record_request(self) -> None:
        with self._lock:
            self.requests_total += 1

    def record_generation(self, success: bool) -> None:
        """Hook for the AI generation handlers; the counts appear in the health payload."""
        with self._lock:
            self.generate_total += 1
            if success:
                self.generate_success += 1
            else:
                self.generate_fail += 1

    def reset(self) -> None:
        with self._lock:
            self.requests_total = 0
            self.generate_total = 0
            self.generate_success = 0
            self.generate_fail = 0

    def to_dict(self) -> dict:
        with self._lock:
            return asdict(self)


class AppRuntime:
    def __init__(
        self,
        settings: Settings,
        clock: Optional[Clock] = None,
        metrics: Optional[RequestMetricsBuffer] = None,
        limiter: Optional[SlidingWindowLimiter] = None,
        policy: Optional[SecurityPolicy] = None,
        monitor: Optional[ResourceMonitor] = None,
        probe: Optional[SupabaseProbe] = None,
    ) -> None:
        self.settings = settings
        self.clock = clock or system_clock
        self.metrics = metrics or RequestMetricsBuffer(settings.metrics_max_samples, self.clock)
        self.limiter = limiter or SlidingWindowLimiter(
            InMemoryBucketStore(settings.rate_limit_max_keys),
            self.clock,
        )
        self.policy = policy or SecurityPolicy(self.limiter, settings.cors_origins_list)
        self.monitor = monitor or ResourceMonitor()
        self.monitor_task = ResourceMonitorTask(self.monitor, settings.resource_monitor_interval_seconds)
        self.probe = probe or SupabaseProbe(
            settings.supabase_url,
            settings.supabase_service_role_key,
            settings.health_deep_timeout_seconds,
        )
        self.counters = ServerCounters()
        self.started_at_ms = self.clock.now_ms()

    def uptime_seconds(self) -> int:
        return max(0, round((self.clock.now_ms() - self.started_at_ms) / 1000))


def get_runtime(request: Request) -> AppRuntime:
    """FastAPI dependency returning the runtime of the serving app."""
    return request.app.state.runtime


def get_request_logger(request: Request) -> RequestLogger:
    """The request-scoped logger set by the request context middleware."""
    log = getattr(request.state, "logger", None)
    if log is None:
        log = create_request_logger(request.headers.get("x-request-id"))
        request.state.logger = log
    return log

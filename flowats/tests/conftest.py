"""Shared test fixtures for FlowATS tests."""

from __future__ import annotations

import io
import json

import pytest

from flowats.config import Settings
from flowats.logging_config import setup_logging
from flowats.observability.resources import (
    ConnectionReading,
    CpuReading,
    MemoryReading,
    ProcessReading,
    ResourceMonitor,
    ResourceSnapshot,
)
from flowats.runtime import AppRuntime
from flowats.utils.time import Clock

GB = 1024 ** 3


class FakeClock(Clock):
    """Manually advanced clock; wall and monotonic time move together."""

    def __init__(self, start_ms: float = 1_700_000_000_000.0) -> None:
        self.wall = start_ms
        self.mono = 0.0

    def now_ms(self) -> float:
        return self.wall

    def monotonic_ms(self) -> float:
        return self.mono

    def advance(self, ms: float) -> None:
        self.wall += ms
        self.mono += ms


class StaticMonitor(ResourceMonitor):
    """Returns a fixed snapshot instead of reading the host."""

    def __init__(self, snapshot: ResourceSnapshot) -> None:
        self.snapshot = snapshot
        self.connection_probe = None
        self.rss_readings: list[int] = []

    def get_resource_metrics(self) -> ResourceSnapshot:
        return self.snapshot

    def rss_bytes(self) -> int:
        if self.rss_readings:
            return self.rss_readings.pop(0)
        return self.snapshot.process.rss


def build_snapshot(
    memory_fraction: float = 0.5,
    cpu: float = 0.1,
    heap_used: int = 50 * 1024 * 1024,
    heap_total: int = 100 * 1024 * 1024,
    connections: float | None = None,
) -> ResourceSnapshot:
    total = 16 * GB
    used = int(total * memory_fraction)
    return ResourceSnapshot(
        timestamp=1_700_000_000_000.0,
        cpu=CpuReading(usage=cpu, load_average=(0.5, 0.4, 0.3)),
        memory=MemoryReading(used=used, total=total, free=total - used),
        process=ProcessReading(
            heap_used=heap_used,
            heap_total=heap_total,
            rss=heap_used,
            external=0,
            uptime=120.0,
        ),
        connections=(
            ConnectionReading(active=9, idle=1, utilization=connections) if connections is not None else None
        ),
    )


class LogCapture:
    def __init__(self) -> None:
        self.stdout = io.StringIO()
        self.stderr = io.StringIO()

    @staticmethod
    def _records(stream: io.StringIO) -> list[dict]:
        return [json.loads(line) for line in stream.getvalue().splitlines() if line.strip()]

    @property
    def out(self) -> list[dict]:
        return self._records(self.stdout)

    @property
    def err(self) -> list[dict]:
        return self._records(self.stderr)

    def messages(self) -> list[str]:
        return [r["message"] for r in self.out + self.err]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def logs():
    """Route the flowats logger into in-memory streams at debug level."""
    capture = LogCapture()
    setup_logging("debug", stdout=capture.stdout, stderr=capture.stderr, colorize=False)
    yield capture
    setup_logging("info", stdout=io.StringIO(), stderr=io.StringIO(), colorize=False)


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        APP_ENV="test",
        CORS_ORIGIN="https://app.flowats.dev",
        METRICS_TOKEN="metrics-secret",
        SUPABASE_URL="",
        SUPABASE_SERVICE_ROLE_KEY="",
        RESOURCE_MONITOR_INTERVAL_SECONDS=0,
    )


@pytest.fixture
def healthy_monitor():
    return StaticMonitor(build_snapshot())


@pytest.fixture
def runtime(test_settings, clock, healthy_monitor):
    return AppRuntime(test_settings, clock=clock, monitor=healthy_monitor)


@pytest.fixture
def snapshot_factory():
    return build_snapshot


@pytest.fixture
def static_monitor():
    return StaticMonitor

"""Process and host resource monitoring for health checks.

CPU utilization is the delta of process CPU time between two readings divided
by the elapsed wall time, so each ``ResourceMonitor`` owns a ``CpuSampler``
holding the previous reading. The first sample after construction only covers
the time since the sampler was created.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import asdict, dataclass, field
from typing import Callable, Optional

import psutil

from flowats.observability.logger import StructuredLogger, get_logger

logger = get_logger("flowats.resources")

MEMORY_WARNING = 0.8
MEMORY_CRITICAL = 0.9
CPU_WARNING = 0.7
CPU_CRITICAL = 0.9
HEAP_CRITICAL = 0.9
CONNECTIONS_CRITICAL = 0.9

HEALTHY = "healthy"
WARNING = "warning"
CRITICAL = "critical"
_SEVERITY = {HEALTHY: 0, WARNING: 1, CRITICAL: 2}


@dataclass(frozen=True)
class CpuReading:
    usage: float  # fraction, 1.0 == one core fully busy
    load_average: tuple[float, float, float]


@dataclass(frozen=True)
class MemoryReading:
    used: int
    total: int
    free: int

    @property
    def percentage(self) -> float:
        return self.used / self.total if self.total else 0.0


@dataclass(frozen=True)
class ProcessReading:
    heap_used: int
    heap_total: int
    rss: int
    external: int
    uptime: float


@dataclass(frozen=True)
class ConnectionReading:
    active: int
    idle: int
    utilization: float


@dataclass(frozen=True)
class ResourceSnapshot:
    timestamp: float  # epoch ms
    cpu: CpuReading
    memory: MemoryReading
    process: ProcessReading
    connections: Optional[ConnectionReading] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["memory"]["percentage"] = self.memory.percentage
        data["cpu"]["load_average"] = list(self.cpu.load_average)
        if self.connections is None:
            data.pop("connections")
        return data


@dataclass
class ResourceStatus:
    status: str = HEALTHY
    alerts: list[str] = field(default_factory=list)

    def raise_to(self, level: str, alert: str) -> None:
        self.alerts.append(alert)
        if _SEVERITY[level] > _SEVERITY[self.status]:
            self.status = level


def format_bytes(num_bytes: float) -> str:
    if num_bytes == 0:
        return "0 B"
    sizes = ("B", "KB", "MB", "GB")
    value = float(num_bytes)
    for unit in sizes[:-1]:
        if abs(value) < 1024:
            return f"{value:.2f} {unit}"
        value /= 1024
    return f"{value:.2f} {sizes[-1]}"


def format_percentage(value: float) -> str:
    return f"{value * 100:.2f}%"


class CpuSampler:
    """Holds the previous (cpu seconds, wall seconds) pair between samples."""

    def __init__(
        self,
        cpu_time: Optional[Callable[[], float]] = None,
        wall_time: Callable[[], float] = time.monotonic,
    ) -> None:
        if cpu_time is None:
            process = psutil.Process()

            def cpu_time() -> float:
                times = process.cpu_times()
                return times.user + times.system

        self._cpu_time = cpu_time
        self._wall_time = wall_time
        self._last_cpu = cpu_time()
        self._last_wall = wall_time()

    def sample(self) -> float:
        cpu_now = self._cpu_time()
        wall_now = self._wall_time()
        cpu_delta = cpu_now - self._last_cpu
        wall_delta = wall_now - self._last_wall
        self._last_cpu, self._last_wall = cpu_now, wall_now
        if wall_delta <= 0:
            return 0.0
        return max(0.0, cpu_delta / wall_delta)


def classify(snapshot: ResourceSnapshot) -> ResourceStatus:
    """healthy|warning|critical; the worst dimension wins."""
    result = ResourceStatus()

    memory = snapshot.memory.percentage
    if memory > MEMORY_CRITICAL:
        result.raise_to(CRITICAL, f"Critical memory usage: {format_percentage(memory)}")
    elif memory > MEMORY_WARNING:
        result.raise_to(WARNING, f"High memory usage: {format_percentage(memory)}")

    cpu = snapshot.cpu.usage
    if cpu > CPU_CRITICAL:
        result.raise_to(CRITICAL, f"Critical CPU usage: {format_percentage(cpu)}")
    elif cpu > CPU_WARNING:
        result.raise_to(WARNING, f"High CPU usage: {format_percentage(cpu)}")

    if snapshot.process.heap_total > 0:
        heap = snapshot.process.heap_used / snapshot.process.heap_total
        if heap > HEAP_CRITICAL:
            result.raise_to(CRITICAL, f"Critical heap usage: {format_percentage(heap)}")

    connections = snapshot.connections
    if connections is not None and connections.utilization > CONNECTIONS_CRITICAL:
        result.raise_to(
            CRITICAL,
            f"Critical connection pool usage: {format_percentage(connections.utilization)}",
        )

    return result


def get_resource_status(snapshot: ResourceSnapshot) -> ResourceStatus:
    return classify(snapshot)


def health_status_code(status: str) -> int:
    return 503 if status == CRITICAL else 200


class ResourceMonitor:
    def __init__(
        self,
        cpu_sampler: Optional[CpuSampler] = None,
        process: Optional[psutil.Process] = None,
        connection_probe: Optional[Callable[[], Optional[ConnectionReading]]] = None,
    ) -> None:
        self.process = process or psutil.Process()
        self.cpu_sampler = cpu_sampler or CpuSampler()
        self.connection_probe = connection_probe

    def get_resource_metrics(self) -> ResourceSnapshot:
        vm = psutil.virtual_memory()
        mem_info = self.process.memory_info()
        load = psutil.getloadavg()

        connections = None
        if self.connection_probe is not None:
            try:
                connections = self.connection_probe()
            except Exception as exc:  # noqa: BLE001
                logger.warn("connection_probe_failed", error=str(exc))

        return ResourceSnapshot(
            timestamp=time.time() * 1000.0,
            cpu=CpuReading(usage=self.cpu_sampler.sample(), load_average=tuple(load)),
            memory=MemoryReading(used=vm.total - vm.available, total=vm.total, free=vm.available),
            process=ProcessReading(
                heap_used=mem_info.rss,
                heap_total=mem_info.vms,
                rss=mem_info.rss,
                external=getattr(mem_info, "shared", 0),
                uptime=max(0.0, time.time() - self.process.create_time()),
            ),
            connections=connections,
        )

    def get_resource_status(self, snapshot: Optional[ResourceSnapshot] = None) -> ResourceStatus:
        return classify(snapshot or self.get_resource_metrics())

    def rss_bytes(self) -> int:
        """Current resident set size of this process."""
        return self.process.memory_info().rss


def render_metrics(snapshot: ResourceSnapshot) -> dict:
    """Human-readable view for the health payload, with raw values alongside."""
    rendered = {
        "cpu": {
            "usage": format_percentage(snapshot.cpu.usage),
            "loadAverage": [f"{avg:.2f}" for avg in snapshot.cpu.load_average],
        },
        "memory": {
            "used": format_bytes(snapshot.memory.used),
            "total": format_bytes(snapshot.memory.total),
            "percentage": format_percentage(snapshot.memory.percentage),
        },
        "process": {
            "heapUsed": format_bytes(snapshot.process.heap_used),
            "heapTotal": format_bytes(snapshot.process.heap_total),
            "rss": format_bytes(snapshot.process.rss),
            "uptime": round(snapshot.process.uptime, 1),
        },
        "raw": snapshot.to_dict(),
    }
    if snapshot.connections is not None:
        rendered["connections"] = {
            "active": snapshot.connections.active,
            "idle": snapshot.connections.idle,
            "utilization": format_percentage(snapshot.connections.utilization),
        }
    return rendered


def log_resource_metrics(snapshot: ResourceSnapshot, log: Optional[StructuredLogger] = None) -> ResourceStatus:
    log = log or logger
    result = classify(snapshot)
    level = {HEALTHY: "info", WARNING: "warn", CRITICAL: "error"}[result.status]
    log.log(
        level,
        "resource_metrics",
        status=result.status,
        cpu=format_percentage(snapshot.cpu.usage),
        memory=f"{format_bytes(snapshot.memory.used)} / {format_bytes(snapshot.memory.total)}",
        memoryPercentage=format_percentage(snapshot.memory.percentage),
        heap=f"{format_bytes(snapshot.process.heap_used)} / {format_bytes(snapshot.process.heap_total)}",
        uptimeSec=round(snapshot.process.uptime),
        alerts=result.alerts or None,
    )
    return result


class ResourceMonitorTask:
    """Asyncio background task logging resource usage on an interval."""

    def __init__(self, monitor: ResourceMonitor, interval_seconds: float = 30.0) -> None:
        self.monitor = monitor
        self.interval = interval_seconds
        self._task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running or self.interval <= 0:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("resource_monitor_started", intervalSec=self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("resource_monitor_stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval)
                if not self._running:
                    break
                log_resource_metrics(self.monitor.get_resource_metrics())
            except asyncio.CancelledError:
                break
            except Exception as exc:  # noqa: BLE001
                logger.error("resource_monitor_tick_failed", error=str(exc), exc_info=True)

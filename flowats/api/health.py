"""Health check endpoint: configuration, counters and live resource usage."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from flowats.api.responses import live_json_response
from flowats.observability.resources import classify, health_status_code, render_metrics
from flowats.runtime import AppRuntime, get_runtime

router = APIRouter(prefix="/api", tags=["health"])


async def _supabase_status(runtime: AppRuntime, deep: bool) -> str:
    if not runtime.settings.supabase_configured:
        return "missing-env"
    if not deep:
        return "ok"
    # Informational only: never changes the HTTP status.
    return "ok" if await runtime.probe.check() else "error"


@router.get("/health")
async def health_check(request: Request, deep: str = "0", runtime: AppRuntime = Depends(get_runtime)):
    settings = runtime.settings
    snapshot = runtime.monitor.get_resource_metrics()
    result = classify(snapshot)

    payload = {
        "status": result.status,
        "timestamp": runtime.clock.iso_now(),
        "supabase_env": "present" if settings.supabase_configured else "missing",
        "supabase": await _supabase_status(runtime, deep == "1"),
        "ai_provider": settings.ai_provider,
        "mock_mode": settings.fake_ai,
        "uptime_sec": runtime.uptime_seconds(),
        "counters": runtime.counters.to_dict(),
        "metrics": render_metrics(snapshot),
        "alerts": result.alerts,
    }
    return live_json_response(request, payload, health_status_code(result.status))

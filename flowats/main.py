"""FlowATS — FastAPI application entry point for the observability core."""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from flowats.api.health import router as health_router
from flowats.api.metrics import router as metrics_router
from flowats.config import Settings, settings as default_settings
from flowats.errors import ApiError, error_payload
from flowats.logging_config import setup_logging
from flowats.observability.logger import create_request_logger, get_logger, log_config_event
from flowats.observability.resources import format_bytes
from flowats.runtime import AppRuntime
from flowats.security.policy import apply_security_headers, get_client_ip, is_https

logger = get_logger("flowats.server")

SLOW_REQUEST_MS = 1000
HIGH_MEMORY_DELTA_BYTES = 10 * 1024 * 1024
QUIET_PATHS = frozenset({"/api/health"})

_REQUIRED_VARS = {
    "SUPABASE_URL": "supabase_url",
    "SUPABASE_SERVICE_ROLE_KEY": "supabase_service_role_key",
}
_OPTIONAL_VARS = {
    "AI_API_KEY": "ai_api_key",
    "CORS_ORIGIN": "cors_origin",
    "LOG_LEVEL": "log_level",
    "FAKE_AI": "fake_ai",
    "ALLOW_DEV_AUTH": "allow_dev_auth",
    "METRICS_TOKEN": "metrics_token",
}


def _is_secret(name: str) -> bool:
    return "KEY" in name or "TOKEN" in name


def validate_configuration(cfg: Settings) -> None:
    """Log one structured event per configuration item; never raises."""
    for name, attr in _REQUIRED_VARS.items():
        value = getattr(cfg, attr)
        if not value:
            log_config_event("missing", name, severity="error")
        else:
            log_config_event("loaded", name, length=len(value), masked=f"{value[:8]}...")

    for name, attr in _OPTIONAL_VARS.items():
        value = getattr(cfg, attr)
        if value:
            log_config_event("loaded", name, value="[MASKED]" if _is_secret(name) else value)

    if not cfg.fake_ai and not cfg.ai_api_key:
        log_config_event("invalid", "AI_PROVIDER", issue="AI_API_KEY required when FAKE_AI is not true")

    if cfg.is_production and cfg.allow_dev_auth:
        log_config_event("invalid", "ALLOW_DEV_AUTH", issue="Dev auth should be disabled in production")

    if cfg.is_production and cfg.allow_all_origins:
        log_config_event("invalid", "CORS_ORIGIN", issue="production allows every origin")

    if cfg.is_production and not cfg.metrics_token:
        log_config_event("invalid", "METRICS_TOKEN", issue="metrics endpoint is closed without a token")


def api_error_response(exc: ApiError) -> JSONResponse:
    return JSONResponse(status_code=exc.status, content=exc.to_payload(), headers=exc.headers)


async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    return api_error_response(exc)


def create_app(cfg: Optional[Settings] = None, runtime: Optional[AppRuntime] = None) -> FastAPI:
    if runtime is None:
        runtime = AppRuntime(cfg or default_settings)
    cfg = runtime.settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup / shutdown lifecycle."""
        setup_logging(cfg.log_level, is_test=cfg.is_test)
        validate_configuration(cfg)
        await runtime.monitor_task.start()
        logger.info("server_started", env=cfg.app_env, port=cfg.port, aiProvider=cfg.ai_provider)

        yield

        await runtime.monitor_task.stop()
        logger.info("server_stopped")

    app = FastAPI(
        title="FlowATS",
        description="FlowATS API — observability and request governance",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.runtime = runtime
    app.add_exception_handler(ApiError, api_error_handler)

    # CORS (innermost, so preflights still pass the guard and get headers)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_origins_list or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "Retry-After"],
    )

    # Origin enforcement, rate limiting and security headers
    @app.middleware("http")
    async def security_guard(request: Request, call_next):
        https = is_https(request.headers, request.url.scheme)
        try:
            runtime.policy.enforce(request)
        except ApiError as exc:
            response: Response = api_error_response(exc)
        else:
            response = await call_next(request)
        apply_security_headers(response.headers, https)
        return response

    # Request tracing + access log + metrics (outermost)
    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        peer = request.client.host if request.client else None
        log = create_request_logger(
            request_id,
            clock=runtime.clock,
            ip=get_client_ip(request.headers, peer),
            userAgent=request.headers.get("user-agent"),
        )
        request.state.request_id = request_id
        request.state.logger = log

        method, path = request.method, request.url.path
        if path not in QUIET_PATHS:
            log.request_start(method, path)
        start = runtime.clock.monotonic_ms()
        rss_before = runtime.monitor.rss_bytes()

        try:
            response: Response = await call_next(request)
        except Exception as exc:  # noqa: BLE001
            log.error("unhandled_exception", method=method, path=path, error=type(exc).__name__, exc_info=True)
            response = JSONResponse(status_code=500, content=error_payload(exc))
            apply_security_headers(response.headers, is_https(request.headers, request.url.scheme))

        duration_ms = max(0.0, runtime.clock.monotonic_ms() - start)
        response.headers["X-Request-ID"] = request_id
        runtime.counters.record_request()
        runtime.metrics.record_request(method, path, response.status_code, duration_ms)
        log.request_end(method, path, response.status_code, duration_ms)
        if duration_ms > SLOW_REQUEST_MS:
            log.warn("slow_request", method=method, path=path, durationMs=round(duration_ms, 2))
        memory_delta = runtime.monitor.rss_bytes() - rss_before
        if memory_delta > HIGH_MEMORY_DELTA_BYTES:
            log.warn("high_memory_delta", method=method, path=path, memoryDelta=format_bytes(memory_delta))
        return response

    app.include_router(health_router)
    app.include_router(metrics_router)

    @app.get("/")
    async def root():
        return {
            "service": "flowats-api",
            "status": "ok",
            "endpoints": {
                "health": "/api/health",
                "metrics": "/api/metrics",
            },
        }

    return app


app = create_app()


def run() -> None:
    import uvicorn

    uvicorn.run("flowats.main:app", host=default_settings.host, port=default_settings.port)


if __name__ == "__main__":
    run()

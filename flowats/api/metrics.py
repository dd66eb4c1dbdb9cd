"""Request metrics endpoint, guarded by a bearer token."""

from __future__ import annotations

import hmac

from fastapi import APIRouter, Depends, Query, Request

from flowats.api.responses import live_json_response
from flowats.errors import UnauthorizedError
from flowats.observability.metrics import DEFAULT_WINDOW_SECONDS
from flowats.runtime import AppRuntime, get_request_logger, get_runtime

router = APIRouter(prefix="/api", tags=["metrics"])

MAX_WINDOW_SECONDS = 24 * 60 * 60


def _bearer_token(request: Request) -> str:
    auth = request.headers.get("authorization") or ""
    scheme, _, token = auth.partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return token.strip()


def require_metrics_token(request: Request, runtime: AppRuntime = Depends(get_runtime)) -> None:
    configured = runtime.settings.metrics_token
    provided = _bearer_token(request)
    # No configured token means the endpoint stays closed.
    if not configured or not provided or not hmac.compare_digest(configured.encode(), provided.encode()):
        get_request_logger(request).auth_event("metrics_token", success=False, path=request.url.path)
        raise UnauthorizedError()


@router.get("/metrics", dependencies=[Depends(require_metrics_token)])
async def get_metrics(
    request: Request,
    window: int = Query(DEFAULT_WINDOW_SECONDS, ge=1, le=MAX_WINDOW_SECONDS),
    runtime: AppRuntime = Depends(get_runtime),
):
    return live_json_response(request, runtime.metrics.snapshot(window_seconds=window))

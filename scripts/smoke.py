#!/usr/bin/env python3
"""Observability smoke for a running FlowATS API.

Checks health, metrics auth, security headers, origin enforcement and request
tracing against a live server and fails fast on regressions.

    FLOWATS_URL=http://127.0.0.1:8787 METRICS_TOKEN=... python scripts/smoke.py
"""

from __future__ import annotations

import json
import os
import sys
import uuid

import httpx

BASE_URL = os.getenv("FLOWATS_URL", "http://127.0.0.1:8787").rstrip("/")
METRICS_TOKEN = os.getenv("METRICS_TOKEN", "")
# Origin enforcement is only active when the server has an allow-list.
CORS_ORIGIN = os.getenv("CORS_ORIGIN", "").strip()
TIMEOUT = 10.0


def expect(condition: bool, message: str) -> None:
    if not condition:
        raise AssertionError(message)


def get(client: httpx.Client, path: str, expected: int | tuple[int, ...] = 200, **kwargs):
    resp = client.get(f"{BASE_URL}{path}", **kwargs)
    allowed = expected if isinstance(expected, tuple) else (expected,)
    expect(resp.status_code in allowed, f"GET {path} -> {resp.status_code} not in {allowed}; body={resp.text[:500]}")
    return resp


def post(client: httpx.Client, path: str, expected: int = 200, **kwargs):
    resp = client.post(f"{BASE_URL}{path}", **kwargs)
    expect(resp.status_code == expected, f"POST {path} -> {resp.status_code} != {expected}; body={resp.text[:500]}")
    return resp


def main() -> int:
    with httpx.Client(timeout=TIMEOUT) as client:
        # 1) Health: 200 or 503 are both valid answers, the body shape is not optional
        health_resp = get(client, "/api/health", expected=(200, 503))
        health = health_resp.json()
        expect(health.get("status") in {"healthy", "warning", "critical"}, "unexpected health status")
        expect("metrics" in health and "raw" in health["metrics"], "health payload missing metrics")
        expect(health_resp.headers.get("cache-control") == "no-store", "health response is cacheable")
        expect(health_resp.headers.get("x-content-type-options") == "nosniff", "missing security headers")

        deep = get(client, "/api/health?deep=1", expected=(200, 503)).json()
        expect(deep.get("supabase") in {"ok", "error", "missing-env"}, "deep health missing supabase state")

        # 2) Request tracing
        request_id = f"smoke-{uuid.uuid4()}"
        traced = get(client, "/", headers={"X-Request-ID": request_id})
        expect(traced.headers.get("x-request-id") == request_id, "request id was not echoed")

        # 3) Metrics auth
        _ = get(client, "/api/metrics", expected=401)
        if METRICS_TOKEN:
            snap = get(
                client,
                "/api/metrics?window=60",
                headers={"Authorization": f"Bearer {METRICS_TOKEN}"},
            ).json()
            expect(snap.get("window_seconds") == 60, "metrics window not honoured")
            expect(snap["totals"]["count"] >= 1, "metrics did not record earlier requests")
            expect("buffer" in snap, "metrics snapshot missing buffer stats")

        # 4) Browser-origin enforcement on mutations
        if CORS_ORIGIN and CORS_ORIGIN != "*":
            forbidden = post(
                client,
                "/api/smoke-origin-check",
                expected=403,
                headers={"Origin": "https://smoke.invalid"},
            ).json()
            expect(forbidden.get("error") == "forbidden_origin", "origin guard did not reject unknown origin")

    print(json.dumps({"ok": True, "message": "FlowATS observability smoke passed"}))
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except Exception as exc:  # noqa: BLE001
        print(json.dumps({"ok": False, "error": str(exc)}))
        sys.exit(1)

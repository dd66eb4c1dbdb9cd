"""JSON responses for live-state endpoints (health, metrics).

These bodies must never be cached by intermediaries, and larger ones are
gzip-compressed at the fastest level when the client accepts it.
"""

from __future__ import annotations

import gzip
import json

from fastapi import Request, Response

GZIP_MIN_BYTES = 512
GZIP_LEVEL = 1


def accepts_gzip(accept_encoding: str | None) -> bool:
    for part in (accept_encoding or "").split(","):
        token, _, params = part.strip().partition(";")
        if token.strip().lower() not in {"gzip", "*"}:
            continue
        quality = params.strip()
        if quality.startswith("q="):
            try:
                if float(quality[2:]) <= 0:
                    continue
            except ValueError:
                continue
        return True
    return False


def live_json_response(request: Request, payload: dict, status_code: int = 200) -> Response:
    body = json.dumps(payload, default=str, separators=(",", ":")).encode("utf-8")
    headers = {
        "Cache-Control": "no-store",
        "Vary": "Accept-Encoding",
    }
    if len(body) >= GZIP_MIN_BYTES and accepts_gzip(request.headers.get("accept-encoding")):
        body = gzip.compress(body, compresslevel=GZIP_LEVEL)
        headers["Content-Encoding"] = "gzip"
    return Response(
        content=body,
        status_code=status_code,
        media_type="application/json",
        headers=headers,
    )

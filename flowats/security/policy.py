"""Request security policy: client IP, HTTPS detection, baseline headers,
browser-origin enforcement for mutating API calls and per-IP rate limiting.

Checks raise ``ApiError`` subclasses and never write responses themselves.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping, MutableMapping, Optional

from starlette.requests import Request

from flowats.errors import ForbiddenOriginError, RateLimitedError
from flowats.observability.logger import get_logger
from flowats.security.limiter import SlidingWindowLimiter

logger = get_logger("flowats.security")

MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
RATE_LIMIT_EXEMPT_PATHS = frozenset({"/api/health"})

FIVE_MINUTES_MS = 5 * 60 * 1000

BASELINE_SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "X-DNS-Prefetch-Control": "off",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=(), payment=(), usb=()",
    # API-only surface: nothing here is ever rendered as HTML.
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'; base-uri 'none'; form-action 'none'",
}
HSTS_HEADER_VALUE = "max-age=31536000; includeSubDomains"

# (prefix, group) - first match wins.
ROUTE_GROUPS: tuple[tuple[str, str], ...] = (
    ("/api/generate/", "/api/generate/*"),
    ("/api/predict/", "/api/predict/*"),
    ("/api/predictions/", "/api/predictions/*"),
    ("/api/cover-letter/drafts", "/api/cover-letter/drafts"),
    ("/api/artifacts", "/api/artifacts"),
    ("/api/job-materials", "/api/job-materials"),
    ("/api/jobs/", "/api/jobs/*"),
    ("/api/company/", "/api/company/*"),
    ("/api/analytics/", "/api/analytics/*"),
    ("/api/monitoring/", "/api/monitoring/*"),
)


@dataclass(frozen=True)
class RateQuota:
    max_hits: int
    window_ms: int = FIVE_MINUTES_MS


DEFAULT_QUOTA = RateQuota(600)
AI_QUOTA = RateQuota(200)
MONITORING_QUOTA = RateQuota(120)

GROUP_QUOTAS: dict[str, RateQuota] = {
    "/api/generate/*": AI_QUOTA,
    "/api/predict/*": AI_QUOTA,
    "/api/predictions/*": AI_QUOTA,
    "/api/monitoring/*": MONITORING_QUOTA,
    "/api/metrics": MONITORING_QUOTA,
}


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is None and not hasattr(headers, "getlist"):
        # plain dicts are case-sensitive; Starlette Headers are not
        for key, candidate in headers.items():
            if key.lower() == name:
                return candidate
    return value


def normalize_ip(ip: str) -> str:
    ip = ip.strip()
    if ip.lower().startswith("::ffff:") and "." in ip:
        return ip[7:]
    return ip


def get_client_ip(headers: Mapping[str, str], peer_host: Optional[str] = None) -> str:
    """First X-Forwarded-For entry, then X-Real-IP, then the socket peer."""
    forwarded = _header(headers, "x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return normalize_ip(first)
    real_ip = (_header(headers, "x-real-ip") or "").strip()
    if real_ip:
        return normalize_ip(real_ip)
    if peer_host:
        return normalize_ip(peer_host)
    return "unknown"


def is_https(headers: Mapping[str, str], scheme: Optional[str] = None) -> bool:
    forwarded_proto = _header(headers, "x-forwarded-proto")
    if forwarded_proto:
        return forwarded_proto.split(",")[0].strip().lower() == "https"
    return (scheme or "").lower() in {"https", "wss"}


def apply_security_headers(response_headers: MutableMapping[str, str], https: bool) -> None:
    for name, value in BASELINE_SECURITY_HEADERS.items():
        response_headers[name] = value
    # HSTS over plaintext could pin a same-origin HTTP fallback.
    if https:
        response_headers["Strict-Transport-Security"] = HSTS_HEADER_VALUE


def parse_allowed_origins(raw: Optional[str | Iterable[str]]) -> Optional[frozenset[str]]:
    """Return the allow-list, or ``None`` meaning allow-all (empty or ``*``)."""
    if raw is None:
        return None
    if isinstance(raw, str):
        origins = [o.strip() for o in raw.split(",")]
    else:
        origins = [str(o).strip() for o in raw]
    origins = [o.rstrip("/") for o in origins if o]
    if not origins or "*" in origins:
        return None
    return frozenset(origins)


def enforce_origin(
    method: str,
    path: str,
    origin: Optional[str],
    allowed_origins: Optional[frozenset[str]],
) -> None:
    if method.upper() not in MUTATING_METHODS or not path.startswith("/api/"):
        return
    # Non-browser clients send no Origin; this guard is not authentication.
    if not origin or allowed_origins is None:
        return
    if origin.strip().rstrip("/") not in allowed_origins:
        raise ForbiddenOriginError(origin)


def route_group(path: str) -> str:
    for prefix, group in ROUTE_GROUPS:
        if path.startswith(prefix):
            return group
    return path


def quota_for_group(group: str) -> RateQuota:
    return GROUP_QUOTAS.get(group, DEFAULT_QUOTA)


class SecurityPolicy:
    """Origin and rate-limit enforcement bound to one limiter and allow-list."""

    def __init__(
        self,
        limiter: SlidingWindowLimiter,
        allowed_origins: Optional[str | Iterable[str]] = None,
        default_quota: RateQuota = DEFAULT_QUOTA,
        group_quotas: Optional[Mapping[str, RateQuota]] = None,
    ) -> None:
        self.limiter = limiter
        self.allowed_origins = parse_allowed_origins(allowed_origins)
        self.default_quota = default_quota
        self.group_quotas = dict(GROUP_QUOTAS if group_quotas is None else group_quotas)

    def quota_for(self, group: str) -> RateQuota:
        return self.group_quotas.get(group, self.default_quota)

    def check_origin(self, method: str, path: str, headers: Mapping[str, str]) -> None:
        origin = _header(headers, "origin")
        try:
            enforce_origin(method, path, origin, self.allowed_origins)
        except ForbiddenOriginError:
            logger.warn("forbidden_origin", method=method, path=path, origin=origin)
            raise

    def check_rate_limit(
        self,
        method: str,
        path: str,
        headers: Mapping[str, str],
        peer_host: Optional[str] = None,
    ) -> None:
        if not path.startswith("/api/") or path in RATE_LIMIT_EXEMPT_PATHS:
            return
        ip = get_client_ip(headers, peer_host)
        group = route_group(path)
        quota = self.quota_for(group)
        key = f"ip:{ip}:{method.upper()}:{group}"
        result = self.limiter.check_limit(key, quota.max_hits, quota.window_ms)
        if not result.ok:
            retry_after = result.retry_after_seconds or 1
            logger.warn("rate_limited", ip=ip, method=method, group=group, retryAfter=retry_after)
            raise RateLimitedError(retry_after)

    def check(
        self,
        method: str,
        path: str,
        headers: Mapping[str, str],
        peer_host: Optional[str] = None,
    ) -> None:
        self.check_origin(method, path, headers)
        self.check_rate_limit(method, path, headers, peer_host)

    def enforce(self, request: Request) -> None:
        peer = request.client.host if request.client else None
        self.check(request.method, request.url.path, request.headers, peer)

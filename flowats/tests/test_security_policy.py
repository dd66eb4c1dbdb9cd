"""Tests for client IP derivation, security headers, origin checks and quotas."""

import pytest

from flowats.errors import ForbiddenOriginError, RateLimitedError
from flowats.security.limiter import SlidingWindowLimiter
from flowats.security.policy import (
    AI_QUOTA,
    DEFAULT_QUOTA,
    HSTS_HEADER_VALUE,
    MONITORING_QUOTA,
    RateQuota,
    SecurityPolicy,
    apply_security_headers,
    enforce_origin,
    get_client_ip,
    is_https,
    parse_allowed_origins,
    quota_for_group,
    route_group,
)

ALLOWED = frozenset({"https://app.flowats.dev"})


class TestClientIp:
    def test_first_forwarded_entry_wins(self):
        headers = {"x-forwarded-for": "203.0.113.5, 10.0.0.1"}
        assert get_client_ip(headers, "10.0.0.2") == "203.0.113.5"

    def test_forwarded_mapped_ipv4_is_unwrapped(self):
        assert get_client_ip({"x-forwarded-for": "10.0.0.5, 10.0.0.1"}) == "10.0.0.5"
        assert get_client_ip({"x-forwarded-for": "::ffff:127.0.0.1"}) == "127.0.0.1"

    def test_real_ip_header_is_case_insensitive(self):
        assert get_client_ip({"X-Real-IP": " 198.51.100.7 "}, "10.0.0.2") == "198.51.100.7"

    def test_peer_address_is_normalized(self):
        assert get_client_ip({}, "::ffff:127.0.0.1") == "127.0.0.1"
        assert get_client_ip({}, "2001:db8::1") == "2001:db8::1"

    def test_unknown_without_any_source(self):
        assert get_client_ip({}, None) == "unknown"
        assert get_client_ip({"x-forwarded-for": " , 10.0.0.1"}, None) == "unknown"


class TestHttpsAndHeaders:
    def test_forwarded_proto_takes_precedence(self):
        assert is_https({"x-forwarded-proto": "https"}, "http")
        assert not is_https({"x-forwarded-proto": "http"}, "https")
        assert is_https({"x-forwarded-proto": "https,http"}, "http")

    def test_falls_back_to_connection_scheme(self):
        assert is_https({}, "https")
        assert not is_https({}, "http")
        assert not is_https({}, None)

    def test_baseline_headers_without_hsts_over_http(self):
        headers: dict[str, str] = {}
        apply_security_headers(headers, https=False)

        assert headers["X-Content-Type-Options"] == "nosniff"
        assert headers["X-Frame-Options"] == "DENY"
        assert "default-src 'none'" in headers["Content-Security-Policy"]
        assert "Strict-Transport-Security" not in headers

    def test_hsts_only_over_https(self):
        headers: dict[str, str] = {}
        apply_security_headers(headers, https=True)

        assert headers["Strict-Transport-Security"] == HSTS_HEADER_VALUE


class TestOriginEnforcement:
    def test_mutation_from_unlisted_origin_is_forbidden(self):
        with pytest.raises(ForbiddenOriginError) as exc_info:
            enforce_origin("POST", "/api/jobs", "https://evil.example", ALLOWED)
        assert exc_info.value.status == 403
        assert exc_info.value.to_payload()["error"] == "forbidden_origin"

    def test_allowed_origin_passes_with_trailing_slash(self):
        enforce_origin("DELETE", "/api/jobs/1", "https://app.flowats.dev/", ALLOWED)

    def test_missing_origin_passes(self):
        enforce_origin("POST", "/api/jobs", None, ALLOWED)
        enforce_origin("POST", "/api/jobs", "", ALLOWED)

    def test_safe_methods_and_non_api_paths_pass(self):
        enforce_origin("GET", "/api/jobs", "https://evil.example", ALLOWED)
        enforce_origin("OPTIONS", "/api/jobs", "https://evil.example", ALLOWED)
        enforce_origin("POST", "/webhooks/stripe", "https://evil.example", ALLOWED)

    def test_allow_all_configuration(self):
        assert parse_allowed_origins("*") is None
        assert parse_allowed_origins("") is None
        assert parse_allowed_origins(["https://a.dev", "*"]) is None
        enforce_origin("POST", "/api/jobs", "https://evil.example", None)

    def test_parse_allowed_origins(self):
        parsed = parse_allowed_origins("https://a.dev/, https://b.dev ,")
        assert parsed == frozenset({"https://a.dev", "https://b.dev"})


class TestRouteGroups:
    @pytest.mark.parametrize(
        ("path", "group"),
        [
            ("/api/generate/resume", "/api/generate/*"),
            ("/api/predict/fit", "/api/predict/*"),
            ("/api/jobs/42", "/api/jobs/*"),
            ("/api/artifacts/9", "/api/artifacts"),
            ("/api/monitoring/queue", "/api/monitoring/*"),
            ("/api/profile", "/api/profile"),
        ],
    )
    def test_route_group(self, path, group):
        assert route_group(path) == group

    def test_group_quotas(self):
        assert quota_for_group("/api/generate/*") is AI_QUOTA
        assert quota_for_group("/api/monitoring/*") is MONITORING_QUOTA
        assert quota_for_group("/api/metrics") is MONITORING_QUOTA
        assert quota_for_group("/api/jobs/*") is DEFAULT_QUOTA
        assert (DEFAULT_QUOTA.max_hits, AI_QUOTA.max_hits, MONITORING_QUOTA.max_hits) == (600, 200, 120)
        assert DEFAULT_QUOTA.window_ms == 5 * 60 * 1000


class TestSecurityPolicy:
    def _policy(self, clock, max_hits=2):
        limiter = SlidingWindowLimiter(clock=clock)
        return SecurityPolicy(
            limiter,
            ["https://app.flowats.dev"],
            default_quota=RateQuota(max_hits, 60_000),
            group_quotas={},
        )

    def test_rate_limit_raises_with_retry_after(self, clock, logs):
        policy = self._policy(clock)
        headers = {"x-forwarded-for": "203.0.113.5"}
        policy.check("GET", "/api/jobs/1", headers)
        policy.check("GET", "/api/jobs/2", headers)

        with pytest.raises(RateLimitedError) as exc_info:
            policy.check("GET", "/api/jobs/3", headers)

        assert exc_info.value.status == 429
        assert exc_info.value.headers == {"Retry-After": "60"}
        assert logs.out[-1]["message"] == "rate_limited"
        assert logs.out[-1]["group"] == "/api/jobs/*"

    def test_buckets_are_per_ip_and_method(self, clock):
        policy = self._policy(clock, max_hits=1)
        policy.check("GET", "/api/jobs/1", {}, "10.0.0.1")
        policy.check("GET", "/api/jobs/1", {}, "10.0.0.2")
        policy.check("POST", "/api/jobs/1", {}, "10.0.0.1")

        with pytest.raises(RateLimitedError):
            policy.check("GET", "/api/jobs/1", {}, "10.0.0.1")

    def test_health_and_non_api_paths_are_not_limited(self, clock):
        policy = self._policy(clock, max_hits=1)
        for _ in range(5):
            policy.check("GET", "/api/health", {}, "10.0.0.1")
            policy.check("GET", "/", {}, "10.0.0.1")

    def test_origin_checked_before_quota(self, clock, logs):
        policy = self._policy(clock, max_hits=0)
        with pytest.raises(ForbiddenOriginError):
            policy.check("POST", "/api/jobs", {"Origin": "https://evil.example"}, "10.0.0.1")

        assert logs.out[-1]["message"] == "forbidden_origin"

"""Typed API errors raised by the policy layer and rendered by the HTTP entry point."""

from __future__ import annotations

from typing import Optional


class ApiError(Exception):
    """Base error carrying an HTTP status and a short machine-readable code."""

    def __init__(
        self,
        status: int,
        message: str,
        code: str = "error",
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.message = message
        self.code = code
        self.headers = dict(headers or {})

    def to_payload(self) -> dict:
        return {"error": self.code, "message": self.message}


class ForbiddenOriginError(ApiError):
    """Browser-originated mutation from an origin outside the allow-list."""

    def __init__(self, origin: str) -> None:
        super().__init__(403, "Origin not allowed", "forbidden_origin")
        self.origin = origin


class RateLimitedError(ApiError):
    """Quota exceeded; always paired with a Retry-After header."""

    def __init__(self, retry_after: int) -> None:
        retry_after = max(1, int(retry_after))
        super().__init__(
            429,
            "Too many requests, retry later",
            "rate_limited",
            headers={"Retry-After": str(retry_after)},
        )
        self.retry_after = retry_after


class UnauthorizedError(ApiError):
    def __init__(self, message: str = "Missing or invalid bearer token") -> None:
        super().__init__(401, message, "unauthorized")


def error_payload(exc: BaseException) -> dict:
    """Return the JSON envelope for any error; internals are never exposed."""
    if isinstance(exc, ApiError):
        return exc.to_payload()
    return {"error": "internal_error", "message": "An unexpected error occurred"}

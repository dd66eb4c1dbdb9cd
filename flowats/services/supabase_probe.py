"""Deep health-check probe: one lightweight PostgREST query against Supabase."""

from __future__ import annotations

import asyncio
import time
from typing import Optional

import httpx

from flowats.observability.logger import get_logger

logger = get_logger("flowats.supabase")

PROBE_TABLE = "ai_artifacts"


class SupabaseProbe:
    def __init__(
        self,
        url: str,
        service_role_key: str,
        timeout_seconds: float = 3.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = (url or "").rstrip("/")
        self.service_role_key = service_role_key
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.url and self.service_role_key)

    async def check(self) -> bool:
        """True when the datastore answered the probe within the timeout."""
        if not self.configured:
            return False

        started = time.perf_counter()
        try:
            # Total bound; the client timeout alone only caps each phase.
            await asyncio.wait_for(self._query(), timeout=self.timeout_seconds)
        except (httpx.HTTPError, TimeoutError) as exc:
            logger.warn(
                "supabase_probe_failed",
                error=type(exc).__name__,
                durationMs=round((time.perf_counter() - started) * 1000, 2),
            )
            return False

        logger.debug(
            "supabase_probe_ok",
            durationMs=round((time.perf_counter() - started) * 1000, 2),
        )
        return True

    async def _query(self) -> None:
        headers = {
            "apikey": self.service_role_key,
            "Authorization": f"Bearer {self.service_role_key}",
            "Prefer": "count=exact",
        }
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
            resp = await client.head(
                f"{self.url}/rest/v1/{PROBE_TABLE}",
                params={"select": "id", "limit": "1"},
                headers=headers,
            )
            resp.raise_for_status()

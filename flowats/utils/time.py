"""Clock source with timezone-aware UTC timestamps."""

from __future__ import annotations

import time
from datetime import UTC, datetime


def iso_from_ms(epoch_ms: float) -> str:
    return datetime.fromtimestamp(epoch_ms / 1000.0, UTC).isoformat()


class Clock:
    """Wall-clock source shared by the limiter, metrics buffer and timers.

    ``now_ms`` is epoch time used for timestamps; ``monotonic_ms`` is only
    meaningful as a difference and is what elapsed-time math uses.
    """

    def now_ms(self) -> float:
        return time.time() * 1000.0

    def monotonic_ms(self) -> float:
        return time.perf_counter() * 1000.0

    def iso_now(self) -> str:
        return iso_from_ms(self.now_ms())


system_clock = Clock()

"""Sliding-window rate limiter with a swappable bucket store.

A bucket is the ordered list of accepted-hit timestamps (epoch ms) for one
key. Stale timestamps are pruned when the key is checked; the in-memory store
additionally caps the number of keys (least recently used key is dropped) and
can sweep buckets that are entirely outside the window, so client-controlled
key spaces cannot grow without bound.
"""

from __future__ import annotations

import math
from collections import OrderedDict
from dataclasses import dataclass
from threading import Lock
from typing import Optional, Protocol

from flowats.observability.logger import get_logger
from flowats.utils.time import Clock, system_clock

logger = get_logger("flowats.limiter")

DEFAULT_MAX_KEYS = 10_000
# Proactive sweep cadence for buckets whose newest hit left the window.
SWEEP_INTERVAL_MS = 60_000


@dataclass(frozen=True)
class LimitResult:
    ok: bool
    retry_after_seconds: Optional[int] = None


class BucketStore(Protocol):
    def get(self, key: str) -> list[float]: ...

    def set(self, key: str, timestamps: list[float]) -> None: ...

    def prune(self, cutoff_ms: float) -> int: ...


class InMemoryBucketStore:
    """LRU-bounded map of key -> timestamps."""

    def __init__(self, max_keys: int = DEFAULT_MAX_KEYS) -> None:
        self.max_keys = max(1, max_keys)
        self._buckets: OrderedDict[str, list[float]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._buckets)

    def __contains__(self, key: str) -> bool:
        return key in self._buckets

    def get(self, key: str) -> list[float]:
        bucket = self._buckets.get(key)
        if bucket is None:
            return []
        self._buckets.move_to_end(key)
        return list(bucket)

    def set(self, key: str, timestamps: list[float]) -> None:
        if not timestamps:
            self._buckets.pop(key, None)
            return
        self._buckets[key] = timestamps
        self._buckets.move_to_end(key)
        while len(self._buckets) > self.max_keys:
            evicted, _ = self._buckets.popitem(last=False)
            logger.debug("rate_limit_bucket_evicted", key=evicted)

    def prune(self, cutoff_ms: float) -> int:
        """Drop buckets whose newest timestamp is at or before ``cutoff_ms``."""
        stale = [key for key, stamps in self._buckets.items() if not stamps or stamps[-1] <= cutoff_ms]
        for key in stale:
            del self._buckets[key]
        return len(stale)

    def clear(self) -> None:
        self._buckets.clear()


class SlidingWindowLimiter:
    """Answers "is this key over quota in the trailing window?"."""

    def __init__(
        self,
        store: Optional[BucketStore] = None,
        clock: Optional[Clock] = None,
        sweep_interval_ms: float = SWEEP_INTERVAL_MS,
    ) -> None:
        self.store = store if store is not None else InMemoryBucketStore()
        self.clock = clock or system_clock
        self.sweep_interval_ms = sweep_interval_ms
        self._lock = Lock()
        self._largest_window_ms = 0.0
        self._last_sweep_ms: Optional[float] = None

    def check_limit(self, key: str, max_hits: int, window_ms: float) -> LimitResult:
        now = self.clock.now_ms()
        window_ms = max(0.0, float(window_ms))
        window_start = now - window_ms

        with self._lock:
            self._maybe_sweep(now, window_ms)

            if window_ms > 0:
                recent = [t for t in self.store.get(key) if t > window_start]
            else:
                # Zero-length window: only hits from this exact instant count.
                recent = [t for t in self.store.get(key) if t >= now]

            if len(recent) >= max_hits:
                self.store.set(key, recent)
                oldest = recent[0] if recent else now
                retry_after = math.ceil((oldest + window_ms - now) / 1000.0)
                return LimitResult(ok=False, retry_after_seconds=max(1, retry_after))

            recent.append(now)
            self.store.set(key, recent)
            return LimitResult(ok=True)

    def _maybe_sweep(self, now: float, window_ms: float) -> None:
        self._largest_window_ms = max(self._largest_window_ms, window_ms)
        if self._last_sweep_ms is None:
            self._last_sweep_ms = now
            return
        if now - self._last_sweep_ms < self.sweep_interval_ms:
            return
        self._last_sweep_ms = now
        removed = self.store.prune(now - self._largest_window_ms)
        if removed:
            logger.debug("rate_limit_sweep", removed=removed)

    def reset(self) -> None:
        with self._lock:
            clear = getattr(self.store, "clear", None)
            if clear is not None:
                clear()
            self._last_sweep_ms = None


_default_limiter = SlidingWindowLimiter()


def check_limit(key: str, max_hits: int, window_ms: float) -> LimitResult:
    """Process-wide limiter for callers that do not hold their own instance."""
    return _default_limiter.check_limit(key, max_hits, window_ms)

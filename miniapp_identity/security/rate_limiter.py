"""Fixed window rate limiting over a pluggable counter store."""

from __future__ import annotations

import time
from dataclasses import dataclass
from threading import Lock
from typing import Protocol


@dataclass(frozen=True, slots=True)
class CounterWindow:
    """Hit count for a key within its current window, and when that window ends (ms)."""

    count: int
    reset_at: int


class CounterStore(Protocol):
    def increment(self, key: str, window_ms: int) -> CounterWindow: ...


class InMemoryCounterStore:
    """Thread-safe single-process counter store.

    Counts are local to the process; run a shared store when serving from
    more than one instance.
    """

    def __init__(self, *, max_keys: int = 10_000) -> None:
        # Insertion order tracks window start; re-opened windows move to the end.
        self._windows: dict[str, tuple[int, int]] = {}
        self._lock = Lock()
        self._max_keys = max_keys
        self._next_sweep_ms = 0

    def increment(self, key: str, window_ms: int) -> CounterWindow:
        now_ms = int(time.time() * 1000)
        with self._lock:
            count, reset_at = self._windows.get(key, (0, 0))
            if reset_at <= now_ms:
                self._windows.pop(key, None)
                count, reset_at = 0, now_ms + window_ms
            count += 1
            self._windows[key] = (count, reset_at)
            self._evict(now_ms, window_ms)
            return CounterWindow(count=count, reset_at=reset_at)

    def _evict(self, now_ms: int, window_ms: int) -> None:
        """Drop expired windows at most once per window, then cap the map size."""
        if now_ms >= self._next_sweep_ms:
            self._next_sweep_ms = now_ms + window_ms
            for stale in [k for k, (_, reset_at) in self._windows.items() if reset_at <= now_ms]:
                del self._windows[stale]
        while len(self._windows) > self._max_keys:
            del self._windows[next(iter(self._windows))]


@dataclass(frozen=True, slots=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after_seconds: int


class FixedWindowRateLimiter:
    """Best-effort request limiter keyed by caller identity."""

    def __init__(self, store: CounterStore, *, max_requests: int, window_seconds: int) -> None:
        """Initialise limiter parameters and the backing counter store."""
        self._store = store
        self._max_requests = max_requests
        self._window_ms = window_seconds * 1000

    def check(self, key: str) -> RateLimitDecision:
        """Count a hit for ``key`` and report whether it is within the limit."""
        window = self._store.increment(key, self._window_ms)
        if window.count > self._max_requests:
            now_ms = int(time.time() * 1000)
            retry_after = max(1, -(-(window.reset_at - now_ms) // 1000))
            return RateLimitDecision(
                allowed=False,
                limit=self._max_requests,
                remaining=0,
                retry_after_seconds=retry_after,
            )
        return RateLimitDecision(
            allowed=True,
            limit=self._max_requests,
            remaining=self._max_requests - window.count,
            retry_after_seconds=0,
        )

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from math import ceil
from threading import Lock
import time
from typing import Callable, Deque, Dict, Tuple

from ideatank.config.loader import get_api_settings


@dataclass(frozen=True)
class RequestRateLimitSettings:
    enabled: bool
    max_requests: int
    window_seconds: int


class RequestRateLimiter:
    """Sliding-window request limiter keyed per caller (client address).

    Callers with no request left inside the window are dropped on a periodic
    sweep, so the map only holds recently active callers.
    """

    def __init__(
        self,
        settings: RequestRateLimitSettings,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._lock = Lock()
        self._settings = settings
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._next_sweep = 0.0

    @property
    def settings(self) -> RequestRateLimitSettings:
        return self._settings

    @property
    def tracked_callers(self) -> int:
        with self._lock:
            return len(self._hits)

    def set_settings(self, settings: RequestRateLimitSettings) -> None:
        with self._lock:
            self._settings = settings
            self._hits.clear()
            self._next_sweep = 0.0

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()
            self._next_sweep = 0.0

    def _prune(self, key: str, window_start: float) -> None:
        entries = self._hits.get(key)
        if entries is None:
            return
        while entries and entries[0] <= window_start:
            entries.popleft()
        if not entries:
            self._hits.pop(key, None)

    def _sweep(self, now: float, window_start: float) -> None:
        if now < self._next_sweep:
            return
        for key in list(self._hits):
            self._prune(key, window_start)
        self._next_sweep = now + self._settings.window_seconds

    def hit(self, caller: str) -> Tuple[bool, int]:
        """Count one request; return ``(limited, retry_after_seconds)``."""
        with self._lock:
            if not self._settings.enabled:
                return False, 0
            now = self._clock()
            key = (caller or "").strip() or "unknown"
            window_start = now - self._settings.window_seconds
            self._sweep(now, window_start)
            self._prune(key, window_start)
            entries = self._hits.setdefault(key, deque())
            if len(entries) >= self._settings.max_requests:
                retry_after = entries[0] + self._settings.window_seconds - now
                return True, max(1, int(ceil(retry_after)))
            entries.append(now)
            return False, 0
            now = self._clock()
            key = (caller or "").strip() or "unknown"
            entries = self._hits.setdefault(key, deque())
            window_start = now - self._settings.window_seconds
            while entries and entries[0] <= window_start:
                entries.popleft()
            if len(entries) >= self._settings.max_requests:
                retry_after = entries[0] + self._settings.window_seconds - now
                return True, max(1, int(ceil(retry_after)))
            entries.append(now)
            return False, 0


def _load_settings() -> RequestRateLimitSettings:
    raw = get_api_settings()
    return RequestRateLimitSettings(
        enabled=True,
        max_requests=int(raw.get("rate_limit_max_requests", 100)),
        window_seconds=int(raw.get("rate_limit_window_seconds", 900)),
    )


request_rate_limiter = RequestRateLimiter(_load_settings())

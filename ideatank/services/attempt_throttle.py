from __future__ import annotations

from dataclasses import dataclass
from math import ceil
from threading import Lock
import time
from typing import Callable, Dict, Optional, Tuple

from ideatank.utils.local_state import LocalStateFile


@dataclass(frozen=True)
class ThrottleSettings:
    enabled: bool
    max_failures: int
    lockout_seconds: int
    failure_ttl_seconds: int = 15 * 60

    @classmethod
    def from_mapping(cls, raw: Dict) -> "ThrottleSettings":
        return cls(
            enabled=bool(raw.get("enabled", True)),
            max_failures=int(raw.get("max_failures", 3)),
            lockout_seconds=int(raw.get("lockout_seconds", 30)),
            failure_ttl_seconds=int(raw.get("failure_ttl_seconds", 15 * 60)),
        )


class AttemptThrottle:
    """Consecutive-failure counter with a fixed lockout, keyed per caller.

    While locked, ``check`` reports the remaining whole seconds and callers
    must not evaluate the attempt at all. The failure count resets to zero
    once the lockout elapses or an attempt succeeds. Callers whose last
    failure is older than ``failure_ttl_seconds`` are forgotten.
    """

    def __init__(
        self,
        settings: ThrottleSettings,
        *,
        clock: Callable[[], float] = time.time,
        state_file: Optional[LocalStateFile] = None,
    ):
        self._lock = Lock()
        self._settings = settings
        self._clock = clock
        self._state_file = state_file
        self._failures: Dict[str, int] = {}
        self._last_failure: Dict[str, float] = {}
        self._locked_until: Dict[str, float] = {}
        self._load()

    @property
    def settings(self) -> ThrottleSettings:
        return self._settings

    @property
    def tracked_keys(self) -> int:
        with self._lock:
            return len(set(self._failures) | set(self._locked_until))

    def set_settings(self, settings: ThrottleSettings) -> None:
        with self._lock:
            self._settings = settings
            self._clear()
            self._persist()

    def reset(self) -> None:
        with self._lock:
            self._clear()
            self._persist()

    def _clear(self) -> None:
        self._failures.clear()
        self._last_failure.clear()
        self._locked_until.clear()

    @staticmethod
    def _key(key: Optional[str]) -> str:
        return (key or "").strip().lower() or "local"

    def _load(self) -> None:
        if self._state_file is None:
            return
        raw = self._state_file.read()
        loaded_at = self._clock()
        for key, entry in (raw.get("throttle") or {}).items():
            if not isinstance(entry, dict):
                continue
            try:
                self._failures[key] = int(entry.get("failures", 0))
                self._last_failure[key] = float(entry.get("last_failure") or loaded_at)
                if entry.get("locked_until"):
                    self._locked_until[key] = float(entry["locked_until"])
            except (TypeError, ValueError):
                continue

    def _persist(self) -> None:
        if self._state_file is None:
            return
        keys = set(self._failures) | set(self._locked_until)
        self._state_file.write(
            {
                "throttle": {
                    key: {
                        "failures": self._failures.get(key, 0),
                        "last_failure": self._last_failure.get(key),
                        "locked_until": self._locked_until.get(key),
                    }
                    for key in keys
                }
            }
        )

    def _forget(self, key: str) -> None:
        self._failures.pop(key, None)
        self._last_failure.pop(key, None)
        self._locked_until.pop(key, None)

    def _sweep(self, now: float) -> None:
        """Drop elapsed lockouts and failure counts idle past the ttl."""
        stale_before = now - self._settings.failure_ttl_seconds
        stale = []
        for key in set(self._failures) | set(self._locked_until):
            expires_at = self._locked_until.get(key)
            if expires_at is not None:
                if expires_at <= now:
                    stale.append(key)
            elif self._last_failure.get(key, now) <= stale_before:
                stale.append(key)
        for key in stale:
            self._forget(key)
        if stale:
            self._persist()

    def _lock_state(self, caller: str, now: float) -> Tuple[bool, int]:
        until = self._locked_until.get(caller)
        if until is None:
            return False, 0
        return True, max(1, int(ceil(until - now)))

    def check(self, key: Optional[str] = None) -> Tuple[bool, int]:
        """Return ``(locked, remaining_seconds)`` for the caller."""
        with self._lock:
            if not self._settings.enabled:
                return False, 0
            now = self._clock()
            self._sweep(now)
            return self._lock_state(self._key(key), now)

    def record_failure(self, key: Optional[str] = None) -> Tuple[bool, int]:
        """Count a failed attempt; returns the lock state after counting it."""
        with self._lock:
            if not self._settings.enabled:
                return False, 0
            caller = self._key(key)
            now = self._clock()
            self._sweep(now)
            failures = self._failures.get(caller, 0) + 1
            self._failures[caller] = failures
            self._last_failure[caller] = now
            if failures >= self._settings.max_failures:
                self._locked_until[caller] = now + self._settings.lockout_seconds
            self._persist()
            return self._lock_state(caller, now)

    def record_success(self, key: Optional[str] = None) -> None:
        with self._lock:
            self._forget(self._key(key))
            self._persist()

    def failures(self, key: Optional[str] = None) -> int:
        with self._lock:
            return self._failures.get(self._key(key), 0)

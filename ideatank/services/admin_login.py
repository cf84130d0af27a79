from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from ideatank.config.loader import get_admin_login_settings
from ideatank.services.attempt_throttle import AttemptThrottle, ThrottleSettings
from ideatank.utils.local_state import LocalStateFile
from ideatank.utils.security import verify_password

logger = logging.getLogger(__name__)


class LoginOutcome(str, Enum):
    SUCCESS = "success"
    INVALID = "invalid"
    LOCKED_OUT = "locked_out"


@dataclass(frozen=True)
class LoginResult:
    outcome: LoginOutcome
    remaining_seconds: int = 0

    @property
    def ok(self) -> bool:
        return self.outcome is LoginOutcome.SUCCESS


class AdminLogin:
    """Admin credential check guarded by its own durable lockout counter."""

    def __init__(self, username: str, password_hash: str, throttle: AttemptThrottle):
        self._username = username
        self._password_hash = password_hash
        self._throttle = throttle

    @property
    def throttle(self) -> AttemptThrottle:
        return self._throttle

    @staticmethod
    def _throttle_keys(username: str, caller: Optional[str]) -> Tuple[str, str]:
        name = (username or "").strip().lower() or "unknown"
        return f"user:{name}", f"ip:{(caller or '').strip() or 'local'}"

    def authenticate(
        self, username: str, password: str, *, caller: Optional[str] = None
    ) -> LoginResult:
        """Check credentials; a lockout on the username or the caller blocks the attempt."""
        keys = self._throttle_keys(username, caller)
        remaining = max(self._throttle.check(key)[1] for key in keys)
        if remaining:
            return LoginResult(LoginOutcome.LOCKED_OUT, remaining)

        if not self._password_hash:
            logger.error("Admin login attempted but no password hash is configured.")

        name_ok = hmac.compare_digest(
            (username or "").strip().lower(), self._username.strip().lower()
        )
        password_ok = verify_password(password or "", self._password_hash)
        if name_ok and password_ok:
            for key in keys:
                self._throttle.record_success(key)
            return LoginResult(LoginOutcome.SUCCESS)

        remaining = max(self._throttle.record_failure(key)[1] for key in keys)
        logger.warning(
            "Failed admin login for %s from %s (locked=%s)", username, caller, bool(remaining)
        )
        if remaining:
            return LoginResult(LoginOutcome.LOCKED_OUT, remaining)
        return LoginResult(LoginOutcome.INVALID)


def build_admin_login(raw: Optional[Dict[str, Any]] = None) -> AdminLogin:
    settings = raw or get_admin_login_settings()
    throttle = AttemptThrottle(
        ThrottleSettings.from_mapping(settings),
        state_file=LocalStateFile(settings["state_path"]),
    )
    return AdminLogin(settings["username"], settings["password_hash"], throttle)

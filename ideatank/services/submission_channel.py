from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from math import ceil
from threading import Lock
from typing import Callable, Dict, Optional

from ideatank.config.loader import get_submission_limits
from ideatank.data.session_store import (
    SessionStore,
    ideas_collection,
    now_ms,
    session_path,
)
from ideatank.errors import StoreError, ValidationError

logger = logging.getLogger(__name__)


class SubmissionOutcome(str, Enum):
    ACCEPTED = "accepted"
    VALIDATION_ERROR = "validation_error"
    SESSION_CLOSED = "session_closed"
    SESSION_NOT_FOUND = "session_not_found"
    COOLDOWN = "cooldown"
    STORE_ERROR = "store_error"


@dataclass(frozen=True)
class SubmissionResult:
    outcome: SubmissionOutcome
    idea_id: Optional[str] = None
    field: Optional[str] = None
    message: str = ""
    retry_after_seconds: int = 0

    @property
    def accepted(self) -> bool:
        return self.outcome is SubmissionOutcome.ACCEPTED


@dataclass(frozen=True)
class SubmissionLimits:
    name_max_length: int = 50
    content_min_length: int = 5
    content_max_length: int = 500
    cooldown_seconds: int = 60

    @classmethod
    def from_config(cls) -> "SubmissionLimits":
        return cls(**get_submission_limits())


def validate_submission(name: str, content: str, limits: SubmissionLimits) -> tuple[str, str]:
    """Return the trimmed ``(name, content)`` or raise ``ValidationError``."""
    clean_name = (name or "").strip()
    clean_content = (content or "").strip()
    if not clean_name:
        raise ValidationError("name", "Naam is verplicht.")
    if len(clean_name) > limits.name_max_length:
        raise ValidationError(
            "name", f"Naam mag maximaal {limits.name_max_length} tekens bevatten."
        )
    if len(clean_content) < limits.content_min_length:
        raise ValidationError(
            "content",
            f"Je idee moet minimaal {limits.content_min_length} tekens bevatten.",
        )
    if len(clean_content) > limits.content_max_length:
        raise ValidationError(
            "content",
            f"Je idee mag maximaal {limits.content_max_length} tekens bevatten.",
        )
    return clean_name, clean_content


class SubmissionCooldown:
    """Per-device resubmission cooldown; devices are forgotten once it expires."""

    def __init__(self, seconds: int, clock: Callable[[], float] = time.monotonic):
        self._seconds = seconds
        self._clock = clock
        self._lock = Lock()
        self._last_submission: Dict[str, float] = {}

    @property
    def tracked_devices(self) -> int:
        with self._lock:
            return len(self._last_submission)

    def _prune(self, now: float) -> None:
        expired = [
            device_id
            for device_id, last in self._last_submission.items()
            if now - last >= self._seconds
        ]
        for device_id in expired:
            del self._last_submission[device_id]

    def remaining(self, device_id: Optional[str]) -> int:
        if not device_id or self._seconds <= 0:
            return 0
        with self._lock:
            last = self._last_submission.get(device_id)
            if last is None:
                return 0
            remaining = self._seconds - (self._clock() - last)
            if remaining <= 0:
                self._last_submission.pop(device_id, None)
                return 0
            return int(ceil(remaining))

    def mark(self, device_id: Optional[str]) -> None:
        if not device_id or self._seconds <= 0:
            return
        with self._lock:
            now = self._clock()
            self._prune(now)
            self._last_submission[device_id] = now


class SubmissionChannel:
    """Append-only idea intake gated by the session's ``isActive`` flag."""

    def __init__(
        self,
        store: SessionStore,
        limits: Optional[SubmissionLimits] = None,
        *,
        cooldown: Optional[SubmissionCooldown] = None,
        clock_ms: Callable[[], int] = now_ms,
    ):
        self._store = store
        self._limits = limits or SubmissionLimits.from_config()
        self._cooldown = cooldown or SubmissionCooldown(self._limits.cooldown_seconds)
        self._clock_ms = clock_ms

    @property
    def limits(self) -> SubmissionLimits:
        return self._limits

    async def submit(
        self,
        session_id: str,
        name: str,
        content: str,
        *,
        device_id: Optional[str] = None,
    ) -> SubmissionResult:
        try:
            clean_name, clean_content = validate_submission(name, content, self._limits)
        except ValidationError as exc:
            return SubmissionResult(
                SubmissionOutcome.VALIDATION_ERROR, field=exc.field, message=exc.message
            )

        retry_after = self._cooldown.remaining(device_id)
        if retry_after:
            return SubmissionResult(
                SubmissionOutcome.COOLDOWN,
                message="Je hebt net een idee ingediend. Wacht even.",
                retry_after_seconds=retry_after,
            )

        try:
            # Re-read at write time: the admin may have closed the session
            # after the participant opened the form.
            session = await self._store.get_document(session_path(session_id))
            if session is None:
                return SubmissionResult(
                    SubmissionOutcome.SESSION_NOT_FOUND, message="Sessie niet gevonden."
                )
            if session.get("isActive") is not True:
                return SubmissionResult(
                    SubmissionOutcome.SESSION_CLOSED,
                    message="De sessie is momenteel niet actief.",
                )
            idea_id = await self._store.add_document(
                ideas_collection(session_id),
                {
                    "name": clean_name,
                    "content": clean_content,
                    "timestamp": self._clock_ms(),
                },
            )
        except StoreError as exc:
            logger.error("submit failed for session %s: %s", session_id, exc)
            return SubmissionResult(
                SubmissionOutcome.STORE_ERROR,
                message="Er is iets misgegaan bij het versturen. Probeer het opnieuw.",
            )

        self._cooldown.mark(device_id)
        logger.info("Accepted idea %s for session %s", idea_id, session_id)
        return SubmissionResult(SubmissionOutcome.ACCEPTED, idea_id=idea_id)

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ideatank.config.loader import get_access_gate_settings
from ideatank.data.session_store import (
    SessionStore,
    normalise_code,
    now_ms,
    session_code_path,
    session_path,
)
from ideatank.errors import GateError
from ideatank.services.attempt_throttle import AttemptThrottle, ThrottleSettings

logger = logging.getLogger(__name__)

MIN_CODE_LENGTH = 3


class GateOutcome(str, Enum):
    ADMITTED = "admitted"
    REJECTED = "rejected"
    SESSION_CLOSED = "session_closed"
    SESSION_NOT_FOUND = "session_not_found"
    LOCKED_OUT = "locked_out"


@dataclass(frozen=True)
class GateResult:
    outcome: GateOutcome
    session_id: Optional[str] = None
    remaining_seconds: int = 0

    @property
    def admitted(self) -> bool:
        return self.outcome is GateOutcome.ADMITTED


class AccessGate:
    """Admits participants whose code matches a live session."""

    def __init__(self, store: SessionStore, throttle: AttemptThrottle):
        self._store = store
        self._throttle = throttle

    @property
    def throttle(self) -> AttemptThrottle:
        return self._throttle

    async def check_code(
        self,
        submitted_code: str,
        session_id: Optional[str] = None,
        *,
        caller: Optional[str] = None,
    ) -> GateResult:
        locked, remaining = self._throttle.check(caller)
        if locked:
            return GateResult(GateOutcome.LOCKED_OUT, remaining_seconds=remaining)

        code = normalise_code(submitted_code)
        resolved_id = None
        if len(code) >= MIN_CODE_LENGTH:
            resolved_id = await self._resolve(code, session_id)

        if resolved_id is None:
            now_locked, remaining = self._throttle.record_failure(caller)
            logger.info(
                "Access code rejected (caller=%s, locked=%s)", caller or "local", now_locked
            )
            return GateResult(GateOutcome.REJECTED, remaining_seconds=remaining)

        session = await self._store.get_document(session_path(resolved_id))
        if session is None:
            return GateResult(GateOutcome.SESSION_NOT_FOUND, session_id=resolved_id)
        if session.get("isActive") is not True:
            return GateResult(GateOutcome.SESSION_CLOSED, session_id=resolved_id)

        self._throttle.record_success(caller)
        return GateResult(GateOutcome.ADMITTED, session_id=resolved_id)

    async def _resolve(self, code: str, session_id: Optional[str]) -> Optional[str]:
        if session_id:
            session = await self._store.get_document(session_path(session_id))
            if session and normalise_code(session.get("accessCode")) == code:
                return session_id
        entry = await self._store.get_document(session_code_path(code))
        if entry and entry.get("sessionId"):
            return str(entry["sessionId"])
        return None

    async def register_code(self, session_id: str, code: str) -> str:
        """Assign ``code`` to ``session_id``, releasing the session's previous code."""
        normalised = normalise_code(code)
        if len(normalised) < MIN_CODE_LENGTH:
            raise GateError(
                f"Access code must be at least {MIN_CODE_LENGTH} characters."
            )

        existing = await self._store.get_document(session_code_path(normalised))
        holder = (existing or {}).get("sessionId")
        if holder and holder != session_id:
            holder_doc = await self._store.get_document(session_path(holder))
            if holder_doc and holder_doc.get("isActive") is True:
                raise GateError(f"Access code {normalised} is in use by an active session.")
            if holder_doc is not None:
                await self._store.set_document(
                    session_path(holder), {"accessCode": None, "updatedAt": now_ms()}
                )
            logger.info("Reassigned access code %s from %s to %s", normalised, holder, session_id)

        session = await self._store.get_document(session_path(session_id)) or {}
        previous = normalise_code(session.get("accessCode"))
        if previous and previous != normalised:
            old_entry = await self._store.get_document(session_code_path(previous))
            if old_entry and old_entry.get("sessionId") == session_id:
                await self._store.delete_document(session_code_path(previous))

        await self._store.set_document(
            session_code_path(normalised),
            {"code": normalised, "sessionId": session_id, "updatedAt": now_ms()},
            merge=False,
        )
        await self._store.set_document(
            session_path(session_id), {"accessCode": normalised, "updatedAt": now_ms()}
        )
        return normalised


def build_access_gate(store: SessionStore) -> AccessGate:
    settings = ThrottleSettings.from_mapping(get_access_gate_settings())
    return AccessGate(store, AttemptThrottle(settings))

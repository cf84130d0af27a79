"""Wiring of the store, gate, channel, orchestrator and per-session controllers."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from ideatank.config.loader import get_store_backend
from ideatank.data.report_archive import ReportArchive
from ideatank.data.session_store import InMemorySessionStore, SessionStore
from ideatank.services.access_gate import AccessGate, build_access_gate
from ideatank.services.admin_login import AdminLogin, build_admin_login
from ideatank.services.ai_orchestrator import AIOrchestrator, build_orchestrator
from ideatank.services.session_controller import SessionController, SessionSettings
from ideatank.services.submission_channel import SubmissionChannel

logger = logging.getLogger(__name__)


@dataclass
class ServiceRegistry:
    store: SessionStore
    gate: AccessGate
    submissions: SubmissionChannel
    orchestrator: AIOrchestrator
    admin_login: AdminLogin
    archive: ReportArchive
    session_settings: Optional[SessionSettings] = None
    _controllers: Dict[str, SessionController] = field(default_factory=dict)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    async def controller(self, session_id: str) -> SessionController:
        """Return the controller for ``session_id``, creating it on first use."""
        async with self._lock:
            controller = self._controllers.get(session_id)
            if controller is None:
                controller = SessionController(
                    session_id,
                    self.store,
                    self.orchestrator,
                    gate=self.gate,
                    archive=self.archive,
                    settings=self.session_settings,
                )
                self._controllers[session_id] = controller
                logger.info("Created controller for session %s", session_id)
            return controller

    def existing_controller(self, session_id: str) -> Optional[SessionController]:
        return self._controllers.get(session_id)

    async def aclose(self) -> None:
        async with self._lock:
            controllers = list(self._controllers.values())
            self._controllers.clear()
        for controller in controllers:
            await controller.close()
        close = getattr(self.orchestrator.provider, "aclose", None)
        if close is not None:
            await close()


def build_store() -> SessionStore:
    if get_store_backend() == "sql":
        from ideatank.data.sql_store import SqlSessionStore
        from ideatank.database import Base, SessionLocal, engine
        import ideatank.models  # noqa: F401

        Base.metadata.create_all(bind=engine)
        return SqlSessionStore(SessionLocal)
    return InMemorySessionStore()


def build_registry(
    store: Optional[SessionStore] = None,
    orchestrator: Optional[AIOrchestrator] = None,
    admin_login: Optional[AdminLogin] = None,
    session_settings: Optional[SessionSettings] = None,
) -> ServiceRegistry:
    store = store or build_store()
    return ServiceRegistry(
        store=store,
        gate=build_access_gate(store),
        submissions=SubmissionChannel(store),
        orchestrator=orchestrator or build_orchestrator(),
        admin_login=admin_login or build_admin_login(),
        archive=ReportArchive(store),
        session_settings=session_settings,
    )

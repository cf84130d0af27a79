"""Admin-side state machine for one live brainstorming session.

Phases run ``MENU -> SETUP -> LIVE -> CLOSING -> ANALYSIS -> DETAIL`` with
``DETAIL -> ANALYSIS`` backtracking and ``reset()`` returning to ``MENU`` from
anywhere. The controller owns every timer it starts and cancels them on
phase exit. Store failures never block a phase transition; they are recorded
in ``store_errors`` and the transition proceeds. AI failures leave the phase
unchanged and surface through ``operations``.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from ideatank.config.loader import get_session_timing_settings
from ideatank.data.report_archive import ReportArchive
from ideatank.data.session_store import (
    SessionStore,
    StoredDocument,
    ideas_collection,
    ideas_query,
    now_ms,
    session_path,
)
from ideatank.errors import AIError, ConcurrencyConflict, PhaseError, StoreError, ValidationError
from ideatank.schemas.details import ChatMessage, IdeaDetails
from ideatank.schemas.session import (
    AIAnalysisResult,
    Cluster,
    Idea,
    SessionDocument,
    cluster_to_idea,
)
from ideatank.services.access_gate import AccessGate
from ideatank.services.ai_orchestrator import AIOrchestrator
from ideatank.services.progress import ProgressTracker
from ideatank.services.prompts import ChatPersona, WritingStyle
from ideatank.services.reporting import build_deck, build_pbi_csv, build_report
from ideatank.services.session_events import EventSource, SessionEvent, SessionEventReconciler
from ideatank.utils.identifiers import new_message_id
from ideatank.utils.single_flight import SingleFlight

logger = logging.getLogger(__name__)

MIN_CONTEXT_LENGTH = 5
MAX_TOP_IDEAS = 4


class Phase(str, Enum):
    MENU = "MENU"
    SETUP = "SETUP"
    LIVE = "LIVE"
    CLOSING = "CLOSING"
    ANALYSIS = "ANALYSIS"
    DETAIL = "DETAIL"


class DetailTab(str, Enum):
    OVERVIEW = "overview"
    PBIS = "pbis"
    BUSINESS_CASE = "businessCase"
    DEVILS_ADVOCATE = "devilsAdvocate"
    MARKETING = "marketing"
    BLOG = "blog"
    PRESS = "press"
    PRESENTATION = "presentation"
    CHAT = "chat"


DEFAULT_DETAIL_TAB = DetailTab.OVERVIEW


class OperationStatus(str, Enum):
    IDLE = "idle"
    IN_PROGRESS = "in_progress"
    FAILED = "failed"
    SUCCEEDED = "succeeded"


class Operation(str, Enum):
    ANALYSIS = "analysis"
    CLUSTER = "cluster"
    DETAILS = "details"
    BLOG_POST = "blogPost"
    PRESS_RELEASE = "pressRelease"
    SLIDE_OUTLINE = "slideOutline"
    FOLLOW_UP_QUESTION = "followUpQuestion"
    CHAT = "chat"


_PROGRESS_OPERATIONS = frozenset({Operation.ANALYSIS, Operation.DETAILS})


@dataclass
class OperationState:
    status: OperationStatus = OperationStatus.IDLE
    error: Optional[str] = None


@dataclass(frozen=True)
class SessionSettings:
    closing_countdown_seconds: int = 10
    tick_seconds: float = 1.0
    score_step: int = 2
    score_tick_seconds: float = 0.03
    reveal_countdown_seconds: int = 5
    max_analysis_reruns: int = 2

    @classmethod
    def from_config(cls) -> "SessionSettings":
        return cls(**get_session_timing_settings())


@dataclass(frozen=True)
class StoreFailure:
    operation: str
    session_id: str
    message: str
    at: str


def format_duration(seconds: int) -> str:
    """Render elapsed seconds as ``MM:SS``."""
    minutes, secs = divmod(max(0, int(seconds)), 60)
    return f"{minutes:02d}:{secs:02d}"


def _idea_from_document(doc: StoredDocument) -> Idea:
    data = doc.data
    return Idea(
        id=doc.id,
        name=str(data.get("name") or ""),
        content=str(data.get("content") or ""),
        timestamp=data.get("timestamp") or 0,
    )


class SessionController:
    def __init__(
        self,
        session_id: str,
        store: SessionStore,
        orchestrator: AIOrchestrator,
        *,
        gate: Optional[AccessGate] = None,
        archive: Optional[ReportArchive] = None,
        settings: Optional[SessionSettings] = None,
    ):
        self.session_id = session_id
        self._store = store
        self._ai = orchestrator
        self._gate = gate
        self._archive = archive or ReportArchive(store)
        self.settings = settings or SessionSettings.from_config()

        self._reconciler = SessionEventReconciler(self._apply_event)
        self._single_flight = SingleFlight()
        self._unsubscribers: List[Callable[[], None]] = []
        self._ticker: Optional[asyncio.Task] = None
        self._timers: Set[asyncio.Task] = set()
        self._jobs: Set[asyncio.Task] = set()
        self._epoch = 0

        self.phase = Phase.MENU
        self.context = ""
        self.default_context = ""
        self.access_code: Optional[str] = None
        self.store_errors: List[StoreFailure] = []
        self._reset_state()

    # ------------------------------------------------------------------
    # state helpers

    def _reset_state(self) -> None:
        self.ideas: List[Idea] = []
        self._ideas_version = 0
        self.duration_seconds = 0
        self.closing_countdown: Optional[int] = None
        self.analysis: Optional[AIAnalysisResult] = None
        self.animated_score = 0
        self.selected_idea_id: Optional[str] = None
        self.selected_manual_idea_id: Optional[str] = None
        self._manual_idea: Optional[Idea] = None
        self._staged_reveal_id: Optional[str] = None
        self.reveal_countdown: Optional[int] = None
        self.revealed_idea_id: Optional[str] = None
        self.clusters: List[Cluster] = []
        self.details: Optional[IdeaDetails] = None
        self.detail_idea: Optional[Idea] = None
        self.active_tab = DEFAULT_DETAIL_TAB
        self.chat_messages: List[ChatMessage] = []
        self.follow_up_question: Optional[str] = None
        self._session_updated_at = 0
        self.operations: Dict[Operation, OperationState] = {
            operation: OperationState() for operation in Operation
        }
        self._trackers: Dict[Operation, ProgressTracker] = {}

    def _require(self, operation: str, *phases: Phase) -> None:
        if self.phase not in phases:
            raise PhaseError(operation, self.phase.value)

    def _ensure_current(self, epoch: int, operation: str) -> None:
        if epoch != self._epoch:
            raise ConcurrencyConflict(
                f"{operation} for session {self.session_id} was superseded by a reset"
            )

    def _set_operation(
        self, operation: Operation, status: OperationStatus, error: Optional[str] = None
    ) -> None:
        self.operations[operation] = OperationState(status=status, error=error)

    def _track(self, operation: Operation) -> ProgressTracker:
        tracker = self._ai.new_tracker()
        self._trackers[operation] = tracker
        return tracker

    def _record_store_failure(self, operation: str, exc: StoreError) -> StoreError:
        logger.error("%s failed for session %s: %s", operation, self.session_id, exc)
        self.store_errors.append(
            StoreFailure(
                operation=operation,
                session_id=self.session_id,
                message=str(exc),
                at=datetime.now(timezone.utc).isoformat(),
            )
        )
        return exc

    async def _store_write(self, operation: str, write: Awaitable[Any]) -> Optional[StoreError]:
        """Run a store write and return its failure instead of raising it."""
        try:
            await write
        except StoreError as exc:
            return self._record_store_failure(operation, exc)
        return None

    async def _write_session(self, operation: str, fields: Dict[str, Any]) -> Optional[StoreError]:
        stamp = now_ms()
        self._session_updated_at = max(self._session_updated_at, stamp)
        payload = dict(fields)
        payload["updatedAt"] = stamp
        return await self._store_write(
            operation, self._store.set_document(session_path(self.session_id), payload)
        )

    def _spawn_timer(self, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._timers.add(task)
        task.add_done_callback(self._timers.discard)
        return task

    def _spawn_job(self, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._jobs.add(task)
        task.add_done_callback(self._jobs.discard)
        return task

    def _cancel_timers(self) -> None:
        current = asyncio.current_task()
        if self._ticker is not None and self._ticker is not current:
            self._ticker.cancel()
        self._ticker = None
        for task in list(self._timers):
            if task is not current:
                task.cancel()

    def _unsubscribe(self) -> None:
        while self._unsubscribers:
            self._unsubscribers.pop()()

    def _find_idea(self, idea_id: Optional[str]) -> Optional[Idea]:
        if not idea_id:
            return None
        if self._manual_idea is not None and self._manual_idea.id == idea_id:
            return self._manual_idea
        for idea in self.ideas:
            if idea.id == idea_id:
                return idea
        for cluster in self.clusters:
            if cluster.id == idea_id:
                return cluster_to_idea(cluster)
        if self.analysis is not None:
            for idea in self.analysis.top_ideas:
                if idea.id == idea_id:
                    return idea
        return None

    # ------------------------------------------------------------------
    # store subscriptions

    async def _subscribe(self) -> None:
        self._unsubscribe()
        self._reconciler.start()
        epoch = self._epoch
        targets: Tuple[Tuple[EventSource, Any], ...] = (
            (EventSource.IDEAS, ideas_query(self.session_id)),
            (EventSource.SESSION, session_path(self.session_id)),
        )
        for source, target in targets:
            callback = self._reconciler.callback_for(source, self.session_id, epoch)
            try:
                self._unsubscribers.append(await self._store.subscribe(target, callback))
            except StoreError as exc:
                self._record_store_failure(f"subscribe_{source.value}", exc)

    def _apply_event(self, event: SessionEvent) -> None:
        if event.epoch != self._epoch or event.session_id != self.session_id:
            return
        if event.source is EventSource.IDEAS:
            self._apply_ideas(event.snapshot or [])
        else:
            self._apply_session_document(event.snapshot)

    def _apply_ideas(self, documents: List[StoredDocument]) -> None:
        ideas = [_idea_from_document(doc) for doc in documents]
        if [idea.id for idea in ideas] != [idea.id for idea in self.ideas]:
            self._ideas_version += 1
        self.ideas = ideas
        if self.selected_manual_idea_id and self._manual_idea is None:
            self._adopt_manual_selection(self.selected_manual_idea_id)

    def _apply_session_document(self, data: Optional[Dict[str, Any]]) -> None:
        if data is None:
            return
        updated_at = int(data.get("updatedAt") or 0)
        if updated_at and updated_at < self._session_updated_at:
            return
        self._session_updated_at = max(self._session_updated_at, updated_at)
        document = SessionDocument.from_document(self.session_id, data)
        self.access_code = document.access_code or self.access_code
        if document.default_context:
            self.default_context = document.default_context

        manual_id = document.selected_manual_idea_id
        if manual_id == self.selected_manual_idea_id:
            return
        self.selected_manual_idea_id = manual_id
        if manual_id is None:
            self._manual_idea = None
            return
        if self._manual_idea is not None and self._manual_idea.id != manual_id:
            self._manual_idea = None
        self._adopt_manual_selection(manual_id)

    def _adopt_manual_selection(self, idea_id: str) -> None:
        idea = self._find_idea(idea_id)
        if idea is None:
            return
        self._manual_idea = idea
        self._merge_manual_into_analysis()

    def _merge_manual_into_analysis(self) -> None:
        """Guarantee the manually chosen idea is listed and pre-selected."""
        manual = self._manual_idea
        if manual is None or self.analysis is None:
            return
        top = list(self.analysis.top_ideas)
        if all(idea.id != manual.id for idea in top):
            top = top[: MAX_TOP_IDEAS - 1] + [manual]
            self.analysis = self.analysis.model_copy(update={"top_ideas": top})
        if self.phase is Phase.ANALYSIS and self._staged_reveal_id is None:
            self.selected_idea_id = manual.id

    # ------------------------------------------------------------------
    # MENU / SETUP

    async def enter_setup(self) -> str:
        self._require("enter_setup", Phase.MENU, Phase.SETUP)
        if not self.default_context or self.access_code is None:
            try:
                data = await self._store.get_document(session_path(self.session_id))
            except StoreError as exc:
                self._record_store_failure("load_settings", exc)
                data = None
            if data:
                document = SessionDocument.from_document(self.session_id, data)
                self.default_context = document.default_context or self.default_context
                self.access_code = document.access_code or self.access_code
        if not self.context:
            self.context = self.default_context
        self.phase = Phase.SETUP
        return self.context

    def set_context(self, context: str) -> str:
        self._require("set_context", Phase.MENU, Phase.SETUP)
        self.context = context or ""
        return self.context

    async def save_settings(
        self, access_code: Optional[str] = None, default_context: Optional[str] = None
    ) -> None:
        """Persist the access code and default context; store failures are swallowed."""
        if access_code is not None and self._gate is not None:
            try:
                self.access_code = await self._gate.register_code(self.session_id, access_code)
            except StoreError as exc:
                self._record_store_failure("register_code", exc)
        elif access_code is not None:
            self.access_code = access_code.strip().upper()
            await self._write_session("save_access_code", {"accessCode": self.access_code})

        if default_context is not None:
            self.default_context = default_context.strip()
            await self._write_session(
                "save_default_context", {"defaultContext": self.default_context}
            )

    # ------------------------------------------------------------------
    # LIVE / CLOSING

    async def start_session(self, context: Optional[str] = None) -> Phase:
        self._require("start_session", Phase.SETUP)
        return await self._open_live(context)

    async def _open_live(self, context: Optional[str]) -> Phase:
        text = (self.context if context is None else context).strip()
        if len(text) < MIN_CONTEXT_LENGTH:
            raise ValidationError(
                "context", f"De vraag moet minimaal {MIN_CONTEXT_LENGTH} tekens bevatten."
            )

        self._epoch += 1
        self._cancel_timers()
        self._unsubscribe()
        self._reset_state()
        self.context = text

        # Ideas must be gone before the session opens, or a fresh submission
        # could be wiped by the in-flight delete.
        deleted = await self._store_write(
            "delete_ideas", self._store.delete_collection(ideas_collection(self.session_id))
        )
        if deleted is not None:
            logger.warning("Starting session %s without a clean idea slate", self.session_id)
        activated = await self._write_session(
            "activate_session",
            {"isActive": True, "context": text, "selectedManualIdeaId": None},
        )
        if activated is not None:
            logger.warning("Session %s is live locally but not marked active", self.session_id)

        await self._subscribe()
        self.phase = Phase.LIVE
        self._ticker = asyncio.ensure_future(self._tick_duration())
        logger.info("Session %s is live", self.session_id)
        return self.phase

    async def _tick_duration(self) -> None:
        while self.phase is Phase.LIVE:
            await asyncio.sleep(self.settings.tick_seconds)
            if self.phase is Phase.LIVE:
                self.duration_seconds += 1

    async def stop_session(self) -> Phase:
        self._require("stop_session", Phase.LIVE)
        self._cancel_timers()
        self.phase = Phase.CLOSING
        self.closing_countdown = self.settings.closing_countdown_seconds
        closed = await self._write_session("close_session", {"isActive": False})
        if closed is not None:
            logger.warning("Session %s may still accept ideas", self.session_id)
        self._spawn_timer(self._run_closing_countdown(self._epoch))
        return self.phase

    async def _run_closing_countdown(self, epoch: int) -> None:
        while self.closing_countdown and self.closing_countdown > 0:
            await asyncio.sleep(self.settings.tick_seconds)
            if epoch != self._epoch:
                return
            self.closing_countdown -= 1
        if epoch == self._epoch and self.phase is Phase.CLOSING:
            self._enter_analysis()

    def _enter_analysis(self) -> None:
        self.phase = Phase.ANALYSIS
        self.closing_countdown = None
        self._spawn_job(self._run_analysis(self._epoch))

    async def cancel_session(self, confirmed: bool = False) -> bool:
        self._require("cancel_session", Phase.LIVE)
        if not confirmed:
            return False
        await self._write_session("cancel_session", {"isActive": False})
        self._reset_local()
        logger.info("Session %s cancelled; submitted ideas kept", self.session_id)
        return True

    # ------------------------------------------------------------------
    # ANALYSIS

    async def _run_analysis(self, epoch: int) -> None:
        operation = "analysis"
        for attempt in range(self.settings.max_analysis_reruns + 1):
            try:
                await self._reconciler.drain()
                self._ensure_current(epoch, operation)
                ideas = list(self.ideas)
                version = self._ideas_version
                self._set_operation(Operation.ANALYSIS, OperationStatus.IN_PROGRESS)
                result = await self._ai.analyze_ideas(
                    self.context, ideas, tracker=self._track(Operation.ANALYSIS)
                )
                await self._reconciler.drain()
                self._ensure_current(epoch, operation)
            except ConcurrencyConflict as exc:
                logger.info("Discarding stale analysis: %s", exc)
                return
            except AIError as exc:
                if epoch == self._epoch:
                    logger.error("analysis failed for session %s: %s", self.session_id, exc)
                    self._set_operation(Operation.ANALYSIS, OperationStatus.FAILED, exc.message)
                return
            except Exception as exc:
                # Spawned job: an unexpected error must still end the operation.
                logger.exception("analysis crashed for session %s", self.session_id)
                if epoch == self._epoch:
                    self._set_operation(
                        Operation.ANALYSIS, OperationStatus.FAILED, f"Onverwachte fout: {exc}"
                    )
                return

            if version != self._ideas_version and attempt < self.settings.max_analysis_reruns:
                logger.info(
                    "Ideas changed during analysis of session %s; recomputing", self.session_id
                )
                continue
            self._apply_analysis(result)
            return

    def _apply_analysis(self, result: AIAnalysisResult) -> None:
        self.analysis = result
        self.selected_idea_id = result.top_ideas[0].id if result.top_ideas else None
        if self.selected_manual_idea_id and self._manual_idea is None:
            self._adopt_manual_selection(self.selected_manual_idea_id)
        self._merge_manual_into_analysis()
        self._set_operation(Operation.ANALYSIS, OperationStatus.SUCCEEDED)
        self.animated_score = 0
        self._spawn_timer(self._count_up_score(self._epoch, result.innovation_score))

    async def retry_analysis(self) -> None:
        self._require("retry_analysis", Phase.ANALYSIS)
        if self.operations[Operation.ANALYSIS].status is OperationStatus.IN_PROGRESS:
            return
        await self._run_analysis(self._epoch)

    async def _count_up_score(self, epoch: int, target: int) -> None:
        while self.animated_score < target:
            await asyncio.sleep(self.settings.score_tick_seconds)
            if epoch != self._epoch:
                return
            self.animated_score = min(target, self.animated_score + self.settings.score_step)

    async def select_manual_idea(self, idea: Any) -> Idea:
        """Force-select an idea (or a synthetic cluster idea) and share it via the store."""
        self._require("select_manual_idea", Phase.LIVE, Phase.CLOSING, Phase.ANALYSIS)
        if isinstance(idea, Idea):
            chosen = idea
        else:
            chosen = self._find_idea(str(idea))
            if chosen is None:
                raise ValidationError("ideaId", f"Onbekend idee: {idea}")

        self._manual_idea = chosen
        self.selected_manual_idea_id = chosen.id
        self._merge_manual_into_analysis()
        await self._write_session("select_manual_idea", {"selectedManualIdeaId": chosen.id})
        return chosen

    async def select_cluster(self, cluster: Any) -> Idea:
        if not isinstance(cluster, Cluster):
            cluster = next(
                (item for item in self.clusters if item.id == str(cluster)), None
            )
            if cluster is None:
                raise ValidationError("clusterId", "Onbekend cluster.")
        return await self.select_manual_idea(cluster_to_idea(cluster, timestamp=now_ms()))

    async def cluster_ideas(self) -> List[Cluster]:
        self._require("cluster_ideas", Phase.ANALYSIS)
        epoch = self._epoch

        async def run() -> List[Cluster]:
            self._set_operation(Operation.CLUSTER, OperationStatus.IN_PROGRESS)
            try:
                clusters = await self._ai.cluster_ideas(self.context, list(self.ideas))
                self._ensure_current(epoch, "cluster_ideas")
            except ConcurrencyConflict as exc:
                logger.info("Discarding stale clusters: %s", exc)
                return []
            except AIError as exc:
                self._set_operation(Operation.CLUSTER, OperationStatus.FAILED, exc.message)
                return []
            except Exception as exc:
                self._set_operation(Operation.CLUSTER, OperationStatus.FAILED, str(exc))
                raise
            self.clusters = clusters
            self._set_operation(Operation.CLUSTER, OperationStatus.SUCCEEDED)
            return clusters

        return await self._single_flight.run((Operation.CLUSTER, epoch), run)

    def set_selected_idea(self, idea_id: str) -> str:
        self._require("set_selected_idea", Phase.ANALYSIS)
        if self._find_idea(idea_id) is None:
            raise ValidationError("ideaId", f"Onbekend idee: {idea_id}")
        self.selected_idea_id = idea_id
        return idea_id

    def start_reveal(self, idea_id: Optional[str] = None) -> None:
        """Stage the idea to reveal; the id is fixed now, not at confirmation."""
        self._require("start_reveal", Phase.ANALYSIS)
        if self.analysis is None:
            raise PhaseError("start_reveal", "ANALYSIS (no result yet)")
        candidate = idea_id or self.selected_idea_id
        if candidate is None and self.analysis.top_ideas:
            candidate = self.analysis.top_ideas[0].id
        if candidate is None or self._find_idea(candidate) is None:
            raise ValidationError("ideaId", "Er is geen idee om te onthullen.")
        self._staged_reveal_id = candidate
        self.revealed_idea_id = None
        self.reveal_countdown = self.settings.reveal_countdown_seconds
        self._spawn_timer(self._run_reveal_countdown(self._epoch, candidate))

    @property
    def is_revealing(self) -> bool:
        return self._staged_reveal_id is not None

    async def _run_reveal_countdown(self, epoch: int, staged_id: str) -> None:
        while self.reveal_countdown and self.reveal_countdown > 0:
            await asyncio.sleep(self.settings.tick_seconds)
            if epoch != self._epoch or self._staged_reveal_id != staged_id:
                return
            self.reveal_countdown -= 1
        if epoch == self._epoch and self._staged_reveal_id == staged_id:
            self.confirm_reveal()

    def confirm_reveal(self) -> str:
        self._require("confirm_reveal", Phase.ANALYSIS)
        staged = self._staged_reveal_id
        if staged is None:
            raise PhaseError("confirm_reveal", "ANALYSIS (nothing staged)")
        self._staged_reveal_id = None
        self.reveal_countdown = None
        self.selected_idea_id = staged
        self.revealed_idea_id = staged
        return staged

    async def select_idea(self) -> Optional[IdeaDetails]:
        """Elaborate the chosen idea; concurrent calls share one AI request."""
        self._require("select_idea", Phase.ANALYSIS)
        if self.analysis is None:
            raise PhaseError("select_idea", "ANALYSIS (no result yet)")
        idea = self._find_idea(self.selected_idea_id)
        if idea is None:
            raise ValidationError("ideaId", "Kies eerst een idee.")
        epoch = self._epoch

        async def run() -> Optional[IdeaDetails]:
            self._set_operation(Operation.DETAILS, OperationStatus.IN_PROGRESS)
            try:
                details = await self._ai.idea_details(
                    self.context, idea, tracker=self._track(Operation.DETAILS)
                )
                self._ensure_current(epoch, "select_idea")
            except ConcurrencyConflict as exc:
                logger.info("Discarding stale details: %s", exc)
                return None
            except AIError as exc:
                logger.error("details failed for session %s: %s", self.session_id, exc)
                self._set_operation(Operation.DETAILS, OperationStatus.FAILED, exc.message)
                return None
            except Exception as exc:
                self._set_operation(Operation.DETAILS, OperationStatus.FAILED, str(exc))
                raise
            self.details = details
            self.detail_idea = idea
            self.chat_messages = []
            self.follow_up_question = None
            for operation in (
                Operation.BLOG_POST,
                Operation.PRESS_RELEASE,
                Operation.SLIDE_OUTLINE,
                Operation.FOLLOW_UP_QUESTION,
                Operation.CHAT,
            ):
                self._set_operation(operation, OperationStatus.IDLE)
            self.active_tab = DEFAULT_DETAIL_TAB
            self.phase = Phase.DETAIL
            self._set_operation(Operation.DETAILS, OperationStatus.SUCCEEDED)
            return details

        return await self._single_flight.run((Operation.DETAILS, epoch), run)

    # ------------------------------------------------------------------
    # DETAIL

    def back_to_analysis(self) -> Phase:
        self._require("back_to_analysis", Phase.DETAIL)
        self.details = None
        self.detail_idea = None
        self.chat_messages = []
        self.follow_up_question = None
        self.active_tab = DEFAULT_DETAIL_TAB
        self.phase = Phase.ANALYSIS
        return self.phase

    def set_active_tab(self, tab: Any) -> DetailTab:
        self._require("set_active_tab", Phase.DETAIL)
        self.active_tab = DetailTab(tab)
        return self.active_tab

    async def _extend_details(
        self,
        operation: Operation,
        field_name: str,
        call: Callable[[Idea, IdeaDetails], Awaitable[Any]],
    ) -> Optional[Any]:
        self._require(operation.value, Phase.DETAIL)
        epoch = self._epoch
        idea, details = self.detail_idea, self.details

        async def run() -> Optional[Any]:
            self._set_operation(operation, OperationStatus.IN_PROGRESS)
            try:
                value = await call(idea, details)
                self._ensure_current(epoch, operation.value)
            except ConcurrencyConflict as exc:
                logger.info("Discarding stale %s: %s", operation.value, exc)
                return None
            except AIError as exc:
                self._set_operation(operation, OperationStatus.FAILED, exc.message)
                return None
            except Exception as exc:
                self._set_operation(operation, OperationStatus.FAILED, str(exc))
                raise
            if self.details is not None and self.detail_idea is idea:
                self.details = self.details.model_copy(update={field_name: value})
            self._set_operation(operation, OperationStatus.SUCCEEDED)
            return value

        return await self._single_flight.run((operation, epoch), run)

    async def generate_blog_post(self, style: Any = WritingStyle.ZAKELIJK):
        writing_style = WritingStyle.parse(getattr(style, "value", style))
        return await self._extend_details(
            Operation.BLOG_POST,
            "blog_post",
            lambda idea, _: self._ai.blog_post(self.context, idea, writing_style),
        )

    async def generate_press_release(self, style: Any = WritingStyle.ZAKELIJK):
        writing_style = WritingStyle.parse(getattr(style, "value", style))
        return await self._extend_details(
            Operation.PRESS_RELEASE,
            "press_release",
            lambda idea, _: self._ai.press_release(self.context, idea, writing_style),
        )

    async def generate_slide_outline(self):
        return await self._extend_details(
            Operation.SLIDE_OUTLINE,
            "ppt_outline",
            lambda idea, details: self._ai.slide_outline(self.context, idea, details),
        )

    async def request_follow_up_question(self) -> str:
        self._require("request_follow_up_question", Phase.DETAIL)
        idea, details = self.detail_idea, self.details
        epoch = self._epoch
        self._set_operation(Operation.FOLLOW_UP_QUESTION, OperationStatus.IN_PROGRESS)
        try:
            question = await self._ai.follow_up_question(
                self.context, idea, details.questions if details else []
            )
        except Exception as exc:
            self._set_operation(Operation.FOLLOW_UP_QUESTION, OperationStatus.FAILED, str(exc))
            raise
        if epoch != self._epoch:
            return question
        self.follow_up_question = question
        self._set_operation(Operation.FOLLOW_UP_QUESTION, OperationStatus.SUCCEEDED)
        return question

    async def start_follow_up_session(self, question: Optional[str] = None) -> Phase:
        """Restart collection on the same session with the follow-up question as context."""
        self._require("start_follow_up_session", Phase.DETAIL)
        text = question if question is not None else (self.follow_up_question or "")
        return await self._open_live(text)

    async def send_chat_message(
        self, text: str, persona: Any = ChatPersona.PRODUCT_MANAGER
    ) -> Optional[ChatMessage]:
        self._require("send_chat_message", Phase.DETAIL)
        content = (text or "").strip()
        if not content:
            raise ValidationError("text", "Bericht mag niet leeg zijn.")
        chat_persona = ChatPersona(getattr(persona, "value", persona))
        epoch = self._epoch

        self.chat_messages.append(
            ChatMessage(
                id=new_message_id(), role="user", content=content, timestamp=now_ms()
            )
        )
        history = [
            {"role": message.role, "content": message.content}
            for message in self.chat_messages
        ]
        self._set_operation(Operation.CHAT, OperationStatus.IN_PROGRESS)
        try:
            reply = await self._ai.chat_reply(
                history, chat_persona, self.context, self.detail_idea, self.details
            )
            self._ensure_current(epoch, "send_chat_message")
        except ConcurrencyConflict as exc:
            logger.info("Discarding stale chat reply: %s", exc)
            return None
        except AIError as exc:
            self._set_operation(Operation.CHAT, OperationStatus.FAILED, exc.message)
            return None
        except Exception as exc:
            self._set_operation(Operation.CHAT, OperationStatus.FAILED, str(exc))
            raise

        message = ChatMessage(
            id=new_message_id(),
            role="assistant",
            content=reply.text,
            timestamp=now_ms(),
            role_label=chat_persona.label,
            suggested_follow_up=reply.suggested_follow_up,
        )
        self.chat_messages.append(message)
        self._set_operation(Operation.CHAT, OperationStatus.SUCCEEDED)
        return message

    async def export_report(self) -> Tuple[str, bytes]:
        """Render the PDF report and archive a copy; archiving is best-effort."""
        self._require("export_report", Phase.DETAIL)
        session = SessionDocument(
            id=self.session_id,
            is_active=False,
            access_code=self.access_code,
            context=self.context,
            default_context=self.default_context,
        )
        pdf = await asyncio.to_thread(
            build_report,
            session,
            list(self.ideas),
            self.detail_idea,
            self.details,
            self.analysis,
        )
        report = await self._archive.save(self.session_id, self.detail_idea.name, pdf)
        filename = report.name if report else self._archive.filename_for(self.detail_idea.name)
        return filename, pdf

    async def export_deck(self) -> Tuple[str, bytes]:
        self._require("export_deck", Phase.DETAIL)
        deck = await asyncio.to_thread(build_deck, self.details, self.detail_idea)
        return self._archive.filename_for(self.detail_idea.name, extension="pptx"), deck

    def export_pbi_csv(self) -> Tuple[str, str]:
        self._require("export_pbi_csv", Phase.DETAIL)
        safe_name = re.sub(r"\s+", "_", self.detail_idea.name.strip())
        return f"PBI_{safe_name}.csv", build_pbi_csv(self.details)

    # ------------------------------------------------------------------
    # reset / lifecycle

    def _reset_local(self) -> None:
        self._epoch += 1
        self._cancel_timers()
        self._unsubscribe()
        self._reset_state()
        self.context = ""
        self.phase = Phase.MENU

    async def reset(self) -> Phase:
        self._reset_local()
        await self._write_session(
            "reset_session", {"isActive": False, "selectedManualIdeaId": None}
        )
        logger.info("Session %s reset", self.session_id)
        return self.phase

    async def wait_until_idle(self) -> None:
        """Wait for queued store events, countdowns and background jobs to finish."""
        while True:
            await self._reconciler.drain()
            pending = [task for task in self._timers | self._jobs if not task.done()]
            if not pending and not self._reconciler.pending:
                return
            if pending:
                await asyncio.wait(pending)

    async def close(self) -> None:
        self._reset_local()
        for task in list(self._jobs):
            task.cancel()
        self._single_flight.cancel_all()
        await self._reconciler.stop()

    def operation_snapshot(self) -> Dict[str, Dict[str, Any]]:
        payload: Dict[str, Dict[str, Any]] = {}
        for operation, state in self.operations.items():
            entry: Dict[str, Any] = {"status": state.status.value, "error": state.error}
            if operation in _PROGRESS_OPERATIONS:
                tracker = self._trackers.get(operation)
                if state.status is OperationStatus.IN_PROGRESS:
                    entry["progress"] = tracker.value() if tracker else 0
                elif state.status is OperationStatus.SUCCEEDED:
                    entry["progress"] = 100
                else:
                    entry["progress"] = 0
            payload[operation.value] = entry
        return payload

    def snapshot(self) -> Dict[str, Any]:
        """JSON-friendly view of the admin state; the staged reveal id stays hidden."""
        return {
            "sessionId": self.session_id,
            "phase": self.phase.value,
            "context": self.context,
            "defaultContext": self.default_context,
            "accessCode": self.access_code,
            "ideas": [idea.to_document() for idea in self.ideas],
            "ideaCount": len(self.ideas),
            "durationSeconds": self.duration_seconds,
            "duration": format_duration(self.duration_seconds),
            "closingCountdown": self.closing_countdown,
            "analysis": self.analysis.to_document() if self.analysis else None,
            "animatedScore": self.animated_score,
            "selectedIdeaId": self.selected_idea_id,
            "selectedManualIdeaId": self.selected_manual_idea_id,
            "isRevealing": self.is_revealing,
            "revealCountdown": self.reveal_countdown,
            "revealedIdeaId": self.revealed_idea_id,
            "clusters": [cluster.to_document() for cluster in self.clusters],
            "detailIdea": self.detail_idea.to_document() if self.detail_idea else None,
            "details": self.details.to_document() if self.details else None,
            "activeTab": self.active_tab.value,
            "chatMessages": [message.to_document() for message in self.chat_messages],
            "followUpQuestion": self.follow_up_question,
            "operations": self.operation_snapshot(),
            "storeErrors": [
                {"operation": failure.operation, "message": failure.message, "at": failure.at}
                for failure in self.store_errors
            ],
        }


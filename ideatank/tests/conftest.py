import asyncio
import json
import os
import re
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import pytest
from fastapi.testclient import TestClient

# Keep rotating log files out of the working tree during tests.
os.environ.setdefault("IDEATANK_LOG_DIR", os.path.join(os.getcwd(), ".pytest_logs"))

from ideatank.data.session_store import InMemorySessionStore, ideas_collection
from ideatank.errors import AIError, StoreError
from ideatank.main import create_app
from ideatank.services.access_gate import AccessGate
from ideatank.services.admin_login import AdminLogin
from ideatank.services.ai_orchestrator import AIOrchestrator
from ideatank.services.attempt_throttle import AttemptThrottle, ThrottleSettings
from ideatank.services.registry import build_registry
from ideatank.services.request_rate_limiter import request_rate_limiter
from ideatank.services.session_controller import SessionController, SessionSettings
from ideatank.utils.local_state import LocalStateFile
from ideatank.utils.security import get_password_hash

ADMIN_USERNAME_FOR_TEST = "admin"
ADMIN_PASSWORD_FOR_TEST = "Admin@123!"
SESSION_ID = "session-1"
PRIMARY_MODEL = "primary-model"
FALLBACK_MODEL = "fallback-model"

_IDEA_ID = re.compile(r'<idea id="([^"]+)"')


def idea_ids_in(messages: List[Dict[str, str]]) -> List[str]:
    return _IDEA_ID.findall(messages[-1]["content"])


def analysis_response(model: str, messages: List[Dict[str, str]]) -> Dict[str, Any]:
    return {
        "summary": "Veel energie-ideeën.",
        "topIdeaIds": idea_ids_in(messages)[:3],
        "headline": "Delft wordt energieneutraal",
        "innovationScore": 72,
        "keywords": ["energie", "besparen", "samen", "slim"],
    }


def cluster_response(model: str, messages: List[Dict[str, str]]) -> Dict[str, Any]:
    ids = idea_ids_in(messages)
    return {
        "clusters": [
            {
                "id": "cluster-1",
                "name": "Cluster idee #1",
                "summary": "Samen slimmer omgaan met energie.",
                "originalIdeaIds": ids[:2] or ["unknown"],
            }
        ]
    }


DETAILS_RESPONSE = {
    "rationale": "Past goed bij de vraag.",
    "questions": ["Wie betaalt?", "Wanneer starten we?", "Wat is de eerste stap?"],
    "questionAnswers": ["De gemeente.", "Volgend jaar.", "Een pilot."],
    "steps": ["Onderzoek", "Pilot", "Evaluatie", "Opschalen", "Borgen"],
    "pbis": [
        {
            "id": "PBI-1",
            "title": "Energiedashboard",
            "userStory": "Als bewoner wil ik mijn verbruik zien.",
            "acceptanceCriteria": ["Toont verbruik", "Per dag", "Export"],
            "priority": "Must have",
            "storyPoints": 5,
            "dependencies": [],
            "businessValue": "Inzicht",
            "dorCheck": True,
        }
    ],
    "businessCase": {
        "problemStatement": "Verbruik is onzichtbaar.",
        "proposedSolution": "Een dashboard.",
        "strategicFit": "Duurzaamheidsdoelen.",
        "financialImpact": "10% besparing.",
        "risks": ["Privacy"],
    },
    "devilsAdvocate": {
        "critique": "Niemand kijkt ernaar.",
        "blindSpots": ["Adoptie"],
        "preMortem": "Het dashboard werd vergeten.",
    },
    "marketing": {
        "slogan": "Zie wat je bespaart",
        "linkedInPost": "Trots op ons nieuwe idee.",
        "viralTweet": "Energie besparen is cool.",
        "targetAudience": "Huishoudens",
    },
}

DEFAULT_RESPONSES: Dict[str, Any] = {
    "analyze": analysis_response,
    "cluster": cluster_response,
    "details": DETAILS_RESPONSE,
    "blog": {"title": "Blog", "content": "Een mooi verhaal."},
    "press": {"title": "Persbericht", "content": "Delft, Zomer 2026."},
    "slides": {"slides": [{"title": "Probleem", "content": ["Verbruik", "Kosten"]}]},
    "follow_up": "Hoe betrekken we de buren?",
    "chat": 'Goede vraag, kijk naar de gebruikers. [FOLLOW_UP: "Wie is de klant?"]',
}

_PROMPT_MARKERS: Tuple[Tuple[str, str], ...] = (
    ("future headline", "analyze"),
    ("Cluster idee #1", "cluster"),
    ("project breakdown", "details"),
    ("blogpost van ongeveer", "blog"),
    ("persbericht", "press"),
    ("pitch-presentatie", "slides"),
    ("verdiepende vervolgvraag", "follow_up"),
    ("[FOLLOW_UP:", "chat"),
)


def classify_prompt(messages: List[Dict[str, str]]) -> str:
    text = "\n".join(message["content"] for message in messages)
    for marker, kind in _PROMPT_MARKERS:
        if marker in text:
            return kind
    raise AssertionError(f"Unrecognised prompt: {text[:200]}")


class FakeProvider:
    """Scripted completion provider recording every call as ``(kind, model)``."""

    def __init__(self, responses: Optional[Dict[str, Any]] = None):
        self.responses = dict(DEFAULT_RESPONSES)
        self.responses.update(responses or {})
        self.calls: List[Tuple[str, str]] = []
        self.failing_models: Set[str] = set()
        self.gate: Optional[asyncio.Event] = None

    def count(self, kind: str) -> int:
        return sum(1 for called_kind, _ in self.calls if called_kind == kind)

    async def complete(
        self,
        *,
        model: str,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        kind = classify_prompt(messages)
        self.calls.append((kind, model))
        if self.gate is not None:
            await self.gate.wait()
        await asyncio.sleep(0)
        if model in self.failing_models:
            raise AIError("provider", f"{model} is unavailable", status_code=500)
        response = self.responses[kind]
        if callable(response):
            response = response(model, messages)
        if isinstance(response, Exception):
            raise response
        return response if isinstance(response, str) else json.dumps(response)


class FlakyStore(InMemorySessionStore):
    """In-memory store that raises ``StoreError`` for selected operations."""

    def __init__(self) -> None:
        super().__init__()
        self.failing: Set[str] = set()

    def _maybe_fail(self, operation: str, path: str) -> None:
        if operation in self.failing:
            raise StoreError(operation, path, "permission denied")

    async def get_document(self, path):
        self._maybe_fail("get_document", path)
        return await super().get_document(path)

    async def set_document(self, path, data, merge=True):
        self._maybe_fail("set_document", path)
        await super().set_document(path, data, merge)

    async def delete_document(self, path):
        self._maybe_fail("delete_document", path)
        await super().delete_document(path)

    async def add_document(self, collection_path, data):
        self._maybe_fail("add_document", collection_path)
        return await super().add_document(collection_path, data)

    async def list_collection(self, collection_path):
        self._maybe_fail("list_collection", collection_path)
        return await super().list_collection(collection_path)


async def add_idea(store, name: str, content: str, timestamp: int = 0, session_id: str = SESSION_ID) -> str:
    return await store.add_document(
        ideas_collection(session_id),
        {"name": name, "content": content, "timestamp": timestamp},
    )


async def wait_for(condition: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def reset_request_rate_limiter():
    request_rate_limiter.reset()
    yield
    request_rate_limiter.reset()


@pytest.fixture
def fast_settings() -> SessionSettings:
    return SessionSettings(
        closing_countdown_seconds=2,
        tick_seconds=0.01,
        score_step=25,
        score_tick_seconds=0.001,
        reveal_countdown_seconds=2,
        max_analysis_reruns=2,
    )


@pytest.fixture
def store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def flaky_store() -> FlakyStore:
    return FlakyStore()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def orchestrator(provider: FakeProvider) -> AIOrchestrator:
    return AIOrchestrator(provider, PRIMARY_MODEL, FALLBACK_MODEL, progress_time_constant=8.0)


def make_gate(store, *, clock=None) -> AccessGate:
    kwargs = {"clock": clock} if clock is not None else {}
    return AccessGate(store, AttemptThrottle(ThrottleSettings(True, 3, 30), **kwargs))


@pytest.fixture
def gate(store) -> AccessGate:
    return make_gate(store)


@pytest.fixture
async def controller(store, orchestrator, gate, fast_settings, anyio_backend):
    ctrl = SessionController(
        SESSION_ID, store, orchestrator, gate=gate, settings=fast_settings
    )
    yield ctrl
    await ctrl.close()


@pytest.fixture
def admin_login(tmp_path) -> AdminLogin:
    throttle = AttemptThrottle(
        ThrottleSettings(True, 3, 30),
        state_file=LocalStateFile(tmp_path / "admin_lockout.json"),
    )
    return AdminLogin(
        ADMIN_USERNAME_FOR_TEST, get_password_hash(ADMIN_PASSWORD_FOR_TEST), throttle
    )


@pytest.fixture
def registry(store, orchestrator, admin_login, fast_settings):
    return build_registry(
        store=store,
        orchestrator=orchestrator,
        admin_login=admin_login,
        session_settings=fast_settings,
    )


@pytest.fixture
def client(registry):
    """Provides a TestClient bound to an app wired with test services."""
    with TestClient(create_app(registry)) as c:
        yield c


@pytest.fixture
def admin_headers(client) -> Dict[str, str]:
    response = client.post(
        "/api/admin/login",
        json={"username": ADMIN_USERNAME_FOR_TEST, "password": ADMIN_PASSWORD_FOR_TEST},
    )
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['accessToken']}"}

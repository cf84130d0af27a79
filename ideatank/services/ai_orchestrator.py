"""Generation orchestration: prompt, call, parse, validate, fall back.

Every call goes to the primary model first and is retried exactly once on the
fallback model when the call fails or its payload does not validate. Only the
follow-up question substitutes a templated answer instead of raising.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from ideatank.config.loader import get_ai_settings
from ideatank.errors import AIError
from ideatank.schemas.details import BlogPost, IdeaDetails, PressRelease, SlideOutline
from ideatank.schemas.session import (
    AIAnalysisResult,
    Cluster,
    ClusterResponse,
    Idea,
    empty_analysis,
)
from ideatank.services import prompts
from ideatank.services.ai_client import ChatCompletionClient
from ideatank.services.progress import ProgressTracker
from ideatank.services.prompts import ChatPersona, PromptSpec, WritingStyle

logger = logging.getLogger(__name__)

DEFAULT_SUMMARY = "Geen samenvatting beschikbaar."
DEFAULT_HEADLINE = "Innovatie Sessie"
AI_TOP_IDEAS = 3


class GenerationKind(str, Enum):
    ANALYZE = "analyze"
    CLUSTER_IDEAS = "clusterIdeas"
    IDEA_DETAILS = "ideaDetails"
    BLOG_POST = "blogPost"
    PRESS_RELEASE = "pressRelease"
    SLIDE_OUTLINE = "slideOutline"
    FOLLOW_UP_QUESTION = "followUpQuestion"
    CHAT_REPLY = "chatReply"


class CompletionProvider(Protocol):
    async def complete(
        self,
        *,
        model: str,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str: ...


@dataclass(frozen=True)
class ChatReply:
    text: str
    suggested_follow_up: Optional[str] = None


def extract_json(text: str) -> Any:
    """Return the first well-formed JSON object or array found in ``text``."""
    if not text:
        raise ValueError("empty response")
    cleaned = text.replace("```json", "").replace("```JSON", "").replace("```", "").strip()
    try:
        return json.loads(cleaned)
    except ValueError:
        pass

    decoder = json.JSONDecoder()
    for index, char in enumerate(cleaned):
        if char not in "{[":
            continue
        try:
            value, _ = decoder.raw_decode(cleaned, index)
        except ValueError:
            continue
        return value
    raise ValueError("no JSON object or array in response")


class _AnalysisPayload(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, allow_inf_nan=False
    )

    summary: str = ""
    top_idea_ids: List[str] = Field(default_factory=list)
    headline: str = ""
    innovation_score: float
    keywords: List[str] = Field(default_factory=list)


def _coerce_ideas(values: Sequence[Any]) -> List[Idea]:
    return [value if isinstance(value, Idea) else Idea.model_validate(value) for value in values]


def _coerce_idea(value: Any) -> Idea:
    return value if isinstance(value, Idea) else Idea.model_validate(value)


def _coerce_details(value: Any) -> Optional[IdeaDetails]:
    if value is None or isinstance(value, IdeaDetails):
        return value
    return IdeaDetails.model_validate(value)


def _analysis_from_payload(data: Any, ideas: Sequence[Idea]) -> AIAnalysisResult:
    payload = _AnalysisPayload.model_validate(data)
    by_id = {idea.id: idea for idea in ideas}
    top: List[Idea] = []
    for idea_id in payload.top_idea_ids:
        idea = by_id.get(str(idea_id))
        if idea is not None and idea not in top:
            top.append(idea)
        if len(top) == AI_TOP_IDEAS:
            break
    if not top:
        top = list(ideas[:AI_TOP_IDEAS])

    score = int(round(payload.innovation_score))
    return AIAnalysisResult(
        summary=payload.summary.strip() or DEFAULT_SUMMARY,
        headline=payload.headline.strip() or DEFAULT_HEADLINE,
        innovation_score=max(0, min(100, score)),
        keywords=[str(keyword) for keyword in payload.keywords if str(keyword).strip()],
        top_ideas=top,
    )


def _clusters_from_payload(data: Any) -> List[Cluster]:
    if isinstance(data, list):
        data = {"clusters": data}
    return ClusterResponse.model_validate(data).clusters


def _plain_text(text: str) -> str:
    return text.strip().strip('"').strip()


def parse_chat_reply(text: str) -> ChatReply:
    """Split the ``[FOLLOW_UP: "..."]`` suffix off a persona reply."""
    match = prompts.FOLLOW_UP_PATTERN.search(text or "")
    follow_up = match.group(1).strip() if match else None
    body = prompts.FOLLOW_UP_PATTERN.sub("", text or "").strip()
    if not body:
        raise ValueError("empty chat reply")
    return ChatReply(text=body, suggested_follow_up=follow_up or None)


@dataclass(frozen=True)
class _Plan:
    prompt: PromptSpec
    parse: Callable[[str], Any]


def _plan(kind: GenerationKind, payload: Dict[str, Any]) -> _Plan:
    context = str(payload.get("context") or "")

    if kind is GenerationKind.ANALYZE:
        ideas = _coerce_ideas(payload.get("ideas") or [])
        return _Plan(
            prompts.analyze_prompt(context, ideas),
            lambda raw: _analysis_from_payload(extract_json(raw), ideas),
        )
    if kind is GenerationKind.CLUSTER_IDEAS:
        ideas = _coerce_ideas(payload.get("ideas") or [])
        return _Plan(
            prompts.cluster_prompt(context, ideas),
            lambda raw: _clusters_from_payload(extract_json(raw)),
        )

    idea = _coerce_idea(payload["idea"])
    if kind is GenerationKind.IDEA_DETAILS:
        return _Plan(
            prompts.idea_details_prompt(context, idea),
            lambda raw: IdeaDetails.model_validate(extract_json(raw)),
        )
    if kind is GenerationKind.BLOG_POST:
        style = WritingStyle.parse(payload.get("style"))
        return _Plan(
            prompts.blog_post_prompt(context, idea, style),
            lambda raw: BlogPost.model_validate(extract_json(raw)),
        )
    if kind is GenerationKind.PRESS_RELEASE:
        style = WritingStyle.parse(payload.get("style"))
        return _Plan(
            prompts.press_release_prompt(context, idea, style),
            lambda raw: PressRelease.model_validate(extract_json(raw)),
        )
    if kind is GenerationKind.SLIDE_OUTLINE:
        details = _coerce_details(payload.get("details"))
        return _Plan(
            prompts.slide_outline_prompt(context, idea, details),
            lambda raw: SlideOutline.model_validate(extract_json(raw)),
        )
    if kind is GenerationKind.FOLLOW_UP_QUESTION:
        existing = [str(q) for q in payload.get("existingQuestions") or []]

        def parse_question(raw: str) -> str:
            question = _plain_text(raw)
            if not question:
                raise ValueError("empty question")
            return question

        return _Plan(
            prompts.follow_up_question_prompt(context, idea, existing), parse_question
        )
    if kind is GenerationKind.CHAT_REPLY:
        persona = ChatPersona(payload.get("persona") or ChatPersona.PRODUCT_MANAGER)
        details = _coerce_details(payload.get("details"))
        history = list(payload.get("history") or [])
        return _Plan(
            prompts.chat_prompt(history, persona, context, idea, details),
            parse_chat_reply,
        )
    raise ValueError(f"Unsupported generation kind: {kind}")


class AIOrchestrator:
    """Primary/fallback generation with validation and progress projection."""

    def __init__(
        self,
        provider: Optional[CompletionProvider],
        primary_model: str,
        fallback_model: Optional[str] = None,
        *,
        progress_time_constant: float = 8.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._provider = provider
        self._primary_model = primary_model
        self._fallback_model = fallback_model
        self._progress_time_constant = progress_time_constant
        self._clock = clock

    @property
    def configured(self) -> bool:
        return self._provider is not None

    @property
    def provider(self) -> Optional[CompletionProvider]:
        return self._provider

    @property
    def models(self) -> Dict[str, Optional[str]]:
        return {"primary": self._primary_model, "fallback": self._fallback_model or None}

    def new_tracker(self) -> ProgressTracker:
        """Return a progress tracker for one call, on this orchestrator's time constant."""
        return ProgressTracker(self._progress_time_constant, self._clock)

    def _models(self) -> List[str]:
        models = [self._primary_model]
        if self._fallback_model and self._fallback_model != self._primary_model:
            models.append(self._fallback_model)
        return models

    async def generate(
        self,
        kind: GenerationKind,
        payload: Dict[str, Any],
        *,
        tracker: Optional[ProgressTracker] = None,
    ) -> Any:
        kind = GenerationKind(kind)
        if self._provider is None:
            raise AIError(
                kind.value,
                "AI provider is not configured; set IDEATANK_AI_API_KEY.",
                status_code=503,
                retryable=False,
            )
        try:
            plan = _plan(kind, payload)
        except (KeyError, ValueError, PydanticValidationError) as exc:
            raise AIError(kind.value, f"invalid request payload: {exc}", status_code=400, retryable=False) from exc

        if tracker is not None:
            tracker.start()
        succeeded = False
        try:
            result = await self._call_with_fallback(kind, plan)
            succeeded = True
        finally:
            if tracker is not None:
                tracker.finish(succeeded=succeeded)
        return result

    async def _call_with_fallback(self, kind: GenerationKind, plan: _Plan) -> Any:
        last_error: Optional[Exception] = None
        for attempt, model in enumerate(self._models()):
            if attempt:
                logger.warning("Retrying %s on fallback model %s", kind.value, model)
            try:
                raw = await self._provider.complete(
                    model=model,
                    messages=plan.prompt.messages,
                    temperature=plan.prompt.temperature,
                    max_tokens=plan.prompt.max_tokens,
                )
                return plan.parse(raw)
            except AIError as exc:
                last_error = exc
                logger.warning("%s failed on %s: %s", kind.value, model, exc.message)
            except (ValueError, PydanticValidationError) as exc:
                last_error = exc
                logger.warning("%s returned an unusable payload from %s: %s", kind.value, model, exc)

        status_code = getattr(last_error, "status_code", None)
        raise AIError(
            kind.value,
            f"generation failed after fallback: {last_error}",
            status_code=status_code,
        )

    async def analyze_ideas(
        self,
        context: str,
        ideas: Sequence[Idea],
        *,
        tracker: Optional[ProgressTracker] = None,
    ) -> AIAnalysisResult:
        if not ideas:
            if tracker is not None:
                tracker.finish(succeeded=True)
            return empty_analysis()
        return await self.generate(
            GenerationKind.ANALYZE, {"context": context, "ideas": list(ideas)}, tracker=tracker
        )

    async def cluster_ideas(self, context: str, ideas: Sequence[Idea]) -> List[Cluster]:
        if not ideas:
            raise AIError(GenerationKind.CLUSTER_IDEAS.value, "no ideas to cluster", status_code=400, retryable=False)
        return await self.generate(
            GenerationKind.CLUSTER_IDEAS, {"context": context, "ideas": list(ideas)}
        )

    async def idea_details(
        self, context: str, idea: Idea, *, tracker: Optional[ProgressTracker] = None
    ) -> IdeaDetails:
        return await self.generate(
            GenerationKind.IDEA_DETAILS, {"context": context, "idea": idea}, tracker=tracker
        )

    async def blog_post(self, context: str, idea: Idea, style: WritingStyle) -> BlogPost:
        return await self.generate(
            GenerationKind.BLOG_POST, {"context": context, "idea": idea, "style": style.value}
        )

    async def press_release(self, context: str, idea: Idea, style: WritingStyle) -> PressRelease:
        return await self.generate(
            GenerationKind.PRESS_RELEASE, {"context": context, "idea": idea, "style": style.value}
        )

    async def slide_outline(
        self, context: str, idea: Idea, details: Optional[IdeaDetails] = None
    ) -> SlideOutline:
        return await self.generate(
            GenerationKind.SLIDE_OUTLINE, {"context": context, "idea": idea, "details": details}
        )

    async def follow_up_question(
        self, context: str, idea: Idea, existing_questions: Sequence[str] = ()
    ) -> str:
        try:
            return await self.generate(
                GenerationKind.FOLLOW_UP_QUESTION,
                {"context": context, "idea": idea, "existingQuestions": list(existing_questions)},
            )
        except AIError as exc:
            logger.warning("Using templated follow-up question: %s", exc.message)
            return prompts.fallback_follow_up_question(idea)

    async def chat_reply(
        self,
        history: Sequence[Dict[str, str]],
        persona: ChatPersona,
        context: str,
        idea: Idea,
        details: Optional[IdeaDetails] = None,
    ) -> ChatReply:
        return await self.generate(
            GenerationKind.CHAT_REPLY,
            {
                "history": list(history),
                "persona": ChatPersona(persona).value,
                "context": context,
                "idea": idea,
                "details": details,
            },
        )


def build_orchestrator(
    provider: Optional[CompletionProvider] = None,
    settings: Optional[Dict[str, Any]] = None,
) -> AIOrchestrator:
    """Build an orchestrator from config; without an API key it fails closed."""
    settings = settings or get_ai_settings()
    if provider is None and settings.get("api_key"):
        provider = ChatCompletionClient(
            settings["base_url"],
            settings["api_key"],
            timeout=settings["request_timeout_seconds"],
        )
    return AIOrchestrator(
        provider,
        settings["primary_model"],
        settings.get("fallback_model"),
        progress_time_constant=settings["progress_time_constant_seconds"],
    )



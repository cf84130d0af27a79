from typing import Any, Dict

from fastapi import APIRouter, Depends

from ideatank.config.loader import get_default_session_id
from ideatank.dependencies import get_registry
from ideatank.schemas.api import (
    AnalyzeRequest,
    ChatRequest,
    FollowUpQuestionRequest,
    IdeaRequest,
    SlideOutlineRequest,
    StyledIdeaRequest,
)
from ideatank.services.registry import ServiceRegistry

router = APIRouter(prefix="/api", tags=["ai"])


@router.get("/health")
async def health(registry: ServiceRegistry = Depends(get_registry)) -> Dict[str, Any]:
    return {
        "status": "ok",
        "aiConfigured": registry.orchestrator.configured,
        "models": registry.orchestrator.models,
        "defaultSessionId": get_default_session_id(),
    }


@router.post("/analyze")
async def analyze(
    body: AnalyzeRequest, registry: ServiceRegistry = Depends(get_registry)
) -> Dict[str, Any]:
    result = await registry.orchestrator.analyze_ideas(body.context, body.ideas)
    return result.to_document()


@router.post("/cluster-ideas")
async def cluster_ideas(
    body: AnalyzeRequest, registry: ServiceRegistry = Depends(get_registry)
) -> Dict[str, Any]:
    clusters = await registry.orchestrator.cluster_ideas(body.context, body.ideas)
    return {"clusters": [cluster.to_document() for cluster in clusters]}


@router.post("/generate-details")
async def generate_details(
    body: IdeaRequest, registry: ServiceRegistry = Depends(get_registry)
) -> Dict[str, Any]:
    details = await registry.orchestrator.idea_details(body.context, body.idea)
    return details.to_document()


@router.post("/generate-blog")
async def generate_blog(
    body: StyledIdeaRequest, registry: ServiceRegistry = Depends(get_registry)
) -> Dict[str, Any]:
    post = await registry.orchestrator.blog_post(body.context, body.idea, body.style)
    return post.to_document()


@router.post("/generate-press-release")
async def generate_press_release(
    body: StyledIdeaRequest, registry: ServiceRegistry = Depends(get_registry)
) -> Dict[str, Any]:
    release = await registry.orchestrator.press_release(body.context, body.idea, body.style)
    return release.to_document()


@router.post("/generate-slide-outline")
async def generate_slide_outline(
    body: SlideOutlineRequest, registry: ServiceRegistry = Depends(get_registry)
) -> Dict[str, Any]:
    outline = await registry.orchestrator.slide_outline(body.context, body.idea, body.details)
    return outline.to_document()


@router.post("/generate-follow-up-question")
async def generate_follow_up_question(
    body: FollowUpQuestionRequest, registry: ServiceRegistry = Depends(get_registry)
) -> Dict[str, str]:
    question = await registry.orchestrator.follow_up_question(
        body.context, body.idea, body.existing_questions
    )
    return {"question": question}


@router.post("/chat")
async def chat(
    body: ChatRequest, registry: ServiceRegistry = Depends(get_registry)
) -> Dict[str, Any]:
    reply = await registry.orchestrator.chat_reply(
        [entry.model_dump() for entry in body.history],
        body.role,
        body.context,
        body.idea,
        body.details,
    )
    return {"text": reply.text, "suggestedFollowUp": reply.suggested_follow_up}

"""Request bodies for the HTTP surface."""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from ideatank.schemas.details import IdeaDetails
from ideatank.schemas.session import CamelModel, Cluster, Idea
from ideatank.services.prompts import ChatPersona, WritingStyle


class AnalyzeRequest(CamelModel):
    context: str = ""
    ideas: List[Idea] = Field(default_factory=list)


class IdeaRequest(CamelModel):
    context: str = ""
    idea: Idea


class StyledIdeaRequest(IdeaRequest):
    style: WritingStyle = WritingStyle.ZAKELIJK


class SlideOutlineRequest(IdeaRequest):
    details: Optional[IdeaDetails] = None


class FollowUpQuestionRequest(IdeaRequest):
    existing_questions: List[str] = Field(default_factory=list)


class ChatHistoryEntry(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class ChatRequest(CamelModel):
    history: List[ChatHistoryEntry] = Field(..., min_length=1)
    role: ChatPersona = ChatPersona.PRODUCT_MANAGER
    context: str = ""
    idea: Idea
    details: Optional[IdeaDetails] = None


class AccessRequest(CamelModel):
    code: str
    session_id: Optional[str] = None


class SubmitIdeaRequest(CamelModel):
    name: str = ""
    content: str = ""
    device_id: Optional[str] = None


class AdminLoginRequest(BaseModel):
    username: str
    password: str


class SettingsRequest(CamelModel):
    access_code: Optional[str] = None
    generate_code: bool = False
    default_context: Optional[str] = None


class ContextRequest(CamelModel):
    context: Optional[str] = None


class ManualSelectionRequest(CamelModel):
    idea_id: Optional[str] = None
    cluster: Optional[Cluster] = None
    cluster_id: Optional[str] = None


class IdeaIdRequest(CamelModel):
    idea_id: Optional[str] = None


class ConfirmRequest(CamelModel):
    confirmed: bool = False


class TabRequest(CamelModel):
    tab: str


class StyleRequest(CamelModel):
    style: WritingStyle = WritingStyle.ZAKELIJK


class FollowUpSessionRequest(CamelModel):
    question: Optional[str] = None


class ChatMessageRequest(CamelModel):
    text: str
    persona: ChatPersona = ChatPersona.PRODUCT_MANAGER


def error_body(error: str, message: str, **extra: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"error": error, "message": message}
    payload.update(extra)
    return payload

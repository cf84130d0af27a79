from __future__ import annotations

from typing import Any, List, Literal, Optional

from pydantic import Field, field_validator

from ideatank.schemas.session import CamelModel


def _as_string_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, list):
        return [str(item) for item in value if str(item).strip()]
    return [str(value)]


class PBI(CamelModel):
    id: str = ""
    title: str = Field(..., min_length=1)
    user_story: str = ""
    acceptance_criteria: List[str] = Field(default_factory=list)
    priority: str = ""
    story_points: int
    dependencies: List[str] = Field(default_factory=list)
    business_value: str = ""
    dor_check: bool = False
    description: Optional[str] = None

    @field_validator("acceptance_criteria", "dependencies", mode="before")
    @classmethod
    def _coerce_lists(cls, value: Any) -> List[str]:
        return _as_string_list(value)


class BusinessCase(CamelModel):
    problem_statement: str
    proposed_solution: str
    strategic_fit: str
    financial_impact: str
    risks: List[str] = Field(default_factory=list)

    @field_validator("risks", mode="before")
    @classmethod
    def _coerce_risks(cls, value: Any) -> List[str]:
        return _as_string_list(value)


class DevilsAdvocate(CamelModel):
    critique: str
    blind_spots: List[str] = Field(default_factory=list)
    pre_mortem: str

    @field_validator("blind_spots", mode="before")
    @classmethod
    def _coerce_blind_spots(cls, value: Any) -> List[str]:
        return _as_string_list(value)


class Marketing(CamelModel):
    slogan: str
    linked_in_post: str
    viral_tweet: str
    target_audience: str


class BlogPost(CamelModel):
    title: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)


class PressRelease(CamelModel):
    title: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    date: str = "Zomer 2026"
    location: str = "Delft"


class Slide(CamelModel):
    title: str = Field(..., min_length=1)
    content: List[str] = Field(default_factory=list)

    @field_validator("content", mode="before")
    @classmethod
    def _coerce_content(cls, value: Any) -> List[str]:
        return _as_string_list(value)


class SlideOutline(CamelModel):
    slides: List[Slide] = Field(..., min_length=1)


class IdeaDetails(CamelModel):
    rationale: str = Field(..., min_length=1)
    questions: List[str] = Field(default_factory=list)
    question_answers: List[str] = Field(default_factory=list)
    steps: List[str] = Field(..., min_length=1)
    pbis: List[PBI] = Field(..., min_length=1)
    business_case: BusinessCase
    devils_advocate: DevilsAdvocate
    marketing: Marketing
    blog_post: Optional[BlogPost] = None
    press_release: Optional[PressRelease] = None
    ppt_outline: Optional[SlideOutline] = None

    @field_validator("questions", "question_answers", mode="before")
    @classmethod
    def _coerce_text_lists(cls, value: Any) -> List[str]:
        return _as_string_list(value)


class ChatMessage(CamelModel):
    id: str
    role: Literal["user", "assistant"]
    content: str
    timestamp: int
    role_label: Optional[str] = None
    suggested_follow_up: Optional[str] = None


class Report(CamelModel):
    id: str
    name: str
    idea_name: str
    generated_at: int
    content: str
    type: Literal["pdf", "pptx"] = "pdf"

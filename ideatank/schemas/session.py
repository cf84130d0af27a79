from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model whose wire/document form uses camelCase keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class Idea(CamelModel):
    id: str
    name: str
    content: str
    timestamp: int = 0

    @field_validator("timestamp", mode="before")
    @classmethod
    def _coerce_timestamp(cls, value: Any) -> int:
        try:
            return int(value or 0)
        except (TypeError, ValueError):
            return 0


class SessionDocument(CamelModel):
    id: str
    is_active: bool = False
    access_code: Optional[str] = None
    context: str = ""
    default_context: str = ""
    selected_manual_idea_id: Optional[str] = None
    updated_at: int = 0

    @classmethod
    def from_document(
        cls, session_id: str, data: Optional[Dict[str, Any]]
    ) -> "SessionDocument":
        payload = dict(data or {})
        payload["id"] = session_id
        payload["isActive"] = payload.get("isActive") is True
        return cls.model_validate(payload)


class Cluster(CamelModel):
    id: str
    name: str
    summary: str
    original_idea_ids: List[str] = Field(..., min_length=1)

    @field_validator("id", "name", "summary")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not str(value).strip():
            raise ValueError("must not be blank")
        return value


class ClusterResponse(CamelModel):
    clusters: List[Cluster] = Field(..., min_length=1)


class AIAnalysisResult(CamelModel):
    summary: str
    headline: str
    innovation_score: int = Field(..., ge=0, le=100)
    keywords: List[str] = Field(default_factory=list)
    top_ideas: List[Idea] = Field(default_factory=list, max_length=4)


NO_IDEAS_SUMMARY = "Geen ideeën ingediend."
NO_IDEAS_HEADLINE = "Geen inzendingen"


def empty_analysis() -> AIAnalysisResult:
    """Zero-score result used when a session closes without any ideas."""
    return AIAnalysisResult(
        summary=NO_IDEAS_SUMMARY,
        headline=NO_IDEAS_HEADLINE,
        innovation_score=0,
        keywords=[],
        top_ideas=[],
    )


def cluster_to_idea(cluster: Cluster, timestamp: int = 0) -> Idea:
    """Represent a cluster as a synthetic idea so it shares the manual-selection path."""
    return Idea(
        id=cluster.id,
        name=cluster.name,
        content=cluster.summary,
        timestamp=timestamp,
    )

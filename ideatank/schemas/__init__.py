from .session import (
    Idea,
    Cluster,
    AIAnalysisResult,
    SessionDocument,
)
from .details import (
    IdeaDetails,
    ChatMessage,
    Report,
)

__all__ = [
    "Idea",
    "Cluster",
    "AIAnalysisResult",
    "SessionDocument",
    "IdeaDetails",
    "ChatMessage",
    "Report",
]

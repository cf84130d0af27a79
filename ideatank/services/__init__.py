"""Service layer for Idea Tank sessions."""

from .session_controller import (
    SessionController,
    SessionSettings,
    Phase,
)  # noqa: F401

__all__ = [
    "SessionController",
    "SessionSettings",
    "Phase",
]

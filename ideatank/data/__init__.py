"""Session Store adapters."""

from .session_store import (
    InMemorySessionStore,
    Query,
    SessionStore,
    StoredDocument,
)  # noqa: F401

__all__ = [
    "InMemorySessionStore",
    "Query",
    "SessionStore",
    "StoredDocument",
]

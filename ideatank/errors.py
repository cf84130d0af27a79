"""Exception taxonomy shared by the Idea Tank services."""

from __future__ import annotations

from typing import Optional


class IdeaTankError(Exception):
    """Base class for all application errors."""


class GateError(IdeaTankError):
    """Raised when an access code cannot be registered or resolved."""


class ValidationError(IdeaTankError):
    """A form field violated its length or emptiness rule."""

    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field
        self.message = message


class StoreError(IdeaTankError):
    """Transient connectivity or permission failure on the Session Store."""

    def __init__(self, operation: str, path: str, message: str = ""):
        super().__init__(f"{operation} failed for {path}: {message}".rstrip(": "))
        self.operation = operation
        self.path = path
        self.message = message


class AIError(IdeaTankError):
    """Generation failed after the fallback model, or returned an unusable payload."""

    def __init__(
        self,
        kind: str,
        message: str,
        *,
        status_code: Optional[int] = None,
        retryable: bool = True,
    ):
        super().__init__(f"{kind}: {message}")
        self.kind = kind
        self.message = message
        self.status_code = status_code
        self.retryable = retryable


class ConcurrencyConflict(IdeaTankError):
    """An in-flight operation's inputs changed before it resolved."""


class PhaseError(IdeaTankError):
    """An operation was requested in a phase that does not allow it."""

    def __init__(self, operation: str, phase: str):
        super().__init__(f"{operation} is not allowed in phase {phase}")
        self.operation = operation
        self.phase = phase

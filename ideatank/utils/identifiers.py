import secrets
from uuid import uuid4

# Excludes look-alikes I, 1, O and 0.
SESSION_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
SESSION_CODE_LENGTH = 6


def generate_session_code(length: int = SESSION_CODE_LENGTH) -> str:
    """Return a random uppercase participant access code."""
    return "".join(secrets.choice(SESSION_CODE_ALPHABET) for _ in range(length))


def new_message_id() -> str:
    return uuid4().hex[:12]

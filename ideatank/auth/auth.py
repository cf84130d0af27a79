from datetime import datetime, timedelta, UTC
from typing import Dict, Optional
import logging
import os
import secrets

from fastapi import Header, HTTPException, status
from jose import JWTError, jwt

from ideatank.config.loader import get_admin_login_settings

# Set up a dedicated logger for authentication events
logger = logging.getLogger("ideatank.auth")

ALGORITHM = "HS256"
JWT_ISSUER = os.getenv("IDEATANK_JWT_ISSUER", "ideatank")


def _is_production_mode() -> bool:
    env = os.getenv("IDEATANK_ENV", "development").strip().lower()
    return env in {"production", "prod"}


def _load_secret_key() -> str:
    key = os.getenv("IDEATANK_JWT_SECRET_KEY")
    if key:
        if len(key) < 32:
            raise RuntimeError(
                "Invalid JWT secret key configuration. "
                + "The key must be at least 32 characters long."
            )
        return key
    if _is_production_mode():
        raise RuntimeError(
            "Missing IDEATANK_JWT_SECRET_KEY while IDEATANK_ENV is set to production."
        )
    logger.warning("DEVELOPMENT MODE: using a generated JWT secret key.")
    return secrets.token_urlsafe(48)


SECRET_KEY = _load_secret_key()
ACCESS_TOKEN_EXPIRE_MINUTES = get_admin_login_settings()["token_expire_minutes"]


def create_access_token(
    data: Dict[str, str], expires_delta: Optional[timedelta] = None
) -> str:
    to_encode = dict(data)
    expire = datetime.now(UTC) + (
        expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode.update({"exp": expire, "iss": JWT_ISSUER})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str) -> Optional[Dict[str, str]]:
    try:
        payload = jwt.decode(
            token, SECRET_KEY, algorithms=[ALGORITHM], issuer=JWT_ISSUER
        )
    except JWTError as exc:
        logger.info("Rejected admin token: %s", exc)
        return None
    if payload.get("role") != "admin":
        return None
    return payload


async def get_current_admin(authorization: Optional[str] = Header(default=None)) -> str:
    """FastAPI dependency returning the admin username from a bearer token."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Not authenticated",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if not authorization or not authorization.lower().startswith("bearer "):
        raise credentials_exception
    payload = decode_access_token(authorization.split(" ", 1)[1].strip())
    if payload is None or not payload.get("sub"):
        raise credentials_exception
    return str(payload["sub"])

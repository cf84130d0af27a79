from contextlib import asynccontextmanager
from typing import Optional
import json
import logging
import os
import traceback

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from ideatank.auth.auth import decode_access_token
from ideatank.config.loader import get_api_settings
from ideatank.dependencies import client_key
from ideatank.errors import (
    AIError,
    ConcurrencyConflict,
    GateError,
    PhaseError,
    StoreError,
    ValidationError,
)
from ideatank.routers import admin as admin_router
from ideatank.routers import ai as ai_router
from ideatank.routers import participation as participation_router
from ideatank.schemas.api import error_body
from ideatank.services.registry import ServiceRegistry, build_registry
from ideatank.services.request_rate_limiter import request_rate_limiter
from ideatank.utils.logging_config import setup_logging

logger = logging.getLogger("ideatank")


def _is_development() -> bool:
    env = os.getenv("IDEATANK_ENV", "development").strip().lower()
    return env in {"development", "dev"}


def _ai_status(exc: AIError) -> int:
    if exc.status_code in {400, 429, 503}:
        return exc.status_code
    return status.HTTP_502_BAD_GATEWAY


def _admin_from_request(request: Request) -> Optional[str]:
    header = request.headers.get("authorization", "")
    if not header.lower().startswith("bearer "):
        return None
    payload = decode_access_token(header.split(" ", 1)[1].strip())
    return payload.get("sub") if payload else None


def _redact(parsed: dict) -> dict:
    redacted = {}
    for key, value in parsed.items():
        lower_key = str(key).lower()
        if "password" in lower_key or "token" in lower_key or "code" in lower_key:
            redacted[key] = "***"
        elif isinstance(value, (str, int, float, bool, type(None))):
            redacted[key] = value
        else:
            redacted[key] = type(value).__name__
    return redacted


def _too_large(limit: int) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
        content=error_body("payload_too_large", f"Request body exceeds {limit} bytes."),
    )


async def body_size_middleware(
    request: Request, call_next: RequestResponseEndpoint
) -> Response:
    limit = get_api_settings()["max_body_bytes"]
    declared = request.headers.get("content-length")
    if declared and declared.isdigit():
        if int(declared) > limit:
            return _too_large(limit)
        return await call_next(request)
    if request.method.upper() not in {"POST", "PUT", "PATCH"}:
        return await call_next(request)

    # No declared length (chunked upload): count what actually arrives.
    received = bytearray()
    async for chunk in request.stream():
        received.extend(chunk)
        if len(received) > limit:
            logger.warning("Rejected streamed body over %s bytes on %s", limit, request.url.path)
            return _too_large(limit)
    # Starlette replays a cached body to the downstream app.
    request._body = bytes(received)
    return await call_next(request)


async def rate_limit_middleware(
    request: Request, call_next: RequestResponseEndpoint
) -> Response:
    if not request.url.path.startswith("/api/"):
        return await call_next(request)
    limited, retry_after = request_rate_limiter.hit(client_key(request))
    if limited:
        logger.warning("Rate limit hit for %s on %s", client_key(request), request.url.path)
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content=error_body(
                "rate_limited",
                "Too many requests. Try again later.",
                retryAfterSeconds=retry_after,
            ),
            headers={"Retry-After": str(retry_after)},
        )
    return await call_next(request)


async def audit_action_middleware(
    request: Request, call_next: RequestResponseEndpoint
) -> Response:
    method = request.method.upper()
    path = request.url.path
    if method not in {"POST", "PUT", "PATCH", "DELETE"} or not path.startswith("/api/admin/"):
        return await call_next(request)

    admin = _admin_from_request(request)
    payload_summary: Optional[str] = None
    if request.headers.get("content-type", "").lower().startswith("application/json"):
        body = await request.body()
        if body:
            try:
                parsed = json.loads(body.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError):
                payload_summary = "unparseable"
            else:
                if isinstance(parsed, dict):
                    payload_summary = json.dumps(_redact(parsed), ensure_ascii=True)
                else:
                    payload_summary = type(parsed).__name__

    response = await call_next(request)

    details = {
        "method": method,
        "path": path,
        "status": response.status_code,
        "admin": admin or "anonymous",
    }
    if payload_summary:
        details["payload"] = payload_summary
    logging.getLogger("audit").info("Audit action: %s", details)
    return response


def create_app(registry: Optional[ServiceRegistry] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging()
        if getattr(app.state, "registry", None) is None:
            app.state.registry = build_registry()
        logger.info(
            "Idea Tank started (AI configured: %s)",
            app.state.registry.orchestrator.configured,
        )
        yield
        await app.state.registry.aclose()
        logger.info("Application shutdown.")

    app = FastAPI(
        title="Idea Tank",
        description="Live brainstorming sessions with AI analysis",
        lifespan=lifespan,
    )
    app.state.registry = registry

    app.add_middleware(BaseHTTPMiddleware, dispatch=audit_action_middleware)
    app.add_middleware(BaseHTTPMiddleware, dispatch=rate_limit_middleware)
    app.add_middleware(BaseHTTPMiddleware, dispatch=body_size_middleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=get_api_settings()["allowed_origins"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(ai_router.router)
    app.include_router(participation_router.router)
    app.include_router(admin_router.router)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(
            "Unhandled exception on %s: %s\n%s",
            request.url.path,
            exc,
            traceback.format_exc(),
        )
        message = str(exc) if _is_development() else "Internal Server Error. Please check logs."
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=error_body("internal_error", message),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        if exc.status_code >= 500:
            logger.error("HTTP %s on %s: %s", exc.status_code, request.url.path, exc.detail)
        else:
            logger.info("HTTP %s on %s: %s", exc.status_code, request.url.path, exc.detail)
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        error_messages = [err["msg"] for err in exc.errors()]
        logger.warning("Rejected request body on %s: %s", request.url.path, error_messages)
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": error_messages},
        )

    @app.exception_handler(ValidationError)
    async def field_validation_handler(request: Request, exc: ValidationError):
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=error_body("validation_error", exc.message, field=exc.field),
        )

    @app.exception_handler(PhaseError)
    async def phase_error_handler(request: Request, exc: PhaseError):
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content=error_body("invalid_phase", str(exc), phase=exc.phase),
        )

    @app.exception_handler(GateError)
    async def gate_error_handler(request: Request, exc: GateError):
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content=error_body("access_code_error", str(exc)),
        )

    @app.exception_handler(ConcurrencyConflict)
    async def conflict_handler(request: Request, exc: ConcurrencyConflict):
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content=error_body("conflict", str(exc)),
        )

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError):
        logger.error("Store unavailable during %s: %s", request.url.path, exc)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=error_body("store_unavailable", str(exc)),
        )

    @app.exception_handler(AIError)
    async def ai_error_handler(request: Request, exc: AIError):
        logger.warning("Generation %s failed: %s", exc.kind, exc.message)
        return JSONResponse(
            status_code=_ai_status(exc),
            content=error_body("ai_error", exc.message, kind=exc.kind),
        )

    return app


app = create_app()

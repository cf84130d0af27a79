from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse

from ideatank.data.session_store import active_session_query, session_path
from ideatank.dependencies import client_key, get_registry
from ideatank.schemas.api import AccessRequest, SubmitIdeaRequest, error_body
from ideatank.services.access_gate import GateOutcome
from ideatank.services.registry import ServiceRegistry
from ideatank.services.submission_channel import SubmissionOutcome

router = APIRouter(prefix="/api", tags=["participation"])

_GATE_RESPONSES = {
    GateOutcome.REJECTED: (status.HTTP_401_UNAUTHORIZED, "invalid_code", "Ongeldige code."),
    GateOutcome.SESSION_CLOSED: (
        status.HTTP_409_CONFLICT,
        "session_closed",
        "De sessie is momenteel gesloten.",
    ),
    GateOutcome.SESSION_NOT_FOUND: (
        status.HTTP_404_NOT_FOUND,
        "session_not_found",
        "Sessie niet gevonden.",
    ),
    GateOutcome.LOCKED_OUT: (
        status.HTTP_429_TOO_MANY_REQUESTS,
        "locked_out",
        "Te veel pogingen. Wacht even.",
    ),
}

_SUBMISSION_STATUS = {
    SubmissionOutcome.VALIDATION_ERROR: status.HTTP_422_UNPROCESSABLE_ENTITY,
    SubmissionOutcome.SESSION_CLOSED: status.HTTP_409_CONFLICT,
    SubmissionOutcome.SESSION_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    SubmissionOutcome.COOLDOWN: status.HTTP_429_TOO_MANY_REQUESTS,
    SubmissionOutcome.STORE_ERROR: status.HTTP_503_SERVICE_UNAVAILABLE,
}


@router.post("/access")
async def check_access(
    body: AccessRequest,
    request: Request,
    registry: ServiceRegistry = Depends(get_registry),
):
    result = await registry.gate.check_code(
        body.code, body.session_id, caller=client_key(request)
    )
    if result.admitted:
        return {"outcome": result.outcome.value, "sessionId": result.session_id}

    status_code, error, message = _GATE_RESPONSES[result.outcome]
    headers = None
    if result.outcome is GateOutcome.LOCKED_OUT:
        headers = {"Retry-After": str(result.remaining_seconds)}
    return JSONResponse(
        status_code=status_code,
        content=error_body(
            error,
            message,
            outcome=result.outcome.value,
            remainingSeconds=result.remaining_seconds,
        ),
        headers=headers,
    )


@router.post("/sessions/{session_id}/ideas", status_code=status.HTTP_201_CREATED)
async def submit_idea(
    session_id: str,
    body: SubmitIdeaRequest,
    registry: ServiceRegistry = Depends(get_registry),
):
    result = await registry.submissions.submit(
        session_id, body.name, body.content, device_id=body.device_id
    )
    if result.accepted:
        return {"id": result.idea_id, "outcome": result.outcome.value}

    headers = None
    if result.outcome is SubmissionOutcome.COOLDOWN:
        headers = {"Retry-After": str(result.retry_after_seconds)}
    return JSONResponse(
        status_code=_SUBMISSION_STATUS[result.outcome],
        content=error_body(
            result.outcome.value,
            result.message,
            field=result.field,
            retryAfterSeconds=result.retry_after_seconds,
        ),
        headers=headers,
    )


@router.get("/sessions/active")
async def active_session(registry: ServiceRegistry = Depends(get_registry)) -> Dict[str, Any]:
    """Landing lookup for participants who arrive without a session link."""
    documents = await registry.store.query(active_session_query())
    if not documents:
        raise HTTPException(status_code=404, detail="No active session")
    document = documents[0]
    return {
        "sessionId": document.id,
        "isActive": True,
        "context": document.data.get("context") or "",
    }


@router.get("/sessions/{session_id}/public")
async def public_session(
    session_id: str, registry: ServiceRegistry = Depends(get_registry)
) -> Dict[str, Any]:
    """What a participant may see: the question and whether intake is open."""
    data = await registry.store.get_document(session_path(session_id))
    if data is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return {
        "sessionId": session_id,
        "isActive": data.get("isActive") is True,
        "context": data.get("context") or "",
    }

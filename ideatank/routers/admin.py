import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse, Response

from ideatank.auth import create_access_token, get_current_admin
from ideatank.auth.auth import ACCESS_TOKEN_EXPIRE_MINUTES
from ideatank.data.report_archive import decode_report
from ideatank.dependencies import client_key, get_registry
from ideatank.errors import ValidationError
from ideatank.schemas.api import (
    AdminLoginRequest,
    ChatMessageRequest,
    ConfirmRequest,
    ContextRequest,
    FollowUpSessionRequest,
    IdeaIdRequest,
    ManualSelectionRequest,
    SettingsRequest,
    StyleRequest,
    TabRequest,
    error_body,
)
from ideatank.services.admin_login import LoginOutcome
from ideatank.services.registry import ServiceRegistry
from ideatank.services.session_controller import SessionController
from ideatank.utils.identifiers import generate_session_code

router = APIRouter(prefix="/api/admin", tags=["admin"])
logger = logging.getLogger(__name__)

_MEDIA_TYPES = {
    "pdf": "application/pdf",
    "pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "csv": "text/csv; charset=utf-8",
}


async def get_controller(
    session_id: str,
    registry: ServiceRegistry = Depends(get_registry),
    admin: str = Depends(get_current_admin),
) -> SessionController:
    return await registry.controller(session_id)


def _download(filename: str, content: Any, kind: str) -> Response:
    return Response(
        content=content,
        media_type=_MEDIA_TYPES[kind],
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("/login")
async def admin_login(
    body: AdminLoginRequest,
    request: Request,
    registry: ServiceRegistry = Depends(get_registry),
):
    result = registry.admin_login.authenticate(
        body.username, body.password, caller=client_key(request)
    )
    if result.outcome is LoginOutcome.LOCKED_OUT:
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content=error_body(
                "locked_out",
                "Te veel mislukte pogingen.",
                remainingSeconds=result.remaining_seconds,
            ),
            headers={"Retry-After": str(result.remaining_seconds)},
        )
    if not result.ok:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token = create_access_token(
        data={"sub": body.username.strip().lower(), "role": "admin"},
        expires_delta=timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES),
    )
    return {
        "accessToken": token,
        "tokenType": "bearer",
        "expiresInMinutes": ACCESS_TOKEN_EXPIRE_MINUTES,
    }


@router.get("/sessions/{session_id}/state")
async def get_state(controller: SessionController = Depends(get_controller)) -> Dict[str, Any]:
    return controller.snapshot()


@router.post("/sessions/{session_id}/setup")
async def enter_setup(controller: SessionController = Depends(get_controller)):
    await controller.enter_setup()
    return controller.snapshot()


@router.put("/sessions/{session_id}/context")
async def set_context(
    body: ContextRequest, controller: SessionController = Depends(get_controller)
):
    controller.set_context(body.context or "")
    return controller.snapshot()


@router.put("/sessions/{session_id}/settings")
async def save_settings(
    body: SettingsRequest, controller: SessionController = Depends(get_controller)
):
    access_code = generate_session_code() if body.generate_code else body.access_code
    await controller.save_settings(access_code=access_code, default_context=body.default_context)
    return controller.snapshot()


@router.post("/sessions/{session_id}/start")
async def start_session(
    body: Optional[ContextRequest] = None,
    controller: SessionController = Depends(get_controller),
):
    await controller.start_session(context=body.context if body else None)
    return controller.snapshot()


@router.post("/sessions/{session_id}/stop")
async def stop_session(controller: SessionController = Depends(get_controller)):
    await controller.stop_session()
    return controller.snapshot()


@router.post("/sessions/{session_id}/cancel")
async def cancel_session(
    body: Optional[ConfirmRequest] = None,
    controller: SessionController = Depends(get_controller),
):
    cancelled = await controller.cancel_session(confirmed=bool(body and body.confirmed))
    return {"cancelled": cancelled, "state": controller.snapshot()}


@router.post("/sessions/{session_id}/reset")
async def reset_session(controller: SessionController = Depends(get_controller)):
    await controller.reset()
    return controller.snapshot()


@router.post("/sessions/{session_id}/manual-selection")
async def manual_selection(
    body: ManualSelectionRequest, controller: SessionController = Depends(get_controller)
):
    if body.cluster is not None:
        await controller.select_cluster(body.cluster)
    elif body.cluster_id:
        await controller.select_cluster(body.cluster_id)
    elif body.idea_id:
        await controller.select_manual_idea(body.idea_id)
    else:
        raise ValidationError("ideaId", "Geef een idee of cluster op.")
    return controller.snapshot()


@router.post("/sessions/{session_id}/clusters")
async def cluster_ideas(controller: SessionController = Depends(get_controller)):
    await controller.cluster_ideas()
    return controller.snapshot()


@router.post("/sessions/{session_id}/analysis/retry")
async def retry_analysis(controller: SessionController = Depends(get_controller)):
    await controller.retry_analysis()
    return controller.snapshot()


@router.put("/sessions/{session_id}/selection")
async def set_selected_idea(
    body: IdeaIdRequest, controller: SessionController = Depends(get_controller)
):
    if not body.idea_id:
        raise ValidationError("ideaId", "Kies een idee.")
    controller.set_selected_idea(body.idea_id)
    return controller.snapshot()


@router.post("/sessions/{session_id}/reveal")
async def start_reveal(
    body: Optional[IdeaIdRequest] = None,
    controller: SessionController = Depends(get_controller),
):
    controller.start_reveal(body.idea_id if body else None)
    return controller.snapshot()


@router.post("/sessions/{session_id}/reveal/confirm")
async def confirm_reveal(controller: SessionController = Depends(get_controller)):
    controller.confirm_reveal()
    return controller.snapshot()


@router.post("/sessions/{session_id}/select")
async def select_idea(controller: SessionController = Depends(get_controller)):
    await controller.select_idea()
    return controller.snapshot()


@router.post("/sessions/{session_id}/back")
async def back_to_analysis(controller: SessionController = Depends(get_controller)):
    controller.back_to_analysis()
    return controller.snapshot()


@router.put("/sessions/{session_id}/tab")
async def set_active_tab(
    body: TabRequest, controller: SessionController = Depends(get_controller)
):
    try:
        controller.set_active_tab(body.tab)
    except ValueError as exc:
        raise ValidationError("tab", f"Onbekend tabblad: {body.tab}") from exc
    return controller.snapshot()


@router.post("/sessions/{session_id}/blog")
async def generate_blog_post(
    body: StyleRequest, controller: SessionController = Depends(get_controller)
):
    await controller.generate_blog_post(body.style)
    return controller.snapshot()


@router.post("/sessions/{session_id}/press-release")
async def generate_press_release(
    body: StyleRequest, controller: SessionController = Depends(get_controller)
):
    await controller.generate_press_release(body.style)
    return controller.snapshot()


@router.post("/sessions/{session_id}/slide-outline")
async def generate_slide_outline(controller: SessionController = Depends(get_controller)):
    await controller.generate_slide_outline()
    return controller.snapshot()


@router.post("/sessions/{session_id}/follow-up-question")
async def request_follow_up_question(controller: SessionController = Depends(get_controller)):
    question = await controller.request_follow_up_question()
    return {"question": question}


@router.post("/sessions/{session_id}/follow-up-session")
async def start_follow_up_session(
    body: FollowUpSessionRequest, controller: SessionController = Depends(get_controller)
):
    await controller.start_follow_up_session(body.question)
    return controller.snapshot()


@router.post("/sessions/{session_id}/chat")
async def send_chat_message(
    body: ChatMessageRequest, controller: SessionController = Depends(get_controller)
):
    await controller.send_chat_message(body.text, body.persona)
    return controller.snapshot()


@router.get("/sessions/{session_id}/export/report")
async def export_report(controller: SessionController = Depends(get_controller)):
    filename, pdf = await controller.export_report()
    return _download(filename, pdf, "pdf")


@router.get("/sessions/{session_id}/export/deck")
async def export_deck(controller: SessionController = Depends(get_controller)):
    filename, deck = await controller.export_deck()
    return _download(filename, deck, "pptx")


@router.get("/sessions/{session_id}/export/pbis")
async def export_pbi_csv(controller: SessionController = Depends(get_controller)):
    filename, content = controller.export_pbi_csv()
    return _download(filename, content, "csv")


@router.get("/sessions/{session_id}/reports")
async def list_reports(
    session_id: str,
    registry: ServiceRegistry = Depends(get_registry),
    admin: str = Depends(get_current_admin),
) -> List[Dict[str, Any]]:
    reports = await registry.archive.list(session_id)
    return [report.model_dump(by_alias=True, exclude={"content"}) for report in reports]


@router.get("/sessions/{session_id}/reports/{report_id}")
async def download_report(
    session_id: str,
    report_id: str,
    registry: ServiceRegistry = Depends(get_registry),
    admin: str = Depends(get_current_admin),
):
    report = await registry.archive.get(session_id, report_id)
    if report is None:
        raise HTTPException(status_code=404, detail="Report not found")
    logger.info("Admin %s downloaded report %s", admin, report_id)
    return _download(report.name, decode_report(report), report.type)

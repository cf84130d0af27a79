from __future__ import annotations

import base64
import logging
import re
from datetime import datetime, timezone
from typing import Callable, List, Optional

from ideatank.data.session_store import SessionStore, now_ms, reports_collection, reports_query
from ideatank.errors import StoreError
from ideatank.schemas.details import Report

logger = logging.getLogger(__name__)

_MIME_TYPES = {
    "pdf": "application/pdf",
    "pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
}


def _safe_name(name: str) -> str:
    cleaned = re.sub(r"[^\w-]+", "_", (name or "").strip()).strip("_")
    return cleaned or "Idee"


class ReportArchive:
    """History of exported reports under ``sessions/{id}/reports``.

    Archiving is never critical: store failures are logged and the export
    itself still succeeds.
    """

    def __init__(self, store: SessionStore, clock_ms: Callable[[], int] = now_ms):
        self._store = store
        self._clock_ms = clock_ms

    def filename_for(
        self, idea_name: str, extension: str = "pdf", generated_at: Optional[int] = None
    ) -> str:
        millis = generated_at if generated_at is not None else self._clock_ms()
        stamp = datetime.fromtimestamp(millis / 1000, tz=timezone.utc).strftime(
            "%Y-%m-%dT%H-%M-%SZ"
        )
        return f"Idea_{_safe_name(idea_name)}_{stamp}.{extension}"

    async def save(
        self, session_id: str, idea_name: str, content: bytes, *, kind: str = "pdf"
    ) -> Optional[Report]:
        generated_at = self._clock_ms()
        encoded = base64.b64encode(content).decode("ascii")
        data = {
            "name": self.filename_for(idea_name, kind, generated_at),
            "ideaName": idea_name,
            "generatedAt": generated_at,
            "content": f"data:{_MIME_TYPES[kind]};base64,{encoded}",
            "type": kind,
        }
        try:
            report_id = await self._store.add_document(reports_collection(session_id), data)
        except StoreError as exc:
            logger.warning("Could not archive report for session %s: %s", session_id, exc)
            return None
        logger.info("Archived %s report %s for session %s", kind, report_id, session_id)
        return Report.model_validate({**data, "id": report_id})

    async def list(self, session_id: str) -> List[Report]:
        """Reports for a session, newest first."""
        try:
            documents = await self._store.query(reports_query(session_id))
        except StoreError as exc:
            logger.warning("Could not list reports for session %s: %s", session_id, exc)
            return []
        return [Report.model_validate(doc.as_dict()) for doc in documents]

    async def get(self, session_id: str, report_id: str) -> Optional[Report]:
        try:
            data = await self._store.get_document(f"{reports_collection(session_id)}/{report_id}")
        except StoreError as exc:
            logger.warning("Could not load report %s for session %s: %s", report_id, session_id, exc)
            return None
        if data is None:
            return None
        return Report.model_validate({**data, "id": report_id})


def decode_report(report: Report) -> bytes:
    _, _, payload = report.content.partition("base64,")
    return base64.b64decode(payload)

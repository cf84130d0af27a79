"""Document-store abstraction for sessions, ideas, reports and access codes.

Paths follow a ``collection/docId[/subcollection/docId...]`` layout:

* ``sessions/{sessionId}`` - the Session document
* ``sessions/{sessionId}/ideas/{ideaId}`` - participant submissions
* ``sessions/{sessionId}/reports/{reportId}`` - exported artifacts
* ``session_codes/{CODE}`` - access-code registry
"""

from __future__ import annotations

import asyncio
import copy
import itertools
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
from uuid import uuid4

logger = logging.getLogger(__name__)

SESSIONS = "sessions"
IDEAS = "ideas"
REPORTS = "reports"
SESSION_CODES = "session_codes"


def session_path(session_id: str) -> str:
    return f"{SESSIONS}/{session_id}"


def ideas_collection(session_id: str) -> str:
    return f"{SESSIONS}/{session_id}/{IDEAS}"


def reports_collection(session_id: str) -> str:
    return f"{SESSIONS}/{session_id}/{REPORTS}"


def session_code_path(code: str) -> str:
    return f"{SESSION_CODES}/{normalise_code(code)}"


def normalise_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def parent_collection(path: str) -> str:
    return path.rsplit("/", 1)[0] if "/" in path else ""


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class FieldFilter:
    field: str
    value: Any
    op: str = "=="

    def matches(self, data: Dict[str, Any]) -> bool:
        current = data.get(self.field)
        if self.op == "==":
            return current == self.value
        if self.op == "!=":
            return current != self.value
        raise ValueError(f"Unsupported filter operator: {self.op}")


@dataclass(frozen=True)
class Query:
    collection: str
    filters: Tuple[FieldFilter, ...] = ()
    order_by: Optional[str] = None
    descending: bool = False
    limit: Optional[int] = None

    def apply(self, documents: List["StoredDocument"]) -> List["StoredDocument"]:
        selected = [
            doc
            for doc in documents
            if all(item.matches(doc.data) for item in self.filters)
        ]
        if self.order_by:
            key = self.order_by
            # Clocks are skewed across clients, so ties fall back to the store id.
            selected.sort(
                key=lambda doc: (_sortable(doc.data.get(key)), doc.id),
                reverse=self.descending,
            )
        if self.limit is not None:
            selected = selected[: self.limit]
        return selected


def _sortable(value: Any) -> Tuple[int, Any]:
    if value is None:
        return (0, 0)
    if isinstance(value, (int, float)):
        return (1, value)
    return (2, str(value))


def ideas_query(session_id: str) -> Query:
    """Ideas under a session ordered by client timestamp ascending."""
    return Query(collection=ideas_collection(session_id), order_by="timestamp")


def active_session_query() -> Query:
    return Query(
        collection=SESSIONS,
        filters=(FieldFilter("isActive", True),),
        limit=1,
    )


def reports_query(session_id: str) -> Query:
    return Query(
        collection=reports_collection(session_id),
        order_by="generatedAt",
        descending=True,
    )


@dataclass
class StoredDocument:
    id: str
    path: str
    data: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        payload = dict(self.data)
        payload["id"] = self.id
        return payload


Snapshot = Union[Optional[Dict[str, Any]], List[StoredDocument]]
ChangeCallback = Callable[[Snapshot], None]
Target = Union[str, Query]


@dataclass
class _Listener:
    target: Target
    callback: ChangeCallback

    def is_affected_by(self, path: str) -> bool:
        if isinstance(self.target, Query):
            return parent_collection(path) == self.target.collection
        return self.target == path


class SessionStore(ABC):
    """Async document store with per-path and per-query change subscriptions."""

    def __init__(self) -> None:
        self._listeners: Dict[int, _Listener] = {}
        self._listener_ids = itertools.count(1)

    @abstractmethod
    async def get_document(self, path: str) -> Optional[Dict[str, Any]]:
        """Return a copy of the document data, or ``None`` when absent."""

    @abstractmethod
    async def set_document(
        self, path: str, data: Dict[str, Any], merge: bool = True
    ) -> None:
        """Create or update a document; ``merge`` keeps fields not in ``data``."""

    @abstractmethod
    async def delete_document(self, path: str) -> None:
        """Delete a document; deleting a missing document is not an error."""

    @abstractmethod
    async def add_document(self, collection_path: str, data: Dict[str, Any]) -> str:
        """Append a document with a store-assigned id and return the id."""

    @abstractmethod
    async def list_collection(self, collection_path: str) -> List[StoredDocument]:
        """Return every document directly under ``collection_path``."""

    async def query(self, query: Query) -> List[StoredDocument]:
        documents = await self.list_collection(query.collection)
        return query.apply(documents)

    async def delete_collection(self, collection_path: str) -> int:
        documents = await self.list_collection(collection_path)
        await asyncio.gather(*(self.delete_document(doc.path) for doc in documents))
        return len(documents)

    async def subscribe(
        self, target: Target, on_change: ChangeCallback
    ) -> Callable[[], None]:
        """Register ``on_change`` and deliver the current snapshot immediately."""
        listener_id = next(self._listener_ids)
        listener = _Listener(target=target, callback=on_change)
        self._listeners[listener_id] = listener
        self._deliver(listener, await self._snapshot(target))

        def unsubscribe() -> None:
            self._listeners.pop(listener_id, None)

        return unsubscribe

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    async def _snapshot(self, target: Target) -> Snapshot:
        if isinstance(target, Query):
            return await self.query(target)
        return await self.get_document(target)

    async def _notify(self, path: str) -> None:
        for listener in list(self._listeners.values()):
            if not listener.is_affected_by(path):
                continue
            self._deliver(listener, await self._snapshot(listener.target))

    def _deliver(self, listener: _Listener, snapshot: Snapshot) -> None:
        try:
            listener.callback(snapshot)
        except Exception:  # noqa: BLE001
            logger.exception("Store listener for %s failed", listener.target)


class InMemorySessionStore(SessionStore):
    """Process-local store; every operation yields once to mimic network latency."""

    def __init__(self) -> None:
        super().__init__()
        self._documents: Dict[str, Dict[str, Any]] = {}

    async def get_document(self, path: str) -> Optional[Dict[str, Any]]:
        await asyncio.sleep(0)
        data = self._documents.get(path)
        return copy.deepcopy(data) if data is not None else None

    async def set_document(
        self, path: str, data: Dict[str, Any], merge: bool = True
    ) -> None:
        await asyncio.sleep(0)
        current = self._documents.get(path) if merge else None
        updated = dict(current or {})
        updated.update(copy.deepcopy(data))
        self._documents[path] = updated
        await self._notify(path)

    async def delete_document(self, path: str) -> None:
        await asyncio.sleep(0)
        if self._documents.pop(path, None) is not None:
            await self._notify(path)

    async def add_document(self, collection_path: str, data: Dict[str, Any]) -> str:
        await asyncio.sleep(0)
        doc_id = uuid4().hex[:20]
        path = f"{collection_path}/{doc_id}"
        self._documents[path] = copy.deepcopy(data)
        await self._notify(path)
        return doc_id

    async def list_collection(self, collection_path: str) -> List[StoredDocument]:
        await asyncio.sleep(0)
        return [
            StoredDocument(
                id=path.rsplit("/", 1)[1], path=path, data=copy.deepcopy(data)
            )
            for path, data in self._documents.items()
            if parent_collection(path) == collection_path
        ]

from __future__ import annotations

import asyncio
import copy
import logging
from typing import Any, Callable, Dict, List, Optional, TypeVar
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ideatank.data.session_store import SessionStore, StoredDocument, parent_collection
from ideatank.errors import StoreError
from ideatank.models.document import StoredDocumentRow

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SqlSessionStore(SessionStore):
    """Session Store persisted in a single SQLAlchemy ``documents`` table.

    Blocking ORM work runs in a worker thread; change notifications are
    delivered in-process once the write has committed.
    """

    def __init__(self, session_factory: sessionmaker) -> None:
        super().__init__()
        self._session_factory = session_factory

    async def _run(self, operation: str, path: str, fn: Callable[[Session], T]) -> T:
        def _work() -> T:
            db = self._session_factory()
            try:
                result = fn(db)
                db.commit()
                return result
            except SQLAlchemyError:
                db.rollback()
                raise
            finally:
                db.close()

        try:
            return await asyncio.to_thread(_work)
        except SQLAlchemyError as exc:
            logger.error("Store %s failed for %s: %s", operation, path, exc)
            raise StoreError(operation, path, str(exc)) from exc

    @staticmethod
    def _row(db: Session, path: str) -> Optional[StoredDocumentRow]:
        return db.query(StoredDocumentRow).filter(StoredDocumentRow.path == path).first()

    async def get_document(self, path: str) -> Optional[Dict[str, Any]]:
        def _get(db: Session) -> Optional[Dict[str, Any]]:
            row = self._row(db, path)
            return copy.deepcopy(row.data) if row is not None else None

        return await self._run("get_document", path, _get)

    async def set_document(
        self, path: str, data: Dict[str, Any], merge: bool = True
    ) -> None:
        def _set(db: Session) -> None:
            row = self._row(db, path)
            if row is None:
                db.add(
                    StoredDocumentRow(
                        path=path,
                        collection=parent_collection(path),
                        doc_id=path.rsplit("/", 1)[-1],
                        data=copy.deepcopy(data),
                    )
                )
                return
            updated = dict(row.data or {}) if merge else {}
            updated.update(copy.deepcopy(data))
            # Reassign so the JSON column is flagged dirty.
            row.data = updated

        await self._run("set_document", path, _set)
        await self._notify(path)

    async def delete_document(self, path: str) -> None:
        def _delete(db: Session) -> bool:
            row = self._row(db, path)
            if row is None:
                return False
            db.delete(row)
            return True

        if await self._run("delete_document", path, _delete):
            await self._notify(path)

    async def delete_collection(self, collection_path: str) -> int:
        def _delete_all(db: Session) -> List[str]:
            rows = (
                db.query(StoredDocumentRow)
                .filter(StoredDocumentRow.collection == collection_path)
                .all()
            )
            for row in rows:
                db.delete(row)
            return [row.path for row in rows]

        paths = await self._run("delete_collection", collection_path, _delete_all)
        for path in paths:
            await self._notify(path)
        return len(paths)

    async def add_document(self, collection_path: str, data: Dict[str, Any]) -> str:
        doc_id = uuid4().hex[:20]
        path = f"{collection_path}/{doc_id}"

        def _add(db: Session) -> None:
            db.add(
                StoredDocumentRow(
                    path=path,
                    collection=collection_path,
                    doc_id=doc_id,
                    data=copy.deepcopy(data),
                )
            )

        await self._run("add_document", path, _add)
        await self._notify(path)
        return doc_id

    async def list_collection(self, collection_path: str) -> List[StoredDocument]:
        def _list(db: Session) -> List[StoredDocument]:
            rows = (
                db.query(StoredDocumentRow)
                .filter(StoredDocumentRow.collection == collection_path)
                .order_by(StoredDocumentRow.seq)
                .all()
            )
            return [
                StoredDocument(id=row.doc_id, path=row.path, data=copy.deepcopy(row.data))
                for row in rows
            ]

        return await self._run("list_collection", collection_path, _list)

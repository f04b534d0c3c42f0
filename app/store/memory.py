from __future__ import annotations

import copy
import uuid
from collections.abc import Sequence
from datetime import datetime, timedelta
from threading import Lock
from typing import Any

from app.store.base import Document, DocumentAlreadyExistsError, DocumentNotFoundError, utcnow
from app.store.query import QueryItem, apply_queries


class InMemoryDocumentStore:
    """Process-local store; insertion order is the iteration order."""

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, Document]] = {}
        self._lock = Lock()
        self._last_timestamp: datetime | None = None

    def get(self, collection: str, document_id: str) -> Document:
        document = self._collections.get(collection, {}).get(document_id)
        if document is None:
            raise DocumentNotFoundError(collection, document_id)
        return copy.deepcopy(document)

    def create(
        self,
        collection: str,
        document_id: str | None,
        fields: dict[str, Any],
        permissions: Sequence[str] | None = None,
    ) -> Document:
        resolved_id = document_id or uuid.uuid4().hex
        with self._lock:
            documents = self._collections.setdefault(collection, {})
            if resolved_id in documents:
                raise DocumentAlreadyExistsError(collection, resolved_id)
            now = self._next_timestamp()
            document = Document(
                id=resolved_id,
                collection=collection,
                fields=copy.deepcopy(fields),
                permissions=list(permissions or []),
                created_at=now,
                updated_at=now,
            )
            documents[resolved_id] = document
        return copy.deepcopy(document)

    def update(
        self,
        collection: str,
        document_id: str,
        fields: dict[str, Any],
        permissions: Sequence[str] | None = None,
    ) -> Document:
        with self._lock:
            document = self._collections.get(collection, {}).get(document_id)
            if document is None:
                raise DocumentNotFoundError(collection, document_id)
            document.fields = {**document.fields, **copy.deepcopy(fields)}
            if permissions is not None:
                document.permissions = list(permissions)
            document.updated_at = self._next_timestamp()
        return copy.deepcopy(document)

    def delete(self, collection: str, document_id: str) -> None:
        with self._lock:
            documents = self._collections.get(collection, {})
            if document_id not in documents:
                raise DocumentNotFoundError(collection, document_id)
            del documents[document_id]

    def list(self, collection: str, queries: Sequence[QueryItem] = ()) -> list[Document]:
        documents = [copy.deepcopy(item) for item in self._collections.get(collection, {}).values()]
        return apply_queries(documents, list(queries))

    def clear(self) -> None:
        with self._lock:
            self._collections.clear()

    def _next_timestamp(self) -> datetime:
        now = utcnow()
        if self._last_timestamp is not None and now <= self._last_timestamp:
            now = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = now
        return now

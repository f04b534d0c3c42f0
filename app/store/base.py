from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

from app.store.query import QueryItem


NOT_FOUND_MESSAGE = "Document with the requested ID could not be found."
ALREADY_EXISTS_MESSAGE = "Document with the requested ID already exists."


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StoreError(Exception):
    """Base error raised by document store implementations."""


class DocumentNotFoundError(StoreError):
    def __init__(self, collection: str, document_id: str) -> None:
        self.collection = collection
        self.document_id = document_id
        super().__init__(NOT_FOUND_MESSAGE)


class DocumentAlreadyExistsError(StoreError):
    def __init__(self, collection: str, document_id: str) -> None:
        self.collection = collection
        self.document_id = document_id
        super().__init__(ALREADY_EXISTS_MESSAGE)


@dataclass(slots=True)
class Document:
    id: str
    collection: str
    fields: dict[str, Any]
    permissions: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def get(self, key: str, default: Any = None) -> Any:
        return self.fields.get(key, default)


class DocumentStore(Protocol):
    """Document database capability with per-document permission lists."""

    def get(self, collection: str, document_id: str) -> Document:
        ...

    def create(
        self,
        collection: str,
        document_id: str | None,
        fields: dict[str, Any],
        permissions: Sequence[str] | None = None,
    ) -> Document:
        ...

    def update(
        self,
        collection: str,
        document_id: str,
        fields: dict[str, Any],
        permissions: Sequence[str] | None = None,
    ) -> Document:
        ...

    def delete(self, collection: str, document_id: str) -> None:
        ...

    def list(self, collection: str, queries: Sequence[QueryItem] = ()) -> list[Document]:
        ...

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Generic, TypeVar

from pydantic import BaseModel

from app.crm.schemas import AccessRuleRead, AuditLogRead, BranchRead, LeadRead, UserRead
from app.store.base import Document, DocumentStore
from app.store.query import QueryItem


ReadT = TypeVar("ReadT", bound=BaseModel)


class BaseDocumentRepository(Generic[ReadT]):
    read_model: type[ReadT]

    def __init__(self, store: DocumentStore, collection: str) -> None:
        self.store = store
        self.collection = collection

    def to_read(self, document: Document) -> ReadT:
        payload: dict[str, Any] = {
            **document.fields,
            "id": document.id,
            "permissions": list(document.permissions),
            "created_at": document.created_at,
            "updated_at": document.updated_at,
        }
        return self.read_model.model_validate(payload)

    def get(self, document_id: str) -> ReadT:
        return self.to_read(self.store.get(self.collection, document_id))

    def list(self, queries: Sequence[QueryItem] = ()) -> list[ReadT]:
        return [self.to_read(document) for document in self.store.list(self.collection, queries)]

    def create(
        self,
        fields: dict[str, Any],
        permissions: Sequence[str] | None = None,
        *,
        document_id: str | None = None,
    ) -> ReadT:
        return self.to_read(self.store.create(self.collection, document_id, fields, permissions))

    def update(self, document_id: str, fields: dict[str, Any], permissions: Sequence[str] | None = None) -> ReadT:
        return self.to_read(self.store.update(self.collection, document_id, fields, permissions))

    def delete(self, document_id: str) -> None:
        self.store.delete(self.collection, document_id)


class UserRepository(BaseDocumentRepository[UserRead]):
    read_model = UserRead


class BranchRepository(BaseDocumentRepository[BranchRead]):
    read_model = BranchRead


class LeadRepository(BaseDocumentRepository[LeadRead]):
    read_model = LeadRead


class AccessRuleRepository(BaseDocumentRepository[AccessRuleRead]):
    read_model = AccessRuleRead


class AuditLogRepository(BaseDocumentRepository[AuditLogRead]):
    read_model = AuditLogRead

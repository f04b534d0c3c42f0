from __future__ import annotations

import uuid
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.store.base import Document, DocumentAlreadyExistsError, DocumentNotFoundError, utcnow
from app.store.models import CRMDocument
from app.store.query import QueryItem, apply_queries


class SqlDocumentStore:
    """Document store backed by a single JSON table.

    Lead payloads are unstructured, so predicates are evaluated over the rows of
    one collection after the collection prefilter, in insertion order.
    """

    def __init__(self, session: Session) -> None:
        self._session = session

    def get(self, collection: str, document_id: str) -> Document:
        row = self._load(collection, document_id)
        if row is None:
            raise DocumentNotFoundError(collection, document_id)
        return self._to_document(row)

    def create(
        self,
        collection: str,
        document_id: str | None,
        fields: dict[str, Any],
        permissions: Sequence[str] | None = None,
    ) -> Document:
        resolved_id = document_id or uuid.uuid4().hex
        now = utcnow()
        row = CRMDocument(
            collection=collection,
            document_id=resolved_id,
            data=_to_json(fields),
            permissions=list(permissions or []),
            created_at=now,
            updated_at=now,
        )
        self._session.add(row)
        try:
            self._session.commit()
        except IntegrityError:
            self._session.rollback()
            raise DocumentAlreadyExistsError(collection, resolved_id)
        self._session.refresh(row)
        return self._to_document(row)

    def update(
        self,
        collection: str,
        document_id: str,
        fields: dict[str, Any],
        permissions: Sequence[str] | None = None,
    ) -> Document:
        row = self._load(collection, document_id)
        if row is None:
            raise DocumentNotFoundError(collection, document_id)

        row.data = {**(row.data or {}), **_to_json(fields)}
        if permissions is not None:
            row.permissions = list(permissions)
        row.updated_at = utcnow()
        self._session.commit()
        self._session.refresh(row)
        return self._to_document(row)

    def delete(self, collection: str, document_id: str) -> None:
        row = self._load(collection, document_id)
        if row is None:
            raise DocumentNotFoundError(collection, document_id)
        self._session.delete(row)
        self._session.commit()

    def list(self, collection: str, queries: Sequence[QueryItem] = ()) -> list[Document]:
        rows = self._session.scalars(
            select(CRMDocument).where(CRMDocument.collection == collection).order_by(CRMDocument.pk.asc())
        ).all()
        return apply_queries([self._to_document(row) for row in rows], list(queries))

    def _load(self, collection: str, document_id: str) -> CRMDocument | None:
        return self._session.scalar(
            select(CRMDocument).where(
                and_(CRMDocument.collection == collection, CRMDocument.document_id == document_id)
            )
        )

    @staticmethod
    def _to_document(row: CRMDocument) -> Document:
        return Document(
            id=row.document_id,
            collection=row.collection,
            fields=dict(row.data or {}),
            permissions=list(row.permissions or []),
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
        )


def _to_json(fields: dict[str, Any]) -> dict[str, Any]:
    return {key: value.isoformat() if isinstance(value, datetime) else value for key, value in fields.items()}


def _aware(value: datetime) -> datetime:
    # SQLite drops tzinfo on round trip.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value

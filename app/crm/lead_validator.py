from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from app.crm.errors import DuplicateLeadError, MissingRequiredFieldError
from app.crm.schemas import LeadValidationResult
from app.metrics import observe_lead_duplicate_rejected
from app.store.base import DocumentStore
from app.store.query import Query


logger = logging.getLogger("app.crm.lead_validator")


class LeadUniquenessValidator:
    """Cross-branch duplicate detection over the configured contact fields.

    Fields are checked in order and the first stored match wins, so with the
    default configuration an email conflict is always reported before a phone
    conflict.
    """

    def __init__(self, store: DocumentStore, collection: str, fields: Sequence[str] = ("email", "phone")) -> None:
        self._store = store
        self._collection = collection
        self._fields = tuple(fields)

    def validate(self, data: Mapping[str, Any], exclude_lead_id: str | None = None) -> LeadValidationResult:
        for field in self._fields:
            value = data.get(field)
            if not value:
                continue
            for document in self._store.list(self._collection, [Query.equal(f"data.{field}", value)]):
                if exclude_lead_id is not None and document.id == exclude_lead_id:
                    continue
                return LeadValidationResult(
                    is_valid=False,
                    duplicate_field=field,
                    existing_lead_id=document.id,
                    existing_branch_id=document.get("branch_id") or None,
                )
        return LeadValidationResult(is_valid=True)

    def ensure_unique(self, data: Mapping[str, Any], exclude_lead_id: str | None = None) -> None:
        result = self.validate(data, exclude_lead_id)
        if result.is_valid:
            return
        observe_lead_duplicate_rejected(field=str(result.duplicate_field))
        logger.info(
            "lead.duplicate_rejected",
            extra={"target_id": result.existing_lead_id, "branch_id": result.existing_branch_id},
        )
        raise DuplicateLeadError(
            field=str(result.duplicate_field),
            existing_lead_id=str(result.existing_lead_id),
            existing_branch_id=result.existing_branch_id,
        )


def ensure_required_fields(data: Mapping[str, Any], required: Iterable[str]) -> None:
    for field in required:
        value = data.get(field)
        if value is None or (isinstance(value, str) and not value.strip()):
            raise MissingRequiredFieldError(field)

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id
from app.metrics import observe_audit_write_failure
from app.store.base import DocumentStore


logger = logging.getLogger("app.audit")


class AuditRecorder:
    """Append-only side channel for CRM mutations.

    A failed write is logged and counted but never raised: the primary
    operation has already committed by the time an entry is recorded.
    """

    def __init__(self, store: DocumentStore, collection: str, *, enabled: bool = True) -> None:
        self.store = store
        self.collection = collection
        self.enabled = enabled

    def record(
        self,
        action: str,
        *,
        actor_id: str,
        actor_name: str,
        target_type: str,
        target_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        correlation_id: str | None = None,
    ) -> str | None:
        if not self.enabled:
            return None

        entry_id = uuid.uuid4().hex
        fields = {
            "action": str(action),
            "actor_id": actor_id,
            "actor_name": actor_name,
            "target_id": target_id,
            "target_type": target_type,
            "metadata": metadata,
            "correlation_id": correlation_id or get_correlation_id(),
            "performed_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            self.store.create(self.collection, entry_id, fields, [])
        except Exception as exc:
            observe_audit_write_failure(action=str(action))
            logger.error(
                "audit.write_failed",
                extra={"target_id": target_id, "target_type": target_type, "error": str(exc)},
            )
            return None
        return entry_id

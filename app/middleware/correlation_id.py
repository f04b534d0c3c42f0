from __future__ import annotations

import re
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import reset_actor_id, reset_correlation_id, set_actor_id, set_correlation_id


CORRELATION_HEADER = "x-correlation-id"
# Inbound ids end up in log lines, audit rows and error envelopes
_ACCEPTED_ID = re.compile(r"[A-Za-z0-9._:\-]{1,128}")


def resolve_correlation_id(header_value: str | None) -> str:
    candidate = (header_value or "").strip()
    if _ACCEPTED_ID.fullmatch(candidate):
        return candidate
    return str(uuid.uuid4())


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Tags the request with a correlation id and clears the acting user for its duration.

    The actor id is filled in by session resolution further down the stack.
    """

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = resolve_correlation_id(request.headers.get(CORRELATION_HEADER))
        request.state.correlation_id = correlation_id
        request.state.actor_id = None
        request.state.actor_role = None
        correlation_token = set_correlation_id(correlation_id)
        actor_token = set_actor_id(None)
        try:
            response = await call_next(request)
        finally:
            reset_actor_id(actor_token)
            reset_correlation_id(correlation_token)

        response.headers[CORRELATION_HEADER] = correlation_id
        return response

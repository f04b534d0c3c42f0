from __future__ import annotations

import logging
import math
import threading
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from app.core.auth import resolve_request_subject
from app.core.config import Settings, get_settings
from app.crm.api import error_response
from app.metrics import observe_rate_limited, resolve_crm_target_type


logger = logging.getLogger("app.rate_limit")

ANONYMOUS_SUBJECT = "anonymous"
WINDOW_SECONDS = 60.0
MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
# POSTs that only read: the duplicate pre-check runs on every lead form change
READ_ONLY_POSTS = frozenset({"/api/crm/leads/validate"})


class MutationBudget:
    """Per-actor write budgets, one per CRM target type.

    Each budget refills continuously to `capacity` writes per minute.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._levels: dict[tuple[str, str], tuple[float, float]] = {}

    def consume(self, subject: str, target_type: str, capacity: int) -> float:
        """Spend one write; return 0 when allowed, otherwise the seconds until one is available."""

        if capacity <= 0:
            return WINDOW_SECONDS
        refill_per_second = capacity / WINDOW_SECONDS
        key = (subject, target_type)
        now = time.monotonic()

        with self._lock:
            available, stamped_at = self._levels.get(key, (float(capacity), now))
            available = min(float(capacity), available + (now - stamped_at) * refill_per_second)
            if available < 1.0:
                self._levels[key] = (available, now)
                return (1.0 - available) / refill_per_second
            self._levels[key] = (available - 1.0, now)
            return 0.0

    def clear(self) -> None:
        with self._lock:
            self._levels.clear()


_budget = MutationBudget()


def limited_target_type(method: str, path: str) -> str | None:
    if method.upper() not in MUTATING_METHODS or path in READ_ONLY_POSTS:
        return None
    return resolve_crm_target_type(path)


def capacity_for(target_type: str, settings: Settings) -> int:
    if target_type == "lead" and settings.rate_limit_lead_mutations_per_minute is not None:
        return settings.rate_limit_lead_mutations_per_minute
    return settings.rate_limit_crm_mutations_per_minute


class CrmMutationRateLimitMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        target_type = None if settings.rate_limit_disabled else limited_target_type(request.method, request.url.path)
        if target_type is None:
            return await call_next(request)

        subject = resolve_request_subject(request)
        wait = _budget.consume(subject or ANONYMOUS_SUBJECT, target_type, capacity_for(target_type, settings))
        if wait <= 0:
            return await call_next(request)

        retry_after = max(1, math.ceil(wait))
        observe_rate_limited(target_type)
        logger.warning(
            "rate_limit.exceeded",
            extra={
                "actor_id": subject,
                "target_type": target_type,
                "method": request.method,
                "retry_after": retry_after,
            },
        )
        return _rate_limited(request, retry_after)


def _rate_limited(request: Request, retry_after: int) -> Response:
    response = error_response(request, status_code=429, code="RATE_LIMITED", message="Too many requests")
    response.headers["Retry-After"] = str(retry_after)
    return response


def reset_rate_limiter() -> None:
    _budget.clear()

from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import get_actor_id
from app.metrics import observe_http_request, resolve_crm_target_type, resolve_http_path_label


logger = logging.getLogger("app.request")


def _level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code in (401, 403, 429):
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One `http.request` line per request, tagged with the CRM resource and the caller's role.

    Denials and throttling log at WARNING so they stand out from routine reads.
    """

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        method = request.method
        target_type = resolve_crm_target_type(request.url.path)
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            path = resolve_http_path_label(request)
            observe_http_request(method=method, path=path, status=500, duration=duration_ms / 1000)
            logger.error(
                "http.error",
                exc_info=True,
                extra={
                    "method": method,
                    "path": path,
                    "status_code": 500,
                    "duration_ms": duration_ms,
                    "target_type": target_type,
                },
            )
            raise

        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        # the route is matched by now, so the label is the template rather than the raw path
        path = resolve_http_path_label(request)
        observe_http_request(method=method, path=path, status=response.status_code, duration=duration_ms / 1000)
        logger.log(
            _level_for(response.status_code),
            "http.request",
            extra={
                "method": method,
                "path": path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
                "target_type": target_type,
                "actor_id": getattr(request.state, "actor_id", None) or get_actor_id(),
                "role": getattr(request.state, "actor_role", None),
            },
        )
        return response

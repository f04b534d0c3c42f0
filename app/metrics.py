from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

crm_branch_cascade_writes_total = Counter(
    "crm_branch_cascade_writes_total",
    "Total subordinate writes issued by manager branch cascades",
    ["operation", "status"],
)

crm_audit_write_failures_total = Counter(
    "crm_audit_write_failures_total",
    "Total audit log writes that failed and were skipped",
    ["action"],
)

crm_access_rules_fetch_failures_total = Counter(
    "crm_access_rules_fetch_failures_total",
    "Total access rule fetch failures that fell back to defaults",
)

crm_lead_duplicates_rejected_total = Counter(
    "crm_lead_duplicates_rejected_total",
    "Total lead writes rejected as duplicates by field",
    ["field"],
)

crm_permission_denied_total = Counter(
    "crm_permission_denied_total",
    "Total CRM operations rejected by role or grant checks",
    ["operation"],
)

crm_identity_rollbacks_total = Counter(
    "crm_identity_rollbacks_total",
    "Total identities deleted after a failed profile write",
)

crm_rate_limited_total = Counter(
    "crm_rate_limited_total",
    "Total CRM mutations rejected by the per-actor rate limiter",
    ["target_type"],
)

CRM_API_PREFIX = "/api/crm"
CRM_TARGET_TYPES = {
    "users": "user",
    "branches": "branch",
    "leads": "lead",
    "access-rules": "access_rule",
    "audit-logs": "audit_log",
    "me": "user",
}

_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_HEX_ID_RE = re.compile(r"/[0-9a-fA-F]{32}\b")
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    without_hex = _HEX_ID_RE.sub("/{id}", without_uuids)
    return _INT_RE.sub("/{id}", without_hex)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _normalize_route_template(path_format)
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _normalize_route_template(route_path)
    return _sanitize_path(request.url.path)


def resolve_crm_target_type(path: str) -> str | None:
    """Map an `/api/crm/<resource>/...` path to the audit target type it touches."""

    if not path.startswith(CRM_API_PREFIX + "/"):
        return None
    resource = path[len(CRM_API_PREFIX) + 1 :].split("/", 1)[0]
    return CRM_TARGET_TYPES.get(resource)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_cascade_write(operation: str, status: str, count: int = 1) -> None:
    if count > 0:
        crm_branch_cascade_writes_total.labels(operation=operation, status=status).inc(count)


def observe_audit_write_failure(action: str) -> None:
    crm_audit_write_failures_total.labels(action=action).inc()


def observe_access_rules_fetch_failure() -> None:
    crm_access_rules_fetch_failures_total.inc()


def observe_lead_duplicate_rejected(field: str) -> None:
    crm_lead_duplicates_rejected_total.labels(field=field).inc()


def observe_permission_denied(operation: str) -> None:
    crm_permission_denied_total.labels(operation=operation).inc()


def observe_identity_rollback() -> None:
    crm_identity_rollbacks_total.inc()


def observe_rate_limited(target_type: str) -> None:
    crm_rate_limited_total.labels(target_type=target_type).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST

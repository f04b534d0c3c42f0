from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse

from app.context import get_correlation_id
from app.core.auth import get_current_actor
from app.core.backends import get_services
from app.crm.errors import (
    BranchSubsetError,
    ConflictError,
    CrmError,
    DuplicateLeadError,
    GuardError,
    MissingRequiredFieldError,
    PermissionDeniedError,
    ValidationError,
)
from app.crm.roles import Role
from app.crm.schemas import (
    AccessRuleRead,
    AccessRuleUpsert,
    AccessSummaryRead,
    AssignBranchRequest,
    AuditLogPage,
    BranchCreate,
    BranchRead,
    BranchStats,
    BranchUpdate,
    BranchVisibilityRead,
    CreateAgentInput,
    CreateManagerInput,
    CreateTeamLeadInput,
    HistoryFilters,
    LeadAssignRequest,
    LeadCloseRequest,
    LeadCreate,
    LeadListFilters,
    LeadRead,
    LeadUpdate,
    LeadValidateRequest,
    LeadValidationResult,
    UserRead,
    UserUpdate,
)
from app.crm.service import CrmServices
from app.store.base import DocumentNotFoundError, StoreError


logger = logging.getLogger("app.crm.api")

users_router = APIRouter(prefix="/api/crm", tags=["crm.users"])
branches_router = APIRouter(prefix="/api/crm", tags=["crm.branches"])
leads_router = APIRouter(prefix="/api/crm", tags=["crm.leads"])
access_router = APIRouter(prefix="/api/crm", tags=["crm.access"])
audit_router = APIRouter(prefix="/api/crm", tags=["crm.audit"])

_HANDLED_ERRORS = (CrmError, StoreError)


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def status_for_error(exc: Exception) -> int:
    if isinstance(exc, ValidationError):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if isinstance(exc, (ConflictError, GuardError)):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, PermissionDeniedError):
        return status.HTTP_403_FORBIDDEN
    if isinstance(exc, DocumentNotFoundError):
        return status.HTTP_404_NOT_FOUND
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def _error_details(exc: Exception) -> dict[str, Any] | None:
    if isinstance(exc, DuplicateLeadError):
        return {
            "field": exc.field,
            "existing_lead_id": exc.existing_lead_id,
            "existing_branch_id": exc.existing_branch_id,
        }
    if isinstance(exc, BranchSubsetError):
        return {"invalid_branch": exc.invalid_branch}
    if isinstance(exc, MissingRequiredFieldError):
        return {"field": exc.field}
    return None


def crm_error_response(request: Request, exc: Exception, *, code: str) -> JSONResponse:
    status_code = status_for_error(exc)
    if status_code >= 500:
        logger.error("crm.request_failed", extra={"path": request.url.path, "error": str(exc)})
    return error_response(
        request,
        status_code=status_code,
        code=code,
        message=str(exc),
        details=_error_details(exc),
    )


def _require_admin(request: Request, actor: UserRead, code: str) -> JSONResponse | None:
    if actor.role == Role.ADMIN:
        return None
    return error_response(
        request,
        status_code=status.HTTP_403_FORBIDDEN,
        code=code,
        message="Permission denied: admin role required",
    )


@users_router.post("/users/managers", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def create_manager(
    request: Request,
    dto: CreateManagerInput,
    actor: UserRead = Depends(get_current_actor),
    services: CrmServices = Depends(get_services),
) -> UserRead | JSONResponse:
    try:
        return services.users.create_manager(actor, dto)
    except _HANDLED_ERRORS as exc:
        return crm_error_response(request, exc, code="crm_user_create_failed")


@users_router.post("/users/team-leads", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def create_team_lead(
    request: Request,
    dto: CreateTeamLeadInput,
    actor: UserRead = Depends(get_current_actor),
    services: CrmServices = Depends(get_services),
) -> UserRead | JSONResponse:
    try:
        return services.users.create_team_lead(actor, dto)
    except _HANDLED_ERRORS as exc:
        return crm_error_response(request, exc, code="crm_user_create_failed")


@users_router.post("/users/agents", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def create_agent(
    request: Request,
    dto: CreateAgentInput,
    actor: UserRead = Depends(get_current_actor),
    services: CrmServices = Depends(get_services),
) -> UserRead | JSONResponse:
    try:
        return services.users.create_agent(actor, dto)
    except _HANDLED_ERRORS as exc:
        return crm_error_response(request, exc, code="crm_user_create_failed")


@users_router.get("/users", response_model=list[UserRead])
def list_users(
    request: Request,
    actor: UserRead = Depends(get_current_actor),
    services: CrmServices = Depends(get_services),
) -> list[UserRead] | JSONResponse:
    try:
        return services.users.list_users(actor)
    except _HANDLED_ERRORS as exc:
        return crm_error_response(request, exc, code="crm_user_list_failed")


@users_router.get("/users/assignable", response_model=list[UserRead])
def list_assignable_users(
    request: Request,
    actor: UserRead = Depends(get_current_actor),
    services: CrmServices = Depends(get_services),
) -> list[UserRead] | JSONResponse:
    try:
        return services.users.get_assignable_users(actor)
    except _HANDLED_ERRORS as exc:
        return crm_error_response(request, exc, code="crm_user_list_failed")


@users_router.get("/users/unassigned-managers", response_model=list[UserRead])
def list_unassigned_managers(
    request: Request,
    actor: UserRead = Depends(get_current_actor),
    services: CrmServices = Depends(get_services),
) -> list[UserRead] | JSONResponse:
    denied = _require_admin(request, actor, "crm_user_list_failed")
    if denied is not None:
        return denied
    try:
        return services.users.get_unassigned_managers()
    except _HANDLED_ERRORS as exc:
        return crm_error_response(request, exc, code="crm_user_list_failed")


@users_router.get("/users/{user_id}", response_model=UserRead)
def get_user(
    request: Request,
    user_id: str,
    actor: UserRead = Depends(get_current_actor),
    services: CrmServices = Depends(get_services),
) -> UserRead | JSONResponse:
    try:
        return services.users.get_user(actor, user_id)
    except _HANDLED_ERRORS as exc:
        return crm_error_response(request, exc, code="crm_user_get_failed")


@users_router.get("/users/{user_id}/branches", response_model=BranchVisibilityRead)
def get_user_branches(
    request: Request,
    user_id: str,
    actor: UserRead = Depends(get_current_actor),
    services: CrmServices = Depends(get_services),
) -> BranchVisibilityRead | JSONResponse:
    try:
        return services.users.visible_branches_for(actor, user_id)
    except _HANDLED_ERRORS as exc:
        return crm_error_response(request, exc, code="crm_user_get_failed")


@users_router.get("/users/{user_id}/agents", response_model=list[UserRead])
def list_agents_by_manager(
    request: Request,
    user_id: str,
    actor: UserRead = Depends(get_current_actor),
    services: CrmServices = Depends(get_services),
) -> list[UserRead] | JSONResponse:
    try:
        return services.users.get_agents_by_manager(actor, user_id)
    except _HANDLED_ERRORS as exc:
        return crm_error_response(request, exc, code="crm_user_list_failed")


@users_router.patch("/users/{user_id}", response_model=UserRead)
def patch_user(
    request: Request,
    user_id: str,
    dto: UserUpdate,
    actor: UserRead = Depends(get_current_actor),
    services: CrmServices = Depends(get_services),
) -> UserRead | JSONResponse:
    try:
        return services.users.update_user(actor, user_id, dto)
    except _HANDLED_ERRORS as exc:
        return crm_error_response(request, exc, code="crm_user_update_failed")


@users_router.delete("/users/{user_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_user(
    request: Request,
    user_id: str,
    actor: UserRead = Depends(get_current_actor),
    services: CrmServices = Depends(get_services),
) -> Any:
    try:
        services.users.delete_user(actor, user_id)
        return {"status": "deleted"}
    except _HANDLED_ERRORS as exc:
        return crm_error_response(request, exc, code="crm_user_delete_failed")


@users_router.put("/users/{user_id}/branch", response_model=UserRead)
def assign_manager_branch(
    request: Request,
    user_id: str,
    dto: AssignBranchRequest,
    actor: UserRead = Depends(get_current_actor),
    services: CrmServices = Depends(get_services),
) -> UserRead | JSONResponse:
    try:
        return services.users.assign_manager_to_branch(actor, user_id, dto.branch_id)
    except _HANDLED_ERRORS as exc:
        return crm_error_response(request, exc, code="crm_branch_assign_failed")


@users_router.delete("/users/{user_id}/branch", response_model=UserRead)
def remove_manager_branch(
    request: Request,
    user_id: str,
    actor: UserRead = Depends(get_current_actor),
    services: CrmServices = Depends(get_services),
) -> UserRead | JSONResponse:
    try:
        return services.users.remove_manager_from_branch(actor, user_id)
    except _HANDLED_ERRORS as exc:
        return crm_error_response(request, exc, code="crm_branch_assign_failed")


@branches_router.post("/branches", response_model=BranchRead, status_code=status.HTTP_201_CREATED)
def create_branch(
    request: Request,
    dto: BranchCreate,
    actor: UserRead = Depends(get_current_actor),
    services: CrmServices = Depends(get_services),
) -> BranchRead | JSONResponse:
    try:
        return services.branches.create_branch(actor, dto)
    except _HANDLED_ERRORS as exc:
        return crm_error_response(request, exc, code="crm_branch_create_failed")


@branches_router.get("/branches", response_model=list[BranchRead])
def list_branches(
    request: Request,
    actor: UserRead = Depends(get_current_actor),
    services: CrmServices = Depends(get_services),
) -> list[BranchRead] | JSONResponse:
    try:
        return services.branches.list_branches()
    except _HANDLED_ERRORS as exc:
        return crm_error_response(request, exc, code="crm_branch_list_failed")


@branches_router.get("/branches/{branch_id}", response_model=BranchRead)
def get_branch(
    request: Request,
    branch_id: str,
    actor: UserRead = Depends(get_current_actor),
    services: CrmServices = Depends(get_services),
) -> BranchRead | JSONResponse:
    try:
        return services.branches.get_branch(branch_id)
    except _HANDLED_ERRORS as exc:
        return crm_error_response(request, exc, code="crm_branch_get_failed")


@branches_router.get("/branches/{branch_id}/stats", response_model=BranchStats)
def get_branch_stats(
    request: Request,
    branch_id: str,
    actor: UserRead = Depends(get_current_actor),
    services: CrmServices = Depends(get_services),
) -> BranchStats | JSONResponse:
    try:
        return services.branches.get_branch_stats(branch_id)
    except _HANDLED_ERRORS as exc:
        return crm_error_response(request, exc, code="crm_branch_get_failed")


@branches_router.get("/branches/{branch_id}/users", response_model=list[UserRead])
def list_branch_users(
    request: Request,
    branch_id: str,
    actor: UserRead = Depends(get_current_actor),
    services: CrmServices = Depends(get_services),
) -> list[UserRead] | JSONResponse:
    denied = _require_admin(request, actor, "crm_user_list_failed")
    if denied is not None:
        return denied
    try:
        return services.users.get_users_by_branch(branch_id)
    except _HANDLED_ERRORS as exc:
        return crm_error_response(request, exc, code="crm_user_list_failed")


@branches_router.patch("/branches/{branch_id}", response_model=BranchRead)
def patch_branch(
    request: Request,
    branch_id: str,
    dto: BranchUpdate,
    actor: UserRead = Depends(get_current_actor),
    services: CrmServices = Depends(get_services),
) -> BranchRead | JSONResponse:
    try:
        return services.branches.update_branch(actor, branch_id, dto)
    except _HANDLED_ERRORS as exc:
        return crm_error_response(request, exc, code="crm_branch_update_failed")


@branches_router.delete("/branches/{branch_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_branch(
    request: Request,
    branch_id: str,
    actor: UserRead = Depends(get_current_actor),
    services: CrmServices = Depends(get_services),
) -> Any:
    try:
        services.branches.delete_branch(actor, branch_id)
        return {"status": "deleted"}
    except _HANDLED_ERRORS as exc:
        return crm_error_response(request, exc, code="crm_branch_delete_failed")


@leads_router.post("/leads", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(
    request: Request,
    dto: LeadCreate,
    actor: UserRead = Depends(get_current_actor),
    services: CrmServices = Depends(get_services),
) -> LeadRead | JSONResponse:
    try:
        return services.leads.create_lead(actor, dto)
    except _HANDLED_ERRORS as exc:
        return crm_error_response(request, exc, code="crm_lead_create_failed")


@leads_router.get("/leads", response_model=list[LeadRead])
def list_leads(
    request: Request,
    is_closed: bool | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias="status"),
    assigned_to_id: str | None = Query(default=None),
    date_from: datetime | None = Query(default=None),
    date_to: datetime | None = Query(default=None),
    q: str | None = Query(default=None),
    actor: UserRead = Depends(get_current_actor),
    services: CrmServices = Depends(get_services),
) -> list[LeadRead] | JSONResponse:
    filters = LeadListFilters(
        is_closed=is_closed,
        status=status_filter,
        assigned_to_id=assigned_to_id,
        date_from=date_from,
        date_to=date_to,
        search_query=q,
    )
    try:
        return services.leads.list_leads(actor, filters)
    except _HANDLED_ERRORS as exc:
        return crm_error_response(request, exc, code="crm_lead_list_failed")


@leads_router.get("/leads/history", response_model=list[LeadRead])
def list_lead_history(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    agent_id: str | None = Query(default=None),
    date_from: datetime | None = Query(default=None),
    date_to: datetime | None = Query(default=None),
    actor: UserRead = Depends(get_current_actor),
    services: CrmServices = Depends(get_services),
) -> list[LeadRead] | JSONResponse:
    filters = HistoryFilters(status=status_filter, agent_id=agent_id, date_from=date_from, date_to=date_to)
    try:
        return services.leads.list_history(actor, filters)
    except _HANDLED_ERRORS as exc:
        return crm_error_response(request, exc, code="crm_lead_list_failed")


@leads_router.post("/leads/validate", response_model=LeadValidationResult)
def validate_lead(
    request: Request,
    dto: LeadValidateRequest,
    actor: UserRead = Depends(get_current_actor),
    services: CrmServices = Depends(get_services),
) -> LeadValidationResult | JSONResponse:
    try:
        return services.leads.validate_lead(dto.data, dto.exclude_lead_id)
    except _HANDLED_ERRORS as exc:
        return crm_error_response(request, exc, code="crm_lead_validate_failed")


@leads_router.get("/leads/{lead_id}", response_model=LeadRead)
def get_lead(
    request: Request,
    lead_id: str,
    actor: UserRead = Depends(get_current_actor),
    services: CrmServices = Depends(get_services),
) -> LeadRead | JSONResponse:
    try:
        return services.leads.get_lead(actor, lead_id)
    except _HANDLED_ERRORS as exc:
        return crm_error_response(request, exc, code="crm_lead_get_failed")


@leads_router.patch("/leads/{lead_id}", response_model=LeadRead)
def patch_lead(
    request: Request,
    lead_id: str,
    dto: LeadUpdate,
    actor: UserRead = Depends(get_current_actor),
    services: CrmServices = Depends(get_services),
) -> LeadRead | JSONResponse:
    try:
        return services.leads.update_lead(actor, lead_id, dto)
    except _HANDLED_ERRORS as exc:
        return crm_error_response(request, exc, code="crm_lead_update_failed")


@leads_router.delete("/leads/{lead_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_lead(
    request: Request,
    lead_id: str,
    actor: UserRead = Depends(get_current_actor),
    services: CrmServices = Depends(get_services),
) -> Any:
    try:
        services.leads.delete_lead(actor, lead_id)
        return {"status": "deleted"}
    except _HANDLED_ERRORS as exc:
        return crm_error_response(request, exc, code="crm_lead_delete_failed")


@leads_router.post("/leads/{lead_id}/close", response_model=LeadRead)
def close_lead(
    request: Request,
    lead_id: str,
    dto: LeadCloseRequest,
    actor: UserRead = Depends(get_current_actor),
    services: CrmServices = Depends(get_services),
) -> LeadRead | JSONResponse:
    try:
        return services.leads.close_lead(actor, lead_id, dto.status)
    except _HANDLED_ERRORS as exc:
        return crm_error_response(request, exc, code="crm_lead_close_failed")


@leads_router.post("/leads/{lead_id}/reopen", response_model=LeadRead)
def reopen_lead(
    request: Request,
    lead_id: str,
    actor: UserRead = Depends(get_current_actor),
    services: CrmServices = Depends(get_services),
) -> LeadRead | JSONResponse:
    try:
        return services.leads.reopen_lead(actor, lead_id)
    except _HANDLED_ERRORS as exc:
        return crm_error_response(request, exc, code="crm_lead_reopen_failed")


@leads_router.post("/leads/{lead_id}/assign", response_model=LeadRead)
def assign_lead(
    request: Request,
    lead_id: str,
    dto: LeadAssignRequest,
    actor: UserRead = Depends(get_current_actor),
    services: CrmServices = Depends(get_services),
) -> LeadRead | JSONResponse:
    try:
        return services.leads.assign_lead(actor, lead_id, dto.assigned_to_id)
    except _HANDLED_ERRORS as exc:
        return crm_error_response(request, exc, code="crm_lead_assign_failed")


@access_router.get("/access-rules", response_model=list[AccessRuleRead])
def list_access_rules(
    request: Request,
    actor: UserRead = Depends(get_current_actor),
    services: CrmServices = Depends(get_services),
) -> list[AccessRuleRead] | JSONResponse:
    try:
        return services.access_rules.list_rules()
    except _HANDLED_ERRORS as exc:
        return crm_error_response(request, exc, code="crm_access_rule_list_failed")


@access_router.put("/access-rules", response_model=AccessRuleRead)
def upsert_access_rule(
    request: Request,
    dto: AccessRuleUpsert,
    actor: UserRead = Depends(get_current_actor),
    services: CrmServices = Depends(get_services),
) -> AccessRuleRead | JSONResponse:
    try:
        return services.access_rules.upsert_rule(actor, dto)
    except _HANDLED_ERRORS as exc:
        return crm_error_response(request, exc, code="crm_access_rule_update_failed")


@access_router.delete("/access-rules/{rule_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_access_rule(
    request: Request,
    rule_id: str,
    actor: UserRead = Depends(get_current_actor),
    services: CrmServices = Depends(get_services),
) -> Any:
    try:
        services.access_rules.delete_rule(actor, rule_id)
        return {"status": "deleted"}
    except _HANDLED_ERRORS as exc:
        return crm_error_response(request, exc, code="crm_access_rule_delete_failed")


@access_router.get("/me/access", response_model=AccessSummaryRead)
def get_my_access(
    actor: UserRead = Depends(get_current_actor),
    services: CrmServices = Depends(get_services),
) -> AccessSummaryRead:
    return services.access_rules.access_summary(actor)


@audit_router.get("/audit-logs", response_model=AuditLogPage)
def list_audit_logs(
    request: Request,
    actor_id: str | None = Query(default=None),
    target_type: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    actor: UserRead = Depends(get_current_actor),
    services: CrmServices = Depends(get_services),
) -> AuditLogPage | JSONResponse:
    denied = _require_admin(request, actor, "crm_audit_list_failed")
    if denied is not None:
        return denied
    try:
        return services.audit.list_logs(actor_id=actor_id, target_type=target_type, limit=limit, offset=offset)
    except _HANDLED_ERRORS as exc:
        return crm_error_response(request, exc, code="crm_audit_list_failed")

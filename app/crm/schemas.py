from __future__ import annotations

from datetime import datetime, timezone
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from app.crm.access import ComponentKey
from app.crm.roles import Role


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    email: str
    role: Role
    manager_id: str | None = None
    team_lead_id: str | None = None
    branch_ids: list[str] = Field(default_factory=list)
    # Single-branch assignment used by the manager branch cascade.
    branch_id: str | None = None
    permissions: list[str] = Field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None


class CreateManagerInput(BaseModel):
    name: str = Field(min_length=1, max_length=256)
    email: EmailStr
    password: str = Field(min_length=8)
    branch_ids: list[str] = Field(default_factory=list)


class CreateTeamLeadInput(BaseModel):
    name: str = Field(min_length=1, max_length=256)
    email: EmailStr
    password: str = Field(min_length=8)
    branch_ids: list[str] = Field(default_factory=list)


class CreateAgentInput(BaseModel):
    name: str = Field(min_length=1, max_length=256)
    email: EmailStr
    password: str = Field(min_length=8)
    branch_ids: list[str] = Field(default_factory=list)


class UserUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=256)
    email: EmailStr | None = None


class AssignBranchRequest(BaseModel):
    branch_id: str = Field(min_length=1)


class BranchCreate(BaseModel):
    name: str


class BranchUpdate(BaseModel):
    name: str | None = None
    is_active: bool | None = None


class BranchRead(BaseModel):
    id: str
    name: str
    is_active: bool
    created_at: datetime | None = None
    updated_at: datetime | None = None


class BranchStats(BaseModel):
    manager_count: int
    lead_count: int


class BranchVisibilityRead(BaseModel):
    visible_branch_ids: list[str]
    hidden_branch_count: int
    has_visibility_mismatch: bool


class LeadCreate(BaseModel):
    data: dict[str, Any] = Field(default_factory=dict)
    status: str | None = None
    assigned_to_id: str | None = None
    branch_id: str | None = None


class LeadUpdate(BaseModel):
    data: dict[str, Any] = Field(default_factory=dict)
    status: str | None = None


class LeadCloseRequest(BaseModel):
    status: str = Field(min_length=1)


class LeadAssignRequest(BaseModel):
    assigned_to_id: str = Field(min_length=1)


class LeadRead(BaseModel):
    id: str
    data: dict[str, Any]
    status: str
    owner_id: str
    assigned_to_id: str | None = None
    branch_id: str | None = None
    is_closed: bool = False
    closed_at: datetime | None = None
    permissions: list[str] = Field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None


class LeadListFilters(BaseModel):
    is_closed: bool | None = None
    status: str | None = None
    assigned_to_id: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    search_query: str | None = None

    @field_validator("date_from", "date_to")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)


class HistoryFilters(BaseModel):
    date_from: datetime | None = None
    date_to: datetime | None = None
    agent_id: str | None = None
    status: str | None = None

    @field_validator("date_from", "date_to")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)


class LeadValidateRequest(BaseModel):
    data: dict[str, Any] = Field(default_factory=dict)
    exclude_lead_id: str | None = None


class LeadValidationResult(BaseModel):
    is_valid: bool
    duplicate_field: str | None = None
    existing_lead_id: str | None = None
    existing_branch_id: str | None = None


class AccessRuleUpsert(BaseModel):
    component_key: ComponentKey
    role: Role
    allowed: bool


class AccessRuleRead(BaseModel):
    id: str
    component_key: ComponentKey
    role: Role
    allowed: bool


class AccessSummaryRead(BaseModel):
    role: Role
    components: dict[str, bool]
    fell_back_to_defaults: bool = False


class AuditAction(StrEnum):
    USER_CREATE = "USER_CREATE"
    USER_UPDATE = "USER_UPDATE"
    USER_DELETE = "USER_DELETE"
    BRANCH_CREATE = "BRANCH_CREATE"
    BRANCH_UPDATE = "BRANCH_UPDATE"
    BRANCH_DELETE = "BRANCH_DELETE"
    BRANCH_ASSIGN = "BRANCH_ASSIGN"
    LEAD_CREATE = "LEAD_CREATE"
    LEAD_UPDATE = "LEAD_UPDATE"
    LEAD_DELETE = "LEAD_DELETE"
    ACCESS_RULE_UPDATE = "ACCESS_RULE_UPDATE"


class AuditLogRead(BaseModel):
    id: str
    action: str
    actor_id: str
    actor_name: str
    target_id: str | None = None
    target_type: str
    metadata: dict[str, Any] | None = None
    performed_at: datetime
    correlation_id: str | None = None


class AuditLogPage(BaseModel):
    logs: list[AuditLogRead]
    total: int


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1)

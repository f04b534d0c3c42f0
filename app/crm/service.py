from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Union

from app.audit import AuditRecorder
from app.core.config import CrmConfig
from app.crm.access import AccessRuleCache
from app.crm.errors import (
    BranchHasActiveLeadsError,
    BranchHasManagersError,
    BranchNotFoundError,
    BranchSubsetError,
    DuplicateBranchNameError,
    EmptyBranchListError,
    IdentityConflictError,
    InvalidBranchNameError,
    PermissionDeniedError,
    ProfileCreationError,
    ValidationError,
)
from app.crm.grants import Capability, has_capability, lead_acl, to_permissions, user_acl
from app.crm.lead_validator import LeadUniquenessValidator, ensure_required_fields
from app.crm.repositories import (
    AccessRuleRepository,
    AuditLogRepository,
    BranchRepository,
    LeadRepository,
    UserRepository,
)
from app.crm.roles import (
    HierarchyLinks,
    Role,
    creatable_roles,
    derive_hierarchy_links,
    is_chain_consistent,
    requires_branch_subset,
    validate_branch_subset,
)
from app.crm.schemas import (
    AccessRuleRead,
    AccessRuleUpsert,
    AccessSummaryRead,
    AuditAction,
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
    LeadCreate,
    LeadListFilters,
    LeadRead,
    LeadUpdate,
    LeadValidationResult,
    UserRead,
    UserUpdate,
)
from app.crm.visibility import (
    can_filter_by_assignee,
    filter_assignable_users,
    filter_visible_users,
    lead_list_queries,
    lead_scope,
    matches_search,
    visible_user_branches,
)
from app.identity.base import IdentityError, IdentityProvider
from app.metrics import observe_cascade_write, observe_identity_rollback, observe_permission_denied
from app.store.base import DocumentNotFoundError, DocumentStore
from app.store.query import Query, QueryItem


logger = logging.getLogger("app.crm.service")

BRANCH_NAME_MAX_LENGTH = 128

UserCreateInput = Union[CreateManagerInput, CreateTeamLeadInput, CreateAgentInput]

_CREATE_DENIED_MESSAGES = {
    Role.ADMIN: "Permission denied: Admins are provisioned out of band",
    Role.MANAGER: "Permission denied: Only admins can create managers",
    Role.TEAM_LEAD: "Permission denied: Only managers can create team leads",
    Role.AGENT: "Permission denied: Only team leads can create agents",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _deny(operation: str, message: str, caller: UserRead | None = None) -> PermissionDeniedError:
    observe_permission_denied(operation=operation)
    logger.info(
        "permission.denied",
        extra={"actor_id": caller.id if caller else None, "role": caller.role.value if caller else None, "error": message},
    )
    return PermissionDeniedError(message)


def _require_admin(caller: UserRead, operation: str) -> None:
    if caller.role != Role.ADMIN:
        raise _deny(operation, "Permission denied: admin role required", caller)


def _require_grant(permissions: Sequence[str], caller: UserRead, capability: Capability, operation: str) -> None:
    if caller.role == Role.ADMIN:
        return
    if not has_capability(permissions, caller.id, capability):
        raise _deny(operation, f"Permission denied: {capability.value} access required", caller)


def _record(
    audit: AuditRecorder | None,
    action: AuditAction,
    caller: UserRead,
    *,
    target_type: str,
    target_id: str | None,
    metadata: dict[str, Any] | None = None,
) -> None:
    if audit is None:
        return
    audit.record(
        action,
        actor_id=caller.id,
        actor_name=caller.name,
        target_type=target_type,
        target_id=target_id,
        metadata=metadata,
    )


@dataclass(slots=True)
class UserService:
    store: DocumentStore
    identity: IdentityProvider
    config: CrmConfig = field(default_factory=CrmConfig)
    audit: AuditRecorder | None = None
    users: UserRepository = field(init=False)
    branches: BranchRepository = field(init=False)

    def __post_init__(self) -> None:
        self.users = UserRepository(self.store, self.config.users_collection)
        self.branches = BranchRepository(self.store, self.config.branches_collection)

    def create_manager(self, caller: UserRead, dto: CreateManagerInput) -> UserRead:
        return self._create_subordinate(caller, Role.MANAGER, dto)

    def create_team_lead(self, caller: UserRead, dto: CreateTeamLeadInput) -> UserRead:
        return self._create_subordinate(caller, Role.TEAM_LEAD, dto)

    def create_agent(self, caller: UserRead, dto: CreateAgentInput) -> UserRead:
        return self._create_subordinate(caller, Role.AGENT, dto)

    def bootstrap_admin(self, *, name: str, email: str, password: str) -> UserRead:
        """Provision an admin without a caller; used once per deployment."""

        user = self._provision(
            Role.ADMIN,
            name=name,
            email=email,
            password=password,
            branch_ids=[],
            links=HierarchyLinks(manager_id=None, team_lead_id=None),
        )
        logger.info("user.admin_bootstrapped", extra={"target_id": user.id, "role": Role.ADMIN.value})
        return user

    def _create_subordinate(self, caller: UserRead, role: Role, dto: UserCreateInput) -> UserRead:
        if role not in creatable_roles(caller.role):
            raise _deny(f"create_{role.value}", _CREATE_DENIED_MESSAGES[role], caller)
        if not dto.branch_ids:
            raise EmptyBranchListError()
        if not is_chain_consistent(caller.role, manager_id=caller.manager_id, team_lead_id=caller.team_lead_id):
            raise ValidationError(f"User {caller.id} has broken hierarchy links and cannot create users")

        if requires_branch_subset(caller.role):
            result = validate_branch_subset(caller.branch_ids, dto.branch_ids)
            if not result.valid:
                raise BranchSubsetError(str(result.invalid_branch))
        else:
            self._ensure_branches_exist(dto.branch_ids)

        links = derive_hierarchy_links(
            role,
            creator_id=caller.id,
            creator_role=caller.role,
            creator_manager_id=caller.manager_id,
        )
        if not is_chain_consistent(
            role,
            manager_id=links.manager_id,
            team_lead_id=links.team_lead_id,
            team_lead_manager_id=caller.manager_id if caller.role == Role.TEAM_LEAD else None,
        ):
            raise ValidationError(f"Cannot derive hierarchy links for a new {role.value}")
        user = self._provision(
            role,
            name=dto.name,
            email=str(dto.email),
            password=dto.password,
            branch_ids=list(dto.branch_ids),
            links=links,
        )
        _record(
            self.audit,
            AuditAction.USER_CREATE,
            caller,
            target_type="user",
            target_id=user.id,
            metadata={"role": role.value, "email": user.email, "branch_ids": user.branch_ids},
        )
        logger.info("user.created", extra={"actor_id": caller.id, "target_id": user.id, "role": role.value})
        return user

    def _ensure_branches_exist(self, branch_ids: Sequence[str]) -> None:
        for branch_id in branch_ids:
            try:
                self.branches.get(branch_id)
            except DocumentNotFoundError:
                raise BranchNotFoundError(branch_id) from None

    def _provision(
        self,
        role: Role,
        *,
        name: str,
        email: str,
        password: str,
        branch_ids: list[str],
        links: HierarchyLinks,
    ) -> UserRead:
        try:
            user_id = self.identity.create_identity(email, password, name)
        except IdentityError as exc:
            if exc.code == 409:
                raise IdentityConflictError() from exc
            raise

        fields = {
            "name": name,
            "email": email,
            "role": role.value,
            "manager_id": links.manager_id,
            "team_lead_id": links.team_lead_id,
            "branch_ids": branch_ids,
            "branch_id": None,
        }
        acl = user_acl(role, user_id, manager_id=links.manager_id, team_lead_id=links.team_lead_id)
        try:
            return self.users.create(fields, to_permissions(acl), document_id=user_id)
        except Exception as exc:
            logger.error("user.profile_create_failed", extra={"target_id": user_id, "error": str(exc)})
            self._rollback_identity(user_id)
            raise ProfileCreationError(str(exc)) from exc

    def _rollback_identity(self, identity_id: str) -> None:
        observe_identity_rollback()
        try:
            self.identity.delete_identity(identity_id)
        except IdentityError as exc:
            logger.error("identity.rollback_failed", extra={"target_id": identity_id, "error": str(exc)})

    def get_user(self, caller: UserRead, user_id: str) -> UserRead:
        """Return a profile the caller may see; anything else reads as missing."""

        target = self.users.get(user_id)
        if caller.role == Role.ADMIN or target.id == caller.id:
            return target
        if filter_visible_users([target], caller) or has_capability(target.permissions, caller.id, Capability.READ):
            return target
        observe_permission_denied(operation="get_user")
        raise DocumentNotFoundError(self.config.users_collection, user_id)

    def update_user(self, caller: UserRead, user_id: str, dto: UserUpdate) -> UserRead:
        current = self.users.get(user_id)
        _require_grant(current.permissions, caller, Capability.UPDATE, "update_user")

        fields = dto.model_dump(exclude_none=True)
        if "email" in fields:
            fields["email"] = str(fields["email"])
        if not fields:
            return current

        updated = self.users.update(user_id, fields)
        _record(self.audit, AuditAction.USER_UPDATE, caller, target_type="user", target_id=user_id, metadata=fields)
        return updated

    def delete_user(self, caller: UserRead, user_id: str) -> None:
        """Remove the profile document; the identity account is left in place."""

        current = self.users.get(user_id)
        _require_grant(current.permissions, caller, Capability.DELETE, "delete_user")
        self.users.delete(user_id)
        _record(
            self.audit,
            AuditAction.USER_DELETE,
            caller,
            target_type="user",
            target_id=user_id,
            metadata={"role": current.role.value, "email": current.email},
        )
        logger.info("user.deleted", extra={"actor_id": caller.id, "target_id": user_id})

    def list_users(self, caller: UserRead) -> list[UserRead]:
        return filter_visible_users(self.users.list([Query.order_desc("$createdAt")]), caller)

    def get_assignable_users(self, caller: UserRead) -> list[UserRead]:
        return filter_assignable_users(self.users.list(), caller)

    def get_agents_by_manager(self, caller: UserRead, manager_id: str) -> list[UserRead]:
        return filter_visible_users(self._agents_of(manager_id), caller)

    def _agents_of(self, manager_id: str) -> list[UserRead]:
        return self.users.list([Query.equal("role", Role.AGENT.value), Query.equal("manager_id", manager_id)])

    def get_users_by_branch(self, branch_id: str) -> list[UserRead]:
        return [user for user in self.users.list() if user.branch_id == branch_id or branch_id in user.branch_ids]

    def get_unassigned_managers(self) -> list[UserRead]:
        return self.users.list([Query.equal("role", Role.MANAGER.value), Query.equal("branch_id", None)])

    def assign_manager_to_branch(self, caller: UserRead, manager_id: str, branch_id: str) -> UserRead:
        _require_admin(caller, "assign_manager_to_branch")
        manager = self._get_manager(manager_id)
        self._ensure_branches_exist([branch_id])
        return self._cascade_branch(caller, manager, branch_id, operation="assign")

    def remove_manager_from_branch(self, caller: UserRead, manager_id: str) -> UserRead:
        _require_admin(caller, "remove_manager_from_branch")
        manager = self._get_manager(manager_id)
        return self._cascade_branch(caller, manager, None, operation="remove")

    def _get_manager(self, manager_id: str) -> UserRead:
        manager = self.users.get(manager_id)
        if manager.role != Role.MANAGER:
            raise ValidationError(f"User {manager_id} is not a manager")
        return manager

    def _cascade_branch(self, caller: UserRead, manager: UserRead, branch_id: str | None, *, operation: str) -> UserRead:
        """Overwrite the manager's branch, then every linked agent's, one write at a time.

        A failed agent write stops the cascade and propagates; agents already
        written keep the new value. Re-running the cascade converges.
        """

        updated_manager = self.users.update(manager.id, {"branch_id": branch_id})
        agents = self._agents_of(manager.id)

        written = 0
        for agent in agents:
            try:
                self.users.update(agent.id, {"branch_id": branch_id})
            except Exception as exc:
                observe_cascade_write(operation, "success", written)
                observe_cascade_write(operation, "failed")
                logger.error(
                    "branch.cascade.partial",
                    extra={
                        "target_id": manager.id,
                        "branch_id": branch_id,
                        "cascade_count": written,
                        "error": str(exc),
                    },
                )
                raise
            written += 1

        observe_cascade_write(operation, "success", written)
        logger.info(
            "branch.cascade.completed",
            extra={"actor_id": caller.id, "target_id": manager.id, "branch_id": branch_id, "cascade_count": written},
        )
        _record(
            self.audit,
            AuditAction.BRANCH_ASSIGN,
            caller,
            target_type="user",
            target_id=manager.id,
            metadata={"operation": operation, "branch_id": branch_id, "agent_count": written},
        )
        return updated_manager

    def promote_to_admin(self, user_id: str) -> UserRead:
        self.users.get(user_id)
        updated = self.users.update(
            user_id,
            {"role": Role.ADMIN.value, "manager_id": None, "team_lead_id": None},
            to_permissions(user_acl(Role.ADMIN, user_id)),
        )
        logger.info("user.promoted_to_admin", extra={"target_id": user_id, "role": Role.ADMIN.value})
        return updated

    def visible_branches_for(self, caller: UserRead, user_id: str) -> BranchVisibilityRead:
        target = self.get_user(caller, user_id)
        return visible_user_branches(target.branch_ids, caller)


@dataclass(slots=True)
class BranchService:
    store: DocumentStore
    config: CrmConfig = field(default_factory=CrmConfig)
    audit: AuditRecorder | None = None
    branches: BranchRepository = field(init=False)
    users: UserRepository = field(init=False)
    leads: LeadRepository = field(init=False)

    def __post_init__(self) -> None:
        self.branches = BranchRepository(self.store, self.config.branches_collection)
        self.users = UserRepository(self.store, self.config.users_collection)
        self.leads = LeadRepository(self.store, self.config.leads_collection)

    def create_branch(self, caller: UserRead, dto: BranchCreate) -> BranchRead:
        _require_admin(caller, "create_branch")
        name = self._validate_name(dto.name)
        self._ensure_unique_name(name)

        branch = self.branches.create({"name": name, "is_active": True}, [])
        _record(self.audit, AuditAction.BRANCH_CREATE, caller, target_type="branch", target_id=branch.id, metadata={"name": name})
        logger.info("branch.created", extra={"actor_id": caller.id, "branch_id": branch.id})
        return branch

    def get_branch(self, branch_id: str) -> BranchRead:
        return self.branches.get(branch_id)

    def list_branches(self) -> list[BranchRead]:
        return self.branches.list([Query.order_desc("$createdAt")])

    def update_branch(self, caller: UserRead, branch_id: str, dto: BranchUpdate) -> BranchRead:
        _require_admin(caller, "update_branch")
        self.branches.get(branch_id)

        fields: dict[str, Any] = {}
        if dto.name is not None:
            name = self._validate_name(dto.name)
            self._ensure_unique_name(name, exclude_branch_id=branch_id)
            fields["name"] = name
        if dto.is_active is not None:
            fields["is_active"] = dto.is_active

        updated = self.branches.update(branch_id, fields)
        _record(self.audit, AuditAction.BRANCH_UPDATE, caller, target_type="branch", target_id=branch_id, metadata=fields)
        return updated

    def delete_branch(self, caller: UserRead, branch_id: str) -> None:
        _require_admin(caller, "delete_branch")
        branch = self.branches.get(branch_id)

        if self.users.list([Query.equal("branch_id", branch_id)]):
            raise BranchHasManagersError(branch_id)
        if self.leads.list([Query.equal("branch_id", branch_id), Query.equal("is_closed", False)]):
            raise BranchHasActiveLeadsError(branch_id)

        self.branches.delete(branch_id)
        _record(
            self.audit,
            AuditAction.BRANCH_DELETE,
            caller,
            target_type="branch",
            target_id=branch_id,
            metadata={"name": branch.name},
        )
        logger.info("branch.deleted", extra={"actor_id": caller.id, "branch_id": branch_id})

    def get_branch_stats(self, branch_id: str) -> BranchStats:
        self.branches.get(branch_id)
        managers = self.users.list([Query.equal("role", Role.MANAGER.value), Query.equal("branch_id", branch_id)])
        leads = self.leads.list([Query.equal("branch_id", branch_id)])
        return BranchStats(manager_count=len(managers), lead_count=len(leads))

    @staticmethod
    def _validate_name(name: str) -> str:
        stripped = name.strip()
        if not stripped:
            raise InvalidBranchNameError("Branch name is required")
        if len(stripped) > BRANCH_NAME_MAX_LENGTH:
            raise InvalidBranchNameError(f"Branch name must be at most {BRANCH_NAME_MAX_LENGTH} characters")
        return stripped

    def _ensure_unique_name(self, name: str, exclude_branch_id: str | None = None) -> None:
        for branch in self.branches.list([Query.equal("name", name)]):
            if branch.id != exclude_branch_id:
                raise DuplicateBranchNameError(name)


@dataclass(slots=True)
class LeadService:
    store: DocumentStore
    config: CrmConfig = field(default_factory=CrmConfig)
    audit: AuditRecorder | None = None
    leads: LeadRepository = field(init=False)
    users: UserRepository = field(init=False)
    branches: BranchRepository = field(init=False)
    validator: LeadUniquenessValidator = field(init=False)

    def __post_init__(self) -> None:
        self.leads = LeadRepository(self.store, self.config.leads_collection)
        self.users = UserRepository(self.store, self.config.users_collection)
        self.branches = BranchRepository(self.store, self.config.branches_collection)
        self.validator = LeadUniquenessValidator(self.store, self.config.leads_collection, self.config.lead_unique_fields)

    def validate_lead(self, data: dict[str, Any], exclude_lead_id: str | None = None) -> LeadValidationResult:
        return self.validator.validate(data, exclude_lead_id)

    def create_lead(self, caller: UserRead, dto: LeadCreate) -> LeadRead:
        data = dict(dto.data)
        ensure_required_fields(data, self.config.lead_required_fields)
        self.validator.ensure_unique(data)
        branch_id = self._resolve_branch(caller, dto.branch_id)
        if dto.assigned_to_id is not None:
            self._ensure_assignable(caller, dto.assigned_to_id)

        fields = {
            "data": data,
            "status": dto.status or self.config.default_lead_status,
            "owner_id": caller.id,
            "assigned_to_id": dto.assigned_to_id,
            "branch_id": branch_id,
            "is_closed": False,
            "closed_at": None,
        }
        lead = self.leads.create(fields, to_permissions(lead_acl(caller.id, dto.assigned_to_id, is_closed=False)))
        _record(
            self.audit,
            AuditAction.LEAD_CREATE,
            caller,
            target_type="lead",
            target_id=lead.id,
            metadata={"branch_id": branch_id, "assigned_to_id": dto.assigned_to_id},
        )
        logger.info("lead.created", extra={"actor_id": caller.id, "target_id": lead.id, "branch_id": branch_id})
        return lead

    def _resolve_branch(self, caller: UserRead, requested: str | None) -> str | None:
        if caller.role == Role.ADMIN:
            if requested is not None:
                try:
                    self.branches.get(requested)
                except DocumentNotFoundError:
                    raise BranchNotFoundError(requested) from None
            return requested
        if requested is not None:
            if requested not in caller.branch_ids:
                raise BranchSubsetError(requested)
            return requested
        if caller.branch_ids:
            return caller.branch_ids[0]
        return caller.branch_id

    def _ensure_assignable(self, caller: UserRead, assignee_id: str) -> UserRead:
        assignee = self.users.get(assignee_id)
        if caller.role == Role.ADMIN or assignee.id == caller.id:
            return assignee
        if not filter_assignable_users([assignee], caller):
            raise _deny("assign_lead", f"Permission denied: user {assignee_id} is not assignable by you", caller)
        return assignee

    def _can_view(self, caller: UserRead, lead: LeadRead) -> bool:
        if lead_scope(caller, managers_see_all=self.config.managers_see_all).matches(lead):
            return True
        return has_capability(lead.permissions, caller.id, Capability.READ)

    def get_lead(self, caller: UserRead, lead_id: str) -> LeadRead:
        lead = self.leads.get(lead_id)
        if not self._can_view(caller, lead):
            raise DocumentNotFoundError(self.config.leads_collection, lead_id)
        return lead

    def list_leads(self, caller: UserRead, filters: LeadListFilters | None = None) -> list[LeadRead]:
        resolved = filters or LeadListFilters()
        queries = lead_list_queries(resolved, caller, managers_see_all=self.config.managers_see_all)
        return [lead for lead in self.leads.list(queries) if matches_search(lead, resolved.search_query)]

    def list_history(self, caller: UserRead, filters: HistoryFilters | None = None) -> list[LeadRead]:
        """Closed leads in the caller's scope, most recently closed first."""

        resolved = filters or HistoryFilters()
        queries: list[QueryItem] = [
            *lead_scope(caller, managers_see_all=self.config.managers_see_all).queries(),
            Query.equal("is_closed", True),
        ]
        if resolved.status:
            queries.append(Query.equal("status", resolved.status))
        if resolved.agent_id and can_filter_by_assignee(caller.role):
            queries.append(Query.equal("assigned_to_id", resolved.agent_id))
        if resolved.date_from:
            queries.append(Query.greater_than_equal("closed_at", resolved.date_from))
        if resolved.date_to:
            queries.append(Query.less_than_equal("closed_at", resolved.date_to))
        queries.append(Query.order_desc("closed_at"))
        return self.leads.list(queries)

    def update_lead(self, caller: UserRead, lead_id: str, dto: LeadUpdate) -> LeadRead:
        current = self.get_lead(caller, lead_id)
        _require_grant(current.permissions, caller, Capability.UPDATE, "update_lead")

        merged = {**current.data, **dto.data}
        ensure_required_fields(merged, self.config.lead_required_fields)
        self.validator.ensure_unique(merged, exclude_lead_id=lead_id)

        fields: dict[str, Any] = {"data": merged}
        if dto.status:
            fields["status"] = dto.status
        acl = lead_acl(current.owner_id, current.assigned_to_id, is_closed=current.is_closed)
        updated = self.leads.update(lead_id, fields, to_permissions(acl))
        _record(
            self.audit,
            AuditAction.LEAD_UPDATE,
            caller,
            target_type="lead",
            target_id=lead_id,
            metadata={"fields": sorted(dto.data), "status": dto.status},
        )
        return updated

    def delete_lead(self, caller: UserRead, lead_id: str) -> None:
        current = self.get_lead(caller, lead_id)
        _require_grant(current.permissions, caller, Capability.DELETE, "delete_lead")
        self.leads.delete(lead_id)
        _record(
            self.audit,
            AuditAction.LEAD_DELETE,
            caller,
            target_type="lead",
            target_id=lead_id,
            metadata={"branch_id": current.branch_id},
        )
        logger.info("lead.deleted", extra={"actor_id": caller.id, "target_id": lead_id})

    def close_lead(self, caller: UserRead, lead_id: str, status: str) -> LeadRead:
        current = self.get_lead(caller, lead_id)
        _require_grant(current.permissions, caller, Capability.UPDATE, "close_lead")

        acl = lead_acl(current.owner_id, current.assigned_to_id, is_closed=True)
        updated = self.leads.update(
            lead_id,
            {"is_closed": True, "closed_at": utcnow().isoformat(), "status": status},
            to_permissions(acl),
        )
        _record(
            self.audit,
            AuditAction.LEAD_UPDATE,
            caller,
            target_type="lead",
            target_id=lead_id,
            metadata={"is_closed": True, "status": status},
        )
        logger.info("lead.closed", extra={"actor_id": caller.id, "target_id": lead_id})
        return updated

    def reopen_lead(self, caller: UserRead, lead_id: str) -> LeadRead:
        """Open the lead again; `closed_at` keeps the last close time."""

        current = self.get_lead(caller, lead_id)
        if caller.role == Role.AGENT:
            raise _deny("reopen_lead", "Permission denied: agents cannot reopen leads", caller)
        _require_grant(current.permissions, caller, Capability.UPDATE, "reopen_lead")

        acl = lead_acl(current.owner_id, current.assigned_to_id, is_closed=False)
        updated = self.leads.update(lead_id, {"is_closed": False}, to_permissions(acl))
        _record(
            self.audit,
            AuditAction.LEAD_UPDATE,
            caller,
            target_type="lead",
            target_id=lead_id,
            metadata={"is_closed": False},
        )
        logger.info("lead.reopened", extra={"actor_id": caller.id, "target_id": lead_id})
        return updated

    def assign_lead(self, caller: UserRead, lead_id: str, assignee_id: str) -> LeadRead:
        current = self.get_lead(caller, lead_id)
        _require_grant(current.permissions, caller, Capability.UPDATE, "assign_lead")
        self._ensure_assignable(caller, assignee_id)

        acl = lead_acl(current.owner_id, assignee_id, is_closed=current.is_closed)
        updated = self.leads.update(lead_id, {"assigned_to_id": assignee_id}, to_permissions(acl))
        _record(
            self.audit,
            AuditAction.LEAD_UPDATE,
            caller,
            target_type="lead",
            target_id=lead_id,
            metadata={"assigned_to_id": assignee_id, "previous_assigned_to_id": current.assigned_to_id},
        )
        logger.info("lead.assigned", extra={"actor_id": caller.id, "target_id": lead_id})
        return updated


@dataclass(slots=True)
class AccessRuleService:
    store: DocumentStore
    config: CrmConfig = field(default_factory=CrmConfig)
    audit: AuditRecorder | None = None
    rules: AccessRuleRepository = field(init=False)

    def __post_init__(self) -> None:
        self.rules = AccessRuleRepository(self.store, self.config.access_config_collection)

    def list_rules(self) -> list[AccessRuleRead]:
        return self.rules.list()

    def upsert_rule(self, caller: UserRead, dto: AccessRuleUpsert) -> AccessRuleRead:
        """One row per (component, role); an existing row is overwritten in place."""

        _require_admin(caller, "upsert_access_rule")
        existing = self.rules.list(
            [Query.equal("component_key", dto.component_key.value), Query.equal("role", dto.role.value)]
        )
        fields = {"component_key": dto.component_key.value, "role": dto.role.value, "allowed": dto.allowed}
        if existing:
            rule = self.rules.update(existing[0].id, fields)
        else:
            rule = self.rules.create(fields, [])

        _record(self.audit, AuditAction.ACCESS_RULE_UPDATE, caller, target_type="access_rule", target_id=rule.id, metadata=fields)
        return rule

    def delete_rule(self, caller: UserRead, rule_id: str) -> None:
        _require_admin(caller, "delete_access_rule")
        rule = self.rules.get(rule_id)
        self.rules.delete(rule_id)
        _record(
            self.audit,
            AuditAction.ACCESS_RULE_UPDATE,
            caller,
            target_type="access_rule",
            target_id=rule_id,
            metadata={"component_key": rule.component_key.value, "role": rule.role.value, "deleted": True},
        )

    def build_cache(self) -> AccessRuleCache:
        return AccessRuleCache(self.list_rules)

    def access_summary(self, caller: UserRead, cache: AccessRuleCache | None = None) -> AccessSummaryRead:
        resolved = cache or self.build_cache()
        components = resolved.summary(caller.role)
        return AccessSummaryRead(role=caller.role, components=components, fell_back_to_defaults=resolved.last_fetch_failed)


@dataclass(slots=True)
class AuditService:
    store: DocumentStore
    config: CrmConfig = field(default_factory=CrmConfig)
    recorder: AuditRecorder = field(init=False)
    logs: AuditLogRepository = field(init=False)

    def __post_init__(self) -> None:
        self.recorder = AuditRecorder(self.store, self.config.audit_logs_collection, enabled=self.config.audit_enabled)
        self.logs = AuditLogRepository(self.store, self.config.audit_logs_collection)

    def log_action(
        self,
        caller: UserRead,
        action: AuditAction,
        *,
        target_type: str,
        target_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str | None:
        return self.recorder.record(
            action,
            actor_id=caller.id,
            actor_name=caller.name,
            target_type=target_type,
            target_id=target_id,
            metadata=metadata,
        )

    def list_logs(
        self,
        *,
        actor_id: str | None = None,
        target_type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> AuditLogPage:
        queries: list[QueryItem] = []
        if actor_id:
            queries.append(Query.equal("actor_id", actor_id))
        if target_type:
            queries.append(Query.equal("target_type", target_type))
        queries.append(Query.order_desc("performed_at"))

        logs = self.logs.list(queries)
        return AuditLogPage(logs=logs[offset : offset + limit], total=len(logs))


@dataclass(slots=True)
class CrmServices:
    users: UserService
    branches: BranchService
    leads: LeadService
    access_rules: AccessRuleService
    audit: AuditService


def build_services(store: DocumentStore, identity: IdentityProvider, config: CrmConfig) -> CrmServices:
    audit_service = AuditService(store, config)
    recorder = audit_service.recorder
    return CrmServices(
        users=UserService(store, identity, config, recorder),
        branches=BranchService(store, config, recorder),
        leads=LeadService(store, config, recorder),
        access_rules=AccessRuleService(store, config, recorder),
        audit=audit_service,
    )

"""Role-scoped visibility rules for lead and user lists.

Lead scope and list filters are store predicates. Records already loaded are
wrapped back into documents and run through the same predicates.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import assert_never

from app.crm.roles import Role
from app.crm.schemas import BranchVisibilityRead, LeadListFilters, LeadRead, UserRead
from app.store.base import Document
from app.store.query import Query, QueryItem, apply_queries


logger = logging.getLogger("app.crm.visibility")


class ScopeKind(StrEnum):
    ALL = "all"
    BRANCHES = "branches"
    OWNER = "owner"
    ASSIGNEE = "assignee"


@dataclass(frozen=True, slots=True)
class LeadScope:
    kind: ScopeKind
    values: tuple[str, ...] = ()

    def matches(self, lead: LeadRead) -> bool:
        document = lead_document(lead)
        return all(query.matches(document) for query in self.queries())

    def queries(self) -> list[QueryItem]:
        match self.kind:
            case ScopeKind.ALL:
                return []
            case ScopeKind.BRANCHES:
                return [Query.equal("branch_id", list(self.values))]
            case ScopeKind.OWNER:
                return [Query.equal("owner_id", list(self.values))]
            case ScopeKind.ASSIGNEE:
                return [Query.equal("assigned_to_id", list(self.values))]
            case _:
                assert_never(self.kind)


def lead_document(lead: LeadRead) -> Document:
    return Document(
        id=lead.id,
        collection="leads",
        fields=lead.model_dump(exclude={"id", "permissions", "created_at", "updated_at"}),
        permissions=list(lead.permissions),
        created_at=lead.created_at,
        updated_at=lead.updated_at,
    )


def _branch_or_owner_scope(actor: UserRead) -> LeadScope:
    if actor.branch_ids:
        return LeadScope(ScopeKind.BRANCHES, tuple(actor.branch_ids))
    return LeadScope(ScopeKind.OWNER, (actor.id,))


def lead_scope(actor: UserRead, *, managers_see_all: bool = False) -> LeadScope:
    match actor.role:
        case Role.ADMIN:
            return LeadScope(ScopeKind.ALL)
        case Role.MANAGER:
            if managers_see_all:
                return LeadScope(ScopeKind.ALL)
            return _branch_or_owner_scope(actor)
        case Role.TEAM_LEAD:
            return _branch_or_owner_scope(actor)
        case Role.AGENT:
            return LeadScope(ScopeKind.ASSIGNEE, (actor.id,))
        case _:
            assert_never(actor.role)


def can_filter_by_assignee(role: Role) -> bool:
    return role in {Role.ADMIN, Role.MANAGER, Role.TEAM_LEAD}


def lead_filter_queries(filters: LeadListFilters, actor: UserRead) -> list[QueryItem]:
    """Equality and range predicates applied after role scoping; open leads only unless asked."""

    queries: list[QueryItem] = [Query.equal("is_closed", filters.is_closed if filters.is_closed is not None else False)]
    if filters.status:
        queries.append(Query.equal("status", filters.status))
    if filters.assigned_to_id and can_filter_by_assignee(actor.role):
        queries.append(Query.equal("assigned_to_id", filters.assigned_to_id))
    if filters.date_from:
        queries.append(Query.greater_than_equal("$createdAt", filters.date_from))
    if filters.date_to:
        queries.append(Query.less_than_equal("$createdAt", filters.date_to))
    return queries


def lead_list_queries(filters: LeadListFilters, actor: UserRead, *, managers_see_all: bool = False) -> list[QueryItem]:
    return [
        *lead_scope(actor, managers_see_all=managers_see_all).queries(),
        *lead_filter_queries(filters, actor),
        Query.order_desc("$createdAt"),
    ]


def matches_search(lead: LeadRead, search_query: str | None) -> bool:
    if not search_query:
        return True
    needle = search_query.lower()
    return any(needle in str(value).lower() for value in lead.data.values())


def filter_visible_leads(
    leads: Iterable[LeadRead],
    actor: UserRead,
    filters: LeadListFilters | None = None,
    *,
    managers_see_all: bool = False,
) -> list[LeadRead]:
    resolved_filters = filters or LeadListFilters()
    queries = [*lead_scope(actor, managers_see_all=managers_see_all).queries(), *lead_filter_queries(resolved_filters, actor)]
    by_id = {lead.id: lead for lead in leads}
    matched = apply_queries([lead_document(lead) for lead in by_id.values()], queries)
    return [by_id[document.id] for document in matched if matches_search(by_id[document.id], resolved_filters.search_query)]


def _overlaps(left: Sequence[str], right: Iterable[str]) -> bool:
    right_set = set(right)
    return any(item in right_set for item in left)


def filter_visible_users(users: Iterable[UserRead], actor: UserRead) -> list[UserRead]:
    match actor.role:
        case Role.ADMIN:
            return list(users)
        case Role.MANAGER | Role.TEAM_LEAD:
            if not actor.branch_ids:
                return []
            return [user for user in users if _overlaps(user.branch_ids, actor.branch_ids)]
        case Role.AGENT:
            return []
        case _:
            assert_never(actor.role)


def assignable_roles(role: Role) -> frozenset[Role]:
    match role:
        case Role.MANAGER:
            return frozenset({Role.TEAM_LEAD, Role.AGENT})
        case Role.TEAM_LEAD:
            return frozenset({Role.AGENT})
        case Role.ADMIN | Role.AGENT:
            return frozenset()
        case _:
            assert_never(role)


def filter_assignable_users(users: Iterable[UserRead], actor: UserRead) -> list[UserRead]:
    allowed_roles = assignable_roles(actor.role)
    if not allowed_roles or not actor.branch_ids:
        return []
    return [user for user in users if user.role in allowed_roles and _overlaps(user.branch_ids, actor.branch_ids)]


def visible_user_branches(target_branch_ids: Sequence[str], viewer: UserRead) -> BranchVisibilityRead:
    """Branches of another user that the viewer is also assigned to; admins see all of them."""

    if viewer.role == Role.ADMIN:
        return BranchVisibilityRead(
            visible_branch_ids=list(target_branch_ids),
            hidden_branch_count=0,
            has_visibility_mismatch=False,
        )

    viewer_branches = set(viewer.branch_ids)
    visible = [branch_id for branch_id in target_branch_ids if branch_id in viewer_branches]
    hidden = [branch_id for branch_id in target_branch_ids if branch_id not in viewer_branches]
    if hidden:
        logger.info(
            "branch_visibility.mismatch",
            extra={"role": viewer.role.value, "actor_id": viewer.id, "branch_id": ",".join(hidden)},
        )
    return BranchVisibilityRead(
        visible_branch_ids=visible,
        hidden_branch_count=len(hidden),
        has_visibility_mismatch=bool(hidden),
    )

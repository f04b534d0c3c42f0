from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import StrEnum
from typing import assert_never

from app.crm.errors import InvalidRoleError


class Role(StrEnum):
    ADMIN = "admin"
    MANAGER = "manager"
    TEAM_LEAD = "team_lead"
    AGENT = "agent"


def parse_role(value: str) -> Role:
    try:
        return Role(value)
    except ValueError:
        raise InvalidRoleError(value) from None


def creatable_roles(role: Role) -> frozenset[Role]:
    """Roles a user of `role` may provision as direct subordinates."""

    match role:
        case Role.ADMIN:
            return frozenset({Role.MANAGER})
        case Role.MANAGER:
            return frozenset({Role.TEAM_LEAD})
        case Role.TEAM_LEAD:
            return frozenset({Role.AGENT})
        case Role.AGENT:
            return frozenset()
        case _:
            assert_never(role)


def requires_branch_subset(role: Role) -> bool:
    """Admins may hand out any existing branch; every other creator is bounded by its own branches."""

    match role:
        case Role.ADMIN:
            return False
        case Role.MANAGER | Role.TEAM_LEAD | Role.AGENT:
            return True
        case _:
            assert_never(role)


@dataclass(frozen=True, slots=True)
class BranchSubsetResult:
    valid: bool
    invalid_branch: str | None = None


def validate_branch_subset(creator_branch_ids: Iterable[str], target_branch_ids: Iterable[str]) -> BranchSubsetResult:
    allowed = set(creator_branch_ids)
    for branch_id in target_branch_ids:
        if branch_id not in allowed:
            return BranchSubsetResult(valid=False, invalid_branch=branch_id)
    return BranchSubsetResult(valid=True)


@dataclass(frozen=True, slots=True)
class HierarchyLinks:
    manager_id: str | None
    team_lead_id: str | None


def derive_hierarchy_links(
    target_role: Role,
    *,
    creator_id: str,
    creator_role: Role,
    creator_manager_id: str | None,
) -> HierarchyLinks:
    """Parent references stamped on a new user.

    An agent's manager is the team lead's manager, never the team lead itself,
    so the full chain stays queryable from the leaf.
    """

    match target_role:
        case Role.ADMIN | Role.MANAGER:
            return HierarchyLinks(manager_id=None, team_lead_id=None)
        case Role.TEAM_LEAD:
            return HierarchyLinks(manager_id=creator_id if creator_role == Role.MANAGER else None, team_lead_id=None)
        case Role.AGENT:
            if creator_role == Role.TEAM_LEAD:
                return HierarchyLinks(manager_id=creator_manager_id, team_lead_id=creator_id)
            return HierarchyLinks(manager_id=creator_id if creator_role == Role.MANAGER else None, team_lead_id=None)
        case _:
            assert_never(target_role)


def is_chain_consistent(
    role: Role,
    *,
    manager_id: str | None,
    team_lead_id: str | None,
    team_lead_manager_id: str | None = None,
) -> bool:
    match role:
        case Role.ADMIN | Role.MANAGER:
            return manager_id is None and team_lead_id is None
        case Role.TEAM_LEAD:
            return manager_id is not None and team_lead_id is None
        case Role.AGENT:
            if team_lead_id is None:
                return True
            return manager_id == team_lead_manager_id
        case _:
            assert_never(role)

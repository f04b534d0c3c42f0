"""Per-document grant computation.

Every grant set is a full replacement for the document's current permissions.
Callers recompute it from the record state on each transition and never patch
an existing list.
"""
from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from enum import StrEnum
from typing import assert_never

from app.crm.roles import Role


class Capability(StrEnum):
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"


_CAPABILITY_ORDER = (Capability.READ, Capability.UPDATE, Capability.DELETE)
_TOKEN_PATTERN = re.compile(r'^(read|update|delete)\("user:([^"]+)"\)$')

FULL_ACCESS = frozenset({Capability.READ, Capability.UPDATE, Capability.DELETE})
READ_UPDATE = frozenset({Capability.READ, Capability.UPDATE})
READ_DELETE = frozenset({Capability.READ, Capability.DELETE})
READ_ONLY = frozenset({Capability.READ})

Acl = dict[str, frozenset[Capability]]


@dataclass(frozen=True, slots=True)
class Grant:
    subject: str
    capability: Capability

    def token(self) -> str:
        return f'{self.capability.value}("user:{self.subject}")'


def _add(acl: Acl, subject: str | None, capabilities: frozenset[Capability]) -> None:
    if not subject:
        return
    acl[subject] = acl.get(subject, frozenset()) | capabilities


def lead_acl(owner_id: str, assigned_to_id: str | None, *, is_closed: bool) -> Acl:
    """Owner keeps full control; the assignee can edit only while the lead is open."""

    acl: Acl = {}
    _add(acl, owner_id, FULL_ACCESS)
    _add(acl, assigned_to_id, READ_ONLY if is_closed else READ_UPDATE)
    return acl


def user_acl(
    role: Role,
    user_id: str,
    *,
    manager_id: str | None = None,
    team_lead_id: str | None = None,
) -> Acl:
    acl: Acl = {}
    _add(acl, user_id, READ_UPDATE)
    match role:
        case Role.ADMIN | Role.MANAGER:
            pass
        case Role.TEAM_LEAD:
            _add(acl, manager_id, FULL_ACCESS)
        case Role.AGENT:
            _add(acl, team_lead_id, READ_UPDATE)
            # The manager may remove an agent but edits go through the team lead.
            _add(acl, manager_id, READ_DELETE)
        case _:
            assert_never(role)
    return acl


def to_grants(acl: Acl) -> list[Grant]:
    return [
        Grant(subject=subject, capability=capability)
        for subject, capabilities in acl.items()
        for capability in _CAPABILITY_ORDER
        if capability in capabilities
    ]


def to_permissions(acl: Acl) -> list[str]:
    return [grant.token() for grant in to_grants(acl)]


def parse_permissions(permissions: Iterable[str]) -> Acl:
    acl: Acl = {}
    for token in permissions:
        match = _TOKEN_PATTERN.match(token)
        if match is None:
            continue
        _add(acl, match.group(2), frozenset({Capability(match.group(1))}))
    return acl


def capabilities_for(permissions: Iterable[str], subject: str) -> frozenset[Capability]:
    return parse_permissions(permissions).get(subject, frozenset())


def has_capability(permissions: Iterable[str], subject: str, capability: Capability) -> bool:
    return capability in capabilities_for(permissions, subject)

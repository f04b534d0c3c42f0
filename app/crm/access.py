from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from enum import StrEnum
from typing import Protocol, assert_never

from app.crm.roles import Role
from app.metrics import observe_access_rules_fetch_failure


logger = logging.getLogger("app.crm.access")


class ComponentKey(StrEnum):
    DASHBOARD = "dashboard"
    LEADS = "leads"
    HISTORY = "history"
    USER_MANAGEMENT = "user-management"
    FIELD_MANAGEMENT = "field-management"
    SETTINGS = "settings"
    BRANCH_MANAGEMENT = "branch-management"


_AGENT_COMPONENTS = frozenset({ComponentKey.DASHBOARD, ComponentKey.LEADS})
_TEAM_LEAD_COMPONENTS = frozenset(
    {ComponentKey.DASHBOARD, ComponentKey.LEADS, ComponentKey.HISTORY, ComponentKey.USER_MANAGEMENT}
)


class AccessRuleLike(Protocol):
    component_key: str
    role: str
    allowed: bool


RuleMap = Mapping[tuple[str, str], bool]


def default_access(component_key: str, role: Role) -> bool:
    match role:
        case Role.ADMIN | Role.MANAGER:
            return True
        case Role.TEAM_LEAD:
            return component_key in _TEAM_LEAD_COMPONENTS
        case Role.AGENT:
            return component_key in _AGENT_COMPONENTS
        case _:
            assert_never(role)


def build_rule_map(rules: Iterable[AccessRuleLike]) -> dict[tuple[str, str], bool]:
    return {(str(rule.component_key), str(rule.role)): bool(rule.allowed) for rule in rules}


def can_access(component_key: str, role: Role, custom_rules: RuleMap) -> bool:
    """Admin always passes; a stored rule wins over the default table for everyone else."""

    if role == Role.ADMIN:
        return True
    override = custom_rules.get((str(component_key), role.value))
    if override is not None:
        return override
    return default_access(component_key, role)


class AccessRuleCache:
    """Session-scoped copy of the override table.

    A failed fetch leaves the cache empty so lookups fall back to the defaults.
    """

    def __init__(self, loader: Callable[[], Iterable[AccessRuleLike]]) -> None:
        self._loader = loader
        self._rules: dict[tuple[str, str], bool] | None = None
        self.last_fetch_failed = False

    def refresh(self) -> None:
        try:
            self._rules = build_rule_map(self._loader())
            self.last_fetch_failed = False
        except Exception as exc:
            observe_access_rules_fetch_failure()
            logger.warning("access_rules.fetch_failed", extra={"error": str(exc)})
            self._rules = {}
            self.last_fetch_failed = True

    @property
    def rules(self) -> dict[tuple[str, str], bool]:
        if self._rules is None:
            self.refresh()
        return self._rules or {}

    def can_access(self, component_key: str, role: Role) -> bool:
        if role == Role.ADMIN:
            return True
        return can_access(component_key, role, self.rules)

    def summary(self, role: Role) -> dict[str, bool]:
        return {key.value: self.can_access(key, role) for key in ComponentKey}

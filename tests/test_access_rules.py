from __future__ import annotations

import logging

import pytest

from app.core.config import CrmConfig
from app.crm.access import AccessRuleCache, ComponentKey, can_access, default_access
from app.crm.errors import PermissionDeniedError
from app.crm.roles import Role
from app.crm.schemas import AccessRuleUpsert
from app.crm.service import build_services
from app.identity.memory import InMemoryIdentityProvider
from app.store.memory import InMemoryDocumentStore


@pytest.fixture()
def services():
    return build_services(InMemoryDocumentStore(), InMemoryIdentityProvider(), CrmConfig())


def test_defaults_by_role() -> None:
    for key in ComponentKey:
        assert default_access(key, Role.MANAGER) is True
        assert default_access(key, Role.ADMIN) is True
    assert default_access(ComponentKey.LEADS, Role.AGENT) is True
    assert default_access(ComponentKey.DASHBOARD, Role.AGENT) is True
    assert default_access(ComponentKey.HISTORY, Role.AGENT) is False
    assert default_access(ComponentKey.SETTINGS, Role.AGENT) is False
    assert default_access(ComponentKey.USER_MANAGEMENT, Role.TEAM_LEAD) is True
    assert default_access(ComponentKey.FIELD_MANAGEMENT, Role.TEAM_LEAD) is False


def test_custom_rule_overrides_default_but_never_admin() -> None:
    rules = {
        ("settings", "manager"): False,
        ("history", "agent"): True,
        ("settings", "admin"): False,
    }
    assert can_access(ComponentKey.SETTINGS, Role.MANAGER, rules) is False
    assert can_access(ComponentKey.HISTORY, Role.AGENT, rules) is True
    assert can_access(ComponentKey.SETTINGS, Role.ADMIN, rules) is True
    assert can_access(ComponentKey.LEADS, Role.MANAGER, rules) is True


def test_cache_fails_open_to_defaults(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.WARNING)

    def failing_loader():
        raise RuntimeError("rule store unavailable")

    cache = AccessRuleCache(failing_loader)
    assert cache.can_access(ComponentKey.SETTINGS, Role.MANAGER) is True
    assert cache.can_access(ComponentKey.LEADS, Role.AGENT) is True
    assert cache.can_access(ComponentKey.SETTINGS, Role.AGENT) is False
    assert cache.last_fetch_failed is True
    assert any(record.getMessage() == "access_rules.fetch_failed" for record in caplog.records)


def test_cache_loads_once_until_refresh() -> None:
    calls: list[int] = []
    rules: list[object] = []

    def loader():
        calls.append(1)
        return list(rules)

    cache = AccessRuleCache(loader)
    assert cache.can_access(ComponentKey.LEADS, Role.AGENT) is True
    assert cache.can_access(ComponentKey.DASHBOARD, Role.AGENT) is True
    assert len(calls) == 1

    class Rule:
        component_key = "leads"
        role = "agent"
        allowed = False

    rules.append(Rule())
    assert cache.can_access(ComponentKey.LEADS, Role.AGENT) is True
    cache.refresh()
    assert cache.can_access(ComponentKey.LEADS, Role.AGENT) is False
    assert len(calls) == 2


def test_upsert_keeps_one_rule_per_component_and_role(services) -> None:
    admin = services.users.bootstrap_admin(name="Admin", email="admin@branchcrm.com", password="password123")

    first = services.access_rules.upsert_rule(
        admin, AccessRuleUpsert(component_key=ComponentKey.SETTINGS, role=Role.MANAGER, allowed=False)
    )
    second = services.access_rules.upsert_rule(
        admin, AccessRuleUpsert(component_key=ComponentKey.SETTINGS, role=Role.MANAGER, allowed=True)
    )
    assert first.id == second.id
    rules = services.access_rules.list_rules()
    assert len(rules) == 1
    assert rules[0].allowed is True

    services.access_rules.delete_rule(admin, first.id)
    assert services.access_rules.list_rules() == []


def test_summary_reflects_overrides(services) -> None:
    admin = services.users.bootstrap_admin(name="Admin", email="admin@branchcrm.com", password="password123")
    services.access_rules.upsert_rule(
        admin, AccessRuleUpsert(component_key=ComponentKey.HISTORY, role=Role.MANAGER, allowed=False)
    )
    manager = admin.model_copy(update={"id": "m1", "role": Role.MANAGER})

    summary = services.access_rules.access_summary(manager)
    assert summary.components["history"] is False
    assert summary.components["leads"] is True
    assert summary.fell_back_to_defaults is False

    admin_summary = services.access_rules.access_summary(admin)
    assert all(admin_summary.components.values())


def test_only_admin_edits_rules(services) -> None:
    admin = services.users.bootstrap_admin(name="Admin", email="admin@branchcrm.com", password="password123")
    manager = admin.model_copy(update={"id": "m1", "role": Role.MANAGER})
    with pytest.raises(PermissionDeniedError):
        services.access_rules.upsert_rule(
            manager, AccessRuleUpsert(component_key=ComponentKey.HISTORY, role=Role.AGENT, allowed=True)
        )

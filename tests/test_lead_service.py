from __future__ import annotations

from datetime import timedelta
from typing import Any

import pytest

from app.core.config import CrmConfig
from app.crm.errors import (
    BranchSubsetError,
    DuplicateLeadError,
    MissingRequiredFieldError,
    PermissionDeniedError,
)
from app.crm.grants import Capability, parse_permissions
from app.crm.schemas import (
    BranchCreate,
    CreateAgentInput,
    CreateManagerInput,
    CreateTeamLeadInput,
    HistoryFilters,
    LeadCreate,
    LeadListFilters,
    LeadUpdate,
)
from app.crm.service import CrmServices, build_services
from app.identity.memory import InMemoryIdentityProvider
from app.store import DocumentNotFoundError, InMemoryDocumentStore


def _services(config: CrmConfig | None = None) -> CrmServices:
    return build_services(InMemoryDocumentStore(), InMemoryIdentityProvider(), config or CrmConfig())


def _seed(services: CrmServices) -> dict[str, Any]:
    admin = services.users.bootstrap_admin(name="Admin", email="admin@branchcrm.com", password="password123")
    north = services.branches.create_branch(admin, BranchCreate(name="North"))
    south = services.branches.create_branch(admin, BranchCreate(name="South"))
    manager = services.users.create_manager(
        admin,
        CreateManagerInput(name="Mona", email="mona@branchcrm.com", password="password123", branch_ids=[north.id, south.id]),
    )
    team_lead = services.users.create_team_lead(
        manager,
        CreateTeamLeadInput(name="Tariq", email="tariq@branchcrm.com", password="password123", branch_ids=[north.id]),
    )
    agent = services.users.create_agent(
        team_lead,
        CreateAgentInput(name="Ana", email="ana@branchcrm.com", password="password123", branch_ids=[north.id]),
    )
    other_agent = services.users.create_agent(
        team_lead,
        CreateAgentInput(name="Ben", email="ben@branchcrm.com", password="password123", branch_ids=[north.id]),
    )
    return {
        "admin": admin,
        "north": north,
        "south": south,
        "manager": manager,
        "team_lead": team_lead,
        "agent": agent,
        "other_agent": other_agent,
    }


@pytest.fixture()
def services() -> CrmServices:
    return _services()


@pytest.fixture()
def org(services: CrmServices) -> dict[str, Any]:
    return _seed(services)


def test_owner_is_always_the_caller(services: CrmServices, org: dict[str, Any]) -> None:
    lead = services.leads.create_lead(
        org["team_lead"],
        LeadCreate(data={"name": "Acme", "email": "acme@branchcrm.com"}, assigned_to_id=org["agent"].id),
    )
    assert lead.owner_id == org["team_lead"].id
    assert lead.assigned_to_id == org["agent"].id
    assert lead.branch_id == org["north"].id
    assert lead.status == "New"
    assert lead.is_closed is False

    acl = parse_permissions(lead.permissions)
    assert acl[org["team_lead"].id] == frozenset(Capability)
    assert acl[org["agent"].id] == frozenset({Capability.READ, Capability.UPDATE})


def test_non_admin_branch_must_be_one_of_their_own(services: CrmServices, org: dict[str, Any]) -> None:
    with pytest.raises(BranchSubsetError):
        services.leads.create_lead(
            org["team_lead"],
            LeadCreate(data={"email": "acme@branchcrm.com"}, branch_id=org["south"].id),
        )

    lead = services.leads.create_lead(
        org["manager"],
        LeadCreate(data={"email": "acme@branchcrm.com"}, branch_id=org["south"].id),
    )
    assert lead.branch_id == org["south"].id


def test_assignee_must_be_assignable_by_caller(services: CrmServices, org: dict[str, Any]) -> None:
    with pytest.raises(PermissionDeniedError):
        services.leads.create_lead(
            org["team_lead"],
            LeadCreate(data={"email": "acme@branchcrm.com"}, assigned_to_id=org["manager"].id),
        )
    assert services.leads.list_leads(org["admin"]) == []


def test_email_conflict_reported_before_phone(services: CrmServices, org: dict[str, Any]) -> None:
    by_email = services.leads.create_lead(org["admin"], LeadCreate(data={"email": "x@branchcrm.com"}, branch_id=org["north"].id))
    services.leads.create_lead(org["admin"], LeadCreate(data={"phone": "555-0100"}))

    result = services.leads.validate_lead({"email": "x@branchcrm.com", "phone": "555-0100"})
    assert result.is_valid is False
    assert result.duplicate_field == "email"
    assert result.existing_lead_id == by_email.id
    assert result.existing_branch_id == org["north"].id

    with pytest.raises(DuplicateLeadError) as exc_info:
        services.leads.create_lead(org["team_lead"], LeadCreate(data={"email": "x@branchcrm.com"}))
    assert str(exc_info.value) == f"Duplicate email found in lead {by_email.id} (branch: {org['north'].id})"


def test_duplicates_are_detected_across_branches(services: CrmServices, org: dict[str, Any]) -> None:
    services.leads.create_lead(org["admin"], LeadCreate(data={"phone": "555-0100"}, branch_id=org["south"].id))
    with pytest.raises(DuplicateLeadError) as exc_info:
        services.leads.create_lead(org["team_lead"], LeadCreate(data={"phone": "555-0100"}))
    assert exc_info.value.field == "phone"
    assert exc_info.value.existing_branch_id == org["south"].id


def test_update_excludes_the_lead_itself(services: CrmServices, org: dict[str, Any]) -> None:
    lead = services.leads.create_lead(org["team_lead"], LeadCreate(data={"email": "x@branchcrm.com", "name": "Acme"}))
    assert services.leads.validate_lead({"email": "x@branchcrm.com"}, exclude_lead_id=lead.id).is_valid is True

    updated = services.leads.update_lead(
        org["team_lead"],
        lead.id,
        LeadUpdate(data={"email": "x@branchcrm.com", "name": "Acme Ltd"}, status="Contacted"),
    )
    assert updated.data == {"email": "x@branchcrm.com", "name": "Acme Ltd"}
    assert updated.status == "Contacted"


def test_required_fields_are_enforced() -> None:
    services = _services(CrmConfig(lead_required_fields=("name",)))
    org = _seed(services)
    with pytest.raises(MissingRequiredFieldError):
        services.leads.create_lead(org["team_lead"], LeadCreate(data={"name": "   "}))


def test_agent_sees_only_assigned_leads(services: CrmServices, org: dict[str, Any]) -> None:
    mine = services.leads.create_lead(
        org["team_lead"], LeadCreate(data={"email": "a@branchcrm.com"}, assigned_to_id=org["agent"].id)
    )
    theirs = services.leads.create_lead(
        org["team_lead"], LeadCreate(data={"email": "b@branchcrm.com"}, assigned_to_id=org["other_agent"].id)
    )
    services.leads.create_lead(org["team_lead"], LeadCreate(data={"email": "c@branchcrm.com"}))

    visible = services.leads.list_leads(org["agent"])
    assert [lead.id for lead in visible] == [mine.id]
    assert all(lead.assigned_to_id == org["agent"].id for lead in visible)

    with pytest.raises(DocumentNotFoundError):
        services.leads.get_lead(org["agent"], theirs.id)

    ignored_filter = LeadListFilters(assigned_to_id=org["other_agent"].id)
    assert [lead.id for lead in services.leads.list_leads(org["agent"], ignored_filter)] == [mine.id]


def test_branch_scope_and_search(services: CrmServices, org: dict[str, Any]) -> None:
    north_lead = services.leads.create_lead(org["team_lead"], LeadCreate(data={"name": "Acme Widgets"}))
    south_lead = services.leads.create_lead(org["admin"], LeadCreate(data={"name": "Acme South"}, branch_id=org["south"].id))
    services.leads.create_lead(org["admin"], LeadCreate(data={"name": "Unbranched"}))

    assert [lead.id for lead in services.leads.list_leads(org["team_lead"])] == [north_lead.id]
    assert {lead.id for lead in services.leads.list_leads(org["manager"])} == {north_lead.id, south_lead.id}
    assert len(services.leads.list_leads(org["admin"])) == 3

    search = LeadListFilters(search_query="acme")
    assert {lead.id for lead in services.leads.list_leads(org["admin"], search)} == {north_lead.id, south_lead.id}


def test_managers_see_all_when_configured() -> None:
    services = _services(CrmConfig(managers_see_all=True))
    org = _seed(services)
    lead = services.leads.create_lead(org["admin"], LeadCreate(data={"name": "Unbranched"}))
    assert [item.id for item in services.leads.list_leads(org["manager"])] == [lead.id]


def test_close_then_reopen_keeps_closed_at(services: CrmServices, org: dict[str, Any]) -> None:
    lead = services.leads.create_lead(
        org["team_lead"], LeadCreate(data={"email": "a@branchcrm.com"}, assigned_to_id=org["agent"].id)
    )

    closed = services.leads.close_lead(org["agent"], lead.id, "Won")
    assert closed.is_closed is True
    assert closed.status == "Won"
    assert closed.closed_at is not None
    assert parse_permissions(closed.permissions)[org["agent"].id] == frozenset({Capability.READ})

    with pytest.raises(PermissionDeniedError):
        services.leads.update_lead(org["agent"], lead.id, LeadUpdate(data={"name": "Late edit"}))
    with pytest.raises(PermissionDeniedError):
        services.leads.reopen_lead(org["agent"], lead.id)

    reopened = services.leads.reopen_lead(org["team_lead"], lead.id)
    assert reopened.is_closed is False
    assert reopened.closed_at == closed.closed_at
    assert parse_permissions(reopened.permissions)[org["agent"].id] == frozenset({Capability.READ, Capability.UPDATE})


def test_reassign_replaces_previous_assignee_grants(services: CrmServices, org: dict[str, Any]) -> None:
    lead = services.leads.create_lead(
        org["team_lead"], LeadCreate(data={"email": "a@branchcrm.com"}, assigned_to_id=org["agent"].id)
    )

    reassigned = services.leads.assign_lead(org["team_lead"], lead.id, org["other_agent"].id)
    acl = parse_permissions(reassigned.permissions)
    assert org["agent"].id not in acl
    assert acl[org["other_agent"].id] == frozenset({Capability.READ, Capability.UPDATE})
    assert acl[org["team_lead"].id] == frozenset(Capability)

    with pytest.raises(DocumentNotFoundError):
        services.leads.get_lead(org["agent"], lead.id)


def test_reassigning_closed_lead_grants_read_only(services: CrmServices, org: dict[str, Any]) -> None:
    lead = services.leads.create_lead(
        org["team_lead"], LeadCreate(data={"email": "a@branchcrm.com"}, assigned_to_id=org["agent"].id)
    )
    services.leads.close_lead(org["agent"], lead.id, "Lost")

    reassigned = services.leads.assign_lead(org["team_lead"], lead.id, org["other_agent"].id)
    assert reassigned.is_closed is True
    acl = parse_permissions(reassigned.permissions)
    assert acl == {
        org["team_lead"].id: frozenset(Capability),
        org["other_agent"].id: frozenset({Capability.READ}),
    }

    with pytest.raises(PermissionDeniedError):
        services.leads.update_lead(org["other_agent"], lead.id, LeadUpdate(data={"name": "Late edit"}))
    with pytest.raises(DocumentNotFoundError):
        services.leads.get_lead(org["agent"], lead.id)


def test_manager_needs_a_grant_to_edit_team_lead_leads(services: CrmServices, org: dict[str, Any]) -> None:
    lead = services.leads.create_lead(org["team_lead"], LeadCreate(data={"email": "a@branchcrm.com"}))
    assert services.leads.get_lead(org["manager"], lead.id).id == lead.id

    with pytest.raises(PermissionDeniedError):
        services.leads.update_lead(org["manager"], lead.id, LeadUpdate(status="Contacted"))
    with pytest.raises(PermissionDeniedError):
        services.leads.delete_lead(org["manager"], lead.id)

    services.leads.delete_lead(org["admin"], lead.id)
    with pytest.raises(DocumentNotFoundError):
        services.leads.get_lead(org["admin"], lead.id)


def test_history_lists_closed_leads_latest_first(services: CrmServices, org: dict[str, Any]) -> None:
    first = services.leads.create_lead(
        org["team_lead"], LeadCreate(data={"email": "a@branchcrm.com"}, assigned_to_id=org["agent"].id)
    )
    second = services.leads.create_lead(
        org["team_lead"], LeadCreate(data={"email": "b@branchcrm.com"}, assigned_to_id=org["other_agent"].id)
    )
    services.leads.create_lead(org["team_lead"], LeadCreate(data={"email": "c@branchcrm.com"}))

    closed_first = services.leads.close_lead(org["team_lead"], first.id, "Won")
    services.leads.close_lead(org["team_lead"], second.id, "Lost")

    history = services.leads.list_history(org["team_lead"])
    assert [lead.id for lead in history] == [second.id, first.id]

    by_agent = services.leads.list_history(org["team_lead"], HistoryFilters(agent_id=org["agent"].id))
    assert [lead.id for lead in by_agent] == [first.id]

    by_status = services.leads.list_history(org["manager"], HistoryFilters(status="Lost"))
    assert [lead.id for lead in by_status] == [second.id]

    assert closed_first.closed_at is not None
    window = HistoryFilters(date_to=closed_first.closed_at + timedelta(microseconds=1))
    assert first.id in [lead.id for lead in services.leads.list_history(org["team_lead"], window)]

    agent_history = services.leads.list_history(org["agent"])
    assert [lead.id for lead in agent_history] == [first.id]

from __future__ import annotations

import logging
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient

from app.core.backends import get_identity_provider, get_store
from app.core.config import CrmConfig, get_settings
from app.crm.service import build_services
from app.identity.memory import InMemoryIdentityProvider
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter
from app.store.memory import InMemoryDocumentStore


@pytest.fixture(autouse=True)
def configure_rate_limiter_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_CRM_MUTATIONS_PER_MINUTE", "3")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    reset_rate_limiter()
    get_settings.cache_clear()


@pytest.fixture()
def client() -> Generator[TestClient, None, None]:
    store = InMemoryDocumentStore()
    identity = InMemoryIdentityProvider()
    build_services(store, identity, CrmConfig()).users.bootstrap_admin(
        name="Admin", email="admin@branchcrm.com", password="password123"
    )
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_identity_provider] = lambda: identity
    with TestClient(app) as test_client:
        login = test_client.post("/auth/login", json={"email": "admin@branchcrm.com", "password": "password123"})
        assert login.status_code == 200
        yield test_client
    app.dependency_overrides.clear()


def test_mutating_crm_endpoints_are_rate_limited(client: TestClient) -> None:
    responses = [client.post("/api/crm/branches", json={"name": f"Branch {index}"}) for index in range(5)]

    limited = [response for response in responses if response.status_code == 429]
    assert limited

    first_limited = limited[0]
    body = first_limited.json()
    assert body["code"] == "RATE_LIMITED"
    assert body["message"] == "Too many requests"
    assert body["correlation_id"] is not None
    assert first_limited.headers.get("Retry-After") is not None


def test_budgets_are_per_target_type(client: TestClient) -> None:
    for index in range(3):
        assert client.post("/api/crm/branches", json={"name": f"Branch {index}"}).status_code == 201
    assert client.post("/api/crm/branches", json={"name": "Branch 3"}).status_code == 429

    lead = client.post("/api/crm/leads", json={"data": {"email": "lead@branchcrm.com"}})
    assert lead.status_code == 201


def test_limited_mutation_is_logged_with_target_type(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.WARNING)
    for index in range(4):
        client.post("/api/crm/branches", json={"name": f"Branch {index}"})

    exceeded = [record for record in caplog.records if record.getMessage() == "rate_limit.exceeded"]
    assert len(exceeded) == 1
    assert getattr(exceeded[0], "target_type", None) == "branch"
    assert getattr(exceeded[0], "actor_id", None)
    assert getattr(exceeded[0], "retry_after", 0) >= 1


def test_duplicate_precheck_is_not_a_mutation(client: TestClient) -> None:
    responses = [
        client.post("/api/crm/leads/validate", json={"data": {"email": f"lead{index}@branchcrm.com"}})
        for index in range(6)
    ]
    assert all(response.status_code == 200 for response in responses)


def test_lead_budget_can_be_tuned_separately(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RATE_LIMIT_LEAD_MUTATIONS_PER_MINUTE", "1")
    get_settings.cache_clear()

    assert client.post("/api/crm/leads", json={"data": {"email": "one@branchcrm.com"}}).status_code == 201
    assert client.post("/api/crm/leads", json={"data": {"email": "two@branchcrm.com"}}).status_code == 429
    for index in range(3):
        assert client.post("/api/crm/branches", json={"name": f"Branch {index}"}).status_code == 201


def test_get_endpoints_are_not_rate_limited(client: TestClient) -> None:
    create = client.post("/api/crm/branches", json={"name": "Readable"})
    assert create.status_code == 201

    responses = [client.get("/api/crm/branches") for _ in range(10)]
    assert all(response.status_code != 429 for response in responses)

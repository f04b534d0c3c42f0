from __future__ import annotations

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
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


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
        yield test_client
    app.dependency_overrides.clear()


def _login(client: TestClient, email: str) -> None:
    response = client.post("/auth/login", json={"email": email, "password": "password123"})
    assert response.status_code == 200


def test_metrics_endpoint_exposes_http_and_crm_metrics(client: TestClient) -> None:
    _login(client, "admin@branchcrm.com")

    health = client.get("/health")
    assert health.status_code == 200

    branch = client.post("/api/crm/branches", json={"name": "North"})
    assert branch.status_code == 201
    branch_id = branch.json()["id"]

    manager = client.post(
        "/api/crm/users/managers",
        json={"name": "Mona", "email": "mona@branchcrm.com", "password": "password123", "branch_ids": [branch_id]},
    )
    assert manager.status_code == 201
    manager_id = manager.json()["id"]

    assigned = client.put(f"/api/crm/users/{manager_id}/branch", json={"branch_id": branch_id})
    assert assigned.status_code == 200

    first = client.post("/api/crm/leads", json={"data": {"email": "dup@branchcrm.com"}})
    assert first.status_code == 201
    duplicate = client.post("/api/crm/leads", json={"data": {"email": "dup@branchcrm.com"}})
    assert duplicate.status_code == 422

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "crm_lead_duplicates_rejected_total" in body
    assert "crm_branch_cascade_writes_total" in body

    assert 'path="/health"' in body
    assert 'path="/api/crm/users/{id}/branch"' in body
    assert 'field="email"' in body


def test_metrics_endpoint_requires_admin(client: TestClient) -> None:
    _login(client, "admin@branchcrm.com")
    branch = client.post("/api/crm/branches", json={"name": "North"})
    client.post(
        "/api/crm/users/managers",
        json={"name": "Mona", "email": "mona@branchcrm.com", "password": "password123", "branch_ids": [branch.json()["id"]]},
    )

    _login(client, "mona@branchcrm.com")
    assert client.get("/metrics").status_code == 403


def test_metrics_endpoint_hidden_when_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()
    _login(client, "admin@branchcrm.com")
    assert client.get("/metrics").status_code == 404

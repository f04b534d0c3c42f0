from __future__ import annotations

import uuid
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


@pytest.fixture()
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture(autouse=True)
def clear_state() -> Generator[None, None, None]:
    reset_rate_limiter()
    get_settings.cache_clear()
    yield
    reset_rate_limiter()
    get_settings.cache_clear()


@pytest.fixture()
def client(store: InMemoryDocumentStore) -> Generator[TestClient, None, None]:
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


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get(f"/api/crm/leads/{uuid.uuid4().hex}")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get(f"/api/crm/branches/{uuid.uuid4().hex}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_audit_uses_request_correlation_id(client: TestClient, store: InMemoryDocumentStore) -> None:
    response = client.post("/api/crm/branches", json={"name": "North"}, headers={"X-Correlation-Id": "corr-audit-1"})
    assert response.status_code == 201

    entries = [document for document in store.list("audit_logs") if document.fields["target_type"] == "branch"]
    assert entries
    assert entries[-1].fields["correlation_id"] == "corr-audit-1"


def test_rate_limited_response_includes_correlation_id(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_CRM_MUTATIONS_PER_MINUTE", "1")
    get_settings.cache_clear()
    reset_rate_limiter()

    first = client.post("/api/crm/branches", json={"name": "North"}, headers={"X-Correlation-Id": "corr-rate-1"})
    assert first.status_code == 201

    second = client.post("/api/crm/branches", json={"name": "South"}, headers={"X-Correlation-Id": "corr-rate-1"})
    assert second.status_code == 429
    payload = second.json()
    assert payload["correlation_id"] == "corr-rate-1"
    assert second.headers.get("x-correlation-id") == "corr-rate-1"


def test_unusable_correlation_id_is_replaced(client: TestClient) -> None:
    for supplied in ("x" * 200, "abc 123", "<script>"):
        response = client.get(f"/api/crm/branches/{uuid.uuid4().hex}", headers={"X-Correlation-Id": supplied})
        assert response.status_code == 404
        echoed = response.headers.get("x-correlation-id")
        assert echoed and echoed != supplied
        assert str(uuid.UUID(echoed)) == echoed
        assert response.json()["correlation_id"] == echoed


def test_surrounding_whitespace_is_trimmed(client: TestClient) -> None:
    response = client.get(f"/api/crm/leads/{uuid.uuid4().hex}", headers={"X-Correlation-Id": "  corr-trim-1 "})
    assert response.headers.get("x-correlation-id") == "corr-trim-1"

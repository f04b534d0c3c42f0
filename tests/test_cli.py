from __future__ import annotations

import json
from collections.abc import Generator
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from app.cli import main
from app.core.config import CrmConfig, get_settings
from app.crm.roles import Role
from app.crm.schemas import BranchCreate, CreateManagerInput
from app.crm.service import build_services
from app.identity.sql import SqlIdentityProvider
from app.store.sql import SqlDocumentStore


@pytest.fixture()
def database_url(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Generator[str, None, None]:
    url = f"sqlite+pysqlite:///{tmp_path / 'cli.db'}"
    monkeypatch.setenv("DATABASE_URL", url)
    get_settings.cache_clear()
    yield url
    get_settings.cache_clear()


def test_bootstrap_admin_creates_a_login(database_url: str, capsys: pytest.CaptureFixture[str]) -> None:
    code = main(["bootstrap-admin", "--name", "Admin", "--email", "admin@branchcrm.com", "--password", "password123"])
    assert code == 0
    created = json.loads(capsys.readouterr().out)
    assert created["role"] == Role.ADMIN.value

    engine = create_engine(database_url, future=True)
    with Session(engine) as session:
        assert SqlIdentityProvider(session).verify("admin@branchcrm.com", "password123") == created["id"]
    engine.dispose()


def test_second_bootstrap_is_refused(database_url: str, capsys: pytest.CaptureFixture[str]) -> None:
    args = ["bootstrap-admin", "--name", "Admin", "--email", "admin@branchcrm.com", "--password", "password123"]
    assert main(args) == 0
    capsys.readouterr()

    second = ["bootstrap-admin", "--name", "Other", "--email", "other@branchcrm.com", "--password", "password123"]
    assert main(second) == 1
    assert "already exists" in capsys.readouterr().err
    assert main([*second, "--allow-existing"]) == 0


def test_duplicate_email_reports_conflict(database_url: str, capsys: pytest.CaptureFixture[str]) -> None:
    args = ["bootstrap-admin", "--name", "Admin", "--email", "admin@branchcrm.com", "--password", "password123"]
    assert main(args) == 0
    assert main([*args, "--allow-existing"]) == 1
    assert "A user with this email already exists" in capsys.readouterr().err


def test_promote_admin_clears_links(database_url: str, capsys: pytest.CaptureFixture[str]) -> None:
    engine = create_engine(database_url, future=True)
    assert main(["bootstrap-admin", "--name", "Admin", "--email", "admin@branchcrm.com", "--password", "password123"]) == 0
    with Session(engine) as session:
        services = build_services(SqlDocumentStore(session), SqlIdentityProvider(session), CrmConfig())
        admin = services.users.users.list()[0]
        north = services.branches.create_branch(admin, BranchCreate(name="North"))
        manager = services.users.create_manager(
            admin,
            CreateManagerInput(name="Mona", email="mona@branchcrm.com", password="password123", branch_ids=[north.id]),
        )
    engine.dispose()
    capsys.readouterr()

    assert main(["promote-admin", manager.id]) == 0
    promoted = json.loads(capsys.readouterr().out)
    assert promoted["id"] == manager.id
    assert promoted["role"] == Role.ADMIN.value
    assert promoted["manager_id"] is None


def test_promote_unknown_user_fails(database_url: str, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["promote-admin", "missing-user"]) == 1
    assert "missing-user" in capsys.readouterr().err

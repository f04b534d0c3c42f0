from __future__ import annotations

from fastapi import Depends
from sqlalchemy.orm import Session

from app.core.config import CrmConfig, get_settings
from app.core.database import get_db
from app.crm.service import CrmServices, build_services
from app.identity.base import IdentityProvider
from app.identity.memory import InMemoryIdentityProvider
from app.identity.sql import SqlIdentityProvider
from app.store.base import DocumentStore
from app.store.memory import InMemoryDocumentStore
from app.store.sql import SqlDocumentStore


_memory_store = InMemoryDocumentStore()
_memory_identity = InMemoryIdentityProvider()


def get_store(db: Session = Depends(get_db)) -> DocumentStore:
    if get_settings().resolved_store_backend() == "sql":
        return SqlDocumentStore(db)
    return _memory_store


def get_identity_provider(db: Session = Depends(get_db)) -> IdentityProvider:
    if get_settings().resolved_store_backend() == "sql":
        return SqlIdentityProvider(db)
    return _memory_identity


def get_crm_config() -> CrmConfig:
    return CrmConfig.from_settings(get_settings())


def get_services(
    store: DocumentStore = Depends(get_store),
    identity: IdentityProvider = Depends(get_identity_provider),
    config: CrmConfig = Depends(get_crm_config),
) -> CrmServices:
    return build_services(store, identity, config)


def reset_memory_backends() -> None:
    global _memory_identity
    _memory_store.clear()
    _memory_identity = InMemoryIdentityProvider()

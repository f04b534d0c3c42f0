from app.store.base import (
    Document,
    DocumentAlreadyExistsError,
    DocumentNotFoundError,
    DocumentStore,
    StoreError,
)
from app.store.memory import InMemoryDocumentStore
from app.store.query import Query

__all__ = [
    "Document",
    "DocumentAlreadyExistsError",
    "DocumentNotFoundError",
    "DocumentStore",
    "InMemoryDocumentStore",
    "Query",
    "StoreError",
]

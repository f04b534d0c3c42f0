from __future__ import annotations

import uuid
from threading import Lock

from app.identity.base import (
    Identity,
    IdentityAlreadyExistsError,
    IdentityNotFoundError,
    InvalidCredentialsError,
    check_password,
    hash_password,
)


class InMemoryIdentityProvider:
    def __init__(self) -> None:
        self._identities: dict[str, Identity] = {}
        self._password_hashes: dict[str, str] = {}
        self._lock = Lock()

    def create_identity(self, email: str, password: str, name: str, identity_id: str | None = None) -> str:
        normalized = email.strip().lower()
        resolved_id = identity_id or uuid.uuid4().hex
        with self._lock:
            if resolved_id in self._identities or any(item.email == normalized for item in self._identities.values()):
                raise IdentityAlreadyExistsError(normalized)
            self._identities[resolved_id] = Identity(id=resolved_id, email=normalized, name=name)
            self._password_hashes[resolved_id] = hash_password(password)
        return resolved_id

    def delete_identity(self, identity_id: str) -> None:
        with self._lock:
            if identity_id not in self._identities:
                raise IdentityNotFoundError(identity_id)
            del self._identities[identity_id]
            self._password_hashes.pop(identity_id, None)

    def verify(self, email: str, password: str) -> str:
        normalized = email.strip().lower()
        for identity in self._identities.values():
            if identity.email == normalized and check_password(password, self._password_hashes[identity.id]):
                return identity.id
        raise InvalidCredentialsError()

    def get(self, identity_id: str) -> Identity:
        identity = self._identities.get(identity_id)
        if identity is None:
            raise IdentityNotFoundError(identity_id)
        return identity

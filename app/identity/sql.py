from __future__ import annotations

import uuid

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.identity.base import (
    IdentityAlreadyExistsError,
    IdentityNotFoundError,
    InvalidCredentialsError,
    check_password,
    hash_password,
)
from app.identity.models import CRMIdentity


class SqlIdentityProvider:
    def __init__(self, session: Session) -> None:
        self._session = session

    def create_identity(self, email: str, password: str, name: str, identity_id: str | None = None) -> str:
        normalized = email.strip().lower()
        identity = CRMIdentity(
            id=identity_id or uuid.uuid4().hex,
            email=normalized,
            name=name,
            password_hash=hash_password(password),
        )
        self._session.add(identity)
        try:
            self._session.commit()
        except IntegrityError:
            self._session.rollback()
            raise IdentityAlreadyExistsError(normalized)
        return identity.id

    def delete_identity(self, identity_id: str) -> None:
        identity = self._session.scalar(select(CRMIdentity).where(CRMIdentity.id == identity_id))
        if identity is None:
            raise IdentityNotFoundError(identity_id)
        self._session.delete(identity)
        self._session.commit()

    def verify(self, email: str, password: str) -> str:
        identity = self._session.scalar(select(CRMIdentity).where(CRMIdentity.email == email.strip().lower()))
        if identity is None or not check_password(password, identity.password_hash):
            raise InvalidCredentialsError()
        return identity.id

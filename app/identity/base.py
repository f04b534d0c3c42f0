from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

import bcrypt


BCRYPT_ROUNDS = 12
_BCRYPT_MAX_BYTES = 72


class IdentityError(Exception):
    """Base error raised by identity providers."""

    code = 400


class IdentityAlreadyExistsError(IdentityError):
    code = 409

    def __init__(self, email: str) -> None:
        self.email = email
        super().__init__("A user with the same id, email, or phone already exists in this project.")


class IdentityNotFoundError(IdentityError):
    code = 404

    def __init__(self, identity_id: str) -> None:
        self.identity_id = identity_id
        super().__init__("User with the requested ID could not be found.")


class InvalidCredentialsError(IdentityError):
    code = 401

    def __init__(self) -> None:
        super().__init__("Invalid credentials. Please check the email and password.")


@dataclass(slots=True)
class Identity:
    id: str
    email: str
    name: str


class IdentityProvider(Protocol):
    """Account provisioning capability; sessions are issued separately."""

    def create_identity(self, email: str, password: str, name: str, identity_id: str | None = None) -> str:
        ...

    def delete_identity(self, identity_id: str) -> None:
        ...

    def verify(self, email: str, password: str) -> str:
        ...


def _password_bytes(password: str) -> bytes:
    # bcrypt only reads the first 72 bytes
    return password.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def hash_password(password: str, *, rounds: int = BCRYPT_ROUNDS) -> str:
    return bcrypt.hashpw(_password_bytes(password), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def check_password(password: str, encoded: str) -> bool:
    try:
        return bcrypt.checkpw(_password_bytes(password), encoded.encode("utf-8"))
    except ValueError:
        return False

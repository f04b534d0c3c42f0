from app.identity.base import (
    Identity,
    IdentityAlreadyExistsError,
    IdentityError,
    IdentityNotFoundError,
    IdentityProvider,
    InvalidCredentialsError,
)
from app.identity.memory import InMemoryIdentityProvider

__all__ = [
    "Identity",
    "IdentityAlreadyExistsError",
    "IdentityError",
    "IdentityNotFoundError",
    "IdentityProvider",
    "InMemoryIdentityProvider",
    "InvalidCredentialsError",
]

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from app.core.config import Settings


def issue_session_token(identity_id: str, settings: Settings) -> str:
    expires_at = datetime.now(timezone.utc) + timedelta(minutes=settings.session_ttl_minutes)
    return jwt.encode({"sub": identity_id, "exp": expires_at}, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def resolve_session_subject(token: str, settings: Settings) -> str | None:
    """Return the identity id carried by a session token, or None when it is missing or invalid."""

    if not token:
        return None
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None
    subject = payload.get("sub")
    if subject is None:
        return None
    return str(subject)

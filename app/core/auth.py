from __future__ import annotations

from fastapi import Depends, HTTPException, status
from starlette.requests import Request

from app.context import set_actor_id
from app.core.backends import get_crm_config, get_store
from app.core.config import CrmConfig, get_settings
from app.crm.repositories import UserRepository
from app.crm.schemas import UserRead
from app.identity.sessions import resolve_session_subject
from app.store.base import DocumentNotFoundError, DocumentStore


def get_session_token(request: Request) -> str:
    """Session cookie first, then a Bearer header for API clients."""

    settings = get_settings()
    cookie = request.cookies.get(settings.session_cookie_name)
    if cookie:
        return cookie
    auth_header = request.headers.get("authorization", "")
    return auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""


def resolve_request_subject(request: Request) -> str | None:
    return resolve_session_subject(get_session_token(request), get_settings())


async def get_current_actor(
    request: Request,
    store: DocumentStore = Depends(get_store),
    config: CrmConfig = Depends(get_crm_config),
) -> UserRead:
    subject = resolve_request_subject(request)
    if subject is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    try:
        actor = UserRepository(store, config.users_collection).get(subject)
    except DocumentNotFoundError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User profile not found") from None

    request.state.actor_id = actor.id
    request.state.actor_role = actor.role.value
    set_actor_id(actor.id)
    return actor

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse, Response
from starlette.requests import Request

from app.core.auth import get_current_actor
from app.core.backends import get_crm_config, get_identity_provider, get_store
from app.core.config import CrmConfig, get_settings
from app.crm.api import access_router, audit_router, branches_router, error_response, leads_router, users_router
from app.crm.repositories import UserRepository
from app.crm.roles import Role
from app.crm.schemas import LoginRequest, UserRead
from app.identity.base import IdentityError, IdentityProvider
from app.identity.sessions import issue_session_token
from app.metrics import generate_metrics_payload, metrics_content_type
from app.store.base import DocumentNotFoundError, DocumentStore

logger = logging.getLogger("app.auth")

router = APIRouter()
router.include_router(users_router)
router.include_router(branches_router)
router.include_router(leads_router)
router.include_router(access_router)
router.include_router(audit_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
        "store_backend": settings.resolved_store_backend(),
    }


@router.post("/auth/login", tags=["auth"], response_model=UserRead)
def login(
    request: Request,
    dto: LoginRequest,
    identity: IdentityProvider = Depends(get_identity_provider),
    store: DocumentStore = Depends(get_store),
    config: CrmConfig = Depends(get_crm_config),
) -> JSONResponse:
    try:
        identity_id = identity.verify(str(dto.email), dto.password)
        user = UserRepository(store, config.users_collection).get(identity_id)
    except IdentityError as exc:
        logger.info("auth.login_failed", extra={"error": str(exc)})
        return error_response(request, status_code=exc.code, code="auth_login_failed", message=str(exc))
    except DocumentNotFoundError as exc:
        logger.warning("auth.profile_missing", extra={"error": str(exc)})
        return error_response(
            request,
            status_code=status.HTTP_401_UNAUTHORIZED,
            code="auth_login_failed",
            message="User profile not found",
        )

    settings = get_settings()
    token = issue_session_token(user.id, settings)
    response = JSONResponse(content=user.model_dump(mode="json"))
    response.set_cookie(
        settings.session_cookie_name,
        token,
        httponly=True,
        samesite="lax",
        max_age=settings.session_ttl_minutes * 60,
    )
    response.headers["x-session-token"] = token
    logger.info("auth.login", extra={"actor_id": user.id, "role": user.role.value})
    return response


@router.post("/auth/logout", tags=["auth"])
def logout() -> JSONResponse:
    response = JSONResponse(content={"status": "logged_out"})
    response.delete_cookie(get_settings().session_cookie_name)
    return response


@router.get("/me", tags=["auth"], response_model=UserRead)
async def me(user: UserRead = Depends(get_current_actor)) -> UserRead:
    return user


@router.get("/metrics", tags=["system"])
def metrics(user: UserRead = Depends(get_current_actor)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if user.role != Role.ADMIN:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Permission denied: admin role required")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())

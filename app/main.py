from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI

from app.api.routes import router as api_router
from app.core.config import get_settings
from app.core.database import Base, engine
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.rate_limit import CrmMutationRateLimitMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware


configure_logging()
logger = logging.getLogger("app.lifecycle")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    backend = settings.resolved_store_backend()
    if backend == "sql" and settings.app_env.lower() not in {"prod", "production"}:
        # Local SQL runs skip alembic; production schemas come from migrations.
        Base.metadata.create_all(bind=engine)
    logger.info("system.started", extra={"collection": backend})
    yield


app = FastAPI(title="Branch CRM API", version="0.1.0", lifespan=lifespan)
app.add_middleware(CrmMutationRateLimitMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

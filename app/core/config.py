from dataclasses import dataclass
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Branch CRM API"
    app_env: str = "local"
    app_debug: bool = True
    api_port: int = 8000
    database_url: str = "sqlite+pysqlite:///./crm.db"
    jwt_secret: str = "replace-me"
    jwt_algorithm: str = "HS256"
    session_cookie_name: str = "crm_session"
    session_ttl_minutes: int = 720
    store_backend: str = "auto"
    users_collection: str = "users"
    leads_collection: str = "leads"
    branches_collection: str = "branches"
    access_config_collection: str = "access_config"
    audit_logs_collection: str = "audit_logs"
    lead_unique_fields: list[str] = ["email", "phone"]
    lead_required_fields: list[str] = []
    default_lead_status: str = "New"
    audit_enabled: bool = True
    managers_see_all: bool = False
    rate_limit_disabled: bool = False
    rate_limit_crm_mutations_per_minute: int = 60
    rate_limit_lead_mutations_per_minute: int | None = None
    log_level: str = "INFO"
    metrics_enabled: bool = False

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)

    def resolved_store_backend(self) -> str:
        choice = self.store_backend.lower()
        if choice == "auto":
            return "sql" if self.app_env.lower() in {"prod", "production"} else "memory"
        return choice


@lru_cache
def get_settings() -> Settings:
    return Settings()


@dataclass(frozen=True, slots=True)
class CrmConfig:
    """Collection ids and lead rules handed to every service at construction."""

    users_collection: str = "users"
    leads_collection: str = "leads"
    branches_collection: str = "branches"
    access_config_collection: str = "access_config"
    audit_logs_collection: str = "audit_logs"
    lead_unique_fields: tuple[str, ...] = ("email", "phone")
    lead_required_fields: tuple[str, ...] = ()
    default_lead_status: str = "New"
    audit_enabled: bool = True
    managers_see_all: bool = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "CrmConfig":
        return cls(
            users_collection=settings.users_collection,
            leads_collection=settings.leads_collection,
            branches_collection=settings.branches_collection,
            access_config_collection=settings.access_config_collection,
            audit_logs_collection=settings.audit_logs_collection,
            lead_unique_fields=tuple(settings.lead_unique_fields),
            lead_required_fields=tuple(settings.lead_required_fields),
            default_lead_status=settings.default_lead_status,
            audit_enabled=settings.audit_enabled,
            managers_see_all=settings.managers_see_all,
        )

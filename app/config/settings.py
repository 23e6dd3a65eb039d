from typing import List, Union
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Application
    ENVIRONMENT: str = "development"
    NAME: str = "School Notification Scheduler"
    VERSION: str = "1.0.0"
    API_PREFIX: str = "/api/v1"
    """Pydantic v2 doesn't support parsing List[str] from a plain comma-separated string by default anymore."""
    ALLOWED_HOSTS: Union[str, List[str]] = "http://localhost:3000"
    LOG_LEVEL: str = "info"

    # Database
    DATABASE_URL: str = "sqlite:///./scheduled_notifications.db"

    # Redis & Celery
    REDIS_PASSWORD: str = ""
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0

    # Scheduled notification dispatch
    DISPATCH_BATCH_SIZE: int = 100
    DISPATCH_MAX_WORKERS: int = 8
    DISPATCH_DELIVERY_CONCURRENCY: int = 50
    DISPATCH_CLAIM_TIMEOUT_SECONDS: int = 15 * 60
    CHANNEL_DELIVERY_TIMEOUT_SECONDS: float = 10.0
    DEFAULT_TIMEZONE: str = "UTC"

    # Authentication headers set by the upstream gateway
    AUTH_USER_ID_HEADER: str = "X-User-Id"
    AUTH_USER_ROLES_HEADER: str = "X-User-Roles"
    ADMIN_ROLE: str = "admin"

    @field_validator("ALLOWED_HOSTS", mode="before")
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> Union[List[str], str]:
        if not v:
            return []
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",")]
        return v

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


settings = Settings()

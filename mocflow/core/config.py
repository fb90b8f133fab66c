from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from typing import Literal, Optional


class Settings(BaseSettings):
    # App
    app_name: str = "mocflow"
    debug: bool = False

    # Database
    database_url: str = "sqlite:///./mocflow.db"
    database_echo: bool = False
    auto_create_schema: bool = True

    # Workflow
    display_id_prefix: str = "MOC"
    sequence_name: str = "change_request"
    require_rejection_comments: bool = False
    max_conflict_retries: int = 3

    # Notifications
    notification_dispatch: Literal["inline", "celery"] = "inline"
    recent_notifications_limit: int = 10

    # Redis
    redis_url: str = "redis://localhost:6379/0"

    # Celery
    celery_broker_url: Optional[str] = None
    celery_result_backend: Optional[str] = None

    @property
    def celery_broker(self) -> str:
        return self.celery_broker_url or self.redis_url

    @property
    def celery_backend(self) -> str:
        return self.celery_result_backend or self.redis_url

    # Logging
    log_level: str = "INFO"
    log_dir: Optional[str] = None

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore"  # Allow extra env vars without raising validation errors
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()

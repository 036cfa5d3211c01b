"""
Configuration management using Pydantic Settings
"""
from functools import lru_cache
from typing import List

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    APP_NAME: str = "PNR Status Tracker"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    API_V1_PREFIX: str = "/api/v1"
    TZ: str = "UTC"

    # Database
    DATABASE_URL: str = "sqlite:///./data/pnr_tracker.db"

    # Upstream status source
    STATUS_SOURCE_URL: str = "http://localhost:8080/pnr-status"
    STATUS_SOURCE_TIMEOUT: float = 30.0

    # Background scheduler
    SCHEDULER_ENABLED: bool = False
    SCHEDULER_CRON: str = "*/30 * * * *"
    SCHEDULER_BATCH_SIZE: int = 50
    SCHEDULER_REQUEST_DELAY: int = 2000       # ms between upstream requests
    SCHEDULER_MAX_RETRIES: int = 3
    SCHEDULER_BATCH_PAUSE: int = 5000         # ms between batches
    SCHEDULER_INITIAL_CHECK: bool = False
    AUTO_DEACTIVATE_RETIRED: bool = False

    # Archiver
    ARCHIVER_ENABLED: bool = False
    ARCHIVER_DAYS_AFTER_TRAVEL: int = 7
    ARCHIVER_BATCH_SIZE: int = 100

    # Notification queue
    NOTIFICATION_STORE: str = "database"      # "database" or "memory"
    NOTIFICATION_MAX_ATTEMPTS: int = 3
    NOTIFICATION_PROCESS_INTERVAL: int = 5000  # ms

    # Email
    SMTP_SERVER: str = "localhost"
    SMTP_PORT: int = 587
    FROM_EMAIL: str = ""
    EMAIL_PASSWORD: str = ""

    # Recipients for system-wide notifications (comma-separated string in .env)
    SYSTEM_ALERT_EMAILS: str = ""

    @field_validator("SYSTEM_ALERT_EMAILS")
    @classmethod
    def split_emails(cls, v: str) -> List[str]:
        if not v:
            return []
        return [email.strip() for email in v.split(",") if email.strip()]

    @field_validator("NOTIFICATION_STORE")
    @classmethod
    def check_store(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("database", "memory"):
            raise ValueError("NOTIFICATION_STORE must be 'database' or 'memory'")
        return v


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()

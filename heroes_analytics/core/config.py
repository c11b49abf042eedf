from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator
from croniter import croniter


class Settings(BaseSettings):
    # Application settings
    APP_NAME: str = "Heroes Analytics Sync"
    APP_VERSION: str = "1.0.0"
    DEVICE_TYPE: str = "mobile"
    LOG_LEVEL: str = "INFO"

    # Local store settings
    DATABASE_URL: str = "sqlite+aiosqlite:///./heroes_analytics.db"
    DATABASE_ECHO: bool = False
    STORE_MAX_EVENTS: int = 10000
    STORE_TRIM_BATCH: int = 500

    # Capture settings
    CAPTURE_QUEUE_SIZE: int = 1000

    # Compliance settings
    MAX_INDICATOR_VALUE_LENGTH: int = 100
    DEFAULT_RETENTION_DAYS: int = 90
    MAX_RETENTION_DAYS: int = 90

    # Sync transport settings
    SYNC_API_BASE_URL: str = "http://localhost:3000/api"
    SYNC_API_TOKEN: str = ""
    SYNC_REQUEST_TIMEOUT: float = 30.0

    # Sync engine settings
    SYNC_INTERVAL_SECONDS: int = 900  # 15 minutes
    SYNC_BATCH_SIZE: int = 50
    SYNC_MAX_BATCH_SIZE: int = 100
    SYNC_MAX_ATTEMPTS: int = 5
    SYNC_RETRY_BASE_DELAY_SECONDS: float = 30.0
    SYNC_RETRY_MAX_DELAY_SECONDS: float = 3600.0
    SYNC_RETRY_JITTER_RATIO: float = 0.1
    SYNC_MAX_CONCURRENT_BATCHES: int = 1
    SYNC_INFLIGHT_TIMEOUT_SECONDS: int = 600
    SYNC_FAILURE_THRESHOLD: int = 3
    SYNC_RECOVERY_TIMEOUT_SECONDS: int = 120

    # Retention settings
    RETENTION_SCHEDULE_CRON: str = "0 2 * * *"  # daily at 02:00
    BATCH_HISTORY_DAYS: int = 7

    @field_validator("DATABASE_URL")
    @classmethod
    def validate_database_url(cls, v):
        if not v:
            raise ValueError("DATABASE_URL is required")
        return v

    @field_validator("SYNC_API_BASE_URL")
    @classmethod
    def validate_base_url(cls, v):
        if not v.startswith(("http://", "https://")):
            raise ValueError("SYNC_API_BASE_URL must start with http:// or https://")
        return v.rstrip("/")

    @field_validator("RETENTION_SCHEDULE_CRON")
    @classmethod
    def validate_retention_cron(cls, v):
        if not croniter.is_valid(v):
            raise ValueError(f"Invalid cron expression: {v}")
        return v

    @field_validator("SYNC_BATCH_SIZE", "SYNC_MAX_BATCH_SIZE", "SYNC_MAX_ATTEMPTS", "SYNC_MAX_CONCURRENT_BATCHES")
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="HEROES_",
        case_sensitive=True,
        extra="ignore",
    )


settings = Settings()

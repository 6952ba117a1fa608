"""
Configuration management for the abuse-control engine
Environment-based settings with conservative defaults
"""

from functools import lru_cache
from typing import List, Optional
from pydantic_settings import BaseSettings
from pydantic import field_validator


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Application
    APP_NAME: str = "abuse-control"
    APP_ENV: str = "development"  # development, staging, production
    DEBUG: bool = False

    # Database
    DATABASE_URL: str = "postgresql://localhost:5432/abuse_control"
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 10

    # Redis
    REDIS_URL: str = "redis://localhost:6379/0"
    CACHE_BACKEND: str = "redis"  # redis, memory
    CACHE_PREFIX: str = "abuse"
    CONFIG_CACHE_TTL: int = 300  # 5 minutes

    # Celery
    CELERY_BROKER_URL: str = "redis://localhost:6379/1"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/2"

    # Job scheduling (seconds)
    SPIKE_DETECTION_INTERVAL: int = 3600
    ERROR_RATE_DETECTION_INTERVAL: int = 3600
    PATTERN_DETECTION_INTERVAL: int = 3600
    SUSPENSION_CHECK_INTERVAL: int = 900
    NOTIFICATION_QUEUE_INTERVAL: int = 60
    RETENTION_CLEANUP_INTERVAL: int = 86400

    # Job execution
    JOB_CONCURRENCY: int = 8  # projects evaluated in parallel per job
    JOB_LOCK_TTL: int = 3300  # seconds; a crashed run frees its lock after this

    # Spike detection defaults
    SPIKE_THRESHOLD_MULTIPLIER: float = 3.0
    SPIKE_DETECTION_WINDOW_MS: int = 3600000  # 1 hour
    SPIKE_BASELINE_PERIOD_MS: int = 86400000  # 24 hours
    SPIKE_MIN_USAGE: int = 10

    # Error rate detection defaults
    ERROR_RATE_THRESHOLD_PERCENTAGE: float = 50.0
    ERROR_RATE_MIN_REQUESTS: int = 100
    ERROR_RATE_DETECTION_WINDOW_MS: int = 3600000

    # Pattern detection defaults
    PATTERN_DETECTION_WINDOW_MS: int = 3600000
    PATTERN_SUSPEND_ON_DETECTION: bool = True

    # Cap enforcement
    AUTO_SUSPEND_ENVIRONMENTS: str = "production"
    QUOTA_WARNING_THRESHOLDS: str = "80,90"

    # Notifications
    NOTIFICATION_MAX_ATTEMPTS: int = 3
    NOTIFICATION_RETRY_BASE_DELAY_MS: int = 1000
    NOTIFICATION_RETRY_MAX_DELAY_MS: int = 60000
    NOTIFICATION_BATCH_SIZE: int = 50
    SUPPORT_EMAIL: str = "support@example.com"
    SUPPORT_URL: str = "https://example.com/support"
    EMAIL_API_URL: Optional[str] = None
    EMAIL_API_KEY: Optional[str] = None
    EMAIL_FROM: str = "alerts@example.com"
    EMAIL_REQUEST_TIMEOUT: int = 10  # seconds
    WEBHOOK_URL: Optional[str] = None
    WEBHOOK_REQUEST_TIMEOUT: int = 10  # seconds

    # Retention
    METRIC_RETENTION_DAYS: int = 90

    @field_validator("CACHE_BACKEND", mode="before")
    @classmethod
    def normalize_cache_backend(cls, v: str) -> str:
        return (v or "redis").strip().lower()

    @property
    def auto_suspend_environments_list(self) -> List[str]:
        return [env.strip() for env in self.AUTO_SUSPEND_ENVIRONMENTS.split(",") if env.strip()]

    @property
    def quota_warning_thresholds_list(self) -> List[int]:
        return sorted(
            int(value.strip())
            for value in self.QUOTA_WARNING_THRESHOLDS.split(",")
            if value.strip()
        )

    @property
    def is_production(self) -> bool:
        return self.APP_ENV == "production"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Cached settings loader"""
    return Settings()

import os

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, model_validator

load_dotenv()


_TRUTHY_VALUES = {"1", "true", "yes", "on"}


def _env_bool(name: str, default: str = "") -> bool:
    return os.getenv(name, default).lower() in _TRUTHY_VALUES


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    database_url: str | None = os.getenv("DATABASE_URL")
    db_pool_size: int = int(os.getenv("DB_POOL_SIZE", "5"))
    db_max_overflow: int = int(os.getenv("DB_MAX_OVERFLOW", "10"))
    db_pool_timeout: int = int(os.getenv("DB_POOL_TIMEOUT", "30"))
    db_pool_recycle: int = int(os.getenv("DB_POOL_RECYCLE", "1800"))

    # Runtime flags
    testing: bool = _env_bool("TESTING")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    log_json: bool = _env_bool("LOG_JSON")

    # Working copies, keys, credential stores and stack directories live here
    data_dir: str = os.getenv("STACKPIPE_DATA_DIR", "/var/lib/stackpipe")
    git_binary: str = os.getenv("GIT_BINARY", "git")
    docker_binary: str = os.getenv("DOCKER_BINARY", "docker")
    image_prefix: str = os.getenv("BUILD_IMAGE_PREFIX", "stackpipe")

    # Build queue
    build_queue_enabled: bool = _env_bool("BUILD_QUEUE_ENABLED", "true")
    build_queue_poll_seconds: float = float(os.getenv("BUILD_QUEUE_POLL_SECONDS", "5"))
    default_build_timeout_seconds: int = int(os.getenv("DEFAULT_BUILD_TIMEOUT", "3600"))
    git_timeout_seconds: int = int(os.getenv("GIT_TIMEOUT", "300"))
    stuck_build_minutes: int = int(os.getenv("STUCK_BUILD_MINUTES", "180"))
    build_log_max_chars: int = int(os.getenv("BUILD_LOG_MAX_CHARS", "500000"))

    # Health checks run after apply
    health_check_base_url: str = os.getenv("HEALTH_CHECK_BASE_URL", "http://localhost")
    health_check_default_timeout: int = int(os.getenv("HEALTH_CHECK_TIMEOUT", "60"))
    health_check_interval_seconds: float = float(os.getenv("HEALTH_CHECK_INTERVAL", "2"))

    # Webhooks
    webhook_rate_limit: int = int(os.getenv("WEBHOOK_RATE_LIMIT", "60"))
    webhook_event_retention_days: int = int(os.getenv("WEBHOOK_EVENT_RETENTION_DAYS", "30"))

    # Notifications / Celery
    redis_url: str | None = os.getenv("REDIS_URL") or None
    event_channel_prefix: str = os.getenv("EVENT_CHANNEL_PREFIX", "stackpipe")
    celery_broker_url: str = os.getenv("CELERY_BROKER_URL", os.getenv("REDIS_URL", "redis://localhost:6379/0"))
    celery_result_backend: str = os.getenv(
        "CELERY_RESULT_BACKEND", os.getenv("REDIS_URL", "redis://localhost:6379/0")
    )

    # API auth
    jwt_secret: str | None = os.getenv("JWT_SECRET")
    jwt_algorithm: str = os.getenv("JWT_ALGORITHM", "HS256")

    @model_validator(mode="after")
    def require_database_url_when_not_testing(self) -> "Settings":
        if not self.testing and not (self.database_url and self.database_url.strip()):
            raise ValueError("DATABASE_URL must be set when TESTING is false")
        return self


settings = Settings()

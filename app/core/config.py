from functools import lru_cache
from typing import Any, List, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_CORS = ["http://localhost:3000", "http://localhost:5173"]


def _parse_cors_origins(v: Any) -> List[str]:
    try:
        if v is None or v == "":
            return _DEFAULT_CORS.copy()
        if isinstance(v, list):
            return [x for x in v if isinstance(x, str) and x.strip()]
        s = str(v).strip()
        if not s:
            return _DEFAULT_CORS.copy()
        if s.startswith("["):
            import json
            out = json.loads(s)
            return [x for x in out if isinstance(x, str) and x.strip()] or _DEFAULT_CORS.copy()
        return [x.strip() for x in s.split(",") if x.strip()] or _DEFAULT_CORS.copy()
    except ValueError:
        return _DEFAULT_CORS.copy()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # App
    env: str = Field(default="development", description="ENV")
    debug: bool = Field(default=False, description="DEBUG")
    secret_key: str = Field(default="change-me-in-production-min-32-chars")
    frontend_url: str = Field(default="http://localhost:5173", alias="FRONTEND_URL")

    # MongoDB
    mongodb_uri: str = Field(default="mongodb://localhost:27017", alias="MONGODB_URI")
    mongodb_db_name: str = Field(default="skillswap", alias="MONGODB_DB_NAME")
    # Multi-document transactions need a replica set; off means compensating writes
    mongodb_transactions: bool = Field(default=False, alias="MONGODB_TRANSACTIONS")

    # Redis (arq worker + realtime fan-out)
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")
    notifications_enabled: bool = Field(default=True, alias="NOTIFICATIONS_ENABLED")
    # Upper bound on one publish, connect included
    notification_timeout_seconds: float = Field(default=2.0, alias="NOTIFICATION_TIMEOUT_SECONDS")

    # Sentry
    sentry_dsn: str | None = Field(default=None, alias="SENTRY_DSN")

    # CORS: env as string, exposed as list
    cors_origins_raw: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        alias="CORS_ORIGINS",
        description="Comma-separated or JSON list",
    )

    @property
    def cors_origins(self) -> List[str]:
        return _parse_cors_origins(getattr(self, "cors_origins_raw", None))

    # Credit policy
    minutes_per_credit: int = Field(default=60, alias="MINUTES_PER_CREDIT")
    signup_bonus_credits: int = Field(default=5, alias="SIGNUP_BONUS_CREDITS")
    no_show_policy: Literal["forfeit", "refund", "award_teacher"] = Field(
        default="forfeit", alias="NO_SHOW_POLICY"
    )

    # Session state machine
    transition_lock_ttl_seconds: int = Field(default=30, alias="TRANSITION_LOCK_TTL_SECONDS")
    status_write_retries: int = Field(default=3, alias="STATUS_WRITE_RETRIES")
    session_start_window_minutes: int = Field(default=15, alias="SESSION_START_WINDOW_MINUTES")

    # Credit history paging
    history_default_limit: int = Field(default=20, alias="HISTORY_DEFAULT_LIMIT")
    history_max_limit: int = Field(default=100, alias="HISTORY_MAX_LIMIT")


@lru_cache
def get_settings() -> Settings:
    return Settings()

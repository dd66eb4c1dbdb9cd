"""FlowATS configuration loaded from environment variables."""

from __future__ import annotations

import json

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings

_LOG_LEVELS = {"debug", "info", "warn", "warning", "error"}


class Settings(BaseSettings):
    """Application settings loaded from .env file."""

    # Server
    app_env: str = Field(
        default="development",
        validation_alias=AliasChoices("APP_ENV", "NODE_ENV"),
    )
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8787, alias="PORT")
    cors_origin: str = Field(default="*", alias="CORS_ORIGIN")

    # Logging
    log_level: str = Field(default="info", alias="LOG_LEVEL")

    # Monitoring
    metrics_token: str = Field(default="", alias="METRICS_TOKEN")
    metrics_max_samples: int = Field(default=1000, alias="METRICS_MAX_SAMPLES")
    rate_limit_max_keys: int = Field(default=10_000, alias="RATE_LIMIT_MAX_KEYS")
    health_deep_timeout_seconds: float = Field(default=3.0, alias="HEALTH_DEEP_TIMEOUT_SECONDS")
    resource_monitor_interval_seconds: float = Field(default=30.0, alias="RESOURCE_MONITOR_INTERVAL_SECONDS")

    # Supabase (Postgres / auth / storage)
    supabase_url: str = Field(default="", alias="SUPABASE_URL")
    supabase_service_role_key: str = Field(default="", alias="SUPABASE_SERVICE_ROLE_KEY")

    # AI provider
    ai_provider: str = Field(default="openai", alias="AI_PROVIDER")
    ai_api_key: str = Field(default="", alias="AI_API_KEY")
    fake_ai: bool = Field(default=False, alias="FAKE_AI")
    allow_dev_auth: bool = Field(default=False, alias="ALLOW_DEV_AUTH")

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: object) -> str:
        level = str(value or "").strip().lower()
        return level if level in _LOG_LEVELS else "info"

    @field_validator("metrics_max_samples", "rate_limit_max_keys")
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        return max(1, value)

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() in {"production", "prod"}

    @property
    def is_test(self) -> bool:
        return self.app_env.lower() in {"test", "testing"}

    @property
    def supabase_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_role_key)

    @property
    def cors_origins_list(self) -> list[str]:
        raw = (self.cors_origin or "").strip()
        if not raw:
            return []

        # Supports JSON list format and comma-separated format.
        if raw.startswith("["):
            try:
                parsed = json.loads(raw)
                if isinstance(parsed, list):
                    return [str(origin).strip() for origin in parsed if str(origin).strip()]
            except json.JSONDecodeError:
                pass

        return [origin.strip() for origin in raw.split(",") if origin.strip()]

    @property
    def allow_all_origins(self) -> bool:
        origins = self.cors_origins_list
        return not origins or "*" in origins

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "populate_by_name": True,
    }


settings = Settings()

from __future__ import annotations

from functools import lru_cache
from pydantic_settings import BaseSettings
from pydantic import Field, field_validator
from typing import List


class Settings(BaseSettings):
    # Core
    app_name: str = Field(default="mealplan-server")
    environment: str = Field(default="dev")  # dev|staging|prod
    log_json: bool = Field(default=True)
    log_level: str = Field(default="INFO")

    # Auth (Clerk)
    clerk_issuer: str | None = Field(default=None)
    clerk_jwks_url: str | None = Field(default=None)
    clerk_audience: str | None = Field(default=None)
    auth_disable_verification: bool = Field(default=False)

    # Data
    database_url: str | None = Field(default=None)
    redis_url: str | None = Field(default=None)
    meal_library_path: str | None = Field(default="data/meal_library.json")

    # API
    cors_allowed_origins: List[str] = Field(default_factory=lambda: ["*"])
    admin_emails: List[str] = Field(default_factory=list)
    request_max_body_mb: int = Field(default=25)

    # OpenAI
    openai_api_key: str | None = Field(default=None)
    openai_allowed_models: List[str] = Field(
        default_factory=lambda: ["gpt-4o-mini", "gpt-4o", "o4-mini", "gpt-5", "gpt-5-mini"]
    )
    openai_meal_model: str = Field(default="gpt-5-mini")
    openai_meal_top_p: float | None = Field(default=None)
    openai_meal_reasoning_effort: str = Field(default="low")
    openai_meal_max_output_tokens: int = Field(default=2500)
    openai_photo_model: str = Field(default="gpt-4o-mini")
    openai_photo_max_output_tokens: int = Field(default=400)
    openai_request_timeout_seconds: int = Field(default=90, ge=30, le=300)

    # Constrained generation
    generation_max_attempts: int = Field(default=4, ge=1, le=8)
    generation_rate_limit: str = Field(default="10/minute")
    generation_calorie_tolerance: float = Field(default=0.15)
    generation_macro_tolerance: float = Field(default=0.20)

    # Plans
    trial_days: int = Field(default=7, ge=0)

    # Reminders / push
    push_enabled: bool = Field(default=False)
    expo_push_url: str = Field(default="https://exp.host/--/api/v2/push/send")
    expo_access_token: str | None = Field(default=None)
    reminder_dispatch_enabled: bool = Field(default=False)
    reminder_dispatch_interval_seconds: int = Field(default=60, ge=10)
    reminder_window_minutes: int = Field(default=5, ge=1, le=60)

    # Observability
    sentry_dsn: str | None = Field(default=None)
    sentry_traces_sample_rate: float = Field(default=0.0)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False

    @field_validator("cors_allowed_origins", "admin_emails", "openai_allowed_models", mode="before")
    @classmethod
    def _csv_to_list(cls, v):
        if isinstance(v, str):
            return [s.strip() for s in v.split(",") if s.strip()]
        return v


@lru_cache
def get_settings() -> Settings:
    return Settings()

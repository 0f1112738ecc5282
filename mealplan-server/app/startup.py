from __future__ import annotations

import logging
from typing import List, Sequence, Tuple

from .config import Settings

logger = logging.getLogger(__name__)

CORE_REQUIREMENTS: Sequence[Tuple[str, str]] = (
    ("database_url", "DATABASE_URL"),
    ("redis_url", "REDIS_URL"),
    ("openai_api_key", "OPENAI_API_KEY"),
)
AUTH_REQUIREMENTS: Sequence[Tuple[str, str]] = (
    ("clerk_issuer", "CLERK_ISSUER"),
    ("clerk_audience", "CLERK_AUDIENCE"),
)


def missing_settings(settings: Settings, requirements: Sequence[Tuple[str, str]]) -> List[str]:
    return [env_name for attr, env_name in requirements if getattr(settings, attr, None) in (None, "", [], {})]


def model_problems(settings: Settings) -> List[str]:
    """Configured models that OPENAI_ALLOWED_MODELS would reject at call time."""
    allowed = settings.openai_allowed_models
    if not allowed:
        return []
    return [
        f"{env_name}={model}"
        for env_name, model in (
            ("OPENAI_MEAL_MODEL", settings.openai_meal_model),
            ("OPENAI_PHOTO_MODEL", settings.openai_photo_model),
        )
        if model not in allowed
    ]


def validate_settings(settings: Settings) -> None:
    """Warn in dev; refuse to start elsewhere when required configuration is missing."""
    environment = (settings.environment or "dev").lower()
    bad_models = model_problems(settings)
    if bad_models:
        logger.warning("Models not in OPENAI_ALLOWED_MODELS: %s", ", ".join(bad_models))

    if environment == "dev":
        missing = missing_settings(settings, CORE_REQUIREMENTS)
        if missing:
            logger.warning("Running in dev without %s; dependent features are disabled", ", ".join(missing))
        return

    requirements = list(CORE_REQUIREMENTS)
    if not settings.auth_disable_verification:
        requirements.extend(AUTH_REQUIREMENTS)
    if settings.push_enabled and settings.reminder_dispatch_enabled:
        requirements.append(("expo_push_url", "EXPO_PUSH_URL"))
    missing = missing_settings(settings, requirements)
    if missing:
        raise RuntimeError(
            f"Missing required configuration for environment '{environment}': {', '.join(sorted(missing))}"
        )
    if settings.auth_disable_verification:
        logger.warning("JWT signature verification is disabled in %s", environment)

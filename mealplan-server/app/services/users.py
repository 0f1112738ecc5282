from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import UserAccount
from .diet_rules import DietType, PerformancePhase

logger = logging.getLogger(__name__)

MAX_PUSH_TOKENS = 5
EXPO_TOKEN_PATTERN = re.compile(r"^Expo(?:nent)?PushToken\[[^\]]+\]$")
NOTIFICATION_PREFERENCE_KEYS = {"mealReminders", "weeklySummary"}
DIET_SETTING_KEYS = {"performancePhase", "carbCeiling", "fiberMin"}


async def get_or_create_account(
    session: AsyncSession,
    *,
    user_id: str,
    email: Optional[str] = None,
) -> UserAccount:
    account = await session.get(UserAccount, user_id)
    if account is not None:
        if email and account.email != email:
            account.email = email
            await session.commit()
        return account
    account = UserAccount(id=user_id, email=email, plan="free", entitlements=[])
    session.add(account)
    try:
        await session.commit()
    except IntegrityError:
        # Created concurrently by another request.
        await session.rollback()
        account = await session.get(UserAccount, user_id)
        if account is None:
            raise
        return account
    await session.refresh(account)
    logger.info("Created account for %s", user_id)
    return account


def clean_terms(values: Optional[Iterable[Any]]) -> List[str]:
    """Trim and lower-case, dropping blanks and duplicates while keeping first-seen order."""
    seen: Dict[str, None] = {}
    for value in values or []:
        term = str(value or "").strip().lower()
        if term:
            seen.setdefault(term, None)
    return list(seen)


def safety_profile_payload(account: UserAccount) -> Dict[str, Any]:
    return {
        "allergies": list(account.allergies or []),
        "dietaryRestrictions": list(account.dietary_restrictions or []),
        "avoidIngredients": list(account.avoid_ingredients or []),
        "healthConditions": list(account.health_conditions or []),
        "dietType": account.diet_type or DietType.NONE.value,
        "dietSettings": dict(account.diet_settings or {}),
        "latestGlucose": account.latest_glucose,
    }


def _validated_diet_settings(settings: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(settings) - DIET_SETTING_KEYS
    if unknown:
        raise ValueError(f"Unknown diet settings: {', '.join(sorted(unknown))}")
    if "performancePhase" in settings and settings["performancePhase"] is not None:
        try:
            PerformancePhase(settings["performancePhase"])
        except ValueError:
            raise ValueError(f"Unknown performance phase '{settings['performancePhase']}'")
    for key in ("carbCeiling", "fiberMin"):
        value = settings.get(key)
        if value is not None and float(value) <= 0:
            raise ValueError(f"{key} must be positive")
    return {key: value for key, value in settings.items() if value is not None}


async def update_safety_profile(
    session: AsyncSession,
    account: UserAccount,
    *,
    allergies: Optional[List[str]] = None,
    dietary_restrictions: Optional[List[str]] = None,
    avoid_ingredients: Optional[List[str]] = None,
    health_conditions: Optional[List[str]] = None,
    diet_type: Optional[str] = None,
    diet_settings: Optional[Dict[str, Any]] = None,
) -> UserAccount:
    if allergies is not None:
        account.allergies = clean_terms(allergies)
    if dietary_restrictions is not None:
        account.dietary_restrictions = clean_terms(dietary_restrictions)
    if avoid_ingredients is not None:
        account.avoid_ingredients = clean_terms(avoid_ingredients)
    if health_conditions is not None:
        account.health_conditions = clean_terms(health_conditions)
    if diet_type is not None:
        try:
            account.diet_type = DietType(diet_type.strip().lower()).value
        except ValueError:
            raise ValueError(f"Unknown diet type '{diet_type}'")
    if diet_settings is not None:
        account.diet_settings = _validated_diet_settings(diet_settings)
    await session.commit()
    return account


async def register_push_token(session: AsyncSession, account: UserAccount, token: str) -> List[str]:
    token = (token or "").strip()
    if not EXPO_TOKEN_PATTERN.match(token):
        raise ValueError("Invalid Expo push token")
    tokens = [token] + [existing for existing in account.push_tokens or [] if existing != token]
    account.push_tokens = tokens[:MAX_PUSH_TOKENS]
    await session.commit()
    return list(account.push_tokens)


async def remove_push_token(session: AsyncSession, account: UserAccount, token: str) -> List[str]:
    tokens = list(account.push_tokens or [])
    if token not in tokens:
        raise LookupError("Push token not registered")
    account.push_tokens = [existing for existing in tokens if existing != token]
    await session.commit()
    return list(account.push_tokens)


async def update_notification_preferences(
    session: AsyncSession,
    account: UserAccount,
    preferences: Dict[str, bool],
) -> Dict[str, bool]:
    unknown = set(preferences) - NOTIFICATION_PREFERENCE_KEYS
    if unknown:
        raise ValueError(f"Unknown notification preferences: {', '.join(sorted(unknown))}")
    merged = dict(account.notification_preferences or {})
    merged.update({key: bool(value) for key, value in preferences.items()})
    account.notification_preferences = merged
    await session.commit()
    return merged


def reminders_allowed(account: UserAccount) -> bool:
    return bool((account.notification_preferences or {}).get("mealReminders", True))


def set_latest_glucose(account: UserAccount, *, value_mgdl: float, context: str, recorded_at: datetime) -> None:
    """Keep only the newest reading; the caller commits."""
    current = account.latest_glucose or {}
    current_at = current.get("recordedAt")
    if current_at and datetime.fromisoformat(current_at) > recorded_at:
        return
    account.latest_glucose = {
        "valueMgdl": value_mgdl,
        "context": (context or "OTHER").upper(),
        "recordedAt": recorded_at.isoformat(),
    }

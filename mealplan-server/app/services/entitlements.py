from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from fastapi import Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth import get_current_principal
from ..config import get_settings
from ..db import as_utc, get_session
from ..models import SubscriptionStatus, UserAccount
from .users import get_or_create_account

logger = logging.getLogger(__name__)


class PlanTier(str, Enum):
    FREE = "free"
    BASIC = "basic"
    PREMIUM = "premium"
    ULTIMATE = "ultimate"


TIER_ORDER: List[PlanTier] = [PlanTier.FREE, PlanTier.BASIC, PlanTier.PREMIUM, PlanTier.ULTIMATE]

BASIC_ENTITLEMENTS = [
    "smart_menu_builder",
    "weekly_meal_board",
    "shopping_list",
    "biometrics",
    "macro_calculator",
]
PREMIUM_ENTITLEMENTS = [
    "craving_creator",
    "fridge_rescue",
    "restaurant_guide",
    "alcohol_hub",
    "potluck_planner",
    "holiday_feast",
    "learn_cook",
    "diabetic_hub",
    "glp1_hub",
    "anti_inflammatory_hub",
]
ULTIMATE_ENTITLEMENTS = [
    "hormones_women",
    "hormones_men",
    "lab_metrics",
    "care_team",
    "performance_hub",
    "procare",
]
PROCARE_ENTITLEMENTS = ["care_team", "lab_metrics", "procare"]

TIER_ENTITLEMENTS: Dict[PlanTier, List[str]] = {
    PlanTier.FREE: [],
    PlanTier.BASIC: BASIC_ENTITLEMENTS,
    PlanTier.PREMIUM: BASIC_ENTITLEMENTS + PREMIUM_ENTITLEMENTS,
    PlanTier.ULTIMATE: BASIC_ENTITLEMENTS + PREMIUM_ENTITLEMENTS + ULTIMATE_ENTITLEMENTS,
}

LOOKUP_KEY_TIERS: Dict[str, PlanTier] = {
    "mpm_basic_monthly": PlanTier.BASIC,
    "mpm_premium_monthly": PlanTier.PREMIUM,
    "mpm_premium_yearly": PlanTier.PREMIUM,
    "mpm_ultimate_monthly": PlanTier.ULTIMATE,
    "mpm_ultimate_yearly": PlanTier.ULTIMATE,
    "premium_monthly": PlanTier.PREMIUM,
    "basic_monthly": PlanTier.BASIC,
}

TRIAL_UNLOCKS_TIER = PlanTier.ULTIMATE
PAID_STATUSES = {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING}
SUBSCRIPTION_STATUSES = PAID_STATUSES | {SubscriptionStatus.PAST_DUE, SubscriptionStatus.CANCELED}


def coerce_tier(value: Any) -> PlanTier:
    try:
        return PlanTier(str(value or PlanTier.FREE.value).lower())
    except ValueError:
        raise ValueError(f"Unknown plan tier '{value}'")


def tier_rank(tier: PlanTier) -> int:
    return TIER_ORDER.index(tier)


def get_entitlements_for_tier(tier: Any) -> List[str]:
    return sorted(TIER_ENTITLEMENTS[coerce_tier(tier)])


def get_min_tier_for_entitlement(name: str) -> PlanTier:
    for tier in TIER_ORDER:
        if name in TIER_ENTITLEMENTS[tier]:
            return tier
    raise ValueError(f"Unknown entitlement '{name}'")


def tier_for_lookup_key(lookup_key: str) -> PlanTier:
    tier = LOOKUP_KEY_TIERS.get((lookup_key or "").strip().lower())
    if tier is None:
        raise ValueError(f"Unknown price lookup key '{lookup_key}'")
    return tier


def trial_active(account: UserAccount, now: Optional[datetime] = None) -> bool:
    now = now or datetime.now(timezone.utc)
    ends_at = as_utc(account.trial_ends_at)
    return ends_at is not None and ends_at > now


def effective_tier(account: UserAccount, now: Optional[datetime] = None) -> PlanTier:
    if trial_active(account, now):
        return TRIAL_UNLOCKS_TIER
    if account.subscription_status in PAID_STATUSES:
        try:
            return coerce_tier(account.plan)
        except ValueError:
            logger.warning("Account %s has unknown plan %r; treating as free", account.id, account.plan)
    return PlanTier.FREE


def account_entitlements(account: UserAccount, now: Optional[datetime] = None) -> List[str]:
    granted = set(TIER_ENTITLEMENTS[effective_tier(account, now)])
    granted.update(account.entitlements or [])
    return sorted(granted)


def has_entitlement(account: UserAccount, name: str, now: Optional[datetime] = None) -> bool:
    if name in (account.entitlements or []):
        return True
    return name in TIER_ENTITLEMENTS[effective_tier(account, now)]


def trial_summary(account: UserAccount, now: Optional[datetime] = None) -> Dict[str, Any]:
    started = as_utc(account.trial_started_at)
    ends = as_utc(account.trial_ends_at)
    return {
        "active": trial_active(account, now),
        "used": started is not None,
        "startedAt": started.isoformat() if started else None,
        "endsAt": ends.isoformat() if ends else None,
    }


async def start_trial(session: AsyncSession, account: UserAccount, now: Optional[datetime] = None) -> UserAccount:
    """Start the one trial an account gets; a second call raises ValueError."""
    if account.trial_started_at is not None:
        raise ValueError("Trial already used")
    now = now or datetime.now(timezone.utc)
    account.trial_started_at = now
    account.trial_ends_at = now + timedelta(days=get_settings().trial_days)
    await session.commit()
    logger.info("Started %d-day trial for %s", get_settings().trial_days, account.id)
    return account


async def apply_plan_lookup_key(
    session: AsyncSession,
    *,
    user_id: str,
    lookup_key: str,
    status: str = SubscriptionStatus.ACTIVE,
) -> UserAccount:
    if status not in SUBSCRIPTION_STATUSES:
        raise ValueError(f"Unknown subscription status '{status}'")
    account = await get_or_create_account(session, user_id=user_id)
    if status == SubscriptionStatus.CANCELED:
        account.plan = PlanTier.FREE.value
        account.plan_lookup_key = None
        account.subscription_status = SubscriptionStatus.CANCELED
        account.entitlements = []
    else:
        tier = tier_for_lookup_key(lookup_key)
        account.plan = tier.value
        account.plan_lookup_key = lookup_key
        account.subscription_status = status
        account.entitlements = get_entitlements_for_tier(tier) if status in PAID_STATUSES else []
    await session.commit()
    logger.info("Applied plan %s (%s) to %s", account.plan, status, user_id)
    return account


def plan_table() -> List[Dict[str, Any]]:
    return [
        {
            "tier": tier.value,
            "entitlements": get_entitlements_for_tier(tier),
            "lookupKeys": sorted(key for key, value in LOOKUP_KEY_TIERS.items() if value is tier),
        }
        for tier in TIER_ORDER
    ]


def upgrade_required(name: str, current: PlanTier) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_402_PAYMENT_REQUIRED,
        detail={
            "error": "upgrade_required",
            "entitlement": name,
            "requiredTier": get_min_tier_for_entitlement(name).value,
            "currentTier": current.value,
        },
    )


def require_entitlement(name: str) -> Callable[..., Any]:
    """FastAPI dependency factory: resolves the caller and 402s when `name` is not granted."""
    get_min_tier_for_entitlement(name)

    async def _dependency(principal=Depends(get_current_principal)):
        async with get_session() as session:
            account = await get_or_create_account(
                session, user_id=principal["sub"], email=principal.get("email")
            )
        if not has_entitlement(account, name):
            raise upgrade_required(name, effective_tier(account))
        return principal

    return _dependency

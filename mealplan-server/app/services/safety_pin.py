"""Safety PIN: a 4-digit secret that lets a user relax allergy protection for one meal.

Verifying the PIN issues a short-lived one-time override token. Generation
consumes the token, and every consumed token leaves a row in
``safety_override_audit_logs``. Repeated wrong PINs lock the account's PIN
checks for a while.
"""

from __future__ import annotations

import hashlib
import logging
import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from passlib.context import CryptContext
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import as_utc
from ..models import SafetyOverrideAudit, SafetyOverrideToken, UserAccount
from ..observability import get_safety_audit_logger

logger = logging.getLogger(__name__)

PIN_PATTERN = re.compile(r"^\d{4}$")
MAX_PIN_ATTEMPTS = 5
LOCKOUT = timedelta(minutes=15)
OVERRIDE_TOKEN_TTL = timedelta(minutes=5)
ALL_ALLERGENS = "*"
SAFETY_MODE = "CUSTOM_AUTHENTICATED"

pin_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=12)


class PinLockedError(Exception):
    def __init__(self, retry_after: int):
        super().__init__(f"Too many failed attempts. Please wait {retry_after} seconds before trying again.")
        self.retry_after = retry_after


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _validate_pin(pin: str, label: str = "PIN") -> str:
    pin = (pin or "").strip()
    if not PIN_PATTERN.match(pin):
        raise ValueError(f"{label} must be exactly 4 digits")
    return pin


def _hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def has_pin(account: UserAccount) -> bool:
    return bool(account.safety_pin_hash)


def pin_status(account: UserAccount, *, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or _now()
    locked_until = as_utc(account.pin_locked_until)
    locked = locked_until is not None and locked_until > now
    set_at = as_utc(account.safety_pin_set_at)
    return {
        "hasPin": has_pin(account),
        "setAt": set_at.isoformat() if set_at else None,
        "locked": locked,
        "lockedUntil": locked_until.isoformat() if locked else None,
    }


async def _commit(session: AsyncSession) -> None:
    try:
        await session.commit()
    except Exception:
        await session.rollback()
        raise


async def _check_pin(session: AsyncSession, account: UserAccount, pin: str, *, now: datetime) -> None:
    """Verify ``pin`` against the stored hash, counting failures toward the lockout."""
    if not account.safety_pin_hash:
        raise LookupError("No Safety PIN set. Please set one in your profile.")

    locked_until = as_utc(account.pin_locked_until)
    if locked_until is not None:
        if locked_until > now:
            raise PinLockedError(int((locked_until - now).total_seconds()) + 1)
        account.pin_locked_until = None
        account.pin_failed_attempts = 0

    if not pin_context.verify(pin or "", account.safety_pin_hash):
        account.pin_failed_attempts = (account.pin_failed_attempts or 0) + 1
        if account.pin_failed_attempts >= MAX_PIN_ATTEMPTS:
            account.pin_locked_until = now + LOCKOUT
            logger.warning("Safety PIN locked for user %s after %d failures", account.id, account.pin_failed_attempts)
        await _commit(session)
        raise PermissionError("Incorrect PIN")

    account.pin_failed_attempts = 0
    account.pin_locked_until = None


async def set_pin(session: AsyncSession, account: UserAccount, pin: str) -> UserAccount:
    if has_pin(account):
        raise ValueError("A Safety PIN is already set; change it instead")
    account.safety_pin_hash = pin_context.hash(_validate_pin(pin))
    account.safety_pin_set_at = _now()
    account.pin_failed_attempts = 0
    account.pin_locked_until = None
    await _commit(session)
    logger.info("Safety PIN set for user %s", account.id)
    return account


async def change_pin(
    session: AsyncSession,
    account: UserAccount,
    *,
    current_pin: str,
    new_pin: str,
    now: Optional[datetime] = None,
) -> UserAccount:
    new_pin = _validate_pin(new_pin, "New PIN")
    await _check_pin(session, account, current_pin, now=now or _now())
    account.safety_pin_hash = pin_context.hash(new_pin)
    account.safety_pin_set_at = now or _now()
    await _commit(session)
    logger.info("Safety PIN changed for user %s", account.id)
    return account


async def remove_pin(
    session: AsyncSession,
    account: UserAccount,
    *,
    current_pin: str,
    now: Optional[datetime] = None,
) -> UserAccount:
    await _check_pin(session, account, current_pin, now=now or _now())
    account.safety_pin_hash = None
    account.safety_pin_set_at = None
    await _commit(session)
    logger.info("Safety PIN removed for user %s", account.id)
    return account


async def issue_override_token(
    session: AsyncSession,
    account: UserAccount,
    *,
    pin: str,
    allergen: Optional[str] = None,
    meal_request: str = "",
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Verify the PIN and return a one-time token bound to this user and allergen.

    Without an allergen the token relaxes every listed allergy for one meal.
    Only the SHA-256 of the token is stored.
    """
    now = now or _now()
    await _check_pin(session, account, pin, now=now)
    token = secrets.token_hex(32)
    allergen_key = (allergen or "").strip().lower() or ALL_ALLERGENS
    record = SafetyOverrideToken(
        user_id=account.id,
        token_hash=_hash_token(token),
        allergen=allergen_key,
        meal_request=(meal_request or "")[:1000] or None,
        expires_at=now + OVERRIDE_TOKEN_TTL,
    )
    session.add(record)
    await _commit(session)
    get_safety_audit_logger().info("safety_override_issued", user_id=account.id, allergen=allergen_key)
    return {"overrideToken": token, "allergen": allergen_key, "expiresAt": record.expires_at.isoformat()}


async def consume_override_token(
    session: AsyncSession,
    *,
    user_id: str,
    token: str,
    now: Optional[datetime] = None,
) -> SafetyOverrideToken:
    """Mark a token used and return it; unknown, foreign, used or expired tokens raise PermissionError."""
    now = now or _now()
    stmt = select(SafetyOverrideToken).where(SafetyOverrideToken.token_hash == _hash_token(token or ""))
    record = (await session.execute(stmt)).scalar_one_or_none()
    if record is None or record.user_id != user_id or record.consumed_at is not None:
        raise PermissionError("Invalid or expired override token")
    if as_utc(record.expires_at) < now:
        record.consumed_at = now
        await _commit(session)
        raise PermissionError("Invalid or expired override token")
    record.consumed_at = now
    await _commit(session)
    return record


async def log_safety_override(
    session: AsyncSession,
    *,
    user_id: str,
    meal_request: str,
    allergen: str,
    builder_id: Optional[str] = None,
) -> SafetyOverrideAudit:
    entry = SafetyOverrideAudit(
        user_id=user_id,
        meal_request=meal_request or None,
        allergen=allergen,
        safety_mode=SAFETY_MODE,
        builder_id=builder_id,
    )
    session.add(entry)
    await _commit(session)
    get_safety_audit_logger().warning(
        "safety_override_used",
        user_id=user_id,
        allergen=allergen,
        builder_id=builder_id,
        safety_mode=SAFETY_MODE,
    )
    return entry

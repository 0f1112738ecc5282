"""Meal reminders: CRUD, due-time calculation in the user's timezone and Expo push dispatch."""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..db import as_utc, get_session
from ..models import MealReminder, UserAccount
from ..redis_util import claim_once
from .users import reminders_allowed

logger = logging.getLogger(__name__)

MEAL_TYPES = ("breakfast", "lunch", "dinner", "snack")
TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")
UPDATABLE_FIELDS = {
    "meal_type",
    "recipe_name",
    "scheduled_time",
    "day_of_week",
    "timezone",
    "reminder_enabled",
    "is_active",
    "meal_plan_ref",
}
REMINDER_TITLES = {
    "breakfast": "Breakfast time",
    "lunch": "Lunch time",
    "dinner": "Dinner time",
    "snack": "Snack time",
}
EXPO_BATCH_SIZE = 100


def validate_meal_type(meal_type: str) -> str:
    value = (meal_type or "").strip().lower()
    if value not in MEAL_TYPES:
        raise ValueError(f"meal_type must be one of {', '.join(MEAL_TYPES)}")
    return value


def validate_time(value: str) -> str:
    if not TIME_PATTERN.match(value or ""):
        raise ValueError(f"Invalid time '{value}'; expected HH:MM")
    return value


def validate_timezone(name: str) -> str:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"Unknown timezone '{name}'")
    return name


def validate_day_of_week(day: Optional[int]) -> Optional[int]:
    if day is not None and not 0 <= day <= 6:
        raise ValueError("day_of_week must be between 0 (Sunday) and 6 (Saturday)")
    return day


def _python_weekday(day_of_week: int) -> int:
    """Convert 0=Sunday numbering to datetime.weekday() numbering (0=Monday)."""
    return (day_of_week - 1) % 7


def _scheduled_local(reminder: MealReminder, local_day: datetime) -> datetime:
    hour, minute = (int(part) for part in reminder.scheduled_time.split(":"))
    return local_day.replace(hour=hour, minute=minute, second=0, microsecond=0)


def next_fire_time(reminder: MealReminder, now: Optional[datetime] = None) -> datetime:
    """The next scheduled occurrence strictly after `now`, in UTC."""
    now = as_utc(now or datetime.now(timezone.utc))
    local_now = now.astimezone(ZoneInfo(reminder.timezone))
    for offset in range(8):
        candidate = _scheduled_local(reminder, local_now + timedelta(days=offset))
        if candidate <= local_now:
            continue
        if reminder.day_of_week is not None and candidate.weekday() != _python_weekday(reminder.day_of_week):
            continue
        return candidate.astimezone(timezone.utc)
    raise RuntimeError("No fire time within a week")  # pragma: no cover - unreachable for valid reminders


def due_occurrence(
    reminder: MealReminder,
    now: Optional[datetime] = None,
    window_minutes: Optional[int] = None,
) -> Optional[datetime]:
    """Return the local occurrence that is due at `now`, or None.

    An occurrence is due from its scheduled minute until `window_minutes`
    later, on the reminder's weekday when one is set, and only if it has not
    been sent already.
    """
    if not (reminder.is_active and reminder.reminder_enabled):
        return None
    now = as_utc(now or datetime.now(timezone.utc))
    window = timedelta(minutes=window_minutes if window_minutes is not None else get_settings().reminder_window_minutes)
    local_now = now.astimezone(ZoneInfo(reminder.timezone))
    last_sent = as_utc(reminder.last_sent)
    for offset in (0, 1):
        scheduled = _scheduled_local(reminder, local_now - timedelta(days=offset))
        if not timedelta(0) <= local_now - scheduled < window:
            continue
        if reminder.day_of_week is not None and scheduled.weekday() != _python_weekday(reminder.day_of_week):
            continue
        if last_sent is not None and last_sent >= scheduled.astimezone(timezone.utc):
            continue
        return scheduled
    return None


def is_due(reminder: MealReminder, now: Optional[datetime] = None, window_minutes: Optional[int] = None) -> bool:
    return due_occurrence(reminder, now, window_minutes) is not None


def build_message(reminder: MealReminder) -> Dict[str, Any]:
    return {
        "title": REMINDER_TITLES.get(reminder.meal_type, "Meal time"),
        "body": f"Time for {reminder.recipe_name}",
        "data": {
            "type": "meal_reminder",
            "reminderId": str(reminder.id),
            "mealType": reminder.meal_type,
            "mealPlanRef": reminder.meal_plan_ref,
        },
    }


def serialize_reminder(reminder: MealReminder, now: Optional[datetime] = None) -> Dict[str, Any]:
    last_sent = as_utc(reminder.last_sent)
    active = reminder.is_active and reminder.reminder_enabled
    return {
        "id": str(reminder.id),
        "mealType": reminder.meal_type,
        "recipeName": reminder.recipe_name,
        "scheduledTime": reminder.scheduled_time,
        "dayOfWeek": reminder.day_of_week,
        "timezone": reminder.timezone,
        "reminderEnabled": reminder.reminder_enabled,
        "isActive": reminder.is_active,
        "lastSent": last_sent.isoformat() if last_sent else None,
        "mealPlanRef": reminder.meal_plan_ref,
        "nextFireAt": next_fire_time(reminder, now).isoformat() if active else None,
    }


async def create_reminder(
    session: AsyncSession,
    *,
    user_id: str,
    meal_type: str,
    recipe_name: str,
    scheduled_time: str,
    day_of_week: Optional[int] = None,
    timezone_name: str = "UTC",
    reminder_enabled: bool = True,
    meal_plan_ref: Optional[str] = None,
) -> MealReminder:
    recipe_name = (recipe_name or "").strip()
    if not recipe_name:
        raise ValueError("recipe_name is required")
    reminder = MealReminder(
        user_id=user_id,
        meal_type=validate_meal_type(meal_type),
        recipe_name=recipe_name,
        scheduled_time=validate_time(scheduled_time),
        day_of_week=validate_day_of_week(day_of_week),
        timezone=validate_timezone(timezone_name or "UTC"),
        reminder_enabled=reminder_enabled,
        is_active=True,
        meal_plan_ref=meal_plan_ref,
    )
    session.add(reminder)
    await session.commit()
    await session.refresh(reminder)
    return reminder


async def _owned_reminder(session: AsyncSession, user_id: str, reminder_id: uuid.UUID) -> MealReminder:
    reminder = await session.get(MealReminder, reminder_id)
    if reminder is None:
        raise LookupError(f"Reminder {reminder_id} not found")
    if reminder.user_id != user_id:
        raise PermissionError("Reminder belongs to another user")
    return reminder


async def update_reminder(
    session: AsyncSession,
    *,
    user_id: str,
    reminder_id: uuid.UUID,
    changes: Mapping[str, Any],
) -> MealReminder:
    unknown = set(changes) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update: {', '.join(sorted(unknown))}")
    reminder = await _owned_reminder(session, user_id, reminder_id)
    validators = {
        "meal_type": validate_meal_type,
        "scheduled_time": validate_time,
        "day_of_week": validate_day_of_week,
        "timezone": validate_timezone,
    }
    for key, value in changes.items():
        if key in validators:
            value = validators[key](value)
        if key == "recipe_name":
            value = (value or "").strip()
            if not value:
                raise ValueError("recipe_name is required")
        setattr(reminder, key, value)
    if {"scheduled_time", "day_of_week", "timezone"} & set(changes):
        reminder.last_sent = None
    await session.commit()
    return reminder


async def delete_reminder(session: AsyncSession, *, user_id: str, reminder_id: uuid.UUID) -> None:
    reminder = await _owned_reminder(session, user_id, reminder_id)
    await session.delete(reminder)
    await session.commit()


async def list_reminders(session: AsyncSession, *, user_id: str) -> List[MealReminder]:
    stmt = (
        select(MealReminder)
        .where(MealReminder.user_id == user_id)
        .order_by(MealReminder.scheduled_time, MealReminder.meal_type)
    )
    return list((await session.execute(stmt)).scalars().all())


async def send_expo_push(
    client: httpx.AsyncClient,
    tokens: Sequence[str],
    message: Mapping[str, Any],
) -> int:
    """Send one message to every token; returns the number of accepted tickets."""
    settings = get_settings()
    headers = {"Accept": "application/json", "Content-Type": "application/json"}
    if settings.expo_access_token:
        headers["Authorization"] = f"Bearer {settings.expo_access_token}"
    accepted = 0
    for start in range(0, len(tokens), EXPO_BATCH_SIZE):
        batch = [
            {"to": token, "sound": "default", **message}
            for token in tokens[start : start + EXPO_BATCH_SIZE]
        ]
        try:
            resp = await client.post(settings.expo_push_url, json=batch, headers=headers)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("Expo push request failed: %s", exc)
            continue
        for ticket in resp.json().get("data", []):
            if ticket.get("status") == "ok":
                accepted += 1
            else:
                logger.warning("Expo rejected push: %s", ticket.get("message") or ticket.get("details"))
    return accepted


async def dispatch_due_reminders(
    session: AsyncSession,
    *,
    now: Optional[datetime] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> Dict[str, int]:
    settings = get_settings()
    now = as_utc(now or datetime.now(timezone.utc))
    stmt = select(MealReminder).where(MealReminder.is_active.is_(True), MealReminder.reminder_enabled.is_(True))
    reminders = list((await session.execute(stmt)).scalars().all())
    stats = {"checked": len(reminders), "due": 0, "sent": 0, "skipped": 0}

    owns_client = client is None and settings.push_enabled
    if owns_client:
        client = httpx.AsyncClient(timeout=10)
    try:
        for reminder in reminders:
            occurrence = due_occurrence(reminder, now, settings.reminder_window_minutes)
            if occurrence is None:
                continue
            stats["due"] += 1
            claim_key = f"reminder:{reminder.id}:{occurrence.isoformat()}"
            claimed = await asyncio.to_thread(claim_once, claim_key, settings.reminder_window_minutes * 120)
            if not claimed:
                stats["skipped"] += 1
                continue
            account = await session.get(UserAccount, reminder.user_id)
            tokens = list(account.push_tokens or []) if account is not None else []
            if settings.push_enabled and client is not None and tokens and reminders_allowed(account):
                stats["sent"] += await send_expo_push(client, tokens, build_message(reminder))
            else:
                stats["skipped"] += 1
            reminder.last_sent = now
        await session.commit()
    finally:
        if owns_client and client is not None:
            await client.aclose()
    if stats["due"]:
        logger.info("Reminder dispatch: %s", stats)
    return stats


async def reminder_dispatch_loop(stop: asyncio.Event) -> None:
    interval = get_settings().reminder_dispatch_interval_seconds
    logger.info("Reminder dispatch loop started (every %ss)", interval)
    while not stop.is_set():
        try:
            async with get_session() as session:
                await dispatch_due_reminders(session)
        except Exception:
            logger.exception("Reminder dispatch sweep failed")
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
    logger.info("Reminder dispatch loop stopped")

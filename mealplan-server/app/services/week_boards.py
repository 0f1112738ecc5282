"""Seven-day week boards stored as one JSON document per user and week."""

from __future__ import annotations

import logging
from copy import deepcopy
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..models import WeekBoard
from .users import get_or_create_account

logger = logging.getLogger(__name__)

SLOTS = ("breakfast", "lunch", "dinner", "snacks")
REPLACE_SLOTS = ("breakfast", "lunch", "dinner")
SLOT_ALIASES = {"snack": "snacks"}
EXCLUSIONS_KEY = "shoppingListExclusions"

_OPTIONAL_STRINGS = (
    "cuisine",
    "technique",
    "name",
    "brand",
    "servingDesc",
    "description",
    "imageUrl",
    "cookingTime",
    "difficulty",
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def is_valid_iso_date(value: Any) -> bool:
    if not isinstance(value, str) or len(value) != 10:
        return False
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


def week_start_for(day: Optional[date] = None) -> str:
    day = day or _utc_now().date()
    return (day - timedelta(days=day.weekday())).isoformat()


def validate_week_start(week_start: str) -> str:
    if not is_valid_iso_date(week_start):
        raise ValueError(f"Invalid week '{week_start}'; expected YYYY-MM-DD")
    if date.fromisoformat(week_start).weekday() != 0:
        raise ValueError(f"Week '{week_start}' does not start on a Monday")
    return week_start


def week_dates(week_start: str) -> List[str]:
    start = date.fromisoformat(week_start)
    return [(start + timedelta(days=offset)).isoformat() for offset in range(7)]


def normalize_slot(slot: str) -> str:
    key = (slot or "").strip().lower()
    key = SLOT_ALIASES.get(key, key)
    if key not in SLOTS:
        raise ValueError(f"Unknown slot '{slot}'")
    return key


def _number(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _normalize_ingredient(raw: Any) -> Optional[Dict[str, str]]:
    if not raw:
        return None
    if isinstance(raw, str):
        item = raw.strip()
        return {"item": item, "amount": "", "unit": ""} if item else None
    if not isinstance(raw, Mapping):
        return None
    item = str(raw.get("item") or raw.get("name") or "").strip()
    if not item:
        return None
    amount = raw.get("amount", raw.get("quantity"))
    return {
        "item": item,
        "amount": "" if amount is None else str(amount).strip(),
        "unit": str(raw.get("unit") or "").strip(),
    }


def normalize_meal(raw: Any, idx: int = 0) -> Dict[str, Any]:
    source = dict(raw) if isinstance(raw, Mapping) else {}
    nutrition = source.get("nutrition") if isinstance(source.get("nutrition"), Mapping) else {}
    instructions = source.get("instructions")
    if isinstance(instructions, str):
        instructions = [line.strip() for line in instructions.splitlines() if line.strip()]
    elif not isinstance(instructions, list):
        instructions = []

    meal: Dict[str, Any] = {
        "id": str(source.get("id") if source.get("id") is not None else f"m-{idx}"),
        "title": str(source.get("title") or "Untitled"),
        "servings": _number(source.get("servings", 1)) or 1,
        "ingredients": [
            ingredient
            for ingredient in (_normalize_ingredient(entry) for entry in source.get("ingredients") or [])
            if ingredient
        ],
        "instructions": [str(step) for step in instructions],
        "nutrition": {
            key: _number(nutrition.get(key, source.get(key, 0)))
            for key in ("calories", "protein", "carbs", "fat")
        },
    }
    if isinstance(source.get("badges"), list):
        meal["badges"] = [str(badge) for badge in source["badges"]]
    for key in _OPTIONAL_STRINGS:
        if source.get(key):
            meal[key] = str(source[key])
    if isinstance(source.get("orderIndex"), (int, float)) and not isinstance(source.get("orderIndex"), bool):
        meal["orderIndex"] = source["orderIndex"]
    if source.get("entryType") in ("recipe", "quick"):
        meal["entryType"] = source["entryType"]
    if isinstance(source.get("includeInShoppingList"), bool):
        meal["includeInShoppingList"] = source["includeInShoppingList"]
    if isinstance(source.get("medicalBadges"), list):
        meal["medicalBadges"] = source["medicalBadges"]
    if source.get("voided"):
        meal["voided"] = True
    return meal


def _normalize_meal_list(raw: Any) -> List[Dict[str, Any]]:
    if not isinstance(raw, list):
        return []
    return [normalize_meal(entry, idx) for idx, entry in enumerate(raw)]


def _normalize_snacks(raw: Any) -> List[Dict[str, Any]]:
    snacks = _normalize_meal_list(raw)
    for idx, snack in enumerate(snacks):
        snack.setdefault("orderIndex", idx)
    return sorted(snacks, key=lambda snack: snack["orderIndex"])


def _normalize_day(raw: Any) -> Dict[str, List[Dict[str, Any]]]:
    lists = raw if isinstance(raw, Mapping) else {}
    if isinstance(lists.get("lists"), Mapping):
        lists = lists["lists"]
    return {
        "breakfast": _normalize_meal_list(lists.get("breakfast")),
        "lunch": _normalize_meal_list(lists.get("lunch")),
        "dinner": _normalize_meal_list(lists.get("dinner")),
        "snacks": _normalize_snacks(lists.get("snacks")),
    }


def empty_board(week_start: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    return normalize_board({}, week_start, now)


def normalize_board(raw: Optional[Mapping[str, Any]], week_start: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Return a board with all seven days, each holding the four slot lists.

    Boards saved before the per-day layout only have `lists`; those seed Monday.
    """
    now = now or _utc_now()
    base = dict(raw or {})
    legacy = _normalize_day(base.get("lists") or {})
    raw_days = base.get("days") if isinstance(base.get("days"), Mapping) else {}
    dates = week_dates(week_start)

    days: Dict[str, Dict[str, List[Dict[str, Any]]]] = {}
    for day_iso in dates:
        if day_iso in raw_days:
            days[day_iso] = _normalize_day(raw_days[day_iso])
        elif day_iso == dates[0] and not raw_days and any(legacy[slot] for slot in SLOTS):
            days[day_iso] = legacy
        else:
            days[day_iso] = {slot: [] for slot in SLOTS}

    meta = base.get("meta") if isinstance(base.get("meta"), Mapping) else {}
    board: Dict[str, Any] = {
        "id": f"week-{week_start}",
        "weekStart": week_start,
        "version": int(_number(base.get("version", 1)) or 1),
        "lists": deepcopy(days[dates[0]]),
        "days": days,
        "meta": {
            "createdAt": str(meta.get("createdAt") or now.isoformat()),
            "lastUpdatedAt": now.isoformat(),
        },
    }
    exclusions = base.get(EXCLUSIONS_KEY)
    board[EXCLUSIONS_KEY] = [str(key) for key in exclusions] if isinstance(exclusions, list) else []
    return board


def append_snack(day_lists: Dict[str, List[Dict[str, Any]]], snack: Mapping[str, Any]) -> Dict[str, Any]:
    current = day_lists.get("snacks") or []
    next_index = max((entry.get("orderIndex", 0) for entry in current), default=-1) + 1
    new_snack = normalize_meal(
        {
            **snack,
            "id": snack.get("id") or f"snk-{int(_utc_now().timestamp() * 1000)}",
            "title": snack.get("title") or "Snack",
            "name": snack.get("name") or f"Snack {next_index + 1}",
            "orderIndex": next_index,
        },
        len(current),
    )
    day_lists["snacks"] = current + [new_snack]
    return new_snack


def add_meal(
    board: Mapping[str, Any],
    day_iso: str,
    slot: str,
    meal: Mapping[str, Any],
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Snacks append; breakfast, lunch and dinner replace the slot's contents."""
    week_start = board["weekStart"]
    slot = normalize_slot(slot)
    if day_iso not in week_dates(week_start):
        raise ValueError(f"{day_iso} is not in the week starting {week_start}")
    updated = deepcopy(dict(board))
    day_lists = updated["days"][day_iso]
    if slot == "snacks":
        append_snack(day_lists, meal)
    else:
        day_lists[slot] = [normalize_meal(meal, 0)]
    updated["version"] = int(updated.get("version", 1)) + 1
    return normalize_board(updated, week_start, now)


def remove_meal(
    board: Mapping[str, Any],
    day_iso: str,
    slot: str,
    meal_id: str,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    week_start = board["weekStart"]
    slot = normalize_slot(slot)
    updated = deepcopy(dict(board))
    day_lists = updated.get("days", {}).get(day_iso)
    if day_lists is None:
        raise ValueError(f"{day_iso} is not in the week starting {week_start}")
    remaining = [meal for meal in day_lists[slot] if meal.get("id") != meal_id]
    if len(remaining) == len(day_lists[slot]):
        raise LookupError(f"Meal {meal_id} not found in {day_iso} {slot}")
    day_lists[slot] = remaining
    updated["version"] = int(updated.get("version", 1)) + 1
    return normalize_board(updated, week_start, now)


async def get_week_board(session: AsyncSession, *, user_id: str, week_start: str) -> Dict[str, Any]:
    validate_week_start(week_start)
    row = await session.get(WeekBoard, (user_id, week_start))
    if row is None:
        return empty_board(week_start)
    return normalize_board(row.board_json, week_start)


async def save_week_board(
    session: AsyncSession,
    *,
    user_id: str,
    week_start: str,
    board: Mapping[str, Any],
) -> Dict[str, Any]:
    validate_week_start(week_start)
    await get_or_create_account(session, user_id=user_id)
    normalized = normalize_board(board, week_start)
    row = await session.get(WeekBoard, (user_id, week_start))
    if row is None:
        session.add(WeekBoard(user_id=user_id, week_start_iso=week_start, board_json=normalized))
    else:
        row.board_json = normalized
    try:
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    logger.info("Saved week board %s for %s (version %s)", week_start, user_id, normalized["version"])
    return normalized


async def add_meal_to_week(
    session: AsyncSession,
    *,
    user_id: str,
    week_start: str,
    day_iso: str,
    slot: str,
    meal: Mapping[str, Any],
) -> Dict[str, Any]:
    board = await get_week_board(session, user_id=user_id, week_start=week_start)
    return await save_week_board(
        session, user_id=user_id, week_start=week_start, board=add_meal(board, day_iso, slot, meal)
    )


async def remove_meal_from_week(
    session: AsyncSession,
    *,
    user_id: str,
    week_start: str,
    day_iso: str,
    slot: str,
    meal_id: str,
) -> Dict[str, Any]:
    board = await get_week_board(session, user_id=user_id, week_start=week_start)
    return await save_week_board(
        session, user_id=user_id, week_start=week_start, board=remove_meal(board, day_iso, slot, meal_id)
    )


async def set_shopping_list_exclusions(
    session: AsyncSession,
    *,
    user_id: str,
    week_start: str,
    exclusions: List[str],
) -> Dict[str, Any]:
    board = await get_week_board(session, user_id=user_id, week_start=week_start)
    board[EXCLUSIONS_KEY] = list(dict.fromkeys(str(key) for key in exclusions if key))
    return await save_week_board(session, user_id=user_id, week_start=week_start, board=board)

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import as_utc
from ..models import MacroLog, UserAccount
from .classifier import split_carbs

logger = logging.getLogger(__name__)

MIN_SERVINGS = 0.25
ALCOHOL_SOURCE = "alcohol"
MACRO_FIELDS = ("protein", "carbs", "fat", "fiber", "alcohol", "starchy_carbs", "fibrous_carbs")
TARGET_FIELDS = {
    "calories": "daily_calorie_target",
    "protein": "daily_protein_target",
    "carbs": "daily_carbs_target",
    "fat": "daily_fat_target",
}


@dataclass
class MacroEntry:
    at: datetime
    source: str = "quick"
    kcal: Optional[float] = None
    protein: float = 0.0
    carbs: float = 0.0
    fat: float = 0.0
    fiber: float = 0.0
    alcohol: float = 0.0
    starchy_carbs: Optional[float] = None
    fibrous_carbs: Optional[float] = None
    meal_id: Optional[str] = None
    meal_name: Optional[str] = None
    servings: float = 1.0
    idempotency_key: Optional[str] = None
    ingredient_names: List[str] = field(default_factory=list)


def kcal_from_macros(protein: float, carbs: float, fat: float, alcohol: float = 0.0) -> float:
    return 4 * protein + 4 * carbs + 9 * fat + 7 * alcohol


def resolve_kcal(kcal: Optional[float], protein: float, carbs: float, fat: float, alcohol: float = 0.0) -> float:
    """An explicit positive kcal wins; otherwise kcal is derived from the macros."""
    if kcal is not None and kcal > 0:
        return float(kcal)
    return float(round(kcal_from_macros(protein, carbs, fat, alcohol)))


def percent_breakdown(protein: float, carbs: float, fat: float) -> Dict[str, int]:
    protein_kcal = 4 * (protein or 0)
    carbs_kcal = 4 * (carbs or 0)
    fat_kcal = 9 * (fat or 0)
    total = protein_kcal + carbs_kcal + fat_kcal
    if total <= 0:
        return {"kcal": 0, "proteinPct": 0, "carbsPct": 0, "fatPct": 0}
    return {
        "kcal": int(round(total)),
        "proteinPct": int(round(protein_kcal / total * 100)),
        "carbsPct": int(round(carbs_kcal / total * 100)),
        "fatPct": int(round(fat_kcal / total * 100)),
    }


def _nutrition_number(nutrition: Mapping[str, Any], *keys: str) -> float:
    for key in keys:
        value = nutrition.get(key)
        if value is None:
            continue
        try:
            return float(value)
        except (TypeError, ValueError):
            continue
    return 0.0


def build_log_entry_from_meal(
    meal: Mapping[str, Any],
    servings: float = 1.0,
    *,
    source: str = "meal",
    at: Optional[datetime] = None,
) -> MacroEntry:
    """Scale a meal's per-serving nutrition into a log entry keyed `mealId:YYYY-MM-DD`."""
    at = at or datetime.now(timezone.utc)
    servings = max(MIN_SERVINGS, float(servings or 1.0))
    nutrition = meal.get("nutrition") or {}
    protein = _nutrition_number(nutrition, "protein", "protein_g") * servings
    carbs = _nutrition_number(nutrition, "carbs", "carbs_g") * servings
    fat = _nutrition_number(nutrition, "fat", "fat_g") * servings
    fiber = _nutrition_number(nutrition, "fiber", "fiber_g") * servings
    calories = _nutrition_number(nutrition, "calories", "kcal") * servings

    meal_id = meal.get("id") or meal.get("mealId")
    names = []
    for ingredient in meal.get("ingredients") or []:
        name = ingredient.get("item") or ingredient.get("name") if isinstance(ingredient, Mapping) else ingredient
        if isinstance(name, str) and name.strip():
            names.append(name)
    return MacroEntry(
        at=at,
        source=source,
        kcal=float(round(calories)) if calories > 0 else None,
        protein=round(protein, 1),
        carbs=round(carbs, 1),
        fat=round(fat, 1),
        fiber=round(fiber, 1),
        meal_id=str(meal_id) if meal_id else None,
        meal_name=meal.get("title") or meal.get("name"),
        servings=servings,
        idempotency_key=f"{meal_id}:{at.date().isoformat()}" if meal_id else None,
        ingredient_names=names,
    )


def validate_entry(entry: MacroEntry) -> None:
    values = [entry.protein, entry.carbs, entry.fat, entry.fiber, entry.alcohol]
    values += [v for v in (entry.kcal, entry.starchy_carbs, entry.fibrous_carbs) if v is not None]
    if any(v < 0 for v in values):
        raise ValueError("Macros cannot be negative")
    if not (entry.kcal or entry.protein or entry.carbs or entry.fat or entry.alcohol):
        raise ValueError("Log entry has no calories or macros")


async def _find_by_key(session: AsyncSession, user_id: str, key: str) -> Optional[MacroLog]:
    stmt = select(MacroLog).where(MacroLog.user_id == user_id, MacroLog.idempotency_key == key)
    return (await session.execute(stmt)).scalars().first()


async def create_macro_log(session: AsyncSession, user_id: str, entry: MacroEntry) -> MacroLog:
    validate_entry(entry)
    if entry.idempotency_key:
        existing = await _find_by_key(session, user_id, entry.idempotency_key)
        if existing is not None:
            logger.info("Macro log %s already recorded for user %s", entry.idempotency_key, user_id)
            return existing

    if entry.starchy_carbs is None and entry.fibrous_carbs is None:
        starchy, fibrous = split_carbs(entry.ingredient_names, entry.carbs)
    else:
        starchy, fibrous = entry.starchy_carbs or 0.0, entry.fibrous_carbs or 0.0

    row = MacroLog(
        user_id=user_id,
        at=entry.at,
        source=entry.source,
        meal_id=entry.meal_id,
        meal_name=entry.meal_name,
        servings=entry.servings,
        kcal=resolve_kcal(entry.kcal, entry.protein, entry.carbs, entry.fat, entry.alcohol),
        protein=entry.protein,
        carbs=entry.carbs,
        fat=entry.fat,
        fiber=entry.fiber,
        alcohol=entry.alcohol,
        starchy_carbs=starchy,
        fibrous_carbs=fibrous,
        idempotency_key=entry.idempotency_key,
    )
    session.add(row)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        if entry.idempotency_key:
            existing = await _find_by_key(session, user_id, entry.idempotency_key)
            if existing is not None:
                return existing
        raise
    await session.refresh(row)
    return row


async def create_macro_logs(session: AsyncSession, user_id: str, entries: Sequence[MacroEntry]) -> List[MacroLog]:
    return [await create_macro_log(session, user_id, entry) for entry in entries]


async def quick_add(
    session: AsyncSession,
    user_id: str,
    *,
    at: Optional[datetime] = None,
    kcal: Optional[float] = None,
    protein: float = 0.0,
    carbs: float = 0.0,
    fat: float = 0.0,
    fiber: float = 0.0,
    alcohol: float = 0.0,
    starchy_carbs: Optional[float] = None,
    fibrous_carbs: Optional[float] = None,
) -> MacroLog:
    entry = MacroEntry(
        at=at or datetime.now(timezone.utc),
        source="quick",
        kcal=kcal,
        protein=protein,
        carbs=carbs,
        fat=fat,
        fiber=fiber,
        alcohol=alcohol,
        starchy_carbs=starchy_carbs if starchy_carbs is not None else 0.0,
        fibrous_carbs=fibrous_carbs if fibrous_carbs is not None else carbs,
    )
    return await create_macro_log(session, user_id, entry)


async def delete_macro_log(session: AsyncSession, user_id: str, log_id: int) -> None:
    row = await session.get(MacroLog, log_id)
    if row is None:
        raise LookupError(f"Macro log {log_id} not found")
    if row.user_id != user_id:
        raise PermissionError("Macro log belongs to another user")
    await session.delete(row)
    await session.commit()


def serialize_log(row: MacroLog) -> Dict[str, Any]:
    return {
        "id": row.id,
        "at": as_utc(row.at).isoformat(),
        "source": row.source,
        "mealId": row.meal_id,
        "mealName": row.meal_name,
        "servings": row.servings,
        "kcal": row.kcal,
        "protein": row.protein,
        "carbs": row.carbs,
        "fat": row.fat,
        "fiber": row.fiber,
        "alcohol": row.alcohol,
        "starchyCarbs": row.starchy_carbs,
        "fibrousCarbs": row.fibrous_carbs,
    }


def _empty_totals() -> Dict[str, float]:
    return {"kcal": 0.0, "protein": 0.0, "carbs": 0.0, "fat": 0.0}


async def get_summary(session: AsyncSession, user_id: str, start: datetime, end: datetime) -> Dict[str, Any]:
    if end < start:
        raise ValueError("end must not be before start")
    stmt = (
        select(MacroLog)
        .where(MacroLog.user_id == user_id, MacroLog.at >= start, MacroLog.at <= end)
        .order_by(MacroLog.at)
    )
    rows = list((await session.execute(stmt)).scalars().all())

    totals: Dict[str, float] = {"kcal": 0.0, **{name: 0.0 for name in MACRO_FIELDS}}
    food = _empty_totals()
    alcohol = _empty_totals()
    days: Dict[date, Dict[str, float]] = {}
    for row in rows:
        totals["kcal"] += row.kcal
        for name in MACRO_FIELDS:
            totals[name] += getattr(row, name) or 0.0
        bucket = alcohol if row.source == ALCOHOL_SOURCE else food
        for name in bucket:
            bucket[name] += getattr(row, name) or 0.0
        day_bucket = days.setdefault(as_utc(row.at).date(), _empty_totals())
        for name in day_bucket:
            day_bucket[name] += getattr(row, name) or 0.0

    def _rounded(values: Mapping[str, float]) -> Dict[str, float]:
        return {key: round(value, 1) for key, value in values.items()}

    return {
        "totals": {
            "kcal": round(totals["kcal"], 1),
            "protein": round(totals["protein"], 1),
            "carbs": round(totals["carbs"], 1),
            "fat": round(totals["fat"], 1),
            "fiber": round(totals["fiber"], 1),
            "alcohol": round(totals["alcohol"], 1),
            "starchyCarbs": round(totals["starchy_carbs"], 1),
            "fibrousCarbs": round(totals["fibrous_carbs"], 1),
        },
        "foodTotals": _rounded(food),
        "alcoholTotals": _rounded(alcohol),
        "days": [{"date": day.isoformat(), **_rounded(values)} for day, values in sorted(days.items())],
        "entries": [serialize_log(row) for row in rows],
    }


def get_macro_targets(account: UserAccount) -> Dict[str, Optional[int]]:
    return {key: getattr(account, column) for key, column in TARGET_FIELDS.items()}


async def update_macro_targets(
    session: AsyncSession,
    account: UserAccount,
    targets: Mapping[str, Optional[int]],
) -> Dict[str, Optional[int]]:
    for key, value in targets.items():
        column = TARGET_FIELDS.get(key)
        if column is None:
            raise ValueError(f"Unknown macro target '{key}'")
        if value is not None and value < 0:
            raise ValueError(f"Macro target '{key}' cannot be negative")
        setattr(account, column, value)
    await session.commit()
    return get_macro_targets(account)

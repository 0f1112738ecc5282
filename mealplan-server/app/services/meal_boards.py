from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import MealBoard, MealBoardItem
from .macros import build_log_entry_from_meal, create_macro_logs, serialize_log

logger = logging.getLogger(__name__)

BOARD_SLOTS = ("breakfast", "lunch", "dinner", "snack")
MAX_BOARD_DAYS = 28
MACRO_KEYS = ("calories", "protein", "carbs", "fat")


def sorted_items(board: MealBoard) -> List[MealBoardItem]:
    return sorted(board.items, key=lambda item: (item.day_index, BOARD_SLOTS.index(item.slot), item.order_index))


async def _load_board(session: AsyncSession, board_id: uuid.UUID) -> Optional[MealBoard]:
    stmt = select(MealBoard).where(MealBoard.id == board_id).execution_options(populate_existing=True)
    return (await session.execute(stmt)).scalars().first()


async def get_board(session: AsyncSession, *, user_id: str, board_id: uuid.UUID) -> MealBoard:
    board = await _load_board(session, board_id)
    if board is None:
        raise LookupError(f"Meal board {board_id} not found")
    if board.user_id != user_id:
        raise PermissionError("Meal board belongs to another user")
    return board


async def get_or_create_board(
    session: AsyncSession,
    *,
    user_id: str,
    program: str,
    start_date: date,
    days: int = 7,
    title: Optional[str] = None,
) -> MealBoard:
    program = (program or "").strip().lower()
    if not program:
        raise ValueError("program is required")
    if days < 1 or days > MAX_BOARD_DAYS:
        raise ValueError(f"days must be between 1 and {MAX_BOARD_DAYS}")
    stmt = select(MealBoard).where(
        MealBoard.user_id == user_id,
        MealBoard.program == program,
        MealBoard.start_date == start_date,
    )
    board = (await session.execute(stmt)).scalars().first()
    if board is not None:
        return board
    board = MealBoard(user_id=user_id, program=program, start_date=start_date, days=days, title=title)
    session.add(board)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        board = (await session.execute(stmt)).scalars().first()
        if board is None:
            raise
        return board
    logger.info("Created %s meal board for %s starting %s", program, user_id, start_date)
    return await _load_board(session, board.id)


def _check_day(board: MealBoard, day_index: int) -> None:
    if day_index < 0 or day_index >= board.days:
        raise ValueError(f"day_index must be between 0 and {board.days - 1}")


def _check_slot(slot: str) -> str:
    slot = (slot or "").strip().lower()
    if slot == "snacks":
        slot = "snack"
    if slot not in BOARD_SLOTS:
        raise ValueError(f"Unknown slot '{slot}'")
    return slot


def _nutrition(meal: Mapping[str, Any]) -> Dict[str, float]:
    source = meal.get("nutrition") or {}
    values: Dict[str, float] = {}
    for key in MACRO_KEYS:
        try:
            values[key] = float(source.get(key, meal.get(key, 0)) or 0)
        except (TypeError, ValueError):
            raise ValueError(f"nutrition.{key} must be a number")
        if values[key] < 0:
            raise ValueError(f"nutrition.{key} cannot be negative")
    return values


async def add_item(
    session: AsyncSession,
    board: MealBoard,
    *,
    day_index: int,
    slot: str,
    meal: Mapping[str, Any],
    servings: float = 1.0,
) -> MealBoardItem:
    _check_day(board, day_index)
    slot = _check_slot(slot)
    title = str(meal.get("title") or meal.get("name") or "").strip()
    if not title:
        raise ValueError("meal title is required")
    same_slot = [item for item in board.items if item.day_index == day_index and item.slot == slot]
    item = MealBoardItem(
        board_id=board.id,
        day_index=day_index,
        slot=slot,
        order_index=max((i.order_index for i in same_slot), default=-1) + 1,
        meal_id=str(meal.get("id")) if meal.get("id") else None,
        title=title,
        servings=max(0.25, float(servings or 1.0)),
        nutrition=_nutrition(meal),
        payload={key: meal[key] for key in ("ingredients", "instructions", "badges") if key in meal} or None,
    )
    board.items.append(item)
    await session.commit()
    return item


async def delete_item(session: AsyncSession, board: MealBoard, item_id: uuid.UUID) -> None:
    item = next((item for item in board.items if item.id == item_id), None)
    if item is None:
        raise LookupError(f"Item {item_id} not found on board {board.id}")
    board.items.remove(item)
    await session.commit()


async def repeat_day(
    session: AsyncSession,
    board: MealBoard,
    *,
    source_day: int,
    target_days: Sequence[int],
) -> MealBoard:
    """Copy the items of `source_day` onto each target day, replacing what was there."""
    _check_day(board, source_day)
    targets = sorted({day for day in target_days if day != source_day})
    for day in targets:
        _check_day(board, day)
    source_items = [item for item in sorted_items(board) if item.day_index == source_day]
    for item in [item for item in board.items if item.day_index in targets]:
        board.items.remove(item)
    for day in targets:
        for item in source_items:
            board.items.append(
                MealBoardItem(
                    board_id=board.id,
                    day_index=day,
                    slot=item.slot,
                    order_index=item.order_index,
                    meal_id=item.meal_id,
                    title=item.title,
                    servings=item.servings,
                    nutrition=dict(item.nutrition or {}),
                    payload=dict(item.payload) if item.payload else None,
                )
            )
    await session.commit()
    return board


def _item_totals(item: MealBoardItem) -> Dict[str, float]:
    nutrition = item.nutrition or {}
    return {key: float(nutrition.get(key) or 0) * item.servings for key in MACRO_KEYS}


async def commit_board(
    session: AsyncSession,
    board: MealBoard,
    *,
    scope: str = "day",
    day_index: Optional[int] = None,
) -> Dict[str, Any]:
    """Log the board's meals for one day or the whole week into macro logs."""
    if scope not in ("day", "week"):
        raise ValueError("scope must be 'day' or 'week'")
    if scope == "day":
        if day_index is None:
            raise ValueError("day_index is required when scope is 'day'")
        _check_day(board, day_index)
        days = [day_index]
    else:
        days = list(range(board.days))

    per_day: List[Dict[str, Any]] = []
    totals = {key: 0.0 for key in MACRO_KEYS}
    entries = []
    for day in days:
        day_items = [item for item in sorted_items(board) if item.day_index == day]
        day_totals = {key: 0.0 for key in MACRO_KEYS}
        day_date = board.start_date + timedelta(days=day)
        logged_at = datetime.combine(day_date, time(12, 0), tzinfo=timezone.utc)
        for item in day_items:
            for key, value in _item_totals(item).items():
                day_totals[key] += value
            meal = {
                "id": item.meal_id or str(item.id),
                "title": item.title,
                "nutrition": item.nutrition,
                "ingredients": (item.payload or {}).get("ingredients") or [],
            }
            entry = build_log_entry_from_meal(meal, item.servings, source="meal_board", at=logged_at)
            # One log per board item, so a meal placed twice on a day logs twice.
            entry.idempotency_key = f"board-item:{item.id}:{day_date.isoformat()}"
            if entry.kcal or entry.protein or entry.carbs or entry.fat:
                entries.append(entry)
        for key in MACRO_KEYS:
            totals[key] += day_totals[key]
        per_day.append(
            {
                "dayIndex": day,
                "date": day_date.isoformat(),
                "items": len(day_items),
                "totals": {key: round(value, 1) for key, value in day_totals.items()},
            }
        )

    logs = await create_macro_logs(session, board.user_id, entries)
    logger.info("Committed %s of board %s: %d macro logs", scope, board.id, len(logs))
    return {
        "boardId": str(board.id),
        "scope": scope,
        "totals": {key: round(value, 1) for key, value in totals.items()},
        "days": per_day,
        "logs": [serialize_log(row) for row in logs],
    }


def serialize_board(board: MealBoard) -> Dict[str, Any]:
    return {
        "id": str(board.id),
        "program": board.program,
        "title": board.title,
        "startDate": board.start_date.isoformat(),
        "days": board.days,
        "items": [
            {
                "id": str(item.id),
                "dayIndex": item.day_index,
                "slot": item.slot,
                "orderIndex": item.order_index,
                "mealId": item.meal_id,
                "title": item.title,
                "servings": item.servings,
                "nutrition": item.nutrition,
                "payload": item.payload,
            }
            for item in sorted_items(board)
        ],
    }

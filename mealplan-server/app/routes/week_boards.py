from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, HTTPException, status

from ..auth import get_current_principal
from ..db import get_session
from ..schemas import ShoppingListExclusionsRequest, WeekMealRequest
from ..services.shopping_list import build_shopping_list
from ..services.week_boards import (
    add_meal_to_week,
    get_week_board,
    remove_meal_from_week,
    save_week_board,
    set_shopping_list_exclusions,
    validate_week_start,
    week_start_for,
)

router = APIRouter(prefix="/week-boards", tags=["week-boards"])


def _checked_week(week: str) -> str:
    try:
        return validate_week_start(week)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


@router.get("/current")
async def current_week_board(principal=Depends(get_current_principal)):
    async with get_session() as session:
        return await get_week_board(session, user_id=principal["sub"], week_start=week_start_for())


@router.get("/{week}")
async def read_week_board(week: str, principal=Depends(get_current_principal)):
    week = _checked_week(week)
    async with get_session() as session:
        return await get_week_board(session, user_id=principal["sub"], week_start=week)


@router.put("/{week}")
async def write_week_board(
    week: str,
    board: Dict[str, Any] = Body(...),
    principal=Depends(get_current_principal),
):
    week = _checked_week(week)
    async with get_session() as session:
        return await save_week_board(session, user_id=principal["sub"], week_start=week, board=board)


@router.post("/{week}/days/{day}/{slot}")
async def add_week_meal(
    week: str,
    day: str,
    slot: str,
    payload: WeekMealRequest,
    principal=Depends(get_current_principal),
):
    week = _checked_week(week)
    async with get_session() as session:
        try:
            return await add_meal_to_week(
                session, user_id=principal["sub"], week_start=week, day_iso=day, slot=slot, meal=payload.meal
            )
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


@router.delete("/{week}/days/{day}/{slot}/{meal_id}")
async def remove_week_meal(
    week: str,
    day: str,
    slot: str,
    meal_id: str,
    principal=Depends(get_current_principal),
):
    week = _checked_week(week)
    async with get_session() as session:
        try:
            return await remove_meal_from_week(
                session, user_id=principal["sub"], week_start=week, day_iso=day, slot=slot, meal_id=meal_id
            )
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
        except LookupError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


@router.get("/{week}/shopping-list")
async def week_shopping_list(week: str, principal=Depends(get_current_principal)):
    week = _checked_week(week)
    async with get_session() as session:
        board = await get_week_board(session, user_id=principal["sub"], week_start=week)
    return {"weekStart": week, **build_shopping_list(board)}


@router.put("/{week}/shopping-list/exclusions")
async def week_shopping_list_exclusions(
    week: str,
    payload: ShoppingListExclusionsRequest,
    principal=Depends(get_current_principal),
):
    week = _checked_week(week)
    async with get_session() as session:
        board = await set_shopping_list_exclusions(
            session, user_id=principal["sub"], week_start=week, exclusions=payload.exclusions
        )
    return {"weekStart": week, **build_shopping_list(board)}

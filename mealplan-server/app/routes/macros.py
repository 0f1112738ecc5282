from __future__ import annotations

from datetime import date, datetime, time, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..auth import get_current_principal
from ..db import get_session
from ..schemas import LogMealRequest, MacroLogRequest, MacroTargetsUpdate, QuickAddRequest
from ..services.macros import (
    MacroEntry,
    build_log_entry_from_meal,
    create_macro_log,
    delete_macro_log,
    get_macro_targets,
    get_summary,
    quick_add,
    serialize_log,
    update_macro_targets,
)
from ..services.users import get_or_create_account

router = APIRouter(prefix="/macros", tags=["macros"])


@router.post("/logs")
async def create_log(payload: MacroLogRequest, principal=Depends(get_current_principal)):
    entry = MacroEntry(
        at=payload.at or datetime.now(timezone.utc),
        source=payload.source,
        kcal=payload.kcal,
        protein=payload.protein,
        carbs=payload.carbs,
        fat=payload.fat,
        fiber=payload.fiber,
        alcohol=payload.alcohol,
        starchy_carbs=payload.starchyCarbs,
        fibrous_carbs=payload.fibrousCarbs,
        meal_id=payload.mealId,
        meal_name=payload.mealName,
        servings=payload.servings,
        idempotency_key=payload.idempotencyKey,
        ingredient_names=payload.ingredients,
    )
    async with get_session() as session:
        try:
            row = await create_macro_log(session, principal["sub"], entry)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return serialize_log(row)


@router.post("/quick-add")
async def create_quick_add(payload: QuickAddRequest, principal=Depends(get_current_principal)):
    async with get_session() as session:
        try:
            row = await quick_add(
                session,
                principal["sub"],
                at=payload.at,
                kcal=payload.kcal,
                protein=payload.protein,
                carbs=payload.carbs,
                fat=payload.fat,
                fiber=payload.fiber,
                alcohol=payload.alcohol,
                starchy_carbs=payload.starchyCarbs,
                fibrous_carbs=payload.fibrousCarbs,
            )
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return serialize_log(row)


@router.post("/log-meal")
async def log_meal(payload: LogMealRequest, principal=Depends(get_current_principal)):
    entry = build_log_entry_from_meal(payload.meal, payload.servings, at=payload.at)
    async with get_session() as session:
        try:
            row = await create_macro_log(session, principal["sub"], entry)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return serialize_log(row)


@router.get("/summary")
async def summary(
    start: Optional[date] = Query(default=None),
    end: Optional[date] = Query(default=None),
    principal=Depends(get_current_principal),
):
    today = datetime.now(timezone.utc).date()
    start = start or today
    end = end or start
    async with get_session() as session:
        try:
            result = await get_summary(
                session,
                principal["sub"],
                datetime.combine(start, time.min, tzinfo=timezone.utc),
                datetime.combine(end, time.max, tzinfo=timezone.utc),
            )
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
        account = await get_or_create_account(session, user_id=principal["sub"], email=principal.get("email"))
    return {"from": start.isoformat(), "to": end.isoformat(), "targets": get_macro_targets(account), **result}


@router.delete("/logs/{log_id}")
async def remove_log(log_id: int, principal=Depends(get_current_principal)):
    async with get_session() as session:
        try:
            await delete_macro_log(session, principal["sub"], log_id)
        except LookupError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
        except PermissionError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
    return {"deleted": log_id}


@router.get("/targets")
async def read_targets(principal=Depends(get_current_principal)):
    async with get_session() as session:
        account = await get_or_create_account(session, user_id=principal["sub"], email=principal.get("email"))
    return get_macro_targets(account)


@router.put("/targets")
async def write_targets(payload: MacroTargetsUpdate, principal=Depends(get_current_principal)):
    async with get_session() as session:
        account = await get_or_create_account(session, user_id=principal["sub"], email=principal.get("email"))
        try:
            return await update_macro_targets(session, account, payload.model_dump())
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

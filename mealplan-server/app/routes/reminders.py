from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, status

from ..auth import get_admin_principal, get_current_principal
from ..db import get_session
from ..schemas import ReminderCreateRequest, ReminderDispatchRequest, ReminderUpdateRequest
from ..services.reminders import (
    create_reminder,
    delete_reminder,
    dispatch_due_reminders,
    list_reminders,
    serialize_reminder,
    update_reminder,
)

router = APIRouter(tags=["reminders"])

UPDATE_FIELD_NAMES = {
    "mealType": "meal_type",
    "recipeName": "recipe_name",
    "scheduledTime": "scheduled_time",
    "dayOfWeek": "day_of_week",
    "timezone": "timezone",
    "reminderEnabled": "reminder_enabled",
    "isActive": "is_active",
    "mealPlanRef": "meal_plan_ref",
}
NULLABLE_FIELDS = {"dayOfWeek", "mealPlanRef"}


@router.get("/reminders")
async def reminders(principal=Depends(get_current_principal)):
    async with get_session() as session:
        rows = await list_reminders(session, user_id=principal["sub"])
    return {"reminders": [serialize_reminder(row) for row in rows]}


@router.post("/reminders", status_code=status.HTTP_201_CREATED)
async def add_reminder(payload: ReminderCreateRequest, principal=Depends(get_current_principal)):
    async with get_session() as session:
        try:
            reminder = await create_reminder(
                session,
                user_id=principal["sub"],
                meal_type=payload.mealType,
                recipe_name=payload.recipeName,
                scheduled_time=payload.scheduledTime,
                day_of_week=payload.dayOfWeek,
                timezone_name=payload.timezone,
                reminder_enabled=payload.reminderEnabled,
                meal_plan_ref=payload.mealPlanRef,
            )
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return serialize_reminder(reminder)


@router.patch("/reminders/{reminder_id}")
async def edit_reminder(
    reminder_id: uuid.UUID,
    payload: ReminderUpdateRequest,
    principal=Depends(get_current_principal),
):
    changes = {
        UPDATE_FIELD_NAMES[key]: value
        for key, value in payload.model_dump(exclude_unset=True).items()
        if value is not None or key in NULLABLE_FIELDS
    }
    async with get_session() as session:
        try:
            reminder = await update_reminder(
                session, user_id=principal["sub"], reminder_id=reminder_id, changes=changes
            )
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
        except LookupError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
        except PermissionError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
    return serialize_reminder(reminder)


@router.delete("/reminders/{reminder_id}")
async def remove_reminder(reminder_id: uuid.UUID, principal=Depends(get_current_principal)):
    async with get_session() as session:
        try:
            await delete_reminder(session, user_id=principal["sub"], reminder_id=reminder_id)
        except LookupError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
        except PermissionError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
    return {"deleted": str(reminder_id)}


@router.post("/admin/reminders/dispatch")
async def admin_dispatch_reminders(payload: ReminderDispatchRequest, principal=Depends(get_admin_principal)):
    async with get_session() as session:
        return await dispatch_due_reminders(session, now=payload.now)

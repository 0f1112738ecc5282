from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, status

from ..auth import get_current_principal
from ..db import get_session
from ..schemas import CommitBoardRequest, MealBoardCreateRequest, MealBoardItemRequest, RepeatDayRequest
from ..services.meal_boards import (
    add_item,
    commit_board,
    delete_item,
    get_board,
    get_or_create_board,
    repeat_day,
    serialize_board,
)

router = APIRouter(prefix="/meal-boards", tags=["meal-boards"])


async def _owned_board(session, principal, board_id: uuid.UUID):
    try:
        return await get_board(session, user_id=principal["sub"], board_id=board_id)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))


@router.post("")
async def create_board(payload: MealBoardCreateRequest, principal=Depends(get_current_principal)):
    async with get_session() as session:
        try:
            board = await get_or_create_board(
                session,
                user_id=principal["sub"],
                program=payload.program,
                start_date=payload.startDate,
                days=payload.days,
                title=payload.title,
            )
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
        return serialize_board(board)


@router.get("/{board_id}")
async def read_board(board_id: uuid.UUID, principal=Depends(get_current_principal)):
    async with get_session() as session:
        board = await _owned_board(session, principal, board_id)
        return serialize_board(board)


@router.post("/{board_id}/items")
async def create_item(board_id: uuid.UUID, payload: MealBoardItemRequest, principal=Depends(get_current_principal)):
    async with get_session() as session:
        board = await _owned_board(session, principal, board_id)
        try:
            await add_item(
                session,
                board,
                day_index=payload.dayIndex,
                slot=payload.slot,
                meal=payload.meal,
                servings=payload.servings,
            )
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
        return serialize_board(board)


@router.delete("/{board_id}/items/{item_id}")
async def remove_item(board_id: uuid.UUID, item_id: uuid.UUID, principal=Depends(get_current_principal)):
    async with get_session() as session:
        board = await _owned_board(session, principal, board_id)
        try:
            await delete_item(session, board, item_id)
        except LookupError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
        return serialize_board(board)


@router.post("/{board_id}/repeat-day")
async def repeat_board_day(board_id: uuid.UUID, payload: RepeatDayRequest, principal=Depends(get_current_principal)):
    async with get_session() as session:
        board = await _owned_board(session, principal, board_id)
        try:
            board = await repeat_day(session, board, source_day=payload.sourceDay, target_days=payload.targetDays)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
        return serialize_board(board)


@router.post("/{board_id}/commit")
async def commit(board_id: uuid.UUID, payload: CommitBoardRequest, principal=Depends(get_current_principal)):
    async with get_session() as session:
        board = await _owned_board(session, principal, board_id)
        try:
            return await commit_board(session, board, scope=payload.scope, day_index=payload.dayIndex)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from ..auth import get_current_principal
from ..db import as_utc, get_session
from ..ratelimit import generation_limit, limiter
from ..schemas import GenerateMealRequest
from ..services.entitlements import require_entitlement
from ..services.generation import (
    GenerationExhaustedError,
    GenerationRequest,
    SafetyBlockError,
    generate_constrained_meal,
    list_generation_runs,
)
from ..services.users import get_or_create_account

router = APIRouter(prefix="/generate", tags=["generate"])


@router.post("/meal")
@limiter.limit(generation_limit)
async def generate_meal(
    request: Request,
    payload: GenerateMealRequest,
    principal=Depends(require_entitlement("smart_menu_builder")),
):
    generation = GenerationRequest(
        meal_type=payload.mealType,
        request_text=payload.request,
        targets=payload.targets.as_dict(),
        diet_type=payload.dietType,
        phase=payload.phase,
        is_snack=payload.isSnack,
        servings=payload.servings,
        override_token=payload.overrideToken,
    )
    async with get_session() as session:
        account = await get_or_create_account(session, user_id=principal["sub"], email=principal.get("email"))
        try:
            return await generate_constrained_meal(session, account=account, request=generation)
        except SafetyBlockError as exc:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail={
                    "error": "safety_block",
                    "violations": exc.violations,
                    "message": exc.message,
                    "substitutes": exc.substitutes,
                },
            )
        except GenerationExhaustedError as exc:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail={
                    "error": "generation_failed",
                    "message": str(exc),
                    "violations": exc.violations,
                    "attempts": len(exc.attempts),
                    "runId": exc.run_id,
                },
            )
        except PermissionError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


@router.get("/runs")
async def generation_runs(
    limit: int = Query(default=20, ge=1, le=100),
    principal=Depends(get_current_principal),
):
    async with get_session() as session:
        runs = await list_generation_runs(session, user_id=principal["sub"], limit=limit)
    return {
        "runs": [
            {
                "id": str(run.id),
                "mealType": run.meal_type,
                "dietType": run.diet_type,
                "model": run.model,
                "status": run.status,
                "attemptCount": run.attempt_count,
                "attempts": run.attempts or [],
                "mealName": ((run.result or {}).get("meal") or {}).get("name"),
                "createdAt": as_utc(run.created_at).isoformat() if run.created_at else None,
            }
            for run in runs
        ]
    }

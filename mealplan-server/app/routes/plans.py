from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from ..auth import get_admin_principal
from ..db import get_session
from ..schemas import PlanApplyRequest
from ..services.entitlements import account_entitlements, apply_plan_lookup_key, effective_tier, plan_table

router = APIRouter(tags=["plans"])


@router.get("/plans")
def plans():
    return {"plans": plan_table()}


@router.post("/admin/plans/apply")
async def admin_apply_plan(payload: PlanApplyRequest, principal=Depends(get_admin_principal)):
    async with get_session() as session:
        try:
            account = await apply_plan_lookup_key(
                session,
                user_id=payload.userId,
                lookup_key=payload.lookupKey,
                status=payload.status,
            )
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return {
        "userId": account.id,
        "plan": account.plan,
        "subscriptionStatus": account.subscription_status,
        "effectiveTier": effective_tier(account).value,
        "entitlements": account_entitlements(account),
        "appliedBy": principal.get("email"),
    }

from __future__ import annotations

from fastapi import APIRouter, Depends

from ..auth import get_current_principal
from ..db import get_session
from ..schemas import LibrarySearchRequest, TemplateRankRequest
from ..services.guardrails import extract_safety_profile
from ..services.meal_library import LibrarySearch, search_library
from ..services.rules_engine import (
    enforce_weekly_caps,
    meets_variety,
    planner_user_from_account,
    reject_reason,
    score_template,
)
from ..services.users import get_or_create_account

router = APIRouter(prefix="/library", tags=["library"])


@router.post("/search")
async def library_search(payload: LibrarySearchRequest, principal=Depends(get_current_principal)):
    async with get_session() as session:
        account = await get_or_create_account(session, user_id=principal["sub"], email=principal.get("email"))
    request = LibrarySearch(
        meal_type=payload.mealType,
        intent=payload.intent,
        diet=payload.diet or account.diet_type,
        targets=payload.targets.as_dict(),
        cravings=payload.cravings,
        recent_ids=payload.recentIds,
        limit=payload.limit,
    )
    meals = search_library(request, extract_safety_profile(account))
    return {"meals": meals, "count": len(meals)}


@router.post("/templates/rank")
async def rank_templates(payload: TemplateRankRequest, principal=Depends(get_current_principal)):
    """Score planner templates against the account's hard rules and pick a week within the caps."""
    async with get_session() as session:
        account = await get_or_create_account(session, user_id=principal["sub"], email=principal.get("email"))
    user = planner_user_from_account(account, preferred_cuisines=payload.preferredCuisines)
    user.veg_opt_out = payload.vegOptOut

    ranked = []
    for template in payload.templates:
        ranked.append(
            {
                "id": template.get("id"),
                "score": score_template(template, user),
                "rejectReason": reject_reason(template, user),
            }
        )
    accepted = [
        template
        for template, entry in sorted(
            zip(payload.templates, ranked), key=lambda pair: pair[1]["score"], reverse=True
        )
        if entry["rejectReason"] is None
    ]
    week = enforce_weekly_caps(accepted)
    variety = meets_variety(week.selected)
    return {
        "templates": ranked,
        "selectedIds": [template.get("id") for template in week.selected],
        "skippedIds": [template.get("id") for template in week.skipped],
        "uniqueIngredients": week.unique_ingredient_count,
        "exoticIngredients": week.exotic_count,
        "variety": {"repeats": variety.repeats, "cuisines": variety.cuisines, "ok": variety.ok},
    }

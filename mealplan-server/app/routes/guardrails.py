from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from ..auth import get_current_principal
from ..db import get_session
from ..schemas import GuardrailPrecheckRequest, GuardrailValidateRequest
from ..services.diet_rules import coerce_diet_type, diet_options_for_account, validate_for_diet
from ..services.guardrails import (
    build_safety_guardrails,
    extract_safety_profile,
    get_safe_substitute,
    pre_check_request,
    validate_meal_safety,
)
from ..services.users import get_or_create_account

router = APIRouter(prefix="/guardrails", tags=["guardrails"])


@router.post("/precheck")
async def precheck(payload: GuardrailPrecheckRequest, principal=Depends(get_current_principal)):
    async with get_session() as session:
        account = await get_or_create_account(session, user_id=principal["sub"], email=principal.get("email"))
    result = pre_check_request(payload.text, extract_safety_profile(account))
    return {
        "blocked": result.blocked,
        "violations": result.violations,
        "message": result.message,
        "substitutes": {term: get_safe_substitute(term) for term in result.violations},
    }


@router.post("/validate")
async def validate(payload: GuardrailValidateRequest, principal=Depends(get_current_principal)):
    async with get_session() as session:
        account = await get_or_create_account(session, user_id=principal["sub"], email=principal.get("email"))
    profile = extract_safety_profile(account)
    try:
        diet = coerce_diet_type(payload.dietType or account.diet_type)
        options = diet_options_for_account(account, phase=payload.phase, is_snack=payload.isSnack)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    safety = validate_meal_safety(payload.meal, profile)
    diet_result = validate_for_diet(payload.meal, diet, options)
    return {
        "safe": safety.safe,
        "violations": safety.violations,
        "message": safety.message,
        "safetySummary": build_safety_guardrails(profile).summary_line,
        "diet": {
            "dietType": diet.value,
            "isValid": diet_result.is_valid,
            "violations": diet_result.violations,
            "blockedIngredients": diet_result.blocked_ingredients,
            "warnings": diet_result.warnings,
            "appliedRules": diet_result.applied_rules,
        },
    }

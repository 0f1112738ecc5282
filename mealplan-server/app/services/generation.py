"""Constrained meal generation: ask the model for a meal, validate it, retry with feedback.

A request is pre-checked against the caller's safety profile before any model
call. Each attempt's output is parsed, normalised and run through the allergy
guardrails, the caller's diet rule pack and the macro tolerances; the
violations of a failed attempt are appended to the next prompt. Every run is
persisted to ``meal_generation_runs``. A valid Safety PIN override token relaxes
the allergies it names for that one request.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..models import GenerationRunStatus, MealGenerationRun, UserAccount
from .classifier import detect_starchy_ingredients
from .diet_rules import coerce_diet_type, diet_options_for_account, get_diet_prompt_modifier, validate_for_diet
from .guardrails import (
    build_safety_guardrails,
    extract_safety_profile,
    get_safe_substitute,
    log_safety_enforcement,
    pre_check_request,
    relax_allergies,
    validate_meal_safety,
)
from .macros import percent_breakdown
from .openai_responses import call_openai_responses
from .safety_pin import consume_override_token, log_safety_override

logger = logging.getLogger(__name__)

MEAL_TYPES = ("breakfast", "lunch", "dinner", "snack")
_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)

SYSTEM_PROMPT = """You are a registered dietitian and recipe developer for a meal-planning app.
Return exactly one JSON object and nothing else, using this shape:
{
  "name": string,
  "description": string,
  "servings": number,
  "cookingTime": number (minutes),
  "ingredients": [{"item": string, "amount": number, "unit": string}],
  "instructions": [string],
  "nutrition": {"calories": number, "protein": number, "carbs": number, "fat": number, "fiber": number}
}
Nutrition values are per serving, in kcal and grams. Use only real, common ingredients.
Never include an ingredient the user is not allowed to eat."""


class SafetyBlockError(Exception):
    def __init__(self, violations: List[str], message: str):
        super().__init__(message)
        self.violations = violations
        self.message = message
        self.substitutes = {term: get_safe_substitute(term) for term in violations}


class GenerationExhaustedError(Exception):
    def __init__(self, attempts: List[Dict[str, Any]], run_id: str):
        super().__init__(f"No valid meal after {len(attempts)} attempts")
        self.attempts = attempts
        self.run_id = run_id

    @property
    def violations(self) -> List[str]:
        return list(self.attempts[-1]["violations"]) if self.attempts else []


@dataclass
class GenerationRequest:
    meal_type: str
    request_text: str = ""
    targets: Dict[str, float] = field(default_factory=dict)
    diet_type: Optional[str] = None
    phase: Optional[str] = None
    is_snack: bool = False
    servings: int = 1
    override_token: Optional[str] = None


def parse_meal_json(text: str) -> Dict[str, Any]:
    """Extract the JSON object from model output, tolerating code fences and chatter."""
    cleaned = _CODE_FENCE.sub("", (text or "").strip())
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start == -1 or end <= start:
        raise ValueError("Model output did not contain a JSON object")
    try:
        payload = json.loads(cleaned[start : end + 1])
    except json.JSONDecodeError as exc:
        raise ValueError(f"Model output was not valid JSON: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise ValueError("Model output was not a JSON object")
    return payload


def _as_number(value: Any, default: float = 0.0) -> float:
    if isinstance(value, bool):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def normalize_generated_meal(raw: Mapping[str, Any], *, meal_type: str, servings: int) -> Dict[str, Any]:
    name = str(raw.get("name") or raw.get("title") or "").strip()
    if not name:
        raise ValueError("Generated meal has no name")
    nutrition_raw = raw.get("nutrition") or raw.get("macros")
    if not isinstance(nutrition_raw, Mapping):
        raise ValueError("Generated meal has no nutrition block")

    ingredients: List[Dict[str, Any]] = []
    for entry in raw.get("ingredients") or []:
        if isinstance(entry, str):
            if entry.strip():
                ingredients.append({"item": entry.strip(), "amount": None, "unit": None})
            continue
        if not isinstance(entry, Mapping):
            continue
        item = str(entry.get("item") or entry.get("name") or "").strip()
        if item:
            ingredients.append({"item": item, "amount": entry.get("amount"), "unit": entry.get("unit")})
    if not ingredients:
        raise ValueError("Generated meal has no ingredients")

    instructions_raw = raw.get("instructions") or []
    if isinstance(instructions_raw, str):
        instructions_raw = [line for line in instructions_raw.splitlines()]
    instructions = [str(step).strip() for step in instructions_raw if str(step).strip()]

    nutrition: Dict[str, Optional[float]] = {
        key: round(_as_number(nutrition_raw.get(key, nutrition_raw.get(f"{key}_g"))), 1)
        for key in ("calories", "protein", "carbs", "fat")
    }
    # Unreported fiber stays None so fiber minimums are skipped rather than failed.
    fiber = _as_number(nutrition_raw.get("fiber", nutrition_raw.get("fiber_g")), default=-1.0)
    nutrition["fiber"] = round(fiber, 1) if fiber >= 0 else None
    return {
        "name": name,
        "description": str(raw.get("description") or "").strip(),
        "mealType": meal_type,
        "servings": int(_as_number(raw.get("servings"), servings) or servings),
        "cookingTime": raw.get("cookingTime"),
        "ingredients": ingredients,
        "instructions": instructions,
        "nutrition": nutrition,
    }


def macro_violations(nutrition: Mapping[str, float], targets: Mapping[str, Any]) -> List[str]:
    settings = get_settings()
    violations: List[str] = []
    for key in ("calories", "protein", "carbs", "fat"):
        target = targets.get(key)
        if not target or float(target) <= 0:
            continue
        target = float(target)
        tolerance = settings.generation_calorie_tolerance if key == "calories" else settings.generation_macro_tolerance
        actual = float(nutrition.get(key) or 0.0)
        if abs(actual - target) > target * tolerance:
            violations.append(
                f"MACROS: {key} {actual:g} is outside {target:g} ±{int(round(tolerance * 100))}%"
            )
    return violations


def build_user_prompt(
    request: GenerationRequest,
    *,
    safety_block: str,
    diet_modifier: str,
    feedback: Optional[List[str]] = None,
) -> str:
    lines = [f"Create one {request.meal_type} recipe for {request.servings} serving(s)."]
    if request.request_text.strip():
        lines.append(f"The user asked for: {request.request_text.strip()}")
    targets = {k: v for k, v in request.targets.items() if v}
    if targets:
        lines.append(
            "Per-serving targets: " + ", ".join(f"{key} {float(value):g}" for key, value in targets.items())
        )
    if safety_block:
        lines.append(safety_block)
    if diet_modifier:
        lines.append(diet_modifier)
    if feedback:
        lines.append("PREVIOUS ATTEMPT FAILED VALIDATION:")
        lines.extend(f"- {violation}" for violation in feedback)
        lines.append("Fix every issue above and return a new meal.")
    return "\n\n".join(lines)


def _call_model(user_prompt: str) -> str:
    settings = get_settings()
    return call_openai_responses(
        model=settings.openai_meal_model,
        system_prompt=SYSTEM_PROMPT,
        user_prompt=user_prompt,
        max_output_tokens=settings.openai_meal_max_output_tokens,
        top_p=settings.openai_meal_top_p,
        reasoning_effort=settings.openai_meal_reasoning_effort,
    )


async def _persist_run(
    session: AsyncSession,
    *,
    user_id: str,
    request: GenerationRequest,
    diet_type: str,
    status: str,
    attempts: List[Dict[str, Any]],
    result: Optional[Dict[str, Any]],
) -> MealGenerationRun:
    run = MealGenerationRun(
        user_id=user_id,
        meal_type=request.meal_type,
        request_text=request.request_text or None,
        diet_type=diet_type,
        model=get_settings().openai_meal_model,
        status=status,
        attempt_count=len(attempts),
        attempts=attempts,
        result=result,
    )
    session.add(run)
    try:
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    await session.refresh(run)
    return run


async def generate_constrained_meal(
    session: AsyncSession,
    *,
    account: UserAccount,
    request: GenerationRequest,
) -> Dict[str, Any]:
    if request.meal_type not in MEAL_TYPES:
        raise ValueError(f"Unknown meal type '{request.meal_type}'")
    settings = get_settings()
    profile = extract_safety_profile(account)
    if request.override_token:
        override = await consume_override_token(session, user_id=account.id, token=request.override_token)
        profile = relax_allergies(profile, override.allergen)
        await log_safety_override(
            session,
            user_id=account.id,
            meal_request=request.request_text,
            allergen=override.allergen,
            builder_id="generate_meal",
        )

    precheck = pre_check_request(request.request_text, profile)
    if precheck.blocked:
        log_safety_enforcement(account.id, request.request_text[:80], precheck.violations, "blocked")
        raise SafetyBlockError(precheck.violations, precheck.message)

    guardrails = build_safety_guardrails(profile)
    diet = coerce_diet_type(request.diet_type or account.diet_type)
    options = diet_options_for_account(
        account,
        phase=request.phase,
        is_snack=request.is_snack or request.meal_type == "snack",
    )
    diet_modifier = get_diet_prompt_modifier(diet, options)

    attempts: List[Dict[str, Any]] = []
    feedback: Optional[List[str]] = None
    for attempt_number in range(1, settings.generation_max_attempts + 1):
        prompt = build_user_prompt(
            request,
            safety_block=guardrails.prompt_block,
            diet_modifier=diet_modifier,
            feedback=feedback,
        )
        raw_text = await asyncio.to_thread(_call_model, prompt)
        try:
            meal = normalize_generated_meal(
                parse_meal_json(raw_text), meal_type=request.meal_type, servings=request.servings
            )
        except ValueError as exc:
            logger.warning("Generation attempt %d unparseable for user %s: %s", attempt_number, account.id, exc)
            feedback = [f"FORMAT: {exc}. Return only the JSON object described in the instructions."]
            attempts.append({"attempt": attempt_number, "ok": False, "mealName": None, "violations": feedback})
            continue

        violations: List[str] = []
        safety = validate_meal_safety(meal, profile)
        violations.extend(f"SAFETY: contains forbidden ingredient \"{term}\"" for term in safety.violations)
        diet_result = validate_for_diet(meal, diet, options)
        violations.extend(diet_result.violations)
        violations.extend(macro_violations(meal["nutrition"], request.targets))

        attempts.append(
            {"attempt": attempt_number, "ok": not violations, "mealName": meal["name"], "violations": violations}
        )
        if violations:
            logger.info(
                "Generation attempt %d rejected for user %s (%d violations)",
                attempt_number,
                account.id,
                len(violations),
            )
            feedback = violations
            continue

        nutrition = meal["nutrition"]
        starch = detect_starchy_ingredients([ingredient["item"] for ingredient in meal["ingredients"]])
        result = {
            "meal": meal,
            "starch": {"hasStarchy": starch.has_starchy, "matchedTerms": starch.matched_terms},
            "macroPercentages": percent_breakdown(nutrition["protein"], nutrition["carbs"], nutrition["fat"]),
            "safetySummary": guardrails.summary_line,
            "appliedRules": diet_result.applied_rules,
            "warnings": diet_result.warnings,
        }
        log_safety_enforcement(
            account.id, meal["name"], [], "passed" if attempt_number == 1 else "regenerated"
        )
        run = await _persist_run(
            session,
            user_id=account.id,
            request=request,
            diet_type=diet.value,
            status=GenerationRunStatus.SUCCEEDED,
            attempts=attempts,
            result=result,
        )
        result["runId"] = str(run.id)
        result["attempts"] = len(attempts)
        return result

    last_violations = attempts[-1]["violations"] if attempts else []
    log_safety_enforcement(account.id, attempts[-1].get("mealName") or "unknown", last_violations, "blocked")
    run = await _persist_run(
        session,
        user_id=account.id,
        request=request,
        diet_type=diet.value,
        status=GenerationRunStatus.FAILED,
        attempts=attempts,
        result=None,
    )
    raise GenerationExhaustedError(attempts, str(run.id))


async def list_generation_runs(session: AsyncSession, *, user_id: str, limit: int = 20) -> List[MealGenerationRun]:
    stmt = (
        select(MealGenerationRun)
        .where(MealGenerationRun.user_id == user_id)
        .order_by(MealGenerationRun.created_at.desc())
        .limit(max(1, min(limit, 100)))
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())

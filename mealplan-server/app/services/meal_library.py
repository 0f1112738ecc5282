from __future__ import annotations

import json
import logging
import os
import threading
from copy import deepcopy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from fastapi import HTTPException

from ..config import get_settings
from .diet_rules import DietOptions, DietType, validate_for_diet
from .guardrails import SafetyProfile, build_forbidden_ingredients, scan_for_violations

logger = logging.getLogger(__name__)

CALORIE_TOLERANCE = 0.15
MACRO_TOLERANCE = 0.20
DEFAULT_QUALITY = 50.0
RECENT_PENALTY = 30.0
INTENT_WORD_BONUS = 10.0
MACRO_KEYS = ("calories", "protein", "carbs", "fat")

_LIBRARY_CACHE: dict[str, Any] | None = None
_LIBRARY_PATH: Path | None = None
_LIBRARY_MTIME: float | None = None
_LOCK = threading.Lock()


@dataclass
class LibrarySearch:
    meal_type: Optional[str] = None
    intent: str = ""
    diet: Optional[str] = None
    targets: Dict[str, float] = field(default_factory=dict)
    cravings: Dict[str, float] = field(default_factory=dict)
    recent_ids: List[str] = field(default_factory=list)
    limit: int = 5


def _candidate_paths(raw_path: str) -> list[Path]:
    candidate = Path(raw_path)
    if candidate.is_absolute():
        return [candidate]
    server_root = Path(__file__).resolve().parents[2]
    cwd = Path.cwd()
    return [
        (cwd / candidate).resolve(),
        (server_root / candidate).resolve(),
        (server_root.parent / candidate).resolve(),
    ]


def _resolve_library_path(raw_path: str) -> Path:
    for option in _candidate_paths(raw_path):
        if option.exists():
            return option
    return _candidate_paths(raw_path)[0]


def get_meal_library() -> dict[str, Any]:
    """Return the cached meal library, reloading when the file changes on disk."""
    settings = get_settings()
    if not settings.meal_library_path:
        raise HTTPException(status_code=503, detail="Meal library path is not configured")
    library_path = _resolve_library_path(settings.meal_library_path)
    if not library_path.exists():
        raise HTTPException(status_code=503, detail=f"Meal library not found at {library_path}")

    global _LIBRARY_CACHE, _LIBRARY_MTIME, _LIBRARY_PATH
    mtime = os.path.getmtime(library_path)
    with _LOCK:
        if _LIBRARY_CACHE is not None and _LIBRARY_PATH == library_path and _LIBRARY_MTIME == mtime:
            return deepcopy(_LIBRARY_CACHE)
        with library_path.open("r", encoding="utf-8") as handle:
            library = json.load(handle)
        logger.info("Loaded meal library from %s (%d meals)", library_path, len(library.get("meals", [])))
        _LIBRARY_CACHE = library
        _LIBRARY_PATH = library_path
        _LIBRARY_MTIME = mtime
        return deepcopy(library)


def _lower(values: Iterable[Any]) -> set[str]:
    return {str(v).strip().lower().replace("-", "_") for v in values or [] if str(v).strip()}


def matches_allergens(meal: Mapping[str, Any], allergies: Sequence[str]) -> bool:
    """True when the meal declares none of the user's allergens."""
    return not (_lower(meal.get("allergens") or []) & _lower(allergies))


def matches_diet(meal: Mapping[str, Any], diet: Optional[str]) -> bool:
    if not diet or diet.lower() == DietType.NONE.value:
        return True
    key = diet.strip().lower().replace("-", "_")
    if key in _lower(meal.get("dietTags") or []):
        return True
    if key in {item.value for item in DietType}:
        return validate_for_diet(meal, key, DietOptions(is_snack=meal.get("mealType") == "snack")).is_valid
    return False


def _nutrition_value(meal: Mapping[str, Any], key: str) -> Optional[float]:
    nutrition = meal.get("nutrition") or {}
    value = nutrition.get(key)
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def within_tolerance(actual: float, target: float, tolerance: float) -> bool:
    return abs(actual - target) <= target * tolerance


def matches_macros(meal: Mapping[str, Any], targets: Mapping[str, Any]) -> bool:
    for key in MACRO_KEYS:
        target = targets.get(key)
        if not target or float(target) <= 0:
            continue
        actual = _nutrition_value(meal, key)
        if actual is None:
            return False
        tolerance = CALORIE_TOLERANCE if key == "calories" else MACRO_TOLERANCE
        if not within_tolerance(actual, float(target), tolerance):
            return False
    return True


def score_meal(
    meal: Mapping[str, Any],
    intent: str,
    recent_ids: Sequence[str],
    cravings: Mapping[str, float],
) -> float:
    score = float(meal.get("quality") or DEFAULT_QUALITY)
    if meal.get("id") in set(recent_ids or []):
        score -= RECENT_PENALTY
    haystack = " ".join([str(meal.get("name") or "")] + [str(tag) for tag in meal.get("tags") or []]).lower()
    for word in {w for w in (intent or "").lower().split() if len(w) > 2}:
        if word in haystack:
            score += INTENT_WORD_BONUS
    tags = _lower(meal.get("tags") or [])
    for tag, weight in (cravings or {}).items():
        if tag.strip().lower().replace("-", "_") in tags:
            score += float(weight)
    return score


def search_library(
    request: LibrarySearch,
    profile: SafetyProfile,
    meals: Optional[Sequence[Mapping[str, Any]]] = None,
) -> List[Dict[str, Any]]:
    """Filter the library for the caller and return the best `limit` meals with their scores."""
    if meals is None:
        meals = get_meal_library().get("meals", [])
    forbidden = build_forbidden_ingredients(profile)
    ranked: List[tuple[float, Dict[str, Any]]] = []
    for meal in meals:
        if request.meal_type and str(meal.get("mealType") or "").lower() != request.meal_type.lower():
            continue
        if not matches_allergens(meal, profile.allergies):
            continue
        if not matches_diet(meal, request.diet):
            continue
        if forbidden and scan_for_violations(meal, forbidden):
            continue
        if not matches_macros(meal, request.targets):
            continue
        score = score_meal(meal, request.intent, request.recent_ids, request.cravings)
        ranked.append((score, dict(meal)))
    ranked.sort(key=lambda pair: (-pair[0], str(pair[1].get("name") or "")))
    results = []
    for score, meal in ranked[: max(request.limit, 1)]:
        meal["score"] = round(score, 2)
        results.append(meal)
    logger.info(
        "Library search meal_type=%s diet=%s matched=%d returned=%d",
        request.meal_type,
        request.diet,
        len(ranked),
        len(results),
    )
    return results

"""Hard rules and scoring for library meal templates used by the weekly planner."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

MAIN_MEAL_TYPES = ("lunch", "dinner")


@dataclass(frozen=True)
class HardRules:
    max_unique_ingredients_per_week: int = 25
    min_veg_cups_per_day: float = 2.0
    min_veg_cups_per_main_meal: float = 2.0
    max_exotic_per_week: int = 3
    min_unique_per_type: Mapping[str, int] = field(
        default_factory=lambda: {"breakfast": 3, "lunch": 3, "dinner": 3, "snack": 0}
    )
    max_repeats_per_week: int = 2
    min_distinct_cuisines_per_week: int = 3
    protein_per_main_meal: tuple[float, float] = (30.0, 40.0)
    carb_pct_range: tuple[float, float] = (0.45, 0.65)
    min_calories_for_carb_check: float = 120.0
    max_cook_minutes_per_meal: int = 45
    max_ingredients_per_recipe: int = 8
    diabetes_badge: str = "diabetes_friendly"
    exotic_ingredients: tuple[str, ...] = ("saffron", "black garlic", "sumac", "yuzu", "asafoetida")


DEFAULT_RULES = HardRules()


@dataclass
class PlannerUser:
    allergens: List[str] = field(default_factory=list)
    medical_flags: List[str] = field(default_factory=list)
    dislikes: List[str] = field(default_factory=list)
    veg_opt_out: bool = False
    diet: Optional[str] = None
    preferred_cuisines: List[str] = field(default_factory=list)


@dataclass
class VarietyResult:
    repeats: int
    cuisines: int
    ok: bool


@dataclass
class WeeklyCapResult:
    selected: List[Dict[str, Any]]
    skipped: List[Dict[str, Any]]
    unique_ingredient_count: int
    exotic_count: int


def _lower_set(values: Iterable[Any]) -> set[str]:
    return {str(v).strip().lower() for v in values or [] if str(v).strip()}


def _ingredient_names(template: Mapping[str, Any]) -> List[str]:
    names: List[str] = []
    for ingredient in template.get("ingredients") or []:
        name = ingredient.get("name") if isinstance(ingredient, Mapping) else ingredient
        if isinstance(name, str) and name.strip():
            names.append(name.strip().lower())
    return names


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _badges(template: Mapping[str, Any]) -> set[str]:
    return {badge.replace("-", "_") for badge in _lower_set(template.get("badges") or [])}


def total_minutes(template: Mapping[str, Any]) -> float:
    return (_number(template.get("prepTime")) or 0.0) + (_number(template.get("cookTime")) or 0.0)


def carb_share(template: Mapping[str, Any]) -> Optional[float]:
    calories = _number(template.get("calories")) or 0.0
    carbs = _number(template.get("carbs"))
    if carbs is None or calories <= 0:
        return None
    return carbs * 4 / calories


def reject_reason(
    template: Mapping[str, Any],
    user: PlannerUser,
    rules: HardRules = DEFAULT_RULES,
) -> Optional[str]:
    """Return the first failing rule code for a template, or None when it is acceptable."""
    meal_type = str(template.get("type") or "").lower()

    if _lower_set(user.allergens) & _lower_set(template.get("allergens") or []):
        return "allergen"
    flags = {flag.replace("-", "_") for flag in _lower_set(user.medical_flags)}
    if flags & {"diabetes", "diabetic", "diabetes_type_1", "diabetes_type_2"}:
        if rules.diabetes_badge not in _badges(template):
            return "missing-diabetes-badge"

    names = _ingredient_names(template)
    if _lower_set(user.dislikes) & set(names):
        return "contains-disliked-ingredient"

    if len(names) > rules.max_ingredients_per_recipe:
        return "too-many-ingredients"
    if total_minutes(template) > rules.max_cook_minutes_per_meal:
        return "too-long-to-cook"

    if meal_type in MAIN_MEAL_TYPES:
        protein = _number(template.get("protein"))
        if protein is None:
            return "missing-protein"
        low, high = rules.protein_per_main_meal
        if protein < low or protein > high:
            return "protein-out-of-range"
        vegetables = _number(template.get("vegetables")) or 0.0
        if not user.veg_opt_out and vegetables < rules.min_veg_cups_per_main_meal:
            return "not-enough-veg"

    calories = _number(template.get("calories")) or 0.0
    share = carb_share(template)
    if calories >= rules.min_calories_for_carb_check and share is not None:
        low, high = rules.carb_pct_range
        if share < low or share > high:
            return "carb-percent-out-of-range"
    return None


def score_template(
    template: Mapping[str, Any],
    user: PlannerUser,
    rules: HardRules = DEFAULT_RULES,
) -> float:
    if reject_reason(template, user, rules) is not None:
        return 0.0

    score = 100.0
    if str(template.get("type") or "").lower() in MAIN_MEAL_TYPES:
        low, high = rules.protein_per_main_meal
        protein = _number(template.get("protein")) or 0.0
        score -= abs(protein - (low + high) / 2) * 1.0

    share = carb_share(template)
    if share is not None:
        low, high = rules.carb_pct_range
        score -= abs(share - (low + high) / 2) * 100 * 0.5

    score -= total_minutes(template) / rules.max_cook_minutes_per_meal * 10
    score -= len(_ingredient_names(template)) * 0.5

    cuisine = str(template.get("cuisine") or "").strip().lower()
    if cuisine and cuisine in _lower_set(user.preferred_cuisines):
        score += 10
    if user.diet and user.diet.lower() in _lower_set(template.get("dietTags") or []):
        score += 5
    vegetables = _number(template.get("vegetables")) or 0.0
    score += min(vegetables, rules.min_veg_cups_per_day) * 2.5
    return round(max(score, 1.0), 2)


def enforce_weekly_caps(
    templates: Sequence[Mapping[str, Any]],
    rules: HardRules = DEFAULT_RULES,
) -> WeeklyCapResult:
    """Greedily keep templates in order while the week stays inside the ingredient caps."""
    exotic = set(rules.exotic_ingredients)
    unique: set[str] = set()
    exotic_seen: set[str] = set()
    selected: List[Dict[str, Any]] = []
    skipped: List[Dict[str, Any]] = []
    for template in templates:
        names = set(_ingredient_names(template))
        new_unique = unique | names
        new_exotic = exotic_seen | (names & exotic)
        if (
            len(new_unique) > rules.max_unique_ingredients_per_week
            or len(new_exotic) > rules.max_exotic_per_week
        ):
            skipped.append(dict(template))
            continue
        unique, exotic_seen = new_unique, new_exotic
        selected.append(dict(template))
    return WeeklyCapResult(
        selected=selected,
        skipped=skipped,
        unique_ingredient_count=len(unique),
        exotic_count=len(exotic_seen),
    )


def meets_variety(templates: Sequence[Mapping[str, Any]], rules: HardRules = DEFAULT_RULES) -> VarietyResult:
    """Check distinct templates per meal type, repeats and cuisine spread across a week."""
    by_type: Dict[str, set[str]] = {meal_type: set() for meal_type in rules.min_unique_per_type}
    cuisines: set[str] = set()
    seen: Counter[str] = Counter()
    for template in templates:
        key = str(template.get("slug") or template.get("id") or template.get("name") or "")
        meal_type = str(template.get("type") or "").lower()
        if meal_type in by_type:
            by_type[meal_type].add(key)
        cuisine = str(template.get("cuisine") or "").strip().lower()
        if cuisine:
            cuisines.add(cuisine)
        seen[key] += 1

    repeats = sum(count - 1 for count in seen.values() if count > 1)
    types_ok = all(len(by_type[meal_type]) >= minimum for meal_type, minimum in rules.min_unique_per_type.items())
    return VarietyResult(
        repeats=repeats,
        cuisines=len(cuisines),
        ok=types_ok
        and repeats <= rules.max_repeats_per_week
        and len(cuisines) >= rules.min_distinct_cuisines_per_week,
    )


def planner_user_from_account(account: Any, *, preferred_cuisines: Optional[List[str]] = None) -> PlannerUser:
    conditions = list(getattr(account, "health_conditions", None) or [])
    diet_type = getattr(account, "diet_type", None)
    if diet_type == "diabetic":
        conditions.append("diabetes")
    return PlannerUser(
        allergens=list(getattr(account, "allergies", None) or []),
        medical_flags=conditions,
        dislikes=list(getattr(account, "avoid_ingredients", None) or []),
        diet=diet_type,
        preferred_cuisines=list(preferred_cuisines or []),
    )

"""Diet-specific rule packs layered on top of the allergy guardrails.

Each pack contributes blocked terms, a prompt modifier for the generator and a
validator run against generated meals. Validators never raise; they return a
DietValidationResult the generation loop feeds back into the next attempt.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .guardrails import meal_text

logger = logging.getLogger(__name__)


class DietType(str, Enum):
    NONE = "none"
    ANTI_INFLAMMATORY = "anti_inflammatory"
    DIABETIC = "diabetic"
    GLP1 = "glp1"
    PERFORMANCE = "performance"
    BEACHBODY = "beachbody"
    PROCARE = "procare"


class PerformancePhase(str, Enum):
    CARB = "carb"
    LOW_CARB = "low-carb"
    NO_CARB = "no-carb"
    REFEED = "refeed"
    OFFSEASON = "offseason"


class GlucoseState(str, Enum):
    LOW = "low"
    LOW_NORMAL = "low-normal"
    IN_RANGE = "in-range"
    ELEVATED = "elevated"
    HIGH_RISK = "high-risk"


@dataclass(frozen=True)
class PhaseCaps:
    max_carbs: float
    max_fat: float
    carbs_allowed: bool
    notes: str


PHASE_CAPS: Dict[PerformancePhase, PhaseCaps] = {
    PerformancePhase.CARB: PhaseCaps(60, 8, True, "Carb day - clean carbs with each meal, very low fat"),
    PerformancePhase.LOW_CARB: PhaseCaps(25, 10, True, "Low carb day - minimal carbs, slightly higher fat allowed"),
    PerformancePhase.NO_CARB: PhaseCaps(10, 12, False, "No carb day - protein + veggies only, no starchy carbs"),
    PerformancePhase.REFEED: PhaseCaps(80, 5, True, "Refeed day - high carbs, extremely low fat"),
    PerformancePhase.OFFSEASON: PhaseCaps(70, 15, True, "Offseason - more flexibility but still clean eating"),
}

PERFORMANCE_MIN_PROTEIN = 25

PERFORMANCE_BLOCKED = [
    "cheese", "cheddar", "mozzarella", "parmesan", "feta", "cream cheese", "brie",
    "cream", "heavy cream", "whipping cream", "sour cream", "half and half",
    "butter", "margarine", "ghee",
    "bacon", "sausage", "pork shoulder", "pork belly", "pork ribs",
    "fatty beef", "ribeye", "prime rib", "beef brisket",
    "chicken thighs", "chicken wings", "dark meat chicken", "chicken skin",
    "duck", "lamb", "goat",
    "deli meat", "lunch meat", "cold cuts", "salami", "pepperoni", "prosciutto",
    "cured meats", "jerky", "beef jerky", "turkey jerky",
    "canned soup", "canned chili", "canned stew",
    "soy sauce", "teriyaki sauce", "hoisin sauce", "oyster sauce",
    "worcestershire sauce", "fish sauce", "miso paste",
    "bouillon", "stock cubes", "instant broth",
    "pickles", "olives", "capers", "anchovies",
    "hot dogs", "bratwurst", "kielbasa",
    "honey", "maple syrup", "agave", "corn syrup", "molasses",
    "fruit juice", "orange juice", "apple juice", "grape juice",
    "grapes", "banana", "mango", "pineapple", "dried fruit", "raisins", "dates",
    "cake", "cookies", "brownies", "frozen yogurt",
    "candy", "sweetened yogurt", "flavored yogurt",
    "granola", "granola bars", "protein bars", "energy bars",
    "jam", "jelly", "preserves", "marmalade",
    "sugar", "brown sugar", "powdered sugar", "cane sugar",
    "nuts", "almonds", "walnuts", "pecans", "cashews", "macadamia", "pistachios",
    "peanut butter", "almond butter", "nut butter",
    "coconut", "coconut milk", "coconut cream", "coconut oil",
    "avocado", "guacamole",
]
PERFORMANCE_SNACK_FORBIDDEN = [
    "protein bars", "energy bars", "granola bars",
    "nuts", "trail mix", "nut butter",
    "chips", "crackers", "pretzels",
    "fruit", "dried fruit", "banana", "apple",
    "yogurt with fruit", "flavored yogurt",
]
PERFORMANCE_BLOCKED_METHODS = ["deep fried", "fried", "pan fried", "sautéed", "sauteed", "battered", "breaded", "crusted"]
PERFORMANCE_OIL_TERMS = ["olive oil", "vegetable oil", "coconut oil", "canola oil", "butter", "margarine"]
PERFORMANCE_NO_CARB_STARCHES = ["rice", "oats", "oatmeal", "sweet potato", "potato", "quinoa", "cream of rice"]
PERFORMANCE_FORBIDDEN_SAUCES = [
    "mayo", "mayonnaise", "ranch", "caesar", "alfredo", "cream sauce", "cheese sauce", "bbq sauce", "barbecue",
]
PERFORMANCE_DESSERT_TERMS = ["dessert", "treat", "indulgent", "decadent", "sweet", "chocolate", "caramel", "ice cream"]

GLP1_BLOCKED = [
    "butter", "cream", "heavy cream", "whipping cream", "sour cream",
    "cream cheese", "mascarpone", "brie", "camembert",
    "mayonnaise", "mayo", "aioli", "lard", "shortening", "margarine",
    "fried chicken", "fried fish", "french fries", "fries",
    "fried rice", "fried eggs", "deep fried", "breaded",
    "tempura", "fritters", "onion rings",
    "ribeye", "prime rib", "t-bone", "porterhouse",
    "pork belly", "bacon", "sausage", "bratwurst",
    "chorizo", "kielbasa", "hot dog", "frankfurter",
    "salami", "pepperoni", "prosciutto", "pancetta",
    "lamb chop", "lamb shoulder", "duck", "goose",
    "cheddar", "mozzarella", "parmesan", "swiss",
    "gouda", "provolone", "blue cheese", "feta",
    "american cheese", "velveeta", "cheese sauce",
    "honey", "maple syrup", "agave", "molasses",
    "corn syrup", "high fructose corn syrup",
    "cake", "cookies", "brownies", "pie", "pastry",
    "donut", "doughnut", "muffin", "croissant",
    "ice cream", "gelato", "frozen yogurt",
    "candy", "chocolate bar", "caramel",
    "pancakes", "waffles", "french toast",
    "mango", "banana", "grapes", "pineapple",
    "dried fruit", "raisins", "dates", "figs",
    "fruit juice", "orange juice", "apple juice",
    "soda", "cola", "sparkling water", "carbonated", "fizzy", "seltzer", "tonic water",
    "alfredo", "alfredo sauce", "hollandaise", "bearnaise",
    "ranch dressing", "caesar dressing", "blue cheese dressing", "thousand island",
    "giant", "loaded", "stuffed", "double", "triple",
    "super-sized", "family size", "jumbo", "mega",
]
GLP1_FORBIDDEN_METHODS = [
    "deep fry", "deep-fry", "deep fried", "deep-fried",
    "pan fry", "pan-fry", "pan fried", "pan-fried",
    "fry", "fried", "frying", "batter", "battered", "breaded", "breading",
]
GLP1_MAX_CALORIES = 400
GLP1_MAX_FAT = 12
GLP1_MIN_PROTEIN = 15

DIABETIC_BLOCKED = [
    "white sugar", "brown sugar", "corn syrup", "high fructose corn syrup",
    "candy", "soda", "fruit juice", "white bread", "white rice",
    "regular pasta", "potato chips", "french fries", "donuts", "pastries",
]
DIABETIC_PREFERRED = [
    "leafy greens", "broccoli", "cauliflower", "zucchini", "asparagus",
    "chicken breast", "salmon", "turkey", "eggs", "greek yogurt",
    "olive oil", "avocado", "nuts", "seeds", "legumes",
]
DIABETIC_DEFAULT_CARB_CEILING = 45.0
DIABETIC_DEFAULT_FIBER_MIN = 5.0
DIABETIC_DEFAULT_GI_CAP = 55
GLUCOSE_STALE_MINUTES = 240
GLUCOSE_CARB_CEILINGS = {GlucoseState.ELEVATED: 25.0, GlucoseState.HIGH_RISK: 15.0}

ANTI_INFLAMMATORY_BLOCKED = [
    "hot dog", "bacon", "sausage", "salami", "pepperoni", "deli meat",
    "white sugar", "corn syrup", "soda", "candy",
    "deep fried", "fried", "french fries", "margarine", "shortening",
    "vegetable oil", "corn oil", "soybean oil",
]
ANTI_INFLAMMATORY_WARN = ["beef", "steak", "pork", "lamb"]

BEACHBODY_BLOCKED = ["fried", "deep fried", "soda", "candy", "cake", "cookies", "white bread", "cream sauce"]
PROCARE_BLOCKED = ["alcohol", "wine", "beer", "energy drink", "raw oysters", "unpasteurized"]

PROMPT_MODIFIERS: Dict[DietType, str] = {
    DietType.ANTI_INFLAMMATORY: (
        "ANTI-INFLAMMATORY REQUIREMENTS: emphasise omega-3 rich fish, leafy greens, berries, olive oil, "
        "turmeric and ginger. Avoid processed meats, refined sugar, fried food and seed oils."
    ),
    DietType.GLP1: (
        "GLP-1 MEDICATION REQUIREMENTS: small portions only (max "
        f"{GLP1_MAX_CALORIES} kcal, max {GLP1_MAX_FAT} g fat, at least {GLP1_MIN_PROTEIN} g protein). "
        "Soft, gentle, easy-to-digest textures. No fried, greasy, carbonated or very sweet foods."
    ),
    DietType.PERFORMANCE: (
        "COMPETITION PREP REQUIREMENTS: lean protein 30-50 g per meal, cooking spray only, grill/bake/steam/air fry. "
        "No cheese, butter, creamy sauces, desserts or processed meats."
    ),
    DietType.BEACHBODY: (
        "BEACH BODY REQUIREMENTS: high protein, high fibre, lean cooking methods, no fried foods or sugary desserts."
    ),
    DietType.PROCARE: (
        "CLINICIAN-GUIDED REQUIREMENTS: follow the care team's macro targets exactly; no alcohol or unpasteurised foods."
    ),
}

APPLIED_RULES: Dict[DietType, List[str]] = {
    DietType.NONE: [],
    DietType.ANTI_INFLAMMATORY: ["anti_inflammatory_blocklist", "red_meat_warning"],
    DietType.DIABETIC: ["diabetic_blocklist", "carb_ceiling", "fiber_minimum", "glucose_context"],
    DietType.GLP1: ["glp1_blocklist", "glp1_cooking_methods", "glp1_portion_caps"],
    DietType.PERFORMANCE: [
        "performance_blocklist",
        "performance_cooking_methods",
        "performance_fat_sources",
        "performance_phase_macros",
        "performance_sauces",
        "performance_desserts",
    ],
    DietType.BEACHBODY: ["beachbody_blocklist"],
    DietType.PROCARE: ["procare_blocklist"],
}


@dataclass
class DietValidationResult:
    is_valid: bool = True
    violations: List[str] = field(default_factory=list)
    blocked_ingredients: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    applied_rules: List[str] = field(default_factory=list)

    def add_violation(self, message: str, blocked: Optional[str] = None) -> None:
        self.violations.append(message)
        self.is_valid = False
        if blocked and blocked not in self.blocked_ingredients:
            self.blocked_ingredients.append(blocked)


@dataclass
class DietOptions:
    phase: PerformancePhase = PerformancePhase.CARB
    is_snack: bool = False
    carb_ceiling: Optional[float] = None
    fiber_min: Optional[float] = None
    glucose: Optional[Mapping[str, Any]] = None
    now: Optional[datetime] = None


def coerce_diet_type(value: Any) -> DietType:
    if isinstance(value, DietType):
        return value
    key = str(value or "").strip().lower().replace("-", "_").replace(" ", "_")
    if key in ("glp_1",):
        key = "glp1"
    try:
        return DietType(key or DietType.NONE.value)
    except ValueError:
        logger.info("Unknown diet type %r; treating as none", value)
        return DietType.NONE


def _contains_word(text: str, term: str) -> bool:
    return re.search(rf"\b{re.escape(term)}\b", text, re.IGNORECASE) is not None


def _macro(meal: Mapping[str, Any], key: str) -> Optional[float]:
    source = meal.get("nutrition") or meal.get("macros") or {}
    value = source.get(key)
    if value is None and key == "calories":
        value = source.get("kcal")
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _scan_blocked(result: DietValidationResult, text: str, terms: Iterable[str], label: str) -> None:
    for term in terms:
        if _contains_word(text, term):
            result.add_violation(f'BLOCKED: "{term}" is not allowed for {label}', term)


def classify_glucose(value_mgdl: float, context: str) -> GlucoseState:
    if value_mgdl < 70:
        return GlucoseState.LOW
    if value_mgdl <= 80:
        return GlucoseState.LOW_NORMAL
    in_range_cap = 120 if (context or "").upper() in ("FASTED", "PRE_MEAL") else 140
    if value_mgdl <= in_range_cap:
        return GlucoseState.IN_RANGE
    if value_mgdl <= 180:
        return GlucoseState.ELEVATED
    return GlucoseState.HIGH_RISK


def _fresh_glucose_state(glucose: Optional[Mapping[str, Any]], now: datetime) -> Optional[tuple[float, GlucoseState]]:
    if not glucose or glucose.get("valueMgdl") is None:
        return None
    recorded_raw = glucose.get("recordedAt")
    if recorded_raw:
        recorded = recorded_raw if isinstance(recorded_raw, datetime) else datetime.fromisoformat(str(recorded_raw))
        if recorded.tzinfo is None:
            recorded = recorded.replace(tzinfo=timezone.utc)
        if (now - recorded).total_seconds() / 60 > GLUCOSE_STALE_MINUTES:
            return None
    value = float(glucose["valueMgdl"])
    return value, classify_glucose(value, str(glucose.get("context") or ""))


def build_glucose_guidance(glucose: Optional[Mapping[str, Any]], now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    fresh = _fresh_glucose_state(glucose, now)
    if fresh is None:
        return "No recent glucose data available. Generate a balanced diabetic-friendly meal with moderate carbohydrates."
    value, state = fresh
    if state is GlucoseState.LOW:
        return (
            f"Current glucose is {value:g} mg/dL (LOW). Generate a meal with adequate carbohydrates (30-45g) "
            "to help stabilize blood sugar while avoiding rapid spikes."
        )
    if state is GlucoseState.LOW_NORMAL:
        return f"Current glucose is {value:g} mg/dL (lower-normal range). Generate a balanced meal with 25-35g carbohydrates."
    if state is GlucoseState.IN_RANGE:
        return f"Current glucose is {value:g} mg/dL (in optimal range). Keep carbs moderate (20-35g)."
    if state is GlucoseState.ELEVATED:
        return (
            f"Current glucose is {value:g} mg/dL (elevated above target). Generate a lower-carb meal (15-25g carbs max) "
            "with emphasis on protein and fiber."
        )
    return (
        f"Current glucose is {value:g} mg/dL (high - needs attention). Generate a very low-carb meal (under 15g carbs) "
        "with high protein and fiber. Prioritize non-starchy vegetables."
    )


def diabetic_carb_ceiling(options: DietOptions) -> float:
    ceiling = options.carb_ceiling or DIABETIC_DEFAULT_CARB_CEILING
    fresh = _fresh_glucose_state(options.glucose, options.now or datetime.now(timezone.utc))
    if fresh is not None:
        tightened = GLUCOSE_CARB_CEILINGS.get(fresh[1])
        if tightened is not None:
            ceiling = min(ceiling, tightened)
    return ceiling


def get_diet_prompt_modifier(diet_type: Any, options: Optional[DietOptions] = None) -> str:
    diet = coerce_diet_type(diet_type)
    options = options or DietOptions()
    if diet is DietType.NONE:
        return ""
    if diet is DietType.DIABETIC:
        ceiling = diabetic_carb_ceiling(options)
        fiber = options.fiber_min or DIABETIC_DEFAULT_FIBER_MIN
        return "\n".join(
            [
                "REAL-TIME GLUCOSE CONTEXT:",
                build_glucose_guidance(options.glucose, options.now),
                "DIABETIC MEAL REQUIREMENTS:",
                f"- Maximum carbohydrates: {ceiling:g}g per meal",
                f"- Minimum fiber: {fiber:g}g",
                f"- Prioritize low glycemic index ingredients (under GI {DIABETIC_DEFAULT_GI_CAP})",
                f"- Prefer: {', '.join(DIABETIC_PREFERRED[:8])}",
                f"- Avoid: {', '.join(DIABETIC_BLOCKED[:8])}",
            ]
        )
    if diet is DietType.PERFORMANCE:
        caps = PHASE_CAPS[options.phase]
        return (
            f"{PROMPT_MODIFIERS[diet]}\nPHASE: {options.phase.value} - {caps.notes}. "
            f"Max {caps.max_carbs:g} g carbs and {caps.max_fat:g} g fat per meal."
        )
    return PROMPT_MODIFIERS.get(diet, "")


def validate_performance_meal(meal: Mapping[str, Any], options: DietOptions) -> DietValidationResult:
    result = DietValidationResult(applied_rules=list(APPLIED_RULES[DietType.PERFORMANCE]))
    text = meal_text(meal)
    caps = PHASE_CAPS[options.phase]

    for term in PERFORMANCE_BLOCKED:
        if _contains_word(text, term):
            result.add_violation(f'BLOCKED: "{term}" is not allowed in competition meals', term)
    if options.is_snack:
        for term in PERFORMANCE_SNACK_FORBIDDEN:
            if _contains_word(text, term):
                result.add_violation(f'BLOCKED: "{term}" is not allowed in competition snacks', term)

    for method in PERFORMANCE_BLOCKED_METHODS:
        if method in text:
            result.add_violation(
                f'COOKING: "{method}" cooking method not allowed - use air fry, bake, grill, or steam'
            )

    if "oil" in text and "spray" not in text:
        for oil in PERFORMANCE_OIL_TERMS:
            if oil in text:
                result.add_violation(f'FAT: "{oil}" not allowed - use cooking spray only', oil)

    if options.phase is PerformancePhase.NO_CARB:
        for carb in PERFORMANCE_NO_CARB_STARCHES:
            if carb in text:
                result.add_violation(f'CARBS: "{carb}" not allowed on NO-CARB days - vegetables only')

    fat = _macro(meal, "fat")
    carbs = _macro(meal, "carbs")
    protein = _macro(meal, "protein")
    if fat is not None and fat > caps.max_fat:
        result.add_violation(
            f"MACROS: Fat too high ({fat:g}g) - maximum {caps.max_fat:g}g for {options.phase.value} phase"
        )
    if carbs is not None and carbs > caps.max_carbs:
        result.add_violation(
            f"MACROS: Carbs too high ({carbs:g}g) - maximum {caps.max_carbs:g}g for {options.phase.value} phase"
        )
    if not options.is_snack and protein is not None and protein < PERFORMANCE_MIN_PROTEIN:
        result.add_violation(f"MACROS: Protein too low ({protein:g}g) - competition meals need 30-50g protein")

    for sauce in PERFORMANCE_FORBIDDEN_SAUCES:
        if sauce in text:
            result.add_violation(f'SAUCE: "{sauce}" not allowed - use mustard, hot sauce, or lemon only', sauce)
    for term in PERFORMANCE_DESSERT_TERMS:
        if term in text:
            result.add_violation(f'FORBIDDEN: "{term}" - no desserts or treats in competition prep')

    if result.violations:
        result.warnings.append(
            f'Meal "{meal.get("name") or meal.get("title") or "meal"}" has {len(result.violations)} competition rule violation(s)'
        )
    return result


def validate_glp1_meal(meal: Mapping[str, Any]) -> DietValidationResult:
    result = DietValidationResult(applied_rules=list(APPLIED_RULES[DietType.GLP1]))
    text = meal_text(meal)
    _scan_blocked(result, text, GLP1_BLOCKED, "GLP-1 meals")
    for method in GLP1_FORBIDDEN_METHODS:
        if _contains_word(text, method):
            result.add_violation(f'COOKING: "{method}" is hard to digest on GLP-1 medication')
            break
    calories = _macro(meal, "calories")
    fat = _macro(meal, "fat")
    protein = _macro(meal, "protein")
    if calories is not None and calories > GLP1_MAX_CALORIES:
        result.add_violation(f"PORTION: {calories:g} kcal exceeds the {GLP1_MAX_CALORIES} kcal GLP-1 cap")
    if fat is not None and fat > GLP1_MAX_FAT:
        result.add_violation(f"MACROS: Fat too high ({fat:g}g) - maximum {GLP1_MAX_FAT}g on GLP-1")
    if protein is not None and protein < GLP1_MIN_PROTEIN:
        result.add_violation(f"MACROS: Protein too low ({protein:g}g) - at least {GLP1_MIN_PROTEIN}g on GLP-1")
    return result


def validate_diabetic_meal(meal: Mapping[str, Any], options: DietOptions) -> DietValidationResult:
    result = DietValidationResult(applied_rules=list(APPLIED_RULES[DietType.DIABETIC]))
    text = meal_text(meal)
    _scan_blocked(result, text, DIABETIC_BLOCKED, "diabetic meals")
    ceiling = diabetic_carb_ceiling(options)
    carbs = _macro(meal, "carbs")
    if carbs is not None and carbs > ceiling:
        result.add_violation(f"CARBS: {carbs:g}g exceeds the {ceiling:g}g diabetic carb ceiling")
    fiber = _macro(meal, "fiber")
    fiber_min = options.fiber_min or DIABETIC_DEFAULT_FIBER_MIN
    if fiber is not None and fiber < fiber_min:
        result.add_violation(f"FIBER: {fiber:g}g is below the {fiber_min:g}g minimum")
    elif fiber is None:
        result.warnings.append("Fiber not reported; fiber minimum not checked")
    return result


def validate_anti_inflammatory_meal(meal: Mapping[str, Any]) -> DietValidationResult:
    result = DietValidationResult(applied_rules=list(APPLIED_RULES[DietType.ANTI_INFLAMMATORY]))
    text = meal_text(meal)
    _scan_blocked(result, text, ANTI_INFLAMMATORY_BLOCKED, "anti-inflammatory meals")
    for term in ANTI_INFLAMMATORY_WARN:
        if _contains_word(text, term):
            result.warnings.append(f'"{term}" is red meat; limit to occasional servings')
    return result


def validate_for_diet(
    meal: Mapping[str, Any],
    diet_type: Any,
    options: Optional[DietOptions] = None,
) -> DietValidationResult:
    diet = coerce_diet_type(diet_type)
    options = options or DietOptions()
    if diet is DietType.PERFORMANCE:
        return validate_performance_meal(meal, options)
    if diet is DietType.GLP1:
        return validate_glp1_meal(meal)
    if diet is DietType.DIABETIC:
        return validate_diabetic_meal(meal, options)
    if diet is DietType.ANTI_INFLAMMATORY:
        return validate_anti_inflammatory_meal(meal)
    if diet is DietType.BEACHBODY:
        result = DietValidationResult(applied_rules=list(APPLIED_RULES[diet]))
        _scan_blocked(result, meal_text(meal), BEACHBODY_BLOCKED, "beach body meals")
        return result
    if diet is DietType.PROCARE:
        result = DietValidationResult(applied_rules=list(APPLIED_RULES[diet]))
        _scan_blocked(result, meal_text(meal), PROCARE_BLOCKED, "clinician-guided meals")
        return result
    return DietValidationResult()


def diet_options_for_account(account: Any, *, phase: Any = None, is_snack: bool = False) -> DietOptions:
    settings = dict(getattr(account, "diet_settings", None) or {})
    raw_phase = phase or settings.get("performancePhase") or PerformancePhase.CARB.value
    try:
        resolved_phase = PerformancePhase(raw_phase)
    except ValueError:
        raise ValueError(f"Unknown performance phase '{raw_phase}'")
    return DietOptions(
        phase=resolved_phase,
        is_snack=is_snack,
        carb_ceiling=settings.get("carbCeiling"),
        fiber_min=settings.get("fiberMin"),
        glucose=getattr(account, "latest_glucose", None),
    )

"""Allergy and dietary-restriction enforcement shared by every meal generator.

Allergies and restrictions expand into concrete ingredient/dish terms. Those
terms feed the prompt block sent to the model and the word-boundary scans run
against requests (before generation) and generated meals (after generation).
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Mapping, Sequence

from ..observability import get_safety_audit_logger

logger = logging.getLogger(__name__)

PROMPT_FORBIDDEN_LIMIT = 50

_LACTOSE_TERMS = [
    "milk", "whole milk", "skim milk", "2% milk", "buttermilk",
    "ice cream", "gelato", "soft serve", "frozen yogurt",
    "yogurt", "greek yogurt", "plain yogurt", "flavored yogurt", "kefir",
    "whipped cream", "heavy cream", "half and half", "half-and-half",
    "condensed milk", "evaporated milk", "milk powder", "dried milk",
    "cottage cheese", "ricotta", "fresh mozzarella", "brie", "camembert",
    "sour cream", "creme fraiche", "custard", "pudding",
    "milk chocolate", "hot chocolate", "latte", "cappuccino", "milkshake",
    "cream sauce", "alfredo", "bechamel", "white sauce", "queso",
    "lactose", "whey protein concentrate",
]

ALLERGEN_EXPANSION: Dict[str, List[str]] = {
    "shellfish": [
        "shellfish", "shrimp", "shrimps", "prawn", "prawns", "crab", "crabs", "crabmeat", "crab meat",
        "lobster", "lobsters", "lobster tail", "crawfish", "crayfish", "langoustine", "langostino", "krill",
        "scallop", "scallops", "clam", "clams", "mussel", "mussels",
        "oyster", "oysters", "squid", "calamari", "octopus", "cuttlefish",
        "abalone", "snail", "escargot", "sea urchin", "uni", "whelk", "periwinkle",
        "shrimpp", "scrimp", "scrimps", "shrmp", "calimari",
        "paella", "cioppino", "bouillabaisse", "gumbo", "jambalaya", "bisque",
        "shrimp scampi", "shrimp cocktail", "crab cake", "crab cakes", "lobster roll",
        "clam chowder", "oysters rockefeller", "ceviche", "seafood boil",
        "fra diavolo", "frutti di mare", "gambas", "scampi", "tempura shrimp",
        "coconut shrimp", "popcorn shrimp", "shrimp tempura", "shrimp fried rice",
        "pad thai with shrimp", "tom yum", "laksa", "surimi",
    ],
    "fish": [
        "fish", "salmon", "tuna", "cod", "tilapia", "sardine", "sardines",
        "anchovy", "anchovies", "anchovy paste", "mackerel", "trout", "bass",
        "halibut", "snapper", "mahi", "mahi-mahi", "swordfish", "catfish",
        "flounder", "sole", "haddock", "perch", "pike", "carp", "herring",
        "fish sauce", "fish stock", "fish oil", "bonito", "dashi",
    ],
    "dairy": [
        "dairy", "milk", "whole milk", "skim milk", "2% milk", "cream",
        "heavy cream", "half and half", "half-and-half", "butter", "ghee",
        "cheese", "cheddar", "mozzarella", "parmesan", "feta", "brie",
        "camembert", "ricotta", "cottage cheese", "cream cheese", "gouda",
        "swiss cheese", "provolone", "blue cheese", "gorgonzola",
        "yogurt", "greek yogurt", "kefir", "sour cream", "creme fraiche",
        "whey", "casein", "lactose", "buttermilk", "custard", "ice cream",
        "gelato", "whipped cream", "condensed milk", "evaporated milk",
        "milk powder", "dried milk",
    ],
    "milk": [
        "milk", "whole milk", "skim milk", "2% milk", "dairy", "cream",
        "butter", "cheese", "yogurt", "whey", "casein", "lactose",
    ],
    # Lactose intolerance blocks high-lactose foods only; aged cheeses and eggs stay allowed.
    "lactose intolerance": list(_LACTOSE_TERMS),
    "lactose_intolerance": list(_LACTOSE_TERMS),
    "eggs": [
        "egg", "eggs", "egg white", "egg yolk", "egg whites", "egg yolks",
        "albumin", "albumen", "mayonnaise", "mayo", "aioli", "meringue",
        "hollandaise", "bearnaise", "custard", "eggnog",
    ],
    "egg": ["egg", "eggs", "egg white", "egg yolk", "albumin", "mayonnaise", "mayo"],
    "peanuts": [
        "peanut", "peanuts", "peanut butter", "peanut oil", "groundnut",
        "groundnuts", "arachis", "monkey nuts", "goober", "peanut flour",
        "peanut sauce", "peanut dressing", "peanut brittle", "peanut paste",
        "penut", "penuts", "peenut", "peenuts",
        "satay", "pad thai", "kung pao", "kung pao chicken", "gado gado",
        "peanut noodles", "thai peanut", "african peanut soup", "peanut stew",
        "dan dan noodles", "massaman curry", "indonesian satay",
    ],
    "peanut": [
        "peanut", "peanuts", "peanut butter", "peanut oil", "groundnut",
        "peanut sauce", "satay", "pad thai", "kung pao",
    ],
    "tree nuts": [
        "tree nut", "tree nuts", "almond", "almonds", "almond butter",
        "almond milk", "almond flour", "almond extract", "walnut", "walnuts",
        "walnut oil", "pecan", "pecans", "pecan pie",
        "cashew", "cashews", "cashew butter", "cashew milk", "cashew cream",
        "pistachio", "pistachios", "pistachio butter",
        "hazelnut", "hazelnuts", "filbert", "hazelnut spread", "nutella",
        "macadamia", "macadamia nut", "macadamia nuts",
        "brazil nut", "brazil nuts", "pine nut", "pine nuts", "pignoli",
        "chestnut", "chestnuts", "praline", "marzipan", "nougat", "gianduja",
        "nut butter", "nut milk", "nut flour", "nut oil", "mixed nuts",
        "baklava", "frangipane", "amaretti", "biscotti",
    ],
    "nuts": [
        "nut", "nuts", "almond", "almonds", "walnut", "walnuts", "pecan",
        "pecans", "cashew", "cashews", "pistachio", "pistachios", "hazelnut",
        "hazelnuts", "macadamia", "brazil nut", "pine nut", "peanut", "peanuts",
        "nut butter", "nut milk", "mixed nuts",
    ],
    "soy": [
        "soy", "soya", "soybean", "soybeans", "soy sauce", "soy milk",
        "tofu", "tempeh", "edamame", "miso", "miso paste", "natto",
        "soy protein", "soy lecithin", "tvp", "textured vegetable protein",
    ],
    "gluten": [
        "gluten", "wheat", "wheat flour", "all-purpose flour", "bread flour",
        "whole wheat", "semolina", "durum", "farina", "bulgur", "couscous",
        "farro", "spelt", "kamut", "einkorn", "triticale", "barley", "rye",
        "malt", "malt extract", "brewer's yeast", "seitan", "vital wheat gluten",
        "bread", "pasta", "noodles", "crackers", "breadcrumbs", "panko",
        "flour tortilla", "pita", "naan",
    ],
    "wheat": [
        "wheat", "wheat flour", "all-purpose flour", "bread flour", "whole wheat",
        "semolina", "durum", "farina", "bulgur", "couscous", "farro", "spelt",
        "bread", "pasta", "noodles", "crackers", "breadcrumbs",
    ],
    "sesame": [
        "sesame", "sesame seed", "sesame seeds", "sesame oil", "tahini",
        "hummus", "halva", "halvah", "sesame paste", "gomashio", "za'atar",
    ],
    "mustard": [
        "mustard", "mustard seed", "mustard seeds", "mustard powder",
        "dijon", "dijon mustard", "yellow mustard", "honey mustard",
    ],
    "celery": ["celery", "celery salt", "celery seed", "celeriac", "celery root"],
    "sulfites": [
        "sulfite", "sulfites", "sulphite", "sulphites", "sulfur dioxide",
        "wine", "dried fruit", "dried fruits",
    ],
    "corn": [
        "corn", "maize", "cornmeal", "corn flour", "cornstarch", "corn starch",
        "corn syrup", "high fructose corn syrup", "hfcs", "polenta", "grits",
        "hominy", "corn oil", "corn tortilla", "popcorn",
    ],
    "nightshades": [
        "nightshade", "tomato", "tomatoes", "potato", "potatoes",
        "pepper", "peppers", "bell pepper", "chili", "chili pepper",
        "jalapeño", "cayenne", "paprika", "eggplant", "aubergine",
        "goji berry", "goji berries", "tobacco",
    ],
}

_MEAT_TERMS = ["meat", "beef", "steak", "pork", "bacon", "ham", "lamb", "veal"]
_POULTRY_TERMS = ["chicken", "turkey", "duck", "poultry"]
_SEAFOOD_TERMS = ["fish", "salmon", "tuna", "shellfish", "shrimp", "crab", "lobster"]
_ANIMAL_FAT_TERMS = ["lard", "suet", "tallow", "bone broth", "chicken stock", "beef stock", "fish sauce", "anchovies"]

RESTRICTION_EXPANSION: Dict[str, List[str]] = {
    "vegan": (
        _MEAT_TERMS + _POULTRY_TERMS + _SEAFOOD_TERMS
        + ["egg", "eggs", "dairy", "milk", "cheese", "butter", "cream", "yogurt", "honey", "gelatin"]
        + _ANIMAL_FAT_TERMS + ["whey", "casein"]
    ),
    "vegetarian": _MEAT_TERMS + _POULTRY_TERMS + _SEAFOOD_TERMS + ["gelatin"] + _ANIMAL_FAT_TERMS,
    "pescatarian": _MEAT_TERMS + _POULTRY_TERMS + ["lard", "suet", "tallow"],
    "halal": [
        "pork", "bacon", "ham", "prosciutto", "pancetta", "lard", "gelatin",
        "wine", "beer", "alcohol", "rum", "whiskey", "vodka", "brandy",
    ],
    "kosher": [
        "pork", "bacon", "ham", "prosciutto", "pancetta", "lard",
        "shellfish", "shrimp", "crab", "lobster", "scallop", "clam",
        "oyster", "mussel", "squid", "octopus",
    ],
    "no red meat": [
        "beef", "steak", "ground beef", "hamburger", "brisket", "ribeye",
        "pork", "bacon", "ham", "pork chop", "lamb", "veal", "venison",
        "bison", "goat",
    ],
    "no pork": [
        "pork", "bacon", "ham", "prosciutto", "pancetta", "pork chop",
        "pork loin", "pork belly", "chorizo", "sausage", "lard",
    ],
}

SAFE_SUBSTITUTES: Dict[str, str] = {
    "shrimp": "chicken or tofu",
    "crab": "jackfruit or hearts of palm",
    "lobster": "mushrooms or cauliflower",
    "scallop": "king oyster mushrooms",
    "fish": "chicken or tempeh",
    "salmon": "marinated tofu or jackfruit",
    "tuna": "chickpeas",
    "egg": "flax egg or silken tofu",
    "eggs": "flax eggs or silken tofu",
    "milk": "oat milk or almond milk",
    "cheese": "nutritional yeast or vegan cheese",
    "butter": "coconut oil or vegan butter",
    "cream": "coconut cream",
    "yogurt": "coconut yogurt",
    "peanut": "sunflower seed butter",
    "peanuts": "sunflower seeds",
    "almond": "pumpkin seeds",
    "walnut": "sunflower seeds",
    "beef": "portobello mushrooms or seitan",
    "pork": "jackfruit or tempeh",
    "chicken": "tofu or seitan",
    "gluten": "rice flour or almond flour",
    "wheat": "rice or quinoa",
    "soy": "coconut aminos or hemp seeds",
}
DEFAULT_SUBSTITUTE = "a suitable alternative"

_APOSTROPHES = re.compile(r"['‘’]")
_COMPOUND_SEPARATORS = re.compile(r"[-_]")
_WHITESPACE = re.compile(r"\s+")


@dataclass
class SafetyProfile:
    allergies: List[str] = field(default_factory=list)
    dietary_restrictions: List[str] = field(default_factory=list)
    health_conditions: List[str] = field(default_factory=list)
    avoid_ingredients: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.allergies or self.dietary_restrictions or self.avoid_ingredients)


@dataclass
class SafetyGuardrails:
    forbidden_ingredients: List[str]
    prompt_block: str
    summary_line: str


@dataclass
class SafetyCheck:
    safe: bool
    violations: List[str]
    message: str


@dataclass
class PreCheckResult:
    blocked: bool
    violations: List[str]
    message: str


def _normalize(value: str) -> str:
    return value.strip().lower()


def _word_pattern(term: str) -> re.Pattern[str]:
    return re.compile(rf"\b{re.escape(term)}\b", re.IGNORECASE)


def extract_safety_profile(account: Any) -> SafetyProfile:
    """Build a SafetyProfile from a UserAccount (or any object with the same fields)."""
    return SafetyProfile(
        allergies=list(getattr(account, "allergies", None) or []),
        dietary_restrictions=list(getattr(account, "dietary_restrictions", None) or []),
        health_conditions=list(getattr(account, "health_conditions", None) or []),
        avoid_ingredients=list(getattr(account, "avoid_ingredients", None) or []),
    )


def relax_allergies(profile: SafetyProfile, allergen: str) -> SafetyProfile:
    """Drop one allergy ("*" drops all of them); restrictions and avoid lists are untouched."""
    key = _normalize(allergen or "")
    if key == "*":
        return replace(profile, allergies=[])
    return replace(profile, allergies=[allergy for allergy in profile.allergies if _normalize(allergy) != key])


def build_forbidden_ingredients(profile: SafetyProfile) -> List[str]:
    forbidden: Dict[str, None] = {}
    for allergy in profile.allergies or []:
        key = _normalize(allergy)
        if not key:
            continue
        expanded = ALLERGEN_EXPANSION.get(key)
        if expanded:
            for term in expanded:
                forbidden.setdefault(_normalize(term), None)
        else:
            forbidden.setdefault(key, None)
    for restriction in profile.dietary_restrictions or []:
        for term in RESTRICTION_EXPANSION.get(_normalize(restriction), []):
            forbidden.setdefault(_normalize(term), None)
    for avoid in profile.avoid_ingredients or []:
        key = _normalize(avoid)
        if key:
            forbidden.setdefault(key, None)
    return list(forbidden)


def build_safety_guardrails(profile: SafetyProfile) -> SafetyGuardrails:
    allergies = list(profile.allergies or [])
    restrictions = list(profile.dietary_restrictions or [])
    forbidden = build_forbidden_ingredients(profile)

    lines: List[str] = []
    if allergies:
        lines.append(
            f"CRITICAL ALLERGY SAFETY: User has life-threatening allergies to: {', '.join(allergies)}."
        )
        shown = ", ".join(forbidden[:PROMPT_FORBIDDEN_LIMIT])
        suffix = "..." if len(forbidden) > PROMPT_FORBIDDEN_LIMIT else ""
        lines.append(
            "ABSOLUTE PROHIBITION: You must NEVER include, suggest, or use ANY of these "
            f"ingredients or their derivatives: {shown}{suffix}."
        )
    if restrictions:
        lines.append(
            f"DIETARY REQUIREMENTS: User follows {', '.join(restrictions)} diet. Strictly comply with these restrictions."
        )
    lines.append(
        "If a requested ingredient conflicts with these safety rules, substitute with a safe alternative. "
        "NEVER include forbidden ingredients under any circumstances."
    )
    summary = (
        f"Safety: allergies=[{'|'.join(allergies)}], restrictions=[{'|'.join(restrictions)}], "
        f"forbidden={len(forbidden)} items"
    )
    return SafetyGuardrails(forbidden_ingredients=forbidden, prompt_block="\n".join(lines), summary_line=summary)


def meal_text(meal: Mapping[str, Any]) -> str:
    """Lower-cased concatenation of a meal's name, description, ingredients and instructions."""
    parts: List[str] = []
    for key in ("name", "title", "description"):
        value = meal.get(key)
        if isinstance(value, str) and value:
            parts.append(value)
    for ingredient in meal.get("ingredients") or []:
        if isinstance(ingredient, str):
            parts.append(ingredient)
        elif isinstance(ingredient, Mapping):
            name = ingredient.get("name") or ingredient.get("item")
            if name:
                parts.append(str(name))
    instructions = meal.get("instructions")
    if isinstance(instructions, str):
        parts.append(instructions)
    elif isinstance(instructions, Sequence):
        parts.extend(str(step) for step in instructions)
    return " ".join(parts).lower()


def scan_for_violations(meal: Mapping[str, Any], forbidden_ingredients: Iterable[str]) -> List[str]:
    text = meal_text(meal)
    violations: Dict[str, None] = {}
    for term in forbidden_ingredients:
        if not term:
            continue
        if _word_pattern(term).search(text):
            violations.setdefault(term, None)
    return list(violations)


def validate_meal_safety(meal: Mapping[str, Any], profile: SafetyProfile) -> SafetyCheck:
    guardrails = build_safety_guardrails(profile)
    violations = scan_for_violations(meal, guardrails.forbidden_ingredients)
    if violations:
        return SafetyCheck(
            safe=False,
            violations=violations,
            message=f"SAFETY VIOLATION: Meal contains forbidden ingredients: {', '.join(violations)}",
        )
    return SafetyCheck(safe=True, violations=[], message="Meal passed safety validation")


def normalize_request_text(text: str) -> str:
    lowered = _COMPOUND_SEPARATORS.sub(" ", (text or "").lower())
    lowered = _APOSTROPHES.sub("", lowered)
    return _WHITESPACE.sub(" ", lowered).strip()


def pre_check_request(request_text: str, profile: SafetyProfile) -> PreCheckResult:
    """Block requests that explicitly ask for a forbidden ingredient, before any AI call."""
    forbidden = build_forbidden_ingredients(profile)
    normalized_request = normalize_request_text(request_text)
    raw_request = (request_text or "").lower()

    violations: Dict[str, None] = {}
    for term in forbidden:
        if not term:
            continue
        normalized_term = _COMPOUND_SEPARATORS.sub(" ", term.lower()).strip()
        if _word_pattern(normalized_term).search(normalized_request) or _word_pattern(term).search(raw_request):
            violations.setdefault(term, None)

    if violations:
        found = list(violations)
        return PreCheckResult(
            blocked=True,
            violations=found,
            message=(
                f"Safety block: Your request includes {', '.join(found)} which conflicts with your "
                "allergy/dietary profile. For your safety, this meal cannot be generated."
            ),
        )
    return PreCheckResult(blocked=False, violations=[], message="")


def get_safe_substitute(blocked_ingredient: str) -> str:
    return SAFE_SUBSTITUTES.get((blocked_ingredient or "").lower(), DEFAULT_SUBSTITUTE)


def log_safety_enforcement(user_id: str, meal_name: str, violations: Sequence[str], action: str) -> None:
    """Audit trail entry; action is one of passed, regenerated, blocked."""
    audit = get_safety_audit_logger()
    log = audit.warning if action == "blocked" else audit.info
    log(
        "safety_enforcement",
        user_id=user_id,
        meal_name=meal_name,
        action=action,
        violations=list(violations),
    )

"""Keyword classifiers for ingredients: grocery category and starchy-carb detection."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, List, Sequence

# High-glycemic starches only. Corn, legumes, sweet potato and whole grains are
# listed in ALLOWED_CARBS and override a starchy match that they contain.
STARCHY_KEYWORDS: List[str] = [
    "potato", "potatoes", "tater", "hash brown", "hashbrown",
    "french fries", "fries", "mashed potato", "baked potato",
    "rice",
    "bread", "toast", "bagel", "bun", "roll", "croissant", "biscuit",
    "pasta", "spaghetti", "noodle", "noodles", "macaroni", "penne", "fettuccine", "linguine",
    "pancake", "waffle", "crepe",
    "couscous", "polenta", "grits",
]

ALLOWED_CARBS: List[str] = [
    "sweet potato", "yam",
    "brown rice", "wild rice",
    "corn",
    "bean", "beans", "lentil", "chickpea", "pea", "edamame",
    "oat", "oatmeal", "quinoa", "barley", "bulgur", "farro", "millet",
]

FROZEN_KEYWORDS = ["frozen", "ice cream", "frozen peas", "frozen berries", "frozen vegetables"]
MEAT_KEYWORDS = [
    "chicken", "beef", "pork", "turkey", "lamb", "bacon", "sausage", "ham", "steak",
    "ground beef", "ground turkey", "salmon", "tuna", "cod", "tilapia", "shrimp", "fish",
    "prosciutto", "chorizo", "veal", "duck", "venison",
]
DAIRY_KEYWORDS = [
    "milk", "cheese", "yogurt", "butter", "cream", "sour cream", "cottage cheese",
    "cream cheese", "mozzarella", "cheddar", "parmesan", "feta", "egg", "eggs", "kefir",
]
PRODUCE_KEYWORDS = [
    "apple", "banana", "berries", "blueberries", "strawberries", "lemon", "lime", "orange",
    "avocado", "tomato", "tomatoes", "onion", "onions", "garlic", "ginger", "spinach",
    "kale", "lettuce", "broccoli", "cauliflower", "carrot", "carrots", "celery",
    "cucumber", "zucchini", "pepper", "bell pepper", "mushrooms", "mushroom",
    "potato", "potatoes", "sweet potato", "cilantro", "parsley", "basil", "asparagus",
    "green beans", "cabbage", "scallions", "green onion",
]
BAKERY_KEYWORDS = ["bread", "bagel", "bun", "buns", "roll", "rolls", "tortilla", "pita", "naan", "croissant", "muffin"]
PANTRY_KEYWORDS = [
    "rice", "pasta", "flour", "sugar", "oats", "quinoa", "beans", "lentils", "chickpeas",
    "broth", "stock", "canned", "sauce", "vinegar", "oil", "honey", "peanut butter",
    "almond butter", "nuts", "almonds", "walnuts", "seeds", "spice", "cereal", "noodles",
]
PANTRY_STAPLES = [
    "salt", "black pepper", "pepper flakes", "olive oil", "vegetable oil", "canola oil",
    "cooking spray", "garlic powder", "onion powder", "paprika", "cumin", "oregano",
    "chili powder", "cinnamon", "vanilla extract", "baking soda", "baking powder",
    "soy sauce", "vinegar", "dried basil", "dried thyme", "italian seasoning",
]

CATEGORY_ORDER = (
    ("Frozen", FROZEN_KEYWORDS),
    ("Meat", MEAT_KEYWORDS),
    ("Dairy", DAIRY_KEYWORDS),
    ("Produce", PRODUCE_KEYWORDS),
    ("Bakery", BAKERY_KEYWORDS),
    ("Pantry", PANTRY_KEYWORDS),
)
DEFAULT_CATEGORY = "Other"

_TRAILING_CLAUSE = re.compile(r",.*$")
_PARENTHETICAL = re.compile(r"\s*\([^)]*\)\s*")
_WHITESPACE = re.compile(r"\s+")
_NON_WORD = re.compile(r"[^\w\s-]")
_TOKEN_SPLIT = re.compile(r"[\s,;.!?]+")


@dataclass
class ClassifiedIngredient:
    name: str
    normalized_name: str
    category: str
    is_pantry_staple: bool


@dataclass
class StarchDetection:
    has_starchy: bool
    matched_terms: List[str]


def normalize_ingredient_name(name: str) -> str:
    text = (name or "").lower().strip()
    text = _TRAILING_CLAUSE.sub("", text)
    text = _PARENTHETICAL.sub(" ", text)
    text = _WHITESPACE.sub(" ", text)
    text = _NON_WORD.sub("", text)
    return text.strip()


def _matches_keywords(normalized_name: str, keywords: Iterable[str]) -> bool:
    words = normalized_name.split()
    for keyword in keywords:
        if normalized_name == keyword:
            return True
        if " " in keyword:
            if keyword in normalized_name:
                return True
        elif keyword in words:
            return True
    return False


def classify_ingredient(name: str) -> ClassifiedIngredient:
    normalized = normalize_ingredient_name(name)
    category = DEFAULT_CATEGORY
    for label, keywords in CATEGORY_ORDER:
        if _matches_keywords(normalized, keywords):
            category = label
            break
    return ClassifiedIngredient(
        name=name,
        normalized_name=normalized,
        category=category,
        is_pantry_staple=_matches_keywords(normalized, PANTRY_STAPLES),
    )


def classify_ingredients(names: Sequence[str]) -> List[ClassifiedIngredient]:
    return [classify_ingredient(name) for name in names]


def detect_starchy_ingredients(value: str | Sequence[str]) -> StarchDetection:
    """Find high-glycemic starch keywords, ignoring ones covered by an allowed carb phrase.

    "sweet potato" does not count as "potato", and "brown rice" does not count as "rice".
    """
    inputs = [value] if isinstance(value, str) else list(value or [])
    matched: List[str] = []
    for text in inputs:
        normalized = (text or "").lower().strip()
        words = [w for w in _TOKEN_SPLIT.split(normalized) if w]
        for keyword in STARCHY_KEYWORDS:
            if " " in keyword:
                pattern = re.compile(r"\b" + r"\s+".join(map(re.escape, keyword.split())) + r"\b")
                found = bool(pattern.search(normalized))
            else:
                found = keyword in words
            if not found:
                continue
            overridden = any(keyword in allowed and allowed in normalized for allowed in ALLOWED_CARBS)
            if not overridden and keyword not in matched:
                matched.append(keyword)
    return StarchDetection(has_starchy=bool(matched), matched_terms=matched)


def split_carbs(ingredient_names: Sequence[str], carbs: float) -> tuple[float, float]:
    """Estimate (starchy, fibrous) grams of `carbs` from the share of starchy ingredients."""
    names = [name for name in ingredient_names if name]
    if carbs <= 0 or not names:
        return 0.0, max(carbs, 0.0)
    starchy_count = sum(1 for name in names if detect_starchy_ingredients(name).has_starchy)
    starchy = round(carbs * starchy_count / len(names), 1)
    return starchy, round(carbs - starchy, 1)

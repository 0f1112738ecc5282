from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from .classifier import normalize_ingredient_name

UNIT_ALIASES: Dict[str, str] = {
    "tsp": "tsp", "teaspoon": "tsp", "teaspoons": "tsp", "t": "tsp",
    "tbsp": "tbsp", "tbs": "tbsp", "tablespoon": "tbsp", "tablespoons": "tbsp", "tb": "tbsp",
    "cup": "cup", "cups": "cup", "c": "cup",
    "oz": "oz", "ounce": "oz", "ounces": "oz",
    "lb": "lb", "lbs": "lb", "pound": "lb", "pounds": "lb",
    "g": "g", "gram": "g", "grams": "g", "gr": "g",
    "kg": "kg", "kilogram": "kg", "kilograms": "kg",
    "ml": "ml", "milliliter": "ml", "milliliters": "ml", "millilitre": "ml", "millilitres": "ml",
    "l": "l", "liter": "l", "liters": "l", "litre": "l", "litres": "l",
    "clove": "clove", "cloves": "clove",
    "can": "can", "cans": "can",
    "piece": "piece", "pieces": "piece", "pc": "piece", "pcs": "piece",
    "pinch": "pinch", "pinches": "pinch",
    "dash": "dash", "dashes": "dash",
    "slice": "slice", "slices": "slice",
}

# unit -> (threshold, larger unit, factor to divide by)
PREFERRED_STEPS: Dict[str, Tuple[float, str, float]] = {
    "tsp": (3, "tbsp", 3),
    "tbsp": (4, "cup", 16),
    "oz": (16, "lb", 16),
    "g": (1000, "kg", 1000),
    "ml": (1000, "l", 1000),
}

# unit -> (smallest unit of its family, factor to multiply by)
BASE_UNITS: Dict[str, Tuple[str, float]] = {
    "tbsp": ("tsp", 3),
    "cup": ("tsp", 48),
    "lb": ("oz", 16),
    "kg": ("g", 1000),
    "l": ("ml", 1000),
}

VULGAR_FRACTIONS: Dict[str, str] = {
    "½": "1/2", "⅓": "1/3", "⅔": "2/3", "¼": "1/4", "¾": "3/4",
    "⅛": "1/8", "⅜": "3/8", "⅝": "5/8", "⅞": "7/8",
}

PREP_WORDS = {
    "chopped", "diced", "minced", "sliced", "fresh", "freshly", "grated", "shredded",
    "peeled", "crushed", "finely", "roughly", "large", "small", "medium", "boneless",
    "skinless", "ground", "raw", "cooked", "to", "taste",
}
# Singularising these would corrupt the name.
PLURAL_EXCEPTIONS = {"hummus", "couscous", "asparagus", "molasses", "swiss", "oats", "grits", "greens", "brussels"}

MIXED_NUMBER = re.compile(r"^(\d+)\s+(\d+)/(\d+)\s*([a-zA-Z]+)?\b(.*)$")
FRACTION = re.compile(r"^(\d+)/(\d+)\s*([a-zA-Z]+)?\b(.*)$")
DECIMAL = re.compile(r"^(\d+(?:[.,]\d+)?)\s*([a-zA-Z]+)?\b(.*)$")

# Reference portions for turning metric amounts into kitchen measures.
FRIENDLY_PORTIONS: Dict[str, Tuple[str, float, str]] = {
    "quinoa": ("g", 150, "1/2 cup"),
    "cooked quinoa": ("g", 150, "1/2 cup"),
    "rice": ("g", 100, "1/2 cup"),
    "brown rice": ("g", 100, "1/2 cup"),
    "oats": ("g", 80, "1/2 cup"),
    "pasta": ("g", 100, "1 cup"),
    "couscous": ("g", 80, "1/2 cup"),
    "chicken breast": ("g", 150, "5 oz breast"),
    "ground turkey": ("g", 100, "1/3 cup"),
    "salmon": ("g", 150, "5 oz fillet"),
    "tuna": ("g", 120, "1/3 cup"),
    "eggs": ("g", 50, "1 large egg"),
    "tofu": ("g", 100, "1/2 cup cubed"),
    "black beans": ("g", 100, "1/2 cup"),
    "chickpeas": ("g", 100, "1/2 cup"),
    "spinach": ("g", 50, "1 cup (loose)"),
    "baby spinach": ("g", 50, "1 cup (loose)"),
    "cherry tomatoes": ("g", 100, "1/2 cup"),
    "bell pepper": ("g", 100, "1 medium pepper"),
    "onion": ("g", 100, "1/2 medium onion"),
    "garlic": ("g", 5, "1 clove"),
    "broccoli": ("g", 100, "1 cup florets"),
    "mushrooms": ("g", 100, "1 cup sliced"),
    "banana": ("g", 120, "1 medium banana"),
    "apple": ("g", 150, "1 medium apple"),
    "blueberries": ("g", 100, "2/3 cup"),
    "strawberries": ("g", 100, "2/3 cup"),
    "avocado": ("g", 150, "1 medium avocado"),
    "almonds": ("g", 20, "2 tbsp"),
    "walnuts": ("g", 20, "2 tbsp"),
    "chia seeds": ("g", 10, "1 tbsp"),
    "greek yogurt": ("g", 100, "1/2 cup"),
    "cottage cheese": ("g", 100, "1/2 cup"),
    "cheese": ("g", 30, "1 oz"),
    "cheddar cheese": ("g", 30, "1 oz"),
    "parmesan": ("g", 25, "2 tbsp grated"),
    "milk": ("ml", 250, "1 cup"),
    "broth": ("ml", 250, "1 cup"),
    "chicken broth": ("ml", 250, "1 cup"),
    "vegetable broth": ("ml", 250, "1 cup"),
    "coconut milk": ("ml", 250, "1 cup"),
    "water": ("ml", 250, "1 cup"),
}
FRIENDLY_TOLERANCE = 0.20
METRIC_AMOUNT = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(g|grams?|ml|milliliters?)\s+(.+?)\s*$", re.IGNORECASE)


@dataclass
class ParsedAmount:
    amount: float
    unit: Optional[str]
    rest: str


def canonical_unit(unit: Optional[str]) -> Optional[str]:
    if not unit:
        return None
    return UNIT_ALIASES.get(unit.strip().lower().rstrip("."))


def _parsed(amount: float, raw_unit: Optional[str], rest: str) -> ParsedAmount:
    unit = canonical_unit(raw_unit)
    if raw_unit and unit is None:
        # "2 large eggs": the word after the number is not a unit
        rest = f"{raw_unit} {rest}".strip()
    return ParsedAmount(amount, unit, rest.strip())


def _replace_vulgar_fractions(text: str) -> str:
    for glyph, ascii_fraction in VULGAR_FRACTIONS.items():
        text = re.sub(rf"(\d){glyph}", rf"\1 {ascii_fraction}", text)
        text = text.replace(glyph, ascii_fraction)
    return text


def parse_amount(raw: Optional[str]) -> ParsedAmount:
    """Parse "1 1/2 cups", "3/4 cup", "1.5 cups", "16 oz" into amount, canonical unit and remainder."""
    text = _replace_vulgar_fractions((raw or "").strip())
    if not text:
        return ParsedAmount(0.0, None, "")

    match = MIXED_NUMBER.match(text)
    if match and int(match.group(3)) != 0:
        amount = int(match.group(1)) + int(match.group(2)) / int(match.group(3))
        return _parsed(amount, match.group(4), match.group(5))

    match = FRACTION.match(text)
    if match and int(match.group(2)) != 0:
        amount = int(match.group(1)) / int(match.group(2))
        return _parsed(amount, match.group(3), match.group(4))

    match = DECIMAL.match(text)
    if match:
        amount = float(match.group(1).replace(",", "."))
        return _parsed(amount, match.group(2), match.group(3))

    return ParsedAmount(0.0, None, text)


def convert_to_preferred(amount: float, unit: Optional[str]) -> Tuple[float, Optional[str]]:
    """Step small units up (3 tsp -> 1 tbsp, 16 oz -> 1 lb, 1000 g -> 1 kg) and round to 2 decimals."""
    current_unit = canonical_unit(unit)
    current_amount = amount
    while current_unit in PREFERRED_STEPS:
        threshold, larger, factor = PREFERRED_STEPS[current_unit]
        if current_amount < threshold:
            break
        current_amount = current_amount / factor
        current_unit = larger
    return round(current_amount, 2), current_unit


def to_base_unit(amount: float, unit: Optional[str]) -> Tuple[float, Optional[str]]:
    """Express an amount in the smallest unit of its family so mixed units can be summed."""
    current_unit = canonical_unit(unit) or unit
    base = BASE_UNITS.get(current_unit)
    if base is None:
        return amount, current_unit
    return amount * base[1], base[0]


def format_quantity(amount: float) -> str:
    rounded = round(amount, 2)
    if math.isclose(rounded, round(rounded)):
        return str(int(round(rounded)))
    return f"{rounded:.2f}".rstrip("0").rstrip(".")


def _singularize(word: str) -> str:
    if word in PLURAL_EXCEPTIONS or len(word) <= 3:
        return word
    if word.endswith("ies"):
        return word[:-3] + "y"
    if word.endswith(("oes", "ches", "shes", "sses")):
        return word[:-2]
    if word.endswith("s") and not word.endswith("ss"):
        return word[:-1]
    return word


def canonical_name(item: str) -> str:
    """Shopping-list key: normalised, prep words removed, last word singularised."""
    words = [w for w in normalize_ingredient_name(item).split() if w not in PREP_WORDS]
    if not words:
        return normalize_ingredient_name(item)
    words[-1] = _singularize(words[-1])
    return " ".join(words)


def to_friendly_units(text: str) -> str:
    """Rewrite "150g salmon" as "5 oz fillet salmon" when close to a reference portion.

    Amounts that are not within the tolerance of a known portion are rounded to
    the nearest 5 g or 25 ml instead.
    """
    match = METRIC_AMOUNT.match(text or "")
    if not match:
        return text
    amount = float(match.group(1))
    unit = "g" if match.group(2).lower().startswith("g") else "ml"
    name = match.group(3)
    portion = FRIENDLY_PORTIONS.get(name.strip().lower())
    if portion and portion[0] == unit:
        _, reference, friendly = portion
        if abs(amount - reference) <= reference * FRIENDLY_TOLERANCE:
            return f"{friendly} {name}"
    step = 5 if unit == "g" else 25
    rounded = max(step, int(round(amount / step)) * step)
    return f"{rounded}{unit} {name}"

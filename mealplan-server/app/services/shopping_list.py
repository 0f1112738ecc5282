from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .classifier import classify_ingredient
from .units import canonical_name, convert_to_preferred, format_quantity, parse_amount, to_base_unit
from .week_boards import EXCLUSIONS_KEY, SLOTS

logger = logging.getLogger(__name__)


@dataclass
class _Bucket:
    name: str
    amount: Optional[float]
    unit: Optional[str]
    meals: List[str] = field(default_factory=list)


def pantry_key(name: str) -> str:
    return f"pantry||{name}"


def grocery_key(name: str, amount_text: str) -> str:
    return f"groceries||{name}||{amount_text}"


def _board_meals(board: Mapping[str, Any]) -> Iterable[Mapping[str, Any]]:
    """Every meal on the board; `lists` is only read for boards without per-day data."""
    days = board.get("days") or {}
    sources = list(days.values()) if days else [board.get("lists") or {}]
    for day_lists in sources:
        for slot in SLOTS:
            for meal in day_lists.get(slot) or []:
                yield meal


def _wanted(meal: Mapping[str, Any]) -> bool:
    if meal.get("voided"):
        return False
    if meal.get("entryType") == "quick" and meal.get("includeInShoppingList") is not True:
        return False
    return True


def _amount_text(ingredient: Mapping[str, Any]) -> str:
    amount = str(ingredient.get("amount") or "").strip()
    unit = str(ingredient.get("unit") or "").strip()
    if amount and unit and not amount.lower().endswith(unit.lower()):
        return f"{amount} {unit}"
    return amount


def _display(bucket: _Bucket) -> Tuple[Optional[str], Optional[str], str]:
    """Quantity, unit and amount text, stepped up from the summed base unit."""
    if bucket.amount is None:
        return None, None, ""
    amount, unit = convert_to_preferred(bucket.amount, bucket.unit)
    quantity = format_quantity(amount)
    return quantity, unit, (f"{quantity} {unit}" if unit else quantity)


def build_shopping_list(board: Mapping[str, Any], excluded_keys: Optional[Sequence[str]] = None) -> Dict[str, Any]:
    """Merge every active meal's ingredients into pantry staples and grocery rows.

    Amounts for the same canonical name are summed in the base unit of their
    family (tsp, oz, g, ml) and stepped up once for display;
    amounts that cannot be parsed stay on their own amount-less row.
    """
    excluded = set(excluded_keys if excluded_keys is not None else board.get(EXCLUSIONS_KEY) or [])
    pantry: Dict[str, None] = {}
    buckets: Dict[str, List[_Bucket]] = {}

    meal_count = 0
    for meal in _board_meals(board):
        if not _wanted(meal):
            continue
        meal_count += 1
        title = str(meal.get("title") or meal.get("name") or "Untitled")
        for ingredient in meal.get("ingredients") or []:
            raw_name = ingredient.get("item") if isinstance(ingredient, Mapping) else ingredient
            if not isinstance(raw_name, str) or not raw_name.strip():
                continue
            name = canonical_name(raw_name)
            if classify_ingredient(name).is_pantry_staple:
                if pantry_key(name) not in excluded:
                    pantry.setdefault(name, None)
                continue

            rows = buckets.setdefault(name, [])
            parsed = parse_amount(_amount_text(ingredient) if isinstance(ingredient, Mapping) else "")
            if parsed.amount <= 0:
                rows.append(_Bucket(name=name, amount=None, unit=None, meals=[title]))
                continue

            amount, unit = to_base_unit(parsed.amount, parsed.unit)
            existing = next((row for row in rows if row.amount is not None and row.unit == unit), None)
            if existing is None:
                rows.append(_Bucket(name=name, amount=amount, unit=unit, meals=[title]))
                continue
            existing.amount += amount
            if title not in existing.meals:
                existing.meals.append(title)

    groceries: List[Dict[str, Any]] = []
    for name, rows in buckets.items():
        category = classify_ingredient(name).category
        for row in rows:
            quantity, unit, amount_text = _display(row)
            if grocery_key(name, amount_text) in excluded:
                continue
            groceries.append(
                {
                    "name": name,
                    "quantity": quantity,
                    "unit": unit,
                    "amount": amount_text or None,
                    "category": category,
                    "meals": list(row.meals),
                    "key": grocery_key(name, amount_text),
                }
            )
    groceries.sort(key=lambda row: row["name"])
    logger.debug("Built shopping list from %d meals: %d groceries, %d pantry", meal_count, len(groceries), len(pantry))
    return {
        "pantry": sorted(pantry),
        "groceries": groceries,
        "excluded": sorted(excluded),
    }

import pytest

from app.services.guardrails import SafetyProfile
from app.services.meal_library import (
    LibrarySearch,
    get_meal_library,
    matches_allergens,
    matches_diet,
    matches_macros,
    score_meal,
    search_library,
    within_tolerance,
)


MEALS = [
    {
        "id": "m-oats",
        "name": "Peanut Butter Oats",
        "mealType": "breakfast",
        "tags": ["sweet", "quick"],
        "dietTags": ["vegetarian"],
        "allergens": ["peanuts"],
        "ingredients": [{"item": "rolled oats"}, {"item": "peanut butter"}],
        "nutrition": {"calories": 400, "protein": 15, "carbs": 50, "fat": 14},
        "quality": 60,
    },
    {
        "id": "m-eggs",
        "name": "Mushroom Egg Scramble",
        "mealType": "breakfast",
        "tags": ["savory", "quick", "low_carb"],
        "dietTags": ["diabetic"],
        "allergens": ["eggs"],
        "ingredients": [{"item": "eggs"}, {"item": "mushrooms"}, {"item": "spinach"}],
        "nutrition": {"calories": 280, "protein": 20, "carbs": 6, "fat": 18},
        "quality": 65,
    },
    {
        "id": "m-tofu",
        "name": "Tofu Breakfast Bowl",
        "mealType": "breakfast",
        "tags": ["savory", "high-protein"],
        "dietTags": ["vegan"],
        "allergens": ["soy"],
        "ingredients": [{"item": "firm tofu"}, {"item": "brown rice"}],
        "nutrition": {"calories": 380, "protein": 24, "carbs": 40, "fat": 12},
    },
    {
        "id": "m-salad",
        "name": "Chicken Salad",
        "mealType": "lunch",
        "tags": ["savory"],
        "dietTags": [],
        "allergens": [],
        "ingredients": [{"item": "chicken breast"}, {"item": "lettuce"}],
        "nutrition": {"calories": 420, "protein": 40, "carbs": 12, "fat": 20},
        "quality": 90,
    },
]


def test_matches_allergens_normalizes_case_and_dashes():
    meal = {"allergens": ["Tree-Nuts", "dairy"]}
    assert not matches_allergens(meal, ["tree_nuts"])
    assert not matches_allergens(meal, ["DAIRY"])
    assert matches_allergens(meal, ["fish"])
    assert matches_allergens({"allergens": []}, ["fish"])


def test_matches_diet_uses_tags_then_rules():
    assert matches_diet(MEALS[0], None)
    assert matches_diet(MEALS[0], "none")
    assert matches_diet(MEALS[2], "vegan")
    assert not matches_diet(MEALS[0], "vegan")
    assert not matches_diet(MEALS[0], "paleo")


def test_within_tolerance_bounds():
    assert within_tolerance(115, 100, 0.15)
    assert within_tolerance(85, 100, 0.15)
    assert not within_tolerance(116, 100, 0.15)


def test_matches_macros_applies_calorie_and_macro_tolerances():
    meal = {"nutrition": {"calories": 400, "protein": 30, "carbs": 40, "fat": 10}}
    assert matches_macros(meal, {})
    assert matches_macros(meal, {"calories": 450})
    assert not matches_macros(meal, {"calories": 500})
    assert matches_macros(meal, {"protein": 25})
    assert not matches_macros(meal, {"protein": 24})
    assert matches_macros(meal, {"fat": 0})
    assert not matches_macros({"nutrition": {}}, {"calories": 400})


def test_score_meal_combines_quality_recency_intent_and_cravings():
    meal = MEALS[1]
    assert score_meal(meal, "", [], {}) == 65
    assert score_meal(meal, "", ["m-eggs"], {}) == 35
    assert score_meal(meal, "quick mushroom", [], {}) == 85
    assert score_meal(meal, "an egg", [], {}) == 75
    assert score_meal(meal, "", [], {"Low-Carb": 7.5}) == 72.5
    assert score_meal({"name": "Plain"}, "", [], {}) == 50


def test_search_filters_by_meal_type_allergy_and_avoid_list():
    profile = SafetyProfile(allergies=["peanuts"], avoid_ingredients=["mushrooms"])
    results = search_library(LibrarySearch(meal_type="breakfast"), profile, meals=MEALS)
    assert [meal["id"] for meal in results] == ["m-tofu"]
    assert results[0]["score"] == 50


def test_search_ranks_by_score_and_respects_limit():
    results = search_library(
        LibrarySearch(meal_type="breakfast", intent="quick", recent_ids=["m-oats"], limit=2),
        SafetyProfile(),
        meals=MEALS,
    )
    assert [meal["id"] for meal in results] == ["m-eggs", "m-tofu"]
    assert results[0]["score"] == 75
    assert "score" not in MEALS[1]


def test_search_applies_macro_targets_and_diet():
    results = search_library(
        LibrarySearch(targets={"protein": 38}, limit=10), SafetyProfile(), meals=MEALS
    )
    assert [meal["id"] for meal in results] == ["m-salad"]

    results = search_library(LibrarySearch(diet="vegan", limit=10), SafetyProfile(), meals=MEALS)
    assert [meal["id"] for meal in results] == ["m-tofu"]


def test_bundled_library_loads_and_searches():
    library = get_meal_library()
    ids = {meal["id"] for meal in library["meals"]}
    assert "lib-greek-yogurt-bowl" in ids

    breakfasts = search_library(
        LibrarySearch(meal_type="breakfast", limit=10), SafetyProfile(allergies=["dairy"])
    )
    assert breakfasts
    assert "lib-greek-yogurt-bowl" not in {meal["id"] for meal in breakfasts}

    snacks = search_library(LibrarySearch(meal_type="snack", diet="vegan"), SafetyProfile())
    assert [meal["id"] for meal in snacks] == ["lib-apple-almond-butter"]


@pytest.mark.parametrize("meal_type", ["breakfast", "lunch", "dinner", "snack"])
def test_bundled_library_covers_every_meal_type(meal_type):
    meals = [m for m in get_meal_library()["meals"] if m["mealType"] == meal_type]
    assert len(meals) >= 2

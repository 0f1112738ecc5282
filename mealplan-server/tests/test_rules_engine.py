from __future__ import annotations

from types import SimpleNamespace

import pytest

from app.services.rules_engine import (
    HardRules,
    PlannerUser,
    enforce_weekly_caps,
    meets_variety,
    planner_user_from_account,
    reject_reason,
    score_template,
)


def _lunch(**overrides):
    template = {
        "type": "lunch",
        "protein": 35,
        "vegetables": 2,
        "calories": 500,
        "carbs": 70,
        "prepTime": 10,
        "cookTime": 15,
        "cuisine": "thai",
        "dietTags": ["high-protein"],
        "ingredients": [{"name": "chicken"}, {"name": "rice"}, {"name": "broccoli"}],
    }
    template.update(overrides)
    return template


def test_acceptable_template_has_no_reject_reason():
    assert reject_reason(_lunch(), PlannerUser()) is None


@pytest.mark.parametrize(
    "template,user,code",
    [
        (_lunch(allergens=["peanut"]), PlannerUser(allergens=["Peanut"]), "allergen"),
        (_lunch(), PlannerUser(medical_flags=["Diabetes-Type-2"]), "missing-diabetes-badge"),
        (_lunch(), PlannerUser(dislikes=["Broccoli"]), "contains-disliked-ingredient"),
        (_lunch(ingredients=[f"item {i}" for i in range(9)]), PlannerUser(), "too-many-ingredients"),
        (_lunch(prepTime=30, cookTime=20), PlannerUser(), "too-long-to-cook"),
        (_lunch(protein=None), PlannerUser(), "missing-protein"),
        (_lunch(protein=50), PlannerUser(), "protein-out-of-range"),
        (_lunch(vegetables=1.5), PlannerUser(), "not-enough-veg"),
        (_lunch(carbs=20), PlannerUser(), "carb-percent-out-of-range"),
    ],
)
def test_reject_codes(template, user, code):
    assert reject_reason(template, user) == code


def test_reject_checks_run_in_order():
    template = _lunch(allergens=["egg"], ingredients=[f"item {i}" for i in range(12)])
    assert reject_reason(template, PlannerUser(allergens=["egg"])) == "allergen"


def test_relaxations():
    assert reject_reason(_lunch(badges=["diabetes-friendly"]), PlannerUser(medical_flags=["diabetic"])) is None
    assert reject_reason(_lunch(vegetables=0), PlannerUser(veg_opt_out=True)) is None
    assert reject_reason(_lunch(calories=100, carbs=5), PlannerUser()) is None
    assert reject_reason({"type": "snack", "calories": 150, "carbs": 20}, PlannerUser()) is None


def test_score_rewards_preferences():
    base = score_template(_lunch(), PlannerUser())
    assert base == pytest.approx(97.44, abs=0.01)
    assert score_template(_lunch(), PlannerUser(preferred_cuisines=["Thai"])) == pytest.approx(base + 10, abs=0.01)
    assert score_template(_lunch(), PlannerUser(diet="High-Protein")) == pytest.approx(base + 5, abs=0.01)


def test_rejected_templates_score_zero():
    assert score_template(_lunch(protein=10), PlannerUser()) == 0.0


def test_weekly_caps_skip_templates_that_overflow():
    rules = HardRules(max_unique_ingredients_per_week=4, max_exotic_per_week=1)
    templates = [
        {"id": "a", "ingredients": ["oats", "milk"]},
        {"id": "b", "ingredients": ["tofu", "saffron"]},
        {"id": "c", "ingredients": ["sumac", "rice"]},
        {"id": "d", "ingredients": ["oats", "kale"]},
        {"id": "e", "ingredients": ["milk"]},
    ]
    result = enforce_weekly_caps(templates, rules)

    assert [t["id"] for t in result.selected] == ["a", "b", "e"]
    assert [t["id"] for t in result.skipped] == ["c", "d"]
    assert result.unique_ingredient_count == 4
    assert result.exotic_count == 1


def _week(cuisines=("thai", "greek", "mexican")):
    week = []
    for meal_type in ("breakfast", "lunch", "dinner"):
        for n, cuisine in enumerate(cuisines):
            week.append({"slug": f"{meal_type}-{n}", "type": meal_type, "cuisine": cuisine})
    return week


def test_meets_variety():
    result = meets_variety(_week())
    assert (result.repeats, result.cuisines, result.ok) == (0, 3, True)


def test_variety_counts_repeats_types_and_cuisines():
    repeated = _week() + [{"slug": "lunch-0", "type": "lunch"}] * 3
    assert meets_variety(repeated).repeats == 3
    assert not meets_variety(repeated).ok

    assert meets_variety(_week() + [{"slug": "lunch-0", "type": "lunch"}] * 2).ok
    assert not meets_variety(_week(cuisines=("thai", "thai", "greek"))).ok
    assert not meets_variety([t for t in _week() if t["slug"] != "dinner-2"]).ok


def test_planner_user_from_account():
    account = SimpleNamespace(
        health_conditions=["ckd"],
        diet_type="diabetic",
        allergies=["egg"],
        avoid_ingredients=["kale"],
    )
    user = planner_user_from_account(account, preferred_cuisines=["greek"])

    assert user.medical_flags == ["ckd", "diabetes"]
    assert user.allergens == ["egg"]
    assert user.dislikes == ["kale"]
    assert user.diet == "diabetic"
    assert user.preferred_cuisines == ["greek"]

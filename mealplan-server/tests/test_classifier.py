from __future__ import annotations

from app.services.classifier import (
    classify_ingredient,
    detect_starchy_ingredients,
    normalize_ingredient_name,
    split_carbs,
)


def test_normalize_ingredient_name():
    assert normalize_ingredient_name("Chicken Breast (boneless), diced") == "chicken breast"
    assert normalize_ingredient_name("  Extra-Virgin  Olive Oil! ") == "extra-virgin olive oil"


def test_category_precedence():
    assert classify_ingredient("Frozen peas").category == "Frozen"
    assert classify_ingredient("chicken breast").category == "Meat"
    assert classify_ingredient("cheddar cheese").category == "Dairy"
    assert classify_ingredient("baby spinach").category == "Produce"
    assert classify_ingredient("whole wheat bread").category == "Bakery"
    assert classify_ingredient("brown rice").category == "Pantry"
    assert classify_ingredient("dragonfruit").category == "Other"


def test_single_word_keywords_match_whole_words_only():
    # "ham" must not match inside "graham"
    assert classify_ingredient("graham crackers").category == "Other"


def test_pantry_staples():
    assert classify_ingredient("salt").is_pantry_staple
    assert classify_ingredient("Olive oil").is_pantry_staple
    assert not classify_ingredient("salmon fillet").is_pantry_staple


def test_allowed_carbs_override_starch_matches():
    assert not detect_starchy_ingredients("sweet potato mash").has_starchy
    assert not detect_starchy_ingredients(["brown rice", "black beans"]).has_starchy


def test_starch_terms_are_unique_in_discovery_order():
    result = detect_starchy_ingredients(["white rice", "sourdough toast", "rice"])

    assert result.has_starchy
    assert result.matched_terms == ["rice", "toast"]


def test_split_carbs():
    assert split_carbs(["white rice", "broccoli"], 40) == (20.0, 20.0)
    assert split_carbs([], 30) == (0.0, 30)
    assert split_carbs(["broccoli"], 0) == (0.0, 0.0)

from __future__ import annotations

from app.services.guardrails import (
    SafetyProfile,
    build_forbidden_ingredients,
    build_safety_guardrails,
    get_safe_substitute,
    normalize_request_text,
    pre_check_request,
    scan_for_violations,
    validate_meal_safety,
)


def test_forbidden_ingredients_expand_allergies_and_keep_order():
    profile = SafetyProfile(allergies=["Peanuts", "kiwi"], avoid_ingredients=[" Cilantro "])
    forbidden = build_forbidden_ingredients(profile)

    assert forbidden[0] == "peanut"
    assert "satay" in forbidden
    assert "kiwi" in forbidden
    assert forbidden[-1] == "cilantro"
    assert forbidden.index("peanut") < forbidden.index("kiwi") < forbidden.index("cilantro")


def test_forbidden_ingredients_are_deduplicated_across_sources():
    profile = SafetyProfile(allergies=["milk", "dairy"], dietary_restrictions=["vegan"], avoid_ingredients=["butter"])
    forbidden = build_forbidden_ingredients(profile)

    assert len(forbidden) == len(set(forbidden))
    assert "butter" in forbidden
    assert "chicken" in forbidden


def test_unknown_restriction_adds_nothing():
    assert build_forbidden_ingredients(SafetyProfile(dietary_restrictions=["paleo"])) == []


def test_prompt_block_truncates_long_forbidden_lists():
    guardrails = build_safety_guardrails(SafetyProfile(allergies=["shellfish", "fish"]))

    assert len(guardrails.forbidden_ingredients) > 50
    assert "CRITICAL ALLERGY SAFETY" in guardrails.prompt_block
    assert "..." in guardrails.prompt_block
    assert guardrails.summary_line == (
        f"Safety: allergies=[shellfish|fish], restrictions=[], forbidden={len(guardrails.forbidden_ingredients)} items"
    )


def test_prompt_block_without_profile_still_has_substitution_rule():
    guardrails = build_safety_guardrails(SafetyProfile())

    assert guardrails.forbidden_ingredients == []
    assert "substitute with a safe alternative" in guardrails.prompt_block
    assert "CRITICAL" not in guardrails.prompt_block


def test_scan_uses_word_boundaries():
    meal = {
        "name": "Eggplant Parmesan",
        "ingredients": [{"name": "eggplant"}, "tomato sauce"],
        "instructions": ["Bake until golden."],
    }
    assert scan_for_violations(meal, ["egg"]) == []
    assert scan_for_violations(meal, ["tomato", "tomato"]) == ["tomato"]


def test_scan_reads_description_ingredients_and_instructions():
    meal = {
        "name": "Noodle Bowl",
        "description": "Inspired by pad thai",
        "ingredients": [{"item": "rice noodles"}],
        "instructions": "Toss with crushed peanuts.",
    }
    assert scan_for_violations(meal, ["pad thai", "nut", "peanuts"]) == ["pad thai", "peanuts"]


def test_validate_meal_safety_reports_violations():
    profile = SafetyProfile(allergies=["shellfish"])
    check = validate_meal_safety({"name": "Garlic Shrimp Pasta", "ingredients": ["shrimp", "pasta"]}, profile)

    assert not check.safe
    assert check.violations == ["shrimp"]
    assert "SAFETY VIOLATION" in check.message

    ok = validate_meal_safety({"name": "Chicken Salad", "ingredients": ["chicken", "lettuce"]}, profile)
    assert ok.safe and ok.violations == []


def test_normalize_request_text():
    assert normalize_request_text("  Peanut-Butter   toast, mom’s_style ") == "peanut butter toast, moms style"


def test_pre_check_blocks_explicit_requests():
    result = pre_check_request("Can I get a peanut-butter smoothie?", SafetyProfile(allergies=["peanuts"]))

    assert result.blocked
    assert "peanut butter" in result.violations
    assert "peanut" in result.violations
    assert result.message.startswith("Safety block")


def test_pre_check_allows_safe_requests():
    result = pre_check_request("Something warm with chicken", SafetyProfile(allergies=["peanuts"]))

    assert not result.blocked
    assert result.violations == []


def test_safe_substitutes():
    assert get_safe_substitute("Shrimp") == "chicken or tofu"
    assert get_safe_substitute("kiwi") == "a suitable alternative"

from __future__ import annotations

from datetime import date, datetime, timezone

import pytest

from app.services.week_boards import (
    EXCLUSIONS_KEY,
    add_meal,
    empty_board,
    normalize_board,
    normalize_meal,
    normalize_slot,
    remove_meal,
    validate_week_start,
    week_dates,
    week_start_for,
)

WEEK = "2026-10-19"


def test_week_start_is_monday():
    assert week_start_for(date(2026, 10, 22)) == WEEK
    assert week_start_for(date(2026, 10, 19)) == WEEK
    assert week_start_for(date(2026, 10, 25)) == WEEK


@pytest.mark.parametrize("value", ["2026-10-20", "2026-13-01", "19-10-2026", ""])
def test_validate_week_start_rejects_bad_weeks(value):
    with pytest.raises(ValueError):
        validate_week_start(value)


def test_empty_board_has_seven_days_and_four_slots():
    board = empty_board(WEEK)

    assert list(board["days"]) == week_dates(WEEK)
    assert all(set(day) == {"breakfast", "lunch", "dinner", "snacks"} for day in board["days"].values())
    assert board["id"] == f"week-{WEEK}"
    assert board["version"] == 1
    assert board[EXCLUSIONS_KEY] == []


def test_normalize_meal_defaults_and_fallbacks():
    meal = normalize_meal(
        {"calories": "300", "ingredients": ["egg", "", {"name": "milk", "quantity": 1}], "instructions": "Whisk\n\nCook"},
        3,
    )

    assert meal["id"] == "m-3"
    assert meal["title"] == "Untitled"
    assert meal["servings"] == 1
    assert meal["ingredients"] == [
        {"item": "egg", "amount": "", "unit": ""},
        {"item": "milk", "amount": "1", "unit": ""},
    ]
    assert meal["instructions"] == ["Whisk", "Cook"]
    assert meal["nutrition"] == {"calories": 300.0, "protein": 0.0, "carbs": 0.0, "fat": 0.0}


def test_legacy_lists_seed_monday():
    board = normalize_board({"lists": {"breakfast": [{"title": "Eggs"}]}}, WEEK)

    assert board["days"][WEEK]["breakfast"][0]["title"] == "Eggs"
    assert board["days"]["2026-10-20"]["breakfast"] == []
    assert board["lists"] == board["days"][WEEK]


def test_meta_created_at_is_preserved():
    now = datetime(2026, 10, 20, 8, 0, tzinfo=timezone.utc)
    board = normalize_board({"meta": {"createdAt": "2026-01-01T00:00:00+00:00"}, "version": 4}, WEEK, now)

    assert board["meta"]["createdAt"] == "2026-01-01T00:00:00+00:00"
    assert board["meta"]["lastUpdatedAt"] == now.isoformat()
    assert board["version"] == 4


def test_snacks_sorted_by_order_index():
    board = normalize_board(
        {"days": {WEEK: {"snacks": [{"title": "B", "orderIndex": 2}, {"title": "A", "orderIndex": 0}]}}},
        WEEK,
    )

    assert [snack["title"] for snack in board["days"][WEEK]["snacks"]] == ["A", "B"]


def test_add_snacks_append_with_names_and_order():
    board = empty_board(WEEK)
    board = add_meal(board, WEEK, "snack", {"title": "Apple"})
    board = add_meal(board, WEEK, "snacks", {"title": "Yogurt"})

    snacks = board["days"][WEEK]["snacks"]
    assert [snack["title"] for snack in snacks] == ["Apple", "Yogurt"]
    assert [snack["orderIndex"] for snack in snacks] == [0, 1]
    assert [snack["name"] for snack in snacks] == ["Snack 1", "Snack 2"]
    assert board["version"] == 3


def test_add_main_meal_replaces_slot():
    board = add_meal(empty_board(WEEK), "2026-10-21", "dinner", {"id": "a", "title": "Soup"})
    board = add_meal(board, "2026-10-21", "dinner", {"id": "b", "title": "Stew"})

    assert [meal["id"] for meal in board["days"]["2026-10-21"]["dinner"]] == ["b"]


def test_add_meal_outside_week_fails():
    with pytest.raises(ValueError):
        add_meal(empty_board(WEEK), "2026-10-26", "lunch", {"title": "Late"})
    with pytest.raises(ValueError):
        normalize_slot("brunch")


def test_remove_meal():
    board = add_meal(empty_board(WEEK), WEEK, "lunch", {"id": "l1", "title": "Wrap"})
    board = remove_meal(board, WEEK, "lunch", "l1")

    assert board["days"][WEEK]["lunch"] == []
    with pytest.raises(LookupError):
        remove_meal(board, WEEK, "lunch", "l1")

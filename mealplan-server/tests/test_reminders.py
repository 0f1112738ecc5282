from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from unittest import IsolatedAsyncioTestCase
from unittest.mock import patch

import httpx
import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.config import Settings
from app.models import Base, MealReminder
from app.services.reminders import (
    build_message,
    create_reminder,
    delete_reminder,
    dispatch_due_reminders,
    due_occurrence,
    list_reminders,
    next_fire_time,
    serialize_reminder,
    update_reminder,
    validate_time,
    validate_timezone,
)
from app.services.users import get_or_create_account, update_notification_preferences

# 18:30 in New York is 22:30 UTC while daylight saving time is in effect.
NOON = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def _reminder(**fields):
    values = {
        "id": uuid.uuid4(),
        "user_id": "user-1",
        "meal_type": "dinner",
        "recipe_name": "Salmon traybake",
        "scheduled_time": "18:30",
        "day_of_week": None,
        "timezone": "America/New_York",
        "reminder_enabled": True,
        "is_active": True,
        "last_sent": None,
        "meal_plan_ref": None,
    }
    values.update(fields)
    return MealReminder(**values)


def test_validators():
    assert validate_time("07:05") == "07:05"
    for bad in ("24:00", "7:05", "07:60", ""):
        with pytest.raises(ValueError):
            validate_time(bad)
    with pytest.raises(ValueError):
        validate_timezone("Mars/Olympus_Mons")


def test_next_fire_time_in_user_timezone():
    assert next_fire_time(_reminder(), NOON) == datetime(2026, 10, 19, 22, 30, tzinfo=timezone.utc)
    # Sunday only: 2026-10-19 is a Monday.
    assert next_fire_time(_reminder(day_of_week=0), NOON) == datetime(2026, 10, 25, 22, 30, tzinfo=timezone.utc)


def test_due_inside_window_only():
    reminder = _reminder()
    assert due_occurrence(reminder, datetime(2026, 10, 19, 22, 32, tzinfo=timezone.utc), 5) is not None
    assert due_occurrence(reminder, datetime(2026, 10, 19, 22, 36, tzinfo=timezone.utc), 5) is None
    assert due_occurrence(reminder, datetime(2026, 10, 19, 22, 29, tzinfo=timezone.utc), 5) is None

    sent = _reminder(last_sent=datetime(2026, 10, 19, 22, 30, tzinfo=timezone.utc))
    assert due_occurrence(sent, datetime(2026, 10, 19, 22, 32, tzinfo=timezone.utc), 5) is None
    assert due_occurrence(_reminder(reminder_enabled=False), datetime(2026, 10, 19, 22, 32, tzinfo=timezone.utc), 5) is None


def test_due_across_midnight():
    reminder = _reminder(scheduled_time="23:58", timezone="UTC")
    occurrence = due_occurrence(reminder, datetime(2026, 10, 20, 0, 1, tzinfo=timezone.utc), 5)
    assert occurrence is not None
    assert occurrence.date().isoformat() == "2026-10-19"


def test_message_and_serialization():
    reminder = _reminder(meal_plan_ref="week-2026-10-19")
    message = build_message(reminder)

    assert message["title"] == "Dinner time"
    assert message["body"] == "Time for Salmon traybake"
    assert message["data"]["mealPlanRef"] == "week-2026-10-19"

    assert serialize_reminder(reminder, NOON)["nextFireAt"] == "2026-10-19T22:30:00+00:00"
    assert serialize_reminder(_reminder(is_active=False), NOON)["nextFireAt"] is None


class ReminderServiceTest(IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self.Session = async_sessionmaker(self.engine, expire_on_commit=False)

    async def asyncTearDown(self):
        await self.engine.dispose()

    async def test_crud(self):
        async with self.Session() as session:
            breakfast = await create_reminder(
                session, user_id="user-1", meal_type="Breakfast", recipe_name=" Oats ", scheduled_time="07:00"
            )
            await create_reminder(session, user_id="user-1", meal_type="dinner", recipe_name="Soup", scheduled_time="19:00")
            await create_reminder(session, user_id="user-2", meal_type="lunch", recipe_name="Wrap", scheduled_time="12:00")

            self.assertEqual(breakfast.meal_type, "breakfast")
            self.assertEqual(breakfast.recipe_name, "Oats")
            listed = await list_reminders(session, user_id="user-1")
            self.assertEqual([r.scheduled_time for r in listed], ["07:00", "19:00"])

            with self.assertRaises(ValueError):
                await create_reminder(session, user_id="user-1", meal_type="brunch", recipe_name="X", scheduled_time="10:00")
            with self.assertRaises(ValueError):
                await create_reminder(session, user_id="user-1", meal_type="lunch", recipe_name="  ", scheduled_time="10:00")

    async def test_update_resets_last_sent_on_schedule_change(self):
        async with self.Session() as session:
            reminder = await create_reminder(
                session, user_id="user-1", meal_type="lunch", recipe_name="Wrap", scheduled_time="12:00"
            )
            reminder.last_sent = NOON
            await session.commit()

            await update_reminder(session, user_id="user-1", reminder_id=reminder.id, changes={"recipe_name": "Salad"})
            self.assertIsNotNone(reminder.last_sent)
            await update_reminder(
                session, user_id="user-1", reminder_id=reminder.id, changes={"scheduled_time": "12:30", "day_of_week": 3}
            )
            self.assertIsNone(reminder.last_sent)
            self.assertEqual(reminder.day_of_week, 3)

            with self.assertRaises(ValueError):
                await update_reminder(session, user_id="user-1", reminder_id=reminder.id, changes={"user_id": "x"})
            with self.assertRaises(ValueError):
                await update_reminder(session, user_id="user-1", reminder_id=reminder.id, changes={"day_of_week": 7})
            with self.assertRaises(PermissionError):
                await update_reminder(session, user_id="user-2", reminder_id=reminder.id, changes={"is_active": False})

            await delete_reminder(session, user_id="user-1", reminder_id=reminder.id)
            with self.assertRaises(LookupError):
                await delete_reminder(session, user_id="user-1", reminder_id=reminder.id)

    async def test_dispatch_sends_once(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(json.loads(request.content))
            return httpx.Response(
                200,
                json={"data": [{"status": "ok"}, {"status": "error", "message": "DeviceNotRegistered"}]},
            )

        settings = Settings(push_enabled=True, reminder_window_minutes=5, expo_access_token=None)
        due_at = datetime(2026, 10, 19, 22, 31, tzinfo=timezone.utc)
        async with self.Session() as session:
            account = await get_or_create_account(session, user_id="user-1")
            account.push_tokens = ["ExponentPushToken[a]", "ExponentPushToken[b]"]
            await session.commit()
            await create_reminder(
                session,
                user_id="user-1",
                meal_type="dinner",
                recipe_name="Salmon traybake",
                scheduled_time="18:30",
                timezone_name="America/New_York",
            )

            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                with patch("app.services.reminders.get_settings", return_value=settings), patch(
                    "app.services.reminders.claim_once", return_value=True
                ):
                    first = await dispatch_due_reminders(session, now=due_at, client=client)
                    second = await dispatch_due_reminders(session, now=due_at, client=client)

        self.assertEqual(first, {"checked": 1, "due": 1, "sent": 1, "skipped": 0})
        self.assertEqual(second["due"], 0)
        self.assertEqual(len(requests), 1)
        self.assertEqual([message["to"] for message in requests[0]], ["ExponentPushToken[a]", "ExponentPushToken[b]"])
        self.assertEqual(requests[0][0]["title"], "Dinner time")

    async def test_dispatch_skips_claimed_and_opted_out(self):
        settings = Settings(push_enabled=True, reminder_window_minutes=5)
        due_at = datetime(2026, 10, 19, 12, 1, tzinfo=timezone.utc)
        async with self.Session() as session:
            account = await get_or_create_account(session, user_id="user-1")
            account.push_tokens = ["ExponentPushToken[a]"]
            await update_notification_preferences(session, account, {"mealReminders": False})
            await create_reminder(session, user_id="user-1", meal_type="lunch", recipe_name="Wrap", scheduled_time="12:00")
            await create_reminder(session, user_id="user-1", meal_type="lunch", recipe_name="Soup", scheduled_time="12:00")

            async with httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500))) as client:
                with patch("app.services.reminders.get_settings", return_value=settings), patch(
                    "app.services.reminders.claim_once", side_effect=[True, False]
                ):
                    stats = await dispatch_due_reminders(session, now=due_at, client=client)

        self.assertEqual(stats, {"checked": 2, "due": 2, "sent": 0, "skipped": 2})

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest import IsolatedAsyncioTestCase

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.models import Base, SafetyOverrideAudit, SafetyOverrideToken
from app.services.guardrails import SafetyProfile, relax_allergies
from app.services.safety_pin import (
    MAX_PIN_ATTEMPTS,
    PinLockedError,
    change_pin,
    consume_override_token,
    has_pin,
    issue_override_token,
    log_safety_override,
    pin_status,
    remove_pin,
    set_pin,
)
from app.services.users import get_or_create_account

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def test_relax_allergies():
    profile = SafetyProfile(allergies=["Peanut", "shellfish"], dietary_restrictions=["vegan"])

    assert relax_allergies(profile, "peanut").allergies == ["shellfish"]
    assert relax_allergies(profile, "*").allergies == []
    assert relax_allergies(profile, "sesame").allergies == ["Peanut", "shellfish"]
    assert relax_allergies(profile, "*").dietary_restrictions == ["vegan"]
    assert profile.allergies == ["Peanut", "shellfish"]


class SafetyPinServiceTest(IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self.Session = async_sessionmaker(self.engine, expire_on_commit=False)

    async def asyncTearDown(self):
        await self.engine.dispose()

    async def test_set_change_and_remove(self):
        async with self.Session() as session:
            account = await get_or_create_account(session, user_id="user-1")
            self.assertFalse(pin_status(account)["hasPin"])
            for bad in ("123", "12a4", "12345", ""):
                with self.assertRaises(ValueError):
                    await set_pin(session, account, bad)

            await set_pin(session, account, "1234")
            self.assertTrue(has_pin(account))
            self.assertNotIn("1234", account.safety_pin_hash)
            with self.assertRaises(ValueError):
                await set_pin(session, account, "5678")

            with self.assertRaises(PermissionError):
                await change_pin(session, account, current_pin="0000", new_pin="5678")
            self.assertEqual(account.pin_failed_attempts, 1)
            with self.assertRaises(ValueError):
                await change_pin(session, account, current_pin="1234", new_pin="56")

            await change_pin(session, account, current_pin="1234", new_pin="5678")
            self.assertEqual(account.pin_failed_attempts, 0)
            with self.assertRaises(PermissionError):
                await remove_pin(session, account, current_pin="1234")

            await remove_pin(session, account, current_pin="5678")
            self.assertFalse(has_pin(account))
            with self.assertRaises(LookupError):
                await remove_pin(session, account, current_pin="5678")

    async def test_override_token_is_single_use_and_user_bound(self):
        async with self.Session() as session:
            account = await get_or_create_account(session, user_id="user-1")
            with self.assertRaises(LookupError):
                await issue_override_token(session, account, pin="1234", allergen="peanut")

            await set_pin(session, account, "1234")
            issued = await issue_override_token(
                session, account, pin="1234", allergen=" Peanut ", meal_request="satay noodles"
            )
            token = issued["overrideToken"]
            self.assertEqual(len(token), 64)
            self.assertEqual(issued["allergen"], "peanut")

            stored = (await session.execute(select(SafetyOverrideToken))).scalar_one()
            self.assertNotEqual(stored.token_hash, token)
            self.assertEqual(stored.meal_request, "satay noodles")

            with self.assertRaises(PermissionError):
                await consume_override_token(session, user_id="user-2", token=token)
            record = await consume_override_token(session, user_id="user-1", token=token)
            self.assertEqual(record.allergen, "peanut")
            self.assertIsNotNone(record.consumed_at)
            with self.assertRaises(PermissionError):
                await consume_override_token(session, user_id="user-1", token=token)
            with self.assertRaises(PermissionError):
                await consume_override_token(session, user_id="user-1", token="0" * 64)

            blanket = await issue_override_token(session, account, pin="1234")
            self.assertEqual(blanket["allergen"], "*")

    async def test_expired_token_is_rejected(self):
        async with self.Session() as session:
            account = await get_or_create_account(session, user_id="user-1")
            await set_pin(session, account, "1234")
            issued = await issue_override_token(session, account, pin="1234", allergen="peanut", now=NOW)

            with self.assertRaises(PermissionError):
                await consume_override_token(
                    session, user_id="user-1", token=issued["overrideToken"], now=NOW + timedelta(minutes=6)
                )

    async def test_repeated_wrong_pins_lock_verification(self):
        async with self.Session() as session:
            account = await get_or_create_account(session, user_id="user-1")
            await set_pin(session, account, "1234")

            for _ in range(MAX_PIN_ATTEMPTS):
                with self.assertRaises(PermissionError):
                    await issue_override_token(session, account, pin="9999", now=NOW)
            status = pin_status(account, now=NOW)
            self.assertTrue(status["locked"])

            with self.assertRaises(PinLockedError) as ctx:
                await issue_override_token(session, account, pin="1234", now=NOW + timedelta(minutes=1))
            self.assertGreater(ctx.exception.retry_after, 13 * 60)

            later = NOW + timedelta(minutes=16)
            issued = await issue_override_token(session, account, pin="1234", now=later)
            self.assertEqual(len(issued["overrideToken"]), 64)
            self.assertEqual(account.pin_failed_attempts, 0)
            self.assertFalse(pin_status(account, now=later)["locked"])

    async def test_override_audit_row(self):
        async with self.Session() as session:
            await log_safety_override(
                session, user_id="user-1", meal_request="peanut noodles", allergen="peanut", builder_id="generate_meal"
            )
            row = (await session.execute(select(SafetyOverrideAudit))).scalar_one()
            self.assertEqual(row.safety_mode, "CUSTOM_AUTHENTICATED")
            self.assertEqual(row.allergen, "peanut")
            self.assertEqual(row.builder_id, "generate_meal")

from __future__ import annotations

import asyncio
import json
import tempfile
import uuid
from unittest import TestCase
from unittest.mock import patch

from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app import db
from app.auth import get_current_principal
from app.main import app
from app.models import Base
from app.services.week_boards import week_start_for

PRINCIPAL = {"sub": "user-1", "email": "user@example.com", "claims": {}}
WEEK = "2026-10-19"


class ApiTestCase(TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.engine = create_async_engine(
            f"sqlite+aiosqlite:///{self._tmp.name}/api.db", future=True, poolclass=NullPool
        )
        asyncio.run(self._create_tables())
        db.bind_sessionmaker(async_sessionmaker(self.engine, expire_on_commit=False))
        app.dependency_overrides[get_current_principal] = lambda: dict(PRINCIPAL)
        self.client = TestClient(app)

    def tearDown(self):
        app.dependency_overrides.clear()
        db.bind_sessionmaker(None)
        asyncio.run(self.engine.dispose())
        self._tmp.cleanup()

    async def _create_tables(self):
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)


class HealthAndAccountTest(ApiTestCase):
    def test_health(self):
        resp = self.client.get("/v1/health")
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["status"], "ok")
        self.assertEqual(body["database"], "ok")
        self.assertEqual(body["redis"], "not_configured")
        self.assertEqual(resp.headers["X-Content-Type-Options"], "nosniff")

    def test_me_creates_account_and_trial_once(self):
        body = self.client.get("/v1/me").json()
        self.assertEqual(body["sub"], "user-1")
        self.assertEqual(body["email"], "user@example.com")
        self.assertEqual(body["effectiveTier"], "free")
        self.assertEqual(body["entitlements"], [])
        self.assertFalse(body["trial"]["used"])

        first = self.client.post("/v1/me/trial")
        self.assertEqual(first.status_code, 200)
        self.assertTrue(first.json()["trial"]["active"])
        self.assertIn("smart_menu_builder", first.json()["entitlements"])

        second = self.client.post("/v1/me/trial")
        self.assertEqual(second.status_code, 409)
        self.assertEqual(self.client.get("/v1/me").json()["effectiveTier"], "ultimate")

    def test_safety_profile_round_trip(self):
        resp = self.client.put(
            "/v1/me/safety-profile",
            json={"allergies": [" Peanuts ", "peanuts"], "dietType": "Diabetic"},
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["allergies"], ["peanuts"])
        self.assertEqual(resp.json()["dietType"], "diabetic")

        self.assertEqual(self.client.get("/v1/me/safety-profile").json()["allergies"], ["peanuts"])
        bad = self.client.put("/v1/me/safety-profile", json={"dietType": "keto"})
        self.assertEqual(bad.status_code, 400)

    def test_push_tokens_and_notifications(self):
        token = "ExponentPushToken[abc123]"
        resp = self.client.post("/v1/me/push-tokens", json={"token": token})
        self.assertEqual(resp.json(), {"registered": True, "tokens": 1})
        self.assertEqual(self.client.post("/v1/me/push-tokens", json={"token": "nope"}).status_code, 400)

        removed = self.client.request("DELETE", "/v1/me/push-tokens", json={"token": token})
        self.assertEqual(removed.json(), {"removed": True, "tokens": 0})
        missing = self.client.request("DELETE", "/v1/me/push-tokens", json={"token": token})
        self.assertEqual(missing.status_code, 404)

        prefs = self.client.put("/v1/me/notifications", json={"mealReminders": False})
        self.assertEqual(prefs.json(), {"mealReminders": False})

    def test_safety_pin_override_flow(self):
        self.assertFalse(self.client.get("/v1/me").json()["safetyPin"]["hasPin"])
        missing = self.client.post("/v1/me/safety-pin/override", json={"pin": "1234"})
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(self.client.put("/v1/me/safety-pin", json={"pin": "12a4"}).status_code, 400)

        self.assertTrue(self.client.put("/v1/me/safety-pin", json={"pin": "1234"}).json()["hasPin"])
        wrong = self.client.post("/v1/me/safety-pin/override", json={"pin": "0000", "allergen": "peanuts"})
        self.assertEqual(wrong.status_code, 403)

        self.client.put("/v1/me/safety-profile", json={"allergies": ["peanuts"]})
        self.client.post("/v1/me/trial")
        issued = self.client.post(
            "/v1/me/safety-pin/override", json={"pin": "1234", "allergen": "peanuts", "mealRequest": "satay"}
        ).json()
        meal = {
            "name": "Satay chicken",
            "ingredients": [{"item": "chicken breast", "amount": 150, "unit": "g"}, {"item": "peanut butter"}],
            "instructions": ["Grill.", "Glaze."],
            "nutrition": {"calories": 450, "protein": 40, "carbs": 20, "fat": 18, "fiber": 3},
        }
        payload = {"mealType": "dinner", "request": "peanut satay", "overrideToken": issued["overrideToken"]}
        with patch("app.services.generation.call_openai_responses", return_value=json.dumps(meal)):
            first = self.client.post("/v1/generate/meal", json=payload)
            reused = self.client.post("/v1/generate/meal", json=payload)
        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.json()["meal"]["name"], "Satay chicken")
        self.assertEqual(reused.status_code, 403)

        removed = self.client.request("DELETE", "/v1/me/safety-pin", json={"currentPin": "1234"})
        self.assertFalse(removed.json()["hasPin"])

    def test_plans_and_admin_apply(self):
        tiers = [row["tier"] for row in self.client.get("/v1/plans").json()["plans"]]
        self.assertEqual(tiers, ["free", "basic", "premium", "ultimate"])

        resp = self.client.post(
            "/v1/admin/plans/apply", json={"userId": "user-2", "lookupKey": "mpm_premium_monthly"}
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["effectiveTier"], "premium")
        self.assertEqual(resp.json()["appliedBy"], "user@example.com")

        bad = self.client.post("/v1/admin/plans/apply", json={"userId": "user-2", "lookupKey": "gold"})
        self.assertEqual(bad.status_code, 400)


class GuardrailAndLibraryTest(ApiTestCase):
    def test_precheck_blocks_allergen_requests(self):
        self.client.put("/v1/me/safety-profile", json={"allergies": ["peanuts"]})
        body = self.client.post("/v1/guardrails/precheck", json={"text": "peanut butter smoothie"}).json()
        self.assertTrue(body["blocked"])
        self.assertIn("peanut butter", body["violations"])
        self.assertIn("peanut butter", body["substitutes"])

        clear = self.client.post("/v1/guardrails/precheck", json={"text": "berry smoothie"}).json()
        self.assertFalse(clear["blocked"])

    def test_validate_reports_safety_and_diet(self):
        self.client.put("/v1/me/safety-profile", json={"allergies": ["peanuts"]})
        meal = {"name": "PB Toast", "ingredients": [{"item": "peanut butter"}, {"item": "white bread"}]}
        body = self.client.post("/v1/guardrails/validate", json={"meal": meal}).json()
        self.assertFalse(body["safe"])
        self.assertEqual(body["diet"]["dietType"], "none")

        bad = self.client.post("/v1/guardrails/validate", json={"meal": meal, "phase": "bulk"})
        self.assertEqual(bad.status_code, 400)

    def test_classify_ingredients(self):
        body = self.client.post(
            "/v1/ingredients/classify", json={"ingredients": ["chicken breast", "salt", "white rice"]}
        ).json()
        self.assertEqual(len(body["ingredients"]), 3)
        salt = body["ingredients"][1]
        self.assertTrue(salt["isPantryStaple"])
        self.assertTrue(body["starch"]["hasStarchy"])

    def test_library_search(self):
        body = self.client.post("/v1/library/search", json={"mealType": "snack", "diet": "vegan"}).json()
        self.assertEqual(body["count"], 1)
        self.assertEqual(body["meals"][0]["id"], "lib-apple-almond-butter")

    def test_rank_templates(self):
        good = {
            "id": "good",
            "type": "dinner",
            "protein": 35,
            "vegetables": 2,
            "calories": 500,
            "carbs": 70,
            "prepTime": 10,
            "cookTime": 20,
            "ingredients": [{"name": "chicken", "role": "protein"}, {"name": "broccoli"}],
        }
        low_protein = dict(good, id="low", protein=10)
        body = self.client.post(
            "/v1/library/templates/rank",
            json={"templates": [low_protein, good]},
        ).json()
        reasons = {entry["id"]: entry["rejectReason"] for entry in body["templates"]}
        self.assertEqual(reasons, {"low": "protein-out-of-range", "good": None})
        self.assertEqual(body["selectedIds"], ["good"])
        self.assertEqual(body["uniqueIngredients"], 2)
        self.assertEqual(body["variety"], {"repeats": 0, "cuisines": 0, "ok": False})

    def test_generate_requires_entitlement(self):
        resp = self.client.post("/v1/generate/meal", json={"mealType": "dinner", "request": "salmon"})
        self.assertEqual(resp.status_code, 402)
        self.assertEqual(resp.json()["detail"]["error"], "upgrade_required")
        self.assertEqual(self.client.get("/v1/generate/runs").json(), {"runs": []})


class WeekBoardApiTest(ApiTestCase):
    def test_current_board_is_empty(self):
        body = self.client.get("/v1/week-boards/current").json()
        self.assertEqual(body["weekStart"], week_start_for())
        self.assertEqual(len(body["days"]), 7)

    def test_rejects_non_monday_week(self):
        self.assertEqual(self.client.get("/v1/week-boards/2026-10-20").status_code, 400)
        self.assertEqual(self.client.get("/v1/week-boards/not-a-date").status_code, 400)

    def test_save_add_remove_and_shop(self):
        board = {
            "days": {
                "2026-10-21": {
                    "dinner": [
                        {
                            "id": "d1",
                            "title": "Chicken Bowl",
                            "ingredients": [
                                {"item": "chicken breast", "amount": "8", "unit": "oz"},
                                {"item": "salt"},
                            ],
                        }
                    ]
                }
            }
        }
        saved = self.client.put(f"/v1/week-boards/{WEEK}", json=board).json()
        self.assertEqual(saved["days"]["2026-10-21"]["dinner"][0]["id"], "d1")
        self.assertEqual(self.client.get(f"/v1/week-boards/{WEEK}").json()["days"], saved["days"])

        added = self.client.post(
            f"/v1/week-boards/{WEEK}/days/2026-10-22/snacks",
            json={"meal": {"title": "Almonds", "ingredients": [{"item": "almonds", "amount": "1", "unit": "oz"}]}},
        )
        self.assertEqual(added.status_code, 200)
        snacks = added.json()["days"]["2026-10-22"]["snacks"]
        self.assertEqual(len(snacks), 1)

        outside = self.client.post(
            f"/v1/week-boards/{WEEK}/days/2026-11-02/dinner", json={"meal": {"title": "Late"}}
        )
        self.assertEqual(outside.status_code, 400)

        shopping = self.client.get(f"/v1/week-boards/{WEEK}/shopping-list").json()
        self.assertEqual(shopping["pantry"], ["salt"])
        names = [row["name"] for row in shopping["groceries"]]
        self.assertIn("almond", names)

        removed = self.client.delete(f"/v1/week-boards/{WEEK}/days/2026-10-22/snacks/{snacks[0]['id']}")
        self.assertEqual(removed.json()["days"]["2026-10-22"]["snacks"], [])
        missing = self.client.delete(f"/v1/week-boards/{WEEK}/days/2026-10-22/snacks/{snacks[0]['id']}")
        self.assertEqual(missing.status_code, 404)

        excluded = self.client.put(
            f"/v1/week-boards/{WEEK}/shopping-list/exclusions", json={"exclusions": ["pantry||salt"]}
        ).json()
        self.assertEqual(excluded["pantry"], [])
        self.assertEqual(excluded["excluded"], ["pantry||salt"])


class MacroAndReminderApiTest(ApiTestCase):
    def test_log_summary_and_delete(self):
        log = self.client.post(
            "/v1/macros/logs",
            json={"at": "2026-10-19T08:00:00Z", "protein": 30, "carbs": 20, "fat": 10},
        )
        self.assertEqual(log.status_code, 200)
        self.assertEqual(log.json()["kcal"], 290)

        summary = self.client.get("/v1/macros/summary", params={"start": "2026-10-19"}).json()
        self.assertEqual(summary["totals"]["kcal"], 290)
        self.assertEqual(len(summary["entries"]), 1)

        deleted = self.client.delete(f"/v1/macros/logs/{log.json()['id']}")
        self.assertEqual(deleted.json(), {"deleted": log.json()["id"]})
        self.assertEqual(self.client.delete(f"/v1/macros/logs/{log.json()['id']}").status_code, 404)

        bad_range = self.client.get("/v1/macros/summary", params={"start": "2026-10-19", "end": "2026-10-18"})
        self.assertEqual(bad_range.status_code, 400)

    def test_targets(self):
        resp = self.client.put("/v1/macros/targets", json={"calories": 2000, "protein": 150})
        self.assertEqual(resp.json(), {"calories": 2000, "protein": 150, "carbs": None, "fat": None})
        self.assertEqual(self.client.get("/v1/macros/targets").json()["calories"], 2000)

    def test_reminder_crud(self):
        created = self.client.post(
            "/v1/reminders",
            json={
                "mealType": "dinner",
                "recipeName": "Turkey Chili",
                "scheduledTime": "18:30",
                "timezone": "America/New_York",
            },
        )
        self.assertEqual(created.status_code, 201)
        reminder_id = created.json()["id"]
        self.assertIsNotNone(created.json()["nextFireAt"])

        bad = self.client.post(
            "/v1/reminders", json={"mealType": "dinner", "recipeName": "x", "scheduledTime": "25:00"}
        )
        self.assertEqual(bad.status_code, 400)

        patched = self.client.patch(f"/v1/reminders/{reminder_id}", json={"recipeName": "Salmon"})
        self.assertEqual(patched.json()["recipeName"], "Salmon")
        self.assertEqual(len(self.client.get("/v1/reminders").json()["reminders"]), 1)

        self.assertEqual(self.client.delete(f"/v1/reminders/{reminder_id}").status_code, 200)
        self.assertEqual(self.client.delete(f"/v1/reminders/{reminder_id}").status_code, 404)

    def test_admin_dispatch_with_nothing_due(self):
        resp = self.client.post("/v1/admin/reminders/dispatch", json={})
        self.assertEqual(resp.json(), {"checked": 0, "due": 0, "sent": 0, "skipped": 0})


class MealBoardAndBiometricApiTest(ApiTestCase):
    def test_board_flow(self):
        board = self.client.post("/v1/meal-boards", json={"program": "GLP1", "startDate": WEEK}).json()
        self.assertEqual(board["program"], "glp1")
        board_id = board["id"]

        with_item = self.client.post(
            f"/v1/meal-boards/{board_id}/items",
            json={
                "dayIndex": 0,
                "slot": "lunch",
                "meal": {"id": "lib-tuna", "title": "Tuna Wraps", "nutrition": {"calories": 230, "protein": 32}},
            },
        ).json()
        self.assertEqual(len(with_item["items"]), 1)

        bad_day = self.client.post(
            f"/v1/meal-boards/{board_id}/items",
            json={"dayIndex": 9, "slot": "lunch", "meal": {"title": "Too late"}},
        )
        self.assertEqual(bad_day.status_code, 400)

        committed = self.client.post(f"/v1/meal-boards/{board_id}/commit", json={"scope": "day", "dayIndex": 0})
        self.assertEqual(committed.status_code, 200)
        self.assertEqual(committed.json()["totals"]["calories"], 230)
        self.assertEqual(len(committed.json()["logs"]), 1)

        self.assertEqual(self.client.get(f"/v1/meal-boards/{uuid.uuid4()}").status_code, 404)

    def test_biometrics(self):
        ingest = self.client.post(
            "/v1/biometrics/ingest",
            json={
                "source": "healthkit",
                "samples": [
                    {"type": "weight", "value": 180, "unit": "lb", "recordedAt": "2026-10-18T07:00:00Z"},
                    {"type": "mood", "value": 3},
                ],
            },
        )
        self.assertEqual(ingest.json(), {"inserted": 1, "updated": 0, "skipped": 1})

        latest = self.client.get("/v1/biometrics/latest", params={"types": "weight"}).json()
        self.assertEqual(latest["weight"]["value"], 81.65)
        self.assertEqual(latest["weight"]["unit"], "kg")

        sources = self.client.get("/v1/biometrics/sources").json()["sources"]
        self.assertEqual([row["source"] for row in sources], ["healthkit"])
        self.assertEqual(self.client.get("/v1/biometrics/weight", params={"range": "abc"}).status_code, 400)

from __future__ import annotations

import uuid
from datetime import date
from unittest import IsolatedAsyncioTestCase

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.models import Base
from app.services.meal_boards import (
    add_item,
    commit_board,
    delete_item,
    get_board,
    get_or_create_board,
    repeat_day,
    serialize_board,
)

START = date(2026, 10, 19)
YOGURT = {
    "id": "lib-greek-yogurt-bowl",
    "title": "Greek yogurt bowl",
    "nutrition": {"calories": 320, "protein": 28, "carbs": 30, "fat": 9},
    "ingredients": [{"item": "greek yogurt", "amount": "1", "unit": "cup"}],
}


class MealBoardServiceTest(IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self.Session = async_sessionmaker(self.engine, expire_on_commit=False)

    async def asyncTearDown(self):
        await self.engine.dispose()

    async def _board(self, session, days=3):
        return await get_or_create_board(
            session, user_id="user-1", program="Performance", start_date=START, days=days
        )

    async def test_get_or_create_reuses_board(self):
        async with self.Session() as session:
            board = await self._board(session)
            again = await self._board(session)

            self.assertEqual(board.id, again.id)
            self.assertEqual(board.program, "performance")
            with self.assertRaises(ValueError):
                await get_or_create_board(session, user_id="user-1", program=" ", start_date=START)
            with self.assertRaises(ValueError):
                await get_or_create_board(session, user_id="user-1", program="glp1", start_date=START, days=29)

    async def test_ownership(self):
        async with self.Session() as session:
            board = await self._board(session)

            self.assertEqual((await get_board(session, user_id="user-1", board_id=board.id)).id, board.id)
            with self.assertRaises(PermissionError):
                await get_board(session, user_id="user-2", board_id=board.id)
            with self.assertRaises(LookupError):
                await get_board(session, user_id="user-1", board_id=uuid.uuid4())

    async def test_add_items_orders_within_slot(self):
        async with self.Session() as session:
            board = await self._board(session)
            await add_item(session, board, day_index=0, slot="snacks", meal={"title": "Apple", "calories": 95})
            second = await add_item(session, board, day_index=0, slot="snack", meal={"title": "Almonds"})

            self.assertEqual(second.slot, "snack")
            self.assertEqual(second.order_index, 1)
            payload = serialize_board(board)
            self.assertEqual([item["title"] for item in payload["items"]], ["Apple", "Almonds"])
            self.assertEqual(payload["items"][0]["nutrition"]["calories"], 95.0)

            with self.assertRaises(ValueError):
                await add_item(session, board, day_index=3, slot="lunch", meal=YOGURT)
            with self.assertRaises(ValueError):
                await add_item(session, board, day_index=0, slot="brunch", meal=YOGURT)
            with self.assertRaises(ValueError):
                await add_item(session, board, day_index=0, slot="lunch", meal={"calories": 100})
            with self.assertRaises(ValueError):
                await add_item(session, board, day_index=0, slot="lunch", meal={"title": "Bad", "fat": -1})

    async def test_delete_item(self):
        async with self.Session() as session:
            board = await self._board(session)
            item = await add_item(session, board, day_index=1, slot="dinner", meal=YOGURT)

            await delete_item(session, board, item.id)
            self.assertEqual(serialize_board(board)["items"], [])
            with self.assertRaises(LookupError):
                await delete_item(session, board, item.id)

    async def test_repeat_day_replaces_targets(self):
        async with self.Session() as session:
            board = await self._board(session)
            await add_item(session, board, day_index=0, slot="breakfast", meal=YOGURT)
            await add_item(session, board, day_index=2, slot="dinner", meal={"title": "Leftovers"})

            board = await repeat_day(session, board, source_day=0, target_days=[0, 2, 1])

            items = serialize_board(board)["items"]
            self.assertEqual([(item["dayIndex"], item["title"]) for item in items], [
                (0, "Greek yogurt bowl"),
                (1, "Greek yogurt bowl"),
                (2, "Greek yogurt bowl"),
            ])
            with self.assertRaises(ValueError):
                await repeat_day(session, board, source_day=0, target_days=[5])

    async def test_commit_day_then_week(self):
        async with self.Session() as session:
            board = await self._board(session)
            await add_item(session, board, day_index=0, slot="breakfast", meal=YOGURT, servings=2)
            await add_item(session, board, day_index=1, slot="breakfast", meal=YOGURT)

            day = await commit_board(session, board, scope="day", day_index=0)
            self.assertEqual(day["totals"], {"calories": 640.0, "protein": 56.0, "carbs": 60.0, "fat": 18.0})
            self.assertEqual(len(day["logs"]), 1)
            self.assertEqual(day["logs"][0]["kcal"], 640.0)
            self.assertEqual(day["logs"][0]["source"], "meal_board")

            week = await commit_board(session, board, scope="week")
            self.assertEqual([entry["date"] for entry in week["days"]], ["2026-10-19", "2026-10-20", "2026-10-21"])
            self.assertEqual(week["days"][2]["items"], 0)
            self.assertEqual(len(week["logs"]), 2)
            self.assertEqual(week["logs"][0]["id"], day["logs"][0]["id"])

            with self.assertRaises(ValueError):
                await commit_board(session, board, scope="day")
            with self.assertRaises(ValueError):
                await commit_board(session, board, scope="month")

    async def test_same_meal_twice_on_a_day_logs_twice(self):
        async with self.Session() as session:
            board = await self._board(session)
            await add_item(session, board, day_index=0, slot="breakfast", meal=YOGURT)
            await add_item(session, board, day_index=0, slot="snack", meal=YOGURT)

            first = await commit_board(session, board, scope="day", day_index=0)
            self.assertEqual(first["totals"]["calories"], 640.0)
            self.assertEqual(len(first["logs"]), 2)
            self.assertEqual(sum(log["kcal"] for log in first["logs"]), 640.0)

            again = await commit_board(session, board, scope="day", day_index=0)
            self.assertEqual(
                sorted(log["id"] for log in again["logs"]), sorted(log["id"] for log in first["logs"])
            )

"""Test replacing rows with their related rows."""
from __future__ import annotations

import unittest

from helper import create_database
from pydantic_sqlgraph.options import FlushOptions


class ReplaceTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await create_database()
        self.orders = self.db.table("Order")
        self.items = self.db.table("OrderItem")

    async def asyncTearDown(self) -> None:
        await self.db.end()

    async def _items(self, order: int) -> list[tuple[int, int]]:
        rows = await self.items.select("*", {"order": order}, order_by="product")
        return [(row["product"]["id"], row["quantity"]) for row in rows]

    async def test_replace_children(self) -> None:
        record = await self.orders.replace(
            {
                "code": "order-1",
                "status": 5,
                "order_items": [
                    {"product": 1, "quantity": 7},
                    {"product": 4, "quantity": 1},
                ],
            }
        )
        self.assertEqual(1, record.id)
        self.assertEqual(2, len(record.order_items))
        self.assertEqual([(1, 7), (4, 1)], await self._items(1))
        self.assertEqual(5, (await self.orders.get(1))["status"])  # type: ignore
        # Other orders keep their items.
        self.assertEqual([(1, 5)], await self._items(3))
        self.assertEqual(0, self.db.get_dirty_count())

    async def test_replace_new_row(self) -> None:
        record = await self.orders.replace(
            {"code": "order-9", "user": 3, "order_items": [{"product": 2, "quantity": 1}]}
        )
        self.assertEqual(4, record.id)
        self.assertEqual([(2, 1)], await self._items(4))

    async def test_replace_nested(self) -> None:
        users = self.db.table("User")
        record = await users.replace(
            {
                "email": "alice@example.com",
                "orders": [
                    {"code": "order-1", "order_items": [{"product": 3, "quantity": 1}]}
                ],
            }
        )
        self.assertEqual(1, record.id)
        self.assertEqual(["order-1"], [order.code for order in record.orders])
        self.assertEqual(1, await self.orders.count({"user": 1}))
        self.assertIsNone(await self.orders.get({"code": "order-2"}))
        self.assertEqual([(3, 1)], await self._items(1))

    async def test_replace_empty_list(self) -> None:
        await self.orders.replace({"code": "order-1", "order_items": []})
        self.assertEqual([], await self._items(1))
        self.assertEqual(2, await self.items.count())

    async def test_replace_records_in(self) -> None:
        order = self.db.append("Order", {"code": "order-1", "status": 4})
        self.db.append("OrderItem", {"order": order, "product": 1, "quantity": 9})
        await self.db.flush(FlushOptions(replace_records_in=["Order", "OrderItem"]))
        self.assertEqual(1, order.id)
        self.assertEqual([(1, 9)], await self._items(1))
        self.assertEqual([(3, 1)], await self._items(2))

    async def test_replace_records_in_skips_inserted(self) -> None:
        order = self.db.append("Order", {"code": "order-9"})
        self.db.append("OrderItem", {"order": order, "product": 1, "quantity": 1})
        await self.db.flush(FlushOptions(replace_records_in=["Order", "OrderItem"]))
        self.assertEqual(5, await self.items.count())


class RecordSetTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await create_database()
        self.orders = self.db.table("Order")

    async def asyncTearDown(self) -> None:
        await self.db.end()

    async def test_add(self) -> None:
        user = self.db.append("User", {"id": 2})
        await user.orders.add(self.orders.new({"code": "order-9", "status": 1}))
        self.assertEqual(2, await self.orders.count({"user": 2}))
        self.assertEqual({"id": 2}, (await self.orders.get({"code": "order-9"}))["user"])  # type: ignore

    async def test_remove(self) -> None:
        user = self.db.append("User", {"id": 2})
        await user.orders.remove(self.orders.new({"code": "order-3"}))
        self.assertEqual(0, await self.orders.count({"user": 2}))
        await user.orders.remove(self.orders.new({"code": "order-1"}))
        self.assertEqual(2, await self.orders.count({"user": 1}))

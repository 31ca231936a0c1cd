"""Test flushing records."""
from __future__ import annotations

import unittest
from typing import Any
from unittest.mock import patch

import pytest
from sqlalchemy.exc import IntegrityError  # type: ignore

from helper import create_database

from pydantic_sqlgraph.engine import Connection
from pydantic_sqlgraph.errors import CircularReferenceError, RowNotFoundError
from pydantic_sqlgraph.flush import is_integrity_error
from pydantic_sqlgraph.options import FlushOptions, RetryPolicy
from pydantic_sqlgraph.record import FlushMethod


class FlushTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await create_database()

    async def asyncTearDown(self) -> None:
        await self.db.end()

    async def test_insert_groups(self) -> None:
        users = self.db.table("User")
        created = [
            users.append({"email": f"user{i}@example.com", "first_name": f"User {i}"})
            for i in range(3)
        ]
        created += [users.append({"email": f"other{i}@example.com"}) for i in range(2)]
        connection = await self.db.flush()
        # One lookup and one insert per set of dirty fields.
        self.assertEqual(3, connection.query_count)
        ids = [record.id for record in created]
        self.assertEqual(5, len(set(ids)))
        self.assertTrue(all(isinstance(pk, int) for pk in ids))
        self.assertEqual(8, await users.count())
        self.assertEqual(0, self.db.get_dirty_count())

    async def test_dependency_order(self) -> None:
        user = self.db.append("User", {"email": "dave@example.com", "first_name": "Dave"})
        order = self.db.append("Order", {"code": "order-9", "user": user, "status": 1})
        await self.db.flush()
        self.assertIsInstance(order.id, int)
        rows = await self.db.table("Order").select("*", {"code": "order-9"})
        self.assertEqual({"id": user.id}, rows[0]["user"])

    async def test_foreign_key_by_value(self) -> None:
        self.db.append("Order", {"code": "order-9", "user": 2, "status": 3})
        await self.db.flush()
        row = await self.db.table("Order").get({"code": "order-9"})
        self.assertEqual({"id": 2}, row["user"])  # type: ignore
        self.assertEqual(3, await self.db.table("User").count())

    async def test_existing_row_is_updated(self) -> None:
        apple = self.db.append("Product", {"sku": "apple", "price": 3.0})
        await self.db.flush()
        self.assertEqual(1, apple.id)
        row = await self.db.table("Product").get(1)
        self.assertEqual(3.0, row["price"])  # type: ignore
        self.assertEqual("Apple", row["name"])  # type: ignore
        self.assertEqual(4, await self.db.table("Product").count())

    async def test_merge_records(self) -> None:
        order = self.db.append("Order", {"code": "order-9"})
        items = self.db.table("OrderItem")
        a = items.append({"order": order, "product": 1, "quantity": 1})
        b = items.append({"order": order, "product": 1, "quantity": 4})
        self.assertEqual(2, len(items.records))
        await self.db.flush()
        rows = await items.select("*", {"order": {"code": "order-9"}})
        self.assertEqual(1, len(rows))
        self.assertEqual(4, rows[0]["quantity"])
        self.assertIsInstance(a.id, int)
        self.assertEqual(a.id, b.id)
        self.assertEqual(4, a.quantity)
        self.assertEqual(4, b.quantity)
        self.assertEqual(rows[0]["id"], b.id)

    async def test_nullable_cycle(self) -> None:
        categories = self.db.table("Category")
        first = categories.append({"name": "First"})
        second = categories.append({"name": "Second", "parent": first})
        first.parent = second
        await self.db.flush()
        rows = await categories.select("*", {"name": ["First", "Second"]}, order_by="name")
        self.assertEqual({"id": second.id}, rows[0]["parent"])
        self.assertEqual({"id": first.id}, rows[1]["parent"])

    async def test_circular_reference(self) -> None:
        nodes = self.db.table("Node")
        a = nodes.append({"name": "a"})
        b = nodes.append({"name": "b", "parent": a})
        a.parent = b
        with pytest.raises(CircularReferenceError) as e:
            await self.db.flush()
        self.assertEqual(2, len(e.value.dump["Node"]))
        self.assertEqual(0, await nodes.count())
        self.assertEqual(2, self.db.get_dirty_count())

    async def test_delete_method(self) -> None:
        record = self.db.append("User", {"email": "carol@example.com"})
        record._state.method = FlushMethod.DELETE
        self.assertEqual(1, self.db.get_dirty_count())
        await self.db.flush()
        self.assertIsNone(await self.db.table("User").get({"email": "carol@example.com"}))
        self.assertEqual(0, self.db.get_dirty_count())

    async def test_hooks(self) -> None:
        calls: list[str] = []

        async def after_begin(connection: Connection) -> None:
            self.assertTrue(connection.in_transaction())
            calls.append("after_begin")

        async def before_commit(connection: Connection) -> None:
            rows = await connection.query('SELECT COUNT(*) AS n FROM "user"')
            calls.append(f"before_commit {rows[0]['n']}")  # type: ignore

        self.db.append("User", {"email": "dave@example.com"})
        await self.db.flush(
            FlushOptions(after_begin=after_begin, before_commit=before_commit)
        )
        self.assertEqual(["after_begin", "before_commit 4"], calls)

    async def test_hook_failure_restores_records(self) -> None:
        async def before_commit(connection: Connection) -> None:
            raise ValueError("Rejected")

        user = self.db.append("User", {"email": "dave@example.com"})
        with pytest.raises(ValueError):
            await self.db.flush(FlushOptions(before_commit=before_commit))
        self.assertEqual(1, self.db.get_dirty_count())
        self.assertIsNone(await self.db.table("User").get({"email": "dave@example.com"}))
        self.assertFalse(isinstance(user.id, int))
        await self.db.flush()
        self.assertIsInstance(user.id, int)

    async def test_concurrent_insert_retries_relaxed(self) -> None:
        original = Connection.insert
        calls: list[str] = []

        async def insert(self: Connection, sql: Any, key_column: str | None = None) -> list[Any]:
            calls.append(str(sql))
            if len(calls) == 1:
                raise RuntimeError("UNIQUE constraint failed: user.email")
            return await original(self, sql, key_column)

        user = self.db.append("User", {"email": "dave@example.com"})
        with patch.object(Connection, "insert", insert):
            await self.db.flush(FlushOptions(retry=RetryPolicy(max_delay=0)))
        self.assertEqual(2, len(calls))
        self.assertIsInstance(user.id, int)
        self.assertEqual(4, await self.db.table("User").count())

    async def test_retry_limit(self) -> None:
        calls: list[str] = []

        async def insert(self: Connection, sql: Any, key_column: str | None = None) -> list[Any]:
            calls.append(str(sql))
            raise RuntimeError("database is locked")

        self.db.append("User", {"email": "dave@example.com"})
        with patch.object(Connection, "insert", insert):
            with pytest.raises(RuntimeError):
                await self.db.flush(
                    FlushOptions(retry=RetryPolicy(max_retries=2, max_delay=0))
                )
        self.assertEqual(3, len(calls))
        self.assertEqual(1, self.db.get_dirty_count())


class SaveTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await create_database()

    async def asyncTearDown(self) -> None:
        await self.db.end()

    async def test_save_with_parent(self) -> None:
        user = self.db.append("User", {"email": "dave@example.com"})
        order = self.db.append("Order", {"code": "order-9", "user": user})
        await order.save()
        self.assertIsInstance(user.id, int)
        row = await self.db.table("Order").get(order.id)
        self.assertEqual({"id": user.id}, row["user"])  # type: ignore

    async def test_save_with_parent_key(self) -> None:
        order = self.db.append("Order", {"code": "order-9", "user": 1})
        await order.save()
        self.assertIsInstance(order.id, int)
        row = await self.db.table("Order").get(order.id)
        self.assertEqual({"id": 1}, row["user"])  # type: ignore
        self.assertEqual(3, await self.db.table("User").count())
        user = await self.db.table("User").get(1)
        self.assertEqual("alice@example.com", user["email"])  # type: ignore

    async def test_save_existing_unique_key(self) -> None:
        user = self.db.append("User", {"email": "bob@example.com", "last_name": "Black"})
        await user.save()
        self.assertEqual(2, user.id)
        row = await self.db.table("User").get(2)
        self.assertEqual("Black", row["last_name"])  # type: ignore
        self.assertEqual(3, await self.db.table("User").count())

    async def test_update(self) -> None:
        user = self.db.append("User", {"id": 1})
        await user.update({"last_name": "Blue"})
        row = await self.db.table("User").get(1)
        self.assertEqual("Blue", row["last_name"])  # type: ignore
        self.assertEqual("alice@example.com", row["email"])  # type: ignore

    async def test_update_missing_row(self) -> None:
        user = self.db.append("User", {"id": 99})
        with pytest.raises(RowNotFoundError):
            await user.update({"last_name": "Blue"})

    async def test_delete(self) -> None:
        user = self.db.append("User", {"id": 3})
        await user.delete()
        self.assertIsNone(await self.db.table("User").get(3))
        self.assertEqual(2, await self.db.table("User").count())


def test_integrity_error() -> None:
    error = IntegrityError("INSERT", {}, Exception("NOT NULL constraint failed: user.email"))
    assert is_integrity_error(error)
    assert is_integrity_error(Exception("UNIQUE constraint failed: user.email"))
    assert not is_integrity_error(Exception("no such table: user"))

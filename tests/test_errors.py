"""Test SQLGraph errors."""
from __future__ import annotations

import unittest

import pytest

from helper import connection_str, create_database, get_schema
from pydantic_sqlgraph._deserializer import to_value
from pydantic_sqlgraph._query_builder import encode_filter
from pydantic_sqlgraph.database import Database
from pydantic_sqlgraph.errors import (
    BadFieldError,
    BadFilterError,
    CircularReferenceError,
    InconsistentRecordError,
    NoDataError,
    NotAssignableError,
    ReassignmentError,
    RecordLoopError,
    RowNotFoundError,
    ShapeError,
    UnknownFieldError,
    ValueCoercionError,
)


class ShapeErrorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = Database(connection_str, get_schema())

    def test_unknown_field(self) -> None:
        with pytest.raises(UnknownFieldError) as e:
            self.db.append("User", {"nope": 1})
        assert e.value.args[0] == "Invalid field: User.nope"
        assert isinstance(e.value, ShapeError)

    def test_bad_field(self) -> None:
        with pytest.raises(BadFieldError) as e:
            encode_filter({"colour": "red"}, self.db.model("Product"))
        assert e.value.args[0] == "Bad field: Product.colour"

    def test_bad_operator(self) -> None:
        with pytest.raises(BadFilterError) as e:
            encode_filter({"price_lt": [1, 2]}, self.db.model("Product"))
        assert e.value.args[0] == "Bad value: [1, 2]"

    def test_not_assignable(self) -> None:
        user = self.db.append("User", {"email": "alice@example.com"})
        with pytest.raises(NotAssignableError) as e:
            user.orders = []
        assert e.value.args[0] == "Not assignable: User.orders"

    def test_reassignment(self) -> None:
        order = self.db.append("Order", {"code": "order-9", "user": 1})
        with pytest.raises(ReassignmentError) as e:
            order.user = 2
        assert e.value.args[0] == "Reassignment: Order.user"

    def test_inconsistent_record(self) -> None:
        users = self.db.table("User")
        users.append({"id": 1})
        users.append({"email": "bob@example.com"})
        with pytest.raises(InconsistentRecordError) as e:
            users.append({"id": 1, "email": "bob@example.com"})
        assert e.value.args[0] == "Inconsistent unique constraint values"

    def test_value_coercion(self) -> None:
        field = self.db.model("Order").field("date_created")
        with pytest.raises(ValueCoercionError) as e:
            to_value("yesterday", field)  # type: ignore
        assert e.value.args[0] == "Invalid time value: 'yesterday'"


class QueryErrorTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await create_database()

    async def asyncTearDown(self) -> None:
        await self.db.end()

    async def test_bad_selector(self) -> None:
        with pytest.raises(BadFilterError) as e:
            await self.db.table("Product").get({"name": "Water"})
        assert e.value.args[0] == "Bad selector: {'name': 'Water'}"

    async def test_no_data(self) -> None:
        with pytest.raises(NoDataError) as e:
            await self.db.table("Tag").insert({})
        assert e.value.args[0] == "Tag: No data"

    async def test_record_loop(self) -> None:
        nodes = self.db.table("Node")
        a = nodes.append({"name": "a"})
        b = nodes.append({"name": "b", "parent": a})
        a.parent = b
        with pytest.raises(RecordLoopError) as e:
            await a.save()
        assert e.value.args[0] == "Loops in record fields"

    async def test_row_not_found(self) -> None:
        user = self.db.append("User", {"id": 99})
        with pytest.raises(RowNotFoundError) as e:
            await user.update({"first_name": "Nobody"})
        assert e.value.args[0] == "Row does not exist"

    async def test_circular_reference(self) -> None:
        nodes = self.db.table("Node")
        a = nodes.append({"name": "a"})
        b = nodes.append({"name": "b", "parent": a})
        a.parent = b
        with pytest.raises(CircularReferenceError) as e:
            await self.db.flush()
        assert e.value.args[0] == "Circular references"
        # Dirty fields are starred.
        assert [entry["*name"] for entry in e.value.dump["Node"]] == ["a", "b"]

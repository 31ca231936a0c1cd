"""Test closure tables of tree tables."""
from __future__ import annotations

import unittest

import pytest

from helper import connection_str, create_database, metadata
from pydantic_sqlgraph._models import ClosureTableConfig, ModelConfig, SchemaConfig
from pydantic_sqlgraph.database import Database
from pydantic_sqlgraph.errors import ConfigurationError, ShapeError
from pydantic_sqlgraph.schema import Schema


class TreeTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await create_database()
        self.nodes = self.db.table("Node")
        self.links = self.db.table("node_closure")
        # root(1) > a(2) > b(3), root(1) > c(4)
        await self.nodes.create(
            {
                "name": "root",
                "nodes": {
                    "create": [
                        {"name": "a", "nodes": {"create": [{"name": "b"}]}},
                        {"name": "c"},
                    ]
                },
            }
        )

    async def asyncTearDown(self) -> None:
        await self.db.end()

    async def _depth(self, ancestor: int, descendant: int) -> int | None:
        link = await self.links.get({"ancestor": ancestor, "descendant": descendant})
        return link["depth"] if link else None

    @staticmethod
    def _names(rows: list) -> list[str]:  # type: ignore
        return [row["name"] for row in rows]

    async def test_create(self) -> None:
        self.assertEqual(8, await self.links.count())
        self.assertEqual(0, await self._depth(3, 3))
        self.assertEqual(1, await self._depth(2, 3))
        self.assertEqual(2, await self._depth(1, 3))
        self.assertIsNone(await self._depth(4, 3))

    async def test_ancestors(self) -> None:
        self.assertEqual(["root", "a"], self._names(await self.nodes.get_ancestors(3)))
        self.assertEqual([], await self.nodes.get_ancestors(1))
        rows = await self.nodes.get_ancestors({"parent": 2, "name": "b"}, {"name": "a"})
        self.assertEqual(["a"], self._names(rows))

    async def test_descendants(self) -> None:
        self.assertEqual(
            ["a", "c", "b"], self._names(await self.nodes.get_descendants(1))
        )
        self.assertEqual(
            ["c"], self._names(await self.nodes.get_descendants(1, {"name": "c"}))
        )
        self.assertEqual([], await self.nodes.get_descendants(4))
        self.assertEqual([], await self.nodes.get_descendants({"id": 99}))

    async def test_move(self) -> None:
        await self.nodes.modify({"parent": {"connect": {"id": 4}}}, {"id": 2})
        self.assertEqual(
            ["root", "c", "a"], self._names(await self.nodes.get_ancestors(3))
        )
        self.assertEqual(3, await self._depth(1, 3))
        self.assertEqual(2, await self._depth(4, 3))
        self.assertEqual(1, await self._depth(2, 3))
        self.assertEqual(10, await self.links.count())

    async def test_move_to_root(self) -> None:
        await self.nodes.modify({"parent": None}, {"id": 2})
        self.assertEqual([], await self.nodes.get_ancestors(2))
        self.assertEqual(["a"], self._names(await self.nodes.get_ancestors(3)))
        self.assertEqual(["c"], self._names(await self.nodes.get_descendants(1)))

    async def test_move_under_own_subtree(self) -> None:
        with pytest.raises(ShapeError):
            await self.nodes.modify({"parent": {"connect": {"id": 3}}}, {"id": 2})
        row = await self.nodes.get(2)
        self.assertEqual({"id": 1}, row["parent"])  # type: ignore
        self.assertEqual(8, await self.links.count())

    async def test_delete_subtree(self) -> None:
        await self.nodes.delete({"id": 2})
        self.assertEqual(["c", "root"], self._names(await self.nodes.select("*", order_by="name")))
        self.assertEqual(3, await self.links.count())
        self.assertEqual(1, await self._depth(1, 4))

    async def test_bool_column(self) -> None:
        row = await self.nodes.create({"name": "d", "parent": 4, "active": "false"})
        self.assertIs(False, row["active"])
        self.assertEqual(["root", "c"], self._names(await self.nodes.get_ancestors(row["id"])))

    async def test_no_closure_table(self) -> None:
        with pytest.raises(ConfigurationError) as e:
            await self.db.table("Category").get_ancestors(1)
        assert e.value.args[0] == "Table category has no closure table."


def test_bad_closure_table() -> None:
    def _database(config: ClosureTableConfig) -> Database:
        schema = Schema.from_metadata(
            metadata,
            SchemaConfig(models=[ModelConfig(table="node", closure_table=config)]),
        )
        return Database(connection_str, schema)

    with pytest.raises(ConfigurationError) as e:
        _database(ClosureTableConfig(table="node_links"))
    assert e.value.args[0] == "Table node_links not found."
    with pytest.raises(ConfigurationError) as e:
        _database(ClosureTableConfig(table="node_closure", ancestor="depth"))
    assert e.value.args[0] == "Field node_closure.depth is not a foreign key to node."
    with pytest.raises(ConfigurationError) as e:
        _database(ClosureTableConfig(table="node_closure", depth="level"))
    assert e.value.args[0] == "Field node_closure.level not found."

"""Closure tables of self-referencing models."""
from __future__ import annotations

from typing import TYPE_CHECKING, Any

from pydantic_sqlgraph._types import Document, Filter, Value
from pydantic_sqlgraph.engine import Connection
from pydantic_sqlgraph.errors import ConfigurationError, ShapeError
from pydantic_sqlgraph.schema import ForeignKeyField, SimpleField

if TYPE_CHECKING:
    from pydantic_sqlgraph.table import Table


class ClosureTable:
    """Links of a tree table holding one row per ancestor and descendant.

    Every node is linked to itself at depth 0.
    """

    def __init__(
        self,
        table: Table,
        ancestor: ForeignKeyField,
        descendant: ForeignKeyField,
        depth: SimpleField | None = None,
    ) -> None:
        self.table = table
        self.ancestor = ancestor
        self.descendant = descendant
        self.depth = depth

    def __repr__(self) -> str:
        return f"ClosureTable({self.table.name})"

    def link(self, ancestor: Value, descendant: Value, depth: int) -> Document:
        row: Document = {self.ancestor.name: ancestor, self.descendant.name: descendant}
        if self.depth is not None:
            row[self.depth.name] = depth
        return row

    def depth_of(self, link: Document) -> int:
        if self.depth is None:
            return 0
        return int(link.get(self.depth.name) or 0)


def get_closure_table(table: Table) -> ClosureTable:
    if table.closure_table is None:
        raise ConfigurationError(f"Table {table.name} has no closure table.")
    return table.closure_table


def get_parent_field(table: Table) -> ForeignKeyField:
    field = table.model.get_foreign_key_of(table.model)
    if field is None:
        raise ConfigurationError(f"Table {table.name} does not reference itself.")
    return field


async def create_node(connection: Connection, table: Table, row: Document) -> None:
    """Link a new row to itself and to the ancestors of its parent.

    :param connection: Connection in a transaction.
    :param table: Tree table.
    :param row: The new row, holding its primary key.
    """
    closure = get_closure_table(table)
    model = table.model
    pk = model.key_value(row)
    parent = model.value_of(row, get_parent_field(table))
    links = [closure.link(pk, pk, 0)]
    if parent is not None:
        for link in await closure.table._query(
            connection, "*", {closure.descendant.name: parent}
        ):
            ancestor = closure.table.model.value_of(link, closure.ancestor)
            links.append(closure.link(ancestor, pk, closure.depth_of(link) + 1))
    for link in links:
        await closure.table._insert(connection, link)


async def move_subtree(connection: Connection, table: Table, row: Document) -> None:
    """Relink a row and its descendants under the row's current parent.

    :param connection: Connection in a transaction.
    :param table: Tree table.
    :param row: The moved row as stored.
    """
    closure = get_closure_table(table)
    model = table.model
    links_model = closure.table.model
    pk = model.key_value(row)
    parent = model.value_of(row, get_parent_field(table))
    subtree = {
        links_model.value_of(link, closure.descendant): closure.depth_of(link)
        for link in await closure.table._query(
            connection, "*", {closure.ancestor.name: pk}
        )
    }
    if parent in subtree:
        raise ShapeError(f"Cannot move {model.name}({pk!r}) under its own subtree")
    nodes = list(subtree)
    await closure.table._delete(
        connection,
        {closure.descendant.name: nodes, "not": {closure.ancestor.name: nodes}},
    )
    if parent is None:
        return
    ancestors = await closure.table._query(
        connection, "*", {closure.descendant.name: parent}
    )
    for link in ancestors:
        ancestor = links_model.value_of(link, closure.ancestor)
        for node, depth in subtree.items():
            await closure.table._insert(
                connection,
                closure.link(ancestor, node, closure.depth_of(link) + depth + 1),
            )


async def delete_subtree(
    connection: Connection, table: Table, where: Filter | None
) -> list[Value]:
    """Unlink the rows matching a filter and all of their descendants.

    :param connection: Connection in a transaction.
    :param table: Tree table.
    :param where: Filter of the deleted rows.
    :return: Primary keys of the unlinked rows.
    """
    closure = get_closure_table(table)
    model = table.model
    roots = [model.key_value(row) for row in await table._query(connection, "*", where)]
    if not roots:
        return []
    nodes = set(roots)
    for link in await closure.table._query(connection, "*", {closure.ancestor.name: roots}):
        nodes.add(closure.table.model.value_of(link, closure.descendant))
    values = sorted(nodes)
    await closure.table._delete(
        connection,
        [{closure.ancestor.name: values}, {closure.descendant.name: values}],
    )
    return values


async def tree_query(
    connection: Connection,
    table: Table,
    row: Value | Document,
    field: ForeignKeyField,
    where: Filter | None = None,
) -> list[Document]:
    """Select the rows linked to a row through one end of the closure table.

    Ancestors are returned root first, descendants nearest first.

    :param connection: Connection.
    :param table: Tree table.
    :param row: Primary key or unique key filter of the row.
    :param field: `ancestor` to select ancestors, `descendant` for
        descendants.
    :param where: Filter on the selected rows.
    :return: The rows, not including the row itself.
    """
    closure = get_closure_table(table)
    model = table.model
    other = closure.descendant if field is closure.ancestor else closure.ancestor
    pk: Any = row
    if isinstance(row, dict):
        found = await table._get(connection, row)
        if found is None:
            return []
        pk = model.key_value(found)
    links = await closure.table._query(
        connection, "*", {other.name: pk, "not": {field.name: pk}}
    )
    depths = {
        closure.table.model.value_of(link, field): closure.depth_of(link)
        for link in links
    }
    if not depths:
        return []
    scope: Document = {model.key_field().name: list(depths)}  # type: ignore
    docs = await table._select(
        connection, "*", {"and": [scope, where]} if where else scope
    )
    sign = -1 if field is closure.ancestor else 1

    def _order(doc: Document) -> tuple[int, Any]:
        key = model.key_value(doc)
        return sign * depths[key], key

    return sorted(docs, key=_order)

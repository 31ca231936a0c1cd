"""Select the rows reachable from a filter, breadth first."""
from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, Union

from pydantic_sqlgraph._types import Document, Filter, Value
from pydantic_sqlgraph.schema import Field, ForeignKeyField

if TYPE_CHECKING:
    from pydantic_sqlgraph.table import Table

logger = logging.getLogger(__name__)

# Rows by primary key value, by model name.
Result = dict[str, dict[Value, Document]]

# "" selects nothing more, "*" follows related fields, "**" also follows
# foreign keys, a dict selects per field.
FieldOptions = Union[str, dict[str, Any]]


async def select_tree(
    table: Table, where: Filter, options: FieldOptions | None = None
) -> Result:
    """Select rows and the rows related to them as shaped by options.

    Foreign keys are followed where options ask for them, related fields
    unless options map them to `""`. Every distinct batch of values is
    queried once.

    :param table: Table of the root rows.
    :param where: Filter of the root rows.
    :param options: Field options of the root model.
    :return: Rows by primary key value, by model name.
    """
    result: Result = {}
    await _select_tree(
        table, where, {} if options is None else options, result, None, set()
    )
    return result


async def _select_tree(
    table: Table,
    where: Filter,
    options: FieldOptions,
    result: Result,
    entry: ForeignKeyField | None,
    query_set: set[str],
) -> None:
    rows = await table.select("*", where)
    if not rows:
        return
    merge(result, table, rows)
    model = table.model
    db = table.db

    for field in model.fields:
        if not isinstance(field, ForeignKeyField):
            continue
        if isinstance(options, str):
            if options != "**":
                continue
            option: FieldOptions = "**"
        else:
            option = options.get(field.name)
        if not option:
            continue
        parent = db.table(field.referenced_field.model)
        loaded = merge(result, parent)
        values = _distinct(
            value
            for value in (model.value_of(row, field) for row in rows)
            if value is not None and value not in loaded
        )
        if values and may_query(query_set, [parent.model.key_field()], values):
            await _select_tree(
                parent,
                {parent.model.key_field().name: values},  # type: ignore
                option,
                result,
                field,
                query_set,
            )

    values = _distinct(model.key_value(row) for row in rows)

    for child in db.tables:
        fields: list[tuple[ForeignKeyField, FieldOptions]] = []
        fields_through: list[tuple[ForeignKeyField, FieldOptions]] = []
        for field in child.model.fields:
            if not isinstance(field, ForeignKeyField):
                continue
            if field.referenced_field.model is not model or field.related_field is None:
                continue
            if field is entry:
                continue
            if isinstance(options, str):
                option = options
            else:
                option = options.get(field.related_field.name, {})
            if option == "":
                continue
            if field.related_field.through_field is not None:
                fields_through.append((field, option))
            else:
                fields.append((field, option))

        if fields_through:
            rows = await child.select(
                "*", [{field.name: values} for field, _ in fields_through]
            )
            merge(result, child, rows)
            for field, option in fields_through:
                key: ForeignKeyField = field.related_field.through_field  # type: ignore
                far = db.table(key.referenced_field.model)
                loaded = merge(result, far)
                far_values = _distinct(
                    value
                    for value in (child.model.value_of(row, key) for row in rows)
                    if value is not None and value not in loaded
                )
                if far_values and may_query(
                    query_set, [far.model.key_field()], far_values
                ):
                    await _select_tree(
                        far,
                        {far.model.key_field().name: far_values},  # type: ignore
                        option,
                        result,
                        key,
                        query_set,
                    )

        for field, option in fields:
            if may_query(query_set, [field], values):
                await _select_tree(
                    child, {field.name: values}, option, result, None, query_set
                )


async def select_tree2(table: Table, where: Filter) -> Result:
    """Select rows and the tables reachable from them by foreign keys.

    Tables are visited nearest first, each one filtered by the keys of
    the visited table it references.

    :param table: Table of the root rows.
    :param where: Filter of the root rows.
    :return: Rows by primary key value, by model name.
    """
    result: Result = {}
    merge(result, table, await table.select("*", where))
    selected: dict[Table, int] = {table: 0}
    db = table.db

    while True:
        best: tuple[Table, Table, list[ForeignKeyField]] | None = None
        distance = 0
        for child in db.tables:
            if child in selected:
                continue
            for parent, parent_distance in selected.items():
                keys = get_foreign_keys(child, parent)
                if keys and (best is None or parent_distance < distance):
                    best = (parent, child, keys)
                    distance = parent_distance
        if best is None:
            break
        parent, child, keys = best
        values = list(result[parent.model.name].keys())
        if values:
            rows = await child.select("*", [{key.name: values} for key in keys])
            merge(result, child, rows)
            through = keys[0].related_field.through_field if len(keys) == 1 else None  # type: ignore
            if through is not None:
                far = db.table(through.referenced_field.model)
                loaded = merge(result, far)
                far_values = _distinct(
                    value
                    for value in (child.model.value_of(row, through) for row in rows)
                    if value is not None and value not in loaded
                )
                if far_values:
                    key = far.model.key_field().name  # type: ignore
                    merge(result, far, await far.select("*", {key: far_values}))
                    selected[far] = distance + 1
        else:
            merge(result, child, [])
        selected[child] = distance + 1
        logger.debug("Selected %s at distance %s", child.model.name, distance + 1)

    return result


def merge(
    result: Result, table: Table, rows: list[Document] | None = None
) -> dict[Value, Document]:
    """Add rows to a result, get the rows of the table."""
    rows_by_key = result.setdefault(table.model.name, {})
    for row in rows or []:
        rows_by_key[table.model.key_value(row)] = row
    return rows_by_key


def may_query(query_set: set[str], fields: list[Any], values: list[Value]) -> bool:
    """Check if a batch was not queried yet, then remember it."""
    key = "/".join(
        field.display_name + json.dumps(values, default=str)
        for field in fields
        if isinstance(field, Field)
    )
    if key in query_set:
        return False
    query_set.add(key)
    return True


def get_foreign_keys(child: Table, parent: Table) -> list[ForeignKeyField]:
    """Get the foreign keys of a table referencing another one."""
    return [
        field
        for field in child.model.fields
        if isinstance(field, ForeignKeyField)
        and field.referenced_field.model is parent.model
    ]


def _distinct(values: Any) -> list[Value]:
    return list(dict.fromkeys(values))

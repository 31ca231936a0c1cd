"""Deep copy of a row and the rows owned by it."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from pydantic_sqlgraph._types import Document, Filter
from pydantic_sqlgraph.schema import ForeignKeyField, SimpleField

if TYPE_CHECKING:
    from pydantic_sqlgraph.database import Database
    from pydantic_sqlgraph.record import Record
    from pydantic_sqlgraph.table import Table

logger = logging.getLogger(__name__)


async def copy_record(
    record: Record, data: Document, exclude: list[str] | None = None
) -> Record:
    """Insert a copy of a row and of every row owned by it.

    A row is owned when a unique key of its table holds a foreign key to
    a copied table. Owned rows are copied with new generated keys and
    point at the copies of their owners.

    :param record: Record identifying the row to copy.
    :param data: Values overriding the copied row.
    :param exclude: Model or table names not to copy.
    :return: Record of the copy.
    """
    table = record._table
    filters = _build_table_filters(record, exclude)
    db = table.db.clone()
    await _select_rows(filters, db)
    root = db.table(table.model).records[0]
    for name, value in data.items():
        root.set(name, value)
    await _flush_all(db)
    return root


def _build_table_filters(
    record: Record, exclude: list[str] | None
) -> dict[Table, Filter]:
    db = record._table.db
    excluded = set(exclude or [])
    filters: dict[Table, Any] = {record._table: [record._filter()]}

    while True:
        added = 0
        for table in db.tables:
            if table in filters:
                continue
            if table.model.name in excluded or table.name in excluded:
                continue
            conditions = []
            for key in table.model.unique_keys:
                for field in key.fields:
                    if not isinstance(field, ForeignKeyField):
                        continue
                    referenced = db.table(field.referenced_field.model)
                    if referenced is table or referenced not in filters:
                        continue
                    conditions.append({field.name: filters[referenced]})
            if conditions:
                filters[table] = conditions[0] if len(conditions) == 1 else conditions
                added += 1
        if added == 0:
            break

    return filters


async def _select_rows(filters: dict[Table, Filter], db: Database) -> None:
    for source, where in filters.items():
        rows = await source.select("*", where)
        table = db.table(source.model)
        for row in rows:
            _append_row(table, row)
        logger.debug("Copying %s rows of %s", len(rows), table.name)


def _append_row(table: Table, row: Document) -> None:
    db = table.db
    model = table.model
    key = model.key_field()
    record = table.append({key.name: model.key_value(row)})  # type: ignore
    if not isinstance(key, ForeignKeyField):
        # A key referencing the owner is written with the copy.
        record._remove_dirty(key.name)  # type: ignore

    for field in model.fields:
        if isinstance(field, ForeignKeyField):
            if not row.get(field.name):
                continue
            referenced = db.table(field.referenced_field.model)
            referenced_key = referenced.model.key_field()
            value = model.value_of(row, field)
            stub = referenced.append({referenced_key.name: value})  # type: ignore
            stub._remove_dirty(referenced_key.name)  # type: ignore
            record.set(field.name, stub)
        elif isinstance(field, SimpleField) and field is not key:
            if field.name in row:
                record.set(field.name, row[field.name])


async def _flush_all(db: Database) -> None:
    for table in db.tables:
        key = table.model.key_field()
        if key is None or not key.column.auto_increment:
            continue
        for record in table.records:
            # Rows holding only their key are references, not copies.
            if len(record._data) > 1:
                record._remove_dirty(key.name)
                del record._data[key.name]
    await db.flush()

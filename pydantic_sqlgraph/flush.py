"""Unit of work writing dirty records in foreign key order."""
from __future__ import annotations

import asyncio
import json
import logging
import random
import re
from typing import TYPE_CHECKING, Any

from pypika import Table as PikaTable  # type: ignore
from sqlalchemy.exc import IntegrityError  # type: ignore

from pydantic_sqlgraph._deserializer import to_document, to_row
from pydantic_sqlgraph._query_builder import encode_filter
from pydantic_sqlgraph._types import UNDEFINED, Document, Filter, Value
from pydantic_sqlgraph.engine import Connection
from pydantic_sqlgraph.errors import (
    CircularReferenceError,
    InconsistentRecordError,
    RecordLoopError,
    RowNotFoundError,
)
from pydantic_sqlgraph.options import FlushOptions
from pydantic_sqlgraph.record import FlushMethod, FlushState, Record
from pydantic_sqlgraph.schema import ForeignKeyField, RelatedField, SimpleField

if TYPE_CHECKING:
    from pydantic_sqlgraph.database import Database
    from pydantic_sqlgraph.table import Table

logger = logging.getLogger(__name__)

_INTEGRITY_ERROR = re.compile(r"\bDuplicate\b|UNIQUE constraint|duplicate key", re.I)
_RETRYABLE_ERROR = re.compile(r"\bDeadlock\b|database is locked", re.I)


def is_integrity_error(error: BaseException) -> bool:
    """Check if an error is a constraint violation."""
    if isinstance(error, IntegrityError):
        return True
    return bool(_INTEGRITY_ERROR.search(str(error)))


def is_retryable(error: BaseException) -> bool:
    """Check if an error is a transient write conflict."""
    return bool(_RETRYABLE_ERROR.search(str(error)))


async def flush_database(
    connection: Connection, db: Database, options: FlushOptions | None = None
) -> None:
    """Write every dirty record of a database in one transaction.

    An optimistic pass writes only records whose dirty fields are all
    resolvable, a relaxed pass then writes whatever is resolvable.
    Unique constraint violations in the optimistic pass restart the
    flush in relaxed mode, write conflicts restart it as is.

    :param connection: Connection not in a transaction.
    :param db: Database holding the records.
    :param options: Hooks, cascading deletes and retry bounds.
    """
    options = options or FlushOptions()
    perfect = True
    retries = 0
    while True:
        snapshot = _snapshot(db)
        try:
            await connection.begin()
            if options.after_begin:
                await options.after_begin(connection)
            if perfect:
                await _flush_database_perfect(connection, db)
            await _flush_database_relaxed(connection, db)
            if options.replace_records_in:
                await replace_records_in(connection, db, options.replace_records_in)
            if options.before_commit:
                await options.before_commit(connection)
            await connection.commit()
            return
        except Exception as error:
            if connection.in_transaction():
                await connection.rollback()
            _restore(snapshot)
            if perfect and is_integrity_error(error):
                perfect = False
            elif not is_retryable(error):
                raise
            if retries >= options.retry.max_retries:
                raise
            retries += 1
            logger.warning(
                "Retrying flush (%s/%s): %s", retries, options.retry.max_retries, error
            )
            await asyncio.sleep(random.random() * options.retry.max_delay)


async def _flush_database_perfect(connection: Connection, db: Database) -> None:
    while True:
        count = 0
        for table in db.tables:
            count += await flush_table(connection, table, True)
        logger.debug("Optimistic flush pass wrote %s rows", count)
        if count == 0:
            return


async def _flush_database_relaxed(connection: Connection, db: Database) -> None:
    waiting = 0
    while db.get_dirty_count() > 0:
        count = 0
        for table in db.tables:
            count += await flush_table(connection, table)
        logger.debug("Relaxed flush pass wrote %s rows", count)
        if count == 0 and db.get_dirty_count() > 0:
            if waiting > len(db.tables):
                raise CircularReferenceError(dump_dirty_records(db))
            waiting += 1
        else:
            waiting = 0


async def flush_table(connection: Connection, table: Table, perfect: bool = False) -> int:
    """Write the flushable records of a table.

    Records are restored to their state before the attempt if it fails.

    :param connection: Connection in a transaction.
    :param table: Table holding the records.
    :param perfect: Only write records whose dirty fields are all
        resolvable.
    :return: Number of records matched, inserted or updated.
    """
    if not table.records:
        return 0
    states = [(dict(record._data), record._state.clone()) for record in table.records]
    try:
        return await _flush_table(connection, table, perfect)
    except Exception:
        for record, (data, state) in zip(table.records, states):
            if record._dirty():
                record._data = dict(data)
                record._state = state.clone()
        raise


async def _flush_table(connection: Connection, table: Table, perfect: bool) -> int:
    merge_records(table)
    model = table.model
    query_class = table.db.pool.query_class
    filters: list[Document] = []
    names: set[str] = set()
    candidates: list[Record] = []

    for record in table.records:
        if (
            record._dirty()
            and record._flushable(perfect)
            and not record._state.selected
            and record._state.method != FlushMethod.DELETE
        ):
            entry = record._filter()
            if entry:
                names.update(entry)
                names.update(record._state.dirty)
                filters.append(entry)
            candidates.append(record)

    key = model.key_field()
    if key is not None:
        names.add(key.name)

    if filters:
        columns = [
            field.column.name
            for field in model.fields
            if isinstance(field, SimpleField) and field.name in names
        ]
        query = (
            query_class.from_(PikaTable(table.name))
            .select(*columns)
            .where(encode_filter(filters, model, query_class))
        )
        rows = await connection.query(query)
        map_table = _map_table(table)
        for row in rows:  # type: ignore
            doc = to_document(row, model)
            if doc is not None:
                map_table.append(doc)
        for record in table.records:
            if not record._dirty():
                continue
            existing = map_table._map_get(record)
            if existing is not None:
                record._update_state(existing)

    groups: dict[str, tuple[list[str], list[Record]]] = {}
    insert_count = 0
    for record in candidates:
        if (
            record._dirty()
            and record._flushable(perfect)
            and record._state.method == FlushMethod.INSERT
        ):
            dirty_names = record._dirty_names()
            groups.setdefault("-".join(dirty_names), (dirty_names, []))[1].append(record)
            insert_count += 1
    for dirty_names, records in groups.values():
        await _insert_records(connection, table, dirty_names, records)

    update_count = 0
    for record in table.records:
        if not record._dirty() or not record._flushable(perfect):
            continue
        if record._state.method == FlushMethod.UPDATE:
            fields = record._fields()
            record._remove_dirty(fields)
            await table._update(connection, fields, record._filter())
            update_count += 1
        elif record._state.method == FlushMethod.DELETE:
            record._remove_dirty(list(record._state.dirty))
            await table._delete(connection, record._filter())
            record._state.deleted = True
            update_count += 1

    logger.debug(
        "%s: %s looked up, %s inserted, %s updated",
        model.name,
        len(filters),
        insert_count,
        update_count,
    )
    return len(filters) + insert_count + update_count


async def _insert_records(
    connection: Connection, table: Table, names: list[str], records: list[Record]
) -> None:
    # One multi-row insert for records sharing the same dirty fields.
    model = table.model
    fields: list[SimpleField] = [model.field(name) for name in names]  # type: ignore
    query = table.db.pool.query_class.into(PikaTable(table.name)).columns(
        *[field.column.name for field in fields]
    )
    for record in records:
        query = query.insert(
            tuple(to_row(record._get_value(field.name), field) for field in fields)
        )
        record._remove_dirty(names)
    key = model.key_field()
    generated = (
        model.primary_key is not None
        and model.primary_key.auto_increment()
        and key.name not in names  # type: ignore
    )
    ids = await connection.insert(query, key.column.name if generated else None)  # type: ignore
    for i, record in enumerate(records):
        if generated and i < len(ids):
            record._set_primary_key(ids[i])
        record._state.selected = True
        record._state.method = FlushMethod.UPDATE
        record._inserted = True


def merge_records(table: Table) -> None:
    """Merge records sharing a unique key value into the first of them."""
    model = table.model
    maps: dict[str, dict[str, Record]] = {key.name: {} for key in model.unique_keys}
    for record in table.records:
        if record._state.merged is not None:
            continue
        for key in model.unique_keys:
            value = record._value_of(key)
            if value is None:
                continue
            existing = maps[key.name].get(value)
            if existing is None or existing is record:
                maps[key.name][value] = record
            elif record._state.merged is None:
                record._state.merged = existing
            elif record._state.merged is not existing:
                raise InconsistentRecordError()
        if record._state.merged is not None:
            record._merge()


async def flush_record(connection: Connection, record: Record) -> Record:
    """Write a record after the dirty records it references.

    :param connection: Connection in a transaction.
    :param record: Record to write.
    :return: The record.
    """
    while True:
        pending: list[Record] = []
        _collect_parent_fields(record, set(), pending, True)
        if not pending:
            if record._flushable():
                await _persist(connection, record)
                if not record._dirty():
                    return record
                continue
            _collect_parent_fields(record, set(), pending, False)
            if not pending:
                raise RecordLoopError()
        for parent in pending:
            await _persist(connection, parent)


def _collect_parent_fields(
    record: Record, visited: set[Record], pending: list[Record], perfect: bool
) -> None:
    if not record._dirty() or record in visited:
        return
    visited.add(record)
    for name in list(record._state.dirty):
        value = record._data.get(name)
        if not isinstance(value, Record):
            continue
        value = value._canonical()
        if value._flushable(perfect):
            if value not in visited:
                visited.add(value)
                pending.append(value)
        else:
            _collect_parent_fields(value, visited, pending, perfect)


async def _persist(connection: Connection, record: Record) -> Record:
    # Write one flushable record, leaving the fields it could not write dirty.
    table = record._table
    where = record._filter()
    method = record._state.method

    if method == FlushMethod.DELETE:
        await table._delete(connection, where)
        record._remove_dirty(list(record._state.dirty))
        record._state.deleted = True
        return record

    fields = record._fields()

    if method == FlushMethod.UPDATE:
        result = await table._update(connection, fields, where)
        if result is not None and result.changed_rows == 0:
            raise RowNotFoundError()
        record._remove_dirty(fields)
        return record

    if where and not record._state.selected:
        # Rows identified by a unique key may exist already.
        row = await table._get(connection, where)
        record._state.selected = True
        if row is not None:
            return await _persist_existing(connection, record, fields, where, row)

    savepoint = await connection.savepoint()
    try:
        pk = await table._insert(connection, fields)
    except Exception as error:
        await savepoint.rollback()
        if not is_integrity_error(error) or not where:
            raise
        # Another writer inserted the row since it was looked up.
        row = await table._get(connection, where)
        if row is None:
            raise
        return await _persist_existing(connection, record, fields, where, row)
    await savepoint.commit()
    if record._primary_key() is UNDEFINED:
        record._set_primary_key(pk)
    record._remove_dirty(fields)
    record._state.method = FlushMethod.UPDATE
    record._inserted = True
    return record


async def _persist_existing(
    connection: Connection, record: Record, fields: Document, where: Document, row: Document
) -> Record:
    # Write only the fields that differ from the existing row.
    table = record._table
    model = table.model
    if record._primary_key() is UNDEFINED:
        record._set_primary_key(model.key_value(row))
    for name in list(fields):
        if fields[name] == model.value_of(row, name):
            record._remove_dirty(name)
            del fields[name]
    record._state.method = FlushMethod.UPDATE
    if fields and record._dirty():
        await table._update(connection, fields, where)
        record._remove_dirty(fields)
    return record


def dump_dirty_records(db: Database, all: bool = False) -> dict[str, list[dict[str, Any]]]:
    """Log the dirty records of a database.

    :param db: Database holding the records.
    :param all: Include clean and merged records.
    :return: Record dumps keyed by model name.
    """
    tables: dict[str, list[dict[str, Any]]] = {}
    for table in db.tables:
        records = [
            record._dump()
            for record in table.records
            if all or (record._dirty() and record._state.merged is None)
        ]
        if records:
            tables[table.model.name] = records
    logger.error("Dirty records: %s", json.dumps(tables, default=str))
    return tables


async def replace_record(connection: Connection, table: Table, doc: Document) -> Record:
    """Write a record and make its related rows match a document.

    Related rows missing from the document are deleted.

    :param connection: Connection in a transaction.
    :param table: Table of the record.
    :param doc: Document, related fields hold lists of child documents.
    :return: The record, children are in its related record sets.
    """
    record = table.append(
        {
            name: value
            for name, value in doc.items()
            if isinstance(table.model.field(name), SimpleField)
        }
    )
    if record._dirty():
        await flush_record(connection, record)
    table.clear()

    for name, items in doc.items():
        field = table.model.field(name)
        if not isinstance(field, RelatedField):
            continue
        referencing = field.referencing_field
        referencing_table = table.db.table(referencing.model)
        map_table = await _build_map_table(
            connection, referencing_table, {referencing.name: record._primary_key()}
        )
        matched: set[Record | None] = set()
        children: list[Record] = []
        batched: list[Document] = []

        for item in items:
            data = {**item, referencing.name: record}
            if any(isinstance(value, list) for value in item.values()):
                child = await replace_record(connection, referencing_table, data)
                matched.add(map_table._map_get(child))
                children.append(child)
            else:
                batched.append(data)

        temp_table = table.db.clone().table(referencing.model)
        for data in batched:
            temp_table.append(data)
        # Parents referenced by key only are matched in the same passes.
        await _flush_database_perfect(connection, temp_table.db)
        await _flush_database_relaxed(connection, temp_table.db)
        for child in temp_table.records:
            matched.add(map_table._map_get(child))
            children.append(child)

        record.get(field.name).records = children

        stale = [
            existing._primary_key()
            for existing in map_table.records
            if existing not in matched
        ]
        if stale:
            key = referencing_table.model.key_field()
            await referencing_table._delete(connection, {key.name: stale})  # type: ignore

    return record


async def _build_map_table(connection: Connection, table: Table, where: Filter) -> Table:
    model = table.model
    query_class = table.db.pool.query_class
    columns = [
        field.column.name
        for field in model.fields
        if isinstance(field, SimpleField) and field.unique_key is not None
    ]
    query = (
        query_class.from_(PikaTable(table.name))
        .select(*columns)
        .where(encode_filter(where, model, query_class))
    )
    map_table = _map_table(table)
    for row in await connection.query(query):  # type: ignore
        doc = to_document(row, model)
        if doc is not None:
            map_table.append(doc)
    return map_table


def _map_table(table: Table) -> Table:
    # Disposable table for matching rows against records.
    return table.db.clone().table(table.model)


async def replace_records_in(connection: Connection, db: Database, names: list[str]) -> None:
    """Delete rows under replaced records that the flush did not write.

    :param connection: Connection in a transaction.
    :param db: Database holding the replaced records.
    :param names: Table names, the first holds the replaced records and
        each following one references a previous one.
    """
    if not names:
        return
    table = db.table(names[0])
    values = [record._primary_key() for record in table.records if not record._inserted]
    if not values:
        return
    name_set = set(names[1:])
    for referencing_table, field in _get_referencing_tables(table):
        if referencing_table.name in name_set or referencing_table.model.name in name_set:
            await _delete_records(connection, referencing_table, field, values, name_set)


async def _delete_records(
    connection: Connection,
    table: Table,
    field: ForeignKeyField,
    values: list[Value],
    name_set: set[str],
) -> None:
    key = table.model.key_field()
    ids = [record._primary_key() for record in table.records]
    await table._delete(
        connection,
        {field.name: values, "not": {f"{key.name}_in": ids}},  # type: ignore
    )
    values = [record._primary_key() for record in table.records if not record._inserted]
    if not values:
        return
    for referencing_table, referencing_field in _get_referencing_tables(table):
        if referencing_table.name in name_set or referencing_table.model.name in name_set:
            await _delete_records(
                connection, referencing_table, referencing_field, values, name_set
            )


def _get_referencing_tables(table: Table) -> list[tuple[Table, ForeignKeyField]]:
    result = []
    for model in table.model.schema.models:
        if model is table.model:
            continue
        for field in model.fields:
            if (
                isinstance(field, ForeignKeyField)
                and field.referenced_field.model is table.model
            ):
                result.append((table.db.table(model), field))
    return result


def _snapshot(db: Database) -> list[tuple[Record, dict[str, Any], FlushState, bool]]:
    return [
        (record, dict(record._data), record._state.clone(), record._inserted)
        for table in db.tables
        for record in table.records
    ]


def _restore(snapshot: list[tuple[Record, dict[str, Any], FlushState, bool]]) -> None:
    # Undo in-memory effects of a rolled back attempt.
    for record, data, state, inserted in snapshot:
        record._data = dict(data)
        record._state = state.clone()
        record._inserted = inserted

"""In-memory tables of records and the SQL operations on them."""
from __future__ import annotations

import asyncio
import logging
import random
from typing import TYPE_CHECKING, Any

from pypika import functions as fn  # type: ignore
from pypika import Table as PikaTable  # type: ignore
from pypika.terms import EmptyCriterion, LiteralValue  # type: ignore

from pydantic_sqlgraph._deserializer import to_document, to_row
from pydantic_sqlgraph._query_builder import (
    QueryBuilder,
    encode_filter,
    plainify,
    should_select_separately,
)
from pydantic_sqlgraph._types import UNDEFINED, Document, Filter, Value
from pydantic_sqlgraph._util import to_array
from pydantic_sqlgraph.engine import Connection, QueryResult
from pydantic_sqlgraph.errors import (
    BadFilterError,
    InconsistentRecordError,
    NoDataError,
    ShapeError,
)
from pydantic_sqlgraph.flush import replace_record
from pydantic_sqlgraph.loader import load_table
from pydantic_sqlgraph.options import RetryPolicy, SelectOptions
from pydantic_sqlgraph.record import Record, _same_identity
from pydantic_sqlgraph.schema import ForeignKeyField, Model, RelatedField, SimpleField
from pydantic_sqlgraph.tree import (
    ClosureTable,
    create_node,
    delete_subtree,
    get_closure_table,
    get_parent_field,
    move_subtree,
    tree_query,
)

if TYPE_CHECKING:
    from pydantic_sqlgraph.database import Database

logger = logging.getLogger(__name__)


class Table:
    """Records of one model, indexed by their unique keys."""

    def __init__(self, db: Database, model: Model) -> None:
        self.db = db
        self.name = model.table.name
        self.model = model
        self.records: list[Record] = []
        self.closure_table: ClosureTable | None = None
        self._record_map: dict[str, dict[str, Record]] = {}
        self._init_map()

    def __repr__(self) -> str:
        return f"Table({self.name})"

    # Identity map.

    def append(self, data: Document | None = None) -> Record:
        """Add a record, or merge data into the record it identifies.

        :param data: Field values of the record.
        :return: The existing record sharing a unique key with data,
            else the new record.
        """
        data = data or {}
        record = Record(self)
        for name, value in data.items():
            record.set(name, value)
        existing = self._map_get(record)
        if existing is None:
            self.records.append(record)
            self._map_put(record)
            return record
        for name in data:
            field = self.model.field(name)
            current = existing.get(name)
            value = record.get(name)
            if isinstance(field, ForeignKeyField) and current is not UNDEFINED:
                if _same_identity(current, value):
                    continue
            if current != value:
                existing.set(name, value)
        self._map_put(existing)
        return existing

    def new(self, data: Document | None = None) -> Record:
        """Create a record bound to this table but not tracked by it."""
        record = Record(self)
        for name, value in (data or {}).items():
            record.set(name, value)
        return record

    def clear(self) -> None:
        self.records = []
        self._init_map()

    def get_dirty_count(self) -> int:
        return sum(
            1
            for record in self.records
            if record._dirty() and record._state.merged is None
        )

    def json(self) -> list[Document]:
        return [record._json() for record in self.records]

    def _map_get(self, record: Record) -> Record | None:
        existing = None
        for key in self.model.unique_keys:
            value = record._value_of(key)
            if value is None:
                continue
            found = self._record_map[key.name].get(value)
            if found is not None:
                if existing is not None and existing is not found:
                    raise InconsistentRecordError()
                existing = found
        return existing

    def _map_put(self, record: Record) -> None:
        for key in self.model.unique_keys:
            value = record._value_of(key)
            if value is not None:
                self._record_map[key.name][value] = record

    def _init_map(self) -> None:
        self._record_map = {key.name: {} for key in self.model.unique_keys}

    # Queries.

    async def select(
        self,
        fields: str | list[str] | Document = "*",
        where: Filter | None = None,
        offset: int | None = None,
        limit: int | None = None,
        order_by: str | list[str] | None = None,
    ) -> list[Document]:
        """Select documents.

        :param fields: `*`, a list of field names, or a field shape
            document. Related fields in a shape are selected in batches,
            e.g. `{"orders": {"where": {...}, "limit": 2}}`.
        :param where: Filter.
        :param offset: Number of rows to skip.
        :param limit: Maximum number of rows.
        :param order_by: Field paths to sort by.
        :return: The documents.
        """
        async with self.db.pool.connect() as connection:
            return await self._select(
                connection, fields, where, offset, limit, order_by
            )

    async def get(self, key: Value | Filter) -> Document | None:
        """Get a document by primary key value or unique key filter."""
        async with self.db.pool.connect() as connection:
            return await self._get(connection, key)

    async def insert(self, data: Document) -> Any:
        """Insert a row.

        :param data: Column values keyed by field name.
        :return: The primary key of the new row.
        """
        async with self.db.pool.connect() as connection:
            return await self._insert(connection, data)

    async def update(self, data: Document, where: Filter) -> QueryResult | None:
        """Update the rows matching a filter.

        :param data: New values keyed by field name.
        :param where: Filter.
        :return: Row counts, None if there was nothing to set.
        """
        async with self.db.pool.connect() as connection:
            return await self._update(connection, data, where)

    async def delete(self, where: Filter | None = None) -> QueryResult:
        """Delete the rows matching a filter.

        Rows of a tree table are deleted with their descendants.
        """
        async with self.db.pool.connect() as connection:
            if self.closure_table is not None:
                return await connection.transaction(
                    lambda: self._delete(connection, where)
                )
            return await self._delete(connection, where)

    async def count(self, where: Filter | None = None, expr: str | None = None) -> int:
        """Count rows.

        :param where: Filter.
        :param expr: SQL expression to count, `1` by default.
        :return: The number of rows.
        """
        table = PikaTable(self.name)
        query = self.db.pool.query_class.from_(table).select(
            fn.Count(LiteralValue(expr or "1")).as_("result")
        )
        if where:
            criterion = encode_filter(where, self.model, self.db.pool.query_class)
            if not isinstance(criterion, EmptyCriterion):
                query = query.where(criterion)
        async with self.db.pool.connect() as connection:
            rows = await connection.query(query)
        return int(rows[0]["result"])  # type: ignore

    async def create(self, data: Document) -> Document:
        """Create a row with its parents and children in one transaction.

        :param data: Document, foreign keys may hold `connect`, `create`
            or `update` and related fields any mutation method.
        :return: The created row.
        """
        async with self.db.pool.connect() as connection:
            return await connection.transaction(
                lambda: self._create(connection, data)
            )

    async def upsert(self, data: Document, update: Document | None = None) -> Document:
        """Create a row unless its unique key exists, else modify it.

        :param data: Document holding a complete unique key.
        :param update: Mutation applied to an existing row.
        :return: The created or existing row.
        """
        async with self.db.pool.connect() as connection:
            return await connection.transaction(
                lambda: self._upsert(connection, data, update)
            )

    async def modify(self, data: Document, where: Filter) -> Document | None:
        """Apply a nested mutation to the row matching a unique key filter.

        :param data: Mutation document.
        :param where: Unique key filter.
        :return: The row, None if no row matches.
        """
        async with self.db.pool.connect() as connection:
            return await connection.transaction(
                lambda: self._modify(connection, data, where)
            )

    async def replace(self, data: Document) -> Record:
        """Make the row and its related rows look exactly like a document.

        Records are built in a disposable database, pending records of
        this one are left alone.
        """
        table = self.db.clone().table(self.model)
        async with self.db.pool.connect() as connection:
            return await connection.transaction(
                lambda: replace_record(connection, table, data)
            )

    async def claim(
        self,
        where: Filter,
        data: Document,
        order_by: str | list[str] | None = None,
        retry: RetryPolicy | None = None,
    ) -> Document | None:
        """Claim one row matching a filter by updating it.

        A random candidate is updated only if it still matches the filter,
        other writers claiming it first cause a retry after a random delay.

        :param where: Filter of available rows.
        :param data: Values marking the row as claimed.
        :param order_by: Order candidates are selected in.
        :param retry: Retry bounds.
        :return: The claimed row, None if no row is available.
        """
        retry = retry or RetryPolicy()
        condition = {"or": where} if isinstance(where, list) else where
        for attempt in range(retry.max_retries + 1):
            rows = await self.select("*", where, limit=10, order_by=order_by)
            if not rows:
                return None
            row = random.choice(rows)
            unique_fields = self.model.get_unique_fields(row)
            result = await self.update(data, {"and": [condition or {}, unique_fields]})
            if result is not None and result.changed_rows == 1:
                return row
            logger.debug("Claim of %s lost, attempt %s", self.model.name, attempt + 1)
            await asyncio.sleep(random.random() * retry.max_delay)
        return None

    async def get_ancestors(
        self, row: Value | Document, where: Filter | None = None
    ) -> list[Document]:
        """Get the ancestors of a row of a tree table, root first.

        :param row: Primary key or unique key filter of the row.
        :param where: Filter on the ancestors.
        :return: The ancestors.
        """
        field = get_closure_table(self).ancestor
        async with self.db.pool.connect() as connection:
            return await tree_query(connection, self, row, field, where)

    async def get_descendants(
        self, row: Value | Document, where: Filter | None = None
    ) -> list[Document]:
        """Get the descendants of a row of a tree table, nearest first."""
        field = get_closure_table(self).descendant
        async with self.db.pool.connect() as connection:
            return await tree_query(connection, self, row, field, where)

    async def load(
        self,
        data: Document | list[Document],
        config: dict[str, str | list[str]],
        defaults: Document | None = None,
    ) -> list[Record]:
        """Append flat rows mapped through field paths, then flush.

        Pending records of the database are flushed as well.

        :param data: Rows keyed by source column name.
        :param config: Field paths keyed by source column name, e.g.
            `{"parent_name": "parent.name"}`. A `"*"` entry names a
            related field receiving the unmapped columns as name and
            value rows, e.g. `"attributes[name, value]"`.
        :param defaults: Values of fields the rows leave unset, nested
            documents for foreign keys.
        :return: The appended records.
        """
        return await load_table(self, data, config, defaults)

    async def select_tree(self, where: Filter, options: Any = None) -> list[Document] | None:
        """Select the rows reachable from a filter as nested documents.

        :param where: Filter of the root rows.
        :param options: Field shape (`""`, `"*"`, `"**"` or a nested
            dict), None to follow every foreign key of the schema.
        :return: Root documents, repeated rows appear as key stubs.
        """
        from pydantic_sqlgraph.select import select_tree, select_tree2
        from pydantic_sqlgraph.serializer import JsonSerializer

        if options is not None:
            result = await select_tree(self, where, options)
        else:
            result = await select_tree2(self, where)
        return JsonSerializer(result).serialize(self.model)

    # Operations on a given connection.

    async def _query(
        self,
        connection: Connection,
        fields: Any = "*",
        where: Filter | None = None,
        offset: int | None = None,
        limit: int | None = None,
        order_by: str | list[str] | None = None,
    ) -> list[Document]:
        builder = QueryBuilder(self.model, self.db.pool.query_class)
        query = builder.select(fields, where, order_by)
        if limit is not None:
            query = query.limit(int(limit))
        if offset is not None:
            query = query.offset(int(offset))
        rows = await connection.query(query)
        documents = [
            to_document(row, self.model, builder.field_map) for row in rows  # type: ignore
        ]
        return [doc for doc in documents if doc is not None]

    async def _select(
        self,
        connection: Connection,
        fields: Any = "*",
        where: Filter | None = None,
        offset: int | None = None,
        limit: int | None = None,
        order_by: str | list[str] | None = None,
    ) -> list[Document]:
        shape = fields
        if isinstance(fields, dict):
            # Related fields are selected separately.
            shape = {
                name: value
                for name, value in fields.items()
                if not isinstance(self.model.field(name), RelatedField)
            }
        result = await self._query(connection, shape, where, offset, limit, order_by)
        return await self._resolve_related_fields(connection, result, fields)

    async def _resolve_related_fields(
        self, connection: Connection, result: list[Document], fields: Any
    ) -> list[Document]:
        if not isinstance(fields, dict) or not result:
            return result
        key = self.model.key_field()
        values = [self.model.value_of(row, key) for row in result]  # type: ignore
        for name, value in fields.items():
            field = self.model.field(name)
            if isinstance(field, RelatedField) and value:
                if isinstance(value, dict):
                    options = SelectOptions(**value)
                else:
                    options = SelectOptions()
                rows = await self._select_related(
                    connection, field, values, options.fields or "*", options
                )
                for entry, related in zip(result, rows):
                    entry[field.name] = related
        for name, value in fields.items():
            field = self.model.field(name)
            if not value or not isinstance(field, ForeignKeyField):
                continue
            table = self.db.table(field.referenced_field.model)
            if not should_select_separately(table.model, value):
                continue
            keys = [table.model.key_value(row.get(field.name)) for row in result]
            docs = await table._select(
                connection,
                value,
                {table.model.key_field().name: keys},  # type: ignore
            )
            doc_map = {table.model.key_value(doc): doc for doc in docs}
            for row in result:
                doc = doc_map.get(table.model.key_value(row.get(field.name)))
                if doc is not None:
                    row[field.name] = dict(doc)
        return result

    async def _select_related(
        self,
        connection: Connection,
        field: RelatedField,
        values: list[Value],
        fields: Any,
        options: SelectOptions,
    ) -> list[Any]:
        referencing = field.referencing_field
        through = field.through_field
        table = self.db.table(referencing.model)
        order_by = options.order_by
        if through is not None:
            fields = {through.name: fields}
            if order_by:
                order_by = [f"{through.name}.{name}" for name in to_array(order_by)]

        def _where(value: Any) -> Document:
            if through is not None:
                where = {through.name: options.where} if options.where else {}
            else:
                where = dict(options.where or {})
            where[referencing.name] = value
            return where

        def _shape(rows: list[Document]) -> list[Any]:
            if through is not None:
                return [row[through.name] for row in rows]
            for row in rows:
                row.pop(referencing.name, None)
            return rows

        unique = referencing.is_unique() and through is None
        if options.limit:
            result = []
            for value in values:
                rows = await table._select(
                    connection,
                    fields,
                    _where(value),
                    options.offset,
                    options.limit,
                    order_by,
                )
                rows = _shape(rows)
                result.append((rows[0] if rows else None) if unique else rows)
            return result
        rows = await table._select(connection, fields, _where(values), None, None, order_by)
        groups: dict[Any, list[Document]] = {value: [] for value in values}
        for row in rows:
            parent = table.model.value_of(row, referencing)
            if parent in groups:
                groups[parent].append(row)
        result = []
        for value in values:
            group = _shape(groups[value])
            result.append((group[0] if group else None) if unique else group)
        return result

    async def _get(self, connection: Connection, key: Value | Filter) -> Document | None:
        if key is UNDEFINED:
            raise BadFilterError("Bad filter")
        if key is None or not isinstance(key, (dict, list, Record)):
            key = {self.model.key_field().name: key}  # type: ignore
        else:
            key = plainify(key)
            if not self.model.check_unique_key(key):
                raise BadFilterError("Bad selector", key)
        rows = await self._query(connection, "*", key)
        return rows[0] if rows else None

    async def _insert(self, connection: Connection, data: Document) -> Any:
        row = self._row(data)
        if not row:
            raise NoDataError(self.model.name)
        key = self.model.key_field()
        auto_increment = self.model.primary_key and self.model.primary_key.auto_increment()
        table = PikaTable(self.name)
        query = (
            self.db.pool.query_class.into(table)
            .columns(*[self._column(name) for name in row])
            .insert(*[self._literal(name, value) for name, value in row.items()])
        )
        if auto_increment and row.get(key.name) is None:  # type: ignore
            ids = await connection.insert(query, key.column.name)  # type: ignore
            return ids[0] if ids else None
        await connection.query(query)
        return self.model.value_of(row, key) if key else None  # type: ignore

    async def _update(
        self, connection: Connection, data: Document, where: Filter | None
    ) -> QueryResult | None:
        row = self._row(data)
        if isinstance(where, dict):
            for name in list(row):
                if name not in where:
                    continue
                lhs = row[name]
                rhs = self.model.value_of(plainify(where), name)
                if isinstance(rhs, dict) or rhs is UNDEFINED:
                    continue
                if lhs is None or rhs is None:
                    if lhs is None and rhs is None:
                        del row[name]
                    continue
                if str(lhs) == str(rhs):
                    del row[name]
        if not row:
            return None
        table = PikaTable(self.name)
        query = self.db.pool.query_class.update(table)
        for name, value in row.items():
            query = query.set(self._column(name), self._literal(name, value))
        criterion = encode_filter(where, self.model, self.db.pool.query_class)
        if not isinstance(criterion, EmptyCriterion):
            query = query.where(criterion)
        return await connection.query(query)  # type: ignore

    async def _delete(self, connection: Connection, where: Filter | None) -> QueryResult:
        if self.closure_table is not None:
            nodes = await delete_subtree(connection, self, where)
            where = {self.model.key_field().name: nodes}  # type: ignore
        table = PikaTable(self.name)
        query = self.db.pool.query_class.from_(table).delete()
        criterion = encode_filter(where, self.model, self.db.pool.query_class)
        if not isinstance(criterion, EmptyCriterion):
            query = query.where(criterion)
        return await connection.query(query)  # type: ignore

    def _row(self, data: Document) -> Document:
        # Column values of simple fields, foreign keys as key values.
        row: Document = {}
        for name, value in data.items():
            field = self.model.field(name)
            if not isinstance(field, SimpleField) or value is UNDEFINED:
                continue
            if isinstance(value, Record):
                value = value._canonical()._primary_key()
            elif isinstance(value, dict) and isinstance(field, ForeignKeyField):
                value = field.referenced_field.model.key_value(value)
            row[field.name] = value
        return row

    def _column(self, name: str) -> str:
        return self.model.field(name).column.name  # type: ignore

    def _literal(self, name: str, value: Value) -> Value:
        return to_row(value, self.model.field(name))  # type: ignore

    # Nested mutations.

    async def _resolve_parent_fields(
        self, connection: Connection, data: Document, where: Filter | None = None
    ) -> Document:
        row: Document = {}
        for name, value in data.items():
            field = self.model.field(name)
            if isinstance(field, ForeignKeyField) and isinstance(value, dict):
                table = self.db.table(field.referenced_field.model)
                key = table.model.key_field().name  # type: ignore
                if len(value) != 1:
                    raise ShapeError(f"Bad mutation of {field.display_name}")
                method, args = next(iter(value.items()))
                if method == "connect":
                    parent = await table._get(connection, args)
                    row[field.name] = parent[key] if parent else None
                elif method == "create":
                    parent = await table._create(connection, args)
                    row[field.name] = parent[key] if parent else None
                elif method == "update":
                    current = await self._get(connection, where) if where else None
                    if current is not None and current.get(field.name) is not None:
                        pk = table.model.key_value(current[field.name])
                        await table._modify(connection, args, {key: pk})
                else:
                    raise ShapeError(f"Unsupported method '{method}'")
            elif isinstance(field, SimpleField):
                row[field.name] = value
        return row

    async def _create(
        self, connection: Connection, data: Document, row: Document | None = None
    ) -> Document:
        if not data:
            raise NoDataError(self.model.name)
        if row is None:
            row = await self._resolve_parent_fields(connection, data)
        pk = await self._insert(connection, row)
        if self.closure_table is not None:
            # Linked before its children are created under it.
            await create_node(
                connection, self, {**row, self.model.key_field().name: pk}  # type: ignore
            )
        await self._update_child_fields(connection, data, pk)
        return await self._get(connection, pk)  # type: ignore

    async def _upsert(
        self, connection: Connection, data: Document, update: Document | None = None
    ) -> Document:
        if not self.model.check_unique_key(plainify(data)):
            raise BadFilterError("Incomplete", data)
        row = await self._resolve_parent_fields(connection, data)
        unique_fields = self.model.get_unique_fields(row)
        existing = await self._get(connection, unique_fields)
        if existing is None:
            return await self._create(connection, data, row)
        if update:
            return await self._modify(connection, update, unique_fields)  # type: ignore
        return existing

    async def _modify(
        self, connection: Connection, data: Document, where: Filter
    ) -> Document | None:
        where = plainify(where)
        if not self.model.check_unique_key(where):
            raise BadFilterError("Bad filter", where)
        row = await self._resolve_parent_fields(connection, data, where)
        await self._update(connection, row, where)
        selector = {name: row.get(name, value) for name, value in where.items()}  # type: ignore
        existing = await self._get(connection, selector)
        if existing is not None:
            pk = self.model.key_value(existing)
            await self._update_child_fields(connection, data, pk)
            if self.closure_table is not None and get_parent_field(self).name in data:
                await move_subtree(connection, self, existing)
        return existing

    async def _update_child_fields(
        self, connection: Connection, data: Document, pk: Value
    ) -> None:
        for name, value in data.items():
            field = self.model.field(name)
            if isinstance(field, RelatedField):
                await self._update_child_field(connection, field, pk, value)

    async def _update_child_field(
        self, connection: Connection, related: RelatedField, pk: Value, data: Any
    ) -> None:
        field = related.referencing_field
        table = self.db.table(field.model)
        if not data:
            await self._disconnect_unique(field, connection, pk)
            return
        through = related.through_field is not None
        for method, args in data.items():
            if method == "connect":
                if through:
                    await self._connect_through(connection, related, pk, args)
                    continue
                for arg in to_array(args):
                    if not table.model.check_unique_key(plainify(arg)):
                        raise BadFilterError(f"Bad filter ({table.model.name})", arg)
                    if field.is_unique():
                        await self._disconnect_unique(field, connection, pk)
                    await table._update(connection, {field.name: pk}, arg)
            elif method == "create":
                if through:
                    await self._create_through(connection, related, pk, args)
                    continue
                await self._create_children(connection, field, pk, args)
            elif method == "upsert":
                if through:
                    await self._upsert_through(connection, related, pk, args)
                    continue
                for arg in to_array(args):
                    create, update = arg.get("create"), arg.get("update")
                    if not create and not field.is_unique():
                        raise ShapeError("Bad data")
                    create = {field.name: pk, **(create or {})}
                    await table._upsert(connection, create, update)
            elif method == "update":
                if through:
                    await self._update_through(connection, related, pk, args)
                    continue
                for arg in to_array(args):
                    if "data" in arg:
                        values, where = arg["data"], arg.get("where") or {}
                    else:
                        values, where = arg, {}
                    await table._modify(connection, values, {field.name: pk, **where})
            elif method == "delete":
                if through:
                    await self._delete_through(connection, related, pk, args)
                    continue
                where = [{**arg, field.name: pk} for arg in to_array(args)]
                await table._delete(connection, where)
            elif method == "disconnect":
                if through:
                    await self._disconnect_through(connection, related, pk, args)
                    continue
                where = [{field.name: pk, **arg} for arg in to_array(args)]
                await table._update(connection, {field.name: None}, where)
            elif method == "set":
                if through:
                    await self._delete_through(connection, related, pk, [])
                    await self._create_through(connection, related, pk, args)
                    continue
                await table._delete(connection, {field.name: pk})
                await self._create_children(connection, field, pk, args)
            else:
                raise ShapeError(f"Unknown method: {method}")

    async def _create_children(
        self, connection: Connection, field: ForeignKeyField, pk: Value, args: Any
    ) -> None:
        table = self.db.table(field.model)
        docs = [{field.name: pk, **arg} for arg in to_array(args)]
        if field.is_unique():
            await self._disconnect_unique(field, connection, pk)
            docs = docs[:1]
        for doc in docs:
            await table._create(connection, doc)

    async def _disconnect_unique(
        self, field: ForeignKeyField, connection: Connection, pk: Value
    ) -> None:
        table = self.db.table(field.model)
        if field.column.nullable:
            await table._update(connection, {field.name: None}, {field.name: pk})
        else:
            await table._delete(connection, {field.name: pk})

    async def _connect_through(
        self, connection: Connection, related: RelatedField, pk: Value, args: Any
    ) -> None:
        through: ForeignKeyField = related.through_field  # type: ignore
        table = self.db.table(through.referenced_field.model)
        mapping = self.db.table(through.model)
        for arg in to_array(args):
            row = await table._get(connection, arg)
            if row is not None:
                await mapping._create(
                    connection,
                    {
                        related.referencing_field.name: pk,
                        through.name: table.model.key_value(row),
                    },
                )

    async def _create_through(
        self, connection: Connection, related: RelatedField, pk: Value, args: Any
    ) -> None:
        through: ForeignKeyField = related.through_field  # type: ignore
        table = self.db.table(through.referenced_field.model)
        mapping = self.db.table(through.model)
        for arg in to_array(args):
            row = await table._create(connection, arg)
            await mapping._create(
                connection,
                {
                    related.referencing_field.name: pk,
                    through.name: table.model.key_value(row),
                },
            )

    async def _upsert_through(
        self, connection: Connection, related: RelatedField, pk: Value, args: Any
    ) -> None:
        through: ForeignKeyField = related.through_field  # type: ignore
        table = self.db.table(through.referenced_field.model)
        mapping = self.db.table(through.model)
        for arg in to_array(args):
            row = await table._upsert(connection, arg["create"], arg.get("update"))
            await mapping._upsert(
                connection,
                {
                    related.referencing_field.name: pk,
                    through.name: table.model.key_value(row),
                },
            )

    async def _update_through(
        self, connection: Connection, related: RelatedField, pk: Value, args: Any
    ) -> None:
        through: ForeignKeyField = related.through_field  # type: ignore
        model = through.referenced_field.model
        reverse: RelatedField = through.related_field  # type: ignore
        for arg in to_array(args):
            if reverse.through_field is not None:
                scope = {related.model.key_field().name: pk}  # type: ignore
            else:
                scope = {related.referencing_field.name: pk}
            where = {reverse.name: scope, **(arg.get("where") or {})}
            await self.db.table(model)._modify(connection, arg["data"], where)

    async def _delete_through(
        self, connection: Connection, related: RelatedField, pk: Value, args: Any
    ) -> None:
        through: ForeignKeyField = related.through_field  # type: ignore
        mapping = self.db.table(through.model)
        table = self.db.table(through.referenced_field.model)
        where: Document = {related.referencing_field.name: pk}
        if args:
            where[through.name] = to_array(args)
        rows = await mapping._query(connection, "*", where)
        if not rows:
            return
        values = [mapping.model.value_of(row, through) for row in rows]
        keys = [mapping.model.key_value(row) for row in rows]
        await mapping._delete(connection, {mapping.model.key_field().name: keys})  # type: ignore
        await table._delete(connection, {table.model.key_field().name: values})  # type: ignore

    async def _disconnect_through(
        self, connection: Connection, related: RelatedField, pk: Value, args: Any
    ) -> None:
        through: ForeignKeyField = related.through_field  # type: ignore
        mapping = self.db.table(through.model)
        await mapping._delete(
            connection,
            {related.referencing_field.name: pk, through.name: to_array(args)},
        )

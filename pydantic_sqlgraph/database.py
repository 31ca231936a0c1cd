"""Module providing the Database class."""
from __future__ import annotations

from typing import Any

from sqlalchemy import MetaData  # type: ignore
from sqlalchemy.ext.asyncio import AsyncEngine  # type: ignore

from pydantic_sqlgraph._models import ClosureTableConfig, SchemaConfig
from pydantic_sqlgraph._types import Document
from pydantic_sqlgraph.engine import Connection, ConnectionPool
from pydantic_sqlgraph.errors import ConfigurationError
from pydantic_sqlgraph.flush import flush_database, flush_record
from pydantic_sqlgraph.options import FlushOptions
from pydantic_sqlgraph.record import Record
from pydantic_sqlgraph.schema import Field, ForeignKeyField, Model, Schema, SimpleField
from pydantic_sqlgraph.table import Table
from pydantic_sqlgraph.tree import ClosureTable


class Database:
    """Tables of pending records over one connection pool."""

    def __init__(
        self, pool: ConnectionPool | AsyncEngine | str, schema: Schema | None = None
    ) -> None:
        """Track records of a schema and flush them to a database.

        :param pool: Connection pool, SQLAlchemy async engine or its
            connection string.
        :param schema: Schema of the database, see `build_schema`.
        """
        self.pool = pool if isinstance(pool, ConnectionPool) else ConnectionPool(pool)
        self.schema: Schema | None = None
        self.tables: list[Table] = []
        self._table_map: dict[str, Table] = {}
        if schema is not None:
            self._set_schema(schema)

    def __getitem__(self, name: str) -> Table:
        return self.table(name)

    async def build_schema(self, config: SchemaConfig | None = None) -> Schema:
        """Build the schema from the tables of the database.

        :param config: Model and field overrides.
        :return: The schema.
        """
        if self.schema is not None:
            return self.schema
        metadata = MetaData()
        async with self.pool.engine.connect() as conn:
            await conn.run_sync(metadata.reflect)
        schema = Schema.from_metadata(metadata, config)
        self._set_schema(schema)
        return schema

    def clone(self) -> Database:
        """Get an empty database sharing the pool and schema."""
        return Database(self.pool, self.schema)

    def table(self, name: str | Field | Model) -> Table:
        """Get a table by model name, table name, model or field."""
        if isinstance(name, Field):
            name = name.model.name
        elif isinstance(name, Model):
            name = name.name
        return self._table_map[name]

    def model(self, name: str) -> Model:
        return self.table(name).model

    def append(self, name: str, data: Document | None = None) -> Record:
        """Append a record to a table, see `Table.append`."""
        return self.table(name).append(data)

    def get_dirty_count(self) -> int:
        return sum(table.get_dirty_count() for table in self.tables)

    async def flush(self, options: FlushOptions | None = None) -> Connection:
        """Write every dirty record in one transaction.

        :param options: Hooks, cascading deletes and retry bounds.
        :return: The released connection, counting the statements run.
        """
        connection = await self.pool.get_connection()
        try:
            await flush_database(connection, self, options)
        finally:
            await connection.release()
        return connection

    async def flush_record(self, record: Record) -> Record:
        """Write one record and the records it references."""
        async with self.pool.connect() as connection:
            return await connection.transaction(
                lambda: flush_record(connection, record)
            )

    async def end(self) -> None:
        await self.pool.end()

    def clear(self) -> None:
        for table in self.tables:
            table.clear()

    def json(self) -> dict[str, Any]:
        return {table.model.name: table.json() for table in self.tables}

    def _set_schema(self, schema: Schema) -> None:
        self.schema = schema
        for model in schema.models:
            table = Table(self, model)
            self._table_map[model.name] = table
            self._table_map[model.table.name] = table
            self.tables.append(table)
        for model in schema.models:
            if model.config.closure_table is not None:
                self.table(model).closure_table = self._closure_table(model)

    def _closure_table(self, model: Model) -> ClosureTable:
        config: ClosureTableConfig = model.config.closure_table  # type: ignore
        table = self._table_map.get(config.table)
        if table is None:
            raise ConfigurationError(f"Table {config.table} not found.")
        if model.get_foreign_key_of(model) is None:
            raise ConfigurationError(
                f"Table {model.table.name} does not reference itself."
            )
        fields: list[ForeignKeyField] = []
        for name in (config.ancestor, config.descendant):
            field = table.model.field(name)
            if (
                not isinstance(field, ForeignKeyField)
                or field.referenced_field.model is not model
            ):
                raise ConfigurationError(
                    f"Field {table.name}.{name} is not a foreign key"
                    f" to {model.table.name}."
                )
            fields.append(field)
        depth = None
        if config.depth is not None:
            depth = table.model.field(config.depth)
            if not isinstance(depth, SimpleField):
                raise ConfigurationError(f"Field {table.name}.{config.depth} not found.")
        return ClosureTable(table, fields[0], fields[1], depth)

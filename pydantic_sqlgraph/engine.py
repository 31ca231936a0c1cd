"""Connection pool and connections over a SQLAlchemy async engine."""
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

from pydantic import BaseModel
from pypika import Query  # type: ignore
from pypika.dialects import MySQLQuery, PostgreSQLQuery, SQLLiteQuery  # type: ignore
from pypika.utils import format_quotes  # type: ignore
from sqlalchemy import event  # type: ignore
from sqlalchemy.ext.asyncio import (  # type: ignore
    AsyncConnection,
    AsyncEngine,
    AsyncTransaction,
    create_async_engine,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_QUERY_CLASSES = {
    "sqlite": SQLLiteQuery,
    "postgresql": PostgreSQLQuery,
    "mysql": MySQLQuery,
    "mariadb": MySQLQuery,
}
_LAST_ROW_ID_DIALECTS = ("sqlite", "mysql", "mariadb")


class QueryResult(BaseModel):
    """Outcome of a statement that returns no rows."""

    affected_rows: int = 0
    changed_rows: int = 0
    last_insert_id: int | None = None


class ConnectionPool:
    """Hands out connections and quotes values for one database."""

    def __init__(self, url: str | AsyncEngine) -> None:
        """Pool connections of a SQLAlchemy async engine.

        :param url: Connection string for SQLAlchemy async engine, or
            the engine itself.
        """
        if isinstance(url, AsyncEngine):
            self.engine = url
        else:
            self.engine = create_async_engine(url)
        self.dialect: str = self.engine.dialect.name
        self.query_class = _QUERY_CLASSES.get(self.dialect, Query)
        self.quote_char: str = self.query_class._builder().QUOTE_CHAR
        if self.dialect == "sqlite":
            _enable_savepoints(self.engine)

    async def get_connection(self) -> "Connection":
        """Check out a connection, release it when done."""
        return Connection(self, await self.engine.connect())

    @asynccontextmanager
    async def connect(self) -> AsyncIterator["Connection"]:
        """Check out a connection for one operation.

        Work left in an open transaction is committed on success and
        rolled back on error.
        """
        connection = await self.get_connection()
        try:
            yield connection
            if connection.in_transaction():
                await connection.commit()
        finally:
            await connection.release()

    async def end(self) -> None:
        await self.engine.dispose()

    def escape(self, value: Any) -> str:
        return "'" + str(value).replace("'", "''") + "'"

    def escape_id(self, name: str) -> str:
        return format_quotes(name, self.quote_char)


class Connection:
    """A checked out connection counting the statements it runs."""

    def __init__(self, pool: ConnectionPool, connection: AsyncConnection) -> None:
        self.pool = pool
        self.dialect = pool.dialect
        self.query_count = 0
        self._connection = connection

    async def query(self, sql: Any) -> list[dict[str, Any]] | QueryResult:
        """Run a statement.

        :param sql: SQL text or a pypika query.
        :return: Rows as dicts if the statement returns rows, else the
            affected row counts.
        """
        sql = str(sql)
        self.query_count += 1
        logger.debug(sql)
        result = await self._connection.exec_driver_sql(sql)
        if result.returns_rows:
            return [dict(row) for row in result.mappings().all()]
        return QueryResult(
            affected_rows=max(result.rowcount, 0),
            changed_rows=max(result.rowcount, 0),
            last_insert_id=(
                result.lastrowid if self.dialect in _LAST_ROW_ID_DIALECTS else None
            ),
        )

    async def insert(self, sql: Any, key_column: str | None = None) -> list[Any]:
        """Run an insert statement.

        :param sql: SQL text or a pypika insert query.
        :param key_column: Column holding generated keys.
        :return: Generated keys in insertion order.
        """
        sql = str(sql)
        if key_column and self.dialect in ("sqlite", "postgresql"):
            rows = await self.query(
                f"{sql} RETURNING {self.pool.escape_id(key_column)}"
            )
            return sorted(row[key_column] for row in rows)  # type: ignore
        result = await self.query(sql)
        if not key_column or result.last_insert_id is None:  # type: ignore
            return []
        # The first generated key is reported, the rest follow it.
        first = result.last_insert_id  # type: ignore
        return list(range(first, first + result.affected_rows))  # type: ignore

    def in_transaction(self) -> bool:
        return self._connection.in_transaction()

    async def begin(self) -> None:
        logger.debug("BEGIN")
        await self._connection.begin()

    async def commit(self) -> None:
        logger.debug("COMMIT")
        await self._connection.commit()

    async def rollback(self) -> None:
        logger.debug("ROLLBACK")
        await self._connection.rollback()

    async def savepoint(self) -> AsyncTransaction:
        """Begin a nested transaction.

        :return: Transaction to commit, releasing the savepoint, or to
            roll back to it.
        """
        logger.debug("SAVEPOINT")
        return await self._connection.begin_nested()

    async def transaction(self, callback: Callable[[], Awaitable[T]]) -> T:
        """Run a callback between begin and commit.

        A callback run inside an open transaction joins it.

        :param callback: Coroutine function doing the work.
        :return: Result of the callback.
        """
        if self.in_transaction():
            return await callback()
        await self.begin()
        try:
            result = await callback()
        except Exception:
            await self.rollback()
            raise
        await self.commit()
        return result

    async def release(self) -> None:
        await self._connection.close()


def _enable_savepoints(engine: AsyncEngine) -> None:
    # pysqlite emits its own BEGIN, which breaks SAVEPOINT handling.
    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN")

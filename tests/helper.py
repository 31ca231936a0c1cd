"""Example schema and database shared by the tests."""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    UniqueConstraint,
)

from pydantic_sqlgraph._models import ClosureTableConfig, ModelConfig, SchemaConfig
from pydantic_sqlgraph.database import Database
from pydantic_sqlgraph.schema import Schema

connection_str = "sqlite+aiosqlite:///db.sqlite3"

metadata = MetaData()

user = Table(
    "user",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("email", String(255), unique=True, nullable=False),
    Column("first_name", String(64)),
    Column("last_name", String(64)),
)

order = Table(
    "order",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("code", String(64), unique=True),
    Column("date_created", DateTime),
    Column("user_id", Integer, ForeignKey("user.id")),
    Column("status", Integer),
)

category = Table(
    "category",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("name", String(64), unique=True, nullable=False),
    Column("parent_id", Integer, ForeignKey("category.id")),
)

product = Table(
    "product",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("sku", String(64), unique=True, nullable=False),
    Column("name", String(64)),
    Column("price", Float),
    Column("stock_quantity", Integer),
    Column("category_id", Integer, ForeignKey("category.id")),
)

order_item = Table(
    "order_item",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("order_id", Integer, ForeignKey("order.id"), nullable=False),
    Column("product_id", Integer, ForeignKey("product.id"), nullable=False),
    Column("quantity", Integer),
    UniqueConstraint("order_id", "product_id"),
)

order_shipping = Table(
    "order_shipping",
    metadata,
    Column("order_id", Integer, ForeignKey("order.id"), primary_key=True),
    Column("cost", Float),
)

tag = Table(
    "tag",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("name", String(64), unique=True, nullable=False),
)

product_tag = Table(
    "product_tag",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("product_id", Integer, ForeignKey("product.id"), nullable=False),
    Column("tag_id", Integer, ForeignKey("tag.id"), nullable=False),
    UniqueConstraint("product_id", "tag_id"),
)

node = Table(
    "node",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("name", String(64), nullable=False),
    Column("parent_id", Integer, ForeignKey("node.id")),
    Column("active", Boolean),
    UniqueConstraint("parent_id", "name"),
)

node_closure = Table(
    "node_closure",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("ancestor_id", Integer, ForeignKey("node.id"), nullable=False),
    Column("descendant_id", Integer, ForeignKey("node.id"), nullable=False),
    Column("depth", Integer, nullable=False),
    UniqueConstraint("ancestor_id", "descendant_id"),
)

rows = [
    (
        user,
        [
            {"id": 1, "email": "alice@example.com", "first_name": "Alice", "last_name": "Green"},
            {"id": 2, "email": "bob@example.com", "first_name": "Bob", "last_name": "Brown"},
            {"id": 3, "email": "carol@example.com", "first_name": "Carol", "last_name": "White"},
        ],
    ),
    (
        category,
        [
            {"id": 1, "name": "Food", "parent_id": None},
            {"id": 2, "name": "Fruit", "parent_id": 1},
            {"id": 3, "name": "Drink", "parent_id": 1},
        ],
    ),
    (
        product,
        [
            {"id": 1, "sku": "apple", "name": "Apple", "price": 2.5, "stock_quantity": 10, "category_id": 2},
            {"id": 2, "sku": "banana", "name": "Banana", "price": 1.5, "stock_quantity": 0, "category_id": 2},
            {"id": 3, "sku": "water", "name": "Water", "price": 0.8, "stock_quantity": 50, "category_id": 3},
            {"id": 4, "sku": "melon", "name": "Melon", "price": 7.5, "stock_quantity": 3, "category_id": 2},
        ],
    ),
    (
        order,
        [
            {"id": 1, "code": "order-1", "date_created": datetime(2023, 1, 1, 10), "user_id": 1, "status": 1},
            {"id": 2, "code": "order-2", "date_created": datetime(2023, 1, 2, 10), "user_id": 1, "status": 2},
            {"id": 3, "code": "order-3", "date_created": datetime(2023, 1, 3, 10), "user_id": 2, "status": 1},
        ],
    ),
    (
        order_item,
        [
            {"id": 1, "order_id": 1, "product_id": 1, "quantity": 2},
            {"id": 2, "order_id": 1, "product_id": 2, "quantity": 3},
            {"id": 3, "order_id": 2, "product_id": 3, "quantity": 1},
            {"id": 4, "order_id": 3, "product_id": 1, "quantity": 5},
        ],
    ),
    (order_shipping, [{"order_id": 1, "cost": 5.0}]),
    (tag, [{"id": 1, "name": "fresh"}, {"id": 2, "name": "sale"}]),
    (
        product_tag,
        [
            {"id": 1, "product_id": 1, "tag_id": 1},
            {"id": 2, "product_id": 1, "tag_id": 2},
            {"id": 3, "product_id": 2, "tag_id": 1},
        ],
    ),
]


def get_schema() -> Schema:
    config = SchemaConfig(
        models=[
            ModelConfig(
                table="node",
                closure_table=ClosureTableConfig(table="node_closure", depth="depth"),
            )
        ]
    )
    return Schema.from_metadata(metadata, config)


async def create_database(seed: bool = True) -> Database:
    """Recreate the tables and get a database over them.

    :param seed: Insert the example rows.
    :return: Database with the example schema.
    """
    db = Database(connection_str, get_schema())
    async with db.pool.engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)
        await conn.run_sync(metadata.create_all)
        if seed:
            for table, values in rows:
                await conn.execute(table.insert(), values)
    return db

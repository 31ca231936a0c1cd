"""Test filter compilation."""
from __future__ import annotations

import unittest

import pytest
from pypika.dialects import SQLLiteQuery
from pypika.terms import EmptyCriterion

from helper import get_schema
from pydantic_sqlgraph._query_builder import QueryBuilder, encode_filter, split_key
from pydantic_sqlgraph.errors import BadFieldError, BadFilterError


class FilterTests(unittest.TestCase):
    def setUp(self) -> None:
        schema = get_schema()
        self.product = schema.model("Product")
        self.category = schema.model("Category")
        self.tag = schema.model("Tag")

    def _where(self, args):  # type: ignore
        return str(encode_filter(args, self.product))  # type: ignore

    def _select(self, model, fields="*", where=None, order_by=None):  # type: ignore
        return str(QueryBuilder(model, SQLLiteQuery).select(fields, where, order_by))

    def test_equality(self) -> None:
        self.assertEqual("\"name\"='Apple'", self._where({"name": "Apple"}))
        self.assertEqual('"category_id"=2', self._where({"category": 2}))
        self.assertEqual('"category_id"=2', self._where({"category": {"id": 2}}))
        self.assertEqual('"category_id" IS NULL', self._where({"category": None}))

    def test_operators(self) -> None:
        self.assertIn('"price">5', self._where({"price_gt": 5}))
        self.assertIn('"price"<=5', self._where({"price_le": 5}))
        self.assertEqual("\"name\" LIKE 'A%'", self._where({"name_like": "A%"}))
        self.assertEqual('"stock_quantity" IS NULL', self._where({"stock_quantity_null": True}))
        self.assertEqual('"stock_quantity" IS NOT NULL', self._where({"stock_quantity_ne": None}))
        self.assertEqual('"stock_quantity" IS NOT NULL', self._where({"stock_quantity_null": False}))

    def test_lists(self) -> None:
        self.assertEqual('"id" IN (1,2)', self._where({"id": [1, 2]}))
        self.assertEqual("1=0", self._where({"id": []}))
        self.assertEqual('"id" IS NULL OR "id" IN (1)', self._where({"id": [1, None]}))
        with pytest.raises(BadFilterError):
            self._where({"id_lt": [1, 2]})

    def test_combinators(self) -> None:
        self.assertEqual(
            "\"name\"='Apple' OR \"name\"='Melon'",
            self._where([{"name": "Apple"}, {"name": "Melon"}]),
        )
        self.assertEqual(
            "\"name\"='Apple' AND \"stock_quantity\">0",
            self._where({"and": [{"name": "Apple"}, {"stock_quantity_gt": 0}]}),
        )
        self.assertEqual("NOT \"name\"='Apple'", self._where({"not": {"name": "Apple"}}))
        self.assertIsInstance(encode_filter({}, self.product), EmptyCriterion)  # type: ignore

    def test_split_key(self) -> None:
        self.assertEqual(("price", "ge"), split_key("price_ge", self.product))
        self.assertEqual(("stock_quantity", None), split_key("stock_quantity", self.product))
        self.assertEqual(("first_name", None), split_key("first_name"))

    def test_bad_field(self) -> None:
        with pytest.raises(BadFieldError):
            self._where({"colour": "red"})

    def test_join(self) -> None:
        sql = self._select(self.product, "*", {"category": {"name": "Fruit"}})
        self.assertIn('LEFT JOIN "category" "t0"', sql)
        self.assertIn('"product"."category_id"="t0"."id"', sql)
        self.assertIn("\"t0\".\"name\"='Fruit'", sql)

    def test_nested_join_reuses_alias(self) -> None:
        sql = self._select(
            self.product,
            {"category": {"parent": "*"}},
            {"category": {"parent": {"name": "Food"}}},
        )
        self.assertEqual(1, sql.count('LEFT JOIN "category" "t0"'))
        self.assertEqual(1, sql.count('LEFT JOIN "category" "t1"'))
        self.assertIn("\"t1\".\"name\"='Food'", sql)
        self.assertIn('"category__parent__name"', sql)

    def test_exists(self) -> None:
        sql = self._select(self.category, "*", {"products": {"name": "Apple"}})
        self.assertIn("EXISTS", sql)
        self.assertIn('"t0"."category_id"="category"."id"', sql)
        self.assertIn("\"t0\".\"name\"='Apple'", sql)
        sql = self._select(self.category, "*", {"products_none": {}})
        self.assertIn("NOT EXISTS", sql)
        sql = self._select(
            self.category, "*", {"name": "Apple", "products_some": {"price_gt": 5}}
        )
        self.assertIn("EXISTS", sql)
        self.assertNotIn("NOT EXISTS", sql)
        self.assertIn('"t0"."price">5', sql)
        self.assertIn("'Apple'", sql)

    def test_exists_through(self) -> None:
        sql = self._select(self.tag, "*", {"products": {"sku": "apple"}})
        self.assertIn('FROM "product_tag" "t0"', sql)
        self.assertIn('"t0"."tag_id"="tag"."id"', sql)
        self.assertIn("\"sku\"='apple'", sql)

    def test_related_key_filter(self) -> None:
        model = get_schema().model("OrderItem")
        sql = str(encode_filter({"order": {"order_shipping": {"cost_gt": 1}}}, model))  # type: ignore
        self.assertIn('"order_id" IN (SELECT "order_id" FROM "order_shipping"', sql)

    def test_order_by(self) -> None:
        sql = self._select(self.product, "*", None, ["-price", "category.name"])
        self.assertIn('LEFT JOIN "category" "t0"', sql)
        self.assertIn('ORDER BY "product"."price" DESC,"t0"."name" ASC', sql)

    def test_field_shape(self) -> None:
        builder = QueryBuilder(self.product, SQLLiteQuery)
        sql = str(builder.select({"name": "title", "price": False, "category": "*"}))
        self.assertIn('"category__name"', sql)
        self.assertNotIn('"price"', sql)
        self.assertEqual({"name": "title"}, builder.field_map)

"""Module for building queries from nested filters."""
from __future__ import annotations

import operator
import re
from typing import Any, Callable, NamedTuple

from pypika import Order, Query  # type: ignore
from pypika import Table as PikaTable  # type: ignore
from pypika.queries import QueryBuilder as PikaQueryBuilder  # type: ignore
from pypika.terms import (  # type: ignore
    Criterion,
    EmptyCriterion,
    ExistsCriterion,
    Term,
    ValueWrapper,
)

from pydantic_sqlgraph._deserializer import to_row
from pydantic_sqlgraph._types import UNDEFINED, Document, Filter
from pydantic_sqlgraph._util import to_array
from pydantic_sqlgraph.errors import BadFieldError, BadFilterError
from pydantic_sqlgraph.record import Record, is_value
from pydantic_sqlgraph.schema import (
    Field,
    ForeignKeyField,
    Model,
    RelatedField,
    SimpleField,
)

AND = "and"
OR = "or"
NOT = "not"
LT = "lt"
LE = "le"
GE = "ge"
GT = "gt"
NE = "ne"
IN = "in"
LIKE = "like"
NULL = "null"
SOME = "some"
NONE = "none"

OPERATORS = (LT, LE, GE, GT, NE, IN, LIKE, NULL, SOME, NONE)

_COMPARATORS: dict[str | None, Callable[[Any, Any], Criterion]] = {
    None: operator.eq,
    LT: operator.lt,
    LE: operator.le,
    GE: operator.ge,
    GT: operator.gt,
    NE: operator.ne,
}

_ORDER = re.compile(r"^(.+?)\s+(asc|desc)$", re.I)


def _false() -> Criterion:
    return ValueWrapper(1) == ValueWrapper(0)


class _AliasEntry(NamedTuple):
    table: PikaTable
    model: Model
    joins: list[tuple[PikaTable, Criterion]]


class Context:
    """Alias allocation shared by the builders of one statement."""

    def __init__(self) -> None:
        self.counter = 0
        # Foreign key path to the joined table.
        self.alias_map: dict[str, _AliasEntry] = {}

    def next_alias(self) -> str:
        alias = f"t{self.counter}"
        self.counter += 1
        return alias


class QueryBuilder:
    """Compile filters and field shapes of a model into pypika terms."""

    def __init__(
        self,
        model: Model,
        query_class: type[Query] = Query,
        parent: QueryBuilder | None = None,
        field: Field | None = None,
        alias: str | None = None,
    ) -> None:
        """Build queries for a model.

        :param model: Model to build queries for.
        :param query_class: pypika query class of the SQL dialect.
        :param parent: Builder of the enclosing query.
        :param field: Field of the parent model leading here.
        :param alias: Table alias to reuse.
        """
        self.model = model
        self.query_class = query_class
        self.parent = parent
        self.field = field
        self.context: Context = parent.context if parent else Context()
        if parent is None:
            self.alias = None
            self.table = PikaTable(model.table.name)
        else:
            self.alias = alias or self.context.next_alias()
            self.table = PikaTable(model.table.name, alias=self.alias)
        # Joined tables, only set on the builder owning a FROM clause.
        self.joins: list[tuple[PikaTable, Criterion]] | None = None
        self.field_map: dict[str, str] = {}

    def where(self, args: Filter | None) -> Criterion:
        """Compile a filter, a list filter is a disjunction."""
        if args is None:
            return EmptyCriterion()
        args = plainify(args)
        if isinstance(args, list):
            return self._or(args)
        return self._and(args)

    def select(
        self,
        fields: str | SimpleField | list[str] | Document = "*",
        where: Filter | None = None,
        order_by: str | list[str] | None = None,
    ) -> PikaQueryBuilder:
        """Build a select query.

        :param fields: `*`, a column, a list of field names or a field
            shape document such as `{"user": {"email": True}}`.
        :param where: Filter.
        :param order_by: Field paths, `-` prefixed or `desc` suffixed for
            descending order.
        :return: The select query.
        """
        self.joins = []
        where = _normalize(where)
        if isinstance(fields, dict):
            extend_filter(self.model, where, fields)
        orders = [_parse_order(entry) for entry in to_array(order_by or [])]
        if orders:
            self._extend_filter(where, [path for path, _ in orders])
        criterion = self.where(where)
        projections: list[Term] = []
        if isinstance(fields, SimpleField):
            projections.append(self._column(fields))
        elif isinstance(fields, str):
            projections.append(
                self.table.star if fields == "*" else self.table.field(fields)
            )
        elif isinstance(fields, list):
            for name in fields:
                projections.append(self._push_field(name))
        else:
            for path in get_fields(self.model, fields, self.field_map):
                projections.append(self._push_field(path))
        query = self._from().select(*projections)
        if not isinstance(criterion, EmptyCriterion):
            query = query.where(criterion)
        for path, order in orders:
            query = query.orderby(self._push_field(path, alias=False), order=order)
        return query

    def _from(self) -> PikaQueryBuilder:
        query = self.query_class.from_(self.table)
        for table, criterion in self.joins or []:
            query = query.left_join(table).on(criterion)
        return query

    def _nested(self, field: Field, alias: str | None = None) -> QueryBuilder:
        if isinstance(field, ForeignKeyField):
            model = field.referenced_field.model
        else:
            model = field.referencing_field.model  # type: ignore
        return QueryBuilder(model, self.query_class, self, field, alias)

    def _path(self) -> list[str]:
        names: list[str] = []
        builder = self
        while builder.parent is not None:
            names.insert(0, builder.field.name)  # type: ignore
            builder = builder.parent
        return names

    def _get_joins(self) -> list[tuple[PikaTable, Criterion]] | None:
        builder: QueryBuilder | None = self
        while builder is not None and builder.joins is None:
            if not isinstance(builder.field, ForeignKeyField):
                return None
            builder = builder.parent
        return builder.joins if builder is not None else None

    def _column(self, field: SimpleField) -> Term:
        return self.table.field(field.column.name)

    def _or(self, args: list[Document]) -> Criterion:
        return Criterion.any([self._and(arg) for arg in args])

    def _and(self, args: Document) -> Criterion:
        exprs: list[Criterion] = []
        for key, value in args.items():
            name, op = split_key(key, self.model)
            field = self.model.field(name)
            if isinstance(field, ForeignKeyField):
                exprs.append(self._foreign_key(field, op, value))
            elif isinstance(field, SimpleField):
                exprs.append(self._expr(field, op, value))
            elif isinstance(field, RelatedField):
                exprs.append(self._exists(field, op, {} if value == "*" else value))
            elif key == AND:
                exprs.append(Criterion.all([self._and(arg) for arg in value]))
            elif key == OR:
                exprs.append(Criterion.any([self._and(arg) for arg in value]))
            elif key == NOT:
                criterion = Criterion.any([self._and(arg) for arg in to_array(value)])
                if not isinstance(criterion, EmptyCriterion):
                    exprs.append(criterion.negate())
            elif name != "*":
                raise BadFieldError(self.model.name, name)
        return Criterion.all(exprs)

    def _foreign_key(self, field: ForeignKeyField, op: str | None, value: Any) -> Criterion:
        if not isinstance(value, (dict, list)):
            return self._expr(field, op, value)
        if isinstance(value, list):
            values = [arg for arg in value if not isinstance(arg, dict)]
            filters = [arg for arg in value if isinstance(arg, dict)]
            criterion = self._expr(field, IN, values) if values else _false()
            if filters:
                criterion = criterion | self._join(field, filters)
            return criterion
        model = field.referenced_field.model
        if len(value) == 1:
            key = next(iter(value))
            name, sub_op = split_key(key, model)
            if name == field.referenced_field.name and is_value(value[key]):
                return self._expr(field, sub_op, value[key])
            related = model.field(name)
            if isinstance(related, RelatedField):
                # {order: {order_items: {...}}} matches on the referencing column.
                referencing = related.referencing_field
                where = value[key]
                if related.through_field is not None:
                    where = {related.through_field.name: where}
                subquery = QueryBuilder(referencing.model, self.query_class).select(
                    referencing, where
                )
                return self._column(field).isin(subquery)
        return self._join(field, value)

    def _expr(self, field: SimpleField, op: str | None, value: Any) -> Criterion:
        column = self._column(field)
        if isinstance(value, list):
            if op not in (None, IN):
                raise BadFilterError("Bad value", value)
            values = [self._literal(field, arg) for arg in value if arg is not None]
            if len(values) < len(value):
                if not values:
                    return column.isnull()
                return column.isnull() | column.isin(values)
            return column.isin(values) if values else _false()
        if op == NULL:
            return column.isnull() if value else column.isnotnull()
        if value is None:
            if op in (None, IN):
                return column.isnull()
            if op == NE:
                return column.isnotnull()
        if op == LIKE:
            return column.like(str(value))
        if op == IN:
            return column.isin([self._literal(field, value)])
        if op not in _COMPARATORS:
            raise BadFilterError(f"Bad operator {op}", field.display_name)
        return _COMPARATORS[op](column, self._literal(field, value))

    @staticmethod
    def _literal(field: SimpleField, value: Any) -> Any:
        return to_row(value, field)

    def _join(self, field: ForeignKeyField, args: Filter) -> Criterion:
        joins = self._get_joins()
        if joins is None:
            return self._in(field, args)
        model = field.referenced_field.model
        key = model.key_field()
        if isinstance(args, dict) and list(args) == [key.name]:  # type: ignore
            if is_value(args[key.name]):  # type: ignore
                return self._expr(field, None, args[key.name])  # type: ignore
        path = ".".join(self._path() + [field.name])
        entry = self.context.alias_map.get(path)
        if entry is not None and entry.joins is joins:
            builder = self._nested(field, alias=entry.table.alias)
        else:
            builder = self._nested(field)
            joins.append(
                (builder.table, self._column(field) == builder._column(key))  # type: ignore
            )
            self.context.alias_map[path] = _AliasEntry(builder.table, model, joins)
        return builder.where(args)

    def _in(self, field: ForeignKeyField, args: Filter) -> Criterion:
        model = field.referenced_field.model
        key = model.key_field()
        if isinstance(args, dict) and list(args) == [key.name]:  # type: ignore
            return self._expr(field, None, args[key.name])  # type: ignore
        builder = self._nested(field)
        return self._column(field).isin(builder.select(key, args))

    def _exists(self, field: RelatedField, op: str | None, args: Filter) -> Criterion:
        builder = self._nested(field)
        if field.through_field is not None:
            where = builder._in(field.through_field, args)
        else:
            where = builder.where(args)
        scope = builder._column(field.referencing_field) == self._column(
            self.model.key_field()  # type: ignore
        )
        subquery = (
            self.query_class.from_(builder.table)
            .select("*")
            .where(Criterion.all([scope, where]))
        )
        exists = ExistsCriterion(subquery)
        return exists.negate() if op == NONE else exists

    def _extend_filter(self, where: Document, paths: list[str]) -> None:
        # Join the foreign keys order by paths go through.
        for path in paths:
            names = path.split(".")
            current = where
            model = self.model
            for i, name in enumerate(names[:-1]):
                field = model.field(name)
                if not isinstance(field, ForeignKeyField):
                    raise BadFieldError(model.name, path)
                referenced = field.referenced_field.model
                last = i == len(names) - 2
                if not last or names[-1] != referenced.key_field().name:  # type: ignore
                    if not isinstance(current.get(name), dict):
                        current[name] = {}
                    current = current[name]
                    model = referenced

    def _push_field(self, path: str, alias: bool = True) -> Term:
        match = re.match(r"^(.+)\.([^.]+)$", path)
        table = self.table
        if match:
            entry = self.context.alias_map.get(match.group(1))
            if entry is not None and entry.joins is self.joins:
                table = entry.table
                field = entry.model.field(match.group(2))
            else:
                field = self.model.field(path.split(".")[0])
        else:
            field = self.model.field(path)
        if not isinstance(field, SimpleField):
            raise BadFieldError(self.model.name, path)
        column = table.field(field.column.name)
        if not alias:
            return column
        if match:
            return column.as_(path.replace(".", "__"))
        if field.name != field.column.name:
            return column.as_(field.name)
        return column


def encode_filter(
    args: Filter, model: Model, query_class: type[Query] = Query
) -> Criterion:
    """Compile a filter on a model into a criterion."""
    return QueryBuilder(model, query_class).where(args)


def split_key(key: str, model: Model | None = None) -> tuple[str, str | None]:
    """Split a filter key into field name and operator.

    A key naming a field of the model is never split.
    """
    if model is not None and model.field(key) is not None:
        return key, None
    match = re.match(r"^(.+?)_([^_]+)$", key)
    if match and match.group(2) in OPERATORS:
        return match.group(1), match.group(2)
    return key, None


def plainify(value: Any) -> Any:
    """Replace records in a filter by their key fields."""
    if isinstance(value, list):
        return [plainify(entry) for entry in value if entry is not UNDEFINED]
    if isinstance(value, Record):
        model = value._table.model
        pk = value._primary_key()
        if pk is not UNDEFINED and pk is not None:
            return {model.key_field().name: pk}  # type: ignore
        return plainify(model.get_unique_fields(value._data))
    if isinstance(value, dict):
        return {key: plainify(entry) for key, entry in value.items()}
    return value


def should_select_separately(model: Model, fields: Any) -> bool:
    """Check if a field shape names related fields of the model."""
    if not isinstance(fields, dict):
        return False
    return any(isinstance(model.field(name), RelatedField) for name in fields)


def extend_filter(model: Model, where: Document, fields: Document) -> None:
    """Add the foreign keys a field shape reads through to a filter."""
    for name, value in fields.items():
        if value == "*":
            value = {}
        if not isinstance(value, dict):
            continue
        field = model.field(name)
        if not isinstance(field, ForeignKeyField):
            continue
        referenced = field.referenced_field.model
        if not isinstance(where.get(name), dict):
            where[name] = {}
        if fields[name] == "*" or not _pk_only(value, referenced):
            where[name]["*"] = True
        extend_filter(referenced, where[name], value)


def get_fields(
    model: Model,
    fields: str | Document,
    field_map: dict[str, str],
    prefix: str | None = None,
) -> list[str]:
    """Get the field paths selected by a field shape.

    Every simple field is selected unless the shape maps it to a
    falsy value. A string value renames the field in documents.
    """

    def _key(name: str) -> str:
        return f"{prefix}.{name}" if prefix else name

    result = [_key(field.name) for field in model.fields if isinstance(field, SimpleField)]
    if isinstance(fields, str):
        return result
    for name, value in fields.items():
        key = _key(name)
        if not value:
            if key in result:
                result.remove(key)
            continue
        field = model.field(name)
        if isinstance(field, ForeignKeyField):
            referenced = field.referenced_field.model
            if not should_select_separately(referenced, value):
                result.extend(get_fields(referenced, value, field_map, key))
        elif isinstance(field, SimpleField) and isinstance(value, str):
            field_map[key.replace(".", "__")] = value
    return result


def _pk_only(value: Document, model: Model) -> bool:
    return list(value) == [model.key_field().name]  # type: ignore


def _normalize(where: Filter | None) -> Document:
    where = plainify(where) if where is not None else {}
    if isinstance(where, list):
        return {OR: where}
    return where


def _parse_order(entry: str) -> tuple[str, Order]:
    entry = entry.strip()
    if entry.startswith("-"):
        return entry[1:], Order.desc
    match = _ORDER.match(entry)
    if match:
        return match.group(1), Order[match.group(2).lower()]
    return entry, Order.asc

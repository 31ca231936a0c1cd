"""Models and fields mapped from table metadata."""
from __future__ import annotations

from enum import Enum
from typing import Any, Callable

from pydantic.alias_generators import to_pascal
from sqlalchemy import MetaData, UniqueConstraint  # type: ignore

from pydantic_sqlgraph._models import (
    ColumnInfo,
    FieldConfig,
    ForeignKeyInfo,
    ModelConfig,
    SchemaConfig,
    TableInfo,
    UniqueKeyInfo,
)
from pydantic_sqlgraph._types import UNDEFINED, Document, Value
from pydantic_sqlgraph._util import pluralise
from pydantic_sqlgraph.errors import ConfigurationError


class FieldKind(Enum):
    """Kind of a model field, drives record access dispatch."""

    SIMPLE = "simple"
    FOREIGN_KEY = "foreign_key"
    RELATED = "related"


class Field:
    """A named field of a model."""

    kind: FieldKind

    def __init__(self, model: Model, name: str) -> None:
        self.model = model
        self.name = name

    @property
    def display_name(self) -> str:
        return f"{self.model.name}.{self.name}"

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.display_name})"


class SimpleField(Field):
    """A field stored in a column."""

    kind = FieldKind.SIMPLE

    def __init__(self, model: Model, name: str, column: ColumnInfo) -> None:
        super().__init__(model, name)
        self.column = column
        # First unique key, primary key first, containing this field.
        self.unique_key: UniqueKey | None = None

    def is_unique(self) -> bool:
        """Check if the field alone is a unique key."""
        return any(
            len(key.fields) == 1 and key.fields[0] is self
            for key in self.model.unique_keys
        )


class ForeignKeyField(SimpleField):
    """A column referencing the key field of another model."""

    kind = FieldKind.FOREIGN_KEY

    def __init__(self, model: Model, name: str, column: ColumnInfo) -> None:
        super().__init__(model, name, column)
        self.referenced_field: SimpleField = None  # type: ignore
        self.related_field: RelatedField | None = None


class RelatedField(Field):
    """Reverse side of a foreign key, or a many relation through a join table."""

    kind = FieldKind.RELATED

    def __init__(
        self,
        model: Model,
        name: str,
        referencing_field: ForeignKeyField,
        through_field: ForeignKeyField | None = None,
    ) -> None:
        super().__init__(model, name)
        self.referencing_field = referencing_field
        self.through_field = through_field


class UniqueKey:
    """An ordered list of fields unique per row."""

    def __init__(self, name: str, fields: list[SimpleField], primary: bool) -> None:
        self.name = name
        self.fields = fields
        self.primary = primary

    def auto_increment(self) -> bool:
        return (
            self.primary
            and len(self.fields) == 1
            and self.fields[0].column.auto_increment
        )

    def __repr__(self) -> str:
        return f"UniqueKey({self.name})"


def _is_empty(value: Any) -> bool:
    return value is None or value is UNDEFINED


class Model:
    """A table mapped to named fields."""

    def __init__(self, schema: Schema, table: TableInfo, config: ModelConfig) -> None:
        self.schema = schema
        self.table = table
        self.config = config
        self.name = config.name or to_pascal(table.name)
        self.fields: list[Field] = []
        self.primary_key: UniqueKey | None = None
        self.unique_keys: list[UniqueKey] = []
        self._field_map: dict[str, Field] = {}

    def field(self, name: str) -> Field | None:
        """Get a field by field name or column name."""
        return self._field_map.get(name)

    def key_field(self) -> SimpleField | None:
        return self.primary_key.fields[0] if self.primary_key else None

    def check_unique_key(
        self, data: Any, is_empty: Callable[[Any], bool] | None = None
    ) -> bool:
        """Check if data holds a complete unique key.

        :param data: Document or record data.
        :param is_empty: Predicate telling an unusable value, missing
            names are always empty.
        :return: True if any unique key has all its values.
        """
        if not isinstance(data, dict):
            return False
        is_empty = is_empty or _is_empty
        for key in self.unique_keys:
            if all(
                field.name in data and not is_empty(data[field.name])
                for field in key.fields
            ):
                return True
        return False

    def get_unique_fields(self, data: Document) -> Document:
        """Get the values of the first complete unique key in data."""
        for key in self.unique_keys:
            fields = {}
            for field in key.fields:
                value = data.get(field.name, UNDEFINED)
                if _is_empty(value):
                    break
                fields[field.name] = value
            else:
                return fields
        return {}

    def value_of(self, row: Document, field: str | Field) -> Value:
        """Get a scalar value, following nested foreign key documents."""
        if isinstance(field, str):
            field = self.field(field)  # type: ignore
        value = row.get(field.name)  # type: ignore
        if isinstance(value, dict) and isinstance(field, ForeignKeyField):
            return field.referenced_field.model.key_value(value)
        return value

    def key_value(self, row: Document | None) -> Value:
        if row is None:
            return None
        return self.value_of(row, self.key_field())  # type: ignore

    def get_foreign_key_of(self, model: Model) -> ForeignKeyField | None:
        for field in self.fields:
            if (
                isinstance(field, ForeignKeyField)
                and field.referenced_field.model is model
            ):
                return field
        return None

    def _add_field(self, field: Field) -> None:
        self.fields.append(field)
        self._field_map[field.name] = field
        if isinstance(field, SimpleField):
            self._field_map.setdefault(field.column.name, field)

    def __repr__(self) -> str:
        return f"Model({self.name})"


class Schema:
    """Immutable graph of models built from table metadata."""

    def __init__(
        self, tables: list[TableInfo], config: SchemaConfig | None = None
    ) -> None:
        """Build models from table metadata.

        :param tables: Table metadata.
        :param config: Model and field overrides.
        """
        self.config = config or SchemaConfig()
        self.models: list[Model] = []
        self._model_map: dict[str, Model] = {}
        table_names = {table.name for table in tables}
        for model_config in self.config.models:
            if model_config.table not in table_names:
                raise ConfigurationError(f"Table {model_config.table} not found.")
        for table in tables:
            model = Model(self, table, self._model_config(table.name))
            self.models.append(model)
            self._model_map[model.name] = model
            self._model_map[table.name] = model
        for model in self.models:
            self._build_fields(model)
        for model in self.models:
            self._resolve_foreign_keys(model)
        for model in self.models:
            self._build_related_fields(model)

    def model(self, name: str) -> Model | None:
        """Get a model by model name or table name."""
        return self._model_map.get(name)

    @classmethod
    def from_metadata(
        cls, metadata: MetaData, config: SchemaConfig | None = None
    ) -> Schema:
        """Build a schema from SQLAlchemy table metadata.

        :param metadata: Declared or reflected SQLAlchemy metadata.
        :param config: Model and field overrides.
        :return: The schema.
        """
        return cls([_table_info(table) for table in metadata.tables.values()], config)

    def _model_config(self, table: str) -> ModelConfig:
        for model_config in self.config.models:
            if model_config.table == table:
                return model_config
        return ModelConfig(table=table)

    @staticmethod
    def _field_config(model: Model, column: str) -> FieldConfig:
        for field_config in model.config.fields:
            if field_config.column == column:
                return field_config
        return FieldConfig(column=column)

    def _build_fields(self, model: Model) -> None:
        foreign_columns = {
            fk.columns[0] for fk in model.table.foreign_keys if len(fk.columns) == 1
        }
        column_names = {column.name for column in model.table.columns}
        for field_config in model.config.fields:
            if field_config.column not in column_names:
                raise ConfigurationError(
                    f"Column {model.table.name}.{field_config.column} not found."
                )
        for column in model.table.columns:
            config = self._field_config(model, column.name)
            if column.name in foreign_columns:
                name = config.name or _strip_id(column.name)
                model._add_field(ForeignKeyField(model, name, column))
            else:
                model._add_field(SimpleField(model, config.name or column.name, column))
        columns = {
            field.column.name: field
            for field in model.fields
            if isinstance(field, SimpleField)
        }
        if model.table.primary_key:
            model.primary_key = UniqueKey(
                "PRIMARY", [columns[c] for c in model.table.primary_key], True
            )
            model.unique_keys.append(model.primary_key)
        for info in model.table.unique_keys:
            if info.columns == model.table.primary_key:
                continue
            model.unique_keys.append(
                UniqueKey(info.name, [columns[c] for c in info.columns], info.primary)
            )
        for key in model.unique_keys:
            for field in key.fields:
                if field.unique_key is None:
                    field.unique_key = key

    def _resolve_foreign_keys(self, model: Model) -> None:
        for info in model.table.foreign_keys:
            if len(info.columns) != 1:
                continue
            field = model.field(info.columns[0])
            referenced = self._model_map.get(info.referenced_table)
            if referenced is None:
                raise ConfigurationError(
                    f"Foreign key {field.display_name} references unknown"  # type: ignore
                    f" table {info.referenced_table}."
                )
            if referenced.primary_key is None:
                raise ConfigurationError(
                    f"Table {info.referenced_table} has no primary key."
                )
            referenced_field = referenced.field(info.referenced_columns[0])
            field.referenced_field = referenced_field  # type: ignore

    def _build_related_fields(self, model: Model) -> None:
        foreign_keys = [f for f in model.fields if isinstance(f, ForeignKeyField)]
        through = self._through_pair(model, foreign_keys)
        for field in foreign_keys:
            config = self._field_config(model, field.column.name)
            referenced = field.referenced_field.model
            if through:
                other = through[1] if field is through[0] else through[0]
                far = other.referenced_field.model
                name = config.related_name or pluralise(far.table.name)
                related = RelatedField(referenced, name, field, other)
            else:
                if config.related_name:
                    name = config.related_name
                elif field.is_unique():
                    name = model.table.name
                else:
                    name = pluralise(model.table.name)
                if referenced.field(name) is not None:
                    name = f"{name}_by_{field.name}"
                related = RelatedField(referenced, name, field)
            if referenced.field(related.name) is not None:
                raise ConfigurationError(
                    f"Field {referenced.name}.{related.name} is defined twice."
                )
            field.related_field = related
            referenced._add_field(related)

    def _through_pair(
        self, model: Model, foreign_keys: list[ForeignKeyField]
    ) -> tuple[ForeignKeyField, ForeignKeyField] | None:
        if len(foreign_keys) != 2:
            return None
        for field in foreign_keys:
            if self._field_config(model, field.column.name).through is False:
                return None
        pair = set(foreign_keys)
        if not any(set(key.fields) == pair for key in model.unique_keys):
            return None
        for field in model.fields:
            if field in pair or isinstance(field, RelatedField):
                continue
            if not (model.primary_key and model.primary_key.auto_increment()):
                return None
            if field is not model.key_field():
                return None
        return foreign_keys[0], foreign_keys[1]


def _strip_id(column: str) -> str:
    return column[:-3] if column.endswith("_id") and len(column) > 3 else column


def _table_info(table: Any) -> TableInfo:
    auto_increment = table.autoincrement_column
    columns = [
        ColumnInfo(
            name=column.name,
            type=str(column.type),
            nullable=bool(column.nullable),
            auto_increment=column is auto_increment,
        )
        for column in table.columns
    ]
    primary_key = [column.name for column in table.primary_key.columns]
    unique_columns: list[list[str]] = []
    for constraint in table.constraints:
        if isinstance(constraint, UniqueConstraint):
            unique_columns.append([column.name for column in constraint.columns])
    for index in table.indexes:
        if index.unique:
            unique_columns.append([column.name for column in index.columns])
    for column in table.columns:
        if column.unique:
            unique_columns.append([column.name])
    unique_keys = []
    for names in unique_columns:
        if names == primary_key or names in [key.columns for key in unique_keys]:
            continue
        unique_keys.append(
            UniqueKeyInfo(name=f"{table.name}_{'_'.join(names)}_key", columns=names)
        )
    foreign_keys = [
        ForeignKeyInfo(
            columns=[element.parent.name for element in constraint.elements],
            referenced_table=constraint.elements[0].column.table.name,
            referenced_columns=[element.column.name for element in constraint.elements],
        )
        for constraint in table.foreign_key_constraints
    ]
    return TableInfo(
        name=table.name,
        columns=columns,
        primary_key=primary_key,
        unique_keys=unique_keys,
        foreign_keys=foreign_keys,
    )

"""Convert between column values and documents."""
import re
from datetime import date, datetime, timezone
from typing import Any

from pydantic_sqlgraph._types import UNDEFINED, Document, Value
from pydantic_sqlgraph.errors import BadFieldError, ValueCoercionError
from pydantic_sqlgraph.schema import ForeignKeyField, Model, SimpleField

_INT = re.compile(r"\s*([+-]?\d+)")
_FLOAT = re.compile(r"\s*([+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?)")


def to_value(value: Any, field: SimpleField) -> Value:
    """Normalize a value assigned to, or read from, a column.

    :param value: Wire or user supplied value.
    :param field: Field the value belongs to.
    :return: Value of the in-memory type of the column.
    """
    if value is None or value is UNDEFINED:
        return None
    column_type = field.column.type
    if re.search("text|string", column_type, re.I):
        return value
    if re.search("date|time", column_type, re.I):
        return _format(_to_datetime(value), "T") + "Z"
    if re.search("int|long", column_type, re.I):
        return _to_int(value)
    if re.search("float|double|real|numeric|decimal", column_type, re.I):
        return _to_float(value)
    if re.match("bool", column_type, re.I):
        if isinstance(value, str):
            return not re.fullmatch("false|0", value.strip(), re.I)
        return bool(value)
    if field.unique_key is not None:
        return str(value).strip()
    return value


def to_row(value: Any, field: SimpleField) -> Value:
    """Get the wire value of a column value, dates as `datetime(3)`."""
    value = to_value(value, field)
    if value and re.search("date|time", field.column.type, re.I):
        return _format(_to_datetime(value), " ")
    return value


def to_document(
    row: dict[str, Any], model: Model, field_map: dict[str, str] | None = None
) -> Document | None:
    """Nest a flat row with `path__to__column` keys into a document.

    A foreign key branch whose key value is null collapses to None.

    :param row: Row from the database.
    :param model: Model of the row.
    :param field_map: Row keys to document field names.
    :return: The document, None if the row key is null.
    """
    field_map = field_map or {}
    result: Document = {}
    for key, raw in row.items():
        names = key.split("__")
        current = result
        current_model = model
        for name in names[:-1]:
            field = current_model.field(name)
            if not isinstance(field, ForeignKeyField):
                raise BadFieldError(current_model.name, key)
            if not isinstance(current.get(field.name), dict):
                current[field.name] = {}
            current = current[field.name]
            current_model = field.referenced_field.model
        field = current_model.field(names[-1])
        if not isinstance(field, SimpleField):
            continue
        name = field_map.get(key) or field.name
        value = to_value(raw, field)
        if not isinstance(field, ForeignKeyField):
            current[name] = value
        elif value is None:
            current[name] = None
        else:
            if not isinstance(current.get(name), dict):
                current[name] = {}
            node = current[name]
            key_field = field.referenced_field.model.key_field()
            while isinstance(key_field, ForeignKeyField):
                node = node.setdefault(key_field.name, {})
                key_field = key_field.referenced_field.model.key_field()
            node[key_field.name] = value  # type: ignore
    return _set_null_foreign_keys(result, model)


def _set_null_foreign_keys(result: Document, model: Model) -> Document | None:
    key = model.key_field()
    if key is not None and key.name in result and model.key_value(result) is None:
        return None
    for field in model.fields:
        if isinstance(field, ForeignKeyField) and isinstance(
            result.get(field.name), dict
        ):
            result[field.name] = _set_null_foreign_keys(
                result[field.name], field.referenced_field.model
            )
    return result


def _to_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        result = value
    elif isinstance(value, date):
        result = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        # Milliseconds since the epoch.
        result = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    else:
        try:
            result = datetime.fromisoformat(str(value).strip())
        except ValueError as e:
            raise ValueCoercionError(value) from e
    if result.tzinfo is None:
        result = result.replace(tzinfo=timezone.utc)
    return result.astimezone(timezone.utc)


def _format(value: datetime, separator: str) -> str:
    return (
        value.strftime(f"%Y-%m-%d{separator}%H:%M:%S")
        + f".{value.microsecond // 1000:03d}"
    )


def _to_int(value: Any) -> int:
    if isinstance(value, (bool, int)):
        return int(value)
    if isinstance(value, float):
        return int(value)
    match = _INT.match(str(value))
    if not match:
        raise ValueCoercionError(value, "int")
    return int(match.group(1))


def _to_float(value: Any) -> float:
    if isinstance(value, (bool, int, float)):
        return float(value)
    match = _FLOAT.match(str(value))
    if not match:
        raise ValueCoercionError(value, "float")
    return float(match.group(1))

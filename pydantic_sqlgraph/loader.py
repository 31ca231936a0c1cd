"""Load flat rows into record graphs."""
from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Any, NamedTuple

from pydantic_sqlgraph._types import UNDEFINED, Document
from pydantic_sqlgraph._util import to_array
from pydantic_sqlgraph.errors import BadFieldError, ShapeError, UnknownFieldError
from pydantic_sqlgraph.record import Record
from pydantic_sqlgraph.schema import Field, ForeignKeyField, RelatedField, SimpleField

if TYPE_CHECKING:
    from pydantic_sqlgraph.table import Table

logger = logging.getLogger(__name__)

_RELATED_OPTION = re.compile(r"^\s*([^\[\s]+)\s*(?:\[([^\]]*)\])?\s*$")


class RelatedOption(NamedTuple):
    """Related field receiving unmapped columns as name and value rows."""

    name: str
    key: str = "name"
    value: str = "value"


def parse_related_option(option: str) -> RelatedOption:
    """Parse a `"field[key, value]"` option, key and value are optional."""
    match = _RELATED_OPTION.match(option)
    if match is None:
        raise ShapeError(f"Bad related option: {option!r}")
    name, names = match.groups()
    if not names:
        return RelatedOption(name)
    parts = [part.strip() for part in names.split(",")]
    if len(parts) != 2 or not all(parts):
        raise ShapeError(f"Bad related option: {option!r}")
    return RelatedOption(name, parts[0], parts[1])


async def load_table(
    table: Table,
    data: Document | list[Document],
    config: dict[str, Any],
    defaults: Document | None = None,
) -> list[Record]:
    """Append rows to a table and flush its database.

    :param table: Table of the root records.
    :param data: Rows keyed by source column name.
    :param config: Field paths keyed by source column name.
    :param defaults: Values of fields left unset.
    :return: The root records.
    """
    records = [_append(table, row, config, defaults) for row in to_array(data)]
    logger.debug("Loading %s rows into %s", len(records), table.name)
    await table.db.flush()
    return records


def _append(
    table: Table, data: Document, config: dict[str, Any], defaults: Document | None
) -> Record:
    model = table.model
    row = table.append()
    row_map: dict[str, Record] = {}
    default_list: list[tuple[Record, Document]] = []

    for key, value in data.items():
        if key in config:
            for path in to_array(config[key]):
                _set_path(row, path, value, defaults, row_map, default_list)
            continue
        if "*" not in config:
            raise UnknownFieldError(model.name, key)
        option = parse_related_option(config["*"])
        field = model.field(option.name)
        if not isinstance(field, RelatedField):
            raise UnknownFieldError(model.name, key)
        referencing = field.referencing_field
        record = table.db.table(referencing.model).append()
        record.set(referencing.name, row)
        record.set(option.key, key)
        record.set(option.value, value)

    if defaults:
        set_defaults(row, defaults)
        for record, values in default_list:
            set_defaults(record, values)
    return row


def _set_path(
    row: Record,
    path: str,
    value: Any,
    defaults: Document | None,
    row_map: dict[str, Record],
    default_list: list[tuple[Record, Document]],
) -> None:
    names = path.split(".")
    record = row
    for i, name in enumerate(names[:-1]):
        defaults = defaults.get(name) if isinstance(defaults, dict) else None
        prefix = ".".join(names[: i + 1])
        found = row_map.get(prefix)
        if found is None:
            field = record._table.model.field(name)
            if field is None:
                raise UnknownFieldError(record._table.model.name, name)
            found = _get_record_field(record, field)
            row_map[prefix] = found
            if isinstance(field, RelatedField) and defaults:
                default_list.append((found, defaults))
        record = found
    name = names[-1]
    if isinstance(record._table.model.field(name), ForeignKeyField):
        record.set(name, value or None)
    else:
        record.set(name, value)


def _get_record_field(record: Record, field: Field) -> Record:
    # Record reached through a field, appended when missing.
    db = record._table.db
    if isinstance(field, ForeignKeyField):
        if record.get(field.name) is UNDEFINED:
            record.set(field.name, db.table(field.referenced_field.model).append())
        parent = record.get(field.name)
        if not isinstance(parent, Record):
            raise ShapeError(f"Cannot load into {field.display_name}: {parent!r}")
        return parent
    if isinstance(field, RelatedField):
        referencing = field.referencing_field
        through = field.through_field
        if through is not None:
            child = db.table(through.referenced_field.model).append()
            bridge = db.table(referencing.model).append()
            bridge.set(referencing.name, record)
            bridge.set(through.name, child)
            return child
        child = db.table(referencing.model).append()
        child.set(referencing.name, record)
        return child
    raise BadFieldError(field.model.name, field.name)


def set_defaults(record: Record, defaults: Document) -> None:
    """Assign default values to the fields of a record left unset.

    A foreign key default is a primary key value, None, or a document of
    defaults for the referenced record.
    """
    model = record._table.model
    for name, value in defaults.items():
        field = model.field(name)
        if isinstance(field, ForeignKeyField):
            current = record.get(name)
            if current is UNDEFINED:
                if value is None or not isinstance(value, dict):
                    record.set(name, value)
                    continue
                current = record._table.db.table(field.referenced_field.model).append()
                record.set(name, current)
            if isinstance(current, Record) and isinstance(value, dict):
                set_defaults(current, value)
        elif isinstance(field, SimpleField):
            if record.get(name) is UNDEFINED:
                record.set(name, value)

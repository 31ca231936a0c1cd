"""Dirty tracked, in-memory rows."""
from __future__ import annotations

from datetime import date
from enum import Enum
from typing import TYPE_CHECKING, Any, Iterable, Iterator

from pydantic import BaseModel, ConfigDict, Field

from pydantic_sqlgraph._copy import copy_record
from pydantic_sqlgraph._deserializer import to_value
from pydantic_sqlgraph._types import UNDEFINED, Document, Value
from pydantic_sqlgraph._util import encode_key
from pydantic_sqlgraph.errors import (
    BadFilterError,
    NotAssignableError,
    ReassignmentError,
    ShapeError,
    UnknownFieldError,
)
from pydantic_sqlgraph.schema import (
    ForeignKeyField,
    RelatedField,
    SimpleField,
    UniqueKey,
)

if TYPE_CHECKING:
    from pydantic_sqlgraph.table import Table


class FlushMethod(Enum):
    """Statement a dirty record is written with."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class FlushState(BaseModel):
    """Flush bookkeeping of a record."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    method: FlushMethod = FlushMethod.INSERT
    dirty: set[str] = Field(default_factory=set)
    deleted: bool = False
    # Canonical record this one was merged into.
    merged: Any = None
    # Already matched against the database in this flush.
    selected: bool = False

    def clone(self) -> FlushState:
        return FlushState(
            method=self.method,
            dirty=set(self.dirty),
            deleted=self.deleted,
            merged=self.merged,
            selected=self.selected,
        )

    def dump(self) -> dict[str, Any]:
        return {
            "method": self.method.name,
            "dirty": sorted(self.dirty),
            "deleted": self.deleted,
            "merged": self.merged._repr() if self.merged is not None else None,
            "selected": self.selected,
        }


class Record:
    """One logical row, persisted or pending.

    Fields are read and written with `get` and `set`, or as attributes.
    A foreign key holds the referenced `Record`, so rows can point at
    rows that have no primary key yet.
    """

    def __init__(self, table: Table) -> None:
        self._table = table
        self._data: dict[str, Any] = {}
        self._state = FlushState()
        self._related: dict[str, RecordSet] = {}
        self._inserted = False

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        return self.get(name)

    def __setattr__(self, name: str, value: Any) -> None:
        if name.startswith("_"):
            object.__setattr__(self, name, value)
        else:
            self.set(name, value)

    def __repr__(self) -> str:
        return self._repr()

    def get(self, name: str) -> Any:
        """Get a field value.

        :param name: Field name.
        :return: The value, a `Record` for an assigned foreign key, a
            `RecordSet` for a related field, or `UNDEFINED` if unset.
        """
        field = self._table.model.field(name)
        if field is None:
            raise UnknownFieldError(self._table.model.name, name)
        if isinstance(field, RelatedField):
            record_set = self._related.get(field.name)
            if record_set is None:
                record_set = RecordSet(self, field)
                self._related[field.name] = record_set
            return record_set
        # Merged records read the values of the record they were merged into.
        return self._canonical()._data.get(field.name, UNDEFINED)

    def set(self, name: str, value: Any) -> None:
        """Assign a field value and mark it dirty.

        :param name: Field name.
        :param value: Scalar, `Record`, or for a foreign key a primary
            key value or a document of the referenced row.
        """
        if self._state.merged is not None:
            self._canonical().set(name, value)
            return
        model = self._table.model
        field = model.field(name)
        if field is None:
            raise UnknownFieldError(model.name, name)
        if value is UNDEFINED:
            raise ShapeError(f"Assigning undefined to {field.display_name}")
        if isinstance(field, RelatedField):
            raise NotAssignableError(model.name, field.name)
        if isinstance(field, ForeignKeyField):
            self._set_foreign_key(field, value)
            return
        if not isinstance(value, Record):
            value = to_value(value, field)  # type: ignore
        self._data[field.name] = value
        self._state.dirty.add(field.name)

    async def save(self) -> Record:
        """Write this record and the unsaved records it references."""
        if not self._dirty():
            return self
        return await self._table.db.flush_record(self)

    async def update(self, data: Document | None = None) -> Record:
        """Assign fields, then save them with an UPDATE."""
        for name, value in (data or {}).items():
            self.set(name, value)
        self._state.method = FlushMethod.UPDATE
        return await self.save()

    async def delete(self) -> Any:
        """Delete the row matching this record's unique fields."""
        where = self._table.model.get_unique_fields(self._data)
        if not where:
            raise BadFilterError("Bad selector", self._repr())
        result = await self._table.delete(where)
        self._state.deleted = True
        return result

    async def copy(self, data: Document, exclude: list[str] | None = None) -> Record:
        """Copy this row and the rows owned by it.

        :param data: Values overriding the copied row.
        :param exclude: Names of tables not to copy.
        :return: The copied record.
        """
        return await copy_record(self, data, exclude)

    def _set_foreign_key(self, field: ForeignKeyField, value: Any) -> None:
        if value is not None and not isinstance(value, Record):
            referenced = field.referenced_field.model
            if not isinstance(value, dict):
                value = {referenced.key_field().name: value}  # type: ignore
            value = self._table.db.table(referenced).append(value)
        current = self._data.get(field.name, UNDEFINED)
        if current is not UNDEFINED:
            if _same_identity(current, value):
                return
            raise ReassignmentError(self._table.model.name, field.name)
        self._data[field.name] = value
        self._state.dirty.add(field.name)

    def _dirty(self) -> bool:
        if self._state.method == FlushMethod.DELETE:
            return not self._state.deleted
        return len(self._state.dirty) > 0

    def _flushable(self, perfect: bool = False) -> bool:
        if self._state.merged is not None:
            return False
        model = self._table.model
        if not (
            model.check_unique_key(self._data, is_empty) or self._keyed_by_insert()
        ):
            return False
        if self._state.method == FlushMethod.DELETE:
            return True
        dirty = self._state.dirty
        flushable = [name for name in dirty if not is_empty(self._data.get(name))]
        if not flushable:
            return False
        return len(flushable) == len(dirty) if perfect else True

    def _keyed_by_insert(self) -> bool:
        # Rows known only by their generated key are found by inserting.
        model = self._table.model
        if self._state.method != FlushMethod.INSERT:
            return False
        if model.primary_key is None or not model.primary_key.auto_increment():
            return False
        return not any(
            all(field.name in self._data for field in key.fields)
            for key in model.unique_keys
            if not key.primary
        )

    def _fields(self) -> Document:
        fields = {}
        for field in self._table.model.fields:
            name = field.name
            if name in self._state.dirty and not is_empty(self._data.get(name)):
                fields[name] = self._get_value(name)
        return fields

    def _dirty_names(self) -> list[str]:
        return list(self._fields())

    def _remove_dirty(self, names: str | Iterable[str]) -> None:
        if isinstance(names, str):
            names = [names]
        for name in names:
            self._state.dirty.discard(name)

    def _get_value(self, name: str) -> Value:
        value = self._data.get(name, UNDEFINED)
        if isinstance(value, Record):
            return value._canonical()._primary_key()
        return value

    def _primary_key(self) -> Value:
        name = self._table.model.key_field().name  # type: ignore
        value = self._data.get(name, UNDEFINED)
        if isinstance(value, Record):
            return value._canonical()._primary_key()
        return value

    def _primary_key_dirty(self) -> bool:
        return self._table.model.key_field().name in self._state.dirty  # type: ignore

    def _set_primary_key(self, value: Value) -> None:
        self._data[self._table.model.key_field().name] = value  # type: ignore

    def _filter(self) -> Document:
        data = {name: self._get_value(name) for name in self._data}
        return self._table.model.get_unique_fields(data)

    def _value_of(self, key: UniqueKey) -> str | None:
        values = []
        for field in key.fields:
            value = self._get_value(field.name)
            if value is UNDEFINED:
                return None
            values.append(value)
        return encode_key(values)

    def _canonical(self) -> Record:
        root = self
        while root._state.merged is not None:
            root = root._state.merged
        node = self
        while node._state.merged is not None and node._state.merged is not root:
            node._state.merged, node = root, node._state.merged
        return root

    def _merge(self) -> None:
        root = self._canonical()
        for name in self._state.dirty:
            root._data[name] = self._data[name]
            root._state.dirty.add(name)

    def _update_state(self, existing: Record) -> None:
        if self._primary_key() in (UNDEFINED, None):
            self._set_primary_key(existing._primary_key())
        for name in existing._data:
            if name in self._state.dirty:
                if self._get_value(name) == existing._get_value(name):
                    self._state.dirty.discard(name)
        if self._state.method == FlushMethod.INSERT:
            self._state.method = FlushMethod.UPDATE
        self._state.selected = True

    def _document(self) -> Document:
        result = {}
        for name in self._data:
            value = self._get_value(name)
            if value is not UNDEFINED:
                result[name] = value
        return result

    def _json(self) -> Document:
        result = {}
        for field in self._table.model.fields:
            if isinstance(field, SimpleField):
                value = self._get_value(field.name)
                if value is not UNDEFINED:
                    result[field.name] = value
        return result

    def _dump(self) -> dict[str, Any]:
        data: dict[str, Any] = {"_state": self._state.dump()}
        for field in self._table.model.fields:
            name = field.name
            value = self._data.get(name, UNDEFINED)
            if value is UNDEFINED:
                continue
            if self._state.merged is not None:
                name = "!" + name
            elif name in self._state.dirty:
                name = "*" + name
            data[name] = value._repr() if isinstance(value, Record) else value
        return data

    def _repr(self) -> str:
        model = self._table.model
        value = self._data.get(model.key_field().name, UNDEFINED)  # type: ignore
        if isinstance(value, Record):
            return f"{model.name}({value._repr()})"
        return f"{model.name}({value!r})"


class RecordSet:
    """Rows of a related field of one record."""

    def __init__(self, record: Record, field: RelatedField) -> None:
        self.record = record
        self.field = field
        # Child records written by a replace.
        self.records: list[Record] = []

    def __iter__(self) -> Iterator[Record]:
        return iter(self.records)

    def __len__(self) -> int:
        return len(self.records)

    async def add(self, record: Record) -> Document:
        """Connect a row to the owner, creating it if it is missing."""
        data = {self.field.name: {"upsert": [{"create": record._document()}]}}
        return await self.record._table.modify(data, self.record._filter())

    async def remove(self, record: Record) -> Document:
        """Delete a row related to the owner."""
        data = {self.field.name: {"delete": [record._filter()]}}
        return await self.record._table.modify(data, self.record._filter())


def is_empty(value: Any) -> bool:
    """Check if a value is not usable in SQL yet.

    A record is empty until its row has a known primary key.
    """
    if value is UNDEFINED:
        return True
    if isinstance(value, Record):
        value = value._canonical()
        if value._primary_key_dirty():
            return True
        return is_empty(value._primary_key())
    return False


def is_value(value: Any) -> bool:
    return value is None or isinstance(value, (str, int, float, bool, date))


def _same_identity(current: Any, value: Any) -> bool:
    if isinstance(current, Record):
        current = current._canonical()
    if isinstance(value, Record):
        value = value._canonical()
    if current is value:
        return True
    lhs = current._primary_key() if isinstance(current, Record) else current
    rhs = value._primary_key() if isinstance(value, Record) else value
    return lhs is not UNDEFINED and lhs == rhs

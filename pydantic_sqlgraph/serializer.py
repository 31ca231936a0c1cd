"""Serialize tree select results, repeated rows as references."""
from __future__ import annotations

from collections import deque
from typing import Any
from xml.sax.saxutils import escape

from pydantic_sqlgraph._types import Document, Value
from pydantic_sqlgraph._util import lcfirst
from pydantic_sqlgraph.record import is_value
from pydantic_sqlgraph.schema import ForeignKeyField, Model, RelatedField, SimpleField
from pydantic_sqlgraph.select import Result


class DocumentMap:
    """Reference ids of emitted rows, by model and primary key value."""

    def __init__(self) -> None:
        self.map: dict[Model, dict[Value, int]] = {}
        self.next = 1

    def has(self, model: Model, data: Value | Document) -> bool:
        return _to_value(model, data) in self.map.get(model, {})

    def add(self, model: Model, value: Value) -> int:
        self.map.setdefault(model, {})[value] = self.next
        self.next += 1
        return self.next - 1

    def get(self, model: Model, data: Value | Document) -> int:
        return self.map[model][_to_value(model, data)]


class JsonSerializer:
    """Nest a result into documents, rows already emitted become key stubs."""

    def __init__(self, data: Result) -> None:
        self.data = data
        self.map = DocumentMap()
        self.tasks: deque[tuple[Model, Document]] = deque()

    def serialize(self, model: Model) -> list[Document] | None:
        """Serialize the rows of a model and everything related to them.

        :param model: Model of the root rows.
        :return: Root documents, None if the result has no such rows.
        """
        if model.name not in self.data:
            return None
        result = []
        for value, doc in self.data[model.name].items():
            root = dict(doc)
            self.map.add(model, value)
            self.tasks.append((model, root))
            result.append(root)
        while self.tasks:
            self._process(*self.tasks.popleft())
        return result

    def _process(self, root_model: Model, root: Document) -> None:
        pk = root_model.key_value(root)
        for field in root_model.fields:
            if isinstance(field, ForeignKeyField):
                if not root.get(field.name):
                    continue
                model = field.referenced_field.model
                value = model.key_value(root[field.name])
                if self.map.has(model, value):
                    root[field.name] = {model.key_field().name: value}  # type: ignore
                else:
                    row = self.data.get(model.name, {}).get(value)
                    if row is not None:
                        root[field.name] = self._push(model, value, row)
            elif isinstance(field, RelatedField):
                model = field.referencing_field.model
                if model.name not in self.data:
                    continue
                rows = []
                for value, doc in self.data[model.name].items():
                    if model.value_of(doc, field.referencing_field) != pk:
                        continue
                    if field.through_field is not None:
                        far = field.through_field.referenced_field.model
                        far_value = model.value_of(doc, field.through_field)
                        if self.map.has(far, far_value):
                            rows.append({far.key_field().name: far_value})  # type: ignore
                            continue
                        far_row = self.data.get(far.name, {}).get(far_value)
                        if far_row is not None:
                            rows.append(self._push(far, far_value, far_row))
                    elif self.map.has(model, value):
                        rows.append({model.key_field().name: value})  # type: ignore
                    else:
                        rows.append(self._push(model, value, doc))
                if field.referencing_field.is_unique():
                    root[field.name] = rows[0] if rows else None
                else:
                    root[field.name] = rows

    def _push(self, model: Model, value: Value, row: Document) -> Document:
        doc = dict(row)
        self.map.add(model, value)
        self.tasks.append((model, doc))
        return doc


class XStreamSerializer:
    """Serialize a result to XStream XML with `id` and `reference` attributes."""

    def __init__(self, data: Result) -> None:
        self.data = data
        self.map = DocumentMap()
        self.lines: list[str] = []

    def serialize(self, model: Model) -> str:
        """Serialize the rows of a model and everything related to them.

        :param model: Model of the root rows.
        :return: XML text, empty if the result has no such rows.
        """
        if model.name not in self.data:
            return ""
        name = lcfirst(model.name)
        for value, doc in self.data[model.name].items():
            if self.map.has(model, value):
                self.lines.append(f'<{name} reference="{self.map.get(model, value)}"/>')
                continue
            self._push_element(name, model, value, doc)
        return "\n".join(self.lines)

    def _push_element(self, name: str, model: Model, value: Value, doc: Document) -> None:
        ref = self.map.add(model, value)
        self.lines.append(f'<{name} id="{ref}">')
        self._push_fields(model, doc)
        self.lines.append(f"</{name}>")

    def _push_reference(self, name: str, model: Model, value: Value, doc: Any) -> None:
        if self.map.has(model, value):
            self.lines.append(f'<{name} reference="{self.map.get(model, value)}"/>')
        elif doc is not None:
            self._push_element(name, model, value, doc)

    def _push_fields(self, root_model: Model, root: Document) -> None:
        for field in root_model.fields:
            if isinstance(field, ForeignKeyField):
                if not root.get(field.name):
                    continue
                model = field.referenced_field.model
                value = model.key_value(root[field.name])
                doc = self.data.get(model.name, {}).get(value)
                self._push_reference(field.name, model, value, doc)
            elif isinstance(field, RelatedField):
                model = field.referencing_field.model
                if model.name not in self.data:
                    continue
                pk = root_model.key_value(root)
                unique = field.referencing_field.is_unique()
                if not unique:
                    self.lines.append(f"<{field.name}>")
                for value, doc in self.data[model.name].items():
                    if model.value_of(doc, field.referencing_field) != pk:
                        continue
                    if field.through_field is not None:
                        far = field.through_field.referenced_field.model
                        far_value = model.value_of(doc, field.through_field)
                        name = field.name if unique else lcfirst(far.name)
                        far_doc = self.data.get(far.name, {}).get(far_value)
                        self._push_reference(name, far, far_value, far_doc)
                    else:
                        name = field.name if unique else lcfirst(model.name)
                        self._push_reference(name, model, value, doc)
                if not unique:
                    self.lines.append(f"</{field.name}>")
            elif isinstance(field, SimpleField) and root.get(field.name) is not None:
                text = _text(root[field.name])
                self.lines.append(f"<{field.name}>{text}</{field.name}>")


def _text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return escape(str(value))


def _to_value(model: Model, data: Value | Document) -> Value:
    return data if is_value(data) else model.key_value(data)  # type: ignore

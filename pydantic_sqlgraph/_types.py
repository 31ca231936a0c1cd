"""Type aliases and markers used throughout lib."""
from datetime import date, datetime
from typing import Any

Value = str | int | float | bool | date | datetime | None
Document = dict[str, Any]
Filter = Document | list[Document]


class _Undefined:
    """Marker for a field value that is not known yet.

    Unlike `None`, which is written as SQL NULL, an undefined value is
    never sent to the database.
    """

    _instance: "_Undefined | None" = None

    def __new__(cls) -> "_Undefined":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "UNDEFINED"


UNDEFINED = _Undefined()

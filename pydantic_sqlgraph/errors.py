"""SQLGraph Errors."""
from typing import Any


class ConfigurationError(Exception):
    """Raised for mal-configured schemas."""

    def __init__(self, msg: str):
        """Init ConfigurationError.

        :param msg: Error message.
        """
        super(ConfigurationError, self).__init__(msg)


class ShapeError(Exception):
    """Raised when data or a filter does not fit a model."""

    def __init__(self, msg: str):
        """Init ShapeError.

        :param msg: Error message.
        """
        super(ShapeError, self).__init__(msg)


class UnknownFieldError(ShapeError):
    """Raised when a record field does not exist."""

    def __init__(self, model: str, field: str) -> None:
        """Init UnknownFieldError.

        :param model: Name of the model.
        :param field: Name of the missing field.
        """
        super(UnknownFieldError, self).__init__(f"Invalid field: {model}.{field}")


class BadFieldError(ShapeError):
    """Raised when a filter names a field the model does not have."""

    def __init__(self, model: str, field: str) -> None:
        """Init BadFieldError.

        :param model: Name of the filtered model.
        :param field: Name used in the filter.
        """
        super(BadFieldError, self).__init__(f"Bad field: {model}.{field}")


class BadFilterError(ShapeError):
    """Raised when a filter or selector is malformed."""

    def __init__(self, msg: str, value: Any = None) -> None:
        """Init BadFilterError.

        :param msg: What is wrong with the filter.
        :param value: The offending filter or value.
        """
        if value is not None:
            msg = f"{msg}: {value!r}"
        super(BadFilterError, self).__init__(msg)


class NotAssignableError(ShapeError):
    """Raised when assigning to a related field."""

    def __init__(self, model: str, field: str) -> None:
        """Init NotAssignableError.

        :param model: Name of the model.
        :param field: Name of the related field.
        """
        super(NotAssignableError, self).__init__(f"Not assignable: {model}.{field}")


class ReassignmentError(ShapeError):
    """Raised when a bound foreign key is pointed at another row."""

    def __init__(self, model: str, field: str) -> None:
        """Init ReassignmentError.

        :param model: Name of the model.
        :param field: Name of the foreign key field.
        """
        super(ReassignmentError, self).__init__(f"Reassignment: {model}.{field}")


class NoDataError(ShapeError):
    """Raised when inserting or creating without any data."""

    def __init__(self, model: str) -> None:
        """Init NoDataError.

        :param model: Name of the model.
        """
        super(NoDataError, self).__init__(f"{model}: No data")


class InconsistentRecordError(ShapeError):
    """Raised when unique keys of one record match two different records."""

    def __init__(self) -> None:
        """Init InconsistentRecordError."""
        super(InconsistentRecordError, self).__init__(
            "Inconsistent unique constraint values"
        )


class ValueCoercionError(ShapeError):
    """Raised when a value can not be converted to its column type."""

    def __init__(self, value: Any, kind: str = "time") -> None:
        """Init ValueCoercionError.

        :param value: The value that failed to convert.
        :param kind: Kind of value expected.
        """
        super(ValueCoercionError, self).__init__(f"Invalid {kind} value: {value!r}")


class FlushError(Exception):
    """Raised when pending records can not be written."""

    def __init__(self, msg: str):
        """Init FlushError.

        :param msg: Error message.
        """
        super(FlushError, self).__init__(msg)


class CircularReferenceError(FlushError):
    """Raised when dirty records wait on each other."""

    def __init__(self, dump: dict[str, list[dict[str, Any]]] | None = None) -> None:
        """Init CircularReferenceError.

        :param dump: Dirty records per model at the time of failure.
        """
        self.dump = dump or {}
        super(CircularReferenceError, self).__init__("Circular references")


class RecordLoopError(FlushError):
    """Raised when a single record can not be saved due to a cycle."""

    def __init__(self) -> None:
        """Init RecordLoopError."""
        super(RecordLoopError, self).__init__("Loops in record fields")


class RowNotFoundError(FlushError):
    """Raised when updating a row that does not exist."""

    def __init__(self) -> None:
        """Init RowNotFoundError."""
        super(RowNotFoundError, self).__init__("Row does not exist")

"""Options accepted by flush and select operations."""
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, ConfigDict, Field

Hook = Callable[[Any], Awaitable[Any]]


class RetryPolicy(BaseModel):
    """Bounds flush retries after write conflicts."""

    max_retries: int = Field(default=10, ge=0)
    # Upper bound, in seconds, of the random delay before a retry.
    max_delay: float = Field(default=1.0, ge=0)


class FlushOptions(BaseModel):
    """Options for flushing a database."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    after_begin: Hook | None = None
    before_commit: Hook | None = None
    replace_records_in: list[str] = Field(default_factory=lambda: [])
    retry: RetryPolicy = Field(default_factory=RetryPolicy)


class SelectOptions(BaseModel):
    """Options for selecting rows of a table or a related field."""

    where: Any = None
    offset: int | None = None
    limit: int | None = None
    order_by: str | list[str] | None = None
    fields: Any = None

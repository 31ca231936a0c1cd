"""Module for SQLGraph schema metadata models."""
from pydantic import BaseModel, Field


class ColumnInfo(BaseModel):
    """Column metadata."""

    name: str
    type: str
    nullable: bool = True
    auto_increment: bool = False


class ForeignKeyInfo(BaseModel):
    """Foreign key constraint metadata."""

    columns: list[str]
    referenced_table: str
    referenced_columns: list[str]


class UniqueKeyInfo(BaseModel):
    """Unique constraint metadata."""

    name: str
    columns: list[str]
    primary: bool = False


class TableInfo(BaseModel):
    """Table metadata."""

    name: str
    columns: list[ColumnInfo]
    primary_key: list[str] = Field(default_factory=lambda: [])
    unique_keys: list[UniqueKeyInfo] = Field(default_factory=lambda: [])
    foreign_keys: list[ForeignKeyInfo] = Field(default_factory=lambda: [])


class FieldConfig(BaseModel):
    """Overrides for the field mapped from a column."""

    column: str
    name: str | None = None
    # Name of the reverse field on the referenced model.
    related_name: str | None = None
    # False keeps a join table foreign key from forming a many relation.
    through: bool | None = None


class ClosureTableConfig(BaseModel):
    """Table holding every ancestor and descendant pair of a tree."""

    table: str
    ancestor: str = "ancestor"
    descendant: str = "descendant"
    depth: str | None = None


class ModelConfig(BaseModel):
    """Overrides for the model mapped from a table."""

    table: str
    name: str | None = None
    fields: list[FieldConfig] = Field(default_factory=lambda: [])
    closure_table: ClosureTableConfig | None = None


class SchemaConfig(BaseModel):
    """Overrides applied while building a schema."""

    models: list[ModelConfig] = Field(default_factory=lambda: [])

"""Pydantic models for catalog introspection and schema comparison.

This module contains schema-domain models:
- Catalog models: ColumnSchema, ConstraintSchema, IndexSchema,
  FunctionSchema, TriggerSchema, EnumTypeSchema
- Dependency graph node: TableNode
- Comparison models: ColumnDiff, SchemaValidationResult

All catalog models are read-only snapshots taken during a single dump.
Configuration models (DatabaseProfile, DatabaseConfig) live in
db_porter.config.models.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# Dependency Graph
# ============================================================================


class TableNode(BaseModel):
    """A table and the tables it references through foreign keys.

    Example:
        >>> node = TableNode(name="orders", depends_on=frozenset({"users"}))
        >>> "users" in node.depends_on
        True
    """

    model_config = ConfigDict(frozen=True)

    name: str
    depends_on: frozenset[str] = frozenset()


# ============================================================================
# Catalog Models
# ============================================================================


class ColumnSchema(BaseModel):
    """Schema for a database column.

    ``data_type`` is the ``information_schema`` spelling (``ARRAY``,
    ``USER-DEFINED``, ``character varying``) and ``udt_name`` the catalog
    type name (``_text``, ``int4``, ``varchar``).

    Example:
        >>> col = ColumnSchema(name="tags", data_type="ARRAY", udt_name="_text")
        >>> col.is_array
        True
    """

    name: str
    data_type: str
    udt_name: str = ""
    is_nullable: bool = True
    default: str | None = None
    max_length: int | None = None
    numeric_precision: int | None = None
    numeric_scale: int | None = None
    element_type: str | None = None  # pg_type.typname of array elements
    is_identity: bool = False
    identity_generation: str | None = None  # ALWAYS, BY DEFAULT
    generated_expression: str | None = None

    @property
    def is_array(self) -> bool:
        return self.data_type == "ARRAY" or self.udt_name.startswith("_")

    @property
    def is_generated(self) -> bool:
        return self.generated_expression is not None


class ConstraintType(str, Enum):
    """Constraint kinds carried over by the reconstructor."""

    PRIMARY_KEY = "PRIMARY KEY"
    FOREIGN_KEY = "FOREIGN KEY"
    CHECK = "CHECK"
    UNIQUE = "UNIQUE"


class ConstraintSchema(BaseModel):
    """Schema for a database constraint.

    ``definition`` is the server-rendered clause from
    ``pg_get_constraintdef`` (``FOREIGN KEY (user_id) REFERENCES users(id)``).
    """

    name: str
    constraint_type: ConstraintType
    definition: str
    columns: list[str] = Field(default_factory=list)


class IndexSchema(BaseModel):
    """Schema for a database index (``pg_indexes.indexdef``)."""

    name: str
    definition: str


class FunctionSchema(BaseModel):
    """Schema for a database function or procedure."""

    name: str
    definition: str


class TriggerSchema(BaseModel):
    """Schema for a database trigger."""

    name: str
    table: str
    definition: str


class EnumTypeSchema(BaseModel):
    """Schema for an enum type; labels are in sort order."""

    name: str
    labels: list[str] = Field(default_factory=list)


# ============================================================================
# Comparison Result Models
# ============================================================================


class ColumnDiff(BaseModel):
    """A missing column detected during comparison."""

    table: str
    column: str
    message: str = ""


class SchemaValidationResult(BaseModel):
    """Result of comparing a target schema against its source.

    Example:
        >>> result = SchemaValidationResult(valid=True)
        >>> result.error_count
        0
        >>> result.format_report()
        'Schema valid'
    """

    valid: bool
    missing_tables: list[str] = Field(default_factory=list)
    missing_columns: list[ColumnDiff] = Field(default_factory=list)
    extra_tables: list[str] = Field(default_factory=list)  # Warning only

    @property
    def error_count(self) -> int:
        """Count of critical errors (missing tables + missing columns)."""
        return len(self.missing_tables) + len(self.missing_columns)

    def format_report(self) -> str:
        """Format comparison result as human-readable report."""
        if self.valid:
            return "Schema valid"

        lines = ["Schema comparison failed:"]

        if self.missing_tables:
            lines.append(f"\n  Missing tables ({len(self.missing_tables)}):")
            for table in self.missing_tables:
                lines.append(f"    - {table}")

        if self.missing_columns:
            lines.append(f"\n  Missing columns ({len(self.missing_columns)}):")
            for diff in self.missing_columns:
                lines.append(f"    - {diff.table}.{diff.column}")

        if self.extra_tables:
            lines.append(f"\n  Extra tables (warning): {', '.join(self.extra_tables)}")

        return "\n".join(lines)

"""Catalog introspection, dependency ordering, DDL reconstruction and comparison.

Usage:
    from db_porter.schema import SchemaIntrospector, SchemaReconstructor, resolve
    from db_porter.schema import validate_schema
"""

from db_porter.schema.comparator import validate_schema
from db_porter.schema.introspector import SchemaIntrospector
from db_porter.schema.models import (
    ColumnDiff,
    ColumnSchema,
    ConstraintSchema,
    ConstraintType,
    EnumTypeSchema,
    FunctionSchema,
    IndexSchema,
    SchemaValidationResult,
    TableNode,
    TriggerSchema,
)
from db_porter.schema.reconstructor import SchemaReconstructor, SchemaScript
from db_porter.schema.resolver import build_table_nodes, resolve

__all__ = [
    "validate_schema",
    "SchemaIntrospector",
    "SchemaReconstructor",
    "SchemaScript",
    "resolve",
    "build_table_nodes",
    "TableNode",
    "SchemaValidationResult",
    "ColumnDiff",
    "ColumnSchema",
    "ConstraintSchema",
    "ConstraintType",
    "EnumTypeSchema",
    "IndexSchema",
    "TriggerSchema",
    "FunctionSchema",
]

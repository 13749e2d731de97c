"""Encode Python values as PostgreSQL literals for INSERT statements.

Encoding is decided by the column's declared type first and the value's
runtime shape second.  The order matters: a ``jsonb`` column holding a JSON
array must become ``'[...]'::jsonb``, not ``ARRAY[...]``, so JSON columns
are recognized before array columns.

    ColumnKind.JSON / JSONB  -> '<canonical json>'::json / ::jsonb
    ColumnKind.ARRAY         -> ARRAY[...]::<element>[]
    ColumnKind.SCALAR        -> by runtime type (bool, number, time, bytes, text)

Encoding never raises: anything unrecognized is written as a quoted string.
"""

import json
import math
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from db_porter.schema.models import ColumnSchema
from db_porter.sql import quote_identifier, quote_literal


class ColumnKind(str, Enum):
    """How a column's values are encoded."""

    JSON = "json"
    JSONB = "jsonb"
    ARRAY = "array"
    SCALAR = "scalar"


# pg_type.typname -> name usable in an ARRAY[]::<name>[] cast
_ELEMENT_CAST_NAMES: dict[str, str] = {
    "int2": "smallint",
    "int4": "integer",
    "int8": "bigint",
    "float4": "real",
    "float8": "double precision",
    "bool": "boolean",
    "bpchar": "text",
    "varchar": "text",
}


def column_kind(column: ColumnSchema) -> ColumnKind:
    """Classify *column* by its declared type (JSON before arrays)."""
    udt = column.udt_name.lower()
    if udt == "jsonb":
        return ColumnKind.JSONB
    if udt == "json":
        return ColumnKind.JSON
    if column.is_array:
        return ColumnKind.ARRAY
    return ColumnKind.SCALAR


def array_element_type(column: ColumnSchema) -> str:
    """Element type for array casts, ``text`` when metadata is missing.

    Example:
        >>> array_element_type(ColumnSchema(name="ids", data_type="ARRAY",
        ...                                 udt_name="_int4", element_type="int4"))
        'integer'
    """
    element = column.element_type or column.udt_name.removeprefix("_")
    if not element:
        return "text"
    return _ELEMENT_CAST_NAMES.get(element, quote_identifier(element))


def encode_value(value: Any, column: ColumnSchema) -> str:
    """Render *value* as a literal for *column*.

    Examples:
        >>> encode_value(None, ColumnSchema(name="x", data_type="text", udt_name="text"))
        'NULL'
        >>> encode_value([], ColumnSchema(name="ids", data_type="ARRAY", udt_name="_uuid"))
        'ARRAY[]::uuid[]'
    """
    if value is None:
        return "NULL"

    kind = column_kind(column)
    if kind in (ColumnKind.JSON, ColumnKind.JSONB):
        return encode_json(value, kind.value)
    if kind == ColumnKind.ARRAY:
        return encode_array(value, array_element_type(column))
    return encode_scalar(value)


def encode_json(value: Any, cast: str = "jsonb") -> str:
    """Canonical JSON text, quoted and cast.

    String values are parsed first, since drivers hand JSON columns back as
    text.  A string that is not valid JSON is stored as a JSON string.
    """
    if isinstance(value, (bytes, bytearray, memoryview)):
        value = bytes(value).decode("utf-8")
    if isinstance(value, str):
        try:
            value = json.loads(value, parse_float=Decimal)
        except ValueError:
            pass
    return f"{quote_literal(canonical_json(value))}::{cast}"


def canonical_json(value: Any) -> str:
    """Compact JSON with sorted keys.

    ``Decimal`` values are written as bare numbers with every digit kept;
    jsonb stores numbers as ``numeric``, so rounding through ``float`` would
    change the document.

    Example:
        >>> canonical_json({"b": Decimal("0.12345678901234567890"), "a": [1, None]})
        '{"a":[1,null],"b":0.12345678901234567890}'
    """
    if isinstance(value, dict):
        items = sorted(value.items(), key=lambda item: str(item[0]))
        return "{" + ",".join(
            f"{json.dumps(str(key))}:{canonical_json(item)}" for key, item in items
        ) + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(canonical_json(item) for item in value) + "]"
    if isinstance(value, Decimal) and value.is_finite():
        return str(value)
    return json.dumps(value, default=str)


def encode_array(value: Any, element_type: str) -> str:
    """``ARRAY[...]::<element_type>[]``; empty arrays keep their type."""
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.startswith("["):
            try:
                value = json.loads(stripped, parse_float=Decimal)
            except ValueError:
                return f"{quote_literal(value)}::{element_type}[]"
        else:
            # Array literal text such as '{a,b}'
            return f"{quote_literal(value)}::{element_type}[]"

    if not isinstance(value, (list, tuple)):
        value = [value]
    if not value:
        return f"ARRAY[]::{element_type}[]"
    return f"{_array_constructor(value)}::{element_type}[]"


def _array_constructor(items: list | tuple) -> str:
    return "ARRAY[" + ", ".join(_encode_element(item) for item in items) + "]"


def _encode_element(item: Any) -> str:
    if isinstance(item, (list, tuple)):
        return _array_constructor(item)
    if isinstance(item, dict):
        return quote_literal(canonical_json(item))
    return encode_scalar(item)


def encode_scalar(value: Any) -> str:
    """Encode by runtime type; unknown shapes become quoted strings.

    Examples:
        >>> encode_scalar(True)
        'TRUE'
        >>> encode_scalar(3)
        '3'
        >>> encode_scalar("O'Brien")
        "'O''Brien'"
    """
    if value is None:
        return "NULL"
    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            return quote_literal(str(value).replace("inf", "Infinity").replace("nan", "NaN"))
        return repr(value)
    if isinstance(value, Decimal):
        if not value.is_finite():
            return quote_literal(str(value))
        return str(value)
    if isinstance(value, (datetime, date, time)):
        return quote_literal(value.isoformat())
    if isinstance(value, timedelta):
        return f"{quote_literal(f'{value.total_seconds()} seconds')}::interval"
    if isinstance(value, (bytes, bytearray, memoryview)):
        return f"'\\x{bytes(value).hex()}'::bytea"
    if isinstance(value, UUID):
        return quote_literal(str(value))
    if isinstance(value, (dict, list)):
        return quote_literal(canonical_json(value))
    return quote_literal(str(value))


def build_insert(table: str, columns: list[ColumnSchema], values: list[Any]) -> str:
    """One ``INSERT ... ON CONFLICT DO NOTHING`` statement for a row.

    *columns* and *values* are aligned by position.  ``GENERATED ALWAYS``
    identity columns get ``OVERRIDING SYSTEM VALUE`` so source ids survive.
    """
    column_list = ", ".join(quote_identifier(column.name) for column in columns)
    literals = ", ".join(encode_value(value, column) for column, value in zip(columns, values))
    overriding = (
        " OVERRIDING SYSTEM VALUE"
        if any(c.is_identity and c.identity_generation == "ALWAYS" for c in columns)
        else ""
    )
    return (
        f"INSERT INTO {quote_identifier(table)} ({column_list}){overriding} "
        f"VALUES ({literals}) ON CONFLICT DO NOTHING;"
    )

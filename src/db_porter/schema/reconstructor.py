"""Rebuild executable DDL from catalog metadata.

The reconstructor walks tables in dependency order and emits a single
script laid out in fixed sections:

1. header comment (timestamp, server version)
2. ``CREATE EXTENSION IF NOT EXISTS`` for installed extensions
3. enum types
4. ``CREATE TABLE IF NOT EXISTS`` with the primary key inline
5. foreign key / unique / check constraints as ``ALTER TABLE ... ADD CONSTRAINT``
6. index definitions (constraint-backing indexes excluded)
7. function definitions
8. trigger definitions

Constraints are deferred until every table exists, so circular foreign keys
and arbitrary table order inside a cycle still produce a valid script.

A catalog failure for one table is logged and written into the script as a
comment; the dump continues with the next table.

Usage:
    async with SchemaIntrospector(url) as introspector:
        script = await SchemaReconstructor(introspector).dump()
"""

import logging
import re
from collections.abc import Collection
from dataclasses import dataclass, field
from datetime import datetime, timezone

import psycopg

from db_porter.schema.introspector import SchemaIntrospector
from db_porter.schema.models import ColumnSchema, ConstraintType
from db_porter.schema.resolver import resolve
from db_porter.sql import error_summary, quote_identifier, quote_literal

logger = logging.getLogger(__name__)

# Catalog type name -> DDL spelling
TYPE_MAP: dict[str, str] = {
    "int2": "SMALLINT",
    "int4": "INTEGER",
    "int8": "BIGINT",
    "float4": "REAL",
    "float8": "DOUBLE PRECISION",
    "bool": "BOOLEAN",
    "uuid": "UUID",
    "text": "TEXT",
    "citext": "CITEXT",
    "timestamptz": "TIMESTAMP WITH TIME ZONE",
    "timestamp": "TIMESTAMP",
    "date": "DATE",
    "time": "TIME",
    "timetz": "TIME WITH TIME ZONE",
    "interval": "INTERVAL",
    "json": "JSON",
    "jsonb": "JSONB",
    "bytea": "BYTEA",
    "inet": "INET",
    "cidr": "CIDR",
    "macaddr": "MACADDR",
    "money": "MONEY",
    "xml": "XML",
    "tsvector": "TSVECTOR",
    "tsquery": "TSQUERY",
    "oid": "OID",
}

SERIAL_TYPES: dict[str, str] = {
    "int2": "SMALLSERIAL",
    "int4": "SERIAL",
    "int8": "BIGSERIAL",
}

# 'literal'::type[::type...], NULL::type, 42::type
_LITERAL_WITH_CASTS = re.compile(
    r"^(?P<literal>'(?:[^']|'')*'|NULL|-?\d+(?:\.\d+)?)(?:::[\w\s\".\[\](),]+)+$",
    re.IGNORECASE,
)
_NEXTVAL = re.compile(r"^nextval\('(?P<sequence>(?:[^']|'')+)'::regclass\)$", re.IGNORECASE)


# ------------------------------------------------------------------
# Column rendering
# ------------------------------------------------------------------


def clean_default(default: str | None) -> str | None:
    """Strip redundant casts from literal defaults.

    The catalog renders ``DEFAULT 'active'`` on a varchar column as
    ``'active'::character varying``.  Casts on quoted literals, ``NULL`` and
    plain numbers are removed; the column type resolves the literal again on
    the target.  Function calls and other expressions are kept verbatim.

    Examples:
        >>> clean_default("'active'::character varying")
        "'active'"
        >>> clean_default("'{}'::jsonb")
        "'{}'"
        >>> clean_default("now()")
        'now()'
    """
    if default is None:
        return None
    match = _LITERAL_WITH_CASTS.match(default.strip())
    if match:
        return match.group("literal")
    return default


def map_type_name(
    type_name: str,
    max_length: int | None = None,
    precision: int | None = None,
    scale: int | None = None,
    user_types: Collection[str] = (),
) -> str:
    """Map a catalog type name (``pg_type.typname``) to DDL."""
    if type_name == "varchar":
        return f"VARCHAR({max_length})" if max_length else "VARCHAR"
    if type_name == "bpchar":
        return f"CHAR({max_length})" if max_length else "CHAR"
    if type_name == "numeric":
        if precision is None:
            return "NUMERIC"
        return f"NUMERIC({precision},{scale or 0})"
    if type_name in TYPE_MAP:
        return TYPE_MAP[type_name]
    if type_name in user_types:
        return quote_identifier(type_name)

    logger.warning("No DDL mapping for type %r, passing it through", type_name)
    if quote_identifier(type_name) != type_name:
        return quote_identifier(type_name)
    return type_name.upper()


def map_column_type(column: ColumnSchema, user_types: Collection[str] = ()) -> str:
    """DDL type for *column*; arrays map their element type and add ``[]``.

    Examples:
        >>> map_column_type(ColumnSchema(name="n", data_type="character varying",
        ...                              udt_name="varchar", max_length=80))
        'VARCHAR(80)'
        >>> map_column_type(ColumnSchema(name="t", data_type="ARRAY", udt_name="_text"))
        'TEXT[]'
    """
    if column.is_array:
        element = column.element_type or column.udt_name.removeprefix("_")
        return f"{map_type_name(element, user_types=user_types)}[]"
    return map_type_name(
        column.udt_name,
        max_length=column.max_length,
        precision=column.numeric_precision,
        scale=column.numeric_scale,
        user_types=user_types,
    )


def serial_sequence(column: ColumnSchema) -> str | None:
    """Sequence name when *column* defaults to ``nextval('<seq>'::regclass)``."""
    if not column.default:
        return None
    match = _NEXTVAL.match(column.default.strip())
    return match.group("sequence").replace("''", "'") if match else None


def column_definition(column: ColumnSchema, user_types: Collection[str] = ()) -> str:
    """Render one column line of a CREATE TABLE body (without indentation)."""
    parts = [quote_identifier(column.name)]

    sequence = serial_sequence(column)
    if sequence and not column.is_array and column.udt_name in SERIAL_TYPES:
        parts.append(SERIAL_TYPES[column.udt_name])
        default = None
    else:
        parts.append(map_column_type(column, user_types))
        default = clean_default(column.default)

    if column.is_generated:
        parts.append(f"GENERATED ALWAYS AS ({column.generated_expression}) STORED")
    elif column.is_identity:
        generation = column.identity_generation or "BY DEFAULT"
        parts.append(f"GENERATED {generation} AS IDENTITY")
    elif default is not None:
        parts.append(f"DEFAULT {default}")

    if not column.is_nullable:
        parts.append("NOT NULL")

    return " ".join(parts)


# ------------------------------------------------------------------
# Script accumulator
# ------------------------------------------------------------------


@dataclass
class SchemaScript:
    """Sections of a schema script, filled in while tables are processed."""

    server_version: str = "unknown"
    extensions: list[str] = field(default_factory=list)
    types: list[str] = field(default_factory=list)
    tables: list[str] = field(default_factory=list)
    constraints: list[str] = field(default_factory=list)
    foreign_keys: list[str] = field(default_factory=list)
    indexes: list[str] = field(default_factory=list)
    functions: list[str] = field(default_factory=list)
    triggers: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def add_error(self, subject: str, error: Exception) -> None:
        message = error_summary(error)
        self.errors.append(subject)
        self.tables.append(f"-- Error dumping {subject}: {message}")

    def render(self) -> str:
        timestamp = datetime.now(timezone.utc).isoformat()
        lines = [
            _banner("Database schema"),
            f"-- Generated: {timestamp}",
            f"-- Server: {self.server_version}",
            "",
        ]
        # Unique and check constraints first: a foreign key may reference
        # a unique constraint on another table.
        sections = [
            ("EXTENSIONS", self.extensions),
            ("TYPES", self.types),
            ("TABLES", self.tables),
            ("CONSTRAINTS", self.constraints + self.foreign_keys),
            ("INDEXES", self.indexes),
            ("FUNCTIONS", self.functions),
            ("TRIGGERS", self.triggers),
        ]
        for title, statements in sections:
            lines.append(_banner(title))
            lines.extend(statements)
            lines.append("")
        return "\n".join(lines)


def _banner(title: str) -> str:
    rule = "-- " + "=" * 60
    return f"{rule}\n-- {title}\n{rule}"


# ------------------------------------------------------------------
# Reconstructor
# ------------------------------------------------------------------


class SchemaReconstructor:
    """Emit a re-creatable schema script from a connected introspector.

    Args:
        introspector: An entered ``SchemaIntrospector`` for the source.
    """

    def __init__(self, introspector: SchemaIntrospector) -> None:
        self._introspector = introspector

    async def dump(self) -> str:
        """Resolve table order from the catalog and reconstruct every table."""
        tables = await self._introspector.list_tables()
        edges = await self._introspector.get_foreign_key_edges()
        ordered = resolve(tables, edges)
        logger.info("Dumping schema for %d tables", len(ordered))
        return await self.reconstruct(ordered)

    async def reconstruct(self, ordered_tables: list[str]) -> str:
        """Build the schema script for *ordered_tables*.

        Args:
            ordered_tables: Table names, referenced tables first (see
                ``resolve()``).

        Returns:
            The complete script as text.

        Raises:
            ConnectionError: If the catalog connection is lost.
        """
        script = SchemaScript()
        script.server_version = await self._introspector.get_server_version()

        for extension in await self._introspector.get_extensions():
            script.extensions.append(
                f"CREATE EXTENSION IF NOT EXISTS {quote_identifier_always(extension)};"
            )

        user_types: set[str] = set()
        for enum_type in await self._introspector.get_enum_types():
            user_types.add(enum_type.name)
            labels = ", ".join(quote_literal(label) for label in enum_type.labels)
            script.types.append(
                f"CREATE TYPE {quote_identifier(enum_type.name)} AS ENUM ({labels});"
            )

        for table in ordered_tables:
            try:
                await self._reconstruct_table(table, script, user_types)
            except psycopg.Error as e:
                self._check_connection(e)
                logger.error("Error dumping %s: %s", table, e)
                script.add_error(table, e)

        try:
            for function in await self._introspector.get_functions():
                script.functions.append(_terminate(function.definition))
        except psycopg.Error as e:
            self._check_connection(e)
            logger.error("Error dumping functions: %s", e)
            script.add_error("functions", e)

        try:
            dumped = set(ordered_tables)
            for trigger in await self._introspector.get_triggers():
                if trigger.table in dumped:
                    script.triggers.append(_terminate(trigger.definition))
        except psycopg.Error as e:
            self._check_connection(e)
            logger.error("Error dumping triggers: %s", e)
            script.add_error("triggers", e)

        if script.errors:
            logger.warning("Schema dump finished with %d errors", len(script.errors))
        return script.render()

    async def _reconstruct_table(
        self,
        table: str,
        script: SchemaScript,
        user_types: Collection[str],
    ) -> None:
        """Append one table's DDL to *script*.

        All catalog reads happen before anything is appended, so a failure
        never leaves half a table in the script.
        """
        columns = await self._introspector.get_columns(table)
        constraints = await self._introspector.get_constraints(table)
        indexes = await self._introspector.get_indexes(table)
        logger.debug(
            "%s: %d columns, %d constraints, %d indexes",
            table, len(columns), len(constraints), len(indexes),
        )

        table_name = quote_identifier(table)
        body = [column_definition(column, user_types) for column in columns]

        sequences = [
            sequence
            for column in columns
            if (sequence := serial_sequence(column))
            and (column.is_array or column.udt_name not in SERIAL_TYPES)
        ]

        constraint_names = {constraint.name for constraint in constraints}
        for constraint in constraints:
            if constraint.constraint_type == ConstraintType.PRIMARY_KEY:
                key = ", ".join(quote_identifier(c) for c in constraint.columns)
                body.append(f"PRIMARY KEY ({key})")
                continue
            statement = (
                f"ALTER TABLE {table_name} ADD CONSTRAINT "
                f"{quote_identifier(constraint.name)} {constraint.definition};"
            )
            if constraint.constraint_type == ConstraintType.FOREIGN_KEY:
                script.foreign_keys.append(statement)
            else:
                script.constraints.append(statement)

        for index in indexes:
            if index.name in constraint_names:
                continue
            script.indexes.append(_terminate(index.definition))

        block = [f"-- Table: {table}"]
        block.extend(f"CREATE SEQUENCE IF NOT EXISTS {sequence};" for sequence in sequences)
        block.append(f"CREATE TABLE IF NOT EXISTS {table_name} (")
        block.append(",\n".join(f"  {line}" for line in body))
        block.append(");")
        script.tables.append("\n".join(block) + "\n")

    def _check_connection(self, error: Exception) -> None:
        if not self._introspector.is_connected:
            raise ConnectionError(f"Lost connection to source database: {error}") from error


def quote_identifier_always(name: str) -> str:
    """Double-quote *name* unconditionally (extension names may contain dashes)."""
    return '"' + name.replace('"', '""') + '"'


def _terminate(definition: str) -> str:
    definition = definition.rstrip()
    return definition if definition.endswith(";") else definition + ";"

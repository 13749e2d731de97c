"""Dump table rows as INSERT scripts and restore them.

Rows are read through a ``DatabaseClient`` in a stable order and written as
``INSERT ... ON CONFLICT DO NOTHING`` statements, so restoring the same
script twice leaves the target unchanged.  The whole data script runs with
``session_replication_role = 'replica'``, which suspends foreign key
triggers while tables are filled.

Usage:
    async with SchemaIntrospector(url) as introspector:
        adapter = AsyncPostgresAdapter(url)
        try:
            dump = await DataTransporter(introspector, adapter).dump()
        finally:
            await adapter.close()
    Path("data.sql").write_text(dump.render())
"""

import logging
from datetime import datetime, timezone

import psycopg
from psycopg import AsyncConnection
from pydantic import BaseModel, Field
from sqlalchemy.exc import DBAPIError, SQLAlchemyError

from db_porter.adapters.base import DatabaseClient
from db_porter.data.codec import build_insert
from db_porter.replay.executor import (
    STATEMENT_PREFIX_LENGTH,
    ReplayResult,
    StatementError,
    execute_statements,
)
from db_porter.replay.splitter import split_statements
from db_porter.schema.introspector import SchemaIntrospector
from db_porter.schema.models import ColumnSchema
from db_porter.schema.reconstructor import SERIAL_TYPES, serial_sequence
from db_porter.schema.resolver import resolve
from db_porter.sql import error_summary, quote_identifier, quote_literal

logger = logging.getLogger(__name__)

# Activity timestamps used for ordering when a table has no created_at
TIMESTAMP_ORDER_COLUMNS = ("started_at", "read_at", "updated_at")

# Types without a default btree ordering
_UNORDERABLE_TYPES = frozenset({"json", "xml", "point", "polygon", "line", "circle", "box", "path"})

_TRANSACTION_CONTROL = ("BEGIN", "COMMIT", "END", "ROLLBACK", "START TRANSACTION")


# ------------------------------------------------------------------
# Results
# ------------------------------------------------------------------


class TableDump(BaseModel):
    """INSERT statements for one table, or the error that prevented them."""

    table: str
    row_count: int = 0
    sql: str = ""
    error: str | None = None


class DataDump(BaseModel):
    """A complete data dump, ready to render as a script."""

    tables: list[TableDump] = Field(default_factory=list)
    sequence_resets: list[str] = Field(default_factory=list)

    @property
    def total_rows(self) -> int:
        return sum(t.row_count for t in self.tables)

    @property
    def errors(self) -> list[TableDump]:
        return [t for t in self.tables if t.error]

    def render(self) -> str:
        rule = "-- " + "=" * 60
        lines = [
            rule,
            "-- Data dump",
            f"-- Generated: {datetime.now(timezone.utc).isoformat()}",
            f"-- Tables: {len(self.tables)}, rows: {self.total_rows}",
            rule,
            "",
            "BEGIN;",
            "SET session_replication_role = 'replica';",
            "",
        ]
        for table in self.tables:
            lines.append(table.sql)
            lines.append("")
        if self.sequence_resets:
            lines.append("-- Sequences")
            lines.extend(self.sequence_resets)
            lines.append("")
        lines.append("SET session_replication_role = 'origin';")
        lines.append("COMMIT;")
        lines.append("")
        return "\n".join(lines)


# ------------------------------------------------------------------
# Row ordering
# ------------------------------------------------------------------


def order_columns(columns: list[ColumnSchema], primary_key: list[str] | None = None) -> list[str]:
    """Pick ORDER BY columns giving a stable, mostly chronological row order.

    Preference: ``created_at, id``; ``created_at`` plus a unique fallback
    (primary key, first UUID column, first column); an activity timestamp
    (``started_at``, ``read_at``, ``updated_at``) plus ``id`` when present;
    ``id``; the first orderable column.

    Examples:
        >>> cols = [ColumnSchema(name=n, data_type="text", udt_name="text")
        ...         for n in ("id", "title", "created_at")]
        >>> order_columns(cols)
        ['created_at', 'id']
    """
    orderable = [c for c in columns if c.udt_name not in _UNORDERABLE_TYPES and not c.is_generated]
    names = [c.name for c in orderable]
    present = set(names)
    if not names:
        return []

    if "created_at" in present:
        if "id" in present:
            return ["created_at", "id"]
        candidates = [c for c in (primary_key or []) if c in present]
        candidates += [c.name for c in orderable if c.udt_name == "uuid"]
        candidates += names
        fallback = next((c for c in candidates if c != "created_at"), None)
        return ["created_at", fallback] if fallback else ["created_at"]

    for timestamp in TIMESTAMP_ORDER_COLUMNS:
        if timestamp in present:
            return [timestamp, "id"] if "id" in present else [timestamp]

    if "id" in present:
        return ["id"]
    return [names[0]]


def sequence_resets(table: str, columns: list[ColumnSchema]) -> list[str]:
    """``setval`` statements aligning serial/identity sequences with the data."""
    statements = []
    table_name = quote_identifier(table)
    for column in columns:
        is_serial = serial_sequence(column) is not None and column.udt_name in SERIAL_TYPES
        if not (is_serial or column.is_identity):
            continue
        column_name = quote_identifier(column.name)
        statements.append(
            f"SELECT setval(pg_get_serial_sequence({quote_literal(table_name)}, "
            f"{quote_literal(column.name)}), COALESCE(MAX({column_name}), 0) + 1, false) "
            f"FROM {table_name};"
        )
    return statements


# ------------------------------------------------------------------
# Transporter
# ------------------------------------------------------------------


class DataTransporter:
    """Dump rows of source tables as INSERT statements.

    Args:
        introspector: Entered ``SchemaIntrospector`` for column metadata.
        client: ``DatabaseClient`` used to read rows.
        order_overrides: Optional per-table ORDER BY column lists that take
            precedence over ``order_columns()``.
    """

    def __init__(
        self,
        introspector: SchemaIntrospector,
        client: DatabaseClient,
        order_overrides: dict[str, list[str]] | None = None,
    ) -> None:
        self._introspector = introspector
        self._client = client
        self._order_overrides = order_overrides or {}

    async def dump(self, tables: list[str] | None = None) -> DataDump:
        """Dump *tables* (default: all) in foreign key order."""
        if tables is None:
            tables = await self._introspector.list_tables()
        edges = await self._introspector.get_foreign_key_edges()
        return await self.dump_tables(resolve(tables, edges))

    async def dump_tables(self, ordered_tables: list[str]) -> DataDump:
        """Dump each table in the given order.

        A table that fails is recorded with its error and skipped; the
        others are still dumped.
        """
        result = DataDump()
        for table in ordered_tables:
            table_dump, resets = await self._dump_table(table)
            result.tables.append(table_dump)
            result.sequence_resets.extend(resets)
            if table_dump.error:
                logger.error("Error dumping %s: %s", table, table_dump.error)
            else:
                logger.info("%s: %d rows", table, table_dump.row_count)
        return result

    async def dump_table(self, table: str) -> TableDump:
        """INSERT statements for every row of *table*.

        Raises:
            ConnectionError: If a source connection is lost.
        """
        table_dump, _ = await self._dump_table(table)
        return table_dump

    async def _dump_table(self, table: str) -> tuple[TableDump, list[str]]:
        try:
            columns = await self._introspector.get_columns(table)
            primary_key = await self._introspector.get_primary_key(table)
            columns = [c for c in columns if not c.is_generated]
            if not columns:
                return TableDump(table=table, sql=f"-- Table: {table} (no columns)"), []

            order = self._order_overrides.get(table) or order_columns(columns, primary_key)
            rows = await self._client.select(
                quote_identifier(table),
                ", ".join(quote_identifier(c.name) for c in columns),
                order_by=", ".join(quote_identifier(c) for c in order) or None,
            )
        except (psycopg.Error, SQLAlchemyError) as e:
            self._check_connection(e)
            message = error_summary(e)
            return TableDump(
                table=table,
                sql=f"-- Error dumping {table}: {message}",
                error=message,
            ), []

        if not rows:
            return TableDump(table=table, sql=f"-- Table: {table} (empty)"), []

        lines = [f"-- Table: {table} ({len(rows)} rows)"]
        for row in rows:
            values = [row.get(column.name) for column in columns]
            lines.append(build_insert(table, columns, values))
        return (
            TableDump(table=table, row_count=len(rows), sql="\n".join(lines)),
            sequence_resets(table, columns),
        )

    def _check_connection(self, error: Exception) -> None:
        lost = not self._introspector.is_connected or (
            isinstance(error, DBAPIError) and error.connection_invalidated
        )
        if lost:
            raise ConnectionError(f"Lost connection to source database: {error}") from error


# ------------------------------------------------------------------
# Restore
# ------------------------------------------------------------------


def is_transaction_control(statement: str) -> bool:
    """True for BEGIN/COMMIT/ROLLBACK style statements."""
    head = statement.upper().rstrip(";").strip()
    return any(head == keyword or head.startswith(keyword + " ") for keyword in _TRANSACTION_CONTROL)


async def restore_data(
    script: str,
    conn: AsyncConnection,
    atomic: bool = False,
) -> ReplayResult:
    """Replay a data script against the target.

    Args:
        script: Output of ``DataDump.render()``.
        conn: psycopg async connection in autocommit mode.
        atomic: If ``True``, send the script as one unit: it either applies
            completely or not at all.  Otherwise each statement runs on its
            own with the script's transaction statements dropped, so one bad
            row does not cancel the rest.

    Returns:
        ``ReplayResult`` for the replay.

    Raises:
        ConnectionError: If the connection is lost.
    """
    statements = split_statements(script)

    if not atomic:
        return await execute_statements(
            [s for s in statements if not is_transaction_control(s)],
            conn,
        )

    try:
        await conn.execute(script)
    except psycopg.Error as e:
        if conn.closed:
            raise ConnectionError(f"Lost connection to target database: {e}") from e
        await conn.execute("ROLLBACK")
        message = error_summary(e)
        logger.error("Atomic restore rolled back: %s", message)
        return ReplayResult(
            errors=[
                StatementError(
                    statement=script.strip()[:STATEMENT_PREFIX_LENGTH],
                    message=message,
                    code=e.sqlstate,
                )
            ]
        )

    return ReplayResult(executed_count=len(statements))

"""PostgreSQL catalog introspection via information_schema and pg_catalog.

This module queries a live database for everything needed to re-create it:
- Tables and foreign-key edges between them
- Columns with catalog type names, lengths, defaults, identity/generated info
- Constraints (primary key, foreign key, unique, check) as server-rendered DDL
- Indexes, functions, triggers, enum types and installed extensions

Uses psycopg (v3) ``AsyncConnection`` in autocommit mode, so a failed query
for one table does not poison the queries that follow.

Usage:
    async with SchemaIntrospector(database_url) as introspector:
        tables = await introspector.list_tables()
        columns = await introspector.get_columns("users")
"""

import logging
from typing import Any

import psycopg
from psycopg import AsyncConnection

from db_porter.schema.models import (
    ColumnSchema,
    ConstraintSchema,
    ConstraintType,
    EnumTypeSchema,
    FunctionSchema,
    IndexSchema,
    TriggerSchema,
)

logger = logging.getLogger(__name__)

_CONSTRAINT_KINDS = {
    "p": ConstraintType.PRIMARY_KEY,
    "f": ConstraintType.FOREIGN_KEY,
    "c": ConstraintType.CHECK,
    "u": ConstraintType.UNIQUE,
}


class SchemaIntrospector:
    """Introspects a PostgreSQL schema for dumping.

    Works with any PostgreSQL database (RDS, Supabase, local).  All query
    methods are async and scoped to one schema (default ``public``).

    Args:
        database_url: PostgreSQL connection URL.
        schema_name: Schema to introspect.
        excluded_tables: Tables to leave out of ``list_tables()``.  Defaults
            to ``EXCLUDED_TABLES_DEFAULT``.
        connect_timeout: Seconds to wait when opening the connection.

    Usage:
        async with SchemaIntrospector(url, excluded_tables={"audit_log"}) as i:
            edges = await i.get_foreign_key_edges()
    """

    # Extension-owned or migration bookkeeping tables
    EXCLUDED_TABLES_DEFAULT: set[str] = {
        "schema_migrations",
        "pg_stat_statements",
        "spatial_ref_sys",
    }

    def __init__(
        self,
        database_url: str,
        schema_name: str = "public",
        excluded_tables: set[str] | None = None,
        connect_timeout: int = 10,
    ) -> None:
        self._database_url = database_url
        self._schema_name = schema_name
        self._excluded_tables: set[str] = (
            set(excluded_tables)
            if excluded_tables is not None
            else set(self.EXCLUDED_TABLES_DEFAULT)
        )
        self._connect_timeout = connect_timeout
        self._conn: AsyncConnection | None = None

    async def __aenter__(self) -> "SchemaIntrospector":
        """Open the catalog connection."""
        try:
            self._conn = await psycopg.AsyncConnection.connect(
                self._database_url,
                connect_timeout=self._connect_timeout,
                autocommit=True,
            )
        except psycopg.OperationalError as e:
            raise ConnectionError(f"Could not connect to source database: {e}") from e
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Close the catalog connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    @property
    def schema_name(self) -> str:
        return self._schema_name

    @property
    def is_connected(self) -> bool:
        """True while the underlying connection is open."""
        return self._conn is not None and not self._conn.closed

    async def test_connection(self) -> bool:
        """Run ``SELECT 1`` against the open connection.

        Raises:
            RuntimeError: If the introspector is not connected.
            ConnectionError: If the query fails.
        """
        conn = self._require_connection()
        try:
            async with conn.cursor() as cur:
                await cur.execute("SELECT 1")
                row = await cur.fetchone()
        except psycopg.Error as e:
            raise ConnectionError(f"Connection test failed: {e}") from e
        return row is not None and row[0] == 1

    # ------------------------------------------------------------------
    # Database-level objects
    # ------------------------------------------------------------------

    async def get_server_version(self) -> str:
        """Return the ``SELECT version()`` banner."""
        rows = await self._fetch("SELECT version()")
        return rows[0][0] if rows else "unknown"

    async def list_tables(self) -> list[str]:
        """List base tables in the schema, sorted, minus excluded tables."""
        query = """
            SELECT table_name
            FROM information_schema.tables
            WHERE table_schema = %s
              AND table_type = 'BASE TABLE'
            ORDER BY table_name
        """
        rows = await self._fetch(query, (self._schema_name,))
        return [row[0] for row in rows if row[0] not in self._excluded_tables]

    async def get_foreign_key_edges(self) -> list[tuple[str, str]]:
        """Return ``(child, parent)`` pairs, one per referencing table pair."""
        query = """
            SELECT DISTINCT child.relname::text, parent.relname::text
            FROM pg_constraint con
            JOIN pg_class child ON child.oid = con.conrelid
            JOIN pg_namespace cn ON cn.oid = child.relnamespace
            JOIN pg_class parent ON parent.oid = con.confrelid
            JOIN pg_namespace pn ON pn.oid = parent.relnamespace
            WHERE con.contype = 'f'
              AND cn.nspname = %s
              AND pn.nspname = %s
            ORDER BY 1, 2
        """
        rows = await self._fetch(query, (self._schema_name, self._schema_name))
        return [(child, parent) for child, parent in rows]

    async def get_extensions(self) -> list[str]:
        """Installed extensions, excluding the built-in ``plpgsql``."""
        query = """
            SELECT extname::text
            FROM pg_extension
            WHERE extname <> 'plpgsql'
            ORDER BY extname
        """
        rows = await self._fetch(query)
        return [row[0] for row in rows]

    async def get_enum_types(self) -> list[EnumTypeSchema]:
        """Enum types defined in the schema (not owned by an extension)."""
        query = """
            SELECT t.typname::text, array_agg(e.enumlabel::text ORDER BY e.enumsortorder)
            FROM pg_type t
            JOIN pg_enum e ON e.enumtypid = t.oid
            JOIN pg_namespace n ON n.oid = t.typnamespace
            WHERE n.nspname = %s
              AND NOT EXISTS (
                  SELECT 1 FROM pg_depend d
                  WHERE d.objid = t.oid AND d.deptype = 'e'
              )
            GROUP BY t.typname
            ORDER BY t.typname
        """
        rows = await self._fetch(query, (self._schema_name,))
        return [EnumTypeSchema(name=name, labels=list(labels)) for name, labels in rows]

    async def get_functions(self) -> list[FunctionSchema]:
        """Get user-defined functions and procedures in the schema.

        Note: ``prokind`` filters out aggregates (``a``) and window functions
        (``w``), which ``pg_get_functiondef`` cannot render.  Functions owned
        by an extension are re-created by the extension itself.
        """
        query = """
            SELECT p.proname::text, pg_get_functiondef(p.oid)
            FROM pg_proc p
            JOIN pg_namespace n ON n.oid = p.pronamespace
            WHERE n.nspname = %s
              AND p.prokind IN ('f', 'p')
              AND NOT EXISTS (
                  SELECT 1 FROM pg_depend d
                  WHERE d.objid = p.oid AND d.deptype = 'e'
              )
            ORDER BY p.proname, p.oid
        """
        rows = await self._fetch(query, (self._schema_name,))
        return [FunctionSchema(name=name, definition=definition) for name, definition in rows]

    async def get_triggers(self) -> list[TriggerSchema]:
        """Get user triggers (internal constraint triggers are skipped)."""
        query = """
            SELECT t.tgname::text, c.relname::text, pg_get_triggerdef(t.oid)
            FROM pg_trigger t
            JOIN pg_class c ON c.oid = t.tgrelid
            JOIN pg_namespace n ON n.oid = c.relnamespace
            WHERE n.nspname = %s
              AND NOT t.tgisinternal
            ORDER BY c.relname, t.tgname
        """
        rows = await self._fetch(query, (self._schema_name,))
        return [
            TriggerSchema(name=name, table=table, definition=definition)
            for name, table, definition in rows
            if table not in self._excluded_tables
        ]

    # ------------------------------------------------------------------
    # Table-level objects
    # ------------------------------------------------------------------

    async def get_columns(self, table_name: str) -> list[ColumnSchema]:
        """Get columns for a table in ordinal order.

        For array columns ``element_type`` carries the element's
        ``pg_type.typname`` (``_int4`` -> ``int4``).
        """
        query = """
            SELECT
                c.column_name::text,
                c.data_type::text,
                c.udt_name::text,
                c.is_nullable::text,
                c.column_default::text,
                c.character_maximum_length::int,
                c.numeric_precision::int,
                c.numeric_scale::int,
                c.is_identity::text,
                c.identity_generation::text,
                c.generation_expression::text,
                CASE WHEN c.data_type = 'ARRAY' THEN (
                    SELECT e.typname::text
                    FROM pg_type a
                    JOIN pg_namespace an ON an.oid = a.typnamespace
                    JOIN pg_type e ON e.oid = a.typelem
                    WHERE a.typname = c.udt_name AND an.nspname = c.udt_schema
                ) END
            FROM information_schema.columns c
            WHERE c.table_schema = %s
              AND c.table_name = %s
            ORDER BY c.ordinal_position
        """
        rows = await self._fetch(query, (self._schema_name, table_name))
        return [self._column_from_row(row) for row in rows]

    async def get_column_names(self) -> dict[str, set[str]]:
        """Get column names for all tables (for the comparator).

        Returns:
            Dict mapping table name to set of column names
        """
        query = """
            SELECT table_name::text, column_name::text
            FROM information_schema.columns
            WHERE table_schema = %s
        """
        tables = await self.list_tables()
        result: dict[str, set[str]] = {table: set() for table in tables}
        for table, column in await self._fetch(query, (self._schema_name,)):
            if table in result:
                result[table].add(column)
        return result

    async def get_constraints(self, table_name: str) -> list[ConstraintSchema]:
        """Get primary key, foreign key, unique and check constraints."""
        query = """
            SELECT
                con.conname::text,
                con.contype::text,
                pg_get_constraintdef(con.oid),
                ARRAY(
                    SELECT a.attname::text
                    FROM unnest(con.conkey) WITH ORDINALITY AS k(attnum, ord)
                    JOIN pg_attribute a
                      ON a.attrelid = con.conrelid AND a.attnum = k.attnum
                    ORDER BY k.ord
                )
            FROM pg_constraint con
            JOIN pg_class rel ON rel.oid = con.conrelid
            JOIN pg_namespace nsp ON nsp.oid = rel.relnamespace
            WHERE nsp.nspname = %s
              AND rel.relname = %s
              AND con.contype IN ('p', 'f', 'c', 'u')
            ORDER BY con.conname
        """
        rows = await self._fetch(query, (self._schema_name, table_name))
        return [
            ConstraintSchema(
                name=name,
                constraint_type=_CONSTRAINT_KINDS[contype],
                definition=definition,
                columns=list(columns or []),
            )
            for name, contype, definition, columns in rows
        ]

    async def get_primary_key(self, table_name: str) -> list[str]:
        """Primary key columns in key order (empty if the table has none)."""
        for constraint in await self.get_constraints(table_name):
            if constraint.constraint_type == ConstraintType.PRIMARY_KEY:
                return constraint.columns
        return []

    async def get_indexes(self, table_name: str) -> list[IndexSchema]:
        """Get index definitions for a table, including constraint-backing ones.

        Callers decide which to skip; the reconstructor drops indexes that
        share a name with a constraint.
        """
        query = """
            SELECT indexname::text, indexdef
            FROM pg_indexes
            WHERE schemaname = %s
              AND tablename = %s
            ORDER BY indexname
        """
        rows = await self._fetch(query, (self._schema_name, table_name))
        return [IndexSchema(name=name, definition=definition) for name, definition in rows]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_connection(self) -> AsyncConnection:
        if self._conn is None:
            raise RuntimeError("Introspector not connected. Use async with statement.")
        return self._conn

    async def _fetch(self, query: str, params: tuple | None = None) -> list[tuple[Any, ...]]:
        conn = self._require_connection()
        async with conn.cursor() as cur:
            await cur.execute(query, params)
            return await cur.fetchall()

    @staticmethod
    def _column_from_row(row: tuple[Any, ...]) -> ColumnSchema:
        (
            name,
            data_type,
            udt_name,
            is_nullable,
            default,
            max_length,
            precision,
            scale,
            is_identity,
            identity_generation,
            generated_expression,
            element_type,
        ) = row
        return ColumnSchema(
            name=name,
            data_type=data_type,
            udt_name=udt_name,
            is_nullable=(is_nullable == "YES"),
            default=default,
            max_length=max_length,
            numeric_precision=precision,
            numeric_scale=scale,
            element_type=element_type,
            is_identity=(is_identity == "YES"),
            identity_generation=identity_generation,
            generated_expression=generated_expression,
        )

"""Move schema and data between databases (async).

High-level operations built on the introspector, reconstructor, replayer
and transporter.  Each function opens and closes its own connections.

Usage:
    from db_porter.porter import export_schema, import_schema, migrate

    script = await export_schema(source_url)
    result = await import_schema(target_url, script)

    # Or everything in one go, followed by a verification pass
    result = await migrate(source_url, target_url)
    if not result.success:
        print(result.comparison.validation.format_report())
"""

import logging

import psycopg
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError

from db_porter.adapters.base import DatabaseClient
from db_porter.config.models import DumpSettings
from db_porter.data.transporter import DataDump, DataTransporter, restore_data
from db_porter.factory import get_adapter, maintenance_url, open_connection, to_libpq_url
from db_porter.replay.executor import ReplayResult, replay_script
from db_porter.schema.comparator import validate_schema
from db_porter.schema.introspector import SchemaIntrospector
from db_porter.schema.models import SchemaValidationResult
from db_porter.schema.reconstructor import SchemaReconstructor
from db_porter.schema.resolver import resolve
from db_porter.sql import error_summary, quote_identifier

logger = logging.getLogger(__name__)


class ComparisonResult(BaseModel):
    """Source-versus-target comparison after a restore.

    Attributes:
        validation: Missing tables and columns in the target.
        source_counts: Row counts per table in the source.
        dest_counts: Row counts per table in the target (tables that could
            not be counted are absent).
    """

    validation: SchemaValidationResult
    source_counts: dict[str, int] = Field(default_factory=dict)
    dest_counts: dict[str, int] = Field(default_factory=dict)

    @property
    def mismatched_tables(self) -> list[str]:
        """Tables whose target row count differs from the source."""
        return [
            table
            for table, count in self.source_counts.items()
            if self.dest_counts.get(table) != count
        ]

    @property
    def matches(self) -> bool:
        return self.validation.valid and not self.mismatched_tables


class MigrationResult(BaseModel):
    """Result of ``migrate()``.

    Attributes:
        success: ``True`` when replay finished without errors and the
            target matches the source.
        tables: Tables dumped from the source, in dependency order.
        schema_replay: Outcome of replaying the schema script.
        data_replay: Outcome of replaying the data script (``None`` for a
            schema-only migration).
        comparison: Verification of the target against the source.
        table_errors: Per-table dump errors, ``{table: message}``.
    """

    success: bool = False
    tables: list[str] = Field(default_factory=list)
    schema_replay: ReplayResult | None = None
    data_replay: ReplayResult | None = None
    comparison: ComparisonResult | None = None
    table_errors: dict[str, str] = Field(default_factory=dict)


class ConnectionReport(BaseModel):
    """What ``check_connection()`` found on a database."""

    schema_name: str
    server_version: str
    tables: list[str] = Field(default_factory=list)
    row_counts: dict[str, int] = Field(default_factory=dict)


class ResetResult(BaseModel):
    """Plan or outcome of clearing a database's rows.

    Attributes:
        tables: Tables in deletion order (children before parents).
        row_counts: Rows per table before deletion.
        deleted: Rows removed per table (empty for a plan).
        errors: Per-table delete failures, ``{table: message}``.
    """

    tables: list[str] = Field(default_factory=list)
    row_counts: dict[str, int] = Field(default_factory=dict)
    deleted: dict[str, int] = Field(default_factory=dict)
    errors: dict[str, str] = Field(default_factory=dict)

    @property
    def total_rows(self) -> int:
        return sum(self.row_counts.values())

    @property
    def success(self) -> bool:
        return not self.errors


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _introspector(database_url: str, settings: DumpSettings) -> SchemaIntrospector:
    excluded = set(settings.excluded_tables) if settings.excluded_tables is not None else None
    return SchemaIntrospector(
        to_libpq_url(database_url),
        schema_name=settings.schema_name,
        excluded_tables=excluded,
    )


async def count_rows(client: DatabaseClient, tables: list[str]) -> dict[str, int]:
    """Row counts per table; tables that cannot be counted are left out."""
    counts: dict[str, int] = {}
    for table in tables:
        try:
            rows = await client.select(quote_identifier(table), "count(*) AS cnt")
        except SQLAlchemyError as e:
            logger.warning("Could not count rows in %s: %s", table, e)
            continue
        counts[table] = rows[0]["cnt"] if rows else 0
    return counts


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def export_schema(database_url: str, settings: DumpSettings | None = None) -> str:
    """Dump the schema of *database_url* as a replayable script."""
    settings = settings or DumpSettings()
    async with _introspector(database_url, settings) as introspector:
        return await SchemaReconstructor(introspector).dump()


async def export_data(
    database_url: str,
    tables: list[str] | None = None,
    settings: DumpSettings | None = None,
) -> DataDump:
    """Dump rows of *tables* (default: all) from *database_url*."""
    settings = settings or DumpSettings()
    adapter = get_adapter(database_url)
    try:
        async with _introspector(database_url, settings) as introspector:
            transporter = DataTransporter(
                introspector, adapter, order_overrides=settings.order_by
            )
            return await transporter.dump(tables)
    finally:
        await adapter.close()


async def import_schema(database_url: str, script: str) -> ReplayResult:
    """Replay a schema script against *database_url*."""
    conn = await open_connection(database_url)
    try:
        return await replay_script(script, conn)
    finally:
        await conn.close()


async def import_data(database_url: str, script: str, atomic: bool = False) -> ReplayResult:
    """Replay a data script against *database_url* (see ``restore_data``)."""
    conn = await open_connection(database_url)
    try:
        return await restore_data(script, conn, atomic=atomic)
    finally:
        await conn.close()


async def compare_databases(
    source_url: str,
    dest_url: str,
    tables: list[str] | None = None,
    settings: DumpSettings | None = None,
) -> ComparisonResult:
    """Compare tables, columns and row counts of *dest_url* against *source_url*."""
    settings = settings or DumpSettings()

    async with _introspector(source_url, settings) as source:
        expected = await source.get_column_names()
    async with _introspector(dest_url, settings) as dest:
        actual = await dest.get_column_names()

    if tables is not None:
        expected = {t: cols for t, cols in expected.items() if t in tables}
        actual = {t: cols for t, cols in actual.items() if t in tables}

    validation = validate_schema(actual, expected)
    compared = sorted(expected)

    source_adapter = get_adapter(source_url)
    dest_adapter = get_adapter(dest_url)
    try:
        source_counts = await count_rows(source_adapter, compared)
        dest_counts = await count_rows(
            dest_adapter, [t for t in compared if t in actual]
        )
    finally:
        await source_adapter.close()
        await dest_adapter.close()

    return ComparisonResult(
        validation=validation,
        source_counts=source_counts,
        dest_counts=dest_counts,
    )


async def migrate(
    source_url: str,
    dest_url: str,
    include_data: bool = True,
    atomic: bool = False,
    settings: DumpSettings | None = None,
) -> MigrationResult:
    """Copy schema (and data) from *source_url* to *dest_url*, then verify.

    Schema and data are separate phases; a failure between them leaves the
    target with the schema only.  Re-running is safe: existing objects are
    skipped and rows are inserted with ``ON CONFLICT DO NOTHING``.

    Raises:
        ConnectionError: If either database becomes unreachable.
    """
    settings = settings or DumpSettings()
    result = MigrationResult()

    logger.info("Dumping schema")
    schema_script = await export_schema(source_url, settings)
    logger.info("Replaying schema")
    result.schema_replay = await import_schema(dest_url, schema_script)

    data_ok = True
    if include_data:
        logger.info("Dumping data")
        dump = await export_data(source_url, settings=settings)
        result.tables = [t.table for t in dump.tables]
        result.table_errors = {t.table: t.error for t in dump.errors if t.error}
        logger.info("Replaying %d rows", dump.total_rows)
        result.data_replay = await import_data(dest_url, dump.render(), atomic=atomic)
        data_ok = result.data_replay.success and not result.table_errors

    result.comparison = await compare_databases(source_url, dest_url, settings=settings)
    if include_data:
        result.success = data_ok and result.schema_replay.success and result.comparison.matches
    else:
        result.success = result.schema_replay.success and result.comparison.validation.valid
    return result


async def check_connection(
    database_url: str, settings: DumpSettings | None = None
) -> ConnectionReport:
    """Open both kinds of connection to *database_url* and report what is there.

    Raises:
        ConnectionError: If either connection cannot be opened or used.
    """
    settings = settings or DumpSettings()
    async with _introspector(database_url, settings) as introspector:
        await introspector.test_connection()
        report = ConnectionReport(
            schema_name=introspector.schema_name,
            server_version=await introspector.get_server_version(),
            tables=await introspector.list_tables(),
        )

    adapter = get_adapter(database_url)
    try:
        try:
            await adapter.test_connection()
        except (SQLAlchemyError, OSError) as e:
            raise ConnectionError(f"Row connection failed: {e}") from e
        report.row_counts = await count_rows(adapter, report.tables)
    finally:
        await adapter.close()
    return report


async def plan_reset(database_url: str, settings: DumpSettings | None = None) -> ResetResult:
    """Tables of *database_url* in deletion order, with their row counts."""
    settings = settings or DumpSettings()
    async with _introspector(database_url, settings) as introspector:
        tables = await introspector.list_tables()
        edges = await introspector.get_foreign_key_edges()

    result = ResetResult(tables=list(reversed(resolve(tables, edges))))
    adapter = get_adapter(database_url)
    try:
        result.row_counts = await count_rows(adapter, result.tables)
    finally:
        await adapter.close()
    return result


async def clear_data(
    database_url: str,
    settings: DumpSettings | None = None,
    confirm: bool = False,
) -> ResetResult:
    """Delete every row of every table, children before parents.

    Triggers and foreign key checks are suspended for the session
    (``session_replication_role = 'replica'``, superuser only), so tables
    that reference each other in a cycle are emptied too.  A table that
    cannot be cleared is recorded and the rest are still processed.

    Args:
        database_url: Database to clear.
        settings: ``[dump]`` settings (schema, excluded tables).
        confirm: Must be ``True``; rows are deleted for good.

    Raises:
        ValueError: If *confirm* is not ``True``.
        ConnectionError: If the database becomes unreachable.
    """
    if not confirm:
        raise ValueError("Deleting all rows requires confirm=True")

    result = await plan_reset(database_url, settings)
    conn = await open_connection(database_url)
    try:
        await conn.execute("SET session_replication_role = 'replica'")
        for table in result.tables:
            try:
                cur = await conn.execute(f"DELETE FROM {quote_identifier(table)}")
            except psycopg.Error as e:
                if conn.closed:
                    raise ConnectionError(f"Connection lost while clearing {table}: {e}") from e
                logger.error("Could not clear %s: %s", table, e)
                result.errors[table] = error_summary(e)
                continue
            result.deleted[table] = cur.rowcount
            logger.info("Deleted %d rows from %s", cur.rowcount, table)
    finally:
        await conn.close()
    return result


async def ensure_database(database_url: str) -> bool:
    """Create the database *database_url* names if it does not exist.

    Returns:
        ``True`` if the database was created, ``False`` if it already existed.
    """
    admin_url, name = maintenance_url(database_url)
    conn = await open_connection(admin_url)
    try:
        cur = await conn.execute("SELECT 1 FROM pg_database WHERE datname = %s", (name,))
        if await cur.fetchone():
            return False
        await conn.execute(f"CREATE DATABASE {quote_identifier(name)}")
        logger.info("Created database %s", name)
        return True
    finally:
        await conn.close()


async def recreate_database(database_url: str) -> None:
    """Drop and recreate the database *database_url* names, leaving it empty.

    Other sessions on that database are terminated first.
    """
    admin_url, name = maintenance_url(database_url)
    conn = await open_connection(admin_url)
    try:
        await conn.execute(
            "SELECT pg_terminate_backend(pid) FROM pg_stat_activity "
            "WHERE datname = %s AND pid <> pg_backend_pid()",
            (name,),
        )
        await conn.execute(f"DROP DATABASE IF EXISTS {quote_identifier(name)}")
        await conn.execute(f"CREATE DATABASE {quote_identifier(name)}")
        logger.info("Recreated database %s", name)
    finally:
        await conn.close()

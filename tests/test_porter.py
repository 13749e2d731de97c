"""Tests for the high-level porter operations with patched connections."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import psycopg

import pytest
from sqlalchemy.exc import ProgrammingError

from conftest import FakeClient, FakeIntrospector, col
from db_porter import porter
from db_porter.config.models import DumpSettings
from db_porter.data.transporter import DataDump, TableDump
from db_porter.replay.executor import ReplayResult, StatementError
from db_porter.schema.comparator import validate_schema

SOURCE = "postgresql://u@source/db"
DEST = "postgresql://u@dest/db"


class IntrospectorContext:
    """Async context manager yielding a fixed introspector."""

    def __init__(self, introspector: FakeIntrospector) -> None:
        self.introspector = introspector

    async def __aenter__(self) -> FakeIntrospector:
        return self.introspector

    async def __aexit__(self, *exc) -> None:
        return None


# ============================================================
# Test: Helpers
# ============================================================


class TestIntrospectorSettings:
    """Verify dump settings reach the introspector."""

    def test_settings_applied(self) -> None:
        settings = DumpSettings(schema_name="app", excluded_tables=["audit"])
        introspector = porter._introspector("postgresql+asyncpg://u@h/db", settings)
        assert introspector.schema_name == "app"
        assert introspector._excluded_tables == {"audit"}
        assert introspector._database_url == "postgresql://u@h/db"

    def test_default_exclusions(self) -> None:
        introspector = porter._introspector(SOURCE, DumpSettings())
        assert "schema_migrations" in introspector._excluded_tables


class TestCountRows:
    """Verify row counting."""

    def test_counts(self) -> None:
        client = MagicMock()
        client.select = AsyncMock(side_effect=[[{"cnt": 3}], [{"cnt": 0}]])
        assert asyncio.run(porter.count_rows(client, ["a", "Order"])) == {"a": 3, "Order": 0}
        assert client.select.await_args_list[1].args == ('"Order"', "count(*) AS cnt")

    def test_uncountable_table_left_out(self) -> None:
        client = MagicMock()
        client.select = AsyncMock(
            side_effect=[ProgrammingError("SELECT", {}, Exception("no such table")), [{"cnt": 1}]]
        )
        assert asyncio.run(porter.count_rows(client, ["gone", "b"])) == {"b": 1}


# ============================================================
# Test: Export / import
# ============================================================


class TestExportImport:
    """Verify connections are opened and closed around each operation."""

    def test_export_schema(self, blog_schema) -> None:
        with patch.object(porter, "_introspector", return_value=IntrospectorContext(blog_schema)):
            script = asyncio.run(porter.export_schema(SOURCE))
        assert "CREATE TABLE IF NOT EXISTS users" in script

    def test_export_data_closes_adapter(self, blog_schema) -> None:
        client = FakeClient({"users": [{"id": 1, "email": "a", "status": None, "created_at": None}]})
        with patch.object(porter, "_introspector", return_value=IntrospectorContext(blog_schema)), \
                patch.object(porter, "get_adapter", return_value=client):
            dump = asyncio.run(porter.export_data(SOURCE, tables=["users"]))
        assert dump.total_rows == 1
        assert client.closed

    def test_export_data_passes_order_overrides(self, blog_schema) -> None:
        client = FakeClient()
        settings = DumpSettings(order_by={"users": ["email"]})
        with patch.object(porter, "_introspector", return_value=IntrospectorContext(blog_schema)), \
                patch.object(porter, "get_adapter", return_value=client):
            asyncio.run(porter.export_data(SOURCE, tables=["users"], settings=settings))
        assert client.selects[0]["order_by"] == "email"

    def test_import_schema_closes_connection(self) -> None:
        conn = MagicMock()
        conn.closed = False
        conn.execute = AsyncMock()
        conn.close = AsyncMock()
        with patch.object(porter, "open_connection", new=AsyncMock(return_value=conn)):
            result = asyncio.run(porter.import_schema(DEST, "CREATE TABLE a (id int);"))
        assert result.executed_count == 1
        conn.close.assert_awaited_once()

    def test_import_data_atomic(self) -> None:
        conn = MagicMock()
        conn.closed = False
        conn.execute = AsyncMock()
        conn.close = AsyncMock()
        with patch.object(porter, "open_connection", new=AsyncMock(return_value=conn)):
            asyncio.run(porter.import_data(DEST, "BEGIN; SELECT 1; COMMIT;", atomic=True))
        conn.execute.assert_awaited_once_with("BEGIN; SELECT 1; COMMIT;")
        conn.close.assert_awaited_once()


# ============================================================
# Test: Compare
# ============================================================


class TestCompareDatabases:
    """Verify schema and row count comparison."""

    def _compare(self, source: FakeIntrospector, dest: FakeIntrospector, source_rows, dest_rows, **kwargs):
        contexts = [IntrospectorContext(source), IntrospectorContext(dest)]
        adapters = [FakeClient(), FakeClient()]

        async def select(rows, table, columns, **_):
            return [{"cnt": rows[table]}] if table in rows else []

        adapters[0].select = lambda table, columns, **kw: select(source_rows, table, columns)
        adapters[1].select = lambda table, columns, **kw: select(dest_rows, table, columns)

        with patch.object(porter, "_introspector", side_effect=contexts), \
                patch.object(porter, "get_adapter", side_effect=adapters):
            return asyncio.run(porter.compare_databases(SOURCE, DEST, **kwargs))

    def test_matching(self) -> None:
        schema = {"users": [col("id", "int4")], "posts": [col("id", "int4")]}
        result = self._compare(
            FakeIntrospector(columns=schema),
            FakeIntrospector(columns=schema),
            {"users": 2, "posts": 5},
            {"users": 2, "posts": 5},
        )
        assert result.matches
        assert result.mismatched_tables == []

    def test_row_count_mismatch(self) -> None:
        schema = {"users": [col("id", "int4")]}
        result = self._compare(
            FakeIntrospector(columns=schema),
            FakeIntrospector(columns=schema),
            {"users": 2},
            {"users": 1},
        )
        assert not result.matches
        assert result.mismatched_tables == ["users"]

    def test_missing_table_not_counted_on_dest(self) -> None:
        result = self._compare(
            FakeIntrospector(columns={"users": [col("id", "int4")], "posts": [col("id", "int4")]}),
            FakeIntrospector(columns={"users": [col("id", "int4")]}),
            {"users": 1, "posts": 1},
            {"users": 1},
        )
        assert result.validation.missing_tables == ["posts"]
        assert "posts" not in result.dest_counts
        assert result.mismatched_tables == ["posts"]

    def test_table_filter(self) -> None:
        result = self._compare(
            FakeIntrospector(columns={"users": [col("id", "int4")], "posts": [col("id", "int4")]}),
            FakeIntrospector(columns={"users": [col("id", "int4")]}),
            {"users": 1, "posts": 1},
            {"users": 1},
            tables=["users"],
        )
        assert result.matches


# ============================================================
# Test: Migrate
# ============================================================


def comparison(valid: bool = True, counts_match: bool = True) -> porter.ComparisonResult:
    expected = {"users": {"id"}}
    actual = expected if valid else {}
    return porter.ComparisonResult(
        validation=validate_schema(actual, expected),
        source_counts={"users": 1},
        dest_counts={"users": 1 if counts_match else 0},
    )


class TestMigrate:
    """Verify phase sequencing and the overall verdict."""

    @pytest.fixture
    def patched(self):
        dump = DataDump(tables=[TableDump(table="users", row_count=1, sql="INSERT INTO users (id) VALUES (1) ON CONFLICT DO NOTHING;")])
        with patch.object(porter, "export_schema", new=AsyncMock(return_value="CREATE TABLE users (id int);")) as export_schema, \
                patch.object(porter, "import_schema", new=AsyncMock(return_value=ReplayResult(executed_count=1))) as import_schema, \
                patch.object(porter, "export_data", new=AsyncMock(return_value=dump)) as export_data, \
                patch.object(porter, "import_data", new=AsyncMock(return_value=ReplayResult(executed_count=3))) as import_data, \
                patch.object(porter, "compare_databases", new=AsyncMock(return_value=comparison())) as compare:
            yield {
                "export_schema": export_schema,
                "import_schema": import_schema,
                "export_data": export_data,
                "import_data": import_data,
                "compare_databases": compare,
            }

    def test_full_migration(self, patched) -> None:
        result = asyncio.run(porter.migrate(SOURCE, DEST))
        assert result.success
        assert result.tables == ["users"]
        patched["import_schema"].assert_awaited_once_with(DEST, "CREATE TABLE users (id int);")
        script = patched["import_data"].await_args.args[1]
        assert "INSERT INTO users (id) VALUES (1)" in script
        assert patched["import_data"].await_args.kwargs == {"atomic": False}

    def test_schema_only(self, patched) -> None:
        result = asyncio.run(porter.migrate(SOURCE, DEST, include_data=False))
        assert result.success
        assert result.data_replay is None
        patched["export_data"].assert_not_awaited()

    def test_schema_only_ignores_row_counts(self, patched) -> None:
        patched["compare_databases"].return_value = comparison(counts_match=False)
        result = asyncio.run(porter.migrate(SOURCE, DEST, include_data=False))
        assert result.success

    def test_data_errors_fail_migration(self, patched) -> None:
        patched["import_data"].return_value = ReplayResult(
            executed_count=2,
            errors=[StatementError(statement="INSERT", message="boom")],
        )
        result = asyncio.run(porter.migrate(SOURCE, DEST))
        assert not result.success

    def test_dump_errors_reported(self, patched) -> None:
        patched["export_data"].return_value = DataDump(
            tables=[TableDump(table="secret", sql="-- Error dumping secret: denied", error="denied")]
        )
        result = asyncio.run(porter.migrate(SOURCE, DEST))
        assert result.table_errors == {"secret": "denied"}
        assert not result.success

    def test_count_mismatch_fails_migration(self, patched) -> None:
        patched["compare_databases"].return_value = comparison(counts_match=False)
        result = asyncio.run(porter.migrate(SOURCE, DEST))
        assert not result.success


# ============================================================
# Test: Connection check
# ============================================================


def counting_client(counts: dict[str, int]) -> FakeClient:
    """Client whose ``count(*)`` query returns *counts*."""
    return FakeClient({table: [{"cnt": n}] for table, n in counts.items()})


class TestCheckConnection:
    """Verify both connections are exercised and reported."""

    def test_report(self) -> None:
        introspector = FakeIntrospector(columns={"users": [col("id", "int4")], "posts": [col("id", "int4")]})
        introspector.schema_name = "app"
        client = counting_client({"users": 2, "posts": 7})
        with patch.object(porter, "_introspector", return_value=IntrospectorContext(introspector)), \
                patch.object(porter, "get_adapter", return_value=client):
            report = asyncio.run(porter.check_connection(SOURCE))

        assert report.schema_name == "app"
        assert report.server_version == "PostgreSQL 16.2"
        assert report.tables == ["posts", "users"]
        assert report.row_counts == {"posts": 7, "users": 2}
        assert client.closed

    def test_row_connection_failure(self) -> None:
        client = FakeClient()
        client.test_connection = AsyncMock(side_effect=OSError("connection refused"))
        with patch.object(porter, "_introspector", return_value=IntrospectorContext(FakeIntrospector())), \
                patch.object(porter, "get_adapter", return_value=client):
            with pytest.raises(ConnectionError, match="Row connection failed"):
                asyncio.run(porter.check_connection(SOURCE))
        assert client.closed


# ============================================================
# Test: Reset
# ============================================================


def shop_schema() -> FakeIntrospector:
    """accounts <- orders <- line_items; alphabetical order is not deletion order."""
    return FakeIntrospector(
        columns={
            "accounts": [col("id", "int4")],
            "orders": [col("id", "int4")],
            "line_items": [col("id", "int4")],
        },
        edges=[("orders", "accounts"), ("line_items", "orders")],
    )


def replay_connection(failures: dict[str, Exception] | None = None) -> MagicMock:
    """Connection recording statements; ``DELETE`` reports 4 rows."""
    failures = failures or {}
    conn = MagicMock()
    conn.closed = False
    conn.close = AsyncMock()
    conn.statements = []

    async def execute(statement, *args, **kwargs):
        conn.statements.append(statement)
        for fragment, error in failures.items():
            if fragment in statement:
                raise error
        cursor = MagicMock()
        cursor.rowcount = 4
        return cursor

    conn.execute = AsyncMock(side_effect=execute)
    return conn


class TestReset:
    """Verify rows are cleared children first, behind a confirmation."""

    def _patched(self, conn: MagicMock | None = None):
        counts = {"accounts": 1, "orders": 2, "line_items": 3}
        patches = [
            patch.object(porter, "_introspector", return_value=IntrospectorContext(shop_schema())),
            patch.object(porter, "get_adapter", return_value=counting_client(counts)),
        ]
        if conn is not None:
            patches.append(patch.object(porter, "open_connection", new=AsyncMock(return_value=conn)))
        return patches

    def _run(self, coro_factory, conn: MagicMock | None = None):
        patches = self._patched(conn)
        for p in patches:
            p.start()
        try:
            return asyncio.run(coro_factory())
        finally:
            for p in patches:
                p.stop()

    def test_plan_is_reverse_dependency_order(self) -> None:
        plan = self._run(lambda: porter.plan_reset(DEST))
        assert plan.tables == ["line_items", "orders", "accounts"]
        assert plan.row_counts == {"line_items": 3, "orders": 2, "accounts": 1}
        assert plan.total_rows == 6
        assert plan.deleted == {}

    def test_clear_requires_confirm(self) -> None:
        with patch.object(porter, "open_connection", new=AsyncMock()) as opened:
            with pytest.raises(ValueError, match="confirm=True"):
                asyncio.run(porter.clear_data(DEST))
        opened.assert_not_awaited()

    def test_clear_deletes_children_first(self) -> None:
        conn = replay_connection()
        result = self._run(lambda: porter.clear_data(DEST, confirm=True), conn)

        assert conn.statements == [
            "SET session_replication_role = 'replica'",
            "DELETE FROM line_items",
            "DELETE FROM orders",
            "DELETE FROM accounts",
        ]
        assert result.success
        assert result.deleted == {"line_items": 4, "orders": 4, "accounts": 4}
        conn.close.assert_awaited_once()

    def test_failed_table_recorded_rest_cleared(self) -> None:
        conn = replay_connection({"orders": psycopg.errors.InsufficientPrivilege("permission denied for table orders")})
        result = self._run(lambda: porter.clear_data(DEST, confirm=True), conn)

        assert not result.success
        assert result.errors == {"orders": "permission denied for table orders"}
        assert set(result.deleted) == {"line_items", "accounts"}

    def test_connection_lost(self) -> None:
        conn = replay_connection({"orders": psycopg.OperationalError("server closed the connection")})
        conn.closed = True
        with pytest.raises(ConnectionError, match="orders"):
            self._run(lambda: porter.clear_data(DEST, confirm=True), conn)
        conn.close.assert_awaited_once()


class TestDatabaseLifecycle:
    """Verify create and recreate go through the maintenance database."""

    def test_ensure_creates_missing_database(self) -> None:
        conn = replay_connection()
        cursor = MagicMock()
        cursor.fetchone = AsyncMock(return_value=None)
        conn.execute.side_effect = None
        conn.execute.return_value = cursor

        with patch.object(porter, "open_connection", new=AsyncMock(return_value=conn)) as opened:
            assert asyncio.run(porter.ensure_database(DEST)) is True

        opened.assert_awaited_once_with("postgresql://u@dest/postgres")
        assert conn.execute.await_args_list[0].args == (
            "SELECT 1 FROM pg_database WHERE datname = %s", ("db",)
        )
        assert conn.execute.await_args_list[1].args == ("CREATE DATABASE db",)
        conn.close.assert_awaited_once()

    def test_ensure_keeps_existing_database(self) -> None:
        conn = replay_connection()
        cursor = MagicMock()
        cursor.fetchone = AsyncMock(return_value=(1,))
        conn.execute.side_effect = None
        conn.execute.return_value = cursor

        with patch.object(porter, "open_connection", new=AsyncMock(return_value=conn)):
            assert asyncio.run(porter.ensure_database(DEST)) is False
        assert conn.execute.await_count == 1

    def test_recreate_terminates_drops_and_creates(self) -> None:
        conn = replay_connection()
        with patch.object(porter, "open_connection", new=AsyncMock(return_value=conn)):
            asyncio.run(porter.recreate_database("postgresql://u:p@dest:5432/Shop"))

        assert "pg_terminate_backend" in conn.statements[0]
        assert conn.execute.await_args_list[0].args[1] == ("Shop",)
        assert conn.statements[1:] == ['DROP DATABASE IF EXISTS "Shop"', 'CREATE DATABASE "Shop"']
        conn.close.assert_awaited_once()

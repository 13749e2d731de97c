"""CLI for dumping, restoring and migrating PostgreSQL databases.

Usage:
    db-porter profiles
    db-porter dump-schema --from source -o schema.sql
    db-porter dump-data --from source -o data.sql --tables users,orders
    DB_PROFILE=local db-porter restore-schema schema.sql
    db-porter restore-data --to local data.sql --atomic
    db-porter verify --from source --to local
    db-porter migrate --from source --to local --confirm
    db-porter check --profile local
    db-porter reset --to local --confirm
    db-porter reset --to local --recreate --schema schema.sql --confirm

Commands:
    profiles        - List available profiles
    dump-schema     - Write a replayable schema script
    dump-data       - Write INSERT statements for table rows
    restore-schema  - Replay a schema script against a profile
    restore-data    - Replay a data script against a profile
    verify          - Compare tables, columns and row counts of two profiles
    migrate         - Dump and replay schema and data, then verify
    check           - Test a profile's connections and list its tables
    reset           - Delete all rows, or drop and recreate the database

Profiles come from db.toml in the working directory.  Commands that take
``--to`` or ``--profile`` default to ``{env-prefix}DB_PROFILE``.
"""

import argparse
import asyncio
import logging
import shutil
import sys
from pathlib import Path

import psycopg
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table
from sqlalchemy.exc import SQLAlchemyError

from db_porter.config.loader import load_db_config
from db_porter.config.models import DatabaseConfig
from db_porter.factory import (
    ProfileNotFoundError,
    get_active_profile_name,
    maintenance_url,
    resolve_profile_url,
)
from db_porter.porter import (
    ComparisonResult,
    check_connection,
    clear_data,
    compare_databases,
    ensure_database,
    export_data,
    export_schema,
    import_data,
    import_schema,
    migrate,
    plan_reset,
    recreate_database,
)
from db_porter.replay.executor import ReplayResult

console = Console()

# Connection and driver failures end a command with exit code 1
FATAL_ERRORS = (OSError, psycopg.Error, SQLAlchemyError)


# ============================================================================
# Helpers
# ============================================================================


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )


def _load_config(args: argparse.Namespace) -> DatabaseConfig:
    config_path = Path(args.config) if getattr(args, "config", None) else None
    return load_db_config(config_path)


def _resolve_dest(args: argparse.Namespace) -> str:
    """Destination profile from ``--to`` or ``{prefix}DB_PROFILE``."""
    if getattr(args, "dest", None):
        return args.dest
    return get_active_profile_name(env_prefix=getattr(args, "env_prefix", ""))


def _write_output(path: Path, content: str) -> None:
    """Write *content*, keeping the previous file as ``<name>.backup``."""
    if path.exists():
        backup = path.with_name(path.name + ".backup")
        shutil.copy2(path, backup)
        console.print(f"[dim]Previous file saved to {backup}[/dim]")
    path.write_text(content)


def _print_replay(result: ReplayResult, title: str) -> None:
    table = Table(title=title, show_header=False)
    table.add_column("Key", style="dim")
    table.add_column("Value", justify="right")
    table.add_row("Executed", f"[green]{result.executed_count}[/green]")
    table.add_row("Skipped", f"[yellow]{result.skipped_count}[/yellow]")
    table.add_row("Errors", f"[red]{len(result.errors)}[/red]" if result.errors else "0")
    console.print(table)

    if result.errors:
        console.print("\n[bold]First errors:[/bold]")
        for error in result.errors[:5]:
            code = f" [dim]({error.code})[/dim]" if error.code else ""
            console.print(f"  [red]x[/red] {escape(error.message)}{code}")
            console.print(f"    [dim]{escape(error.statement)}...[/dim]")
        if len(result.errors) > 5:
            console.print(f"  [dim]... and {len(result.errors) - 5} more[/dim]")


def _print_comparison(result: ComparisonResult, source: str, dest: str) -> None:
    table = Table(title="Row Counts", show_header=True, header_style="bold")
    table.add_column("Table", style="dim")
    table.add_column(f"{source} (source)", justify="right")
    table.add_column(f"{dest} (dest)", justify="right")
    table.add_column("", width=2)

    for name, count in result.source_counts.items():
        dest_count = result.dest_counts.get(name)
        ok = dest_count == count
        table.add_row(
            name,
            str(count),
            "-" if dest_count is None else str(dest_count),
            "[green]v[/green]" if ok else "[red]x[/red]",
        )
    console.print(table)

    if not result.validation.valid:
        console.print()
        console.print(result.validation.format_report())


# ============================================================================
# Async command implementations
# ============================================================================


async def _async_dump_schema(args: argparse.Namespace) -> int:
    """Async implementation for dump-schema command.

    Returns:
        0 on success, 1 on failure.
    """
    config = _load_config(args)
    url = resolve_profile_url(args.source, config)

    console.print(f"Dumping schema from [bold]{args.source}[/bold]...", style="dim")
    script = await export_schema(url, config.dump)

    output = Path(args.output)
    _write_output(output, script)
    console.print(f"[bold green]v[/bold green] Schema written to [cyan]{output}[/cyan]")

    errors = [line for line in script.splitlines() if line.startswith("-- Error dumping")]
    for line in errors:
        console.print(f"  [yellow]{escape(line[3:])}[/yellow]")
    return 0


async def _async_dump_data(args: argparse.Namespace) -> int:
    """Async implementation for dump-data command.

    Returns:
        0 on success, 1 on failure.
    """
    config = _load_config(args)
    url = resolve_profile_url(args.source, config)
    tables = [t.strip() for t in args.tables.split(",")] if args.tables else None

    console.print(f"Dumping data from [bold]{args.source}[/bold]...", style="dim")
    dump = await export_data(url, tables=tables, settings=config.dump)

    summary = Table(title="Data Dump", show_header=True, header_style="bold")
    summary.add_column("Table", style="dim")
    summary.add_column("Rows", justify="right")
    for table_dump in dump.tables:
        rows = (
            f"[red]{escape(table_dump.error)}[/red]" if table_dump.error else str(table_dump.row_count)
        )
        summary.add_row(table_dump.table, rows)
    console.print(summary)

    output = Path(args.output)
    _write_output(output, dump.render())
    console.print(
        f"[bold green]v[/bold green] {dump.total_rows} rows written to [cyan]{output}[/cyan]"
    )
    return 0


async def _async_restore_schema(args: argparse.Namespace) -> int:
    """Async implementation for restore-schema command.

    Returns:
        0 when the script was replayed (statement errors are reported, not
        fatal), 1 if the file or the database is unavailable.
    """
    config = _load_config(args)
    dest = _resolve_dest(args)
    url = resolve_profile_url(dest, config)
    script = Path(args.file).read_text()

    console.print(f"Replaying [cyan]{args.file}[/cyan] on [bold cyan]{dest}[/bold cyan]...")
    result = await import_schema(url, script)
    _print_replay(result, "Schema Restore")
    return 0


async def _async_restore_data(args: argparse.Namespace) -> int:
    """Async implementation for restore-data command.

    Returns:
        0 when the script was replayed, 1 if the file or the database is
        unavailable.
    """
    config = _load_config(args)
    dest = _resolve_dest(args)
    url = resolve_profile_url(dest, config)
    script = Path(args.file).read_text()

    mode = "atomic" if args.atomic else "per statement"
    console.print(
        f"Restoring [cyan]{args.file}[/cyan] on [bold cyan]{dest}[/bold cyan] ({mode})..."
    )
    result = await import_data(url, script, atomic=args.atomic)
    _print_replay(result, "Data Restore")
    return 0


async def _async_verify(args: argparse.Namespace) -> int:
    """Async implementation for verify command.

    Returns:
        0 if the destination matches the source, 1 otherwise.
    """
    config = _load_config(args)
    dest = _resolve_dest(args)
    if args.source == dest:
        console.print(f"[red]Error: Source and destination are the same profile: {dest}[/red]")
        return 1

    tables = [t.strip() for t in args.tables.split(",")] if args.tables else None
    result = await compare_databases(
        resolve_profile_url(args.source, config),
        resolve_profile_url(dest, config),
        tables=tables,
        settings=config.dump,
    )
    _print_comparison(result, args.source, dest)

    if result.matches:
        console.print("\n[bold green]v[/bold green] Destination matches source")
        return 0
    console.print("\n[bold red]x[/bold red] Destination differs from source")
    return 1


async def _async_migrate(args: argparse.Namespace) -> int:
    """Async implementation for migrate command.

    Returns:
        0 on success (or plan shown without ``--confirm``), 1 on failure.
    """
    config = _load_config(args)
    dest = _resolve_dest(args)
    if args.source == dest:
        console.print(f"[red]Error: Source and destination are the same profile: {dest}[/red]")
        return 1

    console.print("[bold]Migration Plan:[/bold]")
    if args.create_db:
        console.print(f"  0. Create the database behind [bold cyan]{dest}[/bold cyan] if missing")
    console.print(f"  1. Dump schema from [bold]{args.source}[/bold]")
    console.print(f"  2. Replay schema on [bold cyan]{dest}[/bold cyan]")
    if not args.schema_only:
        console.print(f"  3. Dump data from [bold]{args.source}[/bold]")
        console.print(f"  4. Replay data on [bold cyan]{dest}[/bold cyan]")
    console.print("  Then compare tables, columns and row counts.")

    if not args.confirm:
        console.print()
        console.print("[dim]To run the migration, add[/dim] [cyan]--confirm[/cyan] [dim]flag.[/dim]")
        return 0

    dest_url = resolve_profile_url(dest, config)
    if args.create_db and await ensure_database(dest_url):
        console.print(f"[green]v[/green] Created database for [bold cyan]{dest}[/bold cyan]")

    result = await migrate(
        resolve_profile_url(args.source, config),
        dest_url,
        include_data=not args.schema_only,
        atomic=args.atomic,
        settings=config.dump,
    )

    console.print()
    if result.schema_replay:
        _print_replay(result.schema_replay, "Schema Restore")
    if result.data_replay:
        _print_replay(result.data_replay, "Data Restore")
    for table, error in result.table_errors.items():
        console.print(f"  [yellow]Error dumping {table}: {escape(error)}[/yellow]")
    if result.comparison:
        _print_comparison(result.comparison, args.source, dest)

    if result.success:
        console.print("\n[bold green]v Migration complete![/bold green]")
        return 0
    console.print("\n[bold red]x[/bold red] Migration finished with problems")
    return 1


async def _async_check(args: argparse.Namespace) -> int:
    """Async implementation for check command.

    Returns:
        0 if both connections work, 1 otherwise.
    """
    config = _load_config(args)
    profile = _resolve_dest(args)

    console.print(f"Checking [bold cyan]{profile}[/bold cyan]...", style="dim")
    report = await check_connection(resolve_profile_url(profile, config), config.dump)

    console.print(f"[bold green]v[/bold green] Connected to [bold cyan]{profile}[/bold cyan]")
    console.print(f"  Server: [dim]{escape(report.server_version)}[/dim]")
    console.print(f"  Schema: [dim]{report.schema_name}[/dim]")

    table = Table(title=f"Tables ({len(report.tables)})", show_header=True, header_style="bold")
    table.add_column("Table", style="dim")
    table.add_column("Rows", justify="right")
    for name in report.tables:
        count = report.row_counts.get(name)
        table.add_row(name, "-" if count is None else str(count))
    console.print(table)
    return 0


async def _async_reset(args: argparse.Namespace) -> int:
    """Async implementation for reset command.

    Without ``--recreate`` every row is deleted, children first.  With it
    the database is dropped and created again, then ``--schema`` (if given)
    is replayed.

    Returns:
        0 on success (or plan shown without ``--confirm``), 1 on failure.
    """
    config = _load_config(args)
    dest = _resolve_dest(args)
    url = resolve_profile_url(dest, config)
    if args.schema and not args.recreate:
        console.print("[red]Error: --schema only applies with --recreate[/red]")
        return 1

    if args.recreate:
        _, name = maintenance_url(url)
        schema = Path(args.schema).read_text() if args.schema else None
        console.print(
            f"[bold yellow]Database {escape(name)} on {dest} will be dropped and recreated.[/bold yellow]"
        )
        if schema is not None:
            console.print(f"  Then [cyan]{args.schema}[/cyan] is replayed.")
        if not args.confirm:
            console.print()
            console.print("[dim]To recreate the database, add[/dim] [cyan]--confirm[/cyan] [dim]flag.[/dim]")
            return 0

        await recreate_database(url)
        console.print(f"[bold green]v[/bold green] Recreated database [bold]{escape(name)}[/bold]")
        if schema is not None:
            _print_replay(await import_schema(url, schema), "Schema Restore")
        return 0

    plan = await plan_reset(url, config.dump)
    table = Table(title="Rows To Delete", show_header=True, header_style="bold")
    table.add_column("Table", style="dim")
    table.add_column("Rows", justify="right")
    for name in plan.tables:
        count = plan.row_counts.get(name)
        table.add_row(name, "-" if count is None else str(count))
    console.print(table)

    if plan.total_rows == 0:
        console.print("[green]v[/green] Database is already empty.")
        return 0

    if not args.confirm:
        console.print()
        console.print(
            f"[bold yellow]{plan.total_rows} rows on {dest} will be deleted.[/bold yellow] "
            "[dim]To delete them, add[/dim] [cyan]--confirm[/cyan] [dim]flag.[/dim]"
        )
        return 0

    result = await clear_data(url, config.dump, confirm=True)
    for name, error in result.errors.items():
        console.print(f"  [red]x[/red] {name}: {escape(error)}")
    deleted = sum(result.deleted.values())
    if result.success:
        console.print(f"[bold green]v[/bold green] Deleted {deleted} rows from {len(result.deleted)} tables")
        return 0
    console.print(f"[bold red]x[/bold red] Deleted {deleted} rows; {len(result.errors)} tables failed")
    return 1


# ============================================================================
# Sync command wrappers
# ============================================================================


def _run(coro) -> int:
    """Run an async command, turning setup and connection failures into exit 1."""
    try:
        return asyncio.run(coro)
    except (FileNotFoundError, KeyError, ValueError, ProfileNotFoundError) as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        return 1
    except FATAL_ERRORS as e:
        console.print(f"[bold red]Error:[/bold red] {escape(str(e))}")
        return 1


def cmd_dump_schema(args: argparse.Namespace) -> int:
    """Write a replayable schema script for a profile."""
    return _run(_async_dump_schema(args))


def cmd_dump_data(args: argparse.Namespace) -> int:
    """Write INSERT statements for a profile's table rows."""
    return _run(_async_dump_data(args))


def cmd_restore_schema(args: argparse.Namespace) -> int:
    """Replay a schema script."""
    return _run(_async_restore_schema(args))


def cmd_restore_data(args: argparse.Namespace) -> int:
    """Replay a data script."""
    return _run(_async_restore_data(args))


def cmd_verify(args: argparse.Namespace) -> int:
    """Compare two profiles."""
    return _run(_async_verify(args))


def cmd_migrate(args: argparse.Namespace) -> int:
    """Dump and replay schema and data between two profiles."""
    return _run(_async_migrate(args))


def cmd_check(args: argparse.Namespace) -> int:
    """Test a profile's connections."""
    return _run(_async_check(args))


def cmd_reset(args: argparse.Namespace) -> int:
    """Empty or recreate a profile's database."""
    return _run(_async_reset(args))


def cmd_profiles(args: argparse.Namespace) -> int:
    """List available profiles from db.toml.

    Reads only local TOML config -- no database calls.

    Returns:
        0 on success, 1 if db.toml not found.
    """
    try:
        config = _load_config(args)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        return 1

    try:
        current = get_active_profile_name(env_prefix=getattr(args, "env_prefix", ""))
    except ProfileNotFoundError:
        current = None

    table = Table(title="Database Profiles", show_header=True, header_style="bold")
    table.add_column("", width=2)
    table.add_column("Profile")
    table.add_column("Description")

    for name, profile in config.profiles.items():
        marker = "[bold green]*[/bold green]" if name == current else " "
        name_style = "bold cyan" if name == current else ""
        table.add_row(
            marker,
            f"[{name_style}]{name}[/{name_style}]" if name_style else name,
            profile.description or "",
        )

    console.print(table)

    if current:
        console.print("\n[bold green]*[/bold green] = default destination")

    return 0


# ============================================================================
# Main entry point
# ============================================================================


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with all subcommands."""
    parser = argparse.ArgumentParser(
        prog="db-porter",
        description="PostgreSQL schema and data portability",
    )
    parser.add_argument(
        "--env-prefix",
        default="",
        help=(
            "Prefix for environment variable lookup "
            "(e.g., --env-prefix APP_ reads APP_DB_PROFILE)"
        ),
    )
    parser.add_argument("--config", help="Path to db.toml (default: ./db.toml)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    p_profiles = subparsers.add_parser("profiles", help="List available profiles")
    p_profiles.set_defaults(func=cmd_profiles)

    p_dump_schema = subparsers.add_parser("dump-schema", help="Write a schema script")
    p_dump_schema.add_argument("--from", "-f", dest="source", required=True, help="Source profile")
    p_dump_schema.add_argument("--output", "-o", default="schema.sql", help="Output file")
    p_dump_schema.set_defaults(func=cmd_dump_schema)

    p_dump_data = subparsers.add_parser("dump-data", help="Write a data script")
    p_dump_data.add_argument("--from", "-f", dest="source", required=True, help="Source profile")
    p_dump_data.add_argument("--output", "-o", default="data.sql", help="Output file")
    p_dump_data.add_argument(
        "--tables",
        help="Comma-separated list of tables (default: all)",
    )
    p_dump_data.set_defaults(func=cmd_dump_data)

    p_restore_schema = subparsers.add_parser("restore-schema", help="Replay a schema script")
    p_restore_schema.add_argument("file", help="Schema script")
    p_restore_schema.add_argument("--to", "-t", dest="dest", help="Destination profile")
    p_restore_schema.set_defaults(func=cmd_restore_schema)

    p_restore_data = subparsers.add_parser("restore-data", help="Replay a data script")
    p_restore_data.add_argument("file", help="Data script")
    p_restore_data.add_argument("--to", "-t", dest="dest", help="Destination profile")
    p_restore_data.add_argument(
        "--atomic",
        action="store_true",
        help="Apply the whole script in one transaction (all or nothing)",
    )
    p_restore_data.set_defaults(func=cmd_restore_data)

    p_verify = subparsers.add_parser("verify", help="Compare destination with source")
    p_verify.add_argument("--from", "-f", dest="source", required=True, help="Source profile")
    p_verify.add_argument("--to", "-t", dest="dest", help="Destination profile")
    p_verify.add_argument("--tables", help="Comma-separated list of tables (default: all)")
    p_verify.set_defaults(func=cmd_verify)

    p_migrate = subparsers.add_parser("migrate", help="Copy schema and data to another profile")
    p_migrate.add_argument("--from", "-f", dest="source", required=True, help="Source profile")
    p_migrate.add_argument("--to", "-t", dest="dest", help="Destination profile")
    p_migrate.add_argument("--schema-only", action="store_true", help="Skip the data phase")
    p_migrate.add_argument(
        "--atomic",
        action="store_true",
        help="Apply the data script in one transaction",
    )
    p_migrate.add_argument(
        "--confirm",
        action="store_true",
        help="Actually run the migration (otherwise only the plan is shown)",
    )
    p_migrate.add_argument(
        "--create-db",
        action="store_true",
        help="Create the destination database first if it does not exist",
    )
    p_migrate.set_defaults(func=cmd_migrate)

    p_check = subparsers.add_parser("check", help="Test a profile's connections")
    p_check.add_argument("--profile", "-p", dest="dest", help="Profile to check")
    p_check.set_defaults(func=cmd_check)

    p_reset = subparsers.add_parser("reset", help="Delete all rows or recreate the database")
    p_reset.add_argument("--to", "-t", dest="dest", help="Profile to reset")
    p_reset.add_argument(
        "--recreate",
        action="store_true",
        help="Drop and recreate the database instead of deleting rows",
    )
    p_reset.add_argument("--schema", help="Schema script to replay after --recreate")
    p_reset.add_argument(
        "--confirm",
        action="store_true",
        help="Actually reset (otherwise only the plan is shown)",
    )
    p_reset.set_defaults(func=cmd_reset)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point.

    Returns:
        Exit code (0 for success, non-zero for errors).
    """
    args = build_parser().parse_args(argv)
    _configure_logging(args.verbose)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())

"""db-porter: PostgreSQL schema and data portability without pg_dump.

Reads a live database's catalog, rebuilds it as a replayable DDL script,
dumps rows as idempotent INSERT statements, and replays both against
another PostgreSQL instance.

Usage:
    from db_porter import export_schema, import_schema, export_data, import_data
    from db_porter import resolve, SchemaIntrospector, SchemaReconstructor
    from db_porter import split_statements, execute_statements
    from db_porter import DataTransporter, restore_data
"""

__version__ = "0.1.0"

# Adapters
from db_porter.adapters.base import DatabaseClient
from db_porter.adapters.postgres import AsyncPostgresAdapter

# Config
from db_porter.config.loader import load_db_config
from db_porter.config.models import DatabaseConfig, DatabaseProfile, DumpSettings

# Factory
from db_porter.factory import (
    ProfileNotFoundError,
    get_adapter,
    open_connection,
    resolve_profile_url,
    resolve_url,
)

# Schema
from db_porter.schema.comparator import validate_schema
from db_porter.schema.introspector import SchemaIntrospector
from db_porter.schema.reconstructor import SchemaReconstructor
from db_porter.schema.resolver import resolve

# Replay
from db_porter.replay.executor import ReplayResult, execute_statements, replay_script
from db_porter.replay.splitter import split_statements

# Data
from db_porter.data.codec import encode_value
from db_porter.data.transporter import DataDump, DataTransporter, restore_data

# Orchestration
from db_porter.porter import (
    ComparisonResult,
    MigrationResult,
    compare_databases,
    export_data,
    export_schema,
    import_data,
    import_schema,
    migrate,
)

__all__ = [
    # Adapters
    "DatabaseClient",
    "AsyncPostgresAdapter",
    # Config
    "load_db_config",
    "DatabaseProfile",
    "DatabaseConfig",
    "DumpSettings",
    # Factory
    "get_adapter",
    "open_connection",
    "ProfileNotFoundError",
    "resolve_url",
    "resolve_profile_url",
    # Schema
    "validate_schema",
    "SchemaIntrospector",
    "SchemaReconstructor",
    "resolve",
    # Replay
    "split_statements",
    "execute_statements",
    "replay_script",
    "ReplayResult",
    # Data
    "encode_value",
    "DataTransporter",
    "DataDump",
    "restore_data",
    # Orchestration
    "export_schema",
    "export_data",
    "import_schema",
    "import_data",
    "compare_databases",
    "migrate",
    "ComparisonResult",
    "MigrationResult",
]

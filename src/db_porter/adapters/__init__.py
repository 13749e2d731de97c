"""Database adapters package.

Provides the ``DatabaseClient`` Protocol and the async PostgreSQL adapter
used to read rows from the source and count rows on either side.

Usage:
    from db_porter.adapters import DatabaseClient, AsyncPostgresAdapter
"""

from db_porter.adapters.base import DatabaseClient
from db_porter.adapters.postgres import AsyncPostgresAdapter

__all__ = [
    "DatabaseClient",
    "AsyncPostgresAdapter",
]

"""Database client protocol definition.

Defines the ``DatabaseClient`` Protocol used to read and count table rows
and to check a connection.  All methods are ``async def``.

Usage:
    from db_porter.adapters.base import DatabaseClient

    async def count(client: DatabaseClient, table: str) -> int:
        rows = await client.select(table, "count(*) AS cnt")
        return rows[0]["cnt"]
"""

from typing import Protocol


class DatabaseClient(Protocol):
    """Database client interface used by the data transporter.

    All methods are async -- callers must ``await`` every operation.
    """

    async def select(
        self,
        table: str,
        columns: str,
        order_by: str | None = None,
    ) -> list[dict]:
        """Select rows from table.

        Args:
            table: Table name, quoted by the caller where needed.
            columns: Comma-separated column list (e.g., ``"id, name, status"``).
            order_by: Optional ORDER BY expression (e.g., ``"created_at, id"``).

        Returns:
            List of dicts, one per row, in query order.  Empty list if no rows.

        Example:
            rows = await client.select(
                "users",
                "id, email, created_at",
                order_by="created_at, id",
            )
        """
        ...

    async def test_connection(self) -> bool:
        """Return ``True`` if a trivial query succeeds; raise otherwise."""
        ...

    async def close(self) -> None:
        """Close database connections and clean up resources."""
        ...

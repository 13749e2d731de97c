"""Shared fakes for tests that do not need a live database.

``FakeIntrospector`` serves canned catalog data with the same async API as
``SchemaIntrospector``.  ``FakeClient`` implements the ``DatabaseClient``
protocol over in-memory rows.
"""

from typing import Any

import pytest

from db_porter.schema.models import (
    ColumnSchema,
    ConstraintSchema,
    ConstraintType,
    EnumTypeSchema,
    FunctionSchema,
    IndexSchema,
    TriggerSchema,
)


def col(name: str, udt_name: str = "text", **kwargs: Any) -> ColumnSchema:
    """Column shorthand; ``data_type`` follows from ``udt_name``."""
    data_type = "ARRAY" if udt_name.startswith("_") else kwargs.pop("data_type", udt_name)
    return ColumnSchema(name=name, data_type=data_type, udt_name=udt_name, **kwargs)


class FakeIntrospector:
    """In-memory stand-in for ``SchemaIntrospector``.

    Args:
        columns: ``{table: [ColumnSchema, ...]}``; its keys are the tables.
        edges: ``(child, parent)`` foreign key pairs.
        constraints: ``{table: [ConstraintSchema, ...]}``.
        indexes: ``{table: [IndexSchema, ...]}``.
        failing: ``{table: exception}`` raised by ``get_columns``.
    """

    def __init__(
        self,
        columns: dict[str, list[ColumnSchema]] | None = None,
        edges: list[tuple[str, str]] | None = None,
        constraints: dict[str, list[ConstraintSchema]] | None = None,
        indexes: dict[str, list[IndexSchema]] | None = None,
        extensions: list[str] | None = None,
        enum_types: list[EnumTypeSchema] | None = None,
        functions: list[FunctionSchema] | None = None,
        triggers: list[TriggerSchema] | None = None,
        failing: dict[str, Exception] | None = None,
    ) -> None:
        self.columns = columns or {}
        self.edges = edges or []
        self.constraints = constraints or {}
        self.indexes = indexes or {}
        self.extensions = extensions or []
        self.enum_types = enum_types or []
        self.functions = functions or []
        self.triggers = triggers or []
        self.failing = failing or {}
        self.is_connected = True
        self.schema_name = "public"

    async def test_connection(self) -> bool:
        return True

    async def get_server_version(self) -> str:
        return "PostgreSQL 16.2"

    async def list_tables(self) -> list[str]:
        return sorted(self.columns)

    async def get_foreign_key_edges(self) -> list[tuple[str, str]]:
        return list(self.edges)

    async def get_extensions(self) -> list[str]:
        return list(self.extensions)

    async def get_enum_types(self) -> list[EnumTypeSchema]:
        return list(self.enum_types)

    async def get_functions(self) -> list[FunctionSchema]:
        return list(self.functions)

    async def get_triggers(self) -> list[TriggerSchema]:
        return list(self.triggers)

    async def get_columns(self, table_name: str) -> list[ColumnSchema]:
        if table_name in self.failing:
            raise self.failing[table_name]
        return list(self.columns.get(table_name, []))

    async def get_column_names(self) -> dict[str, set[str]]:
        return {t: {c.name for c in cols} for t, cols in self.columns.items()}

    async def get_constraints(self, table_name: str) -> list[ConstraintSchema]:
        return list(self.constraints.get(table_name, []))

    async def get_primary_key(self, table_name: str) -> list[str]:
        for constraint in self.constraints.get(table_name, []):
            if constraint.constraint_type == ConstraintType.PRIMARY_KEY:
                return constraint.columns
        return []

    async def get_indexes(self, table_name: str) -> list[IndexSchema]:
        return list(self.indexes.get(table_name, []))


class FakeClient:
    """``DatabaseClient`` over ``{table: [row, ...]}``; records every select."""

    def __init__(self, rows: dict[str, list[dict]] | None = None) -> None:
        self.rows = rows or {}
        self.selects: list[dict[str, Any]] = []
        self.closed = False

    async def select(
        self,
        table: str,
        columns: str,
        order_by: str | None = None,
    ) -> list[dict]:
        self.selects.append({"table": table, "columns": columns, "order_by": order_by})
        return [dict(row) for row in self.rows.get(table.strip('"'), [])]

    async def test_connection(self) -> bool:
        return True

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def blog_schema() -> FakeIntrospector:
    """users <- posts <- comments, with a serial key and a check constraint."""
    return FakeIntrospector(
        columns={
            "users": [
                col("id", "int4", is_nullable=False,
                    default="nextval('users_id_seq'::regclass)"),
                col("email", "varchar", max_length=255, is_nullable=False),
                col("status", "varchar", max_length=20, default="'active'::character varying"),
                col("created_at", "timestamptz", default="now()"),
            ],
            "posts": [
                col("id", "uuid", is_nullable=False, default="gen_random_uuid()"),
                col("user_id", "int4", is_nullable=False),
                col("title", "text"),
                col("tags", "_text", element_type="text"),
                col("meta", "jsonb", default="'{}'::jsonb"),
            ],
            "comments": [
                col("id", "int8", is_nullable=False, is_identity=True,
                    identity_generation="ALWAYS"),
                col("post_id", "uuid", is_nullable=False),
                col("body", "text"),
            ],
        },
        edges=[("posts", "users"), ("comments", "posts")],
        constraints={
            "users": [
                ConstraintSchema(name="users_pkey", constraint_type=ConstraintType.PRIMARY_KEY,
                                 definition="PRIMARY KEY (id)", columns=["id"]),
                ConstraintSchema(name="users_email_key", constraint_type=ConstraintType.UNIQUE,
                                 definition="UNIQUE (email)", columns=["email"]),
            ],
            "posts": [
                ConstraintSchema(name="posts_pkey", constraint_type=ConstraintType.PRIMARY_KEY,
                                 definition="PRIMARY KEY (id)", columns=["id"]),
                ConstraintSchema(
                    name="posts_user_id_fkey",
                    constraint_type=ConstraintType.FOREIGN_KEY,
                    definition="FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE",
                    columns=["user_id"],
                ),
            ],
            "comments": [
                ConstraintSchema(name="comments_pkey", constraint_type=ConstraintType.PRIMARY_KEY,
                                 definition="PRIMARY KEY (id)", columns=["id"]),
                ConstraintSchema(
                    name="comments_post_id_fkey",
                    constraint_type=ConstraintType.FOREIGN_KEY,
                    definition="FOREIGN KEY (post_id) REFERENCES posts(id)",
                    columns=["post_id"],
                ),
                ConstraintSchema(name="comments_body_check", constraint_type=ConstraintType.CHECK,
                                 definition="CHECK ((length(body) > 0))", columns=["body"]),
            ],
        },
        indexes={
            "users": [
                IndexSchema(name="users_pkey",
                            definition="CREATE UNIQUE INDEX users_pkey ON public.users USING btree (id)"),
                IndexSchema(name="users_email_key",
                            definition="CREATE UNIQUE INDEX users_email_key ON public.users USING btree (email)"),
                IndexSchema(name="idx_users_created_at",
                            definition="CREATE INDEX idx_users_created_at ON public.users USING btree (created_at)"),
            ],
        },
        extensions=["pgcrypto", "uuid-ossp"],
        enum_types=[EnumTypeSchema(name="post_state", labels=["draft", "published"])],
        functions=[
            FunctionSchema(
                name="touch",
                definition=(
                    "CREATE OR REPLACE FUNCTION public.touch()\n RETURNS trigger\n"
                    " LANGUAGE plpgsql\nAS $function$\nBEGIN\n"
                    "  NEW.created_at := now();\n  RETURN NEW;\nEND;\n$function$\n"
                ),
            )
        ],
        triggers=[
            TriggerSchema(
                name="users_touch",
                table="users",
                definition=(
                    "CREATE TRIGGER users_touch BEFORE INSERT ON public.users "
                    "FOR EACH ROW EXECUTE FUNCTION touch()"
                ),
            )
        ],
    )

"""Pydantic models for database configuration."""

from pydantic import BaseModel, Field


# ============================================================================
# Configuration Models
# ============================================================================


class DatabaseProfile(BaseModel):
    """Database connection profile from db.toml."""

    url: str
    description: str = ""
    db_password: str | None = None  # For [YOUR-PASSWORD] placeholder substitution


class DumpSettings(BaseModel):
    """The ``[dump]`` section of db.toml.

    Example:
        >>> DumpSettings().schema_name
        'public'
    """

    schema_name: str = "public"
    excluded_tables: list[str] | None = None  # None -> introspector defaults
    order_by: dict[str, list[str]] = Field(default_factory=dict)  # per-table overrides


class DatabaseConfig(BaseModel):
    """Complete database configuration from db.toml."""

    profiles: dict[str, DatabaseProfile]
    dump: DumpSettings = Field(default_factory=DumpSettings)

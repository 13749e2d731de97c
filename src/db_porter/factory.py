"""Profile resolution and connection factory.

Resolves db.toml profiles to connection URLs and opens the two kinds of
connections the porter uses:

- a psycopg ``AsyncConnection`` (autocommit) for catalog reads and replay
- an ``AsyncPostgresAdapter`` (SQLAlchemy + asyncpg pool) for row access

Usage:
    from db_porter.factory import resolve_profile_url, open_connection

    url = resolve_profile_url("local")
    conn = await open_connection(url)
"""

import logging
import os
from pathlib import Path
from urllib.parse import quote

import psycopg
from psycopg import AsyncConnection
from sqlalchemy.engine import make_url

from db_porter.adapters.postgres import AsyncPostgresAdapter
from db_porter.config.loader import load_db_config
from db_porter.config.models import DatabaseConfig, DatabaseProfile

logger = logging.getLogger(__name__)


class ProfileNotFoundError(Exception):
    """Raised when no database profile is selected."""

    pass


# ============================================================================
# Profile resolution
# ============================================================================


def get_active_profile_name(env_prefix: str = "") -> str:
    """Get the default profile name from ``{env_prefix}DB_PROFILE``.

    Args:
        env_prefix: Prefix for the environment variable (``"APP_"`` reads
            ``APP_DB_PROFILE``).

    Returns:
        Profile name

    Raises:
        ProfileNotFoundError: If the variable is unset or empty
    """
    env_var = f"{env_prefix}DB_PROFILE"
    env_profile = os.environ.get(env_var)
    if env_profile:
        return env_profile

    raise ProfileNotFoundError(
        "No database profile selected.\n"
        f"Pass the profile explicitly or set {env_var}=<name>."
    )


def get_profile(profile_name: str, config: DatabaseConfig) -> DatabaseProfile:
    """Look up *profile_name* in *config*.

    Raises:
        KeyError: If the profile is not defined
    """
    if profile_name not in config.profiles:
        available = ", ".join(config.profiles.keys())
        raise KeyError(
            f"Profile '{profile_name}' not found in db.toml. "
            f"Available: {available}"
        )
    return config.profiles[profile_name]


def resolve_url(profile: DatabaseProfile) -> str:
    """Resolve profile URL with password substitution.

    Args:
        profile: Database profile from config

    Returns:
        Connection URL with ``[YOUR-PASSWORD]`` replaced by the URL-encoded
        ``db_password``

    Example:
        >>> resolve_url(DatabaseProfile(url="postgresql://u:[YOUR-PASSWORD]@h/db",
        ...                             db_password="p@ss"))
        'postgresql://u:p%40ss@h/db'
    """
    url = profile.url
    if profile.db_password and "[YOUR-PASSWORD]" in url:
        url = url.replace("[YOUR-PASSWORD]", quote(profile.db_password, safe=""))
    return url


def resolve_profile_url(
    profile_name: str,
    config: DatabaseConfig | None = None,
    config_path: Path | None = None,
) -> str:
    """Load db.toml (unless *config* is given) and resolve a profile's URL."""
    if config is None:
        config = load_db_config(config_path)
    return resolve_url(get_profile(profile_name, config))


def to_libpq_url(database_url: str) -> str:
    """Strip a SQLAlchemy driver suffix so libpq accepts the URL.

    Example:
        >>> to_libpq_url("postgresql+asyncpg://u@h/db")
        'postgresql://u@h/db'
    """
    scheme, sep, rest = database_url.partition("://")
    if sep and "+" in scheme:
        return f"{scheme.split('+', 1)[0]}://{rest}"
    return database_url


def maintenance_url(database_url: str, admin_database: str = "postgres") -> tuple[str, str]:
    """Split *database_url* into a maintenance-database URL and the target name.

    Creating or dropping a database needs a connection to some other
    database on the same server.

    Raises:
        ValueError: If the URL names no database.

    Example:
        >>> maintenance_url("postgresql://u:p@h:5432/app")
        ('postgresql://u:p@h:5432/postgres', 'app')
    """
    url = make_url(to_libpq_url(database_url))
    if not url.database:
        raise ValueError(f"No database name in URL: {url.render_as_string()}")
    admin = url.set(database=admin_database).render_as_string(hide_password=False)
    return admin, url.database


# ============================================================================
# Connections
# ============================================================================


async def open_connection(database_url: str, connect_timeout: int = 10) -> AsyncConnection:
    """Open an autocommit psycopg connection for replaying statements.

    Raises:
        ConnectionError: If the database cannot be reached
    """
    try:
        return await psycopg.AsyncConnection.connect(
            to_libpq_url(database_url),
            connect_timeout=connect_timeout,
            autocommit=True,
        )
    except psycopg.OperationalError as e:
        raise ConnectionError(f"Could not connect to database: {e}") from e


def get_adapter(database_url: str, **engine_kwargs) -> AsyncPostgresAdapter:
    """Create an ``AsyncPostgresAdapter`` for *database_url*.

    The engine connects lazily; connection errors surface on first use.
    """
    logger.debug("Creating adapter for %s", database_url.split("@")[-1])
    return AsyncPostgresAdapter(database_url, **engine_kwargs)

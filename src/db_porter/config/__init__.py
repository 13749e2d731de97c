"""Configuration management: profiles, TOML loading, and config models.

Usage:
    >>> from db_porter.config import load_db_config, DatabaseProfile, DatabaseConfig
"""

from db_porter.config.loader import load_db_config
from db_porter.config.models import DatabaseConfig, DatabaseProfile, DumpSettings

__all__ = ["load_db_config", "DatabaseConfig", "DatabaseProfile", "DumpSettings"]

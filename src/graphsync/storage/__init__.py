"""Destination database backends."""

from ..config.models import DatabaseConfig
from .base import StorageBackend, kind_from_type
from .sqlite import SQLiteBackend
from .postgres import PostgresBackend
from .mssql import MSSQLBackend


def create_backend(config: DatabaseConfig) -> StorageBackend:
    """Instantiate the backend selected by ``config.backend``."""
    if config.backend == "sqlite":
        return SQLiteBackend(config.sqlite_path)
    if config.backend == "postgres":
        return PostgresBackend(config.get_sqlalchemy_url(), connect_timeout=config.connection_timeout)
    if config.backend == "mssql":
        return MSSQLBackend(config.get_sqlalchemy_url(), connection_timeout=config.connection_timeout)
    raise ValueError(f"Unsupported backend: {config.backend}")


__all__ = [
    "StorageBackend",
    "SQLiteBackend",
    "PostgresBackend",
    "MSSQLBackend",
    "create_backend",
    "kind_from_type",
]

"""SQLite destination backend."""

from datetime import datetime
from pathlib import Path
from typing import Any, Union
from sqlalchemy import event
from sqlalchemy import types as sqltypes
from sqlalchemy.dialects.sqlite.base import SQLiteDialect
from sqlalchemy.engine import Engine

from ..pipeline.schema import ColumnKind
from .base import OnConflictBackend

SQLITE_TYPES = {
    # DATETIME reflects back as a date-time type; values are stored as ISO-8601 text
    ColumnKind.TIMESTAMP: sqltypes.DATETIME,
    ColumnKind.JSON: sqltypes.Text,
    ColumnKind.INTEGER: sqltypes.BigInteger,
    ColumnKind.FLOAT: sqltypes.Float,
    ColumnKind.TEXT: sqltypes.Text,
}


class SQLiteBackend(OnConflictBackend):
    """File-backed SQLite database in WAL mode."""

    name = "sqlite"
    typed_columns_accept_text = True

    def __init__(self, path: Union[str, Path], busy_timeout: int = 30):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        super().__init__(
            f"sqlite:///{self.path}",
            connect_args={"check_same_thread": False, "timeout": busy_timeout},
        )

    def _configure_engine(self, engine: Engine) -> None:
        @event.listens_for(engine, "connect")
        def _set_pragmas(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.close()

    def ddl_dialect(self):
        return SQLiteDialect()

    def column_type(self, kind: ColumnKind) -> sqltypes.TypeEngine:
        return SQLITE_TYPES[kind]()

    def to_db_value(self, kind: ColumnKind, value: Any) -> Any:
        if isinstance(value, datetime):
            return value.isoformat()
        return value

"""Backend-agnostic storage interface over a SQLAlchemy engine."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional
from sqlalchemy import create_engine, inspect, text
from sqlalchemy import types as sqltypes
from sqlalchemy.engine import Dialect, Engine
from sqlalchemy.exc import SQLAlchemyError
import structlog

from ..errors import SchemaError, WriteError
from ..pipeline.schema import (
    ColumnDef,
    ColumnKind,
    FIRST_SEEN_COLUMN,
    HASH_COLUMN,
    KEY_COLUMN,
    LAST_SEEN_COLUMN,
)
from ..utils.validation import ValidationError, validate_database_connectivity

logger = structlog.get_logger(__name__)


def kind_from_type(column_type: sqltypes.TypeEngine) -> ColumnKind:
    """Map a reflected SQLAlchemy type back to a column kind."""
    if isinstance(column_type, sqltypes.DateTime):
        return ColumnKind.TIMESTAMP
    if isinstance(column_type, sqltypes.Integer):
        return ColumnKind.INTEGER
    if isinstance(column_type, (sqltypes.Float, sqltypes.Numeric)):
        return ColumnKind.FLOAT
    return ColumnKind.TEXT


class StorageBackend(ABC):
    """
    One destination database.

    Subclasses provide the DDL type mapping and the upsert statement for
    their dialect; everything else is shared. DDL is compiled with
    ``ddl_dialect`` so statements can be generated without a live
    connection.
    """

    name = "base"
    # whether a typed column can hold a text value that does not fit its type
    typed_columns_accept_text = False

    def __init__(self, url: str, **engine_kwargs):
        self.url = url
        self.engine_kwargs = engine_kwargs
        self._engine: Optional[Engine] = None
        self._dialect: Optional[Dialect] = None

    @property
    def engine(self) -> Engine:
        """Get or create SQLAlchemy engine."""
        if self._engine is None:
            self._engine = create_engine(
                self.url,
                echo=False,
                pool_pre_ping=True,
                pool_recycle=3600,
                **self.engine_kwargs
            )
            self._configure_engine(self._engine)
        return self._engine

    def _configure_engine(self, engine: Engine) -> None:
        pass

    @abstractmethod
    def ddl_dialect(self) -> Dialect:
        """Dialect used to compile DDL types and quote identifiers."""

    @property
    def dialect(self) -> Dialect:
        if self._dialect is None:
            self._dialect = self.ddl_dialect()
        return self._dialect

    def quote(self, name: str) -> str:
        return self.dialect.identifier_preparer.quote(name)

    @abstractmethod
    def column_type(self, kind: ColumnKind) -> sqltypes.TypeEngine:
        """DDL type for a column kind."""

    def key_type(self) -> sqltypes.TypeEngine:
        return sqltypes.Text()

    def hash_type(self) -> sqltypes.TypeEngine:
        return sqltypes.String(64)

    def type_sql(self, column_type: sqltypes.TypeEngine) -> str:
        return column_type.compile(dialect=self.dialect)

    def to_db_value(self, kind: ColumnKind, value: Any) -> Any:
        """Driver-ready parameter for an already coerced value."""
        return value

    # DDL

    def create_table_sql(self, table: str) -> str:
        timestamp = self.type_sql(self.column_type(ColumnKind.TIMESTAMP))
        return (
            f"CREATE TABLE IF NOT EXISTS {self.quote(table)} ("
            f"{self.quote(KEY_COLUMN)} {self.type_sql(self.key_type())} NOT NULL PRIMARY KEY, "
            f"{self.quote(HASH_COLUMN)} {self.type_sql(self.hash_type())} NOT NULL, "
            f"{self.quote(FIRST_SEEN_COLUMN)} {timestamp} NOT NULL, "
            f"{self.quote(LAST_SEEN_COLUMN)} {timestamp} NOT NULL)"
        )

    def add_column_sql(self, table: str, column: ColumnDef) -> str:
        null_sql = "NULL" if column.nullable else "NOT NULL"
        return (
            f"ALTER TABLE {self.quote(table)} ADD COLUMN {self.quote(column.name)} "
            f"{self.type_sql(self.column_type(column.kind))} {null_sql}"
        )

    def _execute_ddl(self, table: str, statement: str) -> None:
        try:
            with self.engine.begin() as conn:
                conn.execute(text(statement))
        except SQLAlchemyError as e:
            raise SchemaError(f"DDL failed on {table}: {e}", table=table, statement=statement) from e
        logger.debug("Executed DDL", backend=self.name, table_name=table, statement=statement)

    def ensure_table(self, table: str) -> None:
        """Create ``table`` with the key, hash and seen-at columns if it does not exist."""
        self._execute_ddl(table, self.create_table_sql(table))

    def ensure_column(self, table: str, column: ColumnDef) -> None:
        """
        Add one column.

        A failure is tolerated when the column turns out to exist already,
        e.g. added by another process.

        Raises:
            SchemaError: If the column could not be added
        """
        try:
            self._execute_ddl(table, self.add_column_sql(table, column))
        except SchemaError:
            existing = self.list_columns(table) or []
            if any(c.name.lower() == column.name.lower() for c in existing):
                logger.info("Column already present", table_name=table, column=column.name)
                return
            raise

    def list_columns(self, table: str) -> Optional[List[ColumnDef]]:
        """
        Reflect the columns of ``table``.

        Returns:
            Column definitions in ordinal order, or None if the table does not exist

        Raises:
            SchemaError: If the database cannot be inspected
        """
        try:
            inspector = inspect(self.engine)
            if not inspector.has_table(table):
                return None
            return [
                ColumnDef(column["name"], kind_from_type(column["type"]), column.get("nullable", True))
                for column in inspector.get_columns(table)
            ]
        except SQLAlchemyError as e:
            raise SchemaError(f"Failed to inspect {table}: {e}", table=table) from e

    # DML

    def fetch_row(self, table: str, key: str) -> Optional[Dict[str, Any]]:
        """Stored row for ``key`` as a column mapping, or None."""
        statement = f"SELECT * FROM {self.quote(table)} WHERE {self.quote(KEY_COLUMN)} = :key"
        try:
            with self.engine.connect() as conn:
                row = conn.execute(text(statement), {"key": key}).mappings().first()
        except SQLAlchemyError as e:
            raise WriteError(f"Failed to read {table} row: {e}", table=table, key=key) from e
        return dict(row) if row is not None else None

    @abstractmethod
    def upsert_row(self, table: str, row: Dict[str, Any]) -> None:
        """
        Insert ``row`` or overwrite the stored row with the same key.

        ``first_seen_at`` is only written on insert.

        Raises:
            WriteError: On constraint violation or lost connection
        """

    def touch_row(self, table: str, key: str, seen_at: datetime) -> None:
        """Refresh ``last_seen_at`` for an unchanged row."""
        statement = (
            f"UPDATE {self.quote(table)} SET {self.quote(LAST_SEEN_COLUMN)} = :seen_at "
            f"WHERE {self.quote(KEY_COLUMN)} = :key"
        )
        params = {"seen_at": self.to_db_value(ColumnKind.TIMESTAMP, seen_at), "key": key}
        try:
            with self.engine.begin() as conn:
                conn.execute(text(statement), params)
        except (SQLAlchemyError, OverflowError) as e:
            raise WriteError(f"Failed to touch {table} row: {e}", table=table, key=key) from e

    def _bind(self, row: Dict[str, Any]) -> Dict[str, Any]:
        """Positional parameter names, since column names need not be valid bind names."""
        return {f"p{index}": value for index, value in enumerate(row.values())}

    def count_rows(self, table: str) -> int:
        with self.engine.connect() as conn:
            return conn.execute(text(f"SELECT COUNT(*) FROM {self.quote(table)}")).scalar_one()

    def health_check(self) -> bool:
        try:
            return validate_database_connectivity(self.engine)
        except ValidationError as e:
            logger.error("Database health check failed", backend=self.name, error=str(e))
            return False

    def dispose(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None


class OnConflictBackend(StorageBackend):
    """Backends supporting ``INSERT .. ON CONFLICT (key) DO UPDATE``."""

    def upsert_sql(self, table: str, columns: List[str]) -> str:
        quoted = [self.quote(column) for column in columns]
        placeholders = [f":p{index}" for index in range(len(columns))]
        updates = [
            f"{quoted_name} = excluded.{quoted_name}"
            for column, quoted_name in zip(columns, quoted)
            if column not in (KEY_COLUMN, FIRST_SEEN_COLUMN)
        ]
        return (
            f"INSERT INTO {self.quote(table)} ({', '.join(quoted)}) "
            f"VALUES ({', '.join(placeholders)}) "
            f"ON CONFLICT ({self.quote(KEY_COLUMN)}) DO UPDATE SET {', '.join(updates)}"
        )

    def upsert_row(self, table: str, row: Dict[str, Any]) -> None:
        statement = self.upsert_sql(table, list(row))
        try:
            with self.engine.begin() as conn:
                conn.execute(text(statement), self._bind(row))
        except (SQLAlchemyError, OverflowError) as e:
            raise WriteError(
                f"Failed to upsert into {table}: {e}", table=table, key=row.get(KEY_COLUMN)
            ) from e

"""PostgreSQL destination backend."""

from sqlalchemy import types as sqltypes
from sqlalchemy.dialects import postgresql
from sqlalchemy.dialects.postgresql.base import PGDialect

from ..pipeline.schema import ColumnDef, ColumnKind
from .base import OnConflictBackend


class PostgresBackend(OnConflictBackend):
    """PostgreSQL through psycopg 3."""

    name = "postgres"

    def __init__(self, url: str, connect_timeout: int = 30):
        super().__init__(url, connect_args={"connect_timeout": connect_timeout})

    def ddl_dialect(self):
        return PGDialect()

    def column_type(self, kind: ColumnKind) -> sqltypes.TypeEngine:
        if kind is ColumnKind.TIMESTAMP:
            return postgresql.TIMESTAMP(timezone=True)
        if kind is ColumnKind.INTEGER:
            return sqltypes.BigInteger()
        if kind is ColumnKind.FLOAT:
            return postgresql.DOUBLE_PRECISION()
        return sqltypes.Text()

    def add_column_sql(self, table: str, column: ColumnDef) -> str:
        return super().add_column_sql(table, column).replace(
            " ADD COLUMN ", " ADD COLUMN IF NOT EXISTS ", 1
        )

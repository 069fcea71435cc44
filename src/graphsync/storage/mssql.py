"""SQL Server destination backend."""

from datetime import datetime
from typing import Any, Dict
from sqlalchemy import text
from sqlalchemy import types as sqltypes
from sqlalchemy.dialects import mssql
from sqlalchemy.dialects.mssql.base import MSDialect
from sqlalchemy.exc import SQLAlchemyError

from ..errors import WriteError
from ..pipeline.schema import ColumnDef, ColumnKind, FIRST_SEEN_COLUMN, KEY_COLUMN
from .base import StorageBackend


class MSSQLBackend(StorageBackend):
    """
    SQL Server through pyodbc.

    SQL Server has no ``ON CONFLICT``; rows are written with an UPDATE
    followed by an INSERT when no row matched, inside one transaction.
    """

    name = "mssql"

    def __init__(self, url: str, connection_timeout: int = 30):
        super().__init__(url, connect_args={"timeout": connection_timeout})

    def ddl_dialect(self):
        return MSDialect()

    def column_type(self, kind: ColumnKind) -> sqltypes.TypeEngine:
        if kind is ColumnKind.TIMESTAMP:
            return mssql.DATETIMEOFFSET()
        if kind is ColumnKind.INTEGER:
            return sqltypes.BigInteger()
        if kind is ColumnKind.FLOAT:
            return sqltypes.Float()
        # NVARCHAR without a length compiles to NVARCHAR(max)
        return mssql.NVARCHAR()

    def key_type(self) -> sqltypes.TypeEngine:
        return mssql.NVARCHAR(255)

    def hash_type(self) -> sqltypes.TypeEngine:
        return mssql.NCHAR(64)

    def to_db_value(self, kind: ColumnKind, value: Any) -> Any:
        if isinstance(value, datetime):
            return value.isoformat()
        return value

    def create_table_sql(self, table: str) -> str:
        create = super().create_table_sql(table).replace("CREATE TABLE IF NOT EXISTS", "CREATE TABLE", 1)
        literal = table.replace("'", "''")
        return f"IF OBJECT_ID(N'{literal}', N'U') IS NULL {create}"

    def add_column_sql(self, table: str, column: ColumnDef) -> str:
        # T-SQL has no COLUMN keyword in ALTER TABLE .. ADD
        return super().add_column_sql(table, column).replace(" ADD COLUMN ", " ADD ", 1)

    def upsert_row(self, table: str, row: Dict[str, Any]) -> None:
        columns = list(row)
        quoted = {column: self.quote(column) for column in columns}
        assignments = ", ".join(
            f"{quoted[column]} = :p{index}"
            for index, column in enumerate(columns)
            if column not in (KEY_COLUMN, FIRST_SEEN_COLUMN)
        )
        key_index = columns.index(KEY_COLUMN)
        update = (
            f"UPDATE {self.quote(table)} SET {assignments} "
            f"WHERE {self.quote(KEY_COLUMN)} = :p{key_index}"
        )
        insert = (
            f"INSERT INTO {self.quote(table)} ({', '.join(quoted.values())}) "
            f"VALUES ({', '.join(f':p{index}' for index in range(len(columns)))})"
        )
        params = self._bind(row)

        try:
            with self.engine.begin() as conn:
                result = conn.execute(text(update), params)
                if result.rowcount == 0:
                    conn.execute(text(insert), params)
        except (SQLAlchemyError, OverflowError) as e:
            raise WriteError(
                f"Failed to upsert into {table}: {e}", table=table, key=row.get(KEY_COLUMN)
            ) from e

"""Column-kind inference and additive schema evolution for destination tables."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple
import math
import re
import threading
import structlog

from ..utils.logging import SyncLogger
from .values import Value, ValueKind, decode, parse_timestamp

logger = structlog.get_logger(__name__)

TIMESTAMP_NAME_PARTS = ("date", "time", "created", "updated", "modified", "enrolled", "last_sync")
TIMESTAMP_NAME_SUFFIXES = ("_at", "_on")

KEY_COLUMN = "id"
HASH_COLUMN = "content_hash"
FIRST_SEEN_COLUMN = "first_seen_at"
LAST_SEEN_COLUMN = "last_seen_at"
SYSTEM_COLUMNS = (KEY_COLUMN, HASH_COLUMN, FIRST_SEEN_COLUMN, LAST_SEEN_COLUMN)
SOURCE_PREFIX = "src_"
RAW_SUFFIX = "_raw"

INT64_MIN = -(2 ** 63)
INT64_MAX = 2 ** 63 - 1

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


class ColumnKind(str, Enum):
    TIMESTAMP = "timestamp"
    JSON = "json"
    INTEGER = "integer"
    FLOAT = "float"
    TEXT = "text"


@dataclass(frozen=True)
class ColumnDef:
    name: str
    kind: ColumnKind
    nullable: bool = True


@dataclass
class SchemaDiff:
    """Changes made by one ``ensure_schema`` call."""

    table: str
    created_table: bool = False
    added_columns: List[ColumnDef] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return self.created_table or bool(self.added_columns)


def column_name_for(field_name: str) -> str:
    """Destination column for a record field; system column names get a ``src_`` prefix."""
    if field_name.lower() in SYSTEM_COLUMNS:
        return SOURCE_PREFIX + field_name
    return field_name


def raw_column_name(column_name: str) -> str:
    """TEXT companion holding values a typed column cannot."""
    return column_name + RAW_SUFFIX


def fits_int64(number: int) -> bool:
    return INT64_MIN <= number <= INT64_MAX


def is_timestamp_name(name: str) -> bool:
    lowered = name.lower()
    snake = _CAMEL_BOUNDARY.sub("_", name).lower()
    if any(part in lowered or part in snake for part in TIMESTAMP_NAME_PARTS):
        return True
    return snake.endswith(TIMESTAMP_NAME_SUFFIXES)


def infer_column_kind(name: str, values: Iterable[Any]) -> ColumnKind:
    """
    Infer a column kind from every observed value of one field.

    Nulls are ignored. A timestamp-like name only decides the kind when
    every value is null; once values are seen they win over the name.
    Values that are all ISO-8601 timestamps yield TIMESTAMP whatever the
    name. Numeric strings stay TEXT, as do integers outside the signed
    64-bit range.
    """
    observed = [value for value in (decode(raw) for raw in values) if not value.is_null]

    if not observed:
        return ColumnKind.TIMESTAMP if is_timestamp_name(name) else ColumnKind.TEXT
    if all(value.kind is ValueKind.TIMESTAMP for value in observed):
        return ColumnKind.TIMESTAMP
    if any(value.is_structured for value in observed):
        return ColumnKind.JSON
    if any(value.kind is ValueKind.INT and not fits_int64(value.raw) for value in observed):
        return ColumnKind.TEXT
    if all(value.kind in (ValueKind.INT, ValueKind.BOOL) for value in observed):
        return ColumnKind.INTEGER
    if all(value.is_numeric for value in observed):
        return ColumnKind.FLOAT
    return ColumnKind.TEXT


def infer_columns(records: Iterable[Dict[str, Any]]) -> Dict[str, ColumnDef]:
    """Column definitions for every field seen in ``records``, in first-seen order."""
    samples: Dict[str, List[Any]] = {}
    for record in records:
        for field_name, raw in record.items():
            samples.setdefault(column_name_for(field_name), []).append(raw)
    return {
        name: ColumnDef(name, infer_column_kind(name, values))
        for name, values in samples.items()
    }


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class UnconvertibleValue(ValueError):
    """A value that does not fit its column's kind, carrying its text form."""

    def __init__(self, kind: ColumnKind, value: Value):
        self.kind = kind
        self.text = value.raw if isinstance(value.raw, str) else value.canonical()
        super().__init__(f"{value.kind.value} value does not fit a {kind.value} column")


def coerce_for_column(kind: ColumnKind, raw: Any) -> Any:
    """
    Convert a value for storage in a column of ``kind``.

    Columns are never re-typed. Text and JSON columns accept anything as
    text.

    Raises:
        UnconvertibleValue: If a timestamp or numeric column cannot hold the value
    """
    value = decode(raw)
    if value.is_null:
        return None

    if kind in (ColumnKind.TEXT, ColumnKind.JSON):
        if isinstance(raw, str):
            return raw
        return value.canonical()

    if kind is ColumnKind.TIMESTAMP:
        if isinstance(raw, datetime):
            return _as_utc(raw)
        if isinstance(raw, str):
            parsed = parse_timestamp(raw)
            if parsed is not None:
                return _as_utc(parsed)
        raise UnconvertibleValue(kind, value)

    if kind is ColumnKind.INTEGER:
        if value.kind is ValueKind.BOOL:
            return int(raw)
        if value.kind is ValueKind.INT and fits_int64(raw):
            return raw
        if value.kind is ValueKind.FLOAT and math.isfinite(raw) and raw.is_integer() and fits_int64(int(raw)):
            return int(raw)
        raise UnconvertibleValue(kind, value)

    if kind is ColumnKind.FLOAT:
        if value.kind is ValueKind.INT and not fits_int64(raw):
            raise UnconvertibleValue(kind, value)
        if value.is_numeric:
            return float(raw)
        raise UnconvertibleValue(kind, value)

    raise UnconvertibleValue(kind, value)


class SchemaManager:
    """
    Creates destination tables and adds columns as new fields appear.

    Known columns are cached per (backend, table). Each cache entry is an
    immutable snapshot that is replaced, never mutated, so readers take no
    lock; additions for one table are serialized by a per-table lock.
    """

    def __init__(self, backend, sync_logger: Optional[SyncLogger] = None):
        self.backend = backend
        self.logger = sync_logger or SyncLogger(logger)
        self._cache: Dict[Tuple[str, str], Dict[str, ColumnDef]] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _key(self, table: str) -> Tuple[str, str]:
        return (self.backend.name, table.lower())

    def _table_lock(self, table: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(table.lower(), threading.Lock())

    def _publish(self, table: str, columns: Dict[str, ColumnDef]) -> None:
        self._cache[self._key(table)] = dict(columns)

    def columns(self, table: str) -> Optional[Dict[str, ColumnDef]]:
        """Cached columns keyed by lowercase name, or None if the table is unknown."""
        return self._cache.get(self._key(table))

    def preload(self, tables: Iterable[str]) -> int:
        """
        Load existing column sets into the cache.

        Args:
            tables: Destination tables to look up

        Returns:
            Number of tables found in the database

        Raises:
            SchemaError: If the database cannot be inspected
        """
        loaded = 0
        for table in tables:
            existing = self.backend.list_columns(table)
            if existing is None:
                continue
            self._publish(table, {column.name.lower(): column for column in existing})
            loaded += 1
        logger.debug("Schema cache preloaded", backend=self.backend.name, tables=loaded)
        return loaded

    def ensure_schema(self, table: str, sample_records: Iterable[Dict[str, Any]]) -> SchemaDiff:
        """
        Make sure ``table`` exists with a column for every field in the samples.

        Args:
            table: Destination table
            sample_records: Records about to be written

        Returns:
            What was created or added

        Raises:
            SchemaError: If DDL fails
        """
        return self.add_columns(table, infer_columns(sample_records).values())

    def add_columns(self, table: str, columns: Iterable[ColumnDef]) -> SchemaDiff:
        """Make sure ``table`` exists with the given columns, skipping known names."""
        wanted = {column.name: column for column in columns}
        known = self.columns(table)
        if known is not None and all(name.lower() in known for name in wanted):
            return SchemaDiff(table)

        diff = SchemaDiff(table)
        with self._table_lock(table):
            known = self.columns(table)
            if known is None:
                existing = self.backend.list_columns(table)
                if existing is None:
                    self.backend.ensure_table(table)
                    diff.created_table = True
                    existing = self.backend.list_columns(table) or []
                known = {column.name.lower(): column for column in existing}
                self._publish(table, known)

            current = dict(known)
            for name, column in wanted.items():
                if name.lower() in current:
                    continue
                self.backend.ensure_column(table, column)
                current[name.lower()] = column
                diff.added_columns.append(column)
                self._publish(table, current)

        self.logger.log_schema_change(
            table_name=table,
            created_table=diff.created_table,
            added_columns=[f"{column.name}:{column.kind.value}" for column in diff.added_columns],
        )
        return diff

    def invalidate(self, table: Optional[str] = None) -> None:
        """Forget cached columns for one table or all tables."""
        if table is None:
            self._cache = {}
        else:
            self._cache.pop(self._key(table), None)

"""Content-hash change detection and upsert of records."""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional, Tuple
import structlog

from ..errors import WriteError
from .schema import (
    ColumnDef,
    ColumnKind,
    FIRST_SEEN_COLUMN,
    HASH_COLUMN,
    KEY_COLUMN,
    LAST_SEEN_COLUMN,
    SYSTEM_COLUMNS,
    SchemaManager,
    UnconvertibleValue,
    column_name_for,
    coerce_for_column,
    raw_column_name,
)
from .values import content_hash

logger = structlog.get_logger(__name__)

SYNTHETIC_KEY_PREFIX = "syn-"


class WriteOutcome(str, Enum):
    INSERTED = "inserted"
    UPDATED = "updated"
    SKIPPED = "skipped"


@dataclass
class PreparedRecord:
    """A record with its key, content hash and destination column values."""

    key: str
    content_hash: str
    synthesized: bool
    fields: Dict[str, Any]


@dataclass
class BatchResult:
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    error: Optional[WriteError] = None

    def add(self, outcome: WriteOutcome) -> None:
        if outcome is WriteOutcome.INSERTED:
            self.inserted += 1
        elif outcome is WriteOutcome.UPDATED:
            self.updated += 1
        else:
            self.skipped += 1

    @property
    def written(self) -> int:
        return self.inserted + self.updated + self.skipped


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RecordWriter:
    """
    Decides insert, update or skip for each record of one endpoint.

    A record's content hash is the SHA-256 of its canonical form. Rows whose
    stored hash matches are left alone apart from ``last_seen_at``.
    """

    def __init__(
        self,
        backend,
        schema: SchemaManager,
        id_field: str = "id",
        touch_on_skip: bool = True,
        clock: Callable[[], datetime] = utc_now
    ):
        self.backend = backend
        self.schema = schema
        self.id_field = id_field
        self.touch_on_skip = touch_on_skip
        self._clock = clock
        self._cycle_hashes: Dict[Tuple[str, str], str] = {}

    def begin_cycle(self) -> None:
        """Forget synthesized keys seen during the previous cycle."""
        self._cycle_hashes = {}

    def prepare(self, record: Dict[str, Any]) -> PreparedRecord:
        """
        Derive key, hash and column values for a record.

        The key comes from ``id_field``; records without one get a
        deterministic ``syn-`` key hashed from the full record. When the
        identifier field is named ``id`` it fills the key column instead of
        being stored twice.

        Because a synthesized key embeds the content hash, records prepared
        here never collide under one. The collision checks in ``write`` only
        fire for rows whose ``syn-`` key and hash were written by something
        else, such as a hand-edited table or a caller building
        ``PreparedRecord`` directly.
        """
        digest = content_hash(record)

        identifier = record.get(self.id_field)
        if identifier is None or identifier == "":
            key, synthesized = SYNTHETIC_KEY_PREFIX + digest, True
        else:
            key, synthesized = str(identifier), False

        fields = {}
        for name, value in record.items():
            if name == self.id_field and name.lower() == KEY_COLUMN:
                continue
            fields[column_name_for(name)] = value
        return PreparedRecord(key=key, content_hash=digest, synthesized=synthesized, fields=fields)

    def upsert(self, table: str, record: Dict[str, Any]) -> WriteOutcome:
        """
        Write one record.

        Returns:
            INSERTED, UPDATED or SKIPPED

        Raises:
            WriteError: On constraint violation, lost connection or synthesized-key collision
        """
        return self.write(table, self.prepare(record))

    def write(self, table: str, prepared: PreparedRecord) -> WriteOutcome:
        columns = self.schema.columns(table)
        if columns is None or any(name.lower() not in columns for name in prepared.fields):
            self.schema.ensure_schema(table, [prepared.fields])
            columns = self.schema.columns(table)

        if prepared.synthesized:
            self._check_cycle_collision(table, prepared)

        stored = self.backend.fetch_row(table, prepared.key)
        now = self._clock()

        if stored is None:
            self.backend.upsert_row(table, self._build_row(table, prepared, columns, now))
            outcome = WriteOutcome.INSERTED
        elif stored.get(HASH_COLUMN) == prepared.content_hash:
            if self.touch_on_skip:
                self.backend.touch_row(table, prepared.key, now)
            outcome = WriteOutcome.SKIPPED
        else:
            if prepared.synthesized:
                raise WriteError(
                    f"Synthesized key collision in {table}: {prepared.key} already holds different content",
                    table=table,
                    key=prepared.key,
                )
            self.backend.upsert_row(table, self._build_row(table, prepared, columns, now))
            outcome = WriteOutcome.UPDATED

        if prepared.synthesized:
            self._cycle_hashes[(table, prepared.key)] = prepared.content_hash
        return outcome

    def write_batch(self, table: str, records: Iterable[PreparedRecord]) -> BatchResult:
        """
        Write records in order, stopping at the first ``WriteError``.

        Records written before the failure stay committed; the error is
        returned on the result rather than raised.
        """
        result = BatchResult()
        for prepared in records:
            try:
                result.add(self.write(table, prepared))
            except WriteError as e:
                logger.error("Record write failed, abandoning batch", table_name=table,
                             key=prepared.key, error=str(e))
                result.error = e
                break
        return result

    def _check_cycle_collision(self, table: str, prepared: PreparedRecord) -> None:
        seen = self._cycle_hashes.get((table, prepared.key))
        if seen is not None and seen != prepared.content_hash:
            raise WriteError(
                f"Synthesized key collision in {table} within one cycle: {prepared.key}",
                table=table,
                key=prepared.key,
            )

    def _build_row(self, table: str, prepared: PreparedRecord, columns: Dict[str, ColumnDef],
                   now: datetime) -> Dict[str, Any]:
        """
        Full row: system columns, then every known data column (NULL when absent).

        A value its column cannot hold is kept as text, in the column itself
        when the backend allows it, otherwise in a TEXT ``<column>_raw``
        companion added on demand.
        """
        seen_at = self.backend.to_db_value(ColumnKind.TIMESTAMP, now)
        row = {
            KEY_COLUMN: prepared.key,
            HASH_COLUMN: prepared.content_hash,
            FIRST_SEEN_COLUMN: seen_at,
            LAST_SEEN_COLUMN: seen_at,
        }
        values = {name.lower(): value for name, value in prepared.fields.items()}
        kept_as_text: Dict[str, str] = {}
        for lowered, column in columns.items():
            if lowered in SYSTEM_COLUMNS:
                continue
            try:
                coerced = coerce_for_column(column.kind, values.get(lowered))
            except UnconvertibleValue as e:
                logger.debug("Value kept as text", table_name=table, key=prepared.key,
                             column=column.name, column_kind=column.kind.value)
                if self.backend.typed_columns_accept_text:
                    row[column.name] = e.text
                else:
                    row[column.name] = None
                    kept_as_text[raw_column_name(column.name)] = e.text
                continue
            row[column.name] = self.backend.to_db_value(column.kind, coerced)

        if kept_as_text:
            self.schema.add_columns(table, [ColumnDef(name, ColumnKind.TEXT) for name in kept_as_text])
            columns = self.schema.columns(table)
            for name, text_value in kept_as_text.items():
                row[columns[name.lower()].name] = text_value
        return row

"""Fetch, schema evolution, change detection and orchestration."""

from .values import Value, ValueKind, decode, canonicalize, content_hash, parse_timestamp
from .filters import OsFilter, normalize_filter
from .fetcher import EndpointFetcher, Page, FetchStats, build_initial_url
from .schema import ColumnDef, ColumnKind, SchemaDiff, SchemaManager, infer_column_kind, coerce_for_column
from .writer import RecordWriter, WriteOutcome, BatchResult, PreparedRecord
from .events import EventType, SyncEvent, EventSink, LoggingEventSink, CollectingEventSink
from .orchestrator import (
    EndpointRunner,
    EndpointSchedule,
    EndpointState,
    SyncOrchestrator,
    SyncResult,
    build_orchestrator,
)

__all__ = [
    "Value",
    "ValueKind",
    "decode",
    "canonicalize",
    "content_hash",
    "parse_timestamp",
    "OsFilter",
    "normalize_filter",
    "EndpointFetcher",
    "Page",
    "FetchStats",
    "build_initial_url",
    "ColumnDef",
    "ColumnKind",
    "SchemaDiff",
    "SchemaManager",
    "infer_column_kind",
    "coerce_for_column",
    "RecordWriter",
    "WriteOutcome",
    "BatchResult",
    "PreparedRecord",
    "EventType",
    "SyncEvent",
    "EventSink",
    "LoggingEventSink",
    "CollectingEventSink",
    "EndpointRunner",
    "EndpointSchedule",
    "EndpointState",
    "SyncOrchestrator",
    "SyncResult",
    "build_orchestrator",
]

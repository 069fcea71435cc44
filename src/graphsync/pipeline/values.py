"""Typed view of decoded record values and their canonical serialization."""

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional
import hashlib
import json
import math
import re

_ISO_TIMESTAMP_RE = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})"
    r"(?:[T ](\d{2}):(\d{2})(?::(\d{2})(?:\.(\d+))?)?)?"
    r"(Z|[+-]\d{2}:?\d{2})?$",
    re.IGNORECASE,
)


class ValueKind(str, Enum):
    NULL = "null"
    BOOL = "bool"
    INT = "int"
    FLOAT = "float"
    TEXT = "text"
    TIMESTAMP = "timestamp"
    ARRAY = "array"
    OBJECT = "object"


@dataclass(frozen=True)
class Value:
    """A decoded JSON value tagged with its kind."""

    kind: ValueKind
    raw: Any

    @property
    def is_null(self) -> bool:
        return self.kind is ValueKind.NULL

    @property
    def is_structured(self) -> bool:
        return self.kind in (ValueKind.ARRAY, ValueKind.OBJECT)

    @property
    def is_numeric(self) -> bool:
        return self.kind in (ValueKind.BOOL, ValueKind.INT, ValueKind.FLOAT)

    def canonical(self) -> str:
        return canonicalize(self.raw)


def parse_timestamp(value: str) -> Optional[datetime]:
    """
    Parse an ISO-8601 date or date-time.

    Fractions beyond microseconds are truncated and values without an
    offset are taken as UTC. Returns ``None`` if ``value`` is not a
    timestamp.
    """
    match = _ISO_TIMESTAMP_RE.match(value.strip())
    if not match:
        return None

    year, month, day, hour, minute, second, fraction, offset = match.groups()
    tz = timezone.utc
    if offset and offset.upper() != "Z":
        sign = -1 if offset[0] == "-" else 1
        digits = offset[1:].replace(":", "")
        tz = timezone(sign * timedelta(hours=int(digits[:2]), minutes=int(digits[2:])))

    try:
        return datetime(
            int(year), int(month), int(day),
            int(hour or 0), int(minute or 0), int(second or 0),
            int((fraction or "0")[:6].ljust(6, "0")),
            tzinfo=tz,
        )
    except ValueError:
        return None


def decode(raw: Any) -> Value:
    """Tag a decoded JSON value with its kind."""
    if raw is None:
        return Value(ValueKind.NULL, None)
    # bool is a subclass of int
    if isinstance(raw, bool):
        return Value(ValueKind.BOOL, raw)
    if isinstance(raw, int):
        return Value(ValueKind.INT, raw)
    if isinstance(raw, float):
        return Value(ValueKind.FLOAT, raw)
    if isinstance(raw, (datetime, date)):
        return Value(ValueKind.TIMESTAMP, raw)
    if isinstance(raw, str):
        if parse_timestamp(raw) is not None:
            return Value(ValueKind.TIMESTAMP, raw)
        return Value(ValueKind.TEXT, raw)
    if isinstance(raw, (list, tuple)):
        return Value(ValueKind.ARRAY, list(raw))
    if isinstance(raw, dict):
        return Value(ValueKind.OBJECT, raw)
    return Value(ValueKind.TEXT, str(raw))


def _plain(raw: Any) -> Any:
    value = decode(raw)
    if value.kind is ValueKind.FLOAT:
        if math.isnan(raw) or math.isinf(raw):
            return repr(raw)
        # -0.0 and 0.0 hash the same
        return 0.0 if raw == 0 else raw
    if value.kind is ValueKind.TIMESTAMP and not isinstance(raw, str):
        return raw.isoformat()
    if value.kind is ValueKind.ARRAY:
        return [_plain(item) for item in value.raw]
    if value.kind is ValueKind.OBJECT:
        return {str(key): _plain(item) for key, item in value.raw.items()}
    return value.raw


def canonicalize(raw: Any) -> str:
    """
    Serialize a value deterministically.

    Object keys are sorted, numbers use Python's shortest round-trip repr,
    ``None`` is ``null`` and no insignificant whitespace is emitted, so two
    records with the same fields in a different order produce the same text.
    """
    return json.dumps(_plain(raw), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def content_hash(record: Dict[str, Any]) -> str:
    """SHA-256 hex digest of the canonical form of a record."""
    return hashlib.sha256(canonicalize(record).encode("utf-8")).hexdigest()

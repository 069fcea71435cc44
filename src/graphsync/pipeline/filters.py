"""Record-level operating system filtering."""

from typing import Any, Dict, Iterable, List, Optional
import structlog

logger = structlog.get_logger(__name__)

WILDCARD = "*"
UNKNOWN_OS = "unknown"
OS_FIELDS = ("operatingSystem", "osVersion")


def normalize_filter(raw: str) -> List[str]:
    """Split a comma-separated rule string into trimmed lowercase rules."""
    return [part.strip().lower() for part in raw.split(",") if part.strip()]


class OsFilter:
    """
    Case-insensitive substring match against a record's operating system.

    A rule set containing ``*`` (or no rules at all) admits every record.
    Records without an OS value are matched as ``unknown``.
    """

    def __init__(self, rules: Optional[Iterable[str]] = None):
        normalized: List[str] = []
        for rule in rules or []:
            normalized.extend(normalize_filter(rule))
        self.rules = normalized or [WILDCARD]
        self.matched = 0
        self.skipped = 0

    @property
    def allows_all(self) -> bool:
        return WILDCARD in self.rules

    @staticmethod
    def extract_os(record: Dict[str, Any]) -> str:
        for field in OS_FIELDS:
            value = record.get(field)
            if isinstance(value, str) and value.strip():
                return value.strip().lower()
        return UNKNOWN_OS

    def matches(self, record: Dict[str, Any]) -> bool:
        if self.allows_all:
            return True

        os_name = self.extract_os(record)
        matched = any(rule in os_name for rule in self.rules)
        if matched:
            self.matched += 1
        else:
            self.skipped += 1
        logger.debug(
            "OS filter evaluated",
            record_name=record.get("deviceName") or record.get("displayName"),
            operating_system=os_name,
            matched=matched,
        )
        return matched

    def __repr__(self) -> str:
        return f"OsFilter({self.rules!r})"

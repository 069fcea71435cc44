"""Typed sync events handed to external metrics and webhook collaborators."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
import structlog

logger = structlog.get_logger(__name__)


class EventType(str, Enum):
    SYNC_STARTED = "sync_started"
    SYNC_COMPLETED = "sync_completed"
    SYNC_FAILED = "sync_failed"
    DEVICES_UPDATED = "devices_updated"
    DATABASE_ERROR = "database_error"
    AUTHENTICATION_FAILED = "authentication_failed"


@dataclass(frozen=True)
class SyncEvent:
    event_type: EventType
    endpoint: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "endpoint": self.endpoint,
            "timestamp": self.timestamp.isoformat(),
            "data": dict(self.data),
            "error": self.error,
        }


class EventSink(ABC):
    """Receiver for sync events. Implementations must be thread-safe."""

    @abstractmethod
    def emit(self, event: SyncEvent) -> None:
        pass


class LoggingEventSink(EventSink):
    """Writes every event to the structured log."""

    def emit(self, event: SyncEvent) -> None:
        log = logger.warning if event.error else logger.info
        log("Sync event", **event.to_dict())


class CollectingEventSink(EventSink):
    """Keeps events in memory, e.g. for a status endpoint or tests."""

    def __init__(self):
        self.events: List[SyncEvent] = []

    def emit(self, event: SyncEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: EventType) -> List[SyncEvent]:
        return [event for event in self.events if event.event_type is event_type]


def dispatch(sinks: List[EventSink], event: SyncEvent) -> None:
    """Deliver an event to every sink; a failing sink is logged and skipped."""
    for sink in sinks:
        try:
            sink.emit(event)
        except Exception as e:
            logger.error(
                "Event sink failed",
                sink=type(sink).__name__,
                event_type=event.event_type.value,
                endpoint=event.endpoint,
                error=str(e),
            )

"""Event sink for operator-visible notifications.

Events are fire-and-forget: recording one never fails a reconciliation.
They are written to the structured log and kept in a bounded history so
the CLI and tests can inspect what happened.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import AWSCluster

logger = logging.getLogger(__name__)

# Maximum events kept in memory to prevent unbounded growth
MAX_EVENT_HISTORY = 1000


class EventType(str, Enum):
    """Event severity."""

    NORMAL = "Normal"
    WARNING = "Warning"


@dataclass(frozen=True)
class Event:
    """A recorded notification about an object."""

    object_key: str
    type: EventType
    reason: str
    message: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


class EventRecorder:
    """Records events against AWSCluster objects."""

    def __init__(self, max_history: int = MAX_EVENT_HISTORY) -> None:
        self._history: deque[Event] = deque(maxlen=max_history)

    @property
    def events(self) -> list[Event]:
        return list(self._history)

    def reasons(self) -> list[str]:
        return [e.reason for e in self._history]

    def event(self, obj: AWSCluster, reason: str, message: str) -> None:
        """Record a normal event."""
        self._record(obj, EventType.NORMAL, reason, message)

    def warning(self, obj: AWSCluster, reason: str, message: str) -> None:
        """Record a warning event."""
        self._record(obj, EventType.WARNING, reason, message)

    def _record(self, obj: AWSCluster, event_type: EventType, reason: str, message: str) -> None:
        event = Event(object_key=obj.key, type=event_type, reason=reason, message=message)
        self._history.append(event)
        log = logger.warning if event_type == EventType.WARNING else logger.info
        log(
            "Event recorded",
            extra={
                "object": event.object_key,
                "event_type": event_type.value,
                "reason": reason,
                "event_message": message,
            },
        )

# Overview: Activity logger sink for storage and sync events.

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..time_utils import utcnow, to_utc_z


@dataclass
class ActivityEvent:
    event_type: str
    message: str
    occurred_at: datetime
    success: bool = True
    entity_type: str | None = None
    entity_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "event_type": self.event_type,
            "message": self.message,
            "occurred_at": to_utc_z(self.occurred_at),
            "success": self.success,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "details": self.details,
        }


class ActivityLogger:
    """
    Receives structured events from the gateway, migration and sync layers.

    Each event is written to the application logger and kept in a bounded
    buffer for status queries. Older events drop off once the buffer is full.
    """

    def __init__(self, logger: logging.Logger, *, max_events: int = 500):
        self._logger = logger
        self._events: deque[ActivityEvent] = deque(maxlen=max_events)
        self._lock = threading.Lock()

    def record(
        self,
        event_type: str,
        message: str,
        *,
        success: bool = True,
        entity_type: str | None = None,
        entity_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> ActivityEvent:
        event = ActivityEvent(
            event_type=event_type,
            message=message,
            occurred_at=utcnow(),
            success=success,
            entity_type=entity_type,
            entity_id=entity_id,
            details=dict(details or {}),
        )
        with self._lock:
            self._events.append(event)
        level = logging.INFO if success else logging.WARNING
        self._logger.log(level, "[%s] %s", event_type, message)
        return event

    def recent(self, limit: int = 50, *, event_type: str | None = None) -> list[ActivityEvent]:
        with self._lock:
            events = list(self._events)
        if event_type:
            events = [e for e in events if e.event_type == event_type]
        return events[-limit:] if limit > 0 else []

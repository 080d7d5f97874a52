"""
Event Store

Bounded, insertion-ordered history of monitoring events.

CONSTRAINTS:
- FIFO eviction: once MAX_EVENTS is reached the OLDEST event is dropped
- Insertion order is preserved (milestone and suggestion rules depend on it)
- In-memory only: rebuilt on restart
"""

import logging
from collections import Counter, deque
from datetime import datetime, timedelta
from typing import Callable, Optional, Dict, Any, List, Iterable

from .event_model import MonitoringEvent, MonitoringEventType

logger = logging.getLogger("event_store")


# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------
MAX_EVENTS = 1000


class EventStore:
    """Append-only bounded buffer of monitoring events."""

    def __init__(
        self,
        max_events: int = MAX_EVENTS,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            max_events: Capacity before oldest-first eviction
            clock: Time source for rolling stats (optional, for testing)
        """
        self._events: deque = deque(maxlen=max_events)
        self._max_events = max_events
        self._clock = clock or datetime.utcnow

    def __len__(self) -> int:
        return len(self._events)

    def add_event(self, event: MonitoringEvent) -> None:
        self._events.append(event)
        logger.debug(f"Event recorded: {event.type.value} for {event.project_path}")

    def get_recent_events(self, count: int = 10) -> List[MonitoringEvent]:
        """Last `count` events, oldest first."""
        if count <= 0:
            return []
        return list(self._events)[-count:]

    def events_since(
        self,
        since: datetime,
        project_path: Optional[str] = None,
        types: Optional[Iterable[MonitoringEventType]] = None,
    ) -> List[MonitoringEvent]:
        """Events at or after `since`, optionally filtered by project and type."""
        wanted = set(types) if types is not None else None
        return [
            e for e in self._events
            if e.timestamp >= since
            and (project_path is None or e.project_path == project_path)
            and (wanted is None or e.type in wanted)
        ]

    def events_for_project(self, project_path: str, count: int = 10) -> List[MonitoringEvent]:
        events = [e for e in self._events if e.project_path == project_path]
        return events[-count:] if count > 0 else []

    def get_stats(self) -> Dict[str, Any]:
        """
        Rolling counts.

        Returns:
            total_events, events_last_hour, events_last_day and per-type
            counts over the last 24 hours.
        """
        now = self._clock()
        hour_ago = now - timedelta(hours=1)
        day_ago = now - timedelta(days=1)

        last_day = [e for e in self._events if e.timestamp >= day_ago]
        type_counts = Counter(e.type.value for e in last_day)

        return {
            "total_events": len(self._events),
            "events_last_hour": sum(1 for e in last_day if e.timestamp >= hour_ago),
            "events_last_day": len(last_day),
            "event_types": dict(type_counts),
        }

    def clear(self) -> None:
        self._events.clear()

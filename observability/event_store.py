"""
In-memory store for pipeline events.

Bounded deque so a long-running client never grows without limit. The
control plane reads from it to answer /control/events queries.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

_ENVELOPE_KEYS = ("ts", "session_id", "component", "event_type", "severity", "correlation_id")


@dataclass
class StoredEvent:
    """One stored pipeline event."""

    ts: datetime
    session_id: str
    component: str
    event_type: str
    severity: str
    correlation_id: str
    payload: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "ts": self.ts.isoformat(),
            "session_id": self.session_id,
            "component": self.component,
            "event_type": self.event_type,
            "severity": self.severity,
            "correlation_id": self.correlation_id,
        }
        result.update(self.payload)
        return result


class EventStore:
    """Bounded FIFO of pipeline events (default 10,000)."""

    def __init__(self, max_events: int = 10000):
        self._events: deque[StoredEvent] = deque(maxlen=max_events)
        self._max_events = max_events

    def store(self, event: Dict[str, Any]) -> None:
        ts_raw = event.get("ts")
        if isinstance(ts_raw, str):
            ts = datetime.fromisoformat(ts_raw.replace("Z", "+00:00"))
        else:
            ts = datetime.now(timezone.utc)

        session_id = event.get("session_id", "")
        self._events.append(StoredEvent(
            ts=ts,
            session_id=session_id,
            component=event.get("component", "unknown"),
            event_type=event.get("event_type", "unknown"),
            severity=event.get("severity", "info"),
            correlation_id=event.get("correlation_id", session_id),
            payload={k: v for k, v in event.items() if k not in _ENVELOPE_KEYS},
        ))

    def query(
        self,
        session_id: Optional[str] = None,
        event_type: Optional[str] = None,
        component: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Return matching events, oldest first.

        Args:
            session_id: exact session id
            event_type: exact event type, or a prefix ending in "." (e.g. "session.")
            component: exact component
            since: only events at or after this timestamp
            limit: maximum number of events
        """
        results: List[StoredEvent] = []
        for event in self._events:
            if session_id and event.session_id != session_id:
                continue
            if event_type:
                if event_type.endswith("."):
                    if not event.event_type.startswith(event_type):
                        continue
                elif event.event_type != event_type:
                    continue
            if component and event.component != component:
                continue
            if since and event.ts < since:
                continue
            results.append(event)
            if limit and len(results) >= limit:
                break
        return [e.to_dict() for e in results]

    def clear(self) -> None:
        self._events.clear()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "total_events": len(self._events),
            "max_events": self._max_events,
            "oldest_event_ts": self._events[0].ts.isoformat() if self._events else None,
            "newest_event_ts": self._events[-1].ts.isoformat() if self._events else None,
        }


# Process-wide store shared by all emitters
event_store = EventStore()

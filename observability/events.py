"""
Structured pipeline events.

Each event is one JSON line on stdout (for log aggregation) and is also kept
in the in-memory event store so the control plane can serve it back.

Envelope:
    ts, session_id, component, event_type, severity, correlation_id
plus event-specific fields.
"""

from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from .event_store import event_store


class Component(str, Enum):
    """Components that emit pipeline events."""

    AUDIO_STREAMING = "audio_streaming"
    SESSION_TRANSPORT = "session_transport"
    PIPELINE = "pipeline"
    CONTROL_PLANE = "control_plane"


class Severity(str, Enum):
    """Event severity levels."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


UNKNOWN_SESSION = "unknown"


class EventEmitter:
    """Emits structured JSON events for one component."""

    def __init__(self, component: Component, stream=None):
        self.component = component
        self._stream = stream

    def emit(
        self,
        event_type: str,
        session_id: Optional[str],
        severity: Severity = Severity.INFO,
        correlation_id: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        """
        Emit one event.

        Args:
            event_type: Stable dotted event name, e.g. "speech.ended"
            session_id: Conversation session id; "unknown" before a session exists
            severity: Event severity
            correlation_id: Optional id tying related events together (defaults to session_id)
            **kwargs: Event-specific fields
        """
        session_id = session_id or UNKNOWN_SESSION
        event = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "session_id": session_id,
            "component": self.component.value,
            "event_type": event_type,
            "severity": severity.value,
            "correlation_id": correlation_id or session_id,
        }
        event.update(kwargs)

        out = self._stream or sys.stdout
        out.write(json.dumps(event, ensure_ascii=False, default=str))
        out.write("\n")
        out.flush()

        event_store.store(event)

    # --- Audio streaming ---

    def speech_started(self, session_id: Optional[str]) -> None:
        self.emit("speech.started", session_id)

    def speech_ended(
        self,
        session_id: Optional[str],
        duration_ms: float,
        audio_bytes: int,
        chunk_count: int,
    ) -> None:
        """speech.ended carries sizes only, never audio content."""
        self.emit(
            "speech.ended",
            session_id,
            severity=Severity.INFO if audio_bytes else Severity.WARN,
            duration_ms=int(duration_ms),
            audio_bytes=audio_bytes,
            chunk_count=chunk_count,
        )

    # --- Session transport ---

    def session_started(self, session_id: str, has_profile: bool) -> None:
        self.emit("session.started", session_id, has_profile=has_profile)

    def session_connected(self, session_id: str, reconnected: bool, flushed: int) -> None:
        self.emit(
            "session.connected",
            session_id,
            reconnected=reconnected,
            flushed_messages=flushed,
        )

    def session_reconnecting(self, session_id: str, attempt: int, delay_ms: int) -> None:
        self.emit(
            "session.reconnecting",
            session_id,
            severity=Severity.WARN,
            attempt=attempt,
            delay_ms=delay_ms,
        )

    def session_failed(self, session_id: Optional[str], category: str, detail: Optional[str] = None) -> None:
        self.emit(
            "session.failed",
            session_id,
            severity=Severity.ERROR,
            error_category=category,
            detail=detail,
        )

    def session_ended(self, session_id: str, reason: str) -> None:
        self.emit("session.ended", session_id, reason=reason)

    def emergency_detected(self, session_id: Optional[str], payload: dict) -> None:
        # Payload keys only; free text from the remote service may contain PII.
        self.emit(
            "emergency.detected",
            session_id,
            severity=Severity.WARN,
            payload_keys=sorted(payload.keys()),
        )

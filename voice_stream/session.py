"""
Conversation session lifecycle.

One session per transport instance. The session exists from the moment a
start handshake begins; `session_id` is filled in once the server issues it.
It is only mutated by the transport's connection handlers and by an explicit
end_conversation().
"""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Deque, Optional, Tuple


class SessionState(str, Enum):
    """Session lifecycle states."""
    IDLE = "idle"
    STARTING = "starting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    ENDED = "ended"
    FAILED = "failed"


# States in which outbound messages are queued rather than dropped.
ALIVE_STATES = frozenset({SessionState.STARTING, SessionState.CONNECTED, SessionState.RECONNECTING})
TERMINAL_STATES = frozenset({SessionState.ENDED, SessionState.FAILED})


@dataclass
class OutboundMessage:
    """A message waiting in the send queue; encoded with the live session id at send time."""

    type: str
    payload: dict
    seq: int


@dataclass
class ConversationSession:
    """Server-side conversation session as seen by the client."""

    session_id: Optional[str] = None
    state: SessionState = SessionState.STARTING
    websocket_url: Optional[str] = None
    reconnect_attempts: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    connected_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    end_reason: Optional[str] = None
    outbound_queue: Deque[OutboundMessage] = field(default_factory=deque)

    def transition_to(self, new_state: SessionState) -> SessionState:
        """Move to `new_state`; returns the previous state."""
        old_state = self.state
        self.state = new_state
        if new_state == SessionState.CONNECTED:
            self.connected_at = datetime.now(timezone.utc)
        return old_state

    def end(self, reason: str, state: SessionState = SessionState.ENDED) -> None:
        """Mark the session terminal (ENDED or FAILED)."""
        if state not in TERMINAL_STATES:
            raise ValueError(f"{state} is not a terminal state")
        self.transition_to(state)
        self.ended_at = datetime.now(timezone.utc)
        self.end_reason = reason

    def is_alive(self) -> bool:
        return self.state in ALIVE_STATES

    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def enqueue(self, message: OutboundMessage) -> int:
        """Append to the FIFO; returns the new queue length."""
        self.outbound_queue.append(message)
        return len(self.outbound_queue)

    def requeue_front(self, message: OutboundMessage) -> None:
        """Put back a message whose send failed, ahead of everything else."""
        self.outbound_queue.appendleft(message)

    def drain_queue(self) -> Tuple[OutboundMessage, ...]:
        """Remove and return all queued messages in FIFO order."""
        drained = tuple(self.outbound_queue)
        self.outbound_queue.clear()
        return drained

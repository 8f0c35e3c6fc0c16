"""
Duplex message envelope and typed inbound messages.

Envelope (both directions):
    {"type": str, "payload": dict, "timestamp": number, "session_id": str}

Inbound frames decode into one of a closed set of frozen dataclasses, one per
MessageType. The timestamp on an inbound message is assigned by the remote
service and is informational only; dispatch order is receive order.
"""
from __future__ import annotations

import base64
import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, Optional, Type

from .errors import MalformedFrame


class MessageType(str, Enum):
    """Message type tags on the duplex connection."""

    AUDIO_CHUNK = "audio_chunk"
    TRANSCRIPT_PARTIAL = "transcript_partial"
    TRANSCRIPT_FINAL = "transcript_final"
    AI_THINKING = "ai_thinking"
    AI_SPEAKING = "ai_speaking"
    AI_RESPONSE_COMPLETE = "ai_response_complete"
    CONTEXTUAL_UPDATE = "contextual_update"
    EMERGENCY_DETECTED = "emergency_detected"
    CONVERSATION_END = "conversation_end"


class ConnectionEvent(str, Enum):
    """Local connection lifecycle events (never on the wire)."""

    CONNECTION_ESTABLISHED = "connection_established"
    CONNECTION_ERROR = "connection_error"
    CONNECTION_CLOSED = "connection_closed"
    ERROR = "error"


@dataclass(frozen=True)
class InboundMessage:
    """Common fields of every inbound message."""

    session_id: Optional[str]
    timestamp: Optional[float]
    payload: Dict[str, Any] = field(default_factory=dict)

    type: ClassVar[MessageType]


@dataclass(frozen=True)
class TranscriptPartial(InboundMessage):
    type: ClassVar[MessageType] = MessageType.TRANSCRIPT_PARTIAL

    @property
    def text(self) -> str:
        return str(self.payload.get("text", ""))


@dataclass(frozen=True)
class TranscriptFinal(InboundMessage):
    type: ClassVar[MessageType] = MessageType.TRANSCRIPT_FINAL

    @property
    def text(self) -> str:
        return str(self.payload.get("text", ""))


@dataclass(frozen=True)
class AIThinking(InboundMessage):
    type: ClassVar[MessageType] = MessageType.AI_THINKING


@dataclass(frozen=True)
class AISpeaking(InboundMessage):
    type: ClassVar[MessageType] = MessageType.AI_SPEAKING


@dataclass(frozen=True)
class AIResponseComplete(InboundMessage):
    """Final AI turn; payload may carry text, an audio URL and an emergency flag."""

    type: ClassVar[MessageType] = MessageType.AI_RESPONSE_COMPLETE

    @property
    def text(self) -> str:
        return str(self.payload.get("text", ""))

    @property
    def audio_url(self) -> Optional[str]:
        return self.payload.get("audioUrl") or self.payload.get("audio_url")

    @property
    def emergency_detected(self) -> bool:
        return bool(self.payload.get("emergency_detected", False))


@dataclass(frozen=True)
class ContextualUpdate(InboundMessage):
    type: ClassVar[MessageType] = MessageType.CONTEXTUAL_UPDATE


@dataclass(frozen=True)
class EmergencyDetected(InboundMessage):
    type: ClassVar[MessageType] = MessageType.EMERGENCY_DETECTED


@dataclass(frozen=True)
class ConversationEnd(InboundMessage):
    type: ClassVar[MessageType] = MessageType.CONVERSATION_END


INBOUND_TYPES: Dict[MessageType, Type[InboundMessage]] = {
    MessageType.TRANSCRIPT_PARTIAL: TranscriptPartial,
    MessageType.TRANSCRIPT_FINAL: TranscriptFinal,
    MessageType.AI_THINKING: AIThinking,
    MessageType.AI_SPEAKING: AISpeaking,
    MessageType.AI_RESPONSE_COMPLETE: AIResponseComplete,
    MessageType.CONTEXTUAL_UPDATE: ContextualUpdate,
    MessageType.EMERGENCY_DETECTED: EmergencyDetected,
    MessageType.CONVERSATION_END: ConversationEnd,
}


def decode_inbound(raw: str | bytes) -> InboundMessage:
    """
    Decode one inbound text frame.

    Raises MalformedFrame for invalid or too deeply nested JSON, a non-object
    envelope, a missing or unknown type, an outbound-only type, or a
    non-object payload.
    """
    try:
        data = json.loads(raw)
    except (ValueError, RecursionError) as e:
        # JSONDecodeError and UnicodeDecodeError are ValueErrors
        raise MalformedFrame(f"Invalid JSON frame: {type(e).__name__}") from e
    if not isinstance(data, dict):
        raise MalformedFrame("Frame is not a JSON object")

    type_tag = data.get("type")
    try:
        message_type = MessageType(type_tag)
    except ValueError:
        raise MalformedFrame(f"Unknown message type: {type_tag!r}") from None

    cls = INBOUND_TYPES.get(message_type)
    if cls is None:
        raise MalformedFrame(f"Message type {message_type.value} is outbound only")

    payload = data.get("payload")
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise MalformedFrame("Payload is not a JSON object")

    timestamp = data.get("timestamp")
    if not isinstance(timestamp, (int, float)) or isinstance(timestamp, bool):
        timestamp = None

    session_id = data.get("session_id")
    return cls(
        session_id=session_id if isinstance(session_id, str) else None,
        timestamp=timestamp,
        payload=payload,
    )


def now_ms() -> int:
    return int(time.time() * 1000)


def encode_envelope(
    message_type: MessageType,
    payload: Dict[str, Any],
    session_id: Optional[str],
    timestamp: Optional[int] = None,
) -> str:
    """Serialize an outbound envelope to a JSON text frame."""
    return json.dumps({
        "type": message_type.value,
        "payload": payload,
        "timestamp": timestamp if timestamp is not None else now_ms(),
        "session_id": session_id,
    })


def audio_chunk_payload(data: bytes, is_final: bool, seq: int) -> Dict[str, Any]:
    """Payload for an audio_chunk envelope. `seq` lets the remote side deduplicate replays."""
    return {
        "audio": base64.b64encode(data).decode("ascii"),
        "isFinal": is_final,
        "seq": seq,
    }

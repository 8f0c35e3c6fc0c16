"""
Error taxonomy for the streaming pipeline.

Every failure maps onto a stable category string so callers and logs can
branch on it without matching exception messages. Lifecycle calls never let
these escape; they come back inside a structured result instead.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

import aiohttp


class ErrorCategory:
    """Stable error categories."""

    CAPTURE_UNAVAILABLE = "capture.unavailable"
    HANDSHAKE_FAILED = "session.handshake_failed"
    AUTH_FAILED = "session.auth_failed"
    CONNECT_TIMEOUT = "transport.connect_timeout"
    CONNECTION_ERROR = "transport.connection_error"
    SEND_FAILED = "transport.send_failed"
    MAX_RECONNECT_ATTEMPTS = "session.max_reconnect_attempts"
    MALFORMED_FRAME = "transport.malformed_frame"
    UNKNOWN_ERROR = "unknown_error"


class VoiceStreamError(Exception):
    """Base class; `category` is one of ErrorCategory."""

    category = ErrorCategory.UNKNOWN_ERROR


class CaptureUnavailable(VoiceStreamError):
    """No capture device, no permission, or the device stream is closed."""

    category = ErrorCategory.CAPTURE_UNAVAILABLE


class DeviceUnavailable(CaptureUnavailable):
    """Raised by the streaming service when it cannot acquire the device."""


class HandshakeFailed(VoiceStreamError):
    """A session start/reconnect request/response call failed."""

    category = ErrorCategory.HANDSHAKE_FAILED

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class AuthenticationRequired(HandshakeFailed):
    """No bearer token could be obtained."""

    category = ErrorCategory.AUTH_FAILED


class ConnectTimeout(VoiceStreamError):
    """The duplex connection did not open within the connect timeout."""

    category = ErrorCategory.CONNECT_TIMEOUT


class TransportConnectionError(VoiceStreamError):
    """Transport-level failure while opening or using the duplex connection."""

    category = ErrorCategory.CONNECTION_ERROR


class SendFailed(VoiceStreamError):
    """A single outbound message could not be written."""

    category = ErrorCategory.SEND_FAILED


class MaxReconnectAttemptsExceeded(VoiceStreamError):
    """Terminal: the session could not be re-established."""

    category = ErrorCategory.MAX_RECONNECT_ATTEMPTS

    def __init__(self, session_id: Optional[str], attempts: int):
        super().__init__(f"Gave up reconnecting session {session_id} after {attempts} attempts")
        self.session_id = session_id
        self.attempts = attempts


class MalformedFrame(VoiceStreamError):
    """An inbound frame could not be decoded into a known message."""

    category = ErrorCategory.MALFORMED_FRAME


def classify_error(error: BaseException) -> str:
    """Map any exception onto an ErrorCategory string."""
    if isinstance(error, VoiceStreamError):
        return error.category

    if isinstance(error, (asyncio.TimeoutError, aiohttp.ServerTimeoutError)):
        return ErrorCategory.CONNECT_TIMEOUT

    if isinstance(error, aiohttp.ClientResponseError):
        if error.status in (401, 403):
            return ErrorCategory.AUTH_FAILED
        return ErrorCategory.HANDSHAKE_FAILED

    if isinstance(error, (aiohttp.ClientError, ConnectionError)):
        return ErrorCategory.CONNECTION_ERROR

    error_str = str(error).lower()
    if "unauthorized" in error_str or "401" in error_str:
        return ErrorCategory.AUTH_FAILED
    if "timeout" in error_str or "timed out" in error_str:
        return ErrorCategory.CONNECT_TIMEOUT
    if "microphone" in error_str or "device" in error_str or "portaudio" in error_str:
        return ErrorCategory.CAPTURE_UNAVAILABLE
    if "connection" in error_str or "network" in error_str:
        return ErrorCategory.CONNECTION_ERROR

    return ErrorCategory.UNKNOWN_ERROR


def redact_detail(error: BaseException) -> str:
    """Error text safe for logs and results; drops anything that looks like a credential."""
    detail = str(error) or type(error).__name__
    lowered = detail.lower()
    if "bearer" in lowered or "token" in lowered or "secret" in lowered or "password" in lowered:
        return "[redacted: potential secret]"
    return detail


@dataclass(frozen=True)
class ConversationStartResult:
    """Outcome of ConversationSessionTransport.start_conversation()."""

    status: str  # "connected" | "error"
    session_id: str = ""
    websocket_url: str = ""
    error: Optional[str] = None
    error_category: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "connected"

    @classmethod
    def failure(cls, error: BaseException, session_id: str = "") -> "ConversationStartResult":
        return cls(
            status="error",
            session_id=session_id,
            error=redact_detail(error),
            error_category=classify_error(error),
        )


@dataclass(frozen=True)
class StreamingStartResult:
    """Outcome of AudioStreamingService.start_streaming()."""

    status: str  # "streaming" | "error"
    error: Optional[str] = None
    error_category: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "streaming"

    @classmethod
    def failure(cls, error: BaseException) -> "StreamingStartResult":
        return cls(
            status="error",
            error=redact_detail(error),
            error_category=classify_error(error),
        )

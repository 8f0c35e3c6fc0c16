"""
Voice conversation streaming client.

Microphone capture -> voice activity detection -> speech-gated audio chunks
over a resilient duplex session with a remote conversation service.

- VoiceActivityDetector classifies speech / silence with an adaptive threshold
- AudioStreamingService gates and buffers chunks, sends one final blob per utterance
- ConversationSessionTransport owns the REST handshakes, the WebSocket and reconnection
- ConversationPipeline wires the two together for a host application
"""

from .auth import CallableTokenProvider, StaticTokenProvider, TokenProvider
from .capture import AudioStream, CaptureDevice, PushCapture, SoundDeviceCapture, create_capture_device
from .errors import (
    ConversationStartResult,
    ErrorCategory,
    StreamingStartResult,
    VoiceStreamError,
)
from .messages import ConnectionEvent, MessageType
from .pipeline import ConversationPipeline, build_pipeline
from .session import SessionState
from .streaming import AudioChunk, AudioStreamingService, StreamingEvent, StreamingOptions
from .transport import ConversationSessionTransport, TransportOptions, backoff_delay
from .vad import VADEvents, VADOptions, VADState, VoiceActivityDetector

__all__ = [
    "AudioChunk",
    "AudioStream",
    "AudioStreamingService",
    "CallableTokenProvider",
    "CaptureDevice",
    "ConnectionEvent",
    "ConversationPipeline",
    "ConversationSessionTransport",
    "ConversationStartResult",
    "ErrorCategory",
    "MessageType",
    "PushCapture",
    "SessionState",
    "SoundDeviceCapture",
    "StaticTokenProvider",
    "StreamingEvent",
    "StreamingOptions",
    "StreamingStartResult",
    "TokenProvider",
    "TransportOptions",
    "VADEvents",
    "VADOptions",
    "VADState",
    "VoiceActivityDetector",
    "VoiceStreamError",
    "backoff_delay",
    "build_pipeline",
    "create_capture_device",
]

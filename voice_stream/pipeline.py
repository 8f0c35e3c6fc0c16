"""
Conversation pipeline: one transport plus one streaming service.

Both collaborators are built by the caller and handed in, so a host can run
several independent pipelines (or swap in fakes) without shared globals.
"""
from __future__ import annotations

from typing import Any, Dict, Mapping, Optional, Union

from logging_setup import get_logger, Component as LogComponent
from .auth import StaticTokenProvider, TokenProvider
from .capture import create_capture_device
from .config import StreamConfig
from .context import load_profile
from .errors import ConversationStartResult, StreamingStartResult
from .streaming import AudioStreamingService, StreamingOptions
from .transport import ConversationSessionTransport, TransportOptions
from .vad import VADOptions


logger = get_logger(LogComponent.PIPELINE)


class ConversationPipeline:
    def __init__(
        self,
        transport: ConversationSessionTransport,
        streaming: AudioStreamingService,
        profile: Optional[Mapping[str, Any]] = None,
    ):
        self.transport = transport
        self.streaming = streaming
        self.profile = profile

    async def start(
        self,
        profile: Optional[Mapping[str, Any]] = None,
        initial_context: Optional[str] = None,
    ) -> Union[ConversationStartResult, StreamingStartResult]:
        """
        Open the conversation, then start capturing.

        Returns the conversation result on success. If either step fails its
        error result is returned; a conversation whose streaming failed to
        start is ended again.
        """
        if profile is None:
            profile = self.profile

        result = await self.transport.start_conversation(profile, initial_context)
        if not result.ok:
            logger.error(
                "Conversation start failed",
                error=result.error,
                error_category=result.error_category,
            )
            return result

        log = logger.with_session(result.session_id)
        streaming = self.streaming.start_streaming()
        if not streaming.ok:
            log.error(
                "Streaming start failed; ending conversation",
                error=streaming.error,
                error_category=streaming.error_category,
            )
            await self.transport.end_conversation()
            return streaming

        log.info("Pipeline started")
        return result

    async def end(self) -> None:
        """Stop capture, then end the conversation. Idempotent."""
        session_id = self.transport.get_session_id()
        self.streaming.stop_streaming()
        await self.transport.end_conversation()
        if session_id:
            logger.info("Pipeline ended", session_id=session_id)

    async def aclose(self) -> None:
        self.streaming.stop_streaming()
        await self.transport.aclose()

    def status(self) -> Dict[str, Any]:
        return {
            "streaming": self.streaming.is_streaming(),
            "speech_detected": self.streaming.is_speech_detected(),
            "connected": self.transport.is_connected(),
            "session_id": self.transport.get_session_id(),
            "state": self.transport.state.value,
            "reconnect_attempts": self.transport.reconnect_attempts,
            "queued_messages": self.transport.queued_messages,
        }


def build_pipeline(config: StreamConfig, token_provider: Optional[TokenProvider] = None) -> ConversationPipeline:
    """Wire a pipeline from configuration: capture device, transport, streaming service, profile."""
    vad_options = VADOptions(
        silence_threshold=config.vad_silence_threshold,
        silence_timeout=config.vad_silence_timeout_ms,
        min_speech_duration=config.vad_min_speech_ms,
        max_speech_duration=config.vad_max_speech_ms,
        adaptive_threshold=config.vad_adaptive_threshold,
        sample_interval_ms=1000 / config.vad_sample_rate_hz,
    )
    transport = ConversationSessionTransport(
        config.api_url,
        token_provider or StaticTokenProvider(config.access_token),
        TransportOptions(
            max_reconnect_attempts=config.reconnect_max_attempts,
            base_delay_ms=config.reconnect_base_delay_ms,
            max_delay_ms=config.reconnect_max_delay_ms,
            connect_timeout=config.connect_timeout_seconds,
            request_timeout=config.request_timeout_seconds,
            end_grace_ms=config.end_grace_ms,
        ),
    )
    device = create_capture_device(config.capture_backend, config.audio_sample_rate, config.audio_channels)
    streaming = AudioStreamingService(
        device,
        transport,
        StreamingOptions(
            vad=vad_options,
            chunk_interval_ms=config.audio_chunk_ms,
            sample_rate=config.audio_sample_rate,
            channels=config.audio_channels,
        ),
    )

    profile = None
    if config.profile_path:
        profile = load_profile(config.profile_path)
        logger.info("Loaded profile", profile_path=config.profile_path, fields=len(profile))

    logger.info(
        "Pipeline configured",
        api_url=config.api_url,
        capture_backend=config.capture_backend,
        chunk_interval_ms=config.audio_chunk_ms,
    )
    return ConversationPipeline(transport, streaming, profile)

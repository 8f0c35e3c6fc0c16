"""
Audio streaming service.

Couples one capture device, one VoiceActivityDetector and one transport:

- every `chunk_interval_ms` the PCM captured so far is cut into a chunk and
  appended to the utterance buffer
- chunks are forwarded to the transport (is_final=False) only while the VAD
  reports speech
- speech start clears the buffer, so pre-roll noise is never sent
- speech end joins the buffered chunks into one blob sent with is_final=True

Sends go through a single ordered queue drained by one sender task; the
capture and VAD loops never wait on the network.
"""
from __future__ import annotations

import asyncio
import inspect
import time
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, List, Mapping, Optional, Tuple, Union

from logging_setup import get_logger, Component as LogComponent
from observability.events import EventEmitter, Component
from .capture import AudioStream, CaptureDevice
from .errors import CaptureUnavailable, DeviceUnavailable, StreamingStartResult
from .listeners import Listener, ListenerRegistry
from .messages import MessageType
from .scheduler import PeriodicTask
from .vad import VADEvents, VADOptions, VoiceActivityDetector


logger = get_logger(LogComponent.AUDIO_STREAMING)


class StreamingEvent(str, Enum):
    """Lifecycle events of the streaming service."""

    RECORDING_START = "recording_start"
    RECORDING_STOP = "recording_stop"
    AUDIO_LEVEL = "audio_level"
    SPEECH_START = "speech_start"
    SPEECH_END = "speech_end"
    SILENCE = "silence"
    TRANSCRIPT = "transcript"
    AI_RESPONSE_START = "ai_response_start"
    AI_RESPONSE_END = "ai_response_end"
    ERROR = "error"


@dataclass(frozen=True)
class StreamingOptions:
    vad: VADOptions = field(default_factory=VADOptions)
    chunk_interval_ms: float = 200
    sample_rate: int = 16000
    channels: int = 1

    def __post_init__(self):
        if self.chunk_interval_ms <= 0:
            raise ValueError("chunk_interval_ms must be positive")
        if self.vad.sample_interval_ms > self.chunk_interval_ms:
            logger.warning(
                "VAD samples less often than chunks are cut; gating decisions will lag",
                vad_interval_ms=round(self.vad.sample_interval_ms, 2),
                chunk_interval_ms=self.chunk_interval_ms,
            )


@dataclass(frozen=True)
class AudioChunk:
    """One slice of captured PCM. `timestamp` is monotonic milliseconds."""

    data: bytes
    timestamp: float
    is_final: bool = False


class AudioStreamingService:
    """
    Capture -> VAD -> transport.

    The transport only needs `send_audio_chunk(data, is_final)` (sync or
    async). If it also has `on`/`off`, transcript and AI response messages are
    relayed as StreamingEvent.TRANSCRIPT / AI_RESPONSE_START / AI_RESPONSE_END.
    """

    def __init__(
        self,
        device: CaptureDevice,
        transport: Any,
        options: Optional[StreamingOptions] = None,
        *,
        now: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.device = device
        self.transport = transport
        self.options = options or StreamingOptions()
        self._now = now
        self._sleep = sleep

        self._stream: Optional[AudioStream] = None
        self._vad: Optional[VoiceActivityDetector] = None
        self._chunk_timer: Optional[PeriodicTask] = None
        self._outbound: Optional[asyncio.Queue] = None
        self._sender: Optional[asyncio.Task] = None
        self._buffer: List[AudioChunk] = []
        self._streaming = False
        self._started_at: Optional[float] = None
        self._relays_attached = False

        self._listeners = ListenerRegistry(logger, StreamingEvent)
        self._events = EventEmitter(Component.AUDIO_STREAMING)

    # --- Listeners ---

    def on(self, event: StreamingEvent | str, listener: Listener) -> None:
        self._listeners.on(event, listener)

    def off(self, event: StreamingEvent | str, listener: Listener) -> None:
        self._listeners.off(event, listener)

    # --- Lifecycle ---

    def start_streaming(self) -> StreamingStartResult:
        """
        Acquire the device and start VAD, chunk timer and sender.

        Must be called inside a running event loop. Never raises: on failure
        everything acquired so far is released and an error result returned.
        Calling it while already streaming restarts cleanly.
        """
        if self._streaming:
            logger.info("Already streaming; restarting")
            self.stop_streaming()

        try:
            try:
                stream = self.device.get_stream()
            except CaptureUnavailable as e:
                raise DeviceUnavailable(f"Could not acquire capture device: {e}") from e
            self._stream = stream

            if self.device.sample_rate != self.options.sample_rate or self.device.channels != self.options.channels:
                logger.warning(
                    "Capture device format differs from streaming options",
                    device_sample_rate=self.device.sample_rate,
                    device_channels=self.device.channels,
                    sample_rate=self.options.sample_rate,
                    channels=self.options.channels,
                )

            self._vad = VoiceActivityDetector(
                self.options.vad,
                VADEvents(
                    on_speech_start=self._on_speech_start,
                    on_speech_end=self._on_speech_end,
                    on_silence=self._on_silence,
                    on_audio_level=self._on_audio_level,
                    on_error=self._on_vad_error,
                ),
                now=self._now,
                sleep=self._sleep,
            )
            self._vad.start(stream)

            queue: asyncio.Queue = asyncio.Queue()
            self._outbound = queue
            self._sender = asyncio.get_running_loop().create_task(self._send_loop(queue), name="audio-sender")

            self._chunk_timer = PeriodicTask(
                "audio-chunker",
                self.options.chunk_interval_ms,
                self._on_chunk_tick,
                logger=logger,
                sleep=self._sleep,
                on_error=self._on_chunk_error,
            )
            self._chunk_timer.start()
        except Exception as e:
            error = e if isinstance(e, DeviceUnavailable) else DeviceUnavailable(f"Failed to start audio streaming: {e}")
            logger.error(
                "Failed to start audio streaming",
                error=str(error),
                error_type=type(e).__name__,
                error_category=error.category,
            )
            self._teardown()
            self._listeners.emit(StreamingEvent.ERROR, error)
            return StreamingStartResult.failure(error)

        self._streaming = True
        self._started_at = self._now()
        self._attach_relays()
        logger.info(
            "Audio streaming started",
            chunk_interval_ms=self.options.chunk_interval_ms,
            sample_rate=self.options.sample_rate,
        )
        self._listeners.emit(StreamingEvent.RECORDING_START)
        return StreamingStartResult(status="streaming")

    def stop_streaming(self) -> None:
        """Stop everything and release the device. Idempotent; in-flight sends are not awaited."""
        was_streaming = self._streaming
        duration_ms = self.get_recording_duration()
        self._teardown()
        if was_streaming:
            logger.info("Audio streaming stopped", recording_duration_ms=int(duration_ms))
            self._listeners.emit(StreamingEvent.RECORDING_STOP)

    def _teardown(self) -> None:
        self._streaming = False
        self._started_at = None

        if self._chunk_timer is not None:
            self._chunk_timer.cancel()
            self._chunk_timer = None

        sender, self._sender = self._sender, None
        if sender is not None and not sender.done():
            sender.cancel()
        self._outbound = None

        if self._vad is not None:
            self._vad.stop()
            self._vad = None

        try:
            self.device.stop_tracks()
        except Exception as e:
            logger.warning("Error releasing capture device", error=str(e), error_type=type(e).__name__)

        self._stream = None
        self._buffer.clear()
        self._detach_relays()

    # --- Chunking and gating ---

    def _on_chunk_tick(self) -> None:
        stream = self._stream
        if stream is None:
            return
        data = stream.drain()
        if not data:
            return

        self._buffer.append(AudioChunk(data=data, timestamp=self._now() * 1000.0))
        if self._vad is not None and self._vad.is_detecting_speech():
            self._enqueue_send(data, False)

    def _on_chunk_error(self, error: Exception) -> None:
        self._listeners.emit(StreamingEvent.ERROR, error)

    def _enqueue_send(self, data: bytes, is_final: bool) -> None:
        if self._outbound is None:
            logger.warning("Sender not running; audio dropped", bytes=len(data), is_final=is_final)
            return
        self._outbound.put_nowait((data, is_final))

    async def _send_loop(self, queue: asyncio.Queue) -> None:
        while True:
            data, is_final = await queue.get()
            try:
                result = self.transport.send_audio_chunk(data, is_final)
                if inspect.isawaitable(result):
                    result = await result
                if is_final:
                    logger.debug("Final audio sent", bytes=len(data), delivered=bool(result))
            except Exception as e:
                logger.error(
                    "Audio send raised",
                    error=str(e),
                    error_type=type(e).__name__,
                    is_final=is_final,
                )
                self._listeners.emit(StreamingEvent.ERROR, e)

    # --- VAD callbacks ---

    def _session_id(self) -> Optional[str]:
        getter = getattr(self.transport, "get_session_id", None)
        return getter() if callable(getter) else None

    def _on_speech_start(self) -> None:
        # Pre-roll captured before speech is discarded.
        self._buffer.clear()
        self._events.speech_started(self._session_id())
        self._listeners.emit(StreamingEvent.SPEECH_START)

    def _on_speech_end(self, duration_ms: float) -> None:
        if self._stream is not None:
            pending = self._stream.drain()
            if pending:
                self._buffer.append(AudioChunk(data=pending, timestamp=self._now() * 1000.0))

        chunk_count = len(self._buffer)
        if not self._buffer:
            logger.warning("Speech ended with no buffered audio; nothing sent", duration_ms=int(duration_ms))
            self._events.speech_ended(self._session_id(), duration_ms, 0, 0)
            self._listeners.emit(StreamingEvent.SPEECH_END, duration_ms, None)
            return

        blob = b"".join(chunk.data for chunk in self._buffer)
        self._buffer.clear()
        self._enqueue_send(blob, True)

        logger.info("Utterance complete", duration_ms=int(duration_ms), bytes=len(blob), chunks=chunk_count)
        self._events.speech_ended(self._session_id(), duration_ms, len(blob), chunk_count)
        self._listeners.emit(StreamingEvent.SPEECH_END, duration_ms, blob)

    def _on_silence(self, duration_ms: float) -> None:
        self._listeners.emit(StreamingEvent.SILENCE, duration_ms)

    def _on_audio_level(self, level: float) -> None:
        self._listeners.emit(StreamingEvent.AUDIO_LEVEL, level)

    def _on_vad_error(self, error: Exception) -> None:
        if not self._streaming:
            # start_streaming reports its own failures.
            return
        logger.error("Voice activity detection failed; stopping", error=str(error), error_type=type(error).__name__)
        self._listeners.emit(StreamingEvent.ERROR, error)
        self.stop_streaming()

    # --- Transport relays ---

    def _attach_relays(self) -> None:
        if self._relays_attached or not callable(getattr(self.transport, "on", None)):
            return
        self.transport.on(MessageType.TRANSCRIPT_PARTIAL, self._relay_partial)
        self.transport.on(MessageType.TRANSCRIPT_FINAL, self._relay_final)
        self.transport.on(MessageType.AI_SPEAKING, self._relay_response_start)
        self.transport.on(MessageType.AI_RESPONSE_COMPLETE, self._relay_response_end)
        self._relays_attached = True

    def _detach_relays(self) -> None:
        if not self._relays_attached:
            return
        self.transport.off(MessageType.TRANSCRIPT_PARTIAL, self._relay_partial)
        self.transport.off(MessageType.TRANSCRIPT_FINAL, self._relay_final)
        self.transport.off(MessageType.AI_SPEAKING, self._relay_response_start)
        self.transport.off(MessageType.AI_RESPONSE_COMPLETE, self._relay_response_end)
        self._relays_attached = False

    def _relay_partial(self, message: Any) -> None:
        self._listeners.emit(StreamingEvent.TRANSCRIPT, message.text, False)

    def _relay_final(self, message: Any) -> None:
        self._listeners.emit(StreamingEvent.TRANSCRIPT, message.text, True)

    def _relay_response_start(self, message: Any) -> None:
        self._listeners.emit(StreamingEvent.AI_RESPONSE_START, message)

    def _relay_response_end(self, message: Any) -> None:
        self._listeners.emit(StreamingEvent.AI_RESPONSE_END, message)

    # --- Queries ---

    def is_streaming(self) -> bool:
        return self._streaming

    def is_speech_detected(self) -> bool:
        return self._vad is not None and self._vad.is_detecting_speech()

    def get_recording_duration(self) -> float:
        """Milliseconds since streaming started, 0 when stopped."""
        if not self._streaming or self._started_at is None:
            return 0.0
        return (self._now() - self._started_at) * 1000.0

    @property
    def vad(self) -> Optional[VoiceActivityDetector]:
        return self._vad

    @property
    def buffered_chunks(self) -> Tuple[AudioChunk, ...]:
        return tuple(self._buffer)

    def update_options(
        self,
        vad: Optional[Union[VADOptions, Mapping[str, Any]]] = None,
        chunk_interval_ms: Optional[float] = None,
        sample_rate: Optional[int] = None,
        channels: Optional[int] = None,
    ) -> StreamingOptions:
        """
        Change options while streaming.

        VAD and chunk interval changes apply live. Sample rate and channel
        changes only take effect on the next start_streaming().
        """
        options = self.options
        if vad is not None:
            changes = asdict(vad) if isinstance(vad, VADOptions) else dict(vad)
            options = replace(options, vad=replace(options.vad, **changes))
            if self._vad is not None:
                self._vad.update_options(**changes)

        if chunk_interval_ms is not None:
            options = replace(options, chunk_interval_ms=chunk_interval_ms)
            if self._chunk_timer is not None:
                self._chunk_timer.interval_ms = chunk_interval_ms

        if sample_rate is not None or channels is not None:
            options = replace(
                options,
                sample_rate=sample_rate if sample_rate is not None else options.sample_rate,
                channels=channels if channels is not None else options.channels,
            )
            if self._streaming:
                logger.warning(
                    "Audio format change requires restarting the stream",
                    sample_rate=options.sample_rate,
                    channels=options.channels,
                )

        self.options = options
        return options

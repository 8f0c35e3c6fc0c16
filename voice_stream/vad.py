"""
Voice activity detection over amplitude-spectrum frames.

Classifies a live stream into speech / silence using an adaptive threshold:
while silent, the last `ambient_window` frame averages are kept and the
threshold follows `mean(ambient) * threshold_multiplier`, clamped to
[min_threshold, max_threshold]. Minimum and maximum duration gates stop
background blips from counting as speech and keep utterances from running
forever.

The detector only reads from the stream it is given; it never owns the
capture device.
"""
from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import asdict, dataclass, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Optional, Sequence

from logging_setup import get_logger, Component
from .errors import CaptureUnavailable
from .listeners import invoke_safely
from .scheduler import PeriodicTask


logger = get_logger(Component.VAD)


class VADState(str, Enum):
    SILENCE = "silence"
    SPEECH = "speech"


@dataclass(frozen=True)
class VADOptions:
    """Detector settings. Durations in milliseconds, levels on the 0-255 spectrum scale."""

    silence_threshold: float = 15
    silence_timeout: float = 1500
    min_speech_duration: float = 300
    max_speech_duration: float = 30000
    adaptive_threshold: bool = True
    debug_mode: bool = False

    min_threshold: float = 10
    max_threshold: float = 50
    threshold_multiplier: float = 1.5
    ambient_window: int = 20
    sample_interval_ms: float = 1000 / 60
    silence_report_interval_ms: float = 1000


@dataclass
class VADEvents:
    """Detector callbacks. All optional; exceptions inside them are logged, not raised."""

    on_speech_start: Optional[Callable[[], Any]] = None
    on_speech_end: Optional[Callable[[float], Any]] = None
    on_silence: Optional[Callable[[float], Any]] = None
    on_audio_level: Optional[Callable[[float], Any]] = None
    on_error: Optional[Callable[[Exception], Any]] = None


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class VoiceActivityDetector:
    """
    Speech / silence classifier.

    Usage:
        vad = VoiceActivityDetector(VADOptions(), VADEvents(on_speech_end=handle))
        vad.start(stream)   # samples stream.frequency_data() on a PeriodicTask
        ...
        vad.stop()

    `process_frame` is the single classification step and can be driven
    directly with any frame source.
    """

    def __init__(
        self,
        options: Optional[VADOptions] = None,
        events: Optional[VADEvents] = None,
        *,
        now: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.options = options or VADOptions()
        self.events = events or VADEvents()
        self._now = now
        self._sleep = sleep

        self._stream: Optional[Any] = None
        self._sampler: Optional[PeriodicTask] = None

        self._ambient: Deque[float] = deque(maxlen=self.options.ambient_window)
        self._threshold = self._static_threshold()
        self._reset_state()

        if self.options.debug_mode:
            logger.debug("VAD initialized", **asdict(self.options))

    def _reset_state(self) -> None:
        self.state = VADState.SILENCE
        self.state_since: Optional[float] = None
        self.speech_start: Optional[float] = None
        self.silence_start: Optional[float] = None
        self._quiet_since: Optional[float] = None
        self._last_silence_report: Optional[float] = None
        self.last_level = 0.0

    def _static_threshold(self) -> float:
        return clamp(self.options.silence_threshold, self.options.min_threshold, self.options.max_threshold)

    def _now_ms(self) -> float:
        return self._now() * 1000.0

    # --- Lifecycle ---

    @property
    def running(self) -> bool:
        return self._sampler is not None and self._sampler.running

    def start(self, stream: Any) -> None:
        """
        Begin sampling `stream.frequency_data()` at `sample_interval_ms`.

        Must be called inside a running event loop. Raises CaptureUnavailable
        when no stream is given or the stream is no longer active.
        """
        self.stop()

        if stream is None or not getattr(stream, "active", False):
            error = CaptureUnavailable("No active audio stream for voice activity detection")
            logger.error("Failed to start voice activity detection", error=str(error))
            if self.events.on_error:
                invoke_safely(logger, "vad.error", self.events.on_error, error)
            raise error

        self._stream = stream
        self._sampler = PeriodicTask(
            "vad-sampler",
            self.options.sample_interval_ms,
            self._sample,
            logger=logger,
            sleep=self._sleep,
            on_error=self._on_sampling_error,
        )
        self._sampler.start()
        logger.info(
            "Voice activity detection started",
            sample_interval_ms=round(self.options.sample_interval_ms, 2),
            threshold=self._threshold,
        )

    def stop(self) -> None:
        """Stop sampling and reset state. Safe to call when not started."""
        was_running = self._sampler is not None
        if self._sampler is not None:
            self._sampler.cancel()
            self._sampler = None
        self._stream = None
        self._reset_state()
        if was_running:
            logger.info("Voice activity detection stopped")

    def _sample(self) -> None:
        stream = self._stream
        if stream is None:
            return
        self.process_frame(stream.frequency_data())

    def _on_sampling_error(self, error: Exception) -> None:
        # The PeriodicTask halts after this returns.
        self._stream = None
        if self.events.on_error:
            invoke_safely(logger, "vad.error", self.events.on_error, error)

    # --- Classification ---

    def process_frame(self, frame: Sequence[float]) -> bool:
        """
        Classify one spectrum frame. Returns whether the frame itself was above threshold.
        """
        average = float(sum(frame)) / len(frame) if len(frame) else 0.0
        self.last_level = average

        if self.options.adaptive_threshold and self.state == VADState.SILENCE:
            self._ambient.append(average)
            ambient_average = sum(self._ambient) / len(self._ambient)
            self._threshold = clamp(
                ambient_average * self.options.threshold_multiplier,
                self.options.min_threshold,
                self.options.max_threshold,
            )

        is_active_now = average > self._threshold
        now = self._now_ms()

        if self.state == VADState.SILENCE and is_active_now:
            self._enter_speech(now, average)
        elif self.state == VADState.SPEECH and not is_active_now:
            self._handle_pause(now)
        elif self.state == VADState.SPEECH and is_active_now:
            self._continue_speech(now)
        else:
            self._continue_silence(now)

        if self.options.debug_mode and logger.is_enabled_for(10):
            logger.debug(
                "VAD frame",
                level=round(average, 2),
                threshold=round(self._threshold, 2),
                state=self.state.value,
            )

        if self.events.on_audio_level:
            invoke_safely(logger, "vad.audio_level", self.events.on_audio_level, average)

        return is_active_now

    def _enter_speech(self, now: float, level: float) -> None:
        self.state = VADState.SPEECH
        self.state_since = now
        self.speech_start = now
        self.silence_start = None
        self._quiet_since = None
        logger.debug("Speech started", threshold=round(self._threshold, 2), level=round(level, 2))
        if self.events.on_speech_start:
            invoke_safely(logger, "vad.speech_start", self.events.on_speech_start)

    def _enter_silence(self, now: float) -> None:
        self.state = VADState.SILENCE
        self.state_since = now
        self.speech_start = None
        self.silence_start = None
        self._quiet_since = now
        self._last_silence_report = now

    def _handle_pause(self, now: float) -> None:
        if self.silence_start is None:
            self.silence_start = now

        if now - self.silence_start <= self.options.silence_timeout:
            return

        # Voiced time runs from speech start to the start of the closing pause.
        voiced = self.silence_start - (self.speech_start if self.speech_start is not None else self.silence_start)
        self._enter_silence(now)

        if voiced > self.options.min_speech_duration:
            logger.debug("Speech ended", duration_ms=round(voiced), threshold=round(self._threshold, 2))
            if self.events.on_speech_end:
                invoke_safely(logger, "vad.speech_end", self.events.on_speech_end, voiced)
        else:
            logger.debug("Speech too short, ignored", duration_ms=round(voiced))

    def _continue_speech(self, now: float) -> None:
        self.silence_start = None
        if self.speech_start is None:
            return
        duration = now - self.speech_start
        if duration >= self.options.max_speech_duration:
            logger.debug(
                "Speech exceeded maximum duration",
                max_duration_ms=self.options.max_speech_duration,
                duration_ms=round(duration),
            )
            # Back to SILENCE so the next active frame opens a fresh utterance.
            self._enter_silence(now)
            if self.events.on_speech_end:
                invoke_safely(logger, "vad.speech_end", self.events.on_speech_end, duration)

    def _continue_silence(self, now: float) -> None:
        if self._quiet_since is None:
            self._quiet_since = now
            self._last_silence_report = now
            if self.state_since is None:
                self.state_since = now
            return

        if now - self._last_silence_report >= self.options.silence_report_interval_ms:
            self._last_silence_report = now
            if self.events.on_silence:
                invoke_safely(logger, "vad.silence", self.events.on_silence, now - self._quiet_since)

    # --- Queries ---

    @property
    def threshold(self) -> float:
        return self._threshold

    @property
    def ambient_levels(self) -> tuple[float, ...]:
        return tuple(self._ambient)

    def is_detecting_speech(self) -> bool:
        return self.state == VADState.SPEECH

    def current_speech_duration(self) -> float:
        """Milliseconds since speech start, 0 when silent."""
        if self.state != VADState.SPEECH or self.speech_start is None:
            return 0.0
        return self._now_ms() - self.speech_start

    def current_silence_duration(self) -> float:
        """Milliseconds of the current quiet run, 0 while speaking."""
        if self.state == VADState.SPEECH or self._quiet_since is None:
            return 0.0
        return self._now_ms() - self._quiet_since

    def update_options(self, **changes: Any) -> VADOptions:
        """Apply option changes live. Unknown names raise TypeError."""
        self.options = replace(self.options, **changes)
        if self._ambient.maxlen != self.options.ambient_window:
            self._ambient = deque(self._ambient, maxlen=self.options.ambient_window)
        if not self.options.adaptive_threshold or not self._ambient:
            self._threshold = self._static_threshold()
        else:
            self._threshold = clamp(self._threshold, self.options.min_threshold, self.options.max_threshold)
        if self._sampler is not None and "sample_interval_ms" in changes:
            self._sampler.interval_ms = self.options.sample_interval_ms
        if self.options.debug_mode:
            logger.debug("VAD options updated", **asdict(self.options))
        return self.options

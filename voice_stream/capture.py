"""
Audio capture devices.

A CaptureDevice hands out one AudioStream at a time. The stream exposes two
views of the same PCM signal:

- frequency_data(): a byte-scaled (0-255) magnitude spectrum of the most
  recent window, which is what the VAD classifies
- drain(): the raw PCM captured since the last drain, which the streaming
  service cuts into chunks

Two strategies:
- SoundDeviceCapture: local microphone through PortAudio (sounddevice)
- PushCapture: PCM pushed in by another producer (a browser over a socket,
  a file replay, a test)
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Any, Optional

import numpy as np

from logging_setup import get_logger, Component
from .errors import CaptureUnavailable


logger = get_logger(Component.CAPTURE)


class SpectrumAnalyser:
    """
    Magnitude spectrum scaled to 0-255.

    Same recipe as a browser AnalyserNode's byte frequency data: Blackman
    window, FFT, magnitude normalised by fft_size, exponential smoothing
    across frames, then dB mapped linearly from [min_db, max_db] to [0, 255].
    """

    def __init__(
        self,
        fft_size: int = 256,
        smoothing: float = 0.5,
        min_db: float = -100.0,
        max_db: float = -30.0,
    ):
        if fft_size < 32 or fft_size & (fft_size - 1):
            raise ValueError("fft_size must be a power of two >= 32")
        if max_db <= min_db:
            raise ValueError("max_db must be greater than min_db")
        self.fft_size = fft_size
        self.smoothing = smoothing
        self.min_db = min_db
        self.max_db = max_db
        self._window = np.blackman(fft_size)
        self._previous = np.zeros(fft_size // 2)

    @property
    def bin_count(self) -> int:
        return self.fft_size // 2

    def reset(self) -> None:
        self._previous = np.zeros(self.bin_count)

    def analyse(self, samples: np.ndarray) -> np.ndarray:
        """Spectrum of the last fft_size float samples (zero-padded at the front if short)."""
        frame = np.zeros(self.fft_size, dtype=np.float64)
        tail = samples[-self.fft_size:]
        if len(tail):
            frame[-len(tail):] = tail

        spectrum = np.abs(np.fft.rfft(frame * self._window))[: self.bin_count] / self.fft_size
        smoothed = self.smoothing * self._previous + (1.0 - self.smoothing) * spectrum
        self._previous = smoothed

        with np.errstate(divide="ignore"):
            db = 20.0 * np.log10(smoothed)
        scaled = (db - self.min_db) * (255.0 / (self.max_db - self.min_db))
        return np.clip(np.nan_to_num(scaled, neginf=0.0), 0.0, 255.0)


class AudioStream:
    """
    Live PCM stream (int16 little-endian, interleaved channels).

    `feed` may be called from an audio backend thread; everything else runs
    on the event loop. The lock only guards the two buffers.
    """

    def __init__(
        self,
        sample_rate: int = 16000,
        channels: int = 1,
        analyser: Optional[SpectrumAnalyser] = None,
    ):
        self.sample_rate = sample_rate
        self.channels = channels
        self.analyser = analyser or SpectrumAnalyser()
        self._lock = threading.Lock()
        self._pending = bytearray()
        self._recent = np.zeros(self.analyser.fft_size, dtype=np.float32)
        self._active = True
        self.bytes_captured = 0

    @property
    def active(self) -> bool:
        return self._active

    def feed(self, pcm: bytes) -> None:
        if not self._active or not pcm:
            return
        usable = len(pcm) - (len(pcm) % (2 * self.channels))
        if usable <= 0:
            return
        pcm = bytes(pcm[:usable])

        samples = np.frombuffer(pcm, dtype="<i2").astype(np.float32) / 32768.0
        if self.channels > 1:
            samples = samples.reshape(-1, self.channels).mean(axis=1)

        with self._lock:
            self._pending.extend(pcm)
            self.bytes_captured += len(pcm)
            keep = self.analyser.fft_size
            self._recent = np.concatenate((self._recent, samples))[-keep:]

    def frequency_data(self) -> np.ndarray:
        """Byte-scaled spectrum of the most recent window."""
        if not self._active:
            raise CaptureUnavailable("Audio stream is stopped")
        with self._lock:
            recent = self._recent.copy()
        return self.analyser.analyse(recent)

    def drain(self) -> bytes:
        """Return and clear the PCM captured since the previous drain."""
        with self._lock:
            data = bytes(self._pending)
            self._pending.clear()
        return data

    def stop(self) -> None:
        self._active = False
        with self._lock:
            self._pending.clear()


class CaptureDevice(ABC):
    """Capture-device strategy. The streaming service owns the device exclusively."""

    def __init__(self, sample_rate: int = 16000, channels: int = 1):
        self.sample_rate = sample_rate
        self.channels = channels
        self._stream: Optional[AudioStream] = None

    @property
    def stream(self) -> Optional[AudioStream]:
        return self._stream

    @abstractmethod
    def get_stream(self) -> AudioStream:
        """Open the device and return its stream. Raises CaptureUnavailable."""

    @abstractmethod
    def stop_tracks(self) -> None:
        """Release the device. Idempotent."""


class SoundDeviceCapture(CaptureDevice):
    """Local microphone via sounddevice's RawInputStream callback."""

    def __init__(
        self,
        sample_rate: int = 16000,
        channels: int = 1,
        device: Optional[Any] = None,
        block_ms: int = 20,
    ):
        super().__init__(sample_rate, channels)
        self.device = device
        self.block_ms = block_ms
        self._input: Optional[Any] = None

    def get_stream(self) -> AudioStream:
        if self._stream is not None and self._stream.active:
            return self._stream

        try:
            # PortAudio is loaded at import time; a host without it has no capture device.
            import sounddevice as sd
        except (ImportError, OSError) as e:
            raise CaptureUnavailable(f"Audio backend not available: {e}") from e

        stream = AudioStream(self.sample_rate, self.channels)

        def _callback(indata, frames, time_info, status):
            if status:
                logger.debug("Capture callback status", status=str(status))
            stream.feed(bytes(indata))

        try:
            raw = sd.RawInputStream(
                samplerate=self.sample_rate,
                channels=self.channels,
                dtype="int16",
                blocksize=int(self.sample_rate * self.block_ms / 1000),
                device=self.device,
                callback=_callback,
            )
            raw.start()
        except Exception as e:
            stream.stop()
            raise CaptureUnavailable(f"Microphone access denied or not available: {e}") from e

        self._input = raw
        self._stream = stream
        logger.info(
            "Microphone capture started",
            sample_rate=self.sample_rate,
            channels=self.channels,
            device=str(self.device) if self.device is not None else "default",
        )
        return stream

    def stop_tracks(self) -> None:
        raw, self._input = self._input, None
        if raw is not None:
            try:
                raw.stop()
                raw.close()
            except Exception as e:
                logger.warning("Error closing microphone stream", error=str(e))
        if self._stream is not None:
            self._stream.stop()
            self._stream = None
            logger.info("Microphone capture stopped")


class PushCapture(CaptureDevice):
    """PCM pushed in by an external producer through push()."""

    def __init__(self, sample_rate: int = 16000, channels: int = 1, available: bool = True):
        super().__init__(sample_rate, channels)
        self.available = available

    def get_stream(self) -> AudioStream:
        if not self.available:
            raise CaptureUnavailable("Push capture source is not available")
        if self._stream is None or not self._stream.active:
            self._stream = AudioStream(self.sample_rate, self.channels)
            logger.debug("Push capture stream opened", sample_rate=self.sample_rate)
        return self._stream

    def push(self, pcm: bytes) -> bool:
        """Feed PCM into the open stream. Returns False when no stream is open."""
        if self._stream is None or not self._stream.active:
            return False
        self._stream.feed(pcm)
        return True

    def stop_tracks(self) -> None:
        if self._stream is not None:
            self._stream.stop()
            self._stream = None


def create_capture_device(backend: str, sample_rate: int = 16000, channels: int = 1) -> CaptureDevice:
    """Pick the capture strategy by name ("sounddevice" or "push")."""
    if backend == "sounddevice":
        return SoundDeviceCapture(sample_rate, channels)
    if backend == "push":
        return PushCapture(sample_rate, channels)
    raise ValueError(f"Unknown capture backend: {backend}")

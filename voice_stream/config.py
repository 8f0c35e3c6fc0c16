"""
Streaming pipeline configuration.

Loads from environment variables. A local `.env_local` / `.env` file is read
first (without overriding variables that are already set).
"""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


def _strip_comment(value: Optional[str]) -> Optional[str]:
    """Strip inline "# comment" and whitespace; empty becomes None."""
    if value is None:
        return None
    if "#" in value:
        value = value.split("#")[0]
    value = value.strip()
    return value or None


def _parse_int_env(key: str, default: int) -> int:
    """
    Parse an integer environment variable.

    "300  # comment" -> 300, unset or garbage -> default
    """
    value = _strip_comment(os.environ.get(key))
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _parse_float_env(key: str, default: float) -> float:
    value = _strip_comment(os.environ.get(key))
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _parse_bool_env(key: str, default: bool) -> bool:
    value = _strip_comment(os.environ.get(key))
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes", "on")


def load_env_files(root: Optional[Path] = None) -> None:
    """Best-effort load of .env_local / .env from the project root."""
    root = root or Path(__file__).parent.parent
    for name in (".env_local", ".env"):
        path = root / name
        if path.exists():
            load_dotenv(path, override=False)


@dataclass
class StreamConfig:
    """Pipeline configuration."""

    # Remote conversation service (request/response handshakes)
    api_url: str
    access_token: Optional[str] = None
    profile_path: Optional[str] = None

    # VAD
    vad_silence_threshold: float = 15
    vad_silence_timeout_ms: int = 1500
    vad_min_speech_ms: int = 300
    vad_max_speech_ms: int = 30000
    vad_adaptive_threshold: bool = True
    vad_sample_rate_hz: float = 60.0

    # Capture / chunking
    capture_backend: str = "sounddevice"  # "sounddevice" | "push"
    audio_sample_rate: int = 16000
    audio_channels: int = 1
    audio_chunk_ms: int = 200

    # Transport
    reconnect_max_attempts: int = 5
    reconnect_base_delay_ms: int = 1000
    reconnect_max_delay_ms: int = 30000
    connect_timeout_seconds: float = 10.0
    request_timeout_seconds: float = 10.0
    end_grace_ms: int = 500

    # Local control API
    control_host: str = "127.0.0.1"
    control_port: int = 8000

    @classmethod
    def from_env(cls) -> "StreamConfig":
        """Build configuration from environment variables. CONVERSATION_API_URL is required."""
        return cls(
            api_url=os.environ["CONVERSATION_API_URL"].rstrip("/"),
            access_token=os.environ.get("CONVERSATION_ACCESS_TOKEN") or None,
            profile_path=os.environ.get("CONVERSATION_PROFILE_PATH") or None,
            vad_silence_threshold=_parse_float_env("VAD_SILENCE_THRESHOLD", 15),
            vad_silence_timeout_ms=_parse_int_env("VAD_SILENCE_TIMEOUT_MS", 1500),
            vad_min_speech_ms=_parse_int_env("VAD_MIN_SPEECH_MS", 300),
            vad_max_speech_ms=_parse_int_env("VAD_MAX_SPEECH_MS", 30000),
            vad_adaptive_threshold=_parse_bool_env("VAD_ADAPTIVE_THRESHOLD", True),
            vad_sample_rate_hz=_parse_float_env("VAD_SAMPLE_RATE_HZ", 60.0),
            capture_backend=os.environ.get("CAPTURE_BACKEND", "sounddevice").lower(),
            audio_sample_rate=_parse_int_env("AUDIO_SAMPLE_RATE", 16000),
            audio_channels=_parse_int_env("AUDIO_CHANNELS", 1),
            audio_chunk_ms=_parse_int_env("AUDIO_CHUNK_MS", 200),
            reconnect_max_attempts=_parse_int_env("RECONNECT_MAX_ATTEMPTS", 5),
            reconnect_base_delay_ms=_parse_int_env("RECONNECT_BASE_DELAY_MS", 1000),
            reconnect_max_delay_ms=_parse_int_env("RECONNECT_MAX_DELAY_MS", 30000),
            connect_timeout_seconds=_parse_float_env("CONNECT_TIMEOUT_SECONDS", 10.0),
            request_timeout_seconds=_parse_float_env("REQUEST_TIMEOUT_SECONDS", 10.0),
            end_grace_ms=_parse_int_env("END_GRACE_MS", 500),
            control_host=os.environ.get("CONTROL_HOST", "127.0.0.1"),
            control_port=_parse_int_env("CONTROL_PORT", 8000),
        )


def get_config() -> StreamConfig:
    """Get or create the process config (loads env files on first use)."""
    global _config
    if _config is None:
        load_env_files()
        _config = StreamConfig.from_env()
    return _config


# Lazily created by get_config()
_config: Optional[StreamConfig] = None

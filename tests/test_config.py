"""
Tests for pipeline configuration.

Verifies:
- Configuration loading from environment
- Required fields validation
- Default values and tolerant number parsing
"""
import pytest

from voice_stream.config import StreamConfig

OPTIONAL_VARS = (
    "CONVERSATION_ACCESS_TOKEN",
    "CONVERSATION_PROFILE_PATH",
    "VAD_SILENCE_THRESHOLD",
    "VAD_SILENCE_TIMEOUT_MS",
    "VAD_MIN_SPEECH_MS",
    "VAD_MAX_SPEECH_MS",
    "VAD_ADAPTIVE_THRESHOLD",
    "VAD_SAMPLE_RATE_HZ",
    "CAPTURE_BACKEND",
    "AUDIO_SAMPLE_RATE",
    "AUDIO_CHANNELS",
    "AUDIO_CHUNK_MS",
    "RECONNECT_MAX_ATTEMPTS",
    "RECONNECT_BASE_DELAY_MS",
    "RECONNECT_MAX_DELAY_MS",
    "CONNECT_TIMEOUT_SECONDS",
    "REQUEST_TIMEOUT_SECONDS",
    "END_GRACE_MS",
    "CONTROL_HOST",
    "CONTROL_PORT",
)


@pytest.fixture
def clean_env(monkeypatch):
    for key in OPTIONAL_VARS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("CONVERSATION_API_URL", "https://api.example.test/")
    return monkeypatch


def test_config_defaults(clean_env):
    """Unset optional variables fall back to the documented defaults."""
    config = StreamConfig.from_env()

    assert config.api_url == "https://api.example.test"
    assert config.access_token is None
    assert config.profile_path is None
    assert config.vad_silence_threshold == 15
    assert config.vad_silence_timeout_ms == 1500
    assert config.vad_min_speech_ms == 300
    assert config.vad_max_speech_ms == 30000
    assert config.vad_adaptive_threshold is True
    assert config.vad_sample_rate_hz == 60.0
    assert config.capture_backend == "sounddevice"
    assert config.audio_chunk_ms == 200
    assert config.reconnect_max_attempts == 5
    assert config.reconnect_base_delay_ms == 1000
    assert config.reconnect_max_delay_ms == 30000
    assert config.end_grace_ms == 500
    assert config.control_port == 8000


def test_config_from_env_all_fields(clean_env):
    clean_env.setenv("CONVERSATION_ACCESS_TOKEN", "tok")
    clean_env.setenv("CONVERSATION_PROFILE_PATH", "/tmp/profile.yaml")
    clean_env.setenv("VAD_SILENCE_THRESHOLD", "20.5")
    clean_env.setenv("VAD_SILENCE_TIMEOUT_MS", "1200")
    clean_env.setenv("VAD_ADAPTIVE_THRESHOLD", "false")
    clean_env.setenv("CAPTURE_BACKEND", "PUSH")
    clean_env.setenv("AUDIO_CHUNK_MS", "100")
    clean_env.setenv("RECONNECT_MAX_ATTEMPTS", "3")
    clean_env.setenv("CONNECT_TIMEOUT_SECONDS", "2.5")
    clean_env.setenv("CONTROL_PORT", "9100")

    config = StreamConfig.from_env()

    assert config.access_token == "tok"
    assert config.profile_path == "/tmp/profile.yaml"
    assert config.vad_silence_threshold == 20.5
    assert config.vad_silence_timeout_ms == 1200
    assert config.vad_adaptive_threshold is False
    assert config.capture_backend == "push"
    assert config.audio_chunk_ms == 100
    assert config.reconnect_max_attempts == 3
    assert config.connect_timeout_seconds == 2.5
    assert config.control_port == 9100


def test_inline_comments_are_stripped(clean_env):
    clean_env.setenv("VAD_MIN_SPEECH_MS", "250  # a bit snappier")
    clean_env.setenv("VAD_ADAPTIVE_THRESHOLD", "yes # on")

    config = StreamConfig.from_env()

    assert config.vad_min_speech_ms == 250
    assert config.vad_adaptive_threshold is True


def test_garbage_numbers_fall_back_to_default(clean_env):
    clean_env.setenv("AUDIO_CHUNK_MS", "fast")
    clean_env.setenv("VAD_SILENCE_THRESHOLD", "")

    config = StreamConfig.from_env()

    assert config.audio_chunk_ms == 200
    assert config.vad_silence_threshold == 15


def test_empty_token_is_none(clean_env):
    clean_env.setenv("CONVERSATION_ACCESS_TOKEN", "")
    assert StreamConfig.from_env().access_token is None


def test_missing_api_url(monkeypatch):
    """CONVERSATION_API_URL is required."""
    monkeypatch.delenv("CONVERSATION_API_URL", raising=False)

    with pytest.raises(KeyError):
        StreamConfig.from_env()

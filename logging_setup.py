"""
Shared logging infrastructure for the voice streaming pipeline.

Every package (voice_stream, control_plane, observability) logs through this
module so that output is one JSON object per line with a stable envelope:

- ISO8601 timestamp
- severity
- component (vad, capture, audio_streaming, session_transport, ...)
- session_id when the logger is bound to a conversation session
- any keyword fields passed to the log call
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class Severity(str, Enum):
    """Log severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class Component(str, Enum):
    """Pipeline components for log tagging."""
    VAD = "vad"
    CAPTURE = "capture"
    AUDIO_STREAMING = "audio_streaming"
    SESSION_TRANSPORT = "session_transport"
    PIPELINE = "pipeline"
    CONTROL_PLANE = "control_plane"


# Attributes every LogRecord carries; anything else came in through `extra`.
_RECORD_ATTRS = frozenset({
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "thread", "threadName", "taskName", "exc_info", "exc_text",
    "stack_info", "component", "session_id", "message",
})


class JSONFormatter(logging.Formatter):
    """Render log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "severity": record.levelname.lower(),
            "component": getattr(record, "component", record.name),
            "message": record.getMessage(),
        }

        session_id = getattr(record, "session_id", None)
        if session_id:
            log_data["session_id"] = session_id

        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


class StructuredLogger:
    """
    Thin wrapper around `logging.Logger` that takes fields as keyword arguments.

    Usage:
        logger = get_logger(Component.SESSION_TRANSPORT, session_id="conv-123")
        logger.info("Reconnect scheduled", attempt=2, delay_ms=2000)
    """

    def __init__(
        self,
        component: str | Component,
        session_id: Optional[str] = None,
        logger_name: Optional[str] = None
    ):
        self.component = component.value if isinstance(component, Component) else component
        self.session_id = session_id
        self.logger = logging.getLogger(logger_name or f"voice_stream.{self.component}")

    def _log(self, level: int, message: str, /, **kwargs):
        exc_info = kwargs.pop("exc_info", None)
        stack_info = kwargs.pop("stack_info", False)

        # An explicit session_id kwarg wins over the bound one.
        session_id = kwargs.pop("session_id", None) or self.session_id

        extra = {"component": self.component, **kwargs}
        if session_id:
            extra["session_id"] = session_id

        self.logger.log(
            level,
            message,
            exc_info=exc_info,
            stack_info=stack_info,
            stacklevel=3,
            extra=extra,
        )

    def debug(self, message: str, **kwargs):
        self._log(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs):
        self._log(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._log(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs):
        self._log(logging.ERROR, message, **kwargs)

    def critical(self, message: str, **kwargs):
        self._log(logging.CRITICAL, message, **kwargs)

    def exception(self, message: str, **kwargs):
        """Log at error level with the active exception attached."""
        kwargs.setdefault("exc_info", True)
        self._log(logging.ERROR, message, **kwargs)

    def is_enabled_for(self, level: int) -> bool:
        return self.logger.isEnabledFor(level)

    def with_session(self, session_id: Optional[str]) -> "StructuredLogger":
        """Return a logger bound to `session_id`."""
        return StructuredLogger(
            self.component,
            session_id=session_id,
            logger_name=self.logger.name,
        )


def setup_logging(
    level: Optional[str] = None,
    use_json: bool = True,
    include_timestamp: bool = True
) -> None:
    """
    Configure the root logger. Call once at process startup.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL. Defaults to $LOG_LEVEL or INFO.
        use_json: JSON lines (True) or plain text (False)
        include_timestamp: prefix plain-text lines with asctime
    """
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    if use_json:
        formatter: logging.Formatter = JSONFormatter()
    else:
        format_str = "%(levelname)s - %(component)s - %(message)s"
        if include_timestamp:
            format_str = "%(asctime)s - " + format_str
        formatter = logging.Formatter(format_str, defaults={"component": "-"})
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    level_name = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()
    root_logger.setLevel(getattr(logging, level_name, logging.INFO))


def get_logger(
    component: str | Component,
    session_id: Optional[str] = None
) -> StructuredLogger:
    """Get a structured logger for a component, optionally bound to a session."""
    return StructuredLogger(component, session_id=session_id)

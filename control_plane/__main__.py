"""
Entry point for running the control server.

Usage:
    python -m control_plane

Binds to CONTROL_HOST:CONTROL_PORT (default http://127.0.0.1:8000).
"""
import uvicorn

from logging_setup import setup_logging
from voice_stream.config import get_config

if __name__ == "__main__":
    # Initialize logging (LOG_LEVEL from the environment)
    setup_logging(use_json=True)

    config = get_config()
    uvicorn.run(
        "control_plane.server:app",
        host=config.control_host,
        port=config.control_port,
        log_level="info",
    )

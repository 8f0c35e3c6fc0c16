"""
Control server hosting one conversation pipeline.

Can be run standalone (python -m control_plane) or mounted into an existing
app via create_app(pipeline=...).
"""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from logging_setup import get_logger, Component
from voice_stream.config import get_config
from voice_stream.pipeline import ConversationPipeline, build_pipeline
from .control_api import router as control_router

logger = get_logger(Component.CONTROL_PLANE)


def create_app(pipeline: Optional[ConversationPipeline] = None) -> FastAPI:
    """
    Build the FastAPI app. Without an explicit pipeline one is built from
    the environment configuration at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "pipeline", None) is None:
            app.state.pipeline = build_pipeline(get_config())
        logger.info("Control server started")
        try:
            yield
        finally:
            await app.state.pipeline.aclose()
            logger.info("Control server stopped")

    app = FastAPI(title="Voice Stream Control Server", lifespan=lifespan)
    app.state.pipeline = pipeline
    app.include_router(control_router)

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "ok", "component": "control_plane"}

    return app


app = create_app()

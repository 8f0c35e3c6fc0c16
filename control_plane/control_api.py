"""
Local control API for the streaming pipeline.

This module exposes:
- Read API: pipeline status, query recorded events
- Write API: start / end the conversation
- Audio ingest: raw PCM over a WebSocket when the capture backend is "push"

Commands emit auditable events: control.command_received / control.command_applied.
"""

from __future__ import annotations

import time
from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Query, Request, WebSocket
from pydantic import BaseModel, Field

from logging_setup import get_logger, Component as LogComponent
from observability.events import Component as ObsComponent, EventEmitter, Severity
from observability.event_store import event_store
from voice_stream.capture import PushCapture
from voice_stream.errors import ErrorCategory
from voice_stream.pipeline import ConversationPipeline


router = APIRouter(prefix="/control", tags=["control"])
emitter = EventEmitter(ObsComponent.CONTROL_PLANE)
logger = get_logger(LogComponent.CONTROL_PLANE)


class StartRequest(BaseModel):
    profile: Optional[Dict[str, Any]] = Field(None, description="Opaque profile; defaults to the configured profile file")
    initial_context: Optional[str] = Field(None, description="Free-text context; derived from the profile when omitted")


class StartResponse(BaseModel):
    status: str
    session_id: str
    websocket_url: str


class EndResponse(BaseModel):
    status: str
    session_id: Optional[str] = None


class StatusResponse(BaseModel):
    streaming: bool
    speech_detected: bool
    connected: bool
    session_id: Optional[str] = None
    state: str
    reconnect_attempts: int
    queued_messages: int


def _new_correlation_id() -> str:
    return f"cmd_{int(time.time() * 1000)}"


def get_pipeline(request: Request) -> ConversationPipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=503, detail="pipeline_not_ready")
    return pipeline


@router.get("/status", response_model=StatusResponse)
async def get_status(request: Request) -> StatusResponse:
    return StatusResponse(**get_pipeline(request).status())


@router.post("/conversation/start", response_model=StartResponse)
async def start_conversation(request: Request, req: Optional[StartRequest] = None) -> StartResponse:
    """
    Start a conversation and begin streaming.

    502 when the remote handshake or connection fails, 503 when the capture
    device is unavailable. Error details never include credentials.
    """
    pipeline = get_pipeline(request)
    req = req or StartRequest()
    correlation_id = _new_correlation_id()

    emitter.emit(
        "control.command_received",
        session_id=None,
        severity=Severity.INFO,
        correlation_id=correlation_id,
        command="conversation.start",
    )

    result = await pipeline.start(req.profile, req.initial_context)

    if not result.ok:
        status_code = 503 if result.error_category == ErrorCategory.CAPTURE_UNAVAILABLE else 502
        logger.warning(
            "Conversation start command failed",
            status_code=status_code,
            error_category=result.error_category,
        )
        emitter.emit(
            "control.command_applied",
            session_id=getattr(result, "session_id", None) or None,
            severity=Severity.ERROR,
            correlation_id=correlation_id,
            command="conversation.start",
            result="error",
            error_category=result.error_category,
        )
        raise HTTPException(
            status_code=status_code,
            detail={"error": result.error, "error_category": result.error_category},
        )

    emitter.emit(
        "control.command_applied",
        session_id=result.session_id,
        severity=Severity.INFO,
        correlation_id=correlation_id,
        command="conversation.start",
        result="ok",
    )
    return StartResponse(status=result.status, session_id=result.session_id, websocket_url=result.websocket_url)


@router.post("/conversation/end", response_model=EndResponse)
async def end_conversation(request: Request) -> EndResponse:
    """End the conversation. Succeeds when nothing is running."""
    pipeline = get_pipeline(request)
    session_id = pipeline.transport.get_session_id()
    correlation_id = _new_correlation_id()

    emitter.emit(
        "control.command_received",
        session_id=session_id,
        severity=Severity.INFO,
        correlation_id=correlation_id,
        command="conversation.end",
    )

    await pipeline.end()

    emitter.emit(
        "control.command_applied",
        session_id=session_id,
        severity=Severity.INFO,
        correlation_id=correlation_id,
        command="conversation.end",
        result="ok",
    )
    return EndResponse(status="ok", session_id=session_id)


@router.get("/events")
async def get_events(
    session_id: Optional[str] = Query(None, description="Filter by session_id"),
    event_type: Optional[str] = Query(None, description="Filter by event_type (trailing '.' matches a prefix)"),
    component: Optional[str] = Query(None, description="Filter by component"),
    limit: Optional[int] = Query(None, ge=1, le=1000, description="Max events to return"),
) -> dict:
    """Query recorded pipeline events, oldest first."""
    events = event_store.query(
        session_id=session_id,
        event_type=event_type,
        component=component,
        limit=limit,
    )
    return {
        "events": events,
        "count": len(events),
        "stats": event_store.get_stats(),
    }


@router.websocket("/audio")
async def ingest_audio(websocket: WebSocket) -> None:
    """
    Feed int16 little-endian PCM into the pipeline's push capture device.

    Binary frames only, in the configured sample rate and channel layout;
    a text frame closes the socket with 1003.
    Closed with 1008 when the pipeline captures from a local microphone.
    Frames arriving while nothing is streaming are dropped.
    """
    pipeline = getattr(websocket.app.state, "pipeline", None)
    device = pipeline.streaming.device if pipeline is not None else None
    if not isinstance(device, PushCapture):
        logger.warning("Audio ingest rejected; capture backend is not push")
        await websocket.close(code=1008)
        return

    await websocket.accept()
    accepted = dropped = 0
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            data = message.get("bytes")
            if data is None:
                await websocket.close(code=1003)
                break
            if device.push(data):
                accepted += len(data)
            else:
                dropped += len(data)
    finally:
        logger.info("Audio ingest closed", accepted_bytes=accepted, dropped_bytes=dropped)

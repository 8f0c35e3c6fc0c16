"""
Conversation session transport.

Owns one conversation session with the remote service:

1. REST handshake: POST {base}/api/conversation/start with the bearer token,
   the opaque profile and an initial context string. The response carries
   the session id and the WebSocket URL.
2. Duplex WebSocket: outbound audio_chunk envelopes, inbound typed messages
   dispatched to listeners in receive order.
3. Reconnection: on an unexpected close, up to `max_reconnect_attempts`
   retries with exponential backoff (1s, 2s, 4s, ... capped at 30s). Each
   retry asks POST {base}/api/conversation/reconnect for a fresh URL.
   Messages sent while disconnected are queued and flushed FIFO once the
   connection is back.
4. End: best-effort POST {base}/api/conversation/end, a conversation_end
   envelope, a short grace period, then close.

Lifecycle calls never raise; failures come back as structured results or,
for the terminal mid-session failure, as a ConnectionEvent.ERROR dispatch.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import aiohttp

from logging_setup import get_logger, Component as LogComponent
from observability.events import EventEmitter, Component
from .auth import TokenProvider
from .context import build_initial_context, json_safe
from .errors import (
    AuthenticationRequired,
    ConnectTimeout,
    ConversationStartResult,
    HandshakeFailed,
    MalformedFrame,
    MaxReconnectAttemptsExceeded,
    SendFailed,
    TransportConnectionError,
    classify_error,
    redact_detail,
)
from .listeners import Listener, ListenerRegistry
from .messages import (
    ConnectionEvent,
    MessageType,
    audio_chunk_payload,
    decode_inbound,
    encode_envelope,
)
from .session import ConversationSession, OutboundMessage, SessionState


logger = get_logger(LogComponent.SESSION_TRANSPORT)

START_PATH = "/api/conversation/start"
RECONNECT_PATH = "/api/conversation/reconnect"
END_PATH = "/api/conversation/end"


@dataclass(frozen=True)
class TransportOptions:
    max_reconnect_attempts: int = 5
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000
    connect_timeout: float = 10.0
    request_timeout: float = 10.0
    end_grace_ms: int = 500


def backoff_delay(attempt: int, base_ms: int = 1000, max_ms: int = 30000) -> int:
    """Delay before reconnect attempt `attempt` (1-based), in milliseconds."""
    if attempt < 1:
        raise ValueError("attempt is 1-based")
    return min(max_ms, base_ms * 2 ** (attempt - 1))


class ConversationSessionTransport:
    """
    One conversation session over REST + WebSocket.

    Usage:
        transport = ConversationSessionTransport(base_url, StaticTokenProvider(token))
        transport.on(MessageType.TRANSCRIPT_FINAL, handle_transcript)
        result = await transport.start_conversation(profile)
        await transport.send_audio_chunk(pcm, is_final=True)
        await transport.aclose()
    """

    def __init__(
        self,
        base_url: str,
        token_provider: TokenProvider,
        options: Optional[TransportOptions] = None,
        *,
        http: Optional[aiohttp.ClientSession] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.options = options or TransportOptions()
        self._tokens = token_provider
        self._http = http
        self._owns_http = http is None
        self._sleep = sleep

        self._session: Optional[ConversationSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._flushing = False
        self._closing = False
        self._seq = 0

        self._listeners = ListenerRegistry(
            logger, MessageType, ConnectionEvent, exclude=(MessageType.AUDIO_CHUNK,)
        )
        self._events = EventEmitter(Component.SESSION_TRANSPORT)
        self.log = logger

    # --- Listeners ---

    def on(self, key: MessageType | ConnectionEvent | str, listener: Listener) -> None:
        self._listeners.on(key, listener)

    def off(self, key: MessageType | ConnectionEvent | str, listener: Listener) -> None:
        self._listeners.off(key, listener)

    # --- Queries ---

    @property
    def state(self) -> SessionState:
        return self._session.state if self._session is not None else SessionState.IDLE

    @property
    def session(self) -> Optional[ConversationSession]:
        return self._session

    @property
    def reconnect_attempts(self) -> int:
        return self._session.reconnect_attempts if self._session is not None else 0

    @property
    def queued_messages(self) -> int:
        return len(self._session.outbound_queue) if self._session is not None else 0

    def is_connected(self) -> bool:
        return (
            self._ws is not None
            and not self._ws.closed
            and self._session is not None
            and self._session.state == SessionState.CONNECTED
        )

    def get_session_id(self) -> Optional[str]:
        """Id of the live session; None before start and after it ended or failed."""
        if self._session is None or self._session.is_terminal():
            return None
        return self._session.session_id

    # --- HTTP ---

    def _get_http(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession()
            self._owns_http = True
        return self._http

    async def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        token = await self._tokens.get_access_token()
        endpoint = f"{self.base_url}{path}"
        start_ts = time.time()
        try:
            async with self._get_http().post(
                endpoint,
                json=body,
                headers={"Authorization": f"Bearer {token}"},
                timeout=aiohttp.ClientTimeout(total=self.options.request_timeout),
            ) as resp:
                self.log.debug(
                    "Handshake response",
                    endpoint=path,
                    status=resp.status,
                    latency_ms=int((time.time() - start_ts) * 1000),
                )
                if resp.status in (401, 403):
                    raise AuthenticationRequired(
                        f"{path} rejected credentials (status {resp.status})", status=resp.status
                    )
                if resp.status >= 400:
                    raise HandshakeFailed(f"{path} failed with status {resp.status}", status=resp.status)
                try:
                    data = await resp.json(content_type=None)
                except ValueError as e:
                    raise HandshakeFailed(f"{path} returned invalid JSON", status=resp.status) from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise HandshakeFailed(f"{path} request failed: {type(e).__name__}") from e

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise HandshakeFailed(f"{path} returned a non-object body")
        return data

    # --- Lifecycle ---

    async def start_conversation(
        self,
        profile: Optional[Mapping[str, Any]] = None,
        initial_context: Optional[str] = None,
    ) -> ConversationStartResult:
        """
        Open a conversation session. Never raises.

        Any previous live session is ended first. Returns status "connected"
        with the session id and WebSocket URL, or status "error" with a
        redacted message and an error category.
        """
        if self._session is not None and not self._session.is_terminal():
            self.log.warning("Conversation already active; ending it before starting a new one")
            await self.end_conversation()

        session = ConversationSession()
        self._session = session
        self._seq = 0
        self.log = logger

        if initial_context is None:
            initial_context = build_initial_context(profile)

        try:
            data = await self._post(START_PATH, {
                "medical_profile": json_safe(profile) if profile else {},
                "initial_context": initial_context,
            })
            session_id = data.get("session_id")
            websocket_url = data.get("websocket_url")
            if not session_id or not websocket_url:
                raise HandshakeFailed("Start response is missing session_id or websocket_url")

            session.session_id = str(session_id)
            session.websocket_url = str(websocket_url)
            self.log = logger.with_session(session.session_id)
            self.log.info("Conversation session created")
            self._events.session_started(session.session_id, has_profile=bool(profile))

            await self._connect(session.websocket_url)
        except Exception as e:
            category = classify_error(e)
            detail = redact_detail(e)
            self.log.error(
                "Failed to start conversation",
                error=detail,
                error_type=type(e).__name__,
                error_category=category,
            )
            await self._close_ws()
            if not session.is_terminal():
                session.end(reason=category, state=SessionState.FAILED)
            self._events.session_failed(session.session_id, category, detail)
            self._listeners.emit(ConnectionEvent.CONNECTION_ERROR, e)
            return ConversationStartResult.failure(e, session_id=session.session_id or "")

        return ConversationStartResult(
            status="connected",
            session_id=session.session_id,
            websocket_url=session.websocket_url,
        )

    async def _connect(self, url: str, reconnected: bool = False) -> None:
        """Open the WebSocket within the connect timeout, then flush the queue."""
        session = self._session
        timeout = self.options.connect_timeout
        try:
            ws = await asyncio.wait_for(self._get_http().ws_connect(url), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise ConnectTimeout(f"Connection timeout after {timeout}s") from e
        except (aiohttp.ClientError, OSError) as e:
            raise TransportConnectionError(f"WebSocket connect failed: {type(e).__name__}") from e

        if session is not self._session or session.is_terminal():
            await ws.close()
            raise TransportConnectionError("Session ended while the connection was opening")

        self._ws = ws
        session.transition_to(SessionState.CONNECTED)
        session.reconnect_attempts = 0
        flushed = await self._flush_queue()
        self._reader = asyncio.get_running_loop().create_task(self._read_loop(ws), name="conversation-reader")

        self.log.info("WebSocket connected", reconnected=reconnected, flushed_messages=flushed)
        self._events.session_connected(session.session_id, reconnected=reconnected, flushed=flushed)
        self._listeners.emit(ConnectionEvent.CONNECTION_ESTABLISHED, {
            "session_id": session.session_id,
            "reconnected": reconnected,
        })

    async def end_conversation(self) -> None:
        """
        End the session. Idempotent and safe at any time, including mid-backoff.

        The end request and the conversation_end envelope are best effort.
        """
        session = self._session
        if session is None or self._closing:
            return
        if session.is_terminal() and self._ws is None and self._reader is None:
            self._cancel_reconnect()
            return

        self._closing = True
        try:
            self._cancel_reconnect()
            session_id = session.session_id

            if session_id and session.is_alive():
                try:
                    await self._post(END_PATH, {"session_id": session_id})
                except Exception as e:
                    self.log.warning(
                        "End conversation request failed",
                        error=redact_detail(e),
                        error_type=type(e).__name__,
                    )

            if self._ws is not None and not self._ws.closed:
                try:
                    await self._ws.send_str(encode_envelope(MessageType.CONVERSATION_END, {}, session_id))
                    await self._sleep(self.options.end_grace_ms / 1000)
                except (ConnectionError, RuntimeError, aiohttp.ClientError) as e:
                    self.log.warning("Could not send conversation_end", error=str(e))

            if not session.is_terminal():
                session.end(reason="client_end")
                self._events.session_ended(session_id, reason="client_end")
                dropped = session.drain_queue()
                if dropped:
                    self.log.info("Discarded queued messages on end", count=len(dropped))

            await self._close_ws()
            self.log.info("Conversation ended", reason=session.end_reason)
            self._listeners.emit(ConnectionEvent.CONNECTION_CLOSED, {
                "session_id": session_id,
                "will_reconnect": False,
            })
        finally:
            self._closing = False

    async def aclose(self) -> None:
        """End the conversation and release an owned HTTP session."""
        await self.end_conversation()
        if self._owns_http and self._http is not None and not self._http.closed:
            await self._http.close()
        self._http = None

    # --- Outbound ---

    async def send_audio_chunk(self, data: bytes, is_final: bool = False) -> bool:
        """
        Send (or queue) one audio chunk. Returns True only if it was written now.

        With no live session the chunk is dropped. While starting or
        reconnecting it is queued and flushed in order later.
        """
        session = self._session
        if session is None or not session.is_alive():
            self.log.warning("No active session; audio chunk dropped", bytes=len(data), is_final=is_final)
            return False

        self._seq += 1
        message = OutboundMessage(
            type=MessageType.AUDIO_CHUNK.value,
            payload=audio_chunk_payload(data, is_final, self._seq),
            seq=self._seq,
        )
        depth = session.enqueue(message)

        if not self.is_connected() or self._flushing:
            self.log.debug("Audio chunk queued", seq=message.seq, queue_depth=depth, state=session.state.value)
            return False

        await self._flush_queue()
        return message not in session.outbound_queue

    async def _send(self, message: OutboundMessage) -> None:
        ws = self._ws
        if ws is None or ws.closed:
            raise SendFailed("WebSocket is not open")
        frame = encode_envelope(MessageType(message.type), message.payload, self._session.session_id)
        try:
            await ws.send_str(frame)
        except (ConnectionError, RuntimeError, aiohttp.ClientError) as e:
            raise SendFailed(f"Send failed: {e}") from e

    async def _flush_queue(self) -> int:
        """Write queued messages in FIFO order while the socket stays open."""
        session = self._session
        if session is None or self._flushing:
            return 0

        self._flushing = True
        sent = 0
        try:
            while session.outbound_queue and self._ws is not None and not self._ws.closed:
                message = session.outbound_queue.popleft()
                try:
                    await self._send(message)
                except SendFailed as e:
                    session.requeue_front(message)
                    self.log.warning(
                        "Send failed; message re-queued",
                        seq=message.seq,
                        error=str(e),
                        error_category=e.category,
                    )
                    break
                sent += 1
        finally:
            self._flushing = False
        return sent

    # --- Inbound ---

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        error: Optional[BaseException] = None
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        self._handle_frame(msg.data)
                    except Exception as e:
                        self.log.error(
                            "Inbound frame handling failed; frame dropped",
                            error=str(e),
                            error_type=type(e).__name__,
                            exc_info=True,
                        )
                    if self._session is None or self._session.is_terminal():
                        break
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    error = ws.exception()
                    break
                else:
                    self.log.debug("Ignoring non-text frame", frame_type=str(msg.type))
        except (aiohttp.ClientError, ConnectionError) as e:
            error = e
        await self._handle_disconnection(ws, error)

    def _handle_frame(self, raw: str) -> None:
        try:
            message = decode_inbound(raw)
        except MalformedFrame as e:
            self.log.warning("Ignoring malformed frame", error=str(e), error_category=e.category)
            return

        session = self._session
        session_id = session.session_id if session is not None else None

        if message.type == MessageType.EMERGENCY_DETECTED:
            self.log.warning("Emergency detected by remote service", payload_keys=sorted(message.payload))
            self._events.emergency_detected(session_id, message.payload)
        elif message.type == MessageType.AI_RESPONSE_COMPLETE and message.emergency_detected:
            self.log.warning("AI response flagged an emergency")

        self._listeners.emit(message.type, message)

        if message.type == MessageType.CONVERSATION_END and session is not None and session.is_alive():
            session.end(reason="conversation_end")
            self.log.info("Remote service ended the conversation")
            self._events.session_ended(session_id, reason="conversation_end")

    async def _handle_disconnection(
        self,
        ws: aiohttp.ClientWebSocketResponse,
        error: Optional[BaseException],
    ) -> None:
        if ws is not self._ws:
            return
        self._ws = None
        self._reader = None
        if not ws.closed:
            await ws.close()

        session = self._session
        if session is None or not session.is_alive() or self._closing:
            self._listeners.emit(ConnectionEvent.CONNECTION_CLOSED, {
                "session_id": session.session_id if session is not None else None,
                "will_reconnect": False,
            })
            return

        will_reconnect = session.reconnect_attempts < self.options.max_reconnect_attempts
        self.log.warning(
            "WebSocket closed unexpectedly",
            close_code=ws.close_code,
            will_reconnect=will_reconnect,
            error=str(error) if error is not None else None,
        )
        self._listeners.emit(ConnectionEvent.CONNECTION_CLOSED, {
            "session_id": session.session_id,
            "will_reconnect": will_reconnect,
        })
        if error is not None:
            self._listeners.emit(ConnectionEvent.CONNECTION_ERROR, error)

        self._reconnect_task = asyncio.get_running_loop().create_task(
            self._reconnect(session), name="conversation-reconnect"
        )

    # --- Reconnection ---

    def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _reconnect(self, session: ConversationSession) -> None:
        while session.reconnect_attempts < self.options.max_reconnect_attempts:
            session.reconnect_attempts += 1
            attempt = session.reconnect_attempts
            session.transition_to(SessionState.RECONNECTING)

            delay_ms = backoff_delay(attempt, self.options.base_delay_ms, self.options.max_delay_ms)
            self.log.warning(
                "Reconnecting",
                attempt=attempt,
                max_attempts=self.options.max_reconnect_attempts,
                delay_ms=delay_ms,
            )
            self._events.session_reconnecting(session.session_id, attempt, delay_ms)
            await self._sleep(delay_ms / 1000)

            if session is not self._session or not session.is_alive():
                return

            try:
                data = await self._post(RECONNECT_PATH, {"session_id": session.session_id})
                session.websocket_url = str(data.get("websocket_url") or session.websocket_url)
                await self._connect(session.websocket_url, reconnected=True)
                return
            except Exception as e:
                if session is not self._session or not session.is_alive():
                    return
                self.log.warning(
                    "Reconnect attempt failed",
                    attempt=attempt,
                    error=redact_detail(e),
                    error_category=classify_error(e),
                )
                self._listeners.emit(ConnectionEvent.CONNECTION_ERROR, e)

        error = MaxReconnectAttemptsExceeded(session.session_id, session.reconnect_attempts)
        session.end(reason=error.category, state=SessionState.FAILED)
        dropped = session.drain_queue()
        self.log.error(
            "Max reconnection attempts reached",
            attempts=error.attempts,
            dropped_messages=len(dropped),
            error_category=error.category,
        )
        self._events.session_failed(session.session_id, error.category, str(error))
        self._listeners.emit(ConnectionEvent.ERROR, error)

    async def _close_ws(self) -> None:
        ws, self._ws = self._ws, None
        reader, self._reader = self._reader, None
        if reader is not None and not reader.done() and reader is not asyncio.current_task():
            reader.cancel()
        if ws is not None and not ws.closed:
            try:
                await ws.close()
            except (ConnectionError, aiohttp.ClientError) as e:
                self.log.debug("Error closing WebSocket", error=str(e))

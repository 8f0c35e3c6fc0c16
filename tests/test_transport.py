"""
Tests for the conversation session transport.

A small aiohttp application stands in for the remote conversation service:
REST handshakes under /api/conversation/* and a WebSocket endpoint.
"""
import asyncio
import base64
import json

import pytest
import pytest_asyncio
from aiohttp import WSMsgType, web
from aiohttp.test_utils import TestServer

from conftest import RecordingSleep, wait_until
from observability.event_store import event_store
from voice_stream import transport as transport_module
from voice_stream.auth import StaticTokenProvider
from voice_stream.context import load_profile
from voice_stream.errors import ErrorCategory, MaxReconnectAttemptsExceeded
from voice_stream.messages import ConnectionEvent, MessageType
from voice_stream.session import SessionState
from voice_stream.transport import ConversationSessionTransport, TransportOptions


class FakeConversationService:
    """Records handshakes and WebSocket frames; statuses are adjustable per test."""

    def __init__(self):
        self.start_status = 200
        self.reconnect_status = 200
        self.ws_path = "/ws"
        self.requests = []
        self.received = []
        self.sockets = []
        self.release = asyncio.Event()
        self.server = None

        self.app = web.Application()
        self.app.router.add_post("/api/conversation/start", self.handle_start)
        self.app.router.add_post("/api/conversation/reconnect", self.handle_reconnect)
        self.app.router.add_post("/api/conversation/end", self.handle_end)
        self.app.router.add_get("/ws", self.handle_ws)
        self.app.router.add_get("/slow", self.handle_slow)
        self.app.router.add_get("/ws-delayed", self.handle_ws_delayed)

    def ws_url(self) -> str:
        return str(self.server.make_url(self.ws_path)).replace("http", "ws", 1)

    def paths(self):
        return [name for name, _, _ in self.requests]

    async def handle_start(self, request):
        self.requests.append(("start", await request.json(), request.headers.get("Authorization")))
        if self.start_status != 200:
            return web.json_response({"error": "unavailable"}, status=self.start_status)
        return web.json_response({
            "session_id": "conv-1",
            "websocket_url": self.ws_url(),
            "status": "connected",
        })

    async def handle_reconnect(self, request):
        self.requests.append(("reconnect", await request.json(), request.headers.get("Authorization")))
        if self.reconnect_status != 200:
            return web.json_response({"error": "unavailable"}, status=self.reconnect_status)
        return web.json_response({"websocket_url": self.ws_url()})

    async def handle_end(self, request):
        self.requests.append(("end", await request.json(), request.headers.get("Authorization")))
        return web.json_response({"status": "ended"})

    async def handle_ws(self, request):
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self.sockets.append(ws)
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                self.received.append(json.loads(msg.data))
        return ws

    async def handle_slow(self, request):
        await self.release.wait()
        return web.Response(text="too late")

    async def handle_ws_delayed(self, request):
        await self.release.wait()
        return await self.handle_ws(request)

    async def push(self, message: dict) -> None:
        await self.sockets[-1].send_str(json.dumps(message))


class GateSleep:
    """Records delays and holds every sleep until released."""

    def __init__(self):
        self.delays = []
        self.gate = asyncio.Event()

    async def __call__(self, seconds):
        self.delays.append(seconds)
        await self.gate.wait()

    def release(self):
        self.gate.set()


@pytest_asyncio.fixture
async def remote():
    service = FakeConversationService()
    server = TestServer(service.app)
    await server.start_server()
    service.server = server
    yield service
    service.release.set()
    for ws in list(service.sockets):
        await ws.close()
    await server.close()


@pytest_asyncio.fixture
async def make_transport(remote):
    created = []

    def _make(sleep=None, token="test-token", **options):
        transport = ConversationSessionTransport(
            str(remote.server.make_url("/")),
            StaticTokenProvider(token),
            TransportOptions(**options),
            sleep=sleep or RecordingSleep(),
        )
        created.append(transport)
        return transport

    yield _make

    for transport in created:
        release = getattr(transport._sleep, "release", None)
        if release is not None:
            release()
        await transport.aclose()


@pytest.fixture(autouse=True)
def cleanup():
    yield
    event_store.clear()


def record(transport, key):
    seen = []
    transport.on(key, seen.append)
    return seen


@pytest.mark.asyncio
async def test_start_conversation(remote, make_transport):
    transport = make_transport()
    established = record(transport, ConnectionEvent.CONNECTION_ESTABLISHED)
    profile = {"full_name": "Jane Doe", "allergies": ["penicillin"]}

    result = await transport.start_conversation(profile)

    assert result.ok
    assert result.status == "connected"
    assert result.session_id == "conv-1"
    assert result.websocket_url == remote.ws_url()
    assert transport.is_connected()
    assert transport.get_session_id() == "conv-1"
    assert transport.state == SessionState.CONNECTED
    assert established == [{"session_id": "conv-1", "reconnected": False}]

    name, body, auth = remote.requests[0]
    assert name == "start"
    assert auth == "Bearer test-token"
    assert body["medical_profile"] == profile
    assert body["initial_context"] == "Patient name: Jane Doe. Allergies: penicillin."


@pytest.mark.asyncio
async def test_explicit_initial_context_is_forwarded(remote, make_transport):
    transport = make_transport()
    await transport.start_conversation({}, initial_context="Follow-up call")

    assert remote.requests[0][1] == {"medical_profile": {}, "initial_context": "Follow-up call"}


@pytest.mark.asyncio
async def test_start_with_yaml_profile_containing_dates(remote, make_transport, tmp_path):
    path = tmp_path / "profile.yaml"
    path.write_text(
        "full_name: Jane Doe\n"
        "date_of_birth: 1980-06-15\n"
        "medications:\n"
        "  - salbutamol\n"
        "last_visit: 2024-01-02 10:30:00\n"
    )
    transport = make_transport()

    result = await transport.start_conversation(load_profile(path))

    assert result.ok
    assert transport.is_connected()
    _, body, _ = remote.requests[0]
    assert body["medical_profile"]["date_of_birth"] == "1980-06-15"
    assert body["medical_profile"]["last_visit"].startswith("2024-01-02T10:30:00")
    assert body["medical_profile"]["medications"] == ["salbutamol"]
    assert "Patient name: Jane Doe." in body["initial_context"]
    assert "Age: " in body["initial_context"]


@pytest.mark.asyncio
async def test_end_while_connecting_reports_failed_start(remote, make_transport):
    remote.ws_path = "/ws-delayed"
    transport = make_transport()
    errors = record(transport, ConnectionEvent.CONNECTION_ERROR)

    starting = asyncio.ensure_future(transport.start_conversation())
    await wait_until(lambda: transport.get_session_id() == "conv-1")
    await transport.end_conversation()
    remote.release.set()
    result = await starting

    assert not result.ok
    assert result.status == "error"
    assert result.error_category == ErrorCategory.CONNECTION_ERROR
    assert transport.state == SessionState.ENDED
    assert not transport.is_connected()
    assert transport.get_session_id() is None
    assert len(errors) == 1
    assert remote.paths() == ["start", "end"]


@pytest.mark.asyncio
async def test_send_audio_chunk_envelope(remote, make_transport):
    transport = make_transport()
    await transport.start_conversation()

    sent = await transport.send_audio_chunk(b"\x01\x02", is_final=False)

    assert sent is True
    await wait_until(lambda: remote.received)
    envelope = remote.received[0]
    assert envelope["type"] == "audio_chunk"
    assert envelope["session_id"] == "conv-1"
    assert isinstance(envelope["timestamp"], int)
    assert envelope["payload"] == {
        "audio": base64.b64encode(b"\x01\x02").decode("ascii"),
        "isFinal": False,
        "seq": 1,
    }


@pytest.mark.asyncio
async def test_send_without_session_is_dropped(make_transport):
    transport = make_transport()

    assert await transport.send_audio_chunk(b"\x00") is False
    assert transport.queued_messages == 0


@pytest.mark.asyncio
async def test_chunks_queued_while_reconnecting_are_flushed_in_order(remote, make_transport):
    sleep = GateSleep()
    transport = make_transport(sleep=sleep)
    await transport.start_conversation()
    await wait_until(lambda: remote.sockets)

    await remote.sockets[0].close()
    await wait_until(lambda: transport.state == SessionState.RECONNECTING)

    results = [await transport.send_audio_chunk(bytes([i])) for i in (1, 2, 3)]
    assert results == [False, False, False]
    assert transport.queued_messages == 3

    sleep.release()
    await wait_until(lambda: len(remote.received) >= 3)
    await asyncio.sleep(0.05)

    chunks = [m for m in remote.received if m["type"] == "audio_chunk"]
    assert [m["payload"]["seq"] for m in chunks] == [1, 2, 3]
    assert [base64.b64decode(m["payload"]["audio"]) for m in chunks] == [b"\x01", b"\x02", b"\x03"]
    assert transport.queued_messages == 0
    assert transport.reconnect_attempts == 0
    assert transport.is_connected()
    assert remote.paths().count("reconnect") == 1


@pytest.mark.asyncio
async def test_backoff_then_failed_after_max_attempts(remote, make_transport):
    sleep = RecordingSleep()
    transport = make_transport(sleep=sleep)
    closed = record(transport, ConnectionEvent.CONNECTION_CLOSED)
    errors = record(transport, ConnectionEvent.ERROR)

    await transport.start_conversation()
    await wait_until(lambda: remote.sockets)
    remote.reconnect_status = 503

    await remote.sockets[0].close()
    await wait_until(lambda: transport.state == SessionState.FAILED)

    assert sleep.delays == [1, 2, 4, 8, 16]
    assert remote.paths().count("reconnect") == 5
    assert closed[0] == {"session_id": "conv-1", "will_reconnect": True}
    assert len(errors) == 1
    assert isinstance(errors[0], MaxReconnectAttemptsExceeded)
    assert errors[0].attempts == 5
    assert errors[0].category == ErrorCategory.MAX_RECONNECT_ATTEMPTS
    assert transport.get_session_id() is None
    assert event_store.query(event_type="session.failed")

    # Terminal: nothing is queued or retried any more.
    assert await transport.send_audio_chunk(b"\x00") is False
    assert transport.queued_messages == 0
    await asyncio.sleep(0.05)
    assert remote.paths().count("reconnect") == 5


@pytest.mark.asyncio
async def test_malformed_frames_are_ignored(remote, make_transport):
    transport = make_transport()
    finals = record(transport, MessageType.TRANSCRIPT_FINAL)
    await transport.start_conversation()
    await wait_until(lambda: remote.sockets)

    await remote.sockets[-1].send_str("not json")
    await remote.sockets[-1].send_str(json.dumps(["a", "list"]))
    await remote.push({"type": "bogus", "payload": {}})
    await remote.push({"type": "transcript_final", "payload": "not an object"})
    await remote.push({"type": "transcript_final", "payload": {"text": "hello"}, "timestamp": 5, "session_id": "conv-1"})

    await wait_until(lambda: finals)
    assert len(finals) == 1
    assert finals[0].text == "hello"
    assert transport.is_connected()


@pytest.mark.asyncio
async def test_deeply_nested_frame_does_not_stop_dispatch(remote, make_transport):
    transport = make_transport()
    finals = record(transport, MessageType.TRANSCRIPT_FINAL)
    await transport.start_conversation()
    await wait_until(lambda: remote.sockets)

    await remote.sockets[-1].send_str("[" * 100000)
    await remote.push({"type": "transcript_final", "payload": {"text": "still listening"}})

    await wait_until(lambda: finals)
    assert finals[0].text == "still listening"
    assert transport.is_connected()
    assert not transport._reader.done()


@pytest.mark.asyncio
async def test_frame_handling_error_is_logged_and_reading_continues(remote, make_transport, monkeypatch):
    original = transport_module.decode_inbound

    def flaky_decode(raw):
        if raw == "explode":
            raise RuntimeError("decoder bug")
        return original(raw)

    monkeypatch.setattr(transport_module, "decode_inbound", flaky_decode)
    transport = make_transport()
    finals = record(transport, MessageType.TRANSCRIPT_FINAL)
    await transport.start_conversation()
    await wait_until(lambda: remote.sockets)

    await remote.sockets[-1].send_str("explode")
    await remote.push({"type": "transcript_final", "payload": {"text": "after"}})

    await wait_until(lambda: finals)
    assert finals[0].text == "after"
    assert transport.is_connected()


@pytest.mark.asyncio
async def test_inbound_dispatch_preserves_order(remote, make_transport):
    transport = make_transport()
    seen = []
    for key in (MessageType.AI_THINKING, MessageType.AI_SPEAKING, MessageType.AI_RESPONSE_COMPLETE):
        transport.on(key, lambda m: seen.append(m.type))
    await transport.start_conversation()
    await wait_until(lambda: remote.sockets)

    await remote.push({"type": "ai_thinking", "payload": {}})
    await remote.push({"type": "ai_speaking", "payload": {}})
    await remote.push({"type": "ai_response_complete", "payload": {"text": "ok"}})

    await wait_until(lambda: len(seen) == 3)
    assert seen == [MessageType.AI_THINKING, MessageType.AI_SPEAKING, MessageType.AI_RESPONSE_COMPLETE]


@pytest.mark.asyncio
async def test_emergency_detected_dispatched_and_recorded(remote, make_transport):
    transport = make_transport()
    emergencies = record(transport, MessageType.EMERGENCY_DETECTED)
    await transport.start_conversation()
    await wait_until(lambda: remote.sockets)

    await remote.push({"type": "emergency_detected", "payload": {"level": "high"}, "session_id": "conv-1"})

    await wait_until(lambda: emergencies)
    assert emergencies[0].payload == {"level": "high"}
    events = event_store.query(event_type="emergency.detected")
    assert len(events) == 1
    assert events[0]["payload_keys"] == ["level"]


@pytest.mark.asyncio
async def test_conversation_end_tears_down_without_reconnect(remote, make_transport):
    transport = make_transport()
    ends = record(transport, MessageType.CONVERSATION_END)
    closed = record(transport, ConnectionEvent.CONNECTION_CLOSED)
    await transport.start_conversation()
    await wait_until(lambda: remote.sockets)

    await remote.push({"type": "conversation_end", "payload": {"reason": "done"}})

    await wait_until(lambda: transport.state == SessionState.ENDED)
    await wait_until(lambda: closed)
    assert len(ends) == 1
    assert not transport.is_connected()
    assert closed == [{"session_id": "conv-1", "will_reconnect": False}]

    await transport.end_conversation()
    await asyncio.sleep(0.05)
    assert "reconnect" not in remote.paths()
    assert "end" not in remote.paths()


@pytest.mark.asyncio
async def test_connect_timeout_is_a_failed_start(remote, make_transport):
    remote.ws_path = "/slow"
    transport = make_transport(connect_timeout=0.2)
    errors = record(transport, ConnectionEvent.CONNECTION_ERROR)

    result = await transport.start_conversation()

    assert not result.ok
    assert result.status == "error"
    assert result.error_category == ErrorCategory.CONNECT_TIMEOUT
    assert result.session_id == "conv-1"
    assert transport.state == SessionState.FAILED
    assert len(errors) == 1


@pytest.mark.asyncio
async def test_handshake_failure_result(remote, make_transport):
    remote.start_status = 500
    transport = make_transport()

    result = await transport.start_conversation({"full_name": "Jane"})

    assert not result.ok
    assert result.error_category == ErrorCategory.HANDSHAKE_FAILED
    assert "500" in result.error
    assert transport.get_session_id() is None
    assert transport.state == SessionState.FAILED
    assert not remote.sockets


@pytest.mark.asyncio
async def test_rejected_credentials(remote, make_transport):
    remote.start_status = 401
    transport = make_transport()

    result = await transport.start_conversation()

    assert result.error_category == ErrorCategory.AUTH_FAILED


@pytest.mark.asyncio
async def test_missing_token_fails_without_request(remote, make_transport):
    transport = make_transport(token=None)

    result = await transport.start_conversation()

    assert result.error_category == ErrorCategory.AUTH_FAILED
    assert remote.requests == []


@pytest.mark.asyncio
async def test_end_conversation(remote, make_transport):
    sleep = RecordingSleep()
    transport = make_transport(sleep=sleep)
    closed = record(transport, ConnectionEvent.CONNECTION_CLOSED)
    await transport.start_conversation()

    await transport.end_conversation()

    assert ("end", {"session_id": "conv-1"}, "Bearer test-token") in remote.requests
    await wait_until(lambda: any(m["type"] == "conversation_end" for m in remote.received))
    assert sleep.delays == [0.5]
    assert transport.state == SessionState.ENDED
    assert not transport.is_connected()
    assert transport.get_session_id() is None
    assert closed == [{"session_id": "conv-1", "will_reconnect": False}]

    # Second call is a no-op.
    await transport.end_conversation()
    assert remote.paths().count("end") == 1
    assert len(closed) == 1


@pytest.mark.asyncio
async def test_end_before_start_is_safe(make_transport):
    transport = make_transport()
    await transport.end_conversation()
    await transport.end_conversation()
    assert transport.state == SessionState.IDLE


@pytest.mark.asyncio
async def test_end_during_backoff_cancels_reconnect(remote, make_transport):
    sleep = GateSleep()
    transport = make_transport(sleep=sleep)
    await transport.start_conversation()
    await wait_until(lambda: remote.sockets)

    await remote.sockets[0].close()
    await wait_until(lambda: transport.state == SessionState.RECONNECTING)
    await transport.send_audio_chunk(b"\x01")

    await transport.end_conversation()
    sleep.release()
    await asyncio.sleep(0.05)

    assert transport.state == SessionState.ENDED
    assert "reconnect" not in remote.paths()
    assert remote.paths().count("end") == 1
    assert transport.queued_messages == 0


@pytest.mark.asyncio
async def test_restart_ends_previous_session(remote, make_transport):
    transport = make_transport()
    await transport.start_conversation()

    result = await transport.start_conversation()

    assert result.ok
    assert remote.paths() == ["start", "end", "start"]


def test_listener_keys_validated():
    transport = ConversationSessionTransport("http://localhost", StaticTokenProvider("t"))

    with pytest.raises(ValueError):
        transport.on("nope", lambda m: None)
    with pytest.raises(ValueError):
        transport.on(MessageType.AUDIO_CHUNK, lambda m: None)

    listener = lambda m: None
    transport.on("transcript_final", listener)
    transport.off(MessageType.TRANSCRIPT_FINAL, listener)
    transport.off(MessageType.TRANSCRIPT_FINAL, listener)

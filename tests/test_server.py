"""
Voice Relay Server Tests
========================

End-to-end: a browser client talks to the relay, which talks to a fake
realtime endpoint served locally with websockets.

Run:
    python -m pytest tests/test_server.py -v
"""
import asyncio
import base64
import json
import socket

import pytest
import pytest_asyncio
import soundfile as sf
from websockets.asyncio.client import connect
from websockets.asyncio.server import serve
from websockets.exceptions import ConnectionClosed

from voice_relay.core import ConfigurationError
from voice_relay.contrib.server import WSServer, close_reason

from conftest import audio_delta, response_done, upstream_event

ALLOWED_ORIGIN = "http://localhost:5173"


class FakeUpstream:
    """Scripted stand-in for the realtime API."""

    def __init__(self):
        self.port = None
        self.behavior = None
        self.received = []
        self.headers = None
        self.path = None
        self.close_code = None
        self.close_reason = None

    async def handler(self, ws):
        self.headers = ws.request.headers
        self.path = ws.request.path
        try:
            await self.behavior(self, ws)
        finally:
            await ws.wait_closed()
            self.close_code = ws.close_code
            self.close_reason = ws.close_reason

    async def recv_json(self, ws) -> dict:
        event = json.loads(await ws.recv())
        self.received.append(event)
        return event


async def eventually(predicate, timeout: float = 3.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.02)


def closed_port() -> int:
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest_asyncio.fixture
async def upstream():
    fake = FakeUpstream()
    async with serve(fake.handler, "127.0.0.1", 0) as server:
        fake.port = server.sockets[0].getsockname()[1]
        yield fake


@pytest_asyncio.fixture
async def relay(settings, upstream):
    settings = settings.model_copy(update={
        "base_url": f"ws://127.0.0.1:{upstream.port}/v1/realtime",
    })
    server = WSServer(settings=settings)
    async with server.listen() as ws_server:
        server.test_url = f"ws://127.0.0.1:{ws_server.sockets[0].getsockname()[1]}"
        yield server
    await server.drain()


async def until_closed(ws):
    """Read until the relay closes the connection; return the close frame."""
    with pytest.raises(ConnectionClosed) as exc:
        while True:
            await ws.recv()
    return exc.value.rcvd


class TestRelayTurn:

    async def test_full_response_turn(self, relay, upstream, settings):
        async def behavior(fake, ws):
            await fake.recv_json(ws)  # session.update
            await ws.send(upstream_event("session.created", session={"id": "sess_1"}))
            await fake.recv_json(ws)  # user audio
            await ws.send(upstream_event("input_audio_buffer.speech_started"))
            await ws.send(upstream_event("response.created", response={"id": "resp_1"}))
            await ws.send(audio_delta(b"\x10\x00\x20\x00"))
            await ws.send(upstream_event("response.text.delta", delta="Hel"))
            await ws.send(response_done(text="Hello"))
        upstream.behavior = behavior

        async with connect(relay.test_url, origin=ALLOWED_ORIGIN) as client:
            connected = json.loads(await client.recv())
            assert connected == {"type": "event", "name": "AIConnected", "sessionId": "sess_1"}

            await client.send(b"\x01\x00\x02\x00")
            assert json.loads(await client.recv())["name"] == "AISpeechDetected"
            assert json.loads(await client.recv())["name"] == "AIResponseStart"
            assert await client.recv() == b"\x10\x00\x20\x00"
            assert json.loads(await client.recv()) == {"type": "textDelta", "text": "Hel"}
            assert json.loads(await client.recv()) == {
                "type": "event", "name": "AIResponseEnd", "finalText": "Hello",
            }

        update, append = upstream.received
        assert update["type"] == "session.update"
        assert append == {
            "type": "input_audio_buffer.append",
            "audio": base64.b64encode(b"\x01\x00\x02\x00").decode(),
        }
        assert upstream.headers["Authorization"] == "Bearer sk-test"
        assert upstream.headers["OpenAI-Beta"] == "realtime=v1"
        assert "model=" in upstream.path

        await relay.drain()
        assert (settings.audio_dir / "resp_1_backend.raw").read_bytes() == b"\x10\x00\x20\x00"
        transcripts = list(settings.transcripts_dir.glob("*_resp_1_transcript.txt"))
        assert transcripts[0].read_text() == "Hello"

        await eventually(lambda: relay.conversation.entries("client_disconnected"))
        types = [e.type for e in relay.conversation.entries()]
        assert types[:3] == ["connect", "session_created", "user_audio_chunk_sent"]
        assert "assistant_text" in types

    async def test_control_messages_are_forwarded(self, relay, upstream):
        async def behavior(fake, ws):
            await fake.recv_json(ws)  # session.update
            await ws.send(upstream_event("session.created", session={"id": "sess_2"}))
            for _ in range(4):
                await fake.recv_json(ws)
        upstream.behavior = behavior

        async with connect(relay.test_url, origin=ALLOWED_ORIGIN) as client:
            await client.recv()
            await client.send(json.dumps({"type": "launch"}))
            error = json.loads(await client.recv())
            assert error["type"] == "error"

            await client.send(json.dumps({"type": "commit"}))
            await client.send(json.dumps({"type": "text", "text": "hi"}))
            await eventually(lambda: len(upstream.received) == 5)

        assert [e["type"] for e in upstream.received[1:]] == [
            "input_audio_buffer.commit",
            "response.create",
            "conversation.item.create",
            "response.create",
        ]


class TestClosePropagation:

    async def test_disallowed_origin_is_rejected(self, relay):
        async with connect(relay.test_url, origin="http://evil.example") as client:
            frame = await until_closed(client)
        assert frame.code == 1008
        assert frame.reason == "Origin not allowed"

    async def test_missing_origin_is_allowed(self, relay, upstream):
        async def behavior(fake, ws):
            await fake.recv_json(ws)
            await ws.send(upstream_event("session.created", session={"id": "sess_3"}))
        upstream.behavior = behavior

        async with connect(relay.test_url) as client:
            assert json.loads(await client.recv())["name"] == "AIConnected"

    async def test_upstream_error_closes_both_sides(self, relay, upstream):
        async def behavior(fake, ws):
            await fake.recv_json(ws)
            await ws.send(upstream_event("error", error={"message": "bad things", "code": "oops"}))
        upstream.behavior = behavior

        async with connect(relay.test_url, origin=ALLOWED_ORIGIN) as client:
            frame = await until_closed(client)

        assert frame.code == 1011
        assert frame.reason == "Upstream error: bad things"
        await eventually(lambda: upstream.close_code is not None)
        assert upstream.close_code == 1011
        assert relay.conversation.entries("upstream_error")[0].fields["code"] == "oops"

    async def test_upstream_session_closed(self, relay, upstream):
        async def behavior(fake, ws):
            await fake.recv_json(ws)
            await ws.send(upstream_event("session.closed"))
        upstream.behavior = behavior

        async with connect(relay.test_url, origin=ALLOWED_ORIGIN) as client:
            frame = await until_closed(client)
        assert frame.code == 1000
        assert frame.reason == "Upstream session closed"

    async def test_upstream_close_ends_client(self, relay, upstream):
        async def behavior(fake, ws):
            await fake.recv_json(ws)
            await ws.close(1000, "bye")
        upstream.behavior = behavior

        async with connect(relay.test_url, origin=ALLOWED_ORIGIN) as client:
            frame = await until_closed(client)
        assert frame.code == 1000
        assert frame.reason == "Upstream session ended (1000)"
        entry = relay.conversation.entries("upstream_closed")[0]
        assert entry.fields == {"code": 1000, "reason": "bye"}

    async def test_upstream_close_with_error_code_is_still_a_close(self, relay, upstream):
        async def behavior(fake, ws):
            await fake.recv_json(ws)
            await ws.close(1011, "server overloaded")
        upstream.behavior = behavior

        async with connect(relay.test_url, origin=ALLOWED_ORIGIN) as client:
            frame = await until_closed(client)
        assert frame.code == 1000
        assert frame.reason == "Upstream session ended (1011)"
        entry = relay.conversation.entries("upstream_closed")[0]
        assert entry.fields == {"code": 1011, "reason": "server overloaded"}
        assert relay.conversation.entries("upstream_ws_error") == []

    async def test_upstream_drop_is_a_connection_error(self, relay, upstream):
        async def behavior(fake, ws):
            await fake.recv_json(ws)
            ws.transport.abort()
        upstream.behavior = behavior

        async with connect(relay.test_url, origin=ALLOWED_ORIGIN) as client:
            frame = await until_closed(client)
        assert frame.code == 1011
        assert frame.reason == "Upstream connection error"
        assert relay.conversation.entries("upstream_ws_error")

    async def test_long_upstream_error_is_truncated(self, relay, upstream):
        async def behavior(fake, ws):
            await fake.recv_json(ws)
            await ws.send(upstream_event("error", error={"message": "x" * 150}))
        upstream.behavior = behavior

        async with connect(relay.test_url, origin=ALLOWED_ORIGIN) as client:
            frame = await until_closed(client)
        assert frame.code == 1011
        assert frame.reason == "Upstream error: " + "x" * 100

    async def test_client_close_ends_upstream(self, relay, upstream):
        async def behavior(fake, ws):
            await fake.recv_json(ws)
            await ws.send(upstream_event("session.created", session={"id": "sess_4"}))
        upstream.behavior = behavior

        async with connect(relay.test_url, origin=ALLOWED_ORIGIN) as client:
            await client.recv()

        await eventually(lambda: upstream.close_code is not None)
        assert upstream.close_code == 1000
        assert upstream.close_reason == "Client disconnected"

    async def test_client_drop_closes_upstream_with_error(self, relay, upstream):
        async def behavior(fake, ws):
            await fake.recv_json(ws)
            await ws.send(upstream_event("session.created", session={"id": "sess_5"}))
        upstream.behavior = behavior

        client = await connect(relay.test_url, origin=ALLOWED_ORIGIN)
        await client.recv()
        client.transport.abort()

        await eventually(lambda: upstream.close_code is not None)
        assert upstream.close_code == 1011
        assert upstream.close_reason == "Client connection error"
        assert relay.conversation.entries("client_ws_error")
        assert relay.conversation.entries("client_disconnected") == []

    async def test_unreachable_upstream(self, settings):
        settings = settings.model_copy(update={
            "base_url": f"ws://127.0.0.1:{closed_port()}/v1/realtime",
        })
        server = WSServer(settings=settings)
        async with server.listen() as ws_server:
            url = f"ws://127.0.0.1:{ws_server.sockets[0].getsockname()[1]}"
            async with connect(url, origin=ALLOWED_ORIGIN) as client:
                frame = await until_closed(client)
        assert frame.code == 1011
        assert frame.reason == "Failed to initiate upstream connection"


class TestLifecycle:

    async def test_shutdown_closes_clients_going_away(self, settings, upstream):
        async def behavior(fake, ws):
            await fake.recv_json(ws)
            await ws.send(upstream_event("session.created", session={"id": "sess_6"}))
        upstream.behavior = behavior
        settings = settings.model_copy(update={
            "base_url": f"ws://127.0.0.1:{upstream.port}/v1/realtime",
        })

        server = WSServer(settings=settings)
        async with server.listen() as ws_server:
            url = f"ws://127.0.0.1:{ws_server.sockets[0].getsockname()[1]}"
            client = await connect(url, origin=ALLOWED_ORIGIN)
            assert json.loads(await client.recv())["name"] == "AIConnected"

        frame = await until_closed(client)
        assert frame.code == 1001
        await eventually(lambda: upstream.close_code is not None)
        assert upstream.close_code == 1000
        assert server.conversation.entries("client_disconnected")[0].fields["code"] == 1001

    async def test_debug_mode_records_user_audio(self, settings, upstream):
        async def behavior(fake, ws):
            await fake.recv_json(ws)
            await ws.send(upstream_event("session.created", session={"id": "sess_7"}))
            await fake.recv_json(ws)
            await fake.recv_json(ws)
        upstream.behavior = behavior
        settings = settings.model_copy(update={
            "base_url": f"ws://127.0.0.1:{upstream.port}/v1/realtime",
            "debug": True,
        })

        server = WSServer(settings=settings)
        async with server.listen() as ws_server:
            url = f"ws://127.0.0.1:{ws_server.sockets[0].getsockname()[1]}"
            async with connect(url, origin=ALLOWED_ORIGIN) as client:
                await client.recv()
                await client.send(b"\x01\x00\x02")
                await client.send(b"\x00")
                await eventually(lambda: len(upstream.received) == 3)

        recordings = list(settings.debug_audio_dir.glob("session_*.wav"))
        assert len(recordings) == 1
        samples, rate = sf.read(recordings[0], dtype="int16")
        assert rate == 16000
        assert samples.tolist() == [1, 2]


class TestServerSetup:

    async def test_http_banner(self, relay):
        port = int(relay.test_url.rsplit(":", 1)[1])
        reader, writer = await asyncio.open_connection("127.0.0.1", port)
        writer.write(b"GET / HTTP/1.1\r\nHost: localhost\r\n\r\n")
        await writer.drain()
        status = await reader.readline()
        writer.close()
        await writer.wait_closed()
        assert status.startswith(b"HTTP/1.1 200")

    def test_requires_api_key(self, settings):
        with pytest.raises(ConfigurationError):
            WSServer(settings=settings.model_copy(update={"api_key": None}))

    def test_origin_policy(self, settings):
        server = WSServer(settings=settings)
        assert server.origin_allowed(None)
        assert server.origin_allowed(ALLOWED_ORIGIN)
        assert not server.origin_allowed("https://other.example")

    def test_close_reason_fits_frame(self):
        assert close_reason("short") == "short"
        assert len(close_reason("é" * 100).encode("utf-8")) <= 123

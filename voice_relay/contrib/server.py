"""
WebSocket relay server.

Accepts browser connections, opens one upstream realtime API connection per
browser, and pumps messages both ways through a RelaySession:

- Browser binary frames (PCM16) -> ``input_audio_buffer.append`` upstream
- Browser JSON controls -> upstream commit / cancel / clear / text events
- Upstream events -> browser ``event`` / ``textDelta`` JSON and binary audio
- Finished responses -> audio and transcript files (thread pool, not awaited)

Whichever side ends first, the other side is closed too.
"""
import asyncio
import logging
import signal
from concurrent.futures import Future, ThreadPoolExecutor
from http import HTTPStatus
from typing import List, Optional, Union

from websockets.asyncio.client import ClientConnection, connect
from websockets.asyncio.server import ServerConnection, serve
from websockets.exceptions import ConnectionClosed, ConnectionClosedError, WebSocketException

from ..core import (
    RelaySession, ConversationLog, Event,
    ArtifactStore, FileArtifactStore,
    ProtocolError, UpstreamError, UpstreamSessionClosed,
)
from .config import RelaySettings, get_settings
from .debug import SessionRecorder
from .protocol import (
    MsgType, EventName, parse_message,
    ConnectedMsg, ResponseEndMsg, EventMsg, TextDeltaMsg, ErrorMsg,
)

log = logging.getLogger(__name__)

# Close codes
NORMAL_CLOSURE = 1000
GOING_AWAY = 1001
POLICY_VIOLATION = 1008
INTERNAL_ERROR = 1011

MAX_ERROR_CHARS = 100
MAX_REASON_BYTES = 123   # RFC 6455 limit for a close reason

Outgoing = Union[str, bytes]


def close_reason(text: str) -> str:
    """Trim a close reason to what fits in a close frame."""
    return text.encode("utf-8")[:MAX_REASON_BYTES].decode("utf-8", errors="ignore")


def _transport_failure(error: Optional[BaseException]) -> bool:
    """True when the peer vanished without sending a close frame."""
    return isinstance(error, ConnectionClosedError) and error.rcvd is None


class WSServer:
    """
    Relay server bridging browser clients to the realtime API.

    Holds what is shared across connections: settings, the conversation log,
    the artifact store and the thread pool used for file writes.
    """

    def __init__(
        self,
        settings: Optional[RelaySettings] = None,
        store: Optional[ArtifactStore] = None,
        conversation: Optional[ConversationLog] = None,
    ):
        """
        Initialize server.

        Args:
            settings: Server configuration
            store: Artifact storage (default: FileArtifactStore)
            conversation: Shared conversation log (default: new log)

        Raises:
            ConfigurationError: No API key configured
        """
        self._settings = settings or get_settings()
        self._relay_config = self._settings.to_relay_config()
        self._store = store or FileArtifactStore(
            self._settings.audio_dir,
            self._settings.transcripts_dir,
            sample_rate=self._settings.output_sample_rate,
            save_wav=self._settings.save_wav,
        )
        self.conversation = conversation if conversation is not None else ConversationLog()

        self._executor = ThreadPoolExecutor(max_workers=4)
        self._pending_writes: set[Future] = set()

    # ==================== Connection handling ====================

    def origin_allowed(self, origin: Optional[str]) -> bool:
        """Requests without an Origin header (curl, native apps) are allowed."""
        return not origin or origin in self._settings.allowed_origins

    def _process_request(self, connection: ServerConnection, request):
        """Answer plain HTTP requests with a status banner."""
        if request.headers.get("Upgrade", "").lower() != "websocket":
            return connection.respond(
                HTTPStatus.OK,
                f"Voice relay WebSocket server is running on port {self._settings.port}\n",
            )
        return None

    async def handler(self, websocket: ServerConnection):
        """Handle one browser connection."""
        client_ip = websocket.remote_address[0] if websocket.remote_address else None
        origin = websocket.request.headers.get("Origin") if websocket.request else None

        if not self.origin_allowed(origin):
            log.warning(f"Rejected connection from {client_ip or 'Unknown IP'} "
                        f"(Origin: {origin}): origin not allowed")
            await websocket.close(POLICY_VIOLATION, "Origin not allowed")
            return

        log.info(f"New client connection allowed from {client_ip or 'Unknown IP'} "
                 f"(Origin: {origin or 'N/A'})")
        session = RelaySession(
            str(id(websocket)), self._relay_config, self.conversation, client_ip=client_ip,
        )
        recorder = SessionRecorder(
            session.id, self._settings.debug_audio_dir, self._settings.input_sample_rate,
        ) if self._settings.debug else None
        self.conversation.append("connect", ip=client_ip)

        try:
            await self._bridge(websocket, session, recorder)
        except Exception as e:
            log.error(f"{session.prefix} Handler error: {e}", exc_info=True)
            await websocket.close(INTERNAL_ERROR, "Internal relay error")
        finally:
            session.close()
            if recorder:
                recorder.close()

    async def _bridge(
        self,
        websocket: ServerConnection,
        session: RelaySession,
        recorder: Optional[SessionRecorder],
    ):
        prefix = session.prefix
        log.info(f"{prefix} Connecting upstream: {self._relay_config.url}")
        try:
            upstream = await connect(
                self._relay_config.url,
                additional_headers=self._relay_config.headers(),
                open_timeout=self._settings.connect_timeout,
            )
        except (OSError, TimeoutError, asyncio.TimeoutError, WebSocketException) as e:
            log.error(f"{prefix} Error opening upstream connection: {e}")
            self.conversation.append("upstream_ws_error", message=str(e))
            await websocket.close(INTERNAL_ERROR, "Failed to initiate upstream connection")
            return

        try:
            log.info(f"{prefix} Connected to upstream realtime API")
            await upstream.send(session.session_update())
            log.info(f"{prefix} Sent session configuration "
                     f"({self._relay_config.input_audio_format} in, "
                     f"{self._relay_config.output_audio_format} out, "
                     f"voice={self._relay_config.voice})")

            outbox: List[Outgoing] = []
            self._wire(session, outbox)

            client_task = asyncio.create_task(
                self._pump_client(websocket, upstream, session, recorder))
            upstream_task = asyncio.create_task(
                self._pump_upstream(websocket, upstream, session, outbox))
            done, pending = await asyncio.wait(
                {client_task, upstream_task}, return_when=asyncio.FIRST_COMPLETED,
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

            if upstream_task in done:
                await self._upstream_ended(websocket, upstream, session, upstream_task)
            else:
                await self._client_ended(websocket, upstream, session, client_task)
        finally:
            await upstream.close()

    def _wire(self, session: RelaySession, outbox: List[Outgoing]):
        """Subscribe browser forwarding and artifact saving to session events."""

        def on_created(e):
            outbox.append(ConnectedMsg(e.session_id).json())

        def on_response_done(e):
            self._save_artifacts(e.response_id, e.audio, e.text)
            outbox.append(ResponseEndMsg(e.text).json())

        session.on(Event.SESSION_CREATED, on_created)
        session.on(Event.RESPONSE_STARTED,
                   lambda e: outbox.append(EventMsg(EventName.AI_RESPONSE_START).json()))
        session.on(Event.AUDIO_DELTA, lambda e: outbox.append(e.audio))
        session.on(Event.TEXT_DELTA, lambda e: outbox.append(TextDeltaMsg(e.text).json()))
        session.on(Event.RESPONSE_DONE, on_response_done)
        session.on(Event.SPEECH_STARTED,
                   lambda e: outbox.append(EventMsg(EventName.AI_SPEECH_DETECTED).json()))
        session.on(Event.SPEECH_STOPPED,
                   lambda e: outbox.append(EventMsg(EventName.AI_SPEECH_ENDED).json()))

    async def _pump_upstream(
        self,
        websocket: ServerConnection,
        upstream: ClientConnection,
        session: RelaySession,
        outbox: List[Outgoing],
    ):
        async for message in upstream:
            try:
                session.feed(message)
            finally:
                await self._flush(websocket, session, outbox)

    async def _flush(self, websocket: ServerConnection, session: RelaySession, outbox: List[Outgoing]):
        messages = outbox[:]
        outbox.clear()
        for message in messages:
            try:
                await websocket.send(message)
            except ConnectionClosed:
                log.debug(f"{session.prefix} Client gone, dropping outgoing message")
                return

    async def _pump_client(
        self,
        websocket: ServerConnection,
        upstream: ClientConnection,
        session: RelaySession,
        recorder: Optional[SessionRecorder],
    ):
        async for message in websocket:
            if isinstance(message, bytes):
                if recorder:
                    recorder.write(message)
                await self._send_upstream(upstream, session, [session.client_audio(message)])
            else:
                await self._handle_control(websocket, upstream, session, message)

    async def _handle_control(
        self,
        websocket: ServerConnection,
        upstream: ClientConnection,
        session: RelaySession,
        raw: str,
    ):
        try:
            msg_type, data = parse_message(raw)
        except ProtocolError as e:
            log.warning(f"{session.prefix} Invalid client message: {e}")
            await websocket.send(ErrorMsg(f"Invalid message: {e}").json())
            return

        log.info(f"{session.prefix} Control message from client: {msg_type.value}")
        if msg_type == MsgType.COMMIT:
            events = session.commit()
        elif msg_type == MsgType.CANCEL:
            events = session.cancel()
        elif msg_type == MsgType.CLEAR:
            events = session.clear()
        else:
            events = session.user_text(data["text"])
        await self._send_upstream(upstream, session, events)

    async def _send_upstream(self, upstream: ClientConnection, session: RelaySession, events: List[str]):
        for event in events:
            try:
                await upstream.send(event)
            except ConnectionClosed:
                # Upstream pump sees the close and ends the bridge
                log.warning(f"{session.prefix} Upstream not open, dropping client message")
                return

    # ==================== Teardown ====================

    async def _upstream_ended(
        self,
        websocket: ServerConnection,
        upstream: ClientConnection,
        session: RelaySession,
        task: asyncio.Task,
    ):
        prefix = session.prefix
        error = task.exception()

        if isinstance(error, UpstreamError):
            message = error.message[:MAX_ERROR_CHARS]
            await upstream.close(INTERNAL_ERROR, close_reason(f"Reported error: {message}"))
            await websocket.close(INTERNAL_ERROR, close_reason(f"Upstream error: {message}"))
        elif isinstance(error, UpstreamSessionClosed):
            await upstream.close(NORMAL_CLOSURE, "Session closed by server")
            await websocket.close(NORMAL_CLOSURE, "Upstream session closed")
        elif _transport_failure(error):
            log.error(f"{prefix} Upstream WebSocket error: {error}")
            self.conversation.append("upstream_ws_error", message=str(error))
            await websocket.close(INTERNAL_ERROR, "Upstream connection error")
        elif error is not None and not isinstance(error, ConnectionClosed):
            raise error
        else:
            code, reason = upstream.close_code, upstream.close_reason or ""
            log.info(f"{prefix} Upstream WebSocket closed: code={code}, reason={reason}")
            self.conversation.append("upstream_closed", code=code, reason=reason)
            await websocket.close(NORMAL_CLOSURE, f"Upstream session ended ({code})")

    async def _client_ended(
        self,
        websocket: ServerConnection,
        upstream: ClientConnection,
        session: RelaySession,
        task: asyncio.Task,
    ):
        prefix = session.prefix
        error = task.exception()

        if _transport_failure(error):
            log.error(f"{prefix} Client WebSocket error: {error}")
            self.conversation.append("client_ws_error", message=str(error))
            await upstream.close(INTERNAL_ERROR, "Client connection error")
        elif error is not None and not isinstance(error, ConnectionClosed):
            raise error
        else:
            code, reason = websocket.close_code, websocket.close_reason or ""
            log.info(f"{prefix} Client disconnected: code={code}, reason={reason}")
            self.conversation.append("client_disconnected", code=code, reason=reason)
            await upstream.close(NORMAL_CLOSURE, "Client disconnected")

    # ==================== Artifacts ====================

    def _save_artifacts(self, response_id: str, audio: bytes, text: str):
        """Write response files in the thread pool without waiting."""
        future = self._executor.submit(self._store.save_response, response_id, audio, text)
        self._pending_writes.add(future)
        future.add_done_callback(self._write_done)

    def _write_done(self, future: Future):
        self._pending_writes.discard(future)
        if future.exception() is not None:
            log.error(f"Artifact write failed: {future.exception()}")

    async def drain(self):
        """Wait for queued artifact writes to finish."""
        pending = [asyncio.wrap_future(f) for f in list(self._pending_writes)]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # ==================== Lifecycle ====================

    def listen(self, host: Optional[str] = None, port: Optional[int] = None):
        """
        Build the websockets server.

        Use as ``async with server.listen() as ws_server:``. Leaving the
        block closes every open client with 1001 (going away).
        """
        return serve(
            self.handler,
            host or self._settings.host,
            self._settings.port if port is None else port,
            process_request=self._process_request,
            close_timeout=self._settings.shutdown_timeout,
        )

    async def run(self):
        """Run the relay until SIGTERM or SIGINT."""
        loop = asyncio.get_running_loop()
        stop = loop.create_future()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._request_stop, stop, sig)
            except NotImplementedError:
                pass  # Windows: rely on KeyboardInterrupt

        log.info(f"CORS enabled for origins: {', '.join(self._settings.allowed_origins)}")
        async with self.listen():
            log.info(f"Relay listening on ws://{self._settings.host}:{self._settings.port}")
            await stop
            log.info("Closing server...")
        await self.drain()
        log.info("Server closed")

    @staticmethod
    def _request_stop(stop: asyncio.Future, sig: signal.Signals):
        log.info(f"{sig.name} received")
        if not stop.done():
            stop.set_result(None)

    def start(self):
        """Start server (blocking)."""
        try:
            asyncio.run(self.run())
        except KeyboardInterrupt:
            log.info("Server stopped")
        finally:
            self._executor.shutdown(wait=True)


def create_server(
    host: str = "0.0.0.0",
    port: int = 8080,
    debug: bool = False,
    **kwargs
) -> WSServer:
    """
    Factory function to create configured server.

    Args:
        host: Server host
        port: Server port
        debug: Enable debug mode (records user audio)
        **kwargs: Additional settings

    Returns:
        Configured WSServer instance

    Raises:
        ConfigurationError: No API key configured
    """
    settings = RelaySettings(host=host, port=port, debug=debug, **kwargs)
    return WSServer(settings=settings)

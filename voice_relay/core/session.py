"""
Relay Session - per-connection bridge between a browser and the realtime API.

Holds the per-connection bookkeeping (upstream session id, turn flag,
current response id, accumulated response audio) and translates messages
in both directions. It does no I/O itself: upstream messages go in through
``feed()`` and come out as events, browser audio goes in through
``client_audio()`` and comes out as the upstream JSON event to send.

Example:
    session = RelaySession("42", config, client_ip="127.0.0.1")
    session.on(Event.AUDIO_DELTA, lambda e: play(e.audio))
    session.on(Event.RESPONSE_DONE, lambda e: save(e.response_id, e.text))

    await upstream.send(session.session_update())
    async for message in upstream:
        session.feed(message)
"""
import base64
import binascii
import json
import logging
import time
from typing import List, Optional, Union

from .config import RelayConfig
from .conversation import ConversationLog
from .events import (
    Event, EventEmitter, EventHandler,
    SessionEvent, ResponseStartedEvent, AudioDeltaEvent,
    TextDeltaEvent, ResponseDoneEvent, SpeechEvent,
)
from .exceptions import UpstreamError, UpstreamSessionClosed

log = logging.getLogger(__name__)

NO_TEXT_PLACEHOLDER = "[No text extracted]"

# Upstream events that need no action
IGNORED_EVENTS = frozenset({
    "input_audio_buffer.committed",
    "input_audio_buffer.cleared",
    "conversation.item.created",
    "response.output_item.added",
    "response.content_part.added",
    "response.audio.done",
    "response.text.done",
    "response.audio_transcript.delta",
    "response.audio_transcript.done",
    "response.content_part.done",
    "response.output_item.done",
    "rate_limits.updated",
})

ERROR_EVENTS = frozenset({"error", "invalid_request_error"})


def _now_ms() -> int:
    return int(time.time() * 1000)


def parse_error(data: dict) -> UpstreamError:
    """
    Build an UpstreamError from an upstream error event.

    The message may sit at the top level or inside an ``error`` object,
    either as a plain string or as an object with a ``message`` field.
    """
    raw = data.get("message") or data.get("error")
    if isinstance(raw, str):
        message = raw
    elif isinstance(raw, dict) and isinstance(raw.get("message"), str):
        message = raw["message"]
    else:
        message = json.dumps(raw or data)

    nested = data.get("error") if isinstance(data.get("error"), dict) else {}
    code = data.get("code") or nested.get("code") or "UnknownCode"
    event_id = data.get("event_id") or nested.get("event_id") or "N/A"
    return UpstreamError(message, code=str(code), event_id=str(event_id))


def extract_final_text(response: Optional[dict]) -> str:
    """
    Pull the assistant's final text out of a ``response.done`` payload.

    Uses the first ``message`` output item: its first text part, or failing
    that the transcript of its first audio part.
    """
    if not isinstance(response, dict):
        return ""
    output = response.get("output")
    if not isinstance(output, list):
        return ""
    message = next(
        (o for o in output if isinstance(o, dict) and o.get("type") == "message"), None,
    )
    if not message:
        return ""
    content = message.get("content")
    if not isinstance(content, list):
        return ""
    content = [part for part in content if isinstance(part, dict)]

    for part in content:
        if part.get("type") in ("output_text", "text") and part.get("text"):
            return part["text"]
    for part in content:
        if part.get("type") == "audio" and part.get("transcript"):
            return part["transcript"]
    return ""


class RelaySession:
    """
    Bridge state for one browser connection.

    Attributes:
        id: Local connection identifier
        client_ip: Browser address, used in log lines
        upstream_session_id: Session id assigned by the realtime API
        turn_in_progress: Whether a response is being generated
        response_id: Id of the response currently being generated
    """

    def __init__(
        self,
        session_id: str,
        config: Optional[RelayConfig] = None,
        conversation: Optional[ConversationLog] = None,
        client_ip: Optional[str] = None,
    ):
        self.id = session_id
        self.client_ip = client_ip
        self._config = config or RelayConfig()
        self._conversation = conversation if conversation is not None else ConversationLog()
        self._events = EventEmitter()

        self.upstream_session_id: Optional[str] = None
        self.turn_in_progress = False
        self.response_id: Optional[str] = None
        self._audio_chunks: List[bytes] = []

        self._dispatch = {
            "session.created": self._on_session_created,
            "session.updated": self._on_session_updated,
            "session.closed": self._on_session_closed,
            "response.created": self._on_response_created,
            "response.audio.delta": self._on_audio_delta,
            "response.text.delta": self._on_text_delta,
            "response.done": self._on_response_done,
            "input_audio_buffer.speech_started": self._on_speech_started,
            "input_audio_buffer.speech_stopped": self._on_speech_stopped,
        }

    @property
    def prefix(self) -> str:
        return f"[{self.client_ip or 'UnknownIP'}]"

    @property
    def buffered_audio_bytes(self) -> int:
        return sum(len(c) for c in self._audio_chunks)

    # ==================== Events ====================

    def on(self, event: Event, handler: Optional[EventHandler] = None):
        """Subscribe to session events. See EventEmitter.on."""
        return self._events.on(event, handler)

    def off(self, event: Event, handler: Optional[EventHandler] = None):
        self._events.off(event, handler)

    def close(self):
        self._events.clear()
        self._audio_chunks = []

    # ==================== Browser -> upstream ====================

    def session_update(self) -> str:
        """Serialized ``session.update`` to send as soon as upstream opens."""
        return json.dumps(self._config.session_update(f"session_config_{_now_ms()}"))

    def client_audio(self, chunk: bytes) -> str:
        """Wrap a binary browser audio frame as ``input_audio_buffer.append``."""
        event = {
            "type": "input_audio_buffer.append",
            "audio": base64.b64encode(chunk).decode("ascii"),
        }
        self._conversation.append("user_audio_chunk_sent", size=len(chunk))
        return json.dumps(event)

    def commit(self) -> List[str]:
        """Close the input buffer and ask for a response (manual turn end)."""
        return [
            json.dumps({"type": "input_audio_buffer.commit"}),
            json.dumps({"type": "response.create"}),
        ]

    def cancel(self) -> List[str]:
        return [json.dumps({"type": "response.cancel"})]

    def clear(self) -> List[str]:
        return [json.dumps({"type": "input_audio_buffer.clear"})]

    def user_text(self, text: str) -> List[str]:
        """Add a typed user message to the conversation and ask for a response."""
        item = {
            "type": "conversation.item.create",
            "item": {
                "type": "message",
                "role": "user",
                "content": [{"type": "input_text", "text": text}],
            },
        }
        self._conversation.append("user_text", text=text)
        return [json.dumps(item), json.dumps({"type": "response.create"})]

    # ==================== Upstream -> browser ====================

    def feed(self, message: Union[str, bytes]) -> None:
        """
        Process one message received from upstream.

        Args:
            message: Text frame (JSON event) or binary frame

        Raises:
            UpstreamError: Upstream reported an error; both sides should close
            UpstreamSessionClosed: Upstream ended the session
        """
        try:
            data = json.loads(message)
        except (json.JSONDecodeError, UnicodeDecodeError):
            if isinstance(message, (bytes, bytearray)) and message:
                log.warning(f"{self.prefix} Non-JSON binary message from upstream "
                            f"({len(message)} bytes), treating as audio")
                self._push_audio(bytes(message))
            else:
                log.error(f"{self.prefix} Could not parse upstream message: {message!r:.200}")
            return

        if not isinstance(data, dict):
            log.warning(f"{self.prefix} Unexpected upstream payload: {data!r:.200}")
            return

        event_type = data.get("type")
        handler = self._dispatch.get(event_type)
        if handler is not None:
            handler(data)
        elif event_type in ERROR_EVENTS:
            self._on_error(data)
        elif event_type in IGNORED_EVENTS:
            log.debug(f"{self.prefix} Ignoring {event_type}")
        else:
            log.warning(f"{self.prefix} Unhandled upstream message type: {event_type}")

    def _on_session_created(self, data: dict):
        self.upstream_session_id = (data.get("session") or {}).get("id")
        log.info(f"{self.prefix} Upstream session created: {self.upstream_session_id}")
        self._conversation.append("session_created", sessionId=self.upstream_session_id)
        self._events.emit(Event.SESSION_CREATED, SessionEvent(
            timestamp=time.time(), session_id=self.upstream_session_id,
        ))

    def _on_session_updated(self, data: dict):
        log.info(f"{self.prefix} Upstream session updated: {data.get('session')}")
        self._events.emit(Event.SESSION_UPDATED, SessionEvent(
            timestamp=time.time(), session_id=self.upstream_session_id,
        ))

    def _on_session_closed(self, data: dict):
        log.info(f"{self.prefix} Upstream session closed by server")
        self._conversation.append("upstream_closed_by_server")
        raise UpstreamSessionClosed(self.upstream_session_id)

    def _on_response_created(self, data: dict):
        response = data.get("response") or {}
        self.turn_in_progress = True
        self.response_id = response.get("id") or f"resp_{_now_ms()}"
        self._audio_chunks = []
        log.info(f"{self.prefix} Response started: {self.response_id}")
        self._events.emit(Event.RESPONSE_STARTED, ResponseStartedEvent(
            timestamp=time.time(), response_id=self.response_id,
        ))

    def _on_audio_delta(self, data: dict):
        delta = data.get("delta")
        if not delta:
            return
        if not isinstance(delta, str):
            log.warning(f"{self.prefix} Dropping audio delta of type {type(delta).__name__}")
            return
        try:
            audio = base64.b64decode(delta, validate=True)
        except (binascii.Error, ValueError) as e:
            log.warning(f"{self.prefix} Dropping undecodable audio delta: {e}")
            return
        log.debug(f"{self.prefix} Upstream audio chunk: {len(audio)} bytes")
        self._push_audio(audio)

    def _push_audio(self, audio: bytes):
        if self.response_id:
            self._audio_chunks.append(audio)
        else:
            log.warning(f"{self.prefix} Audio received but no response is in progress")
        self._events.emit(Event.AUDIO_DELTA, AudioDeltaEvent(
            timestamp=time.time(), audio=audio, response_id=self.response_id,
        ))

    def _on_text_delta(self, data: dict):
        delta = data.get("delta")
        if delta:
            self._events.emit(Event.TEXT_DELTA, TextDeltaEvent(timestamp=time.time(), text=delta))

    def _on_response_done(self, data: dict):
        response = data.get("response")
        if not isinstance(response, dict):
            response = {}
        status = response.get("status")
        log.info(f"{self.prefix} Response finished. Status: {status}")

        response_id = self.response_id or f"resp_done_{_now_ms()}"
        audio = b"".join(self._audio_chunks)
        self.turn_in_progress = False
        self.response_id = None
        self._audio_chunks = []

        text = extract_final_text(response)
        if text:
            log.info(f"{self.prefix} Final assistant text: {text}")
            self._conversation.append("assistant_text", text=text)
        else:
            log.warning(f"{self.prefix} Could not extract final assistant text from response.done")
            self._conversation.append("assistant_text", text=NO_TEXT_PLACEHOLDER)

        self._events.emit(Event.RESPONSE_DONE, ResponseDoneEvent(
            timestamp=time.time(), response_id=response_id,
            status=status, text=text, audio=audio,
        ))

    def _on_speech_started(self, data: dict):
        log.info(f"{self.prefix} Upstream detected speech start")
        self._events.emit(Event.SPEECH_STARTED, SpeechEvent(
            timestamp=time.time(), audio_ms=data.get("audio_start_ms"),
        ))

    def _on_speech_stopped(self, data: dict):
        log.info(f"{self.prefix} Upstream detected speech stop")
        self._events.emit(Event.SPEECH_STOPPED, SpeechEvent(
            timestamp=time.time(), audio_ms=data.get("audio_end_ms"),
        ))

    def _on_error(self, data: dict):
        log.error(f"{self.prefix} Raw upstream error: {json.dumps(data)}")
        error = parse_error(data)
        log.error(f"{self.prefix} Upstream error: code={error.code}, "
                  f"message='{error.message}', client_event_id={error.event_id}")
        self._conversation.append(
            "upstream_error", code=error.code, message=error.message, rawData=data,
        )
        raise error

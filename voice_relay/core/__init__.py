"""
Voice Relay - Core Module

Transport-agnostic bridge logic between a browser voice client and a
realtime speech API. No dependency on the WebSocket server in contrib.

Quick Start:
    from voice_relay.core import RelaySession, RelayConfig, Event

    session = RelaySession("1", RelayConfig(api_key="sk-..."))
    session.on(Event.AUDIO_DELTA, lambda e: send_to_browser(e.audio))
    session.on(Event.RESPONSE_DONE, lambda e: store.save_response(
        e.response_id, e.audio, e.text))

    for message in upstream_messages:
        session.feed(message)
"""
from .config import RelayConfig
from .conversation import ConversationLog, LogEntry
from .events import (
    Event, EventData, EventEmitter, SessionEvent, ResponseStartedEvent,
    AudioDeltaEvent, TextDeltaEvent, ResponseDoneEvent, SpeechEvent,
)
from .session import RelaySession, parse_error, extract_final_text
from .storage import ArtifactStore, FileArtifactStore
from .exceptions import (
    RelayError, ConfigurationError, ProtocolError,
    UpstreamError, UpstreamSessionClosed,
)

__version__ = "1.0.0"

__all__ = [
    # Main API
    "RelaySession",
    "RelayConfig",
    "parse_error",
    "extract_final_text",
    # Events
    "Event",
    "EventData",
    "EventEmitter",
    "SessionEvent",
    "ResponseStartedEvent",
    "AudioDeltaEvent",
    "TextDeltaEvent",
    "ResponseDoneEvent",
    "SpeechEvent",
    # Logging and storage
    "ConversationLog",
    "LogEntry",
    "ArtifactStore",
    "FileArtifactStore",
    # Exceptions
    "RelayError",
    "ConfigurationError",
    "ProtocolError",
    "UpstreamError",
    "UpstreamSessionClosed",
]

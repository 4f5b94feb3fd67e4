"""
Voice Relay - bridge between a browser voice client and a realtime speech API.

Structure:
    voice_relay/
    ├── core/              # Transport-agnostic bridge logic
    │   ├── config.py      # RelayConfig dataclass
    │   ├── events.py      # Event system (Event, EventData, etc.)
    │   ├── session.py     # RelaySession: per-connection state and translation
    │   ├── conversation.py# In-memory conversation log
    │   ├── storage.py     # Artifact store interface & file store
    │   └── exceptions.py
    │
    └── contrib/           # Server and utilities
        ├── config.py      # Pydantic settings with env vars
        ├── debug.py       # User audio recording
        ├── protocol.py    # Browser WebSocket message types
        └── server.py      # WebSocket relay server

Quick Start:
    OPENAI_API_KEY=sk-... python -m voice_relay serve --port 8080
"""
# Re-export core API for convenience
from .core import (
    RelaySession,
    RelayConfig,
    Event,
    EventData,
    ResponseDoneEvent,
    ConversationLog,
    ArtifactStore,
    FileArtifactStore,
    RelayError,
    ConfigurationError,
    ProtocolError,
    UpstreamError,
    UpstreamSessionClosed,
)

__version__ = "1.0.0"

__all__ = [
    "RelaySession",
    "RelayConfig",
    "Event",
    "EventData",
    "ResponseDoneEvent",
    "ConversationLog",
    "ArtifactStore",
    "FileArtifactStore",
    "RelayError",
    "ConfigurationError",
    "ProtocolError",
    "UpstreamError",
    "UpstreamSessionClosed",
]

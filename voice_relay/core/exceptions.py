"""Custom exceptions for Voice Relay."""
from typing import Optional


class RelayError(Exception):
    """Base exception for all Voice Relay errors."""


class ConfigurationError(RelayError):
    """Required configuration is missing or invalid."""


class ProtocolError(RelayError):
    """Browser sent a message the relay cannot interpret."""


class UpstreamError(RelayError):
    """Upstream API reported an error event."""

    def __init__(self, message: str, code: str = "UnknownCode", event_id: str = "N/A"):
        super().__init__(f"Upstream error {code}: {message}")
        self.message = message
        self.code = code
        self.event_id = event_id


class UpstreamSessionClosed(RelayError):
    """Upstream API closed the realtime session."""

    def __init__(self, session_id: Optional[str] = None):
        super().__init__(f"Upstream session closed: {session_id or 'unknown'}")
        self.session_id = session_id

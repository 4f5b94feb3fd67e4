"""
Voice Relay Contrib - WebSocket server, settings and debugging utilities.

The core package is usable on its own with any WebSocket library.

Includes:
- WebSocket relay server for browser clients
- Environment-driven settings
- Browser wire protocol messages
- Debug audio recording
"""
from .config import RelaySettings, get_settings
from .debug import SessionRecorder
from .server import WSServer, create_server

__all__ = [
    "RelaySettings",
    "get_settings",
    "SessionRecorder",
    "WSServer",
    "create_server",
]

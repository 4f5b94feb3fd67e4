"""
Event system for Voice Relay.

A RelaySession translates upstream realtime API messages into a small set
of typed events. The WebSocket server subscribes to them to forward data to
the browser and to persist artifacts, but any integration can do the same.

Example:
    session = RelaySession("client-1", config)

    @session.on(Event.RESPONSE_DONE)
    def handle_done(event: ResponseDoneEvent):
        save(event.response_id, event.audio, event.text)

    session.feed(upstream_message)
"""
import logging
from dataclasses import dataclass
from enum import Enum, auto
from typing import Callable, Optional

log = logging.getLogger(__name__)


class Event(Enum):
    """Event types emitted by RelaySession."""

    # Upstream session lifecycle
    SESSION_CREATED = auto()
    SESSION_UPDATED = auto()

    # Response turn
    RESPONSE_STARTED = auto()
    AUDIO_DELTA = auto()         # Decoded PCM chunk for the browser
    TEXT_DELTA = auto()
    RESPONSE_DONE = auto()       # Turn finished, carries full audio and final text

    # Server-side voice activity detection
    SPEECH_STARTED = auto()
    SPEECH_STOPPED = auto()


@dataclass
class EventData:
    """Base class for event data."""
    timestamp: float  # Unix timestamp in seconds


@dataclass
class SessionEvent(EventData):
    """Event data for upstream session lifecycle."""
    session_id: Optional[str] = None


@dataclass
class ResponseStartedEvent(EventData):
    response_id: str = ""


@dataclass
class AudioDeltaEvent(EventData):
    audio: bytes = b""
    response_id: Optional[str] = None


@dataclass
class TextDeltaEvent(EventData):
    text: str = ""


@dataclass
class ResponseDoneEvent(EventData):
    """Event data for a completed response turn."""
    response_id: str = ""
    status: Optional[str] = None
    text: str = ""
    audio: bytes = b""


@dataclass
class SpeechEvent(EventData):
    audio_ms: Optional[int] = None  # Position in the input buffer, if reported


# Type alias for event handlers
EventHandler = Callable[[EventData], None]


class EventEmitter:
    """
    Simple event emitter.

    Supports multiple handlers per event type, handler removal,
    and one-time handlers.
    """

    def __init__(self):
        self._handlers: dict[Event, list[EventHandler]] = {e: [] for e in Event}
        self._once_handlers: dict[Event, list[EventHandler]] = {e: [] for e in Event}

    def on(self, event: Event, handler: Optional[EventHandler] = None):
        """
        Register an event handler.

        Can be called directly or used as a decorator.

        Args:
            event: Event type to listen for
            handler: Callback function receiving EventData

        Returns:
            Unsubscribe function when called directly, the handler itself
            when used as a decorator
        """
        if handler is None:
            def decorator(fn: EventHandler) -> EventHandler:
                self._handlers[event].append(fn)
                return fn
            return decorator

        self._handlers[event].append(handler)

        def unsubscribe():
            if handler in self._handlers[event]:
                self._handlers[event].remove(handler)

        return unsubscribe

    def once(self, event: Event, handler: EventHandler):
        """Register a one-time event handler (auto-removes after first call)."""
        self._once_handlers[event].append(handler)

    def off(self, event: Event, handler: Optional[EventHandler] = None):
        """
        Remove event handler(s).

        Args:
            event: Event type
            handler: Specific handler to remove, or None to remove all
        """
        if handler is None:
            self._handlers[event].clear()
            self._once_handlers[event].clear()
        else:
            if handler in self._handlers[event]:
                self._handlers[event].remove(handler)
            if handler in self._once_handlers[event]:
                self._once_handlers[event].remove(handler)

    def emit(self, event: Event, data: EventData):
        """
        Emit an event to all registered handlers.

        A failing handler is logged and does not stop the others.
        """
        for handler in list(self._handlers[event]):
            try:
                handler(data)
            except Exception:
                log.exception(f"Handler for {event.name} failed")

        once = self._once_handlers[event]
        self._once_handlers[event] = []
        for handler in once:
            try:
                handler(data)
            except Exception:
                log.exception(f"One-time handler for {event.name} failed")

    def clear(self):
        """Remove all handlers."""
        for event in Event:
            self._handlers[event].clear()
            self._once_handlers[event].clear()

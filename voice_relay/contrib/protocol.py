"""
WebSocket protocol messages between the browser and the relay.

Audio travels as binary frames in both directions (PCM16 little endian).
Everything else is a JSON text frame with a ``type`` field.
"""
import json
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Optional

from ..core import ProtocolError


class MsgType(str, Enum):
    """WebSocket message types."""
    # Browser -> relay
    COMMIT = "commit"
    CANCEL = "cancel"
    CLEAR = "clear"
    TEXT = "text"
    # Relay -> browser
    EVENT = "event"
    TEXT_DELTA = "textDelta"
    ERROR = "error"


CLIENT_TYPES = frozenset({MsgType.COMMIT, MsgType.CANCEL, MsgType.CLEAR, MsgType.TEXT})


class EventName(str, Enum):
    """Names carried by ``event`` messages."""
    AI_CONNECTED = "AIConnected"
    AI_RESPONSE_START = "AIResponseStart"
    AI_RESPONSE_END = "AIResponseEnd"
    AI_SPEECH_DETECTED = "AISpeechDetected"
    AI_SPEECH_ENDED = "AISpeechEnded"


@dataclass
class ConnectedMsg:
    """Upstream session is ready."""
    session_id: Optional[str]

    def json(self) -> str:
        return json.dumps({
            "type": MsgType.EVENT.value,
            "name": EventName.AI_CONNECTED.value,
            "sessionId": self.session_id,
        })


@dataclass
class ResponseEndMsg:
    """Response turn finished."""
    final_text: str

    def json(self) -> str:
        return json.dumps({
            "type": MsgType.EVENT.value,
            "name": EventName.AI_RESPONSE_END.value,
            "finalText": self.final_text,
        })


@dataclass
class EventMsg:
    """Event without payload (response start, speech start/stop)."""
    name: EventName

    def json(self) -> str:
        return json.dumps({"type": MsgType.EVENT.value, "name": EventName(self.name).value})


@dataclass
class TextDeltaMsg:
    text: str

    def json(self) -> str:
        return json.dumps({"type": MsgType.TEXT_DELTA.value, **asdict(self)})


@dataclass
class ErrorMsg:
    """Error message."""
    message: str

    def json(self) -> str:
        return json.dumps({"type": MsgType.ERROR.value, "message": self.message})


def parse_message(data: str) -> tuple[MsgType, dict]:
    """
    Parse an incoming browser control message.

    Raises:
        ProtocolError: Not JSON, not an object, or not a known control type
    """
    try:
        d = json.loads(data)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Invalid JSON: {e}") from e
    if not isinstance(d, dict):
        raise ProtocolError("Expected a JSON object")

    try:
        msg_type = MsgType(d.get("type", ""))
    except ValueError:
        raise ProtocolError(f"Unknown message type: {d.get('type')!r}") from None
    if msg_type not in CLIENT_TYPES:
        raise ProtocolError(f"Message type not accepted from client: {msg_type.value}")

    if msg_type == MsgType.TEXT and not isinstance(d.get("text"), str):
        raise ProtocolError("Missing text")
    return msg_type, d

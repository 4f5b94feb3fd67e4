"""
Configuration for the Voice Relay core.

Uses plain dataclass for zero external dependencies in the core.
All values except the API key have sensible defaults.
"""
from dataclasses import dataclass
from typing import Optional

DEFAULT_INSTRUCTIONS = "You are a helpful voice assistant. Respond ONLY in English."


@dataclass(frozen=True)
class RelayConfig:
    """
    Upstream realtime API configuration.

    Frozen dataclass ensures immutability after creation.

    Attributes:
        api_key: Static credential sent as a Bearer token
        model: Realtime model name, appended to the URL as ``?model=``
        base_url: Upstream WebSocket endpoint
        beta_header: Value of the ``OpenAI-Beta`` header

        instructions: System instructions for the upstream session
        voice: Voice used for synthesized responses
        input_audio_format: Format of audio the browser sends
        output_audio_format: Format of audio requested from upstream
        turn_detection: Server-side turn detection type, empty to disable

        input_sample_rate: Browser capture rate in Hz
        output_sample_rate: Upstream response audio rate in Hz
    """
    api_key: str = ""
    model: str = "gpt-4o-mini-realtime-preview-2024-12-17"
    base_url: str = "wss://api.openai.com/v1/realtime"
    beta_header: str = "realtime=v1"

    # Session
    instructions: str = DEFAULT_INSTRUCTIONS
    voice: str = "shimmer"
    input_audio_format: str = "pcm16"
    output_audio_format: str = "pcm16"
    turn_detection: str = "server_vad"

    # Audio
    input_sample_rate: int = 16000
    output_sample_rate: int = 24000   # Upstream pcm16 is always 24kHz

    @property
    def url(self) -> str:
        """Upstream URL including the model parameter."""
        return f"{self.base_url}?model={self.model}"

    def headers(self) -> dict[str, str]:
        """Handshake headers carrying the static credential."""
        return {
            "Authorization": f"Bearer {self.api_key}",
            "OpenAI-Beta": self.beta_header,
        }

    def session_update(self, event_id: Optional[str] = None) -> dict:
        """Build the ``session.update`` event sent once upstream opens."""
        turn_detection = {"type": self.turn_detection} if self.turn_detection else None
        event = {
            "type": "session.update",
            "session": {
                "instructions": self.instructions,
                "output_audio_format": self.output_audio_format,
                "input_audio_format": self.input_audio_format,
                "turn_detection": turn_detection,
                "voice": self.voice,
            },
        }
        if event_id:
            event["event_id"] = event_id
        return event

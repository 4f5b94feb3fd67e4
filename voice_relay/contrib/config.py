"""
Configuration for the relay server.

Uses pydantic-settings for env var and .env support.
The core package uses a plain dataclass with no external deps.
"""
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import AliasChoices, Field, SecretStr
from pydantic_settings import BaseSettings

from ..core import ConfigurationError, RelayConfig
from ..core.config import DEFAULT_INSTRUCTIONS

# Project root
_ROOT = Path(__file__).parent.parent.parent


class RelaySettings(BaseSettings):
    """
    Relay configuration with environment variable support.

    All settings can be overridden via env vars with VOICE_RELAY_ prefix:
        VOICE_RELAY_PORT=9000
        VOICE_RELAY_DEBUG=true
        VOICE_RELAY_ALLOWED_ORIGINS='["https://app.example.com"]'

    The API key and port also accept the plain OPENAI_API_KEY and PORT names.
    """
    # Server
    host: str = "0.0.0.0"
    port: int = Field(8080, validation_alias=AliasChoices("VOICE_RELAY_PORT", "PORT"))
    debug: bool = False
    allowed_origins: List[str] = ["http://localhost:5173"]
    shutdown_timeout: float = 10.0

    # Upstream
    api_key: Optional[SecretStr] = Field(
        None, validation_alias=AliasChoices("VOICE_RELAY_API_KEY", "OPENAI_API_KEY"),
    )
    model: str = "gpt-4o-mini-realtime-preview-2024-12-17"
    base_url: str = "wss://api.openai.com/v1/realtime"
    beta_header: str = "realtime=v1"
    connect_timeout: float = 10.0

    # Session (passed to RelayConfig)
    instructions: str = DEFAULT_INSTRUCTIONS
    voice: str = "shimmer"
    input_audio_format: str = "pcm16"
    output_audio_format: str = "pcm16"
    turn_detection: str = "server_vad"
    input_sample_rate: int = 16000
    output_sample_rate: int = 24000

    # Paths
    audio_dir: Path = _ROOT / "audio_output"
    transcripts_dir: Path = _ROOT / "text_output"
    debug_audio_dir: Path = _ROOT / "debug_audio"
    save_wav: bool = False

    model_config = {
        "env_prefix": "VOICE_RELAY_",
        "env_file": ".env",
        "extra": "ignore",
        "populate_by_name": True,
    }

    @property
    def url(self) -> str:
        return f"{self.base_url}?model={self.model}"

    def to_relay_config(self) -> RelayConfig:
        """Convert to core RelayConfig. Requires an API key."""
        if self.api_key is None or not self.api_key.get_secret_value():
            raise ConfigurationError(
                "API key is not set. Set OPENAI_API_KEY (or VOICE_RELAY_API_KEY) "
                "in the environment or in a .env file."
            )
        return RelayConfig(
            api_key=self.api_key.get_secret_value(),
            model=self.model,
            base_url=self.base_url,
            beta_header=self.beta_header,
            instructions=self.instructions,
            voice=self.voice,
            input_audio_format=self.input_audio_format,
            output_audio_format=self.output_audio_format,
            turn_detection=self.turn_detection,
            input_sample_rate=self.input_sample_rate,
            output_sample_rate=self.output_sample_rate,
        )


_overrides: dict = {}


@lru_cache
def get_settings() -> RelaySettings:
    """Get singleton settings instance."""
    return RelaySettings(**_overrides)


def update_settings(**kwargs) -> RelaySettings:
    """Update settings (clears cache and creates new instance)."""
    global _overrides
    _overrides = dict(kwargs)
    get_settings.cache_clear()
    return get_settings()

"""
Voice Relay Test Configuration
==============================

Shared fixtures for pytest. Nothing here talks to the real upstream API;
the server tests run a fake realtime endpoint on localhost.
"""
import base64
import json

import pytest

from voice_relay.core import ConversationLog, RelayConfig, RelaySession
from voice_relay.contrib import config as settings_module
from voice_relay.contrib.config import RelaySettings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep the developer's environment out of settings."""
    for name in ("OPENAI_API_KEY", "VOICE_RELAY_API_KEY", "PORT", "VOICE_RELAY_PORT"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(settings_module, "_overrides", {})
    settings_module.get_settings.cache_clear()
    yield
    settings_module.get_settings.cache_clear()


@pytest.fixture
def relay_config():
    return RelayConfig(api_key="sk-test")


@pytest.fixture
def conversation():
    return ConversationLog()


@pytest.fixture
def session(relay_config, conversation):
    return RelaySession("test", relay_config, conversation, client_ip="127.0.0.1")


@pytest.fixture
def settings(tmp_path):
    """Settings writing into a temporary directory, ignoring any .env file."""
    return RelaySettings(
        _env_file=None,
        api_key="sk-test",
        host="127.0.0.1",
        port=0,
        audio_dir=tmp_path / "audio",
        transcripts_dir=tmp_path / "text",
        debug_audio_dir=tmp_path / "debug",
        connect_timeout=5.0,
        shutdown_timeout=2.0,
    )


def upstream_event(type: str, **fields) -> str:
    """Serialize an upstream realtime API event."""
    return json.dumps({"type": type, **fields})


def audio_delta(pcm: bytes) -> str:
    return upstream_event("response.audio.delta", delta=base64.b64encode(pcm).decode())


def response_done(text: str = "", transcript: str = "", status: str = "completed") -> str:
    content = []
    if text:
        content.append({"type": "output_text", "text": text})
    if transcript:
        content.append({"type": "audio", "transcript": transcript})
    output = [{"type": "message", "role": "assistant", "content": content}] if content else []
    return upstream_event("response.done", response={"id": "ignored", "status": status, "output": output})

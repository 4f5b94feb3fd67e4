"""
CLI entry point for the Voice Relay server.

Usage:
    python -m voice_relay serve --port 8080 --debug
    python -m voice_relay info
    python -m voice_relay artifacts
"""
import json
import logging
import typer

app = typer.Typer(
    name="voice-relay",
    help="Browser <-> realtime speech API WebSocket relay",
    add_completion=False,
)


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", help="Server host"),
    port: int = typer.Option(8080, help="Server port", envvar=["VOICE_RELAY_PORT", "PORT"]),
    debug: bool = typer.Option(False, help="Enable debug logging and user audio recording"),
):
    """Start the relay server."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )

    # Silence noisy third-party loggers
    logging.getLogger("websockets").setLevel(logging.WARNING)
    logging.getLogger("websockets.server").setLevel(logging.WARNING)
    logging.getLogger("websockets.client").setLevel(logging.WARNING)

    from .contrib import create_server
    from .core import ConfigurationError

    try:
        server = create_server(host=host, port=port, debug=debug)
    except ConfigurationError as e:
        typer.echo(f"FATAL: {e}", err=True)
        raise typer.Exit(1)
    server.start()


@app.command()
def info():
    """Show relay configuration."""
    from . import __version__
    from .contrib.config import get_settings

    settings = get_settings()
    key_state = "set" if settings.api_key and settings.api_key.get_secret_value() else "MISSING"

    typer.echo(f"Voice Relay v{__version__}")
    typer.echo(f"")
    typer.echo(f"Upstream:")
    typer.echo(f"  Model: {settings.model}")
    typer.echo(f"  URL: {settings.url}")
    typer.echo(f"  API key: {key_state}")
    typer.echo(f"  Voice: {settings.voice}")
    typer.echo(f"  Input format: {json.dumps({'format': settings.input_audio_format, 'sample_rate': settings.input_sample_rate})}")
    typer.echo(f"  Output format: {json.dumps({'format': settings.output_audio_format, 'sample_rate': settings.output_sample_rate})}")
    typer.echo(f"")
    typer.echo(f"Server:")
    typer.echo(f"  Listen: {settings.host}:{settings.port}")
    typer.echo(f"  Allowed origins: {', '.join(settings.allowed_origins)}")
    typer.echo(f"  Audio dir: {settings.audio_dir}")
    typer.echo(f"  Transcripts dir: {settings.transcripts_dir}")
    typer.echo(f"")
    typer.echo(f"Environment variables (prefix: VOICE_RELAY_):")
    typer.echo(f"  OPENAI_API_KEY, VOICE_RELAY_PORT, VOICE_RELAY_DEBUG, etc.")


@app.command()
def artifacts():
    """List saved response artifacts."""
    from .contrib.config import get_settings
    from .core import FileArtifactStore

    settings = get_settings()
    store = FileArtifactStore(settings.audio_dir, settings.transcripts_dir)

    response_ids = store.list_ids()
    if not response_ids:
        typer.echo(f"No artifacts found in {store.audio_dir}.")
        return

    typer.echo(f"Found {len(response_ids)} response(s) in {store.audio_dir}:")
    for rid in response_ids:
        text = store.load_transcript(rid) or ""
        preview = text if len(text) <= 60 else text[:57] + "..."
        typer.echo(f"  {rid}: {preview or '[no transcript]'}")


if __name__ == "__main__":
    app()

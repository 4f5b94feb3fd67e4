"""Session artifact storage: response audio and assistant transcripts."""
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional
import numpy as np
import soundfile as sf

log = logging.getLogger(__name__)

AUDIO_SUFFIX = "_backend.raw"
WAV_SUFFIX = "_backend.wav"
TRANSCRIPT_SUFFIX = "_transcript.txt"


def transcript_timestamp(now: Optional[datetime] = None) -> str:
    """UTC timestamp safe for filenames: YYYY-MM-DDThh-mm-ss."""
    now = now or datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H-%M-%S")


class ArtifactStore(ABC):
    """Abstract artifact storage. Implement for your backend (S3, DB, etc.)."""

    @abstractmethod
    def save_audio(self, response_id: str, audio: bytes) -> Optional[Path]: ...

    @abstractmethod
    def save_transcript(self, response_id: str, text: str) -> Optional[Path]: ...

    @abstractmethod
    def list_ids(self) -> List[str]: ...

    def save_response(self, response_id: str, audio: bytes, text: str) -> None:
        """Persist everything a finished response produced."""
        if audio:
            self.save_audio(response_id, audio)
        else:
            log.info(f"No audio chunks received for response {response_id} to save.")
        if text:
            self.save_transcript(response_id, text)


class FileArtifactStore(ArtifactStore):
    """
    File-based artifact storage.

    Writes are fire-and-forget: failures are logged and never raised.
    """

    def __init__(
        self,
        audio_dir: Path,
        transcripts_dir: Path,
        sample_rate: int = 24000,
        save_wav: bool = False,
    ):
        """
        Initialize store.

        Args:
            audio_dir: Directory for raw response audio
            transcripts_dir: Directory for transcript text files
            sample_rate: Rate of the PCM16 response audio, used for WAV copies
            save_wav: Also write a playable WAV next to each raw file
        """
        self._audio_dir = Path(audio_dir)
        self._transcripts_dir = Path(transcripts_dir)
        self._sr = sample_rate
        self._save_wav = save_wav

        for directory in (self._audio_dir, self._transcripts_dir):
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                log.error(f"Failed to create directory {directory}: {e}")

    @property
    def audio_dir(self) -> Path:
        return self._audio_dir

    @property
    def transcripts_dir(self) -> Path:
        return self._transcripts_dir

    def save_audio(self, response_id: str, audio: bytes) -> Optional[Path]:
        path = self._audio_dir / f"{response_id}{AUDIO_SUFFIX}"
        try:
            path.write_bytes(audio)
        except OSError as e:
            log.error(f"Error saving audio file {path}: {e}")
            return None
        log.info(f"Saved response audio to {path} ({len(audio)} bytes)")

        if self._save_wav:
            self._write_wav(response_id, audio)
        return path

    def _write_wav(self, response_id: str, audio: bytes) -> None:
        path = self._audio_dir / f"{response_id}{WAV_SUFFIX}"
        # PCM16 frames are 2 bytes; drop a dangling odd byte
        samples = np.frombuffer(audio[: len(audio) - len(audio) % 2], dtype="<i2")
        try:
            sf.write(path, samples, self._sr, subtype="PCM_16")
        except (OSError, RuntimeError) as e:
            log.error(f"Error saving WAV file {path}: {e}")

    def save_transcript(self, response_id: str, text: str) -> Optional[Path]:
        path = self._transcripts_dir / f"{transcript_timestamp()}_{response_id}{TRANSCRIPT_SUFFIX}"
        try:
            path.write_text(text, encoding="utf-8")
        except OSError as e:
            log.error(f"Error saving transcript file {path}: {e}")
            return None
        log.info(f"Saved transcript to {path}")
        return path

    def load_transcript(self, response_id: str) -> Optional[str]:
        """Most recent transcript saved for a response, if any."""
        matches = sorted(self._transcripts_dir.glob(f"*_{response_id}{TRANSCRIPT_SUFFIX}"))
        if not matches:
            return None
        return matches[-1].read_text(encoding="utf-8")

    def list_ids(self) -> List[str]:
        """Response ids with saved audio, oldest first."""
        files = sorted(self._audio_dir.glob(f"*{AUDIO_SUFFIX}"), key=lambda f: f.stat().st_mtime)
        return [f.name[: -len(AUDIO_SUFFIX)] for f in files]

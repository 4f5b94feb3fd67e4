"""
Debug utilities for audio recording.

These utilities are for development/testing only.
"""
import logging
import queue
import threading
from pathlib import Path
from typing import Optional
import numpy as np
import soundfile as sf

from .config import get_settings

log = logging.getLogger(__name__)


class SessionRecorder:
    """
    Stream a session's user audio to a single WAV file.

    Browser frames are PCM16 little endian bytes. Writes happen in a
    background thread so the relay loop never blocks on disk.
    """

    def __init__(
        self,
        session_id: str,
        output_dir: Optional[Path] = None,
        sample_rate: int = 16000,
    ):
        """
        Initialize recorder.

        Args:
            session_id: Unique session identifier
            output_dir: Directory for output files
            sample_rate: Capture rate of the browser audio
        """
        directory = Path(output_dir or get_settings().debug_audio_dir)
        directory.mkdir(parents=True, exist_ok=True)

        self.path = directory / f"session_{session_id}.wav"
        self._file = sf.SoundFile(
            self.path,
            mode='w',
            samplerate=sample_rate,
            channels=1,
            subtype='PCM_16',
        )
        self._pending = b""
        self._queue: queue.Queue = queue.Queue()
        self._running = True
        self._thread = threading.Thread(target=self._worker, daemon=True)
        self._thread.start()

    def write(self, chunk: bytes):
        """Queue a PCM16 chunk for writing."""
        if not self._running:
            return
        data = self._pending + chunk
        usable = len(data) - len(data) % 2
        self._pending = data[usable:]
        if usable:
            self._queue.put(np.frombuffer(data[:usable], dtype="<i2").copy())

    def _worker(self):
        while self._running or not self._queue.empty():
            try:
                samples = self._queue.get(timeout=0.5)
            except queue.Empty:
                continue
            try:
                self._file.write(samples)
            except (OSError, RuntimeError) as e:
                log.error(f"Debug recording write failed for {self.path}: {e}")
            finally:
                self._queue.task_done()

    def close(self):
        """Stop recording and close file."""
        self._running = False
        self._thread.join(timeout=5.0)
        self._file.close()
        log.debug(f"Closed debug recording {self.path}")

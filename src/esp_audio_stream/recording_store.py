"""Persistence for finished recordings."""

import logging
from pathlib import Path
from typing import Protocol, Union

from .audio_session import RecordingArtifact

logger = logging.getLogger(__name__)


class RecordingStore(Protocol):
    """Where StreamingService puts artifacts after stop_recording()."""

    def save(self, artifact: RecordingArtifact) -> str:
        """Persist the artifact's WAV bytes and return a reference to them."""
        ...

    def load(self, reference: str) -> bytes:
        ...

    def delete(self, reference: str):
        ...


class DirectoryRecordingStore:
    """Store recordings as ``<YYYYmmdd-HHMMSS>-<id8>.wav`` files in one directory."""

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def path_for(self, artifact: RecordingArtifact) -> Path:
        stamp = artifact.started_at.strftime("%Y%m%d-%H%M%S")
        return self.directory / f"{stamp}-{artifact.id.hex[:8]}.wav"

    def save(self, artifact: RecordingArtifact) -> str:
        path = self.path_for(artifact)
        try:
            path.write_bytes(artifact.wav_data)
        except OSError as e:
            logger.error(f"Failed to save recording {artifact.id}: {e}")
            raise

        logger.info(f"Saved recording to {path} ({artifact.size_kb:.1f} KB)")
        return str(path)

    def load(self, reference: str) -> bytes:
        return Path(reference).read_bytes()

    def delete(self, reference: str):
        path = Path(reference)
        if path.exists():
            path.unlink()
            logger.info(f"Deleted recording file {path}")

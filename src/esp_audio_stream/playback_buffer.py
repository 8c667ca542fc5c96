"""Thread-safe PCM FIFO feeding the speaker.

Key design decisions:
- Uses threading.Lock (not asyncio.Lock): the reader is the sounddevice
  callback running in an OS audio thread
- Underruns are padded with silence, never blocked on
- Samples are stored interleaved (frame-major) as int16
"""

import logging
import threading
from dataclasses import dataclass

import numpy as np

logger = logging.getLogger(__name__)


@dataclass
class BufferMetrics:
    """Metrics for the playback buffer.

    Attributes:
        samples_added: Total samples written by the producer
        samples_consumed: Total real samples handed to the audio thread
        underrun_count: Reads that had to be padded with silence
    """

    samples_added: int = 0
    samples_consumed: int = 0
    underrun_count: int = 0


class PlaybackBuffer:
    """Single-stream FIFO between the event loop and the audio thread.

    Thread-safety: all public methods may be called from any thread.

    Example:
        >>> buffer = PlaybackBuffer(channels=1)
        >>> buffer.add_audio_data(np.frombuffer(chunk, dtype="<i2"))
        >>> block = buffer.get_audio_data(1600)  # 100ms at 16kHz
    """

    def __init__(self, channels: int = 1):
        self.channels = channels
        self._buffer = np.array([], dtype=np.int16)
        self._lock = threading.Lock()
        self._metrics = BufferMetrics()
        self._last_underrun_log = 0

    def add_audio_data(self, samples: np.ndarray):
        """Append int16 samples (interleaved when channels > 1)."""
        samples = np.asarray(samples, dtype=np.int16)
        with self._lock:
            if len(self._buffer) == 0:
                self._buffer = samples.copy()
            else:
                self._buffer = np.concatenate([self._buffer, samples])
            self._metrics.samples_added += len(samples)

    def add_pcm(self, chunk: bytes):
        """Append raw PCM16 little-endian bytes (odd trailing byte dropped)."""
        usable = len(chunk) - len(chunk) % 2
        self.add_audio_data(np.frombuffer(chunk[:usable], dtype="<i2"))

    def get_audio_data(self, num_frames: int) -> np.ndarray:
        """Take ``num_frames`` frames, padding with silence on underrun.

        Called from the audio thread; never blocks on the producer.

        Returns:
            int16 array of shape (num_frames, channels)
        """
        wanted = num_frames * self.channels
        with self._lock:
            if len(self._buffer) >= wanted:
                result = self._buffer[:wanted]
                self._buffer = self._buffer[wanted:]
                self._metrics.samples_consumed += wanted
            else:
                self._metrics.underrun_count += 1
                if self._metrics.underrun_count - self._last_underrun_log >= 100:
                    logger.warning(
                        f"Playback buffer underrun #{self._metrics.underrun_count}. "
                        f"Buffer has {len(self._buffer)} samples, need {wanted}"
                    )
                    self._last_underrun_log = self._metrics.underrun_count

                result = np.zeros(wanted, dtype=np.int16)
                result[:len(self._buffer)] = self._buffer
                self._metrics.samples_consumed += len(self._buffer)
                self._buffer = np.array([], dtype=np.int16)

        return result.reshape(num_frames, self.channels)

    def clear(self):
        with self._lock:
            self._buffer = np.array([], dtype=np.int16)

    def buffer_size(self) -> int:
        """Samples waiting to be played."""
        with self._lock:
            return len(self._buffer)

    def get_metrics(self) -> dict:
        with self._lock:
            return {
                "buffer_size": len(self._buffer),
                "samples_added": self._metrics.samples_added,
                "samples_consumed": self._metrics.samples_consumed,
                "underrun_count": self._metrics.underrun_count,
            }

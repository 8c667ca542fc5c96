"""Speaker output via sounddevice.

Two sinks share one callback implementation:

- SpeakerMonitorSink: continuous stream fed chunk by chunk while recording
  (realtime monitoring); underruns play silence
- SpeakerPlayer: finite playback of one PCM buffer; the stream stops itself
  once the buffer is drained and reports completion

Key design decisions:
- Runs in OS audio thread (sounddevice callback)
- Pulls audio from PlaybackBuffer in real-time
- Converts int16 (buffer) -> float32 (sounddevice)
- Callback errors are logged and counted, never raised into the audio thread
"""

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

import numpy as np
import sounddevice as sd

from .config import AudioStreamConfig
from .playback_buffer import PlaybackBuffer

logger = logging.getLogger(__name__)

FinishedCallback = Callable[[Optional[Exception]], None]


@dataclass
class OutputMetrics:
    """Metrics for speaker output.

    Attributes:
        blocks_played: Callback invocations that produced audio
        underruns: Blocks padded with silence
        errors: Total errors encountered
        last_error: Description of the most recent error
    """

    blocks_played: int = 0
    underruns: int = 0
    errors: int = 0
    last_error: Optional[str] = None


class _SpeakerOutput:
    """Shared OutputStream lifecycle for the speaker sinks.

    Thread model:
    - start()/stop() run on the caller's thread
    - _audio_callback runs in the OS audio thread and only touches the
      PlaybackBuffer (thread-safe) and the metrics counters
    """

    def __init__(self, config: AudioStreamConfig):
        self.config = config
        self._buffer = PlaybackBuffer(config.channels)
        self._output_stream: Optional[sd.OutputStream] = None
        self._metrics = OutputMetrics()

    def _open_stream(self, finished_callback=None):
        try:
            # blocksize: one 100ms tick per callback
            # dtype: float32 is sounddevice's native format
            self._output_stream = sd.OutputStream(
                device=self.config.output_device,
                channels=self.config.channels,
                samplerate=self.config.sample_rate,
                blocksize=self.config.samples_per_tick,
                dtype="float32",
                callback=self._audio_callback,
                finished_callback=finished_callback,
            )
            self._output_stream.start()
        except Exception as e:
            logger.error(f"Failed to start audio output: {e}")
            self._record_error(str(e))
            self._output_stream = None
            raise

    def _close_stream(self):
        stream, self._output_stream = self._output_stream, None
        if stream is None:
            return

        try:
            stream.stop()
            stream.close()
        except Exception as e:
            logger.error(f"Failed to stop audio output: {e}")
            self._record_error(str(e))
            raise
        finally:
            self._buffer.clear()

    def _audio_callback(self, outdata, frames, time_info, status):
        if status:
            logger.warning(f"Audio output status: {status}")
            self._record_error(str(status))

        try:
            drained_before = self._buffer.buffer_size() < frames * self.config.channels
            audio_data = self._buffer.get_audio_data(frames)
            if drained_before:
                self._metrics.underruns += 1

            # int16 [-32768, 32767] -> float32 [-1.0, 1.0]
            outdata[:] = audio_data.astype(np.float32) / 32767.0
            self._metrics.blocks_played += 1

        except Exception as e:
            # Log error but don't raise (audio thread must continue)
            logger.error(f"Error in audio output callback: {e}")
            self._record_error(str(e))
            outdata.fill(0)
            self._on_callback_error(e)
            return

        self._after_block()

    def _after_block(self):
        pass

    def _on_callback_error(self, error: Exception):
        pass

    def _record_error(self, message: str):
        self._metrics.errors += 1
        self._metrics.last_error = message

    @property
    def is_active(self) -> bool:
        return self._output_stream is not None and self._output_stream.active

    def get_metrics(self) -> dict:
        """Get metrics for monitoring.

        Returns:
            Dictionary with metrics:
                - blocks_played: Total blocks played
                - underruns: Blocks padded with silence
                - errors: Total errors encountered
                - last_error: Description of most recent error (or None)
                - is_active: Whether output stream is currently active
                - buffered_samples: Samples waiting in the playback buffer
        """
        return {
            "blocks_played": self._metrics.blocks_played,
            "underruns": self._metrics.underruns,
            "errors": self._metrics.errors,
            "last_error": self._metrics.last_error,
            "is_active": self.is_active,
            "buffered_samples": self._buffer.buffer_size(),
        }


class SpeakerMonitorSink(_SpeakerOutput):
    """Realtime monitor: plays incoming chunks as they are recorded.

    Example:
        >>> sink = SpeakerMonitorSink(AudioStreamConfig(realtime_monitoring=True))
        >>> sink.start()
        >>> sink.write(chunk)  # from AudioSession.ingest
        >>> sink.stop()
    """

    def start(self):
        if self._output_stream is not None:
            logger.warning("Monitor output already started")
            return

        self._buffer.clear()
        self._open_stream()
        logger.info("Realtime monitor started")

    def write(self, chunk: bytes):
        if self._output_stream is None:
            return
        self._buffer.add_pcm(chunk)

    def stop(self):
        if self._output_stream is None:
            return

        self._close_stream()
        logger.info("Realtime monitor stopped")

    def __enter__(self):
        """Context manager entry."""
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.stop()
        return False


class SpeakerPlayer(_SpeakerOutput):
    """Finite playback of one PCM buffer.

    ``on_finished`` is called from the audio thread when the stream ends,
    with the callback error if one occurred. Callers that own an event loop
    must marshal it back themselves (AudioSession uses call_soon_threadsafe).
    """

    def __init__(self, config: AudioStreamConfig):
        super().__init__(config)
        self._on_finished: Optional[FinishedCallback] = None
        self._error: Optional[Exception] = None

    def play(self, pcm: bytes, on_finished: FinishedCallback):
        """Start playing ``pcm`` (PCM16 LE, interleaved)."""
        self.stop()

        self._error = None
        self._on_finished = on_finished
        self._buffer.add_pcm(pcm)
        self._open_stream(finished_callback=self._stream_finished)

        duration = len(pcm) / self.config.byte_rate
        logger.info(f"Playback started ({duration:.2f}s)")

    def stop(self):
        """Stop playback immediately. Idempotent."""
        # Completion of a stream we stop ourselves is not reported
        self._on_finished = None
        if self._output_stream is None:
            return

        self._close_stream()
        logger.info("Playback stopped")

    def _after_block(self):
        if self._buffer.buffer_size() == 0:
            raise sd.CallbackStop

    def _on_callback_error(self, error: Exception):
        self._error = error
        raise sd.CallbackStop

    def _stream_finished(self):
        callback = self._on_finished
        self._on_finished = None
        if callback is not None:
            callback(self._error)


def list_output_devices() -> List[dict]:
    """Print and return the available audio output devices."""
    devices = []

    print("\nAvailable audio output devices:")
    print("─" * 50)
    for i, device in enumerate(sd.query_devices()):
        if device["max_output_channels"] > 0:
            devices.append({"index": i, **dict(device)})
            print(f"{i}. {device['name']}")
            print(f"   └─ Sample rate: {device['default_samplerate']} Hz")
            print(f"   └─ Output channels: {device['max_output_channels']}")
            print()

    default_output = sd.query_devices(kind="output")
    print(f"Default output device: {default_output['name']}")
    return devices

"""Recording and playback state machine.

This module provides the AudioSession class which accumulates incoming PCM
chunks into a recording, reports live amplitude/progress and plays PCM back
through a speaker player.

Key design decisions:
- Recording (IDLE/RECORDING) and playback (NOT_PLAYING/PLAYING) are independent
- Buffer appends use threading.Lock with a short critical section
- Amplitude is the RMS of normalized samples (sample / 32768.0) per chunk
- Progress ticks every 100ms from an asyncio task while recording
- Player completion arrives on the audio thread and is marshalled back to the
  event loop with call_soon_threadsafe
- Recording duration is derived from the captured PCM size, not the wall clock
"""

import asyncio
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Optional, Protocol

import numpy as np

from . import wav_container
from .config import TICK_SECONDS, AudioStreamConfig
from .errors import CodecError
from .events import EventChannel
from .utils import format_duration

logger = logging.getLogger(__name__)


class RecordingState(Enum):
    IDLE = "idle"
    RECORDING = "recording"


class PlaybackState(Enum):
    NOT_PLAYING = "not_playing"
    PLAYING = "playing"


class MonitorSink(Protocol):
    """Realtime speaker sink used while recording."""

    def start(self): ...

    def write(self, chunk: bytes): ...

    def stop(self): ...


class Player(Protocol):
    """Finite playback device."""

    def play(self, pcm: bytes, on_finished: Callable[[Optional[Exception]], None]): ...

    def stop(self): ...


@dataclass(frozen=True)
class RecordingProgress:
    duration: float
    amplitude: float


@dataclass(frozen=True)
class RecordingArtifact:
    """A finished recording.

    Attributes:
        id: Unique recording id
        started_at: Wall-clock time start_recording() was called
        duration: Seconds of audio (PCM size / byte rate)
        pcm_data: Raw PCM16 LE samples
        wav_data: pcm_data wrapped in a canonical WAV header
        size_bytes: len(wav_data)
    """

    id: uuid.UUID
    started_at: datetime
    duration: float
    pcm_data: bytes = field(repr=False)
    wav_data: bytes = field(repr=False)
    size_bytes: int

    @property
    def formatted_duration(self) -> str:
        return format_duration(self.duration)

    @property
    def size_kb(self) -> float:
        return self.size_bytes / 1024


@dataclass
class SessionMetrics:
    """Metrics for the audio session.

    Attributes:
        chunks_ingested: Chunks appended to a recording
        chunks_dropped: Chunks received while not recording
        bytes_ingested: Bytes appended across all recordings
        recordings_finished: Artifacts produced
        playbacks_started: Successful play_audio_data() calls
        bytes_trimmed: Partial-frame bytes cut from misaligned chunks
    """

    chunks_ingested: int = 0
    chunks_dropped: int = 0
    bytes_ingested: int = 0
    recordings_finished: int = 0
    playbacks_started: int = 0
    bytes_trimmed: int = 0


def compute_rms(chunk: bytes) -> float:
    """RMS of a PCM16 LE chunk, samples normalized by 32768.

    An empty chunk (or a lone byte) yields 0.0; a trailing odd byte is ignored.
    """
    usable = len(chunk) - len(chunk) % 2
    if usable == 0:
        return 0.0

    samples = np.frombuffer(chunk[:usable], dtype="<i2").astype(np.float64) / 32768.0
    return float(np.sqrt(np.mean(samples * samples)))


class AudioSession:
    """Accumulate streamed PCM into recordings and play PCM back.

    Thread model:
    - start/stop/play methods run on the event loop thread
    - ingest() may be called from any thread (buffer guarded by threading.Lock)
    - The player's completion callback runs on the audio thread and is
      forwarded to the loop captured when playback started

    Example:
        >>> session = AudioSession(AudioStreamConfig())
        >>> session.amplitude_updated.subscribe(meter.update)
        >>> session.start_recording()
        >>> session.ingest(chunk)  # from ConnectionManager.data_received
        >>> artifact = session.stop_recording()
        >>> session.play_recording(artifact)
    """

    def __init__(
        self,
        config: Optional[AudioStreamConfig] = None,
        monitor_sink: Optional[MonitorSink] = None,
        player: Optional[Player] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize audio session.

        Args:
            config: Audio format and monitoring flag (default: 16kHz mono 16-bit)
            monitor_sink: Speaker sink for realtime monitoring (optional)
            player: Playback device (optional; playback raises without one)
            clock: Monotonic clock used for progress durations
        """
        self.config = config or AudioStreamConfig()
        self._monitor_sink = monitor_sink
        self._player = player
        self._clock = clock

        # Event channels
        self.recording_started: EventChannel[datetime] = EventChannel("recording_started")
        self.recording_finished: EventChannel[RecordingArtifact] = EventChannel("recording_finished")
        self.amplitude_updated: EventChannel[float] = EventChannel("amplitude_updated")
        self.progress: EventChannel[RecordingProgress] = EventChannel("progress")
        self.playback_started: EventChannel[float] = EventChannel("playback_started")
        self.playback_finished: EventChannel[Optional[Exception]] = EventChannel("playback_finished")
        self.errors: EventChannel[Exception] = EventChannel("errors")

        # Recording state
        self._lock = threading.Lock()
        self._buffer = bytearray()
        self._recording_state = RecordingState.IDLE
        self._started_at: Optional[datetime] = None
        self._start_time = 0.0
        self._amplitude = 0.0
        self._monitoring = False
        self._ticker: Optional[asyncio.Task] = None

        # Playback state
        self._playback_state = PlaybackState.NOT_PLAYING
        self._playback_generation = 0
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        self._metrics = SessionMetrics()

        logger.info(
            f"Initialized AudioSession: {self.config.sample_rate}Hz, "
            f"{self.config.channels}ch, {self.config.bits_per_sample}-bit, "
            f"monitoring={self.config.realtime_monitoring}"
        )

    @property
    def recording_state(self) -> RecordingState:
        return self._recording_state

    @property
    def playback_state(self) -> PlaybackState:
        return self._playback_state

    @property
    def is_recording(self) -> bool:
        return self._recording_state is RecordingState.RECORDING

    @property
    def is_playing(self) -> bool:
        return self._playback_state is PlaybackState.PLAYING

    @property
    def amplitude(self) -> float:
        return self._amplitude

    @property
    def elapsed(self) -> float:
        """Wall-clock seconds since start_recording() (0 when idle)."""
        if not self.is_recording:
            return 0.0
        return self._clock() - self._start_time

    @property
    def buffered_bytes(self) -> int:
        with self._lock:
            return len(self._buffer)

    # Recording

    def start_recording(self) -> bool:
        """Begin a new recording.

        Returns:
            True if a recording started, False if one was already running
        """
        if self.is_recording:
            logger.warning("Recording already in progress")
            return False

        with self._lock:
            self._buffer = bytearray()
        self._started_at = datetime.now()
        self._start_time = self._clock()
        self._amplitude = 0.0
        self._recording_state = RecordingState.RECORDING

        self._start_monitor()
        self._ticker = self._start_ticker()

        logger.info("Recording started")
        self.recording_started.emit(self._started_at)
        return True

    def ingest(self, chunk: bytes):
        """Append a PCM chunk to the active recording.

        Chunks arriving while IDLE are dropped. A chunk that is not a whole
        number of frames loses its trailing partial frame (reported on
        ``errors``) so the recording stays frame-aligned.
        """
        if not self.is_recording:
            self._metrics.chunks_dropped += 1
            logger.debug(f"Dropping {len(chunk)} byte chunk (not recording)")
            return

        partial = len(chunk) % self.config.block_align
        if partial:
            chunk = chunk[:len(chunk) - partial]
            self._metrics.bytes_trimmed += partial
            error = CodecError(
                f"Chunk of {len(chunk) + partial} bytes is not a multiple of "
                f"block_align {self.config.block_align}; trimmed {partial} byte(s)"
            )
            logger.warning(str(error))
            self.errors.emit(error)
            if not chunk:
                return

        with self._lock:
            self._buffer.extend(chunk)

        self._metrics.chunks_ingested += 1
        self._metrics.bytes_ingested += len(chunk)

        self._amplitude = compute_rms(chunk)
        self.amplitude_updated.emit(self._amplitude)

        if self._monitoring:
            try:
                self._monitor_sink.write(chunk)
            except Exception as e:
                logger.error(f"Monitor sink write failed: {e}")
                self.errors.emit(e)

    def stop_recording(self) -> Optional[RecordingArtifact]:
        """Finish the active recording.

        Returns:
            The artifact, or None when idle or nothing was captured

        Raises:
            CodecError: if the captured PCM cannot be wrapped (session is
                already IDLE when this propagates)
        """
        if not self.is_recording:
            return None

        self._cancel_ticker()
        self._stop_monitor()
        self._recording_state = RecordingState.IDLE

        with self._lock:
            pcm = bytes(self._buffer)
            self._buffer = bytearray()

        if not pcm:
            logger.warning("Recording stopped without any audio")
            return None

        wav_data = wav_container.encode(pcm, self.config)
        artifact = RecordingArtifact(
            id=uuid.uuid4(),
            started_at=self._started_at,
            duration=len(pcm) / self.config.byte_rate,
            pcm_data=pcm,
            wav_data=wav_data,
            size_bytes=len(wav_data),
        )
        self._metrics.recordings_finished += 1

        logger.info(
            f"Recording finished: {artifact.formatted_duration}, "
            f"{artifact.size_kb:.1f} KB"
        )
        self.recording_finished.emit(artifact)
        return artifact

    def _start_monitor(self):
        self._monitoring = False
        if not self.config.realtime_monitoring or self._monitor_sink is None:
            return

        try:
            self._monitor_sink.start()
            self._monitoring = True
        except Exception as e:
            logger.error(f"Realtime monitor unavailable: {e}")
            self.errors.emit(e)

    def _stop_monitor(self):
        if not self._monitoring:
            return

        self._monitoring = False
        try:
            self._monitor_sink.stop()
        except Exception as e:
            logger.error(f"Failed to stop realtime monitor: {e}")
            self.errors.emit(e)

    def _start_ticker(self) -> Optional[asyncio.Task]:
        loop = _running_loop()
        if loop is None:
            logger.debug("No running event loop, progress ticker disabled")
            return None
        return loop.create_task(self._tick())

    async def _tick(self):
        while True:
            await asyncio.sleep(TICK_SECONDS)
            self.progress.emit(RecordingProgress(self.elapsed, self._amplitude))

    def _cancel_ticker(self):
        ticker, self._ticker = self._ticker, None
        if ticker is not None:
            ticker.cancel()

    # Playback

    def play_audio_data(self, pcm: bytes):
        """Play raw PCM through the player.

        The PCM is wrapped in a WAV container and read back first, so data
        that cannot form a valid WAV never reaches the speaker.

        Raises:
            RuntimeError: if no player is configured
            CodecError: if the PCM is not a whole number of sample frames
        """
        if self._player is None:
            raise RuntimeError("No audio player configured")

        try:
            wav_data = wav_container.encode(pcm, self.config)
            samples = wav_container.validate(wav_data, self.config)
        except CodecError as e:
            logger.error(f"Cannot play audio: {e}")
            self.stop_playing()
            self.errors.emit(e)
            raise

        self.stop_playing()

        self._loop = _running_loop()
        self._playback_generation += 1
        generation = self._playback_generation

        self._player.play(samples, lambda error: self._player_finished(generation, error))
        self._playback_state = PlaybackState.PLAYING
        self._metrics.playbacks_started += 1

        duration = len(samples) / self.config.byte_rate
        self.playback_started.emit(duration)

    def play_recording(self, artifact: RecordingArtifact):
        self.play_audio_data(artifact.pcm_data)

    def stop_playing(self):
        """Stop playback immediately. Idempotent."""
        if not self.is_playing:
            return

        self._playback_generation += 1
        self._playback_state = PlaybackState.NOT_PLAYING
        try:
            self._player.stop()
        finally:
            logger.info("Playback stopped")
            self.playback_finished.emit(None)

    def _player_finished(self, generation: int, error: Optional[Exception]):
        # Runs on the audio thread
        loop = self._loop
        if loop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(self._complete_playback, generation, error)
        else:
            self._complete_playback(generation, error)

    def _complete_playback(self, generation: int, error: Optional[Exception]):
        if generation != self._playback_generation or not self.is_playing:
            return

        self._playback_state = PlaybackState.NOT_PLAYING
        self._player.stop()

        if error is not None:
            logger.error(f"Playback failed: {error}")
            self.errors.emit(error)
        else:
            logger.info("Playback finished")
        self.playback_finished.emit(error)

    def get_metrics(self) -> dict:
        """Get metrics for monitoring.

        Returns:
            Dictionary with metrics:
                - recording_state: "idle" or "recording"
                - playback_state: "not_playing" or "playing"
                - buffered_bytes: Bytes in the active recording
                - chunks_ingested: Chunks appended to recordings
                - chunks_dropped: Chunks received while idle
                - bytes_ingested: Bytes appended to recordings
                - recordings_finished: Artifacts produced
                - playbacks_started: Playbacks started
                - bytes_trimmed: Partial-frame bytes cut from misaligned chunks
        """
        return {
            "recording_state": self._recording_state.value,
            "playback_state": self._playback_state.value,
            "buffered_bytes": self.buffered_bytes,
            "chunks_ingested": self._metrics.chunks_ingested,
            "chunks_dropped": self._metrics.chunks_dropped,
            "bytes_ingested": self._metrics.bytes_ingested,
            "recordings_finished": self._metrics.recordings_finished,
            "playbacks_started": self._metrics.playbacks_started,
            "bytes_trimmed": self._metrics.bytes_trimmed,
        }


def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None

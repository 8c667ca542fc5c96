"""Streaming service facade.

This module provides the StreamingService class that wires one
ConnectionManager to one AudioSession and exposes the operations a UI needs.

Key design decisions:
- Single entry point for connect/record/play
- Manager channels are relayed on the service's own channels, so subscribers
  survive connect_to_device() (which replaces the manager)
- Inbound chunks pass through an asyncio.Queue drained by one consumer task:
  ingestion order equals arrival order
- stop_recording() sends STOP, then waits for queued chunks before finalizing
- Recordings are kept newest first and optionally persisted through a store
"""

import asyncio
import logging
import uuid
from typing import Callable, Dict, List, Optional

from .audio_session import AudioSession, MonitorSink, Player, RecordingArtifact
from .config import AudioStreamConfig, ConnectionConfig, DiscoveredDevice
from .connection_manager import ConnectionManager, StatusUpdate
from .errors import NotConnectedError
from .events import EventChannel
from .recording_store import RecordingStore
from .transports import Transport, create_transport

logger = logging.getLogger(__name__)

START_COMMAND = "START"
STOP_COMMAND = "STOP"


class StreamingService:
    """Coordinate connection, recording and playback for one device.

    Lifecycle:
    1. connect() starts the chunk consumer and the manager's supervisor
    2. start_recording() starts the session, then sends START
    3. stop_recording() sends STOP, drains queued chunks, finalizes the artifact
    4. disconnect() stops any active recording, then closes the connection

    Example:
        >>> service = StreamingService(ConnectionConfig(host="192.168.4.1"))
        >>> service.status_changed.subscribe(lambda update: print(update.text))
        >>> async with service:
        ...     await service.wait_until_connected(timeout=10)
        ...     await service.start_recording()
        ...     await asyncio.sleep(5)
        ...     artifact = await service.stop_recording()
    """

    def __init__(
        self,
        connection_config: ConnectionConfig,
        audio_config: Optional[AudioStreamConfig] = None,
        transport_factory: Callable[[ConnectionConfig], Transport] = create_transport,
        monitor_sink: Optional[MonitorSink] = None,
        player: Optional[Player] = None,
        store: Optional[RecordingStore] = None,
    ):
        """Initialize streaming service.

        Args:
            connection_config: Device endpoint and reconnection policy
            audio_config: Audio format (default: 16kHz mono 16-bit)
            transport_factory: Builds transports for the connection manager
            monitor_sink: Speaker sink for realtime monitoring (optional)
            player: Playback device (optional)
            store: Persistence for finished recordings (optional)
        """
        self.connection_config = connection_config
        self.audio_config = audio_config or AudioStreamConfig()
        self.store = store
        self._transport_factory = transport_factory

        # Relayed channels
        self.status_changed: EventChannel[StatusUpdate] = EventChannel("service.status_changed")
        self.text_received: EventChannel[str] = EventChannel("service.text_received")
        self.errors: EventChannel[Exception] = EventChannel("service.errors")

        self.session = AudioSession(self.audio_config, monitor_sink=monitor_sink, player=player)
        self.session.errors.subscribe(self.errors.emit)

        self.manager: Optional[ConnectionManager] = None
        self._manager_subscriptions: List[Callable[[], None]] = []
        self._attach_manager(ConnectionManager(connection_config, transport_factory))

        self._queue: asyncio.Queue = asyncio.Queue()
        self._consumer: Optional[asyncio.Task] = None

        self._recordings: List[RecordingArtifact] = []
        self.references: Dict[uuid.UUID, str] = {}

        logger.info(f"Initialized StreamingService: {connection_config.endpoint}")

    @property
    def recordings(self) -> List[RecordingArtifact]:
        """Finished recordings, newest first."""
        return list(self._recordings)

    @property
    def is_connected(self) -> bool:
        return self.manager.is_connected

    # Connection

    async def connect(self):
        self._ensure_consumer()
        await self.manager.connect()

    async def disconnect(self):
        """Stop an active recording, then close the connection."""
        try:
            if self.session.is_recording:
                await self.stop_recording()
        finally:
            await self.manager.disconnect()
            await self._stop_consumer()

    async def connect_to_device(self, device: DiscoveredDevice, transport: Optional[str] = None):
        """Switch to a discovered device.

        The current connection is closed and a new manager is built for the
        device, keeping this service's timeouts and reconnection policy.
        """
        config = ConnectionConfig.for_device(
            device,
            transport=transport or self.connection_config.transport,
            connect_timeout=self.connection_config.connect_timeout,
            reconnect_base_delay=self.connection_config.reconnect_base_delay,
            max_reconnect_attempts=self.connection_config.max_reconnect_attempts,
        )
        logger.info(f"Switching to device {device.display_name}")

        await self.disconnect()
        self._detach_manager()
        self.connection_config = config
        self._attach_manager(ConnectionManager(config, self._transport_factory))
        await self.connect()

    async def wait_until_connected(self, timeout: Optional[float] = None) -> bool:
        return await self.manager.wait_until_connected(timeout)

    def get_connection_status_text(self) -> str:
        return self.manager.status_text

    # Recording

    async def start_recording(self) -> bool:
        """Start recording and tell the device to stream.

        Returns:
            False if a recording was already running

        Raises:
            NotConnectedError: if the device is not connected
        """
        if not self.manager.is_connected:
            raise NotConnectedError(
                f"Cannot start recording: {self.get_connection_status_text()}"
            )

        # Chunks that arrived before START belong to no recording
        await self._drain_queue()
        if not self.session.start_recording():
            return False

        await self.manager.send_command(START_COMMAND)
        return True

    async def stop_recording(self) -> Optional[RecordingArtifact]:
        """Stop recording and collect the artifact.

        Returns:
            The artifact, or None if nothing was recorded

        Raises:
            CodecError: if the captured audio cannot be wrapped as WAV
        """
        if not self.session.is_recording:
            return None

        if self.manager.is_connected:
            await self.manager.send_command(STOP_COMMAND)

        await self._drain_queue()
        artifact = self.session.stop_recording()
        if artifact is None:
            return None

        self._recordings.insert(0, artifact)
        if self.store is not None:
            self.references[artifact.id] = self.store.save(artifact)

        return artifact

    def delete_recording(self, recording_id: uuid.UUID) -> bool:
        """Forget a recording (and its stored file).

        Returns:
            True if the recording existed
        """
        for index, artifact in enumerate(self._recordings):
            if artifact.id == recording_id:
                del self._recordings[index]
                break
        else:
            return False

        reference = self.references.pop(recording_id, None)
        if reference is not None and self.store is not None:
            self.store.delete(reference)

        logger.info(f"Deleted recording {recording_id}")
        return True

    # Playback

    def play_recording(self, artifact: RecordingArtifact):
        self.session.play_recording(artifact)

    def play_audio_data(self, pcm: bytes):
        self.session.play_audio_data(pcm)

    def stop_playing(self):
        self.session.stop_playing()

    # Chunk queue

    def _on_chunk(self, chunk: bytes):
        self._queue.put_nowait(chunk)

    def _ensure_consumer(self):
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.create_task(self._consume())

    async def _consume(self):
        while True:
            chunk = await self._queue.get()
            try:
                self.session.ingest(chunk)
            except Exception as e:
                logger.error(f"Failed to ingest chunk: {e}")
                self.errors.emit(e)
            finally:
                self._queue.task_done()

    async def _drain_queue(self):
        if self._consumer is not None and not self._consumer.done():
            await self._queue.join()

    async def _stop_consumer(self):
        consumer, self._consumer = self._consumer, None
        if consumer is not None:
            consumer.cancel()
            try:
                await consumer
            except asyncio.CancelledError:
                pass

        # Late chunks are dropped
        self._queue = asyncio.Queue()

    # Manager wiring

    def _attach_manager(self, manager: ConnectionManager):
        self.manager = manager
        self._manager_subscriptions = [
            manager.status_changed.subscribe(self.status_changed.emit),
            manager.errors.subscribe(self.errors.emit),
            manager.data_received.subscribe(self._on_chunk),
            manager.text_received.subscribe(self._on_text),
        ]

    def _detach_manager(self):
        for unsubscribe in self._manager_subscriptions:
            unsubscribe()
        self._manager_subscriptions = []

    def _on_text(self, text: str):
        logger.info(f"Device says: {text}")
        self.text_received.emit(text)

    def get_metrics(self) -> dict:
        """Get metrics for monitoring.

        Returns:
            Dictionary with metrics:
                - connection: ConnectionManager metrics
                - session: AudioSession metrics
                - recordings: Number of recordings held
                - queued_chunks: Chunks waiting for ingestion
        """
        return {
            "connection": self.manager.get_metrics(),
            "session": self.session.get_metrics(),
            "recordings": len(self._recordings),
            "queued_chunks": self._queue.qsize(),
        }

    async def __aenter__(self):
        """Async context manager entry."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        self.stop_playing()
        await self.disconnect()
        return False

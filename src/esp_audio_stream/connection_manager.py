"""Connection manager for the ESP32 audio socket.

This module provides the ConnectionManager class which opens, watches and
recovers one socket to one device.

Key design decisions:
- One supervisor task per manager runs open -> receive loop -> backoff
- Linear backoff: attempt n waits reconnect_base_delay * n seconds
- A successful open resets the attempt counter
- Manual disconnect() never triggers reconnection
- Transport errors are recovered here and only reported (status + errors channel)
- Every state transition is published as a StatusUpdate
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from .config import ConnectionConfig
from .events import EventChannel
from .errors import InvalidURLOrEndpointError, NotConnectedError, TransportError
from .transports import Transport, create_transport

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


@dataclass(frozen=True)
class StatusUpdate:
    """Published on ``status_changed`` for every state transition.

    Attributes:
        state: New connection state
        attempt: Reconnection attempt n (0 unless reconnecting/failed)
        max_attempts: Configured max_reconnect_attempts
        text: Human readable status, e.g. "reconnecting (2/5)"
    """

    state: ConnectionState
    attempt: int
    max_attempts: int
    text: str


@dataclass
class ConnectionMetrics:
    """Metrics for the connection manager.

    Attributes:
        connections_opened: Successful socket opens
        chunks_received: Binary chunks delivered on data_received
        bytes_received: Total payload bytes delivered
        texts_received: Text frames delivered on text_received
        send_errors: Failed send()/send_command() writes
    """

    connections_opened: int = 0
    chunks_received: int = 0
    bytes_received: int = 0
    texts_received: int = 0
    send_errors: int = 0


def format_status(state: ConnectionState, attempt: int, max_attempts: int) -> str:
    if state is ConnectionState.RECONNECTING:
        return f"reconnecting ({attempt}/{max_attempts})"
    return state.value


class ConnectionManager:
    """Maintain a persistent socket to one ESP32.

    State machine:

        DISCONNECTED --connect()--> CONNECTING --open ok--> CONNECTED
        CONNECTED --close/error--> RECONNECTING(n) --backoff--> CONNECTING
        any failure with n >= max_reconnect_attempts --> FAILED
        any state --disconnect()--> DISCONNECTED

    Thread model:
    - All methods must be called from the event loop thread
    - Subscribers are called synchronously from the supervisor task, in
      arrival order

    Example:
        >>> manager = ConnectionManager(ConnectionConfig(host="192.168.4.1"))
        >>> manager.data_received.subscribe(session.ingest)
        >>> await manager.connect()
        >>> await manager.wait_until_connected(timeout=10)
        >>> await manager.send_command("START")
        >>> # ... audio flows ...
        >>> await manager.disconnect()
    """

    def __init__(
        self,
        config: ConnectionConfig,
        transport_factory: Callable[[ConnectionConfig], Transport] = create_transport,
    ):
        """Initialize connection manager.

        Args:
            config: Endpoint and reconnection policy (immutable for this manager)
            transport_factory: Builds a fresh transport for each open attempt
        """
        self.config = config
        self._transport_factory = transport_factory

        # Event channels
        self.status_changed: EventChannel[StatusUpdate] = EventChannel("status_changed")
        self.data_received: EventChannel[bytes] = EventChannel("data_received")
        self.text_received: EventChannel[str] = EventChannel("text_received")
        self.errors: EventChannel[Exception] = EventChannel("errors")

        self._state = ConnectionState.DISCONNECTED
        self._attempt = 0
        self._manual_close = False
        self._task: Optional[asyncio.Task] = None
        self._transport: Optional[Transport] = None
        self._connected = asyncio.Event()

        self._metrics = ConnectionMetrics()

        logger.info(
            f"Initialized ConnectionManager: {config.endpoint}, "
            f"timeout={config.connect_timeout}s, "
            f"backoff={config.reconnect_base_delay}s x n, "
            f"max_attempts={config.max_reconnect_attempts}"
        )

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def reconnect_attempt(self) -> int:
        return self._attempt

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def status_text(self) -> str:
        return format_status(self._state, self._attempt, self.config.max_reconnect_attempts)

    async def connect(self):
        """Start connecting in the background.

        No-op while CONNECTING or CONNECTED. From DISCONNECTED, RECONNECTING
        or FAILED the previous supervisor task is replaced and the attempt
        counter starts from zero.
        """
        if self._state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            logger.debug(f"connect() ignored in state {self._state.value}")
            return

        await self._cancel_supervisor()

        self._manual_close = False
        self._attempt = 0
        self._set_state(ConnectionState.CONNECTING)
        self._task = asyncio.create_task(self._run())

        logger.info(f"Connecting to {self.config.endpoint}...")

    async def disconnect(self):
        """Close the socket and stop reconnecting. Idempotent."""
        self._manual_close = True
        await self._cancel_supervisor()

        transport, self._transport = self._transport, None
        if transport is not None:
            await transport.close()

        if self._state is not ConnectionState.DISCONNECTED:
            logger.info(f"Disconnected from {self.config.endpoint}")
        self._set_state(ConnectionState.DISCONNECTED)

    async def wait_until_connected(self, timeout: Optional[float] = None) -> bool:
        """Wait for the CONNECTED state.

        Returns:
            True if connected, False if the timeout expired first
        """
        try:
            await asyncio.wait_for(self._connected.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def send(self, data: bytes):
        """Write raw bytes to the device.

        Raises:
            NotConnectedError: if not CONNECTED
        """
        transport = self._require_transport()
        try:
            await transport.send(data)
        except TransportError as e:
            self._report_send_error(e)

    async def send_command(self, command: str):
        """Send a control command such as "START" or "STOP".

        Raises:
            NotConnectedError: if not CONNECTED
        """
        transport = self._require_transport()
        try:
            await transport.send_command(command)
            logger.info(f"Sent command: {command}")
        except TransportError as e:
            self._report_send_error(e)

    def get_metrics(self) -> dict:
        """Get metrics for monitoring.

        Returns:
            Dictionary with metrics:
                - state: Current state name
                - status: Human readable status text
                - attempt: Current reconnection attempt
                - connections_opened: Successful opens so far
                - chunks_received: Binary chunks delivered
                - bytes_received: Payload bytes delivered
                - texts_received: Text frames delivered
                - send_errors: Failed writes
        """
        return {
            "state": self._state.value,
            "status": self.status_text,
            "attempt": self._attempt,
            "connections_opened": self._metrics.connections_opened,
            "chunks_received": self._metrics.chunks_received,
            "bytes_received": self._metrics.bytes_received,
            "texts_received": self._metrics.texts_received,
            "send_errors": self._metrics.send_errors,
        }

    # Supervisor

    async def _run(self):
        while not self._manual_close:
            transport = self._transport_factory(self.config)
            self._transport = transport
            try:
                await self._open(transport)
                await self._receive_loop(transport)
            except InvalidURLOrEndpointError as e:
                logger.error(f"Invalid endpoint {self.config.endpoint}: {e}")
                self.errors.emit(e)
                self._set_state(ConnectionState.FAILED)
                return
            except (TransportError, OSError) as e:
                if self._manual_close:
                    return
                logger.warning(f"Connection to {self.config.endpoint} lost: {e}")
                self.errors.emit(e)
            finally:
                if self._transport is transport:
                    self._transport = None
                await transport.close()

            if not await self._backoff():
                return

    async def _open(self, transport: Transport):
        try:
            await asyncio.wait_for(transport.open(), timeout=self.config.connect_timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(
                f"Opening {self.config.endpoint} timed out after {self.config.connect_timeout}s"
            ) from e

        self._attempt = 0
        self._metrics.connections_opened += 1
        self._set_state(ConnectionState.CONNECTED)
        logger.info(f"Connected to {self.config.endpoint}")

    async def _receive_loop(self, transport: Transport):
        while True:
            for message in await transport.receive():
                if isinstance(message, str):
                    self._metrics.texts_received += 1
                    logger.debug(f"Text from device: {message}")
                    self.text_received.emit(message)
                elif message:
                    self._metrics.chunks_received += 1
                    self._metrics.bytes_received += len(message)
                    self.data_received.emit(bytes(message))

    async def _backoff(self) -> bool:
        """Advance the attempt counter and sleep.

        Returns:
            False when attempts are exhausted (state is FAILED)
        """
        self._attempt += 1
        max_attempts = self.config.max_reconnect_attempts

        if self._attempt >= max_attempts:
            logger.error(
                f"Giving up on {self.config.endpoint} after {self._attempt} failed attempt(s)"
            )
            self._set_state(ConnectionState.FAILED)
            return False

        self._set_state(ConnectionState.RECONNECTING)
        delay = self.config.reconnect_base_delay * self._attempt
        logger.info(f"Reconnecting in {delay:.1f}s ({self._attempt}/{max_attempts})")
        await asyncio.sleep(delay)

        self._set_state(ConnectionState.CONNECTING)
        return True

    async def _cancel_supervisor(self):
        task, self._task = self._task, None
        if task is None or task.done():
            return

        task.cancel()
        if task is asyncio.current_task():
            return
        try:
            await task
        except asyncio.CancelledError:
            pass

    # Helpers

    def _require_transport(self) -> Transport:
        if self._state is not ConnectionState.CONNECTED or self._transport is None:
            raise NotConnectedError(f"Not connected (state: {self.status_text})")
        return self._transport

    def _report_send_error(self, error: TransportError):
        self._metrics.send_errors += 1
        logger.error(f"Send to {self.config.endpoint} failed: {error}")
        self.errors.emit(error)

    def _set_state(self, state: ConnectionState):
        attempt = self._attempt if state in (
            ConnectionState.RECONNECTING, ConnectionState.FAILED
        ) else 0
        if state is self._state and state is not ConnectionState.RECONNECTING:
            return

        self._state = state
        if state is ConnectionState.CONNECTED:
            self._connected.set()
        else:
            self._connected.clear()

        update = StatusUpdate(
            state=state,
            attempt=attempt,
            max_attempts=self.config.max_reconnect_attempts,
            text=format_status(state, self._attempt, self.config.max_reconnect_attempts),
        )
        logger.debug(f"Connection status: {update.text}")
        self.status_changed.emit(update)

"""Socket transports for talking to the ESP32.

Two wire variants share one interface so ConnectionManager does not care which
one is in use:

- TcpFramedTransport: raw TCP stream of length-prefixed packets, decoded with
  frame_codec.drain()
- WebSocketTransport: ws://<host>:81/, binary messages carry raw PCM, text
  messages carry control/status strings

Both deliver the same thing upward: ``bytes`` chunks of PCM16 LE audio
(and ``str`` for text frames on the WebSocket variant).

All transport failures are raised as TransportError; the manager owns recovery.
"""

import asyncio
import logging
from typing import List, Optional, Union

from websockets.asyncio.client import ClientConnection, connect as ws_connect
from websockets.exceptions import ConnectionClosed, InvalidURI, WebSocketException

from . import frame_codec
from .config import TRANSPORT_TCP, ConnectionConfig
from .errors import InvalidURLOrEndpointError, TransportError

logger = logging.getLogger(__name__)

READ_SIZE = 65536

Message = Union[bytes, str]


class Transport:
    """Interface implemented by every transport.

    Lifecycle: open() once, then receive()/send() until close(). A transport
    instance is never reopened; ConnectionManager builds a fresh one for each
    connection attempt.
    """

    async def open(self):
        raise NotImplementedError

    async def receive(self) -> List[Message]:
        """Wait for inbound data.

        Returns:
            Zero or more messages, in arrival order

        Raises:
            TransportError: on read failure or when the peer closed the socket
        """
        raise NotImplementedError

    async def send(self, data: bytes):
        raise NotImplementedError

    async def send_command(self, command: str):
        raise NotImplementedError

    async def close(self):
        raise NotImplementedError


class TcpFramedTransport(Transport):
    """Length-prefixed PCM over a plain TCP socket."""

    def __init__(self, config: ConnectionConfig, max_packet_size: int = frame_codec.MAX_PACKET_SIZE):
        self.config = config
        self.max_packet_size = max_packet_size
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._buffer = b""
        self.malformed_packets = 0

    async def open(self):
        try:
            self._reader, self._writer = await asyncio.open_connection(
                self.config.host, self.config.port
            )
        except OSError as e:
            raise TransportError(f"TCP connect to {self.config.endpoint} failed: {e}") from e

        logger.debug(f"TCP socket open: {self.config.endpoint}")

    async def receive(self) -> List[Message]:
        if self._reader is None:
            raise TransportError("Transport is not open")

        try:
            data = await self._reader.read(READ_SIZE)
        except OSError as e:
            raise TransportError(f"TCP read failed: {e}") from e

        if not data:
            raise TransportError("Connection closed by device")

        result = frame_codec.drain(self._buffer + data, self.max_packet_size)
        self._buffer = result.remainder
        self.malformed_packets += result.malformed
        return list(result.payloads)

    async def send(self, data: bytes):
        if self._writer is None:
            raise TransportError("Transport is not open")

        try:
            self._writer.write(data)
            await self._writer.drain()
        except OSError as e:
            raise TransportError(f"TCP write failed: {e}") from e

    async def send_command(self, command: str):
        # The raw TCP firmware reads newline-terminated ASCII commands
        await self.send(command.encode("ascii") + b"\n")

    async def close(self):
        writer, self._writer, self._reader = self._writer, None, None
        self._buffer = b""
        if writer is None:
            return

        writer.close()
        try:
            await writer.wait_closed()
        except OSError as e:
            logger.debug(f"Error while closing TCP socket: {e}")


class WebSocketTransport(Transport):
    """Message-framed PCM over a WebSocket."""

    def __init__(self, config: ConnectionConfig):
        self.config = config
        self._ws: Optional[ClientConnection] = None

    async def open(self):
        try:
            # open_timeout is enforced by ConnectionManager; max_size=None lets
            # the device send chunks of any size
            self._ws = await ws_connect(self.config.url, open_timeout=None, max_size=None)
        except InvalidURI as e:
            raise InvalidURLOrEndpointError(f"Invalid WebSocket URL {self.config.url}: {e}") from e
        except (OSError, WebSocketException) as e:
            raise TransportError(f"WebSocket connect to {self.config.url} failed: {e}") from e

        logger.debug(f"WebSocket open: {self.config.url}")

    async def receive(self) -> List[Message]:
        if self._ws is None:
            raise TransportError("Transport is not open")

        try:
            message = await self._ws.recv()
        except ConnectionClosed as e:
            raise TransportError(f"WebSocket closed: {e}") from e
        except OSError as e:
            raise TransportError(f"WebSocket read failed: {e}") from e

        return [message]

    async def send(self, data: bytes):
        await self._send(bytes(data))

    async def send_command(self, command: str):
        await self._send(command)

    async def _send(self, message: Message):
        if self._ws is None:
            raise TransportError("Transport is not open")

        try:
            await self._ws.send(message)
        except (ConnectionClosed, OSError) as e:
            raise TransportError(f"WebSocket send failed: {e}") from e

    async def close(self):
        ws, self._ws = self._ws, None
        if ws is None:
            return

        try:
            await ws.close()
        except (OSError, WebSocketException) as e:
            logger.debug(f"Error while closing WebSocket: {e}")


def create_transport(config: ConnectionConfig) -> Transport:
    """Build the transport selected by ``config.transport``."""
    if config.transport == TRANSPORT_TCP:
        return TcpFramedTransport(config)
    return WebSocketTransport(config)

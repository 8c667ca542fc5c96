"""Connection and audio configuration constants and dataclasses.

This module defines the parameters used throughout the streaming layer:
- Sample rate: 16kHz (what the ESP32 firmware captures)
- Channels: Mono
- Sample format: signed 16-bit little-endian PCM (fixed)
- Tick: 100ms (progress/amplitude cadence and monitor block size)
- WebSocket endpoint: ws://<host>:81/
"""

from dataclasses import dataclass
from typing import Optional

from .errors import InvalidURLOrEndpointError

# Audio configuration constants
SAMPLE_RATE = 16000  # ESP32 I2S microphone rate
NUM_CHANNELS = 1  # Mono
BITS_PER_SAMPLE = 16  # Only 16-bit PCM is supported (amplitude math depends on it)
TICK_SECONDS = 0.1  # 100ms progress cadence

# Connection configuration constants
DEFAULT_WEBSOCKET_PORT = 81
DEFAULT_PATH = "/"
DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_RECONNECT_BASE_DELAY = 3.0
DEFAULT_MAX_RECONNECT_ATTEMPTS = 5

TRANSPORT_WEBSOCKET = "websocket"
TRANSPORT_TCP = "tcp"
TRANSPORTS = (TRANSPORT_WEBSOCKET, TRANSPORT_TCP)


@dataclass(frozen=True)
class DiscoveredDevice:
    """A device record handed over by the discovery collaborator.

    Attributes:
        name: Advertised device name
        ip_address: Device IP address
        port: Advertised streaming port (raw TCP variant)
        status_port: HTTP status port
    """

    name: str
    ip_address: str
    port: int
    status_port: int

    @property
    def display_name(self) -> str:
        return f"{self.name} ({self.ip_address})"


@dataclass(frozen=True)
class ConnectionConfig:
    """Configuration for one logical device connection.

    Immutable: a ConnectionManager is bound to the config it was built with,
    connecting elsewhere means building a new manager.

    Attributes:
        host: Device host name or IP address
        port: Device port (default: 81, the WebSocket endpoint)
        path: WebSocket path (default: "/")
        connect_timeout: Seconds allowed for opening the socket (default: 10)
        reconnect_base_delay: Linear backoff unit in seconds (default: 3)
        max_reconnect_attempts: Failures tolerated before FAILED (default: 5)
        transport: "websocket" or "tcp" (length-prefixed framing)
    """

    host: str
    port: int = DEFAULT_WEBSOCKET_PORT
    path: str = DEFAULT_PATH
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    reconnect_base_delay: float = DEFAULT_RECONNECT_BASE_DELAY
    max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS
    transport: str = TRANSPORT_WEBSOCKET

    def __post_init__(self):
        """Validate configuration after initialization."""
        if not isinstance(self.host, str) or not self.host.strip():
            raise InvalidURLOrEndpointError(f"host must be a non-empty string, got {self.host!r}")
        if any(c.isspace() for c in self.host) or "/" in self.host:
            raise InvalidURLOrEndpointError(f"host is malformed: {self.host!r}")
        if isinstance(self.port, bool) or not isinstance(self.port, int) or not 0 < self.port <= 65535:
            raise InvalidURLOrEndpointError(f"port must be in 1..65535, got {self.port!r}")
        if not isinstance(self.path, str) or not self.path.startswith("/"):
            raise InvalidURLOrEndpointError(f"path must start with '/', got {self.path!r}")
        if self.connect_timeout <= 0:
            raise ValueError(f"connect_timeout must be positive, got {self.connect_timeout}")
        if self.reconnect_base_delay < 0:
            raise ValueError(f"reconnect_base_delay must be >= 0, got {self.reconnect_base_delay}")
        if self.max_reconnect_attempts < 0:
            raise ValueError(
                f"max_reconnect_attempts must be >= 0, got {self.max_reconnect_attempts}"
            )
        if self.transport not in TRANSPORTS:
            raise ValueError(f"transport must be one of {TRANSPORTS}, got {self.transport!r}")

    @property
    def url(self) -> str:
        """WebSocket URL for this endpoint."""
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"ws://{host}:{self.port}{self.path}"

    @property
    def endpoint(self) -> str:
        """Human readable endpoint for log lines."""
        if self.transport == TRANSPORT_WEBSOCKET:
            return self.url
        return f"tcp://{self.host}:{self.port}"

    @classmethod
    def for_device(
        cls, device: DiscoveredDevice, transport: str = TRANSPORT_WEBSOCKET, **overrides
    ) -> "ConnectionConfig":
        """Build a config from a discovery record.

        The firmware always serves WebSocket audio on port 81; the advertised
        port is the raw TCP stream.
        """
        port = DEFAULT_WEBSOCKET_PORT if transport == TRANSPORT_WEBSOCKET else device.port
        return cls(host=device.ip_address, port=port, transport=transport, **overrides)


@dataclass(frozen=True)
class AudioStreamConfig:
    """Configuration for audio recording and playback.

    Attributes:
        sample_rate: Sample rate in Hz (default: 16000)
        channels: Number of audio channels, 1=mono, 2=stereo (default: 1)
        bits_per_sample: Bits per sample, must be 16 (default: 16)
        realtime_monitoring: Forward incoming audio to the speaker while recording
        output_device: Audio output device index, None for default (default: None)
    """

    sample_rate: int = SAMPLE_RATE
    channels: int = NUM_CHANNELS
    bits_per_sample: int = BITS_PER_SAMPLE
    realtime_monitoring: bool = False
    output_device: Optional[int] = None

    def __post_init__(self):
        """Validate configuration after initialization."""
        if not 0 < self.sample_rate <= 0xFFFFFFFF:
            raise ValueError(f"sample_rate must be positive, got {self.sample_rate}")
        if self.channels not in (1, 2):
            raise ValueError(f"channels must be 1 or 2, got {self.channels}")
        if self.bits_per_sample != BITS_PER_SAMPLE:
            raise ValueError(f"bits_per_sample must be 16, got {self.bits_per_sample}")

    @property
    def block_align(self) -> int:
        """Bytes per sample frame (all channels)."""
        return self.channels * self.bits_per_sample // 8

    @property
    def byte_rate(self) -> int:
        """Bytes per second of audio."""
        return self.sample_rate * self.block_align

    @property
    def samples_per_tick(self) -> int:
        """Frames per 100ms tick, used as the speaker block size."""
        return max(1, int(self.sample_rate * TICK_SECONDS))

"""Exception types shared by the streaming components.

Propagation rules:
- TransportError is recovered locally by ConnectionManager (reconnection) and
  only surfaced through status updates and the ``errors`` event channel
- MalformedPacketError never leaves the frame codec's drain loop; it marks
  bytes to skip while resynchronizing
- CodecError propagates to the StreamingService caller
- NotConnectedError is raised by operations that need a live connection
"""


class AudioStreamError(Exception):
    """Base class for all streaming errors."""


class NotConnectedError(AudioStreamError):
    """Raised when an operation requires the CONNECTED state."""


class InvalidURLOrEndpointError(AudioStreamError, ValueError):
    """Raised for a malformed host, port or path."""


class MalformedPacketError(AudioStreamError):
    """Raised (or reported) when a length-prefixed packet violates framing."""


class TransportError(AudioStreamError):
    """Socket-level failure: open, read, write or unexpected close."""


class CodecError(AudioStreamError):
    """WAV encode or read-back validation failure."""

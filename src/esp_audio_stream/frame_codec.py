"""Length-prefixed framing for the raw TCP audio stream.

Wire format (one packet):
    2 bytes  length (u16, little-endian)
    length   bytes of PCM16 little-endian audio

Usage example:

    buffer += await reader.read(65536)
    result = drain(buffer)
    for payload in result.payloads:
        session.ingest(payload)
    buffer = result.remainder

All functions are pure: no hidden state, safe to call repeatedly on a growing
buffer. The WebSocket transport does not use this module (one binary message
is one chunk).
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from enum import Enum
from typing import List, NamedTuple, Optional

from .errors import MalformedPacketError

logger = logging.getLogger(__name__)

PREFIX_SIZE = 2
# Upper bound of the u16 prefix. The firmware's real ceiling is undocumented;
# callers can pass a tighter max_packet_size once it is known.
MAX_PACKET_SIZE = 0xFFFF


class DecodeStatus(Enum):
    OK = "ok"
    INCOMPLETE = "incomplete"
    INVALID = "invalid"


@dataclass(frozen=True)
class DecodeResult:
    """
    Outcome of decoding one packet from the head of a buffer.

    - OK: ``payload`` holds exactly ``length`` bytes, ``remainder`` the rest
    - INCOMPLETE: nothing consumed, ``remainder`` is the untouched buffer
    - INVALID: the two prefix bytes are dropped, ``remainder`` follows them
    """
    status: DecodeStatus
    payload: bytes = b""
    remainder: bytes = b""
    error: Optional[MalformedPacketError] = None


class DrainResult(NamedTuple):
    payloads: List[bytes]
    remainder: bytes
    malformed: int


def _read_u16_le(buf, offset: int = 0) -> int:
    return struct.unpack_from("<H", buf, offset)[0]


def _decode_at(buffer: bytes, offset: int, max_packet_size: int):
    """Decode the packet starting at ``offset``.

    Returns (status, payload_end, next_offset, length); nothing is copied.
    """
    if len(buffer) - offset < PREFIX_SIZE:
        return DecodeStatus.INCOMPLETE, offset, offset, 0

    length = _read_u16_le(buffer, offset)
    if length == 0 or length > max_packet_size:
        return DecodeStatus.INVALID, offset, offset + PREFIX_SIZE, length

    end = offset + PREFIX_SIZE + length
    if len(buffer) < end:
        return DecodeStatus.INCOMPLETE, offset, offset, length

    return DecodeStatus.OK, end, end, length


def _invalid_length(length: int, max_packet_size: int) -> MalformedPacketError:
    return MalformedPacketError(
        f"Invalid packet length {length} (allowed 1..{max_packet_size})"
    )


def decode_one(buffer: bytes, max_packet_size: int = MAX_PACKET_SIZE) -> DecodeResult:
    """
    Decode the packet at the head of ``buffer``.

    Never raises for malformed input; an invalid prefix is reported through
    the result so the caller can skip it and resynchronize.
    """
    buffer = bytes(buffer)
    status, payload_end, next_offset, length = _decode_at(buffer, 0, max_packet_size)

    if status is DecodeStatus.INCOMPLETE:
        return DecodeResult(status, remainder=buffer)

    if status is DecodeStatus.INVALID:
        return DecodeResult(
            status,
            remainder=buffer[next_offset:],
            error=_invalid_length(length, max_packet_size),
        )

    return DecodeResult(
        status,
        payload=buffer[PREFIX_SIZE:payload_end],
        remainder=buffer[next_offset:],
    )


def drain(buffer: bytes, max_packet_size: int = MAX_PACKET_SIZE) -> DrainResult:
    """
    Decode every complete packet in ``buffer``.

    Invalid prefixes are skipped and logged once per call with a count.
    Stops at the first incomplete packet and returns the unconsumed tail.
    The buffer is walked by offset, so a long run of garbage costs one pass.
    """
    buffer = bytes(buffer)
    payloads: List[bytes] = []
    malformed = 0
    first_bad_length = None
    offset = 0

    while True:
        status, payload_end, next_offset, length = _decode_at(buffer, offset, max_packet_size)

        if status is DecodeStatus.INCOMPLETE:
            break

        if status is DecodeStatus.INVALID:
            malformed += 1
            if first_bad_length is None:
                first_bad_length = length
        else:
            payloads.append(buffer[offset + PREFIX_SIZE:payload_end])

        offset = next_offset

    if malformed:
        logger.warning(
            f"Discarded {malformed} malformed packet prefix(es), first: "
            f"{_invalid_length(first_bad_length, max_packet_size)}"
        )

    return DrainResult(payloads, buffer[offset:], malformed)


def encode_frame(payload: bytes, max_packet_size: int = MAX_PACKET_SIZE) -> bytes:
    """
    Build one wire packet for ``payload``.
    """
    if len(payload) == 0 or len(payload) > max_packet_size:
        raise MalformedPacketError(
            f"Payload length {len(payload)} outside 1..{max_packet_size}"
        )
    return struct.pack("<H", len(payload)) + bytes(payload)

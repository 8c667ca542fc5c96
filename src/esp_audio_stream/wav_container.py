"""Canonical WAV/RIFF container for raw PCM.

Layout (44-byte header, all integers little-endian):

    "RIFF"  u32 36+data_size  "WAVE"
    "fmt "  u32 16  u16 1 (PCM)  u16 channels  u32 sample_rate
            u32 byte_rate  u16 block_align  u16 bits_per_sample
    "data"  u32 data_size
    <data_size bytes of PCM>

``decode`` only reads this exact layout back (for validation); it is not a
general WAV parser.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass

from .config import AudioStreamConfig
from .errors import CodecError

HEADER_SIZE = 44
PCM_FORMAT = 1
FMT_CHUNK_SIZE = 16
MAX_DATA_SIZE = 0xFFFFFFFF - 36

_HEADER = struct.Struct("<4sI4s4sIHHIIHH4sI")


@dataclass(frozen=True)
class WavData:
    pcm: bytes
    sample_rate: int
    channels: int
    bits_per_sample: int

    @property
    def duration(self) -> float:
        block_align = self.channels * self.bits_per_sample // 8
        return len(self.pcm) / (self.sample_rate * block_align)


def encode(pcm: bytes, config: AudioStreamConfig) -> bytes:
    """
    Wrap PCM bytes in a WAV header built from ``config``.

    Raises:
        CodecError: if the PCM length is not a whole number of sample frames
            or does not fit the 32-bit size field
    """
    data_size = len(pcm)

    if data_size % config.block_align != 0:
        raise CodecError(
            f"PCM length {data_size} is not a multiple of block_align {config.block_align}"
        )
    if data_size > MAX_DATA_SIZE:
        raise CodecError(f"PCM length {data_size} exceeds WAV size limit")

    header = _HEADER.pack(
        b"RIFF",
        36 + data_size,
        b"WAVE",
        b"fmt ",
        FMT_CHUNK_SIZE,
        PCM_FORMAT,
        config.channels,
        config.sample_rate,
        config.byte_rate,
        config.block_align,
        config.bits_per_sample,
        b"data",
        data_size,
    )
    return header + bytes(pcm)


def decode(wav: bytes) -> WavData:
    """
    Read back a WAV produced by ``encode``.

    Raises:
        CodecError: if the header is truncated or any field disagrees with the
            canonical layout
    """
    if len(wav) < HEADER_SIZE:
        raise CodecError(f"WAV too short: {len(wav)} bytes < {HEADER_SIZE}")

    (
        riff, riff_size, wave, fmt, fmt_size, audio_format, channels,
        sample_rate, byte_rate, block_align, bits_per_sample, data_id, data_size,
    ) = _HEADER.unpack_from(wav, 0)

    if riff != b"RIFF" or wave != b"WAVE" or fmt != b"fmt " or data_id != b"data":
        raise CodecError("Missing RIFF/WAVE/fmt/data markers")
    if fmt_size != FMT_CHUNK_SIZE or audio_format != PCM_FORMAT:
        raise CodecError(f"Unsupported fmt chunk (size={fmt_size}, format={audio_format})")
    if channels == 0 or bits_per_sample == 0 or sample_rate == 0:
        raise CodecError("Zero channels, sample rate or bit depth")
    if block_align != channels * bits_per_sample // 8:
        raise CodecError(f"Inconsistent block_align {block_align}")
    if byte_rate != sample_rate * block_align:
        raise CodecError(f"Inconsistent byte_rate {byte_rate}")
    if data_size != len(wav) - HEADER_SIZE:
        raise CodecError(
            f"data size field {data_size} != actual {len(wav) - HEADER_SIZE}"
        )
    if riff_size != 36 + data_size:
        raise CodecError(f"RIFF size field {riff_size} != {36 + data_size}")

    return WavData(
        pcm=bytes(wav[HEADER_SIZE:]),
        sample_rate=sample_rate,
        channels=channels,
        bits_per_sample=bits_per_sample,
    )


def validate(wav: bytes, config: AudioStreamConfig) -> bytes:
    """
    Decode ``wav`` and require its format to match ``config``.

    Returns:
        The PCM payload
    """
    data = decode(wav)
    expected = (config.sample_rate, config.channels, config.bits_per_sample)
    actual = (data.sample_rate, data.channels, data.bits_per_sample)
    if actual != expected:
        raise CodecError(f"WAV format {actual} does not match config {expected}")
    return data.pcm

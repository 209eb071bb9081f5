"""
Streaming WAV header.

The audio stream is unbounded, so both RIFF and data chunk sizes are written
as 0xFFFFFFFF. Players treat that as "read until the connection ends".
"""

import struct

WAV_HEADER_SIZE = 44
UNKNOWN_LENGTH = 0xFFFFFFFF

# WAVE_FORMAT_PCM
PCM_FORMAT_TAG = 1
BITS_PER_SAMPLE = 16


def make_wav_header(sample_rate: int, channels: int) -> bytes:
    """
    Build a 44-byte RIFF/WAVE header for 16-bit little-endian PCM.

    Args:
        sample_rate: Samples per second (e.g. 8000)
        channels: Channel count (e.g. 1)

    Returns:
        Header bytes declaring an indeterminate total length
    """
    if sample_rate <= 0 or channels <= 0:
        raise ValueError(f"Invalid audio format: {sample_rate} Hz, {channels} channel(s)")

    block_align = channels * BITS_PER_SAMPLE // 8
    byte_rate = sample_rate * block_align
    return struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        b"RIFF",
        UNKNOWN_LENGTH,
        b"WAVE",
        b"fmt ",
        16,  # fmt chunk size
        PCM_FORMAT_TAG,
        channels,
        sample_rate,
        byte_rate,
        block_align,
        BITS_PER_SAMPLE,
        b"data",
        UNKNOWN_LENGTH,
    )

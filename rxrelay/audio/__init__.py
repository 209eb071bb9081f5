"""Audio fan-out for the rx process's PCM datagrams."""

from rxrelay.audio.broadcaster import AudioBroadcaster, parse_address
from rxrelay.audio.wav import make_wav_header

__all__ = ["AudioBroadcaster", "make_wav_header", "parse_address"]

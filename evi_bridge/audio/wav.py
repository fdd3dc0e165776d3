"""WAV container helpers for streamed assistant audio.

The service sends every audio chunk as a complete WAV file with the canonical
44 byte header. Played back to back, the chunks form one continuous stream
once the header of every chunk after the first is removed.
"""

import struct

from evi_bridge.audio.devices import AudioFormat

HEADER_SIZE = 44


def is_wav_container(data: bytes) -> bool:
    return len(data) > HEADER_SIZE and data[0:4] == b"RIFF" and data[8:12] == b"WAVE"


def parse_header(data: bytes) -> AudioFormat:
    """Read the format from a canonical 44 byte header."""
    if not is_wav_container(data):
        raise ValueError("Not a WAV container")
    channels, sample_rate = struct.unpack_from("<HI", data, 22)
    (bits_per_sample,) = struct.unpack_from("<H", data, 34)
    return AudioFormat(sample_rate=sample_rate, channels=channels, sample_width=bits_per_sample // 8)


def strip_header(data: bytes) -> bytes:
    if not is_wav_container(data):
        return data
    return data[HEADER_SIZE:]


"""PortAudio devices via ``sounddevice`` raw int16 streams."""

import logging
import threading

import sounddevice as sd

from evi_bridge.audio import wav
from evi_bridge.audio.devices import AudioFormat, Microphone, Speaker
from evi_bridge.errors import DeviceError

logger = logging.getLogger(__name__)


def _dtype(fmt: AudioFormat) -> str:
    if fmt.sample_width != 2:
        raise DeviceError(f"Unsupported sample width: {fmt.sample_width} bytes")
    return "int16"


class SoundDeviceMicrophone(Microphone):
    """Blocking reads from a ``sounddevice.RawInputStream``."""

    def __init__(self, device: str | int | None = None):
        self.device = device
        self._stream: sd.RawInputStream | None = None
        self._frame_bytes = 2

    def open(self, fmt: AudioFormat) -> None:
        if self._stream is not None:
            return
        try:
            self._stream = sd.RawInputStream(
                samplerate=fmt.sample_rate,
                channels=fmt.channels,
                dtype=_dtype(fmt),
                device=self.device,
            )
            self._stream.start()
        except (sd.PortAudioError, ValueError) as e:
            self._stream = None
            raise DeviceError(f"Cannot open microphone: {e}") from e
        self._frame_bytes = fmt.channels * fmt.sample_width
        logger.info(f"Microphone opened: {fmt}")

    def read(self, size: int) -> bytes:
        stream = self._stream
        if stream is None:
            raise DeviceError("Microphone is not open")
        try:
            data, overflowed = stream.read(max(size // self._frame_bytes, 1))
        except (sd.PortAudioError, RuntimeError) as e:
            raise DeviceError(f"Microphone read failed: {e}") from e
        if overflowed:
            logger.debug("Microphone input overflow")
        return bytes(data)

    def close(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except sd.PortAudioError as e:
            logger.warning(f"Error closing microphone: {e}")


class SoundDeviceSpeaker(Speaker):
    """Blocking writes to a ``sounddevice.RawOutputStream``.

    A WAV container written to the speaker sets the stream format: if the
    header announces a different rate or channel count, the stream is reopened
    before the samples after the header are played.
    """

    def __init__(self, device: str | int | None = None):
        self.device = device
        self._stream: sd.RawOutputStream | None = None
        self._format: AudioFormat | None = None
        self._lock = threading.Lock()

    def open(self, fmt: AudioFormat) -> None:
        with self._lock:
            if self._stream is None:
                self._open_stream(fmt)

    def _open_stream(self, fmt: AudioFormat) -> None:
        try:
            stream = sd.RawOutputStream(
                samplerate=fmt.sample_rate,
                channels=fmt.channels,
                dtype=_dtype(fmt),
                device=self.device,
            )
            stream.start()
        except (sd.PortAudioError, ValueError) as e:
            raise DeviceError(f"Cannot open speaker: {e}") from e
        self._stream = stream
        self._format = fmt
        logger.info(f"Speaker opened: {fmt}")

    def _close_stream(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except sd.PortAudioError as e:
            logger.warning(f"Error closing speaker: {e}")

    def write(self, data: bytes) -> None:
        with self._lock:
            if wav.is_wav_container(data):
                fmt = wav.parse_header(data)
                if fmt != self._format:
                    logger.info(f"Stream format announced by audio header: {fmt}")
                    self._close_stream()
                    self._open_stream(fmt)
                data = wav.strip_header(data)
            if self._stream is None:
                raise DeviceError("Speaker is not open")
            try:
                self._stream.write(data)
            except (sd.PortAudioError, RuntimeError) as e:
                raise DeviceError(f"Speaker write failed: {e}") from e

    def close(self) -> None:
        with self._lock:
            self._close_stream()
            self._format = None

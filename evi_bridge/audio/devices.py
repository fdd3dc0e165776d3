"""Audio device interfaces owned by the capture and playback loops."""

from abc import ABC, abstractmethod


class AudioFormat:
    """Linear PCM stream format."""

    __slots__ = ("sample_rate", "channels", "sample_width")

    def __init__(self, sample_rate: int, channels: int = 1, sample_width: int = 2):
        self.sample_rate = sample_rate
        self.channels = channels
        self.sample_width = sample_width

    @property
    def bytes_per_second(self) -> int:
        return self.sample_rate * self.channels * self.sample_width

    def __eq__(self, other) -> bool:
        if not isinstance(other, AudioFormat):
            return NotImplemented
        return (
            self.sample_rate == other.sample_rate
            and self.channels == other.channels
            and self.sample_width == other.sample_width
        )

    def __repr__(self) -> str:
        return (
            f"AudioFormat(sample_rate={self.sample_rate}, channels={self.channels}, "
            f"sample_width={self.sample_width})"
        )


class Microphone(ABC):
    """Abstract capture device."""

    @abstractmethod
    def open(self, fmt: AudioFormat) -> None:
        """Open the device; raises ``DeviceError`` when unavailable."""
        raise NotImplementedError

    @abstractmethod
    def read(self, size: int) -> bytes:
        """
        Block until audio is available and return up to ``size`` bytes.

        An empty result means nothing was read. Raises ``DeviceError`` on a
        hardware failure.
        """
        raise NotImplementedError

    @abstractmethod
    def close(self) -> None:
        raise NotImplementedError


class Speaker(ABC):
    """Abstract output device."""

    @abstractmethod
    def open(self, fmt: AudioFormat) -> None:
        """Open the device; raises ``DeviceError`` when unavailable."""
        raise NotImplementedError

    @abstractmethod
    def write(self, data: bytes) -> None:
        """
        Play ``data``, blocking until the device accepts it.

        ``data`` is raw PCM, or a WAV file whose header describes the stream
        that follows. Raises ``DeviceError`` on a hardware failure.
        """
        raise NotImplementedError

    @abstractmethod
    def close(self) -> None:
        raise NotImplementedError

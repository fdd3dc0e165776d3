"""Speaker playback loop with a bounded queue."""

import logging
import queue
import threading

from evi_bridge.audio import wav
from evi_bridge.audio.devices import AudioFormat, Speaker
from evi_bridge.errors import DeviceError

logger = logging.getLogger(__name__)

TAKE_TIMEOUT = 0.1


class AudioPlayback:
    """Queues assistant audio and writes it to the speaker on its own thread.

    The queue is bounded: when it is full the newest buffer is dropped and
    counted in ``dropped``. Within one play session the first WAV chunk goes
    to the speaker whole, so the device can pick up the format from its
    header; later chunks lose their header and are played as raw samples.
    """

    def __init__(self, speaker: Speaker, fmt: AudioFormat, capacity: int = 32):
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        self.speaker = speaker
        self.format = fmt
        self.capacity = capacity
        self.dropped = 0
        self.written = 0
        self.last_error: Exception | None = None
        self._queue: queue.Queue = queue.Queue(maxsize=capacity)
        self._first_chunk = True
        self._header_lock = threading.Lock()
        self._running = False
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        """Open the speaker and start the playback thread."""
        if self._running:
            return
        self.speaker.open(self.format)
        with self._header_lock:
            self._first_chunk = True
        self.last_error = None
        self._running = True
        self._thread = threading.Thread(target=self._run, name="evi-playback", daemon=True)
        self._thread.start()
        logger.info("Audio playback started")

    def enqueue(self, data: bytes) -> bool:
        """Queue audio without blocking; False if not started or the queue is full."""
        if not self._running:
            logger.debug("Playback not running, audio discarded")
            return False
        processed = self._process(data)
        if not processed:
            return True
        try:
            self._queue.put_nowait(processed)
        except queue.Full:
            self.dropped += 1
            logger.warning(f"Playback queue full ({self.capacity}), dropping audio")
            return False
        return True

    def _process(self, data: bytes) -> bytes:
        if not wav.is_wav_container(data):
            return data
        with self._header_lock:
            if self._first_chunk:
                self._first_chunk = False
                return data
        return wav.strip_header(data)

    def clear(self) -> int:
        """Discard pending audio; returns how many buffers were dropped."""
        cleared = 0
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                break
            cleared += 1
        if cleared:
            logger.debug(f"Cleared {cleared} pending playback buffers")
        return cleared

    def stop(self, timeout: float = 2.0) -> None:
        """Clear the queue, join the thread and release the speaker. Idempotent."""
        was_running = self._running
        self._running = False
        self.clear()
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("Playback thread did not exit in time")
        if thread is not None:
            self.speaker.close()
        with self._header_lock:
            self._first_chunk = True
        if was_running:
            logger.info("Audio playback stopped")

    def _run(self) -> None:
        while self._running:
            try:
                data = self._queue.get(timeout=TAKE_TIMEOUT)
            except queue.Empty:
                continue
            if not self._running:
                break
            try:
                self.speaker.write(data)
                self.written += 1
            except (DeviceError, OSError) as e:
                self.last_error = e
                logger.error(f"Speaker write failed, playback stopped: {e}")
                break
        self._running = False
        logger.debug("Audio playback thread ended")

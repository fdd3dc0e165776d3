"""Microphone capture loop."""

import logging
import threading
import time
from collections.abc import Callable

from evi_bridge.audio.devices import AudioFormat, Microphone
from evi_bridge.errors import DeviceError

logger = logging.getLogger(__name__)

EMPTY_READ_BACKOFF = 0.01


class AudioCapture:
    """Reads fixed-size chunks on a dedicated thread and publishes them.

    ``on_chunk`` runs on the capture thread for every non-empty chunk. A read
    error ends the loop; restarting is up to the caller.
    """

    def __init__(
        self,
        microphone: Microphone,
        fmt: AudioFormat,
        on_chunk: Callable[[bytes], None],
        chunk_bytes: int = 3200,
        max_empty_reads: int = 50,
    ):
        if chunk_bytes <= 0:
            raise ValueError("chunk_bytes must be > 0")
        self.microphone = microphone
        self.format = fmt
        self.on_chunk = on_chunk
        self.chunk_bytes = chunk_bytes
        self.max_empty_reads = max_empty_reads
        self.chunks_read = 0
        self.last_error: Exception | None = None
        self._running = False
        self._publish_lock = threading.Lock()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Open the microphone and start the capture thread."""
        if self._running:
            logger.debug("Capture already running")
            return
        self.microphone.open(self.format)
        self.last_error = None
        self.chunks_read = 0
        self._running = True
        self._thread = threading.Thread(target=self._run, name="evi-capture", daemon=True)
        self._thread.start()
        logger.info(f"Audio capture started ({self.chunk_bytes} bytes per read)")

    def stop(self, timeout: float = 2.0) -> None:
        """Stop publishing, release the microphone and join the thread. Idempotent."""
        with self._publish_lock:
            was_running = self._running
            self._running = False
            thread, self._thread = self._thread, None
        if thread is None:
            return
        self.microphone.close()
        if thread is not threading.current_thread():
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("Capture thread did not exit in time; it will not publish again")
        if was_running:
            logger.info(f"Audio capture stopped after {self.chunks_read} chunks")

    def _run(self) -> None:
        empty_reads = 0
        while self._running:
            try:
                data = self.microphone.read(self.chunk_bytes)
            except (DeviceError, OSError) as e:
                if self._running:
                    self.last_error = e
                    logger.error(f"Microphone read failed, capture stopped: {e}")
                break

            if not data:
                empty_reads += 1
                if empty_reads >= self.max_empty_reads:
                    self.last_error = DeviceError(f"{empty_reads} consecutive empty reads")
                    logger.error(f"Microphone stalled ({empty_reads} empty reads), capture stopped")
                    break
                time.sleep(EMPTY_READ_BACKOFF)
                continue

            empty_reads = 0
            with self._publish_lock:
                if not self._running:
                    break
                self.chunks_read += 1
                if self.chunks_read == 1:
                    logger.debug("Microphone capture delivering audio")
                try:
                    self.on_chunk(data)
                except Exception as e:
                    logger.error(f"Capture subscriber failed: {e}", exc_info=True)

        self._running = False
        logger.debug("Audio capture thread ended")

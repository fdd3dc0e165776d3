import asyncio
import json
import struct
import threading
import time

import pytest

from evi_bridge.audio.devices import AudioFormat, Microphone, Speaker
from evi_bridge.config import EviBridgeSettings
from evi_bridge.errors import DeviceError
from evi_bridge.transport.connection import (
    CONNECTED,
    CONNECTING,
    DISCONNECTED,
    DISCONNECTING,
    IDLE,
    ConnectionState,
    StateKind,
)

_END = object()


def wav_header(fmt: AudioFormat, data_size: int) -> bytes:
    """Canonical 44 byte PCM header for `data_size` bytes of samples."""
    return struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        b"RIFF",
        36 + data_size,
        b"WAVE",
        b"fmt ",
        16,
        1,
        fmt.channels,
        fmt.sample_rate,
        fmt.bytes_per_second,
        fmt.channels * fmt.sample_width,
        fmt.sample_width * 8,
        b"data",
        data_size,
    )


def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


async def async_wait_until(predicate, timeout: float = 2.0, interval: float = 0.005) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


class FakeMicrophone(Microphone):
    """Returns a numbered chunk per read, optionally failing or going silent."""

    def __init__(self, delay: float = 0.005, fail_after: int | None = None, silent: bool = False, open_error=None):
        self.delay = delay
        self.fail_after = fail_after
        self.silent = silent
        self.open_error = open_error
        self.format: AudioFormat | None = None
        self.reads = 0
        self.opened = 0
        self.closed = 0

    def open(self, fmt: AudioFormat) -> None:
        if self.open_error is not None:
            raise self.open_error
        self.format = fmt
        self.opened += 1

    def read(self, size: int) -> bytes:
        time.sleep(self.delay)
        self.reads += 1
        if self.fail_after is not None and self.reads > self.fail_after:
            raise DeviceError("microphone unplugged")
        if self.silent:
            return b""
        return bytes([self.reads % 256]) * size

    def close(self) -> None:
        self.closed += 1


class FakeSpeaker(Speaker):
    """Records writes; blocks inside write() until ``release`` is set when ``blocking``."""

    def __init__(self, blocking: bool = False, write_error=None):
        self.writes: list[bytes] = []
        self.format: AudioFormat | None = None
        self.opened = 0
        self.closed = 0
        self.write_error = write_error
        self.in_write = threading.Event()
        self.release = threading.Event()
        if not blocking:
            self.release.set()

    def open(self, fmt: AudioFormat) -> None:
        self.format = fmt
        self.opened += 1

    def write(self, data: bytes) -> None:
        self.in_write.set()
        if self.write_error is not None:
            raise self.write_error
        self.release.wait(2.0)
        self.writes.append(bytes(data))

    def close(self) -> None:
        self.closed += 1


class FakeWebSocket:
    """In-memory stand-in for a websockets client connection."""

    def __init__(self):
        self.sent: list[str] = []
        self.closed = False
        self.close_code = None
        self.close_reason = None
        self._incoming: asyncio.Queue = asyncio.Queue()

    def push(self, payload) -> None:
        if not isinstance(payload, (str, bytes)):
            payload = json.dumps(payload)
        self._incoming.put_nowait(payload)

    def finish(self, code: int = 1000, reason: str = "") -> None:
        """Server-initiated clean close."""
        self.close_code = code
        self.close_reason = reason
        self._incoming.put_nowait(_END)

    async def send(self, text: str) -> None:
        self.sent.append(text)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if not self.closed:
            self.closed = True
            self.close_code = code
            self.close_reason = reason
            self._incoming.put_nowait(_END)

    def sent_types(self) -> list[str]:
        return [json.loads(text)["type"] for text in self.sent]

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is _END:
            raise StopAsyncIteration
        return item


class FakeConnector:
    """Replaces ``websockets.asyncio.client.connect``."""

    def __init__(self, ws: FakeWebSocket | None = None, error: Exception | None = None, delay: float = 0.0):
        self.ws = ws
        self.error = error
        self.delay = delay
        self.calls: list[tuple[str, dict]] = []

    async def __call__(self, url: str, **kwargs):
        self.calls.append((url, kwargs))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self.ws is None:
            self.ws = FakeWebSocket()
        return self.ws


class FakeConnection:
    """Connection double whose CONNECTED notification can be withheld."""

    def __init__(self, connect_result: bool = True, notify_connected: bool = True):
        self.on_event = lambda event: None
        self.on_state = lambda state: None
        self.connect_result = connect_result
        self.notify_connected = notify_connected
        self.sent: list[dict] = []
        self.close_calls = 0
        self._state = IDLE

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state.kind is StateKind.CONNECTED

    def _set(self, state: ConnectionState, notify: bool = True) -> None:
        self._state = state
        if notify:
            self.on_state(state)

    async def connect(self) -> bool:
        self._set(CONNECTING)
        if not self.connect_result:
            self._set(ConnectionState.failed("connection refused"))
            return False
        self._set(CONNECTED, notify=self.notify_connected)
        return True

    async def send(self, text: str) -> bool:
        if not self.is_connected:
            return False
        self.sent.append(json.loads(text))
        return True

    async def close(self, code: int = 1000, reason: str = "Client disconnect") -> None:
        self.close_calls += 1
        if self._state.kind in (StateKind.DISCONNECTING, StateKind.DISCONNECTED):
            return
        self._set(DISCONNECTING)
        self._set(DISCONNECTED)

    def deliver(self, event) -> None:
        self.on_event(event)

    def fail(self, reason: str) -> None:
        self._set(ConnectionState.failed(reason))

    def finish(self) -> None:
        self._set(DISCONNECTING)
        self._set(DISCONNECTED)

    def sent_types(self) -> list[str]:
        return [message["type"] for message in self.sent]


@pytest.fixture
def settings():
    return EviBridgeSettings(
        _env_file=None,
        api_key="test-key",
        bring_up_fallback_seconds=5.0,
        capture_chunk_bytes=320,
    )


@pytest.fixture
def microphone():
    return FakeMicrophone()


@pytest.fixture
def speaker():
    return FakeSpeaker()

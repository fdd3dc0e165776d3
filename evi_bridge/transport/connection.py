"""Persistent WebSocket connection to the voice service."""

import asyncio
import enum
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx
from websockets.asyncio.client import connect as websocket_connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from evi_bridge.config import EviBridgeSettings
from evi_bridge.errors import BridgeConnectionError
from evi_bridge.transport import codec
from evi_bridge.transport.codec import DecodeResult

logger = logging.getLogger(__name__)

API_KEY_PARAM = "api_key"
API_KEY_HEADER = "X-Hume-Api-Key"
CLOSE_TIMEOUT = 5.0


class StateKind(str, enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"
    DISCONNECTED = "disconnected"
    FAILED = "failed"


@dataclass(frozen=True)
class ConnectionState:
    """Connection lifecycle state; ``reason`` is set for ``FAILED``."""

    kind: StateKind
    reason: str | None = None

    @classmethod
    def failed(cls, reason: str) -> "ConnectionState":
        return cls(StateKind.FAILED, reason)

    @property
    def is_terminal(self) -> bool:
        return self.kind in (StateKind.DISCONNECTED, StateKind.FAILED)

    def __str__(self) -> str:
        if self.reason:
            return f"{self.kind.value}({self.reason})"
        return self.kind.value


IDLE = ConnectionState(StateKind.IDLE)
CONNECTING = ConnectionState(StateKind.CONNECTING)
CONNECTED = ConnectionState(StateKind.CONNECTED)
DISCONNECTING = ConnectionState(StateKind.DISCONNECTING)
DISCONNECTED = ConnectionState(StateKind.DISCONNECTED)

# Terminal states are only left by a new connect() or, for FAILED, by close().
_ALLOWED = {
    StateKind.IDLE: {StateKind.CONNECTING, StateKind.DISCONNECTING},
    StateKind.CONNECTING: {StateKind.CONNECTED, StateKind.FAILED, StateKind.DISCONNECTING},
    StateKind.CONNECTED: {StateKind.DISCONNECTING, StateKind.FAILED},
    StateKind.DISCONNECTING: {StateKind.DISCONNECTED},
    StateKind.DISCONNECTED: {StateKind.CONNECTING},
    StateKind.FAILED: {StateKind.CONNECTING, StateKind.DISCONNECTING},
}


def build_endpoint(settings: EviBridgeSettings) -> tuple[str, dict[str, str]]:
    """Return the connection URL and handshake headers."""
    if not settings.api_key:
        raise BridgeConnectionError("No API key configured. Set EVI_API_KEY.")

    params: dict[str, str] = {}
    headers: dict[str, str] = {}
    if settings.auth_mode in ("query", "both"):
        params[API_KEY_PARAM] = settings.api_key
    if settings.auth_mode in ("header", "both"):
        headers[API_KEY_HEADER] = settings.api_key
    if settings.config_id:
        params["config_id"] = settings.config_id
    if settings.config_version:
        params["config_version"] = settings.config_version
    if settings.resumed_chat_group_id:
        params["resumed_chat_group_id"] = settings.resumed_chat_group_id

    url = httpx.URL(settings.endpoint).copy_merge_params(params)
    return str(url), headers


def redact(url: str) -> str:
    """Hide the credential in a URL meant for logs."""
    parsed = httpx.URL(url)
    if API_KEY_PARAM in parsed.params:
        parsed = parsed.copy_set_param(API_KEY_PARAM, "***")
    return str(parsed)


class ConnectionManager:
    """Owns the WebSocket and is the only writer of the connection state.

    State changes come from the lifecycle callbacks (``_on_open``,
    ``_on_message``, ``_on_closing``, ``_on_closed``, ``_on_failure``). They
    are applied one at a time under a lock, checked against the allowed
    transitions, and stamped with the generation of the socket that produced
    them, so a late callback from an old socket cannot move the state.
    """

    def __init__(
        self,
        settings: EviBridgeSettings,
        on_event: Callable[[Any], None] | None = None,
        on_state: Callable[[ConnectionState], None] | None = None,
        connector: Callable[..., Any] = websocket_connect,
    ):
        self.settings = settings
        self.on_event = on_event or (lambda event: None)
        self.on_state = on_state or (lambda state: None)
        self._connector = connector
        self._state: ConnectionState = IDLE
        self._state_lock = threading.Lock()
        self._send_lock = asyncio.Lock()
        self._generation = 0
        self._ws = None
        self._reader: asyncio.Task | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state.kind is StateKind.CONNECTED

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def connect(self) -> bool:
        """Open the connection. Returns False on failure, never raises."""
        with self._state_lock:
            if self._state.kind in (StateKind.CONNECTING, StateKind.CONNECTED):
                logger.warning(f"connect() ignored, connection is {self._state}")
                return self._state.kind is StateKind.CONNECTED
            self._generation += 1
            generation = self._generation
        if not self._transition(CONNECTING, generation):
            return False

        try:
            url, headers = build_endpoint(self.settings)
        except BridgeConnectionError as e:
            self._on_failure(generation, str(e))
            return False

        logger.info(f"Connecting to {redact(url)}")
        try:
            ws = await asyncio.wait_for(
                self._connector(
                    url,
                    additional_headers=headers or None,
                    open_timeout=self.settings.connect_timeout,
                    max_size=self.settings.max_payload_bytes,
                    close_timeout=CLOSE_TIMEOUT,
                ),
                timeout=self.settings.connect_timeout,
            )
        except asyncio.CancelledError:
            self._on_failure(generation, "Connect cancelled")
            raise
        except asyncio.TimeoutError:
            self._on_failure(generation, f"Connect timed out after {self.settings.connect_timeout}s")
            return False
        except (WebSocketException, OSError) as e:
            self._on_failure(generation, f"{type(e).__name__}: {e}")
            return False

        if generation != self._generation:
            logger.info("Connection closed while connecting; discarding socket")
            await self._close_socket(ws, 1000, "Client disconnect")
            return False

        self._ws = ws
        self._on_open(generation)
        self._reader = asyncio.create_task(self._read_loop(ws, generation), name="evi-reader")
        return True

    async def send(self, text: str) -> bool:
        """Write one text frame. Returns False if it was not sent."""
        ws = self._ws
        if self._state.kind is not StateKind.CONNECTED or ws is None:
            logger.warning("Not connected, cannot send message")
            return False
        size = len(text.encode("utf-8"))
        if size > self.settings.max_payload_bytes:
            logger.error(f"Refusing to send {size} byte frame (limit {self.settings.max_payload_bytes})")
            return False

        async with self._send_lock:
            try:
                await asyncio.wait_for(ws.send(text), timeout=self.settings.write_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Send timed out after {self.settings.write_timeout}s")
                return False
            except (ConnectionClosed, WebSocketException, OSError) as e:
                logger.warning(f"Send rejected by transport: {e}")
                return False
        return True

    async def close(self, code: int = 1000, reason: str = "Client disconnect") -> None:
        """Close the connection. Idempotent; safe during an in-flight connect."""
        with self._state_lock:
            generation = self._generation
        if not self._transition(DISCONNECTING, generation):
            logger.debug(f"close() ignored, connection is {self._state}")
            return
        with self._state_lock:
            self._generation += 1
            generation = self._generation

        reader, self._reader = self._reader, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass

        ws, self._ws = self._ws, None
        if ws is not None:
            await self._close_socket(ws, code, reason)
        self._transition(DISCONNECTED, generation)

    async def _close_socket(self, ws, code: int, reason: str) -> None:
        try:
            await asyncio.wait_for(ws.close(code, reason), timeout=CLOSE_TIMEOUT)
        except (asyncio.TimeoutError, WebSocketException, OSError) as e:
            logger.warning(f"Error while closing socket: {e}")

    # ------------------------------------------------------------------
    # Lifecycle callbacks
    # ------------------------------------------------------------------

    def _on_open(self, generation: int) -> None:
        logger.info("WebSocket connected")
        self._transition(CONNECTED, generation)

    def _on_message(self, generation: int, message: str | bytes) -> None:
        if generation != self._generation:
            return
        if isinstance(message, bytes):
            logger.warning(f"Ignoring {len(message)} byte binary frame")
            return

        result = codec.decode(message, self.settings.max_payload_bytes)
        if result.kind == DecodeResult.SKIPPED:
            logger.warning(f"Unknown message type: {result.message_type}")
            return
        if result.kind == DecodeResult.MALFORMED:
            logger.error(f"Failed to parse message: {result.error}")
            return

        try:
            self.on_event(result.value)
        except Exception as e:
            logger.error(f"Error handling {result.message_type} message: {e}", exc_info=True)

    def _on_closing(self, generation: int, code: int | None, reason: str | None) -> None:
        logger.info(f"WebSocket closing: {code} {reason or ''}".rstrip())
        self._transition(DISCONNECTING, generation)

    def _on_closed(self, generation: int, code: int | None, reason: str | None) -> None:
        logger.info(f"WebSocket closed: {code} {reason or ''}".rstrip())
        if self._transition(DISCONNECTED, generation):
            self._ws = None

    def _on_failure(self, generation: int, reason: str) -> None:
        logger.error(f"WebSocket error: {reason}")
        if self._transition(ConnectionState.failed(reason), generation):
            self._ws = None

    def _transition(self, new: ConnectionState, generation: int) -> bool:
        with self._state_lock:
            if generation != self._generation:
                logger.debug(f"Stale transition to {new} ignored")
                return False
            if new.kind not in _ALLOWED[self._state.kind]:
                logger.debug(f"Transition {self._state} -> {new} ignored")
                return False
            self._state = new
        try:
            self.on_state(new)
        except Exception as e:
            logger.error(f"Connection state observer failed: {e}", exc_info=True)
        return True

    async def _read_loop(self, ws, generation: int) -> None:
        try:
            async for message in ws:
                self._on_message(generation, message)
        except ConnectionClosed as e:
            self._on_failure(generation, f"Connection lost: {e}")
            return
        except (WebSocketException, OSError) as e:
            self._on_failure(generation, f"{type(e).__name__}: {e}")
            return
        code = getattr(ws, "close_code", None)
        reason = getattr(ws, "close_reason", None)
        self._on_closing(generation, code, reason)
        self._on_closed(generation, code, reason)

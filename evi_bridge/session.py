"""Session coordination between the connection and the audio loops."""

import asyncio
import binascii
import inspect
import json
import logging
import threading
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel

from evi_bridge.audio.capture import AudioCapture
from evi_bridge.audio.devices import AudioFormat, Microphone, Speaker
from evi_bridge.audio.playback import AudioPlayback
from evi_bridge.broadcast import Broadcast
from evi_bridge.config import EviBridgeSettings, get_settings
from evi_bridge.errors import DeviceError
from evi_bridge.providers import create_microphone, create_speaker
from evi_bridge.transport import codec
from evi_bridge.transport.connection import ConnectionManager, ConnectionState, StateKind
from evi_bridge.transport.messages import (
    AssistantProsody,
    AssistantTextInject,
    AssistantTranscript,
    AssistantTurnEnd,
    AudioChunk,
    AudioConfiguration,
    AudioFrame,
    ChatMetadata,
    PauseTurns,
    ProtocolError,
    ResumeTurns,
    SessionConfig,
    TextInput,
    ToolInvocationError,
    ToolInvocationRequest,
    ToolInvocationResult,
    UserInterruption,
    UserTranscript,
)

logger = logging.getLogger(__name__)

OUTBOX_SIZE = 64

ToolHandler = Callable[[dict[str, Any]], Any]


class TurnTakingGate:
    """Decides whether captured audio is forwarded upstream.

    Written from the event loop, read from the capture thread on every chunk.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._forward = True

    @property
    def forward_audio(self) -> bool:
        with self._lock:
            return self._forward

    def on_audio_output(self, allow_user_interrupt: bool) -> None:
        with self._lock:
            self._forward = allow_user_interrupt

    def on_assistant_end(self) -> None:
        with self._lock:
            self._forward = True

    def on_user_interruption(self) -> None:
        with self._lock:
            self._forward = True

    def reset(self) -> None:
        with self._lock:
            self._forward = True


class SessionCoordinator:
    """Bridges microphone and speaker to a voice service session.

    Inbound events drive the turn-taking gate and playback, then go out on
    ``events``; connection states go out on ``states``. Captured audio is sent
    upstream only while the gate is open, and only after the one-time bring-up
    (session settings first, then capture) has run.
    """

    def __init__(
        self,
        settings: EviBridgeSettings | None = None,
        connection: ConnectionManager | None = None,
        microphone: Microphone | None = None,
        speaker: Speaker | None = None,
        session_config: SessionConfig | None = None,
    ):
        self.settings = settings or get_settings()
        self.session_config = session_config
        self.gate = TurnTakingGate()
        self.events: Broadcast = Broadcast(
            self.settings.event_replay, self.settings.subscriber_buffer, name="events"
        )
        self.states: Broadcast = Broadcast(
            self.settings.event_replay, self.settings.subscriber_buffer, name="states"
        )

        self.connection = connection or ConnectionManager(self.settings)
        self.connection.on_event = self._on_event
        self.connection.on_state = self._on_state

        self.input_format = AudioFormat(self.settings.input_sample_rate, self.settings.input_channels)
        self.output_format = AudioFormat(self.settings.output_sample_rate, self.settings.output_channels)
        self.capture = AudioCapture(
            microphone or create_microphone(self.settings),
            self.input_format,
            self._on_capture_chunk,
            chunk_bytes=self.settings.capture_chunk_bytes,
            max_empty_reads=self.settings.max_empty_reads,
        )
        self.playback = AudioPlayback(
            speaker or create_speaker(self.settings),
            self.output_format,
            capacity=self.settings.playback_queue_capacity,
        )

        self.chat_id: str | None = None
        self.chat_group_id: str | None = None
        self.sent_frames = 0
        self.suppressed_frames = 0
        self.dropped_frames = 0

        self._tools: dict[str, ToolHandler] = {}
        self._tool_tasks: set[asyncio.Task] = set()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._outbox: asyncio.Queue | None = None
        self._forwarder: asyncio.Task | None = None
        self._fallback: asyncio.Task | None = None
        self._bring_up_task: asyncio.Task | None = None
        self._capture_stopper: asyncio.Task | None = None
        self._brought_up = False
        self._active = False

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def forward_audio(self) -> bool:
        return self.gate.forward_audio

    @property
    def state(self) -> ConnectionState:
        return self.connection.state

    @property
    def brought_up(self) -> bool:
        return self._brought_up

    @property
    def active(self) -> bool:
        return self._active

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> bool:
        """Start playback, connect, and arm the bring-up triggers."""
        if self._active:
            if not self.connection.state.is_terminal:
                logger.warning("Session already active")
                return self.connection.is_connected
            logger.info(f"Previous connection ended ({self.connection.state}), starting a new session")
            await self._teardown()

        logger.info(f"Connecting with allow_user_interrupt={self.settings.allow_user_interrupt}")
        self._loop = asyncio.get_running_loop()
        self._active = True
        self._brought_up = False
        self.gate.reset()
        self._outbox = asyncio.Queue(maxsize=OUTBOX_SIZE)
        self._forwarder = asyncio.create_task(self._forward_audio(self._outbox), name="evi-forwarder")

        try:
            self.playback.start()
        except DeviceError as e:
            logger.error(f"Speaker unavailable, continuing without playback: {e}")

        self._fallback = asyncio.create_task(self._fallback_bring_up(), name="evi-bring-up-fallback")

        connected = await self.connection.connect()
        if not connected:
            logger.error("Failed to connect")
            await self._teardown()
            return False
        logger.debug("Session setup complete")
        return True

    async def disconnect(self) -> None:
        """End the session and release every resource. Idempotent."""
        torn_down = await self._teardown()
        await self.connection.close()
        if torn_down:
            logger.info("Session disconnected")

    async def close(self) -> None:
        """Disconnect and end all event and state subscriptions."""
        await self.disconnect()
        self.events.close()
        self.states.close()

    async def __aenter__(self) -> "SessionCoordinator":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def _teardown(self) -> bool:
        if not self._active:
            return False
        self._active = False

        tasks = [
            t
            for t in (self._fallback, self._bring_up_task, self._forwarder)
            if t is not None and t is not asyncio.current_task()
        ]
        tasks.extend(self._tool_tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        # The stop already in flight must finish before the microphone can be reopened.
        stopper, self._capture_stopper = self._capture_stopper, None
        if stopper is not None:
            await asyncio.gather(stopper, return_exceptions=True)
        self._fallback = self._bring_up_task = self._forwarder = None
        self._tool_tasks.clear()
        self._outbox = None

        await asyncio.to_thread(self.capture.stop)
        await asyncio.to_thread(self.playback.stop)
        return True

    # ------------------------------------------------------------------
    # Bring-up
    # ------------------------------------------------------------------

    def _trigger_bring_up(self, source: str) -> None:
        if self._brought_up or not self._active:
            return
        self._brought_up = True
        self._bring_up_task = asyncio.create_task(self._bring_up(source), name="evi-bring-up")

    async def _bring_up(self, source: str) -> None:
        config = self._build_session_config()
        if not await self.send_command(config):
            logger.error(f"Session settings not sent ({source}); capture not started")
            self._brought_up = False
            return
        if not self._active:
            return
        try:
            self.capture.start()
        except DeviceError as e:
            logger.error(f"Microphone unavailable: {e}")
            return
        logger.info(f"Client connected via {source}")

    async def _fallback_bring_up(self) -> None:
        await asyncio.sleep(self.settings.bring_up_fallback_seconds)
        if self._brought_up:
            return
        if self.connection.is_connected:
            self._trigger_bring_up("fallback timer")
        else:
            logger.debug("Fallback timer fired before the connection was up")

    def _build_session_config(self) -> SessionConfig:
        base = self.session_config or SessionConfig()
        updates: dict[str, Any] = {
            "audio": AudioConfiguration(
                sample_rate=self.input_format.sample_rate,
                channels=self.input_format.channels,
                encoding="linear16",
            )
        }
        if base.system_prompt is None and self.settings.system_prompt:
            updates["system_prompt"] = self.settings.system_prompt
        if base.voice_id is None and self.settings.voice_id:
            updates["voice_id"] = self.settings.voice_id
        if base.custom_session_id is None and self.settings.custom_session_id:
            updates["custom_session_id"] = self.settings.custom_session_id
        return base.model_copy(update=updates)

    # ------------------------------------------------------------------
    # Capture -> upstream
    # ------------------------------------------------------------------

    def _on_capture_chunk(self, data: bytes) -> None:
        # Runs on the capture thread.
        if not self.gate.forward_audio:
            self.suppressed_frames += 1
            return
        loop, outbox = self._loop, self._outbox
        if loop is None or outbox is None:
            return
        try:
            loop.call_soon_threadsafe(self._offer_frame, outbox, data)
        except RuntimeError:
            logger.debug("Event loop closed, captured audio discarded")

    def _offer_frame(self, outbox: asyncio.Queue, data: bytes) -> None:
        try:
            outbox.put_nowait(data)
        except asyncio.QueueFull:
            self.dropped_frames += 1
            logger.warning("Audio outbox full, dropping captured audio")

    async def _forward_audio(self, outbox: asyncio.Queue) -> None:
        while True:
            data = await outbox.get()
            if not self.gate.forward_audio:
                self.suppressed_frames += 1
                continue
            frame = AudioFrame.from_pcm(data, self.settings.custom_session_id)
            if await self.send_command(frame):
                self.sent_frames += 1

    # ------------------------------------------------------------------
    # Inbound routing
    # ------------------------------------------------------------------

    def _on_state(self, state: ConnectionState) -> None:
        logger.info(f"Connection state: {state}")
        if state.kind is StateKind.CONNECTED:
            self._trigger_bring_up("connected callback")
        elif state.is_terminal and self.capture.running and self._capture_stopper is None:
            self._capture_stopper = asyncio.create_task(asyncio.to_thread(self.capture.stop))
        self.states.publish(state)

    def _on_event(self, event) -> None:
        # Any inbound frame proves the connection is up.
        self._trigger_bring_up("inbound message")

        if isinstance(event, AudioChunk):
            self.gate.on_audio_output(self.settings.allow_user_interrupt)
            self._play(event)
        elif isinstance(event, AssistantTurnEnd):
            self.gate.on_assistant_end()
        elif isinstance(event, UserInterruption):
            self.gate.on_user_interruption()
            if self.settings.flush_playback_on_interrupt:
                self.playback.clear()
        elif isinstance(event, UserTranscript):
            logger.debug(f"User: {event.text}")
        elif isinstance(event, AssistantTranscript):
            logger.debug(f"Assistant: {event.text}")
        elif isinstance(event, ToolInvocationRequest):
            logger.info(f"Tool call: {event.name}")
            self._dispatch_tool(event)
        elif isinstance(event, ProtocolError):
            logger.warning(f"Service error {event.code or ''}: {event.message}")
        elif isinstance(event, ChatMetadata):
            self.chat_id = event.chat_id
            self.chat_group_id = event.chat_group_id
            logger.info(f"Chat {event.chat_id} in group {event.chat_group_id}")
        elif isinstance(event, (AssistantProsody, ToolInvocationResult, ToolInvocationError)):
            logger.debug(f"Received {event.type}")
        else:
            logger.warning(f"Unhandled event type: {getattr(event, 'type', event)!r}")

        self.events.publish(event)

    def _play(self, event: AudioChunk) -> None:
        try:
            audio = event.audio
        except (binascii.Error, ValueError) as e:
            logger.error(f"Failed to decode audio chunk {event.index}: {e}")
            return
        logger.debug(f"Received audio chunk {event.index}: {len(audio)} bytes")
        self.playback.enqueue(audio)

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    def register_tool(self, name: str, handler: ToolHandler) -> None:
        """Answer ``tool_call`` frames for ``name`` with ``handler(arguments)``.

        The handler may be sync or async. Its return value is sent as the tool
        response (strings as-is, anything else as JSON); an exception is sent
        as a tool error.
        """
        self._tools[name] = handler

    def unregister_tool(self, name: str) -> None:
        self._tools.pop(name, None)

    def _dispatch_tool(self, event: ToolInvocationRequest) -> None:
        handler = self._tools.get(event.name)
        if handler is None:
            return
        task = asyncio.create_task(self._run_tool(event, handler), name=f"evi-tool-{event.name}")
        self._tool_tasks.add(task)
        task.add_done_callback(self._tool_tasks.discard)

    async def _run_tool(self, event: ToolInvocationRequest, handler: ToolHandler) -> None:
        try:
            result = handler(event.arguments())
            if inspect.isawaitable(result):
                result = await result
            content = result if isinstance(result, str) else json.dumps(result)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Tool {event.name} failed: {e}", exc_info=True)
            await self.send_tool_error(event.tool_call_id, error=f"{type(e).__name__}: {e}")
            return
        if event.response_required:
            await self.send_tool_response(event.tool_call_id, content, tool_name=event.name)
        else:
            logger.debug(f"Tool {event.name} finished, no response required")

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send_command(self, command: BaseModel) -> bool:
        """Encode and send one outbound command."""
        try:
            text = codec.encode(command, self.settings.max_payload_bytes)
        except ValueError as e:
            logger.error(f"Cannot send {command.type}: {e}")
            return False
        if not isinstance(command, AudioFrame):
            logger.debug(f"Sending message: {command.type}")
        return await self.connection.send(text)

    async def send_session_settings(self, config: SessionConfig) -> bool:
        return await self.send_command(config)

    async def send_text_input(self, text: str) -> bool:
        return await self.send_command(
            TextInput(text=text, custom_session_id=self.settings.custom_session_id)
        )

    async def send_assistant_input(self, text: str) -> bool:
        return await self.send_command(
            AssistantTextInject(text=text, custom_session_id=self.settings.custom_session_id)
        )

    async def send_tool_response(
        self, tool_call_id: str, content: str, tool_name: str | None = None
    ) -> bool:
        return await self.send_command(
            ToolInvocationResult(tool_call_id=tool_call_id, content=content, tool_name=tool_name)
        )

    async def send_tool_error(
        self, tool_call_id: str, error: str, content: str | None = None, level: str = "warn"
    ) -> bool:
        return await self.send_command(
            ToolInvocationError(tool_call_id=tool_call_id, error=error, content=content, level=level)
        )

    async def pause_assistant(self) -> bool:
        return await self.send_command(PauseTurns(custom_session_id=self.settings.custom_session_id))

    async def resume_assistant(self) -> bool:
        return await self.send_command(ResumeTurns(custom_session_id=self.settings.custom_session_id))

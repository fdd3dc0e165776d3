"""Command-line voice session.

Usage:
    evi-bridge                          # talk through the default mic/speaker
    evi-bridge --no-interrupt           # mute the mic while the assistant speaks
    evi-bridge --text-input             # also send typed lines as user input
    EVI_API_KEY=... evi-bridge --config-id <id>
"""

import argparse
import asyncio
import logging
import sys
import threading
from typing import TextIO

from evi_bridge.config import EviBridgeSettings
from evi_bridge.session import SessionCoordinator
from evi_bridge.transport.connection import ConnectionState
from evi_bridge.transport.messages import (
    AssistantTranscript,
    ChatMetadata,
    ProtocolError,
    ToolInvocationError,
    ToolInvocationRequest,
    ToolInvocationResult,
    UserInterruption,
    UserTranscript,
)

logger = logging.getLogger("evi_bridge.cli")


def top_emotions(scores: dict[str, float], count: int = 3) -> list[tuple[str, float]]:
    """Highest ``count`` scores, best first."""
    return sorted(scores.items(), key=lambda item: item[1], reverse=True)[:count]


def _format_scores(scores: dict[str, float]) -> str:
    top = top_emotions(scores)
    if not top:
        return ""
    return " [" + ", ".join(f"{name} {value:.2f}" for name, value in top) + "]"


def describe_event(event) -> str | None:
    """One log line for events worth showing; None for the rest."""
    if isinstance(event, UserTranscript):
        if event.interim:
            return None
        return f"User: {event.text}{_format_scores(event.emotion_scores)}"
    if isinstance(event, AssistantTranscript):
        return f"Assistant: {event.text}{_format_scores(event.emotion_scores)}"
    if isinstance(event, UserInterruption):
        return "User interrupted the assistant"
    if isinstance(event, ToolInvocationRequest):
        return f"Tool call {event.tool_call_id}: {event.name}({event.parameters})"
    if isinstance(event, ToolInvocationResult):
        return f"Tool response {event.tool_call_id}: {event.content}"
    if isinstance(event, ToolInvocationError):
        return f"Tool error {event.tool_call_id}: {event.error}"
    if isinstance(event, ProtocolError):
        return f"Service error {event.code or ''}: {event.message}"
    if isinstance(event, ChatMetadata):
        return f"Chat {event.chat_id} (group {event.chat_group_id})"
    return None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="evi-bridge",
        description="Talk to a real-time conversational voice service through the local mic and speaker.",
    )
    parser.add_argument("--api-key", help="Credential key (default: EVI_API_KEY).")
    parser.add_argument("--config-id", help="Service-side configuration id.")
    parser.add_argument("--resume", metavar="CHAT_GROUP_ID", help="Resume an earlier chat group.")
    parser.add_argument(
        "--no-interrupt",
        action="store_true",
        help="Stop sending microphone audio while the assistant is speaking.",
    )
    parser.add_argument("--system-prompt", help="System prompt for this session.")
    parser.add_argument("--voice-id", help="Voice to synthesize with.")
    parser.add_argument(
        "--text-input", action="store_true", help="Send lines typed on stdin as user input."
    )
    parser.add_argument("--log-level", help="Logging level (default: EVI_LOG_LEVEL or INFO).")
    return parser


def settings_from_args(args: argparse.Namespace) -> EviBridgeSettings:
    overrides = {}
    if args.api_key:
        overrides["api_key"] = args.api_key
    if args.config_id:
        overrides["config_id"] = args.config_id
    if args.resume:
        overrides["resumed_chat_group_id"] = args.resume
    if args.no_interrupt:
        overrides["allow_user_interrupt"] = False
    if args.system_prompt:
        overrides["system_prompt"] = args.system_prompt
    if args.voice_id:
        overrides["voice_id"] = args.voice_id
    if args.log_level:
        overrides["log_level"] = args.log_level
    return EviBridgeSettings(**overrides)


async def _log_events(session: SessionCoordinator) -> None:
    async for event in session.events.subscribe():
        line = describe_event(event)
        if line:
            logger.info(line)


async def _wait_for_end(session: SessionCoordinator) -> ConnectionState | None:
    async for state in session.states.subscribe():
        if state.is_terminal:
            return state
    return None


def _pump_lines(stream: TextIO, loop: asyncio.AbstractEventLoop, lines: asyncio.Queue) -> None:
    # Daemon thread target; readline() may block past loop shutdown.
    for line in iter(stream.readline, ""):
        try:
            loop.call_soon_threadsafe(lines.put_nowait, line)
        except RuntimeError:
            logger.debug("Event loop closed, input reader stopped")
            return
    try:
        loop.call_soon_threadsafe(lines.put_nowait, None)
    except RuntimeError:
        logger.debug("Event loop closed before end of input")


async def _read_stdin(session: SessionCoordinator, stream: TextIO | None = None) -> None:
    """Send each non-blank input line as user text until end of input."""
    lines: asyncio.Queue = asyncio.Queue()
    reader = threading.Thread(
        target=_pump_lines,
        args=(stream or sys.stdin, asyncio.get_running_loop(), lines),
        name="evi-stdin",
        daemon=True,
    )
    reader.start()
    while True:
        line = await lines.get()
        if line is None:
            return
        text = line.strip()
        if text:
            await session.send_text_input(text)


async def run_session(settings: EviBridgeSettings, text_input: bool = False) -> int:
    async with SessionCoordinator(settings) as session:
        printer = asyncio.create_task(_log_events(session))
        ended = asyncio.create_task(_wait_for_end(session))
        if not await session.connect():
            printer.cancel()
            ended.cancel()
            await asyncio.gather(printer, ended, return_exceptions=True)
            return 1

        waiters = {ended}
        if text_input:
            waiters.add(asyncio.create_task(_read_stdin(session)))
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (*waiters, printer):
                task.cancel()
            await asyncio.gather(*waiters, printer, return_exceptions=True)

        state = ended.result() if ended.done() and not ended.cancelled() else None
        if state is not None and state.reason:
            logger.error(f"Session ended: {state.reason}")
            return 1
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = settings_from_args(args)
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    try:
        return asyncio.run(run_session(settings, text_input=args.text_input))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())

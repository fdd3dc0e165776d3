from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EviBridgeSettings(BaseSettings):
    """Settings for the voice bridge client."""

    model_config = SettingsConfigDict(
        env_file=".env.evi",
        env_prefix="EVI_"
    )

    # Connection
    api_key: str | None = Field(
        default=None, description="Credential key for the voice service."
    )
    endpoint: str = Field(
        default="wss://api.hume.ai/v0/evi/chat",
        description="Base WebSocket endpoint of the voice service.",
    )
    auth_mode: Literal["query", "header", "both"] = Field(
        default="query",
        description="Where the credential goes: 'query' parameter, 'header', or both.",
    )
    config_id: str | None = Field(
        default=None, description="Optional service-side configuration id."
    )
    config_version: str | None = Field(
        default=None, description="Optional version of the service-side configuration."
    )
    resumed_chat_group_id: str | None = Field(
        default=None, description="Chat group to resume instead of starting a new one."
    )
    custom_session_id: str | None = Field(
        default=None, description="Opaque id stamped on outbound frames for multiplexing."
    )
    connect_timeout: float = Field(
        default=30.0, description="Seconds allowed for the connection handshake."
    )
    write_timeout: float = Field(
        default=30.0, description="Seconds allowed for a single frame write."
    )
    max_payload_bytes: int = Field(
        default=16 * 1024 * 1024, description="Largest single frame sent or accepted."
    )

    # Turn taking
    allow_user_interrupt: bool = Field(
        default=True,
        description="Keep forwarding microphone audio while the assistant is speaking.",
    )
    bring_up_fallback_seconds: float = Field(
        default=1.0,
        description="Delay before the fallback timer checks for a connection it missed.",
    )
    flush_playback_on_interrupt: bool = Field(
        default=True,
        description="Discard queued assistant audio when the service reports a user interruption.",
    )

    # Capture (linear16)
    input_sample_rate: int = Field(
        default=16000, description="Microphone sample rate sent in session settings."
    )
    input_channels: int = Field(default=1, description="Microphone channel count.")
    capture_chunk_bytes: int = Field(
        default=3200, description="Bytes per microphone read (3200 = 100 ms at 16 kHz mono)."
    )
    max_empty_reads: int = Field(
        default=50,
        description="Consecutive empty microphone reads tolerated before capture stops.",
    )

    # Playback
    output_sample_rate: int = Field(
        default=48000, description="Nominal speaker sample rate before the first chunk arrives."
    )
    output_channels: int = Field(default=1, description="Speaker channel count.")
    playback_queue_capacity: int = Field(
        default=32, description="Pending playback buffers kept before new audio is dropped."
    )

    # Event fan-out
    event_replay: int = Field(
        default=10, description="Recent events replayed to a late subscriber."
    )
    subscriber_buffer: int = Field(
        default=256, description="Pending events kept per subscriber before drops."
    )

    # Devices
    audio_backend: Literal["sounddevice"] = Field(
        default="sounddevice", description="Audio device backend."
    )
    input_device: str | int | None = Field(
        default=None, description="Input device name or index. None = system default."
    )
    output_device: str | int | None = Field(
        default=None, description="Output device name or index. None = system default."
    )

    # Session defaults
    system_prompt: str | None = Field(
        default=None, description="System prompt sent with the session settings."
    )
    voice_id: str | None = Field(
        default=None, description="Voice to synthesize with, if the service allows overriding it."
    )

    log_level: str = Field(default="INFO", description="Log level used by the CLI.")


def get_settings() -> EviBridgeSettings:
    """Get the bridge settings instance."""
    return EviBridgeSettings()

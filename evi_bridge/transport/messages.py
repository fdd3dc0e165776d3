"""Typed wire messages exchanged with the voice service.

Each frame is one JSON object discriminated by ``type``. Inbound frames
(service -> client) and outbound frames (client -> service) are modelled as
two discriminated unions; ``tool_response`` and ``tool_error`` travel both ways
and belong to both.
"""

import base64
import json
from typing import Annotated, Any, Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

EmotionScores = dict[str, float]


class WireModel(BaseModel):
    """Base for every frame and nested payload."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


# ---------------------------------------------------------------------------
# Nested payloads
# ---------------------------------------------------------------------------

class MillisecondInterval(WireModel):
    begin: int
    end: int


class ProsodyInference(WireModel):
    scores: EmotionScores = Field(default_factory=dict)


class Inference(WireModel):
    prosody: ProsodyInference | None = None


class ToolResultPayload(WireModel):
    content: str
    tool_call_id: str


class ChatMessage(WireModel):
    role: Literal["assistant", "system", "user", "all", "tool"]
    content: str | None = None
    tool_call: dict[str, Any] | None = None
    tool_result: ToolResultPayload | None = None


class AudioConfiguration(WireModel):
    sample_rate: int
    channels: int
    encoding: str = "linear16"


class SessionContext(WireModel):
    text: str | None = None
    type: Literal["persistent", "temporary"] = "temporary"


class ToolDeclaration(WireModel):
    type: Literal["builtin", "function"] = "function"
    name: str
    parameters: str | None = None
    description: str | None = None
    fallback_content: str | None = None


class BuiltinToolConfig(WireModel):
    name: str
    fallback_content: str | None = None


# ---------------------------------------------------------------------------
# Inbound events
# ---------------------------------------------------------------------------

class InboundBase(WireModel):
    custom_session_id: str | None = None


class _Scored(InboundBase):
    models: Inference = Field(default_factory=Inference)

    @property
    def emotion_scores(self) -> EmotionScores:
        if self.models.prosody is None:
            return {}
        return self.models.prosody.scores


class ChatMetadata(InboundBase):
    type: Literal["chat_metadata"] = "chat_metadata"
    chat_id: str
    chat_group_id: str
    request_id: str | None = None


class UserTranscript(_Scored):
    type: Literal["user_message"] = "user_message"
    message: ChatMessage
    interim: bool = False
    from_text: bool = False
    time: MillisecondInterval | None = None

    @property
    def text(self) -> str:
        return self.message.content or ""


class AssistantTranscript(_Scored):
    type: Literal["assistant_message"] = "assistant_message"
    message: ChatMessage
    from_text: bool = False
    id: str | None = None

    @property
    def text(self) -> str:
        return self.message.content or ""


class AssistantTurnEnd(InboundBase):
    type: Literal["assistant_end"] = "assistant_end"


class AssistantProsody(_Scored):
    type: Literal["assistant_prosody"] = "assistant_prosody"
    id: str | None = None


class AudioChunk(InboundBase):
    type: Literal["audio_output"] = "audio_output"
    data: str
    id: str
    index: int = 0

    @property
    def audio(self) -> bytes:
        """Decoded audio bytes (a self-contained WAV file per chunk)."""
        return base64.b64decode(self.data)


class UserInterruption(InboundBase):
    type: Literal["user_interruption"] = "user_interruption"
    time: int


class ToolInvocationRequest(InboundBase):
    type: Literal["tool_call"] = "tool_call"
    tool_call_id: str
    name: str
    parameters: str = "{}"
    response_required: bool = False
    tool_type: Literal["builtin", "function"] | None = None

    def arguments(self) -> dict[str, Any]:
        """Parse the JSON-encoded parameter string."""
        if not self.parameters:
            return {}
        parsed = json.loads(self.parameters)
        if not isinstance(parsed, dict):
            raise ValueError("Tool parameters must be a JSON object")
        return parsed


class ToolInvocationResult(InboundBase):
    type: Literal["tool_response"] = "tool_response"
    tool_call_id: str
    content: str
    tool_name: str | None = None


class ToolInvocationError(InboundBase):
    type: Literal["tool_error"] = "tool_error"
    tool_call_id: str
    error: str
    content: str | None = None
    code: str | None = None
    level: str = "warn"


class ProtocolError(InboundBase):
    type: Literal["error"] = "error"
    message: str = Field(default="", validation_alias=AliasChoices("message", "error"))
    code: str | None = None
    slug: str | None = None


InboundEvent = Annotated[
    Union[
        ChatMetadata,
        UserTranscript,
        AssistantTranscript,
        AssistantTurnEnd,
        AssistantProsody,
        AudioChunk,
        UserInterruption,
        ToolInvocationRequest,
        ToolInvocationResult,
        ToolInvocationError,
        ProtocolError,
    ],
    Field(discriminator="type"),
]

INBOUND_TYPES = frozenset(
    {
        "chat_metadata",
        "user_message",
        "assistant_message",
        "assistant_end",
        "assistant_prosody",
        "audio_output",
        "user_interruption",
        "tool_call",
        "tool_response",
        "tool_error",
        "error",
    }
)


# ---------------------------------------------------------------------------
# Outbound commands
# ---------------------------------------------------------------------------

class AudioFrame(WireModel):
    type: Literal["audio_input"] = "audio_input"
    data: str
    custom_session_id: str | None = None

    @classmethod
    def from_pcm(cls, pcm: bytes, custom_session_id: str | None = None) -> "AudioFrame":
        return cls(
            data=base64.b64encode(pcm).decode("ascii"),
            custom_session_id=custom_session_id,
        )


class SessionConfig(WireModel):
    type: Literal["session_settings"] = "session_settings"
    audio: AudioConfiguration | None = None
    tools: list[ToolDeclaration] | None = None
    builtin_tools: list[BuiltinToolConfig] | None = None
    context: SessionContext | None = None
    system_prompt: str | None = None
    variables: dict[str, Any] | None = None
    metadata: dict[str, Any] | None = None
    voice_id: str | None = None
    language_model_api_key: str | None = None
    custom_session_id: str | None = None


class TextInput(WireModel):
    type: Literal["user_input"] = "user_input"
    text: str
    custom_session_id: str | None = None


class AssistantTextInject(WireModel):
    type: Literal["assistant_input"] = "assistant_input"
    text: str
    custom_session_id: str | None = None


class PauseTurns(WireModel):
    type: Literal["pause_assistant_message"] = "pause_assistant_message"
    custom_session_id: str | None = None


class ResumeTurns(WireModel):
    type: Literal["resume_assistant_message"] = "resume_assistant_message"
    custom_session_id: str | None = None


OutboundCommand = Annotated[
    Union[
        AudioFrame,
        SessionConfig,
        TextInput,
        AssistantTextInject,
        ToolInvocationResult,
        ToolInvocationError,
        PauseTurns,
        ResumeTurns,
    ],
    Field(discriminator="type"),
]

OUTBOUND_TYPES = frozenset(
    {
        "audio_input",
        "session_settings",
        "user_input",
        "assistant_input",
        "tool_response",
        "tool_error",
        "pause_assistant_message",
        "resume_assistant_message",
    }
)

import base64
import json

import pytest

from evi_bridge.errors import DecodeError
from evi_bridge.transport import codec
from evi_bridge.transport.codec import DecodeResult
from evi_bridge.transport.messages import (
    AssistantTextInject,
    AudioChunk,
    AudioConfiguration,
    AudioFrame,
    BuiltinToolConfig,
    ChatMetadata,
    PauseTurns,
    ProtocolError,
    ResumeTurns,
    SessionConfig,
    SessionContext,
    TextInput,
    ToolDeclaration,
    ToolInvocationError,
    ToolInvocationRequest,
    ToolInvocationResult,
    UserInterruption,
    UserTranscript,
)


def test_decode_user_message_with_scores():
    frame = {
        "type": "user_message",
        "message": {"role": "user", "content": "hello there"},
        "models": {"prosody": {"scores": {"Joy": 0.7, "Calmness": 0.2}}},
        "interim": False,
        "time": {"begin": 0, "end": 850},
    }
    result = codec.decode(json.dumps(frame))
    assert result.ok
    assert result.message_type == "user_message"
    event = result.value
    assert isinstance(event, UserTranscript)
    assert event.text == "hello there"
    assert event.emotion_scores == {"Joy": 0.7, "Calmness": 0.2}
    assert event.time.end == 850


def test_decode_user_message_without_models_has_no_scores():
    result = codec.decode(json.dumps({"type": "user_message", "message": {"role": "user", "content": "hi"}}))
    assert result.ok
    assert result.value.emotion_scores == {}


def test_decode_audio_output():
    pcm = b"\x01\x02\x03\x04"
    frame = {"type": "audio_output", "id": "a1", "index": 3, "data": base64.b64encode(pcm).decode()}
    event = codec.decode(json.dumps(frame)).value
    assert isinstance(event, AudioChunk)
    assert event.index == 3
    assert event.audio == pcm


def test_decode_ignores_unknown_fields():
    frame = {"type": "chat_metadata", "chat_id": "c1", "chat_group_id": "g1", "brand_new_field": 1}
    event = codec.decode(json.dumps(frame)).value
    assert isinstance(event, ChatMetadata)
    assert event.chat_group_id == "g1"


def test_decode_user_interruption():
    event = codec.decode('{"type": "user_interruption", "time": 1200}').value
    assert isinstance(event, UserInterruption)
    assert event.time == 1200


def test_decode_error_accepts_either_message_key():
    first = codec.decode('{"type": "error", "message": "bad config", "code": "E0101"}').value
    second = codec.decode('{"type": "error", "error": "rate limited", "slug": "rate"}').value
    assert isinstance(first, ProtocolError)
    assert first.message == "bad config"
    assert first.code == "E0101"
    assert second.message == "rate limited"
    assert second.slug == "rate"


def test_decode_tool_frames_inbound():
    request = codec.decode(
        '{"type": "tool_call", "tool_call_id": "t1", "name": "weather", '
        '"parameters": "{\\"city\\": \\"Paris\\"}", "response_required": true}'
    ).value
    assert isinstance(request, ToolInvocationRequest)
    assert request.arguments() == {"city": "Paris"}
    assert request.response_required is True

    response = codec.decode('{"type": "tool_response", "tool_call_id": "t1", "content": "sunny"}').value
    assert isinstance(response, ToolInvocationResult)

    error = codec.decode('{"type": "tool_error", "tool_call_id": "t1", "error": "timeout"}').value
    assert isinstance(error, ToolInvocationError)
    assert error.level == "warn"


def test_tool_arguments_must_be_object():
    request = ToolInvocationRequest(tool_call_id="t1", name="weather", parameters="[1, 2]")
    with pytest.raises(ValueError):
        request.arguments()
    assert ToolInvocationRequest(tool_call_id="t2", name="x", parameters="").arguments() == {}


def test_unknown_type_is_skipped():
    result = codec.decode('{"type": "something_new", "payload": 1}')
    assert result.kind == DecodeResult.SKIPPED
    assert result.message_type == "something_new"
    assert result.value is None
    assert not result.ok


@pytest.mark.parametrize(
    "text",
    [
        "not json at all",
        "[1, 2, 3]",
        '{"no_type": true}',
        '{"type": 7}',
    ],
)
def test_malformed_frames(text):
    result = codec.decode(text)
    assert result.kind == DecodeResult.MALFORMED
    assert isinstance(result.error, DecodeError)


def test_schema_violation_keeps_message_type():
    result = codec.decode('{"type": "audio_output", "id": "a1"}')
    assert result.kind == DecodeResult.MALFORMED
    assert result.message_type == "audio_output"
    assert result.error.message_type == "audio_output"


def test_oversize_frame_is_malformed():
    frame = json.dumps({"type": "assistant_end"})
    result = codec.decode(frame, max_payload_bytes=10)
    assert result.kind == DecodeResult.MALFORMED
    assert "exceeds" in str(result.error)


def test_encode_omits_unset_fields():
    config = SessionConfig(audio=AudioConfiguration(sample_rate=16000, channels=1))
    assert json.loads(codec.encode(config)) == {
        "type": "session_settings",
        "audio": {"sample_rate": 16000, "channels": 1, "encoding": "linear16"},
    }


def test_encode_audio_frame():
    frame = AudioFrame.from_pcm(b"\x00\x01", custom_session_id="s-1")
    assert json.loads(codec.encode(frame)) == {
        "type": "audio_input",
        "data": base64.b64encode(b"\x00\x01").decode(),
        "custom_session_id": "s-1",
    }


def test_encode_refuses_oversize_frame():
    with pytest.raises(ValueError):
        codec.encode(TextInput(text="x" * 100), max_payload_bytes=50)


OUTBOUND_COMMANDS = [
    AudioFrame.from_pcm(b"\x00\x01\x02\x03", custom_session_id="s-1"),
    SessionConfig(
        audio=AudioConfiguration(sample_rate=16000, channels=1),
        tools=[
            ToolDeclaration(
                name="get_weather",
                parameters='{"type": "object", "properties": {"city": {"type": "string"}}}',
                description="Current weather for a city",
                fallback_content="Weather is unavailable",
            )
        ],
        builtin_tools=[BuiltinToolConfig(name="web_search", fallback_content="Search failed")],
        context=SessionContext(text="The user is driving.", type="persistent"),
        system_prompt="Keep answers short.",
        variables={"user_name": "Sam", "trip_km": 42},
        metadata={"client": "evi-bridge", "build": 7},
        voice_id="voice-1",
        custom_session_id="s-1",
    ),
    TextInput(text="what's the weather?"),
    AssistantTextInject(text="One moment.", custom_session_id="s-1"),
    ToolInvocationResult(tool_call_id="t1", content='{"temperature": 21}', tool_name="get_weather"),
    ToolInvocationError(tool_call_id="t1", error="boom", content="Sorry, that failed.", code="E1"),
    PauseTurns(),
    ResumeTurns(custom_session_id="s-1"),
]


@pytest.mark.parametrize("command", OUTBOUND_COMMANDS, ids=lambda command: command.type)
def test_outbound_commands_round_trip(command):
    text = codec.encode(command)
    result = codec.decode_command(text)
    assert result.ok
    assert type(result.value) is type(command)
    assert result.value == command
    assert codec.encode(result.value) == text


def test_inbound_only_type_is_not_a_command():
    result = codec.decode_command('{"type": "assistant_end"}')
    assert result.kind == DecodeResult.SKIPPED

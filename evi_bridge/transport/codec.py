"""Encode outbound commands and decode inbound frames.

Decoding never raises: it returns a ``DecodeResult`` that is either the
decoded message, a skip for a discriminator this client does not know, or a
``DecodeError`` for malformed text.
"""

import json
from typing import Any

from pydantic import BaseModel, TypeAdapter, ValidationError

from evi_bridge.errors import DecodeError
from evi_bridge.transport.messages import (
    INBOUND_TYPES,
    OUTBOUND_TYPES,
    InboundEvent,
    OutboundCommand,
)

MAX_PAYLOAD_BYTES = 16 * 1024 * 1024

_inbound_adapter: TypeAdapter = TypeAdapter(InboundEvent)
_outbound_adapter: TypeAdapter = TypeAdapter(OutboundCommand)


class DecodeResult:
    """Tagged result of a decode: ``decoded``, ``skipped`` or ``malformed``."""

    __slots__ = ("kind", "value", "message_type", "error")

    DECODED = "decoded"
    SKIPPED = "skipped"
    MALFORMED = "malformed"

    def __init__(
        self,
        kind: str,
        value: Any = None,
        message_type: str | None = None,
        error: DecodeError | None = None,
    ):
        self.kind = kind
        self.value = value
        self.message_type = message_type
        self.error = error

    @classmethod
    def decoded(cls, value: Any) -> "DecodeResult":
        return cls(cls.DECODED, value=value, message_type=value.type)

    @classmethod
    def skipped(cls, message_type: str) -> "DecodeResult":
        return cls(cls.SKIPPED, message_type=message_type)

    @classmethod
    def malformed(cls, error: DecodeError) -> "DecodeResult":
        return cls(cls.MALFORMED, message_type=error.message_type, error=error)

    @property
    def ok(self) -> bool:
        return self.kind == self.DECODED

    def __repr__(self) -> str:
        return f"DecodeResult(kind={self.kind!r}, message_type={self.message_type!r})"


def encode(command: BaseModel, max_payload_bytes: int = MAX_PAYLOAD_BYTES) -> str:
    """Serialize an outbound command to a single JSON text frame."""
    text = command.model_dump_json(exclude_none=True)
    size = len(text.encode("utf-8"))
    if size > max_payload_bytes:
        raise ValueError(
            f"Encoded {command.type} frame is {size} bytes, limit is {max_payload_bytes}"
        )
    return text


def _peek_type(text: str | bytes, max_payload_bytes: int) -> tuple[dict | None, str | None, DecodeError | None]:
    if len(text) > max_payload_bytes:
        return None, None, DecodeError(f"Frame of {len(text)} bytes exceeds {max_payload_bytes}")
    try:
        payload = json.loads(text)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        return None, None, DecodeError(f"Invalid JSON: {e}")
    if not isinstance(payload, dict):
        return None, None, DecodeError("Frame is not a JSON object")
    message_type = payload.get("type")
    if not isinstance(message_type, str):
        return None, None, DecodeError("Frame has no string 'type' field")
    return payload, message_type, None


def _decode(
    text: str | bytes, known: frozenset, adapter: TypeAdapter, max_payload_bytes: int
) -> DecodeResult:
    payload, message_type, error = _peek_type(text, max_payload_bytes)
    if error is not None:
        return DecodeResult.malformed(error)
    if message_type not in known:
        return DecodeResult.skipped(message_type)
    try:
        return DecodeResult.decoded(adapter.validate_python(payload))
    except ValidationError as e:
        return DecodeResult.malformed(
            DecodeError(f"Invalid {message_type} frame: {e.error_count()} error(s): {e}", message_type)
        )


def decode(text: str | bytes, max_payload_bytes: int = MAX_PAYLOAD_BYTES) -> DecodeResult:
    """Decode an inbound frame from the service."""
    return _decode(text, INBOUND_TYPES, _inbound_adapter, max_payload_bytes)


def decode_command(text: str | bytes, max_payload_bytes: int = MAX_PAYLOAD_BYTES) -> DecodeResult:
    """Decode an outbound frame, as the service would see it."""
    return _decode(text, OUTBOUND_TYPES, _outbound_adapter, max_payload_bytes)

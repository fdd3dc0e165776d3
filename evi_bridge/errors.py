"""Error taxonomy for the bridge.

None of these cross the audio or message path: the codec hands them back as
values and the device loops log them and stop.
"""


class BridgeError(Exception):
    """Base class for bridge errors."""


class BridgeConnectionError(BridgeError):
    """Transport-level failure; surfaced as a ``Failed`` connection state."""


class DecodeError(BridgeError):
    """Inbound text that is not valid JSON or does not fit its schema."""

    def __init__(self, message: str, message_type: str | None = None):
        super().__init__(message)
        self.message_type = message_type


class DeviceError(BridgeError):
    """Audio hardware unavailable or failed mid-stream."""

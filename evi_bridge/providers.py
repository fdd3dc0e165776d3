from evi_bridge.audio.devices import Microphone, Speaker
from evi_bridge.config import EviBridgeSettings


# Backends are imported on demand: sounddevice needs the PortAudio library
# at import time, which headless hosts may not have.

def create_microphone(settings: EviBridgeSettings) -> Microphone:
    """Create a microphone based on configuration."""
    if settings.audio_backend == "sounddevice":
        from evi_bridge.audio.sounddevice_backend import SoundDeviceMicrophone

        return SoundDeviceMicrophone(settings.input_device)
    else:
        raise ValueError(f"Unknown audio backend: {settings.audio_backend}. Supported: 'sounddevice'")


def create_speaker(settings: EviBridgeSettings) -> Speaker:
    """Create a speaker based on configuration."""
    if settings.audio_backend == "sounddevice":
        from evi_bridge.audio.sounddevice_backend import SoundDeviceSpeaker

        return SoundDeviceSpeaker(settings.output_device)
    else:
        raise ValueError(f"Unknown audio backend: {settings.audio_backend}. Supported: 'sounddevice'")

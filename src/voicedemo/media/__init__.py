"""Real-time audio bridging between Twilio media streams and the voice backend."""

from voicedemo.media.lifecycle import ShutdownCoordinator
from voicedemo.media.sockets import AudioSocketManager, VoiceSocketConnection
from voicedemo.media.streams import MediaStream, MediaStreamBridge

__all__ = [
    "AudioSocketManager",
    "MediaStream",
    "MediaStreamBridge",
    "ShutdownCoordinator",
    "VoiceSocketConnection",
]

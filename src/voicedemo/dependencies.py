"""
FastAPI dependencies for process-wide state built in ``create_app``.

The registry, media bridge and socket manager live on ``app.state`` so each
app instance (and each test) owns its own copy.
"""

from fastapi import Request

from voicedemo.config import Settings
from voicedemo.media.sockets import AudioSocketManager
from voicedemo.media.streams import MediaStreamBridge
from voicedemo.telephony.config import TelephonyConfig
from voicedemo.telephony.twilio_adapter import TwilioAdapter
from voicedemo.voice.registry import VoiceProviderRegistry


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_voice_registry(request: Request) -> VoiceProviderRegistry:
    return request.app.state.voice_registry


def get_media_bridge(request: Request) -> MediaStreamBridge:
    return request.app.state.media_bridge


def get_socket_manager(request: Request) -> AudioSocketManager:
    return request.app.state.socket_manager


def get_twilio_adapter(request: Request) -> TwilioAdapter:
    return request.app.state.twilio_adapter


def get_telephony_settings(request: Request) -> TelephonyConfig:
    return request.app.state.twilio_adapter.config

"""Per-backend voice provider adapters."""

from voicedemo.voice.adapters.awaz import AwazProvider
from voicedemo.voice.adapters.retell import RetellProvider
from voicedemo.voice.adapters.vapi import VapiProvider

__all__ = ["AwazProvider", "RetellProvider", "VapiProvider"]

"""
TwiML response builders for the carrier webhooks.
"""

from fastapi import Response
from twilio.twiml import TwiML
from twilio.twiml.voice_response import Connect, Gather, Hangup, Say, VoiceResponse

VOICE = "alice"

HOLD_MESSAGE = "Please hold while we connect you to our AI assistant."
INBOUND_GREETING = "Hello! Thank you for calling. Connecting you to our AI assistant."
CONNECT_MESSAGE = "Connecting you to our AI assistant now."
OUTBOUND_GREETING = "Hello! This is your AI assistant. How can I help you today?"
GATHER_PROMPT = "Press 1 to speak with our AI, or wait for assistance."
GOODBYE_MESSAGE = "Thank you for calling. Have a great day!"
RETRY_MESSAGE = "Thank you for calling. Please try again later."
APOLOGY_MESSAGE = "Sorry, there was an error. Please try again later."


def say(text: str) -> Say:
    return Say(text, voice=VOICE)


def connect_stream(stream_url: str, parameters: dict[str, str]) -> Connect:
    """<Connect><Stream> carrying both audio tracks plus custom parameters."""
    connect = Connect()
    stream = connect.stream(url=stream_url, track="both_tracks")
    for name, value in parameters.items():
        stream.parameter(name=name, value=value)
    return connect


def gather(action_url: str, prompt: str, num_digits: int = 1, timeout: int = 10) -> Gather:
    verb = Gather(action=action_url, method="POST", num_digits=num_digits, timeout=timeout)
    verb.say(prompt, voice=VOICE)
    return verb


def hangup() -> Hangup:
    return Hangup()


def twiml_response(*verbs: TwiML) -> Response:
    response = VoiceResponse()
    for verb in verbs:
        response.append(verb)
    return Response(content=response.to_xml(), media_type="text/xml")


def plain_ok() -> Response:
    return Response(content="OK", media_type="text/plain")

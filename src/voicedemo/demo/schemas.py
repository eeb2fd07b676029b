"""
Pydantic schemas for the demo API.
"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from voicedemo.calls.state import CallStatus, SessionStatus
from voicedemo.voice.interface import BusinessProfile

E164_PATTERN = r"^\+[1-9]\d{6,14}$"


class StartDemoRequest(BaseModel):
    """Optional seed data for a new demo session."""

    profile: BusinessProfile | None = None
    agent_id: str | None = Field(None, max_length=255)


class PlaceCallRequest(BaseModel):
    """Call a phone number with the session's voice agent."""

    phone_e164: str = Field(..., pattern=E164_PATTERN, description="Destination in E.164 format")
    profile: BusinessProfile
    agent_id: str | None = Field(None, max_length=255)


class CarrierCallRequest(BaseModel):
    """Ring a phone number through the carrier only."""

    phone_e164: str = Field(..., pattern=E164_PATTERN, description="Destination in E.164 format")
    from_number: str | None = Field(None, pattern=E164_PATTERN)


class DemoSessionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    status: SessionStatus
    provider: str
    provider_agent_id: str | None = None
    ttl_expires_at: datetime | None = None
    created_at: datetime | None = None


class CallResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    demo_session_id: UUID
    provider: str
    provider_call_id: str | None = None
    twilio_call_sid: str | None = None
    status: CallStatus
    started_at: datetime | None = None
    connected_at: datetime | None = None
    ended_at: datetime | None = None
    completed_at: datetime | None = None
    duration_sec: int | None = None
    summary: str | None = None
    transcript_url: str | None = None


class DemoStatusResponse(BaseModel):
    session: DemoSessionResponse
    call: CallResponse | None = None

"""Chat API schemas."""

from datetime import datetime

from pydantic import BaseModel, Field


class MessageCreate(BaseModel):
    text: str = Field(..., min_length=1, max_length=2000)


class SharedLocation(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    accuracy_m: float | None = Field(default=None, ge=0)


class MessageResponse(BaseModel):
    id: int
    chat_id: int
    sender_id: int | None
    sender_name: str
    text: str
    kind: str
    latitude: float | None
    longitude: float | None
    sent_at: datetime


class ChatResponse(BaseModel):
    id: int
    emergency_id: int
    participant_ids: list[int]
    is_active: bool
    created_at: datetime
    expires_at: datetime | None
    closed_reason: str | None


class ChatStatusResponse(BaseModel):
    is_active: bool
    is_expired: bool
    is_resolved: bool
    is_read_only: bool
    status_message: str | None
